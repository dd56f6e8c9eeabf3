"""
HTTP control surface.

  GET  /        liveness line
  GET  /status  ConnectionState snapshot
  POST /send    outbound message
  GET  /logout  unlink the device (Terminated)
  POST /pair    re-initialize after logout
  GET  /qr      pairing code as an HTML QR image (?format=json for the raw code)
"""

import base64
import binascii
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel

from wa_relay import __version__, qr
from wa_relay.client import WaRelay
from wa_relay.models.message import MediaPayload, MessageKind

logger = logging.getLogger(__name__)

SEND_ERROR_STATUS = {
    "not_connected": status.HTTP_503_SERVICE_UNAVAILABLE,
    "invalid_target": status.HTTP_400_BAD_REQUEST,
    "invalid_payload": status.HTTP_400_BAD_REQUEST,
    "transport_failure": status.HTTP_502_BAD_GATEWAY,
}

QR_NOT_READY = "QR code not generated yet, refresh in a few seconds."


class SendBody(BaseModel):
    number: str
    message: Optional[str] = None
    kind: MessageKind = MessageKind.TEXT
    media: Optional[str] = None  # base64
    mimetype: Optional[str] = None
    filename: Optional[str] = None
    voice_note: bool = False


def create_app(relay: WaRelay, manage_lifecycle: bool = True) -> FastAPI:
    """Build the FastAPI app. With manage_lifecycle the relay starts and stops with the server."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await relay.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await relay.stop()

    app = FastAPI(title="wa-relay", version=__version__, lifespan=lifespan)
    app.state.relay = relay

    def require_api_key(x_api_key: Optional[str] = Header(None, alias="x-api-key")) -> None:
        expected = relay.settings.api_key
        if not expected:
            return
        if not x_api_key or not secrets.compare_digest(x_api_key, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return f"wa-relay {__version__} running"

    @app.get("/status")
    async def get_status() -> dict[str, Any]:
        return relay.status()

    @app.post("/send", dependencies=[Depends(require_api_key)])
    async def send(body: SendBody) -> JSONResponse:
        if body.kind == MessageKind.TEXT:
            payload: Any = body.message or ""
        else:
            if not body.media:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                                    detail=f"{body.kind.value} message requires base64 media")
            try:
                data = base64.b64decode(body.media, validate=True)
            except (binascii.Error, ValueError):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="media is not valid base64")
            if len(data) > relay.settings.max_media_bytes:
                raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                                    detail=f"media exceeds {relay.settings.max_media_bytes} bytes")
            payload = MediaPayload(data=data, mimetype=body.mimetype, filename=body.filename,
                                   caption=body.message, voice_note=body.voice_note)

        result = await relay.send(body.number, body.kind, payload)
        if result.ok:
            return JSONResponse({"success": True, "messageId": result.message_id, "to": result.target})
        error = result.error
        return JSONResponse(
            {"success": False, "error": error.code, "message": str(error)},  # type: ignore[union-attr]
            status_code=SEND_ERROR_STATUS.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR),  # type: ignore[union-attr]
        )

    @app.get("/logout", dependencies=[Depends(require_api_key)])
    async def logout() -> JSONResponse:
        if not await relay.logout():
            return JSONResponse(
                {"success": False, "message": "No active session to log out", "status": relay.status()},
                status_code=status.HTTP_409_CONFLICT,
            )
        return JSONResponse({"success": True, "message": "Logged out", "status": relay.status()})

    @app.post("/pair", dependencies=[Depends(require_api_key)])
    async def pair() -> dict[str, Any]:
        await relay.reinitialize()
        return {"success": True, "status": relay.status()}

    @app.get("/qr")
    async def get_qr(format: str = Query("html", pattern="^(html|json)$")) -> Any:
        code = relay.status_facade.pairing_code()
        if not code:
            return JSONResponse({"message": QR_NOT_READY, "phase": relay.supervisor.current_state().phase.value})
        if format == "json":
            return JSONResponse({"qr": code})
        return HTMLResponse(qr.html_page(code))

    return app
