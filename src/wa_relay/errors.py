"""
wa-relay error types.

Send errors are carried inside SendResult and never raised to callers.
Disconnects are not exceptions at all; they arrive as close reasons on
ConnectionPhaseChanged and drive the supervisor's state machine.
"""

from typing import Any, Optional


class WaRelayError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class CredentialIOError(WaRelayError):
    """Credential storage failed. Fatal to the current connection attempt."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("credential_io_error", message, details)


class SessionLockedError(WaRelayError):
    """Another live process holds the session for this device identity."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("session_locked", message, details)


class TransportError(WaRelayError):
    def __init__(self, message: str, code: str = "transport_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class SinkDeliveryError(WaRelayError):
    """A sink could not accept a message. Logged by the relay, never propagated."""

    def __init__(self, sink: str, message: str, retryable: bool = True,
                 details: Optional[dict[str, Any]] = None):
        super().__init__("sink_delivery_error", message, {"sink": sink, **(details or {})})
        self.sink = sink
        self.retryable = retryable


class SendError(WaRelayError):
    pass


class NotConnected(SendError):
    def __init__(self, phase: str):
        super().__init__("not_connected", f"WhatsApp session is not open (phase={phase})", {"phase": phase})


class TransportFailure(SendError):
    def __init__(self, reason: str, transient: bool = False):
        super().__init__("transport_failure", reason, {"transient": transient})
        self.reason = reason
        self.transient = transient


class InvalidTarget(SendError):
    def __init__(self, target: str):
        super().__init__("invalid_target", f"Invalid target identity: {target!r}", {"target": target})


class InvalidPayload(SendError):
    def __init__(self, message: str):
        super().__init__("invalid_payload", message)
