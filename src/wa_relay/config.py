"""Relay configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Literal, Optional

import yaml
from pydantic import AliasChoices, Field, PositiveFloat, PositiveInt, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

CONFIG_FILE_ENV = "WA_RELAY_CONFIG_FILE"

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("./config/wa-relay.yaml"),
    Path("./config/wa-relay.yml"),
    Path("./config/wa-relay.json"),
)


class RelaySettings(BaseSettings):
    """Validated settings for one relay process (one device identity)."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="WA_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Control surface
    host: str = Field(default="0.0.0.0", description="Bind address for the HTTP control surface.")
    port: PositiveInt = Field(
        default=3000,
        validation_alias=AliasChoices("WA_RELAY_PORT", "PORT", "port"),
        description="Listen port for the HTTP control surface.",
    )
    api_key: Optional[str] = Field(
        default=None,
        description="When set, mutating endpoints require a matching x-api-key header.",
        repr=False,
    )
    max_media_bytes: PositiveInt = Field(
        default=16 * 1024 * 1024,
        description="Upper bound for decoded media accepted by POST /send.",
    )

    # Bridge transport
    bridge_url: str = Field(
        default="http://localhost:8081",
        description="Socket.IO endpoint of the WhatsApp multi-device bridge.",
    )
    bridge_socketio_path: str = Field(default="/socket.io/", description="Socket.IO path on the bridge.")
    bridge_token: Optional[str] = Field(
        default=None,
        description="Shared token presented to the bridge in the Socket.IO auth payload.",
        repr=False,
    )
    connect_timeout_seconds: PositiveFloat = Field(
        default=20.0,
        description="Seconds allowed for the bridge link to come up.",
    )
    send_timeout_seconds: PositiveFloat = Field(
        default=30.0,
        description="Seconds to wait for the bridge to acknowledge an outbound send.",
    )

    # Session
    device_id: str = Field(default="default", description="Device identity this process owns.")
    auth_dir: Path = Field(default=Path("./auth_info"), description="Directory holding stored credentials.")
    pairing_timeout_seconds: PositiveFloat = Field(
        default=180.0,
        description="Seconds to wait in Pairing before abandoning the attempt.",
    )
    print_qr_in_terminal: bool = Field(default=True, description="Render pairing QR codes in the log terminal.")

    # Reconnection
    reconnect_base_delay_seconds: PositiveFloat = Field(default=1.0, description="Base reconnect backoff.")
    reconnect_max_delay_seconds: PositiveFloat = Field(default=60.0, description="Reconnect backoff ceiling.")
    reconnect_jitter: float = Field(default=0.2, ge=0.0, le=1.0, description="Backoff jitter factor (0.0-1.0).")

    # Inbound relay
    dedup_capacity: PositiveInt = Field(default=5000, description="Recent message ids remembered for dedup.")
    ignore_status_broadcast: bool = Field(default=True, description="Drop status@broadcast messages.")
    ignore_groups: bool = Field(default=False, description="Drop group chat messages.")
    sink_timeout_seconds: PositiveFloat = Field(default=10.0, description="Per-attempt sink delivery timeout.")
    sink_max_attempts: PositiveInt = Field(default=3, description="Delivery attempts per message per sink.")
    sink_retry_base_delay_seconds: PositiveFloat = Field(default=0.5, description="Sink retry backoff base.")
    sink_queue_size: PositiveInt = Field(default=1000, description="Pending deliveries buffered per sink.")
    shutdown_grace_seconds: PositiveFloat = Field(
        default=5.0,
        description="Seconds pending sink deliveries may run after stop().",
    )

    # Webhook sink
    webhook_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("WA_RELAY_WEBHOOK_URL", "WEBHOOK_URL", "webhook_url"),
        description="Target URL for inbound message webhooks.",
    )
    webhook_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("WA_RELAY_WEBHOOK_SECRET", "WEBHOOK_SECRET", "webhook_secret"),
        description="Shared secret sent with every webhook delivery.",
        repr=False,
    )
    webhook_secret_header: str = Field(default="x-webhook-secret", description="Header carrying the secret.")
    webhook_include_media: bool = Field(default=False, description="Download media and embed it as base64.")

    # Storage sink (Supabase / PostgREST)
    storage_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("WA_RELAY_STORAGE_URL", "SUPABASE_URL", "storage_url"),
        description="Supabase project URL for the message log.",
    )
    storage_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("WA_RELAY_STORAGE_KEY", "SUPABASE_KEY", "storage_key"),
        description="Supabase service key.",
        repr=False,
    )
    storage_table: str = Field(default="messages", description="Table receiving inbound message rows.")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the relay process.",
    )

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("bridge_url", "webhook_url", "storage_url")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not value.startswith(("http://", "https://", "ws://", "wss://")):
            raise ValueError(f"Invalid URL {value!r}: expected an http(s) or ws(s) scheme")
        return value.rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # explicit args > environment > .env > config file > secrets dir
        return init_settings, env_settings, dotenv_settings, ConfigFileSource(settings_cls), file_secret_settings


def find_config_file() -> Optional[Path]:
    """The file named by WA_RELAY_CONFIG_FILE, else the first ./config/wa-relay.* that exists."""
    explicit = os.getenv(CONFIG_FILE_ENV)
    candidates = [Path(explicit).expanduser()] if explicit else []
    candidates.extend(DEFAULT_CONFIG_LOCATIONS)
    return next((path for path in candidates if path.is_file()), None)


def read_config_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RuntimeError(f"Cannot read config file {path}: {e}") from e
    try:
        raw = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValueError(f"Config file {path} is not valid {path.suffix.lstrip('.') or 'YAML'}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must hold a mapping of setting names to values")
    return raw


class ConfigFileSource(PydanticBaseSettingsSource):
    """Settings read from a YAML or JSON file. Records where they came from in `config_path`."""

    def __init__(self, settings_cls: type[BaseSettings]):
        super().__init__(settings_cls)
        self._path = find_config_file()
        self._values = read_config_file(self._path) if self._path else {}

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        if self._path is None:
            return {}
        return {**self._values, "config_path": self._path}


@lru_cache()
def get_settings() -> RelaySettings:
    """Return memoized relay settings."""

    settings = RelaySettings()
    settings.auth_dir = settings.auth_dir.expanduser().resolve()
    return settings
