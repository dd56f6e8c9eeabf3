"""
Connection state models.

ConnectionState is immutable. The supervisor publishes a new instance on
every change and swaps a single reference, so readers always see a whole
snapshot.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ConnectionPhase(str, enum.Enum):
    IDLE = "idle"
    PAIRING = "pairing"
    OPEN = "open"
    CLOSING = "closing"
    TERMINATED = "terminated"


# Idle -> Pairing -> Open -> Closing -> Idle (retry) | Terminated (logged out).
# Pairing -> Closing covers stop() and a logout reported before the session opened.
# Terminated -> Idle only through an explicit reinitialize().
ALLOWED_TRANSITIONS: dict[ConnectionPhase, frozenset[ConnectionPhase]] = {
    ConnectionPhase.IDLE: frozenset({ConnectionPhase.PAIRING}),
    ConnectionPhase.PAIRING: frozenset({ConnectionPhase.OPEN, ConnectionPhase.IDLE, ConnectionPhase.CLOSING}),
    ConnectionPhase.OPEN: frozenset({ConnectionPhase.CLOSING}),
    ConnectionPhase.CLOSING: frozenset({ConnectionPhase.IDLE, ConnectionPhase.TERMINATED}),
    ConnectionPhase.TERMINATED: frozenset({ConnectionPhase.IDLE}),
}


def is_valid_transition(current: ConnectionPhase, nxt: ConnectionPhase) -> bool:
    return nxt in ALLOWED_TRANSITIONS.get(current, frozenset())


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class ConnectionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: ConnectionPhase = ConnectionPhase.IDLE
    device_number: Optional[str] = None
    pairing_code: Optional[str] = None
    last_transition: datetime = Field(default_factory=_now)
    close_reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_phase_fields(self) -> "ConnectionState":
        if self.phase == ConnectionPhase.OPEN and not self.device_number:
            raise ValueError("device_number is required when phase is open")
        if self.pairing_code is not None and self.phase != ConnectionPhase.PAIRING:
            raise ValueError("pairing_code is only valid while pairing")
        return self

    @property
    def connected(self) -> bool:
        return self.phase == ConnectionPhase.OPEN

    def evolve(self, **changes: Any) -> "ConnectionState":
        """Return a validated copy with `changes` applied."""
        data = self.model_dump()
        data.update(changes)
        return ConnectionState(**data)

    def to_public(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "connected": self.connected,
            "deviceNumber": self.device_number,
            "pairingCode": self.pairing_code,
            "lastTransition": self.last_transition.isoformat(),
            "closeReason": self.close_reason,
        }
