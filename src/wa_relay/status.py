"""
Status Facade — read-only view of the supervisor's published state.
"""

import time
from typing import Any, Callable, Optional

from wa_relay.models.state import ConnectionPhase, ConnectionState
from wa_relay.supervisor import ConnectionSupervisor


class StatusFacade:
    def __init__(self, supervisor: ConnectionSupervisor,
                 sink_stats: Optional[Callable[[], dict[str, dict[str, int]]]] = None):
        self._supervisor = supervisor
        self._sink_stats = sink_stats
        self._started = time.monotonic()

    def current_state(self) -> ConnectionState:
        return self._supervisor.current_state()

    def pairing_code(self) -> Optional[str]:
        """The current pairing code, only while Pairing."""
        state = self._supervisor.current_state()
        return state.pairing_code if state.phase == ConnectionPhase.PAIRING else None

    def snapshot(self) -> dict[str, Any]:
        state = self._supervisor.current_state()
        data = state.to_public()
        data["reconnecting"] = self._supervisor.reconnect_pending
        data["attempt"] = self._supervisor.attempt
        data["uptimeSeconds"] = round(time.monotonic() - self._started, 3)
        if self._sink_stats is not None:
            data["sinks"] = self._sink_stats()
        return data
