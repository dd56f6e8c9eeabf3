from typing import Any

import pytest
import pytest_asyncio

from fakes import TransportFactory
from wa_relay.config import RelaySettings
from wa_relay.session_store import SessionStore
from wa_relay.supervisor import ConnectionSupervisor


@pytest.fixture
def factory() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "auth", "test-device")


@pytest.fixture
def settings(tmp_path, monkeypatch) -> RelaySettings:
    monkeypatch.chdir(tmp_path)
    return RelaySettings(
        auth_dir=tmp_path / "auth",
        device_id="test-device",
        print_qr_in_terminal=False,
        reconnect_base_delay_seconds=0.01,
        reconnect_jitter=0.0,
        connect_timeout_seconds=1.0,
        send_timeout_seconds=1.0,
        sink_retry_base_delay_seconds=0.01,
        shutdown_grace_seconds=1.0,
    )


@pytest_asyncio.fixture
async def make_supervisor(store, factory):
    """Build supervisors with test-friendly timings; all are stopped on teardown."""
    created: list[ConnectionSupervisor] = []

    def _make(**kwargs: Any) -> ConnectionSupervisor:
        options: dict[str, Any] = {
            "base_delay": 0.01,
            "max_delay": 0.05,
            "jitter": 0.0,
            "connect_timeout": 1.0,
            "pairing_timeout": 5.0,
        }
        options.update(kwargs)
        supervisor = ConnectionSupervisor(store, factory, **options)
        created.append(supervisor)
        return supervisor

    yield _make
    for supervisor in created:
        await supervisor.stop()
