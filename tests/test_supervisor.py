"""Connection Supervisor: state machine, reconnect scheduling and event ordering."""

import asyncio
import threading

import pytest

from fakes import DEVICE_JID, open_session
from wa_relay.dispatcher import OutboundDispatcher
from wa_relay.errors import CredentialIOError, NotConnected, TransportError
from wa_relay.models.state import ConnectionPhase, ConnectionState, is_valid_transition
from wa_relay.supervisor import IllegalTransition, backoff_delay


def record_transitions(supervisor):
    seen: list[tuple[ConnectionState, ConnectionState]] = []
    supervisor.add_listener(lambda old, new: seen.append((old, new)))
    return seen


class TestPairingToOpen:
    @pytest.mark.asyncio
    async def test_pairing_code_then_open(self, make_supervisor, factory, store):
        supervisor = make_supervisor()
        await supervisor.start()
        assert supervisor.current_state().phase == ConnectionPhase.PAIRING

        transport = factory.latest
        transport.emit_pairing("2@qr-payload")
        await supervisor.drain()
        assert supervisor.current_state().pairing_code == "2@qr-payload"

        transport.emit_creds({"creds": {"me": {"id": DEVICE_JID}}})
        transport.emit_open()
        await supervisor.drain()

        state = supervisor.current_state()
        assert state.phase == ConnectionPhase.OPEN
        assert state.connected
        assert state.device_number == "5511999990000"
        assert state.pairing_code is None
        assert store.load().data["creds"]["me"]["id"] == DEVICE_JID

    @pytest.mark.asyncio
    async def test_new_pairing_code_replaces_old(self, make_supervisor, factory):
        supervisor = make_supervisor()
        await supervisor.start()
        factory.latest.emit_pairing("code-1")
        factory.latest.emit_pairing("code-2")
        await supervisor.drain()
        assert supervisor.current_state().pairing_code == "code-2"
        assert supervisor.current_state().phase == ConnectionPhase.PAIRING

    @pytest.mark.asyncio
    async def test_device_number_falls_back_to_stored_credentials(self, make_supervisor, factory, store):
        store.save({"creds": {"me": {"id": "5521988887777:2@s.whatsapp.net"}}})
        supervisor = make_supervisor()
        await supervisor.start()
        factory.latest.emit_open(jid=None)
        await supervisor.drain()
        assert supervisor.current_state().device_number == "5521988887777"

    @pytest.mark.asyncio
    async def test_stored_credentials_are_handed_to_transport(self, make_supervisor, factory, store):
        store.save({"creds": {"registered": True}})
        supervisor = make_supervisor()
        await supervisor.start()
        assert factory.latest.credentials[0].data == {"creds": {"registered": True}}

    @pytest.mark.asyncio
    async def test_start_is_noop_while_open(self, make_supervisor, factory):
        supervisor = make_supervisor()
        await open_session(supervisor, factory)
        await supervisor.start()
        assert len(factory.created) == 1
        assert supervisor.current_state().phase == ConnectionPhase.OPEN


class TestTransitions:
    @pytest.mark.asyncio
    async def test_only_legal_transitions_are_published(self, make_supervisor, factory):
        supervisor = make_supervisor()
        seen = record_transitions(supervisor)
        transport = await open_session(supervisor, factory)
        transport.emit_close("connectionLost")
        await supervisor.drain()
        await supervisor.wait_for(ConnectionPhase.PAIRING, timeout=1)
        factory.latest.emit_open()
        await supervisor.drain()
        factory.latest.emit_close("loggedOut")
        await supervisor.drain()

        phases = [(old.phase, new.phase) for old, new in seen if old.phase != new.phase]
        assert phases, "no transitions observed"
        for old, new in phases:
            assert is_valid_transition(old, new), f"{old} -> {new}"
        for _, new in seen:
            if new.phase == ConnectionPhase.OPEN:
                assert new.device_number
            if new.phase != ConnectionPhase.PAIRING:
                assert new.pairing_code is None

    def test_transition_table(self):
        assert is_valid_transition(ConnectionPhase.IDLE, ConnectionPhase.PAIRING)
        assert is_valid_transition(ConnectionPhase.CLOSING, ConnectionPhase.TERMINATED)
        assert not is_valid_transition(ConnectionPhase.IDLE, ConnectionPhase.OPEN)
        assert not is_valid_transition(ConnectionPhase.TERMINATED, ConnectionPhase.PAIRING)
        assert not is_valid_transition(ConnectionPhase.OPEN, ConnectionPhase.IDLE)

    @pytest.mark.asyncio
    async def test_illegal_transition_is_rejected(self, make_supervisor):
        supervisor = make_supervisor()
        with pytest.raises(IllegalTransition):
            supervisor._transition(ConnectionPhase.OPEN, device_number="1")

    def test_open_state_requires_device_number(self):
        with pytest.raises(ValueError):
            ConnectionState(phase=ConnectionPhase.OPEN)
        with pytest.raises(ValueError):
            ConnectionState(phase=ConnectionPhase.IDLE, pairing_code="stale")


class TestLogout:
    @pytest.mark.asyncio
    async def test_remote_logout_terminates(self, make_supervisor, factory, store):
        supervisor = make_supervisor()
        transport = await open_session(supervisor, factory)
        transport.emit_creds({"creds": {"registered": True}})
        await supervisor.drain()
        assert store.path.exists()

        transport.emit_close("loggedOut")
        await supervisor.drain()

        state = supervisor.current_state()
        assert state.phase == ConnectionPhase.TERMINATED
        assert state.close_reason == "loggedOut"
        assert state.device_number is None
        assert not supervisor.reconnect_pending
        assert not store.path.exists()
        assert transport.closed

    @pytest.mark.asyncio
    async def test_send_after_logout_is_not_connected(self, make_supervisor, factory):
        supervisor = make_supervisor()
        transport = await open_session(supervisor, factory)
        transport.emit_close("loggedOut")
        await supervisor.drain()

        result = await OutboundDispatcher(supervisor).send_text("5511888887777", "hi")
        assert isinstance(result.error, NotConnected)
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_start_after_logout_is_noop(self, make_supervisor, factory):
        supervisor = make_supervisor()
        transport = await open_session(supervisor, factory)
        transport.emit_close("loggedOut")
        await supervisor.drain()
        await supervisor.start()
        await asyncio.sleep(0.05)
        assert supervisor.current_state().phase == ConnectionPhase.TERMINATED
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_local_logout_and_reinitialize(self, make_supervisor, factory, store):
        supervisor = make_supervisor()
        transport = await open_session(supervisor, factory)
        transport.emit_creds({"creds": {"registered": True}})
        await supervisor.drain()

        assert await supervisor.logout() is True
        assert transport.logged_out
        assert supervisor.current_state().phase == ConnectionPhase.TERMINATED
        assert not store.path.exists()

        await supervisor.reinitialize()
        assert supervisor.current_state().phase == ConnectionPhase.PAIRING
        assert len(factory.created) == 2
        assert factory.latest.credentials[0].is_empty

    @pytest.mark.asyncio
    async def test_logout_without_session_returns_false(self, make_supervisor):
        supervisor = make_supervisor()
        assert await supervisor.logout() is False
        assert supervisor.current_state().phase == ConnectionPhase.IDLE


class TestReconnect:
    @pytest.mark.asyncio
    async def test_connection_lost_reconnects(self, make_supervisor, factory):
        supervisor = make_supervisor()
        transport = await open_session(supervisor, factory)
        transport.emit_close("connectionLost")
        await supervisor.drain()
        assert transport.closed

        await supervisor.wait_for(ConnectionPhase.PAIRING, timeout=1)
        assert len(factory.created) == 2

    @pytest.mark.asyncio
    async def test_restart_required_reconnects_immediately(self, make_supervisor, factory):
        supervisor = make_supervisor(base_delay=30.0, max_delay=60.0)
        transport = await open_session(supervisor, factory)
        transport.emit_close("restartRequired")
        await supervisor.drain()
        await supervisor.wait_for(ConnectionPhase.PAIRING, timeout=1)
        assert len(factory.created) == 2

    @pytest.mark.asyncio
    async def test_reconnect_is_single_slot(self, make_supervisor, factory):
        supervisor = make_supervisor(base_delay=30.0, max_delay=60.0)
        transport = await open_session(supervisor, factory)
        transport.emit_close("connectionLost")
        transport.emit_close("connectionLost")
        await supervisor.drain()

        assert supervisor.current_state().phase == ConnectionPhase.IDLE
        assert supervisor.reconnect_pending
        assert supervisor.attempt == 1
        supervisor._schedule_reconnect()
        assert supervisor.attempt == 1
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self, make_supervisor, factory):
        supervisor = make_supervisor(base_delay=0.05, max_delay=0.05)
        transport = await open_session(supervisor, factory)
        transport.emit_close("connectionLost")
        await supervisor.drain()
        assert supervisor.reconnect_pending

        await supervisor.stop()
        assert not supervisor.reconnect_pending
        await asyncio.sleep(0.1)
        assert len(factory.created) == 1
        assert supervisor.current_state().phase == ConnectionPhase.IDLE

    @pytest.mark.asyncio
    async def test_stop_cancels_reconnect_mid_connect(self, make_supervisor, factory):
        supervisor = make_supervisor(base_delay=0.01, max_delay=0.01)
        transport = await open_session(supervisor, factory)
        factory.connect_delay = 0.2
        transport.emit_close("connectionLost")
        await supervisor.drain()
        await asyncio.sleep(0.05)
        assert len(factory.created) == 2
        assert supervisor.reconnect_pending

        await supervisor.stop()
        await asyncio.sleep(0.3)
        second = factory.latest
        assert not second.connected
        assert second.closed
        assert supervisor.transport is None
        assert not supervisor.reconnect_pending
        assert supervisor.current_state().phase == ConnectionPhase.IDLE

    @pytest.mark.asyncio
    async def test_stop_during_slow_close_still_reaches_idle(self, make_supervisor, factory):
        supervisor = make_supervisor(base_delay=0.01, max_delay=0.01)
        transport = await open_session(supervisor, factory)
        transport.close_delay = 0.2
        transport.emit_close("connectionLost")
        await asyncio.sleep(0.05)
        assert supervisor.current_state().phase == ConnectionPhase.CLOSING

        await supervisor.stop()
        assert supervisor.current_state().phase == ConnectionPhase.IDLE
        assert not supervisor.reconnect_pending
        assert transport.closed

        await supervisor.start()
        assert supervisor.current_state().phase == ConnectionPhase.PAIRING
        assert len(factory.created) == 2

    @pytest.mark.asyncio
    async def test_failed_reconnect_schedules_another(self, make_supervisor, factory):
        supervisor = make_supervisor()
        transport = await open_session(supervisor, factory)
        factory.connect_errors.append(TransportError("bridge down", code="link_down"))
        transport.emit_close("connectionLost")
        await supervisor.drain()

        await supervisor.wait_for(ConnectionPhase.PAIRING, timeout=1)
        await asyncio.sleep(0.1)
        assert len(factory.created) == 3
        assert factory.created[1].closed
        assert supervisor.current_state().phase == ConnectionPhase.PAIRING

    @pytest.mark.asyncio
    async def test_failed_connect_schedules_retry(self, make_supervisor, factory):
        factory.connect_errors.append(TransportError("bridge down", code="link_down"))
        supervisor = make_supervisor()
        await supervisor.start()
        assert supervisor.current_state().phase == ConnectionPhase.IDLE
        assert supervisor.current_state().close_reason == "connectFailed"

        await supervisor.wait_for(ConnectionPhase.PAIRING, timeout=1)
        assert len(factory.created) == 2
        assert factory.created[0].closed

    @pytest.mark.asyncio
    async def test_open_resets_attempt_counter(self, make_supervisor, factory):
        supervisor = make_supervisor()
        transport = await open_session(supervisor, factory)
        transport.emit_close("connectionLost")
        await supervisor.drain()
        assert supervisor.attempt == 1
        await supervisor.wait_for(ConnectionPhase.PAIRING, timeout=1)
        factory.latest.emit_open()
        await supervisor.drain()
        assert supervisor.attempt == 0

    @pytest.mark.asyncio
    async def test_pairing_timeout_abandons_attempt(self, make_supervisor, factory):
        supervisor = make_supervisor(pairing_timeout=0.05, base_delay=30.0, max_delay=60.0)
        await supervisor.start()
        await asyncio.sleep(0.1)
        await supervisor.drain()

        state = supervisor.current_state()
        assert state.phase == ConnectionPhase.IDLE
        assert state.close_reason == "pairingTimeout"
        assert supervisor.reconnect_pending
        assert factory.latest.closed

    @pytest.mark.asyncio
    async def test_events_from_released_transport_are_ignored(self, make_supervisor, factory):
        supervisor = make_supervisor()
        old = await open_session(supervisor, factory)
        old.emit_close("connectionLost")
        await supervisor.drain()
        await supervisor.wait_for(ConnectionPhase.PAIRING, timeout=1)

        old.emit_open()
        await supervisor.drain()
        assert supervisor.current_state().phase == ConnectionPhase.PAIRING

    def test_backoff_is_capped(self):
        assert backoff_delay(1, 1.0, 60.0, 0.0) == 1.0
        assert backoff_delay(3, 1.0, 60.0, 0.0) == 4.0
        assert backoff_delay(20, 1.0, 60.0, 0.0) == 60.0
        for _ in range(50):
            assert 0.8 <= backoff_delay(1, 1.0, 60.0, 0.2) <= 1.2


class TestCredentialsAndMessages:
    @pytest.mark.asyncio
    async def test_credential_write_failure_restarts_session(self, make_supervisor, factory, store, monkeypatch):
        supervisor = make_supervisor(base_delay=30.0, max_delay=60.0)
        transport = await open_session(supervisor, factory)

        def broken_save(delta):
            raise CredentialIOError("disk full")

        monkeypatch.setattr(store, "save", broken_save)
        transport.emit_creds({"creds": {"registered": True}})
        await supervisor.drain()

        state = supervisor.current_state()
        assert state.phase == ConnectionPhase.IDLE
        assert state.close_reason == "credentialIOError"
        assert supervisor.reconnect_pending
        assert transport.closed

    @pytest.mark.asyncio
    async def test_corrupt_credentials_lead_to_pairing(self, make_supervisor, factory, store):
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text("{not json")
        supervisor = make_supervisor(base_delay=30.0, max_delay=60.0)
        await supervisor.start()
        assert supervisor.current_state().phase == ConnectionPhase.PAIRING
        assert len(factory.created) == 1
        assert factory.latest.credentials[0].is_empty
        assert not supervisor.reconnect_pending
        assert len(list(store.path.parent.glob("creds.json.corrupt-*"))) == 1

    @pytest.mark.asyncio
    async def test_unreadable_credentials_schedule_retry(self, make_supervisor, factory, store, monkeypatch):
        def broken_load():
            raise CredentialIOError("permission denied")

        monkeypatch.setattr(store, "load", broken_load)
        supervisor = make_supervisor(base_delay=30.0, max_delay=60.0)
        await supervisor.start()
        assert supervisor.current_state().phase == ConnectionPhase.IDLE
        assert supervisor.current_state().close_reason == "credentialIOError"
        assert factory.created == []
        assert supervisor.reconnect_pending

    @pytest.mark.asyncio
    async def test_credentials_are_written_off_the_event_loop(self, make_supervisor, factory, store, monkeypatch):
        threads = []
        save = store.save

        def recording_save(delta):
            threads.append(threading.get_ident())
            return save(delta)

        monkeypatch.setattr(store, "save", recording_save)
        supervisor = make_supervisor()
        transport = await open_session(supervisor, factory)
        transport.emit_creds({"creds": {"registered": True}})
        await supervisor.drain()
        assert threads and threads[0] != threading.get_ident()
        assert store.load().data == {"creds": {"registered": True}}

    @pytest.mark.asyncio
    async def test_batches_are_handed_over_in_order(self, make_supervisor, factory):
        received = []

        async def on_messages(batch):
            received.append([m["key"]["id"] for m in batch])

        supervisor = make_supervisor(on_messages=on_messages)
        transport = await open_session(supervisor, factory)
        transport.emit_messages([{"key": {"id": "A"}}, {"key": {"id": "B"}}])
        transport.emit_messages([{"key": {"id": "C"}}])
        await supervisor.drain()
        assert received == [["A", "B"], ["C"]]

    @pytest.mark.asyncio
    async def test_failing_message_handler_does_not_stop_consumer(self, make_supervisor, factory):
        calls = []

        async def on_messages(batch):
            calls.append(batch)
            raise RuntimeError("boom")

        supervisor = make_supervisor(on_messages=on_messages)
        transport = await open_session(supervisor, factory)
        transport.emit_messages([{"key": {"id": "A"}}])
        transport.emit_close("connectionLost")
        await supervisor.drain()
        assert len(calls) == 1
        assert supervisor.current_state().phase in (ConnectionPhase.IDLE, ConnectionPhase.PAIRING)
