"""
Connection Supervisor — owns the one transport session of this process.

Phases: Idle -> Pairing -> Open -> Closing -> Idle (reconnect) or Terminated
(logged out). Transport callbacks only enqueue events; a single consumer task
applies them in arrival order, so credential writes, phase changes and
inbound batches never interleave. At most one reconnect timer and one connect
attempt exist at any time.
"""

import asyncio
import contextlib
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from wa_relay.errors import CredentialIOError
from wa_relay.models.state import ConnectionPhase, ConnectionState, is_valid_transition
from wa_relay.session_store import SessionStore
from wa_relay.transport.base import Transport
from wa_relay.transport.events import (
    LOGGED_OUT,
    RESTART_REQUIRED,
    ConnectionPhaseChanged,
    CredentialsUpdated,
    MessagesReceived,
    TransportEvent,
    TransportPhase,
    device_number_from_jid,
)

logger = logging.getLogger(__name__)

PAIRING_TIMEOUT = "pairingTimeout"
CONNECT_FAILED = "connectFailed"
CREDENTIAL_IO = "credentialIOError"
STOPPED = "stopped"

STOP_GRACE = 5.0

StateListener = Callable[[ConnectionState, ConnectionState], None]
MessagesHandler = Callable[[list[dict[str, Any]]], Awaitable[None]]


class IllegalTransition(RuntimeError):
    def __init__(self, current: ConnectionPhase, nxt: ConnectionPhase):
        super().__init__(f"Invalid transition {current.value} -> {nxt.value}")
        self.current = current
        self.next = nxt


def backoff_delay(attempt: int, base: float, maximum: float, jitter: float) -> float:
    """Exponential backoff with multiplicative jitter, capped at `maximum`."""
    delay = min(maximum, base * (2 ** max(0, attempt - 1)))
    factor = random.uniform(1 - jitter, 1 + jitter) if jitter else 1.0
    return max(0.0, min(maximum, delay * factor))


class ConnectionSupervisor:
    def __init__(
        self,
        store: SessionStore,
        transport_factory: Callable[[], Transport],
        *,
        on_messages: Optional[MessagesHandler] = None,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.2,
        connect_timeout: float = 20.0,
        pairing_timeout: float = 180.0,
    ):
        self._store = store
        self._transport_factory = transport_factory
        self._on_messages = on_messages
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._connect_timeout = connect_timeout
        self._pairing_timeout = pairing_timeout

        self._state = ConnectionState()
        self._listeners: list[StateListener] = []
        self._transport: Optional[Transport] = None
        self._remove_handler: Optional[Callable[[], None]] = None
        self._generation = 0
        self._events: asyncio.Queue[tuple[int, TransportEvent]] = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._pairing_task: Optional[asyncio.Task[None]] = None
        self._connect_lock = asyncio.Lock()
        self._attempt = 0
        self._running = False

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def current_state(self) -> ConnectionState:
        """Last published snapshot. Never blocks."""
        return self._state

    @property
    def transport(self) -> Optional[Transport]:
        """The live transport, or None when no session exists."""
        return self._transport

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def attempt(self) -> int:
        return self._attempt

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state changes. Returns a cleanup function."""
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass
        return remove

    async def start(self) -> None:
        """Open a session. No-op while Pairing/Open; Terminated needs reinitialize()."""
        phase = self._state.phase
        if phase in (ConnectionPhase.OPEN, ConnectionPhase.PAIRING, ConnectionPhase.CLOSING):
            return
        if phase == ConnectionPhase.TERMINATED:
            logger.warning("Session is logged out; call reinitialize() to pair again")
            return
        self._store.acquire()
        self._running = True
        self._ensure_consumer()
        await self._cancel_reconnect()
        await self._connect()

    async def stop(self) -> None:
        """End the session gracefully without logging out. Cancels pending reconnects."""
        self._running = False
        await self._cancel_reconnect()
        self._cancel_pairing_timer()
        if self._state.phase in (ConnectionPhase.OPEN, ConnectionPhase.PAIRING):
            self._transition(ConnectionPhase.CLOSING, close_reason=STOPPED)
            await self._release_transport()
            self._transition(ConnectionPhase.IDLE, close_reason=STOPPED)
        else:
            await self._release_transport()
        if self._consumer_task:
            if not self._consumer_task.done():
                # an event may be halfway through Closing; let it reach Idle or Terminated
                try:
                    await asyncio.wait_for(self._events.join(), timeout=STOP_GRACE)
                except asyncio.TimeoutError:
                    logger.warning("Transport event still in progress at stop; cancelling it")
            self._consumer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer_task
            self._consumer_task = None
        if self._state.phase == ConnectionPhase.CLOSING:
            if self._state.close_reason == LOGGED_OUT:
                self._terminate()
            else:
                self._transition(ConnectionPhase.IDLE, close_reason=self._state.close_reason or STOPPED)
        self._store.release()

    async def logout(self) -> bool:
        """Unlink the device, clear credentials and enter Terminated."""
        if self._state.phase not in (ConnectionPhase.OPEN, ConnectionPhase.PAIRING):
            return False
        self._running = False
        await self._cancel_reconnect()
        self._cancel_pairing_timer()
        self._transition(ConnectionPhase.CLOSING, close_reason=LOGGED_OUT)
        transport = self._transport
        if transport is not None:
            try:
                await transport.logout()
            except Exception as e:
                logger.warning(f"Remote logout failed, clearing local credentials anyway: {e}")
        await self._release_transport()
        self._terminate()
        return True

    async def reinitialize(self) -> None:
        """Leave Terminated, discard credentials and start a fresh pairing."""
        if self._state.phase != ConnectionPhase.TERMINATED:
            await self.start()
            return
        self._store.clear()
        self._attempt = 0
        self._transition(ConnectionPhase.IDLE)
        await self.start()

    async def wait_for(self, phase: ConnectionPhase, timeout: Optional[float] = None) -> ConnectionState:
        """Wait until the published phase equals `phase`."""
        if self._state.phase == phase:
            return self._state
        reached = asyncio.Event()

        def listener(_old: ConnectionState, new: ConnectionState) -> None:
            if new.phase == phase:
                reached.set()

        remove = self.add_listener(listener)
        try:
            await asyncio.wait_for(reached.wait(), timeout=timeout)
        finally:
            remove()
        return self._state

    async def drain(self) -> None:
        """Wait until every queued transport event has been applied."""
        await self._events.join()

    # ------------------------------------------------------------------
    # State publication
    # ------------------------------------------------------------------

    def _transition(self, phase: ConnectionPhase, *, device_number: Optional[str] = None,
                    pairing_code: Optional[str] = None, close_reason: Optional[str] = None) -> None:
        old = self._state
        if not is_valid_transition(old.phase, phase):
            raise IllegalTransition(old.phase, phase)
        if device_number is None and phase != ConnectionPhase.TERMINATED:
            device_number = old.device_number
        new = ConnectionState(
            phase=phase,
            device_number=device_number,
            pairing_code=pairing_code if phase == ConnectionPhase.PAIRING else None,
            close_reason=close_reason,
        )
        self._publish(old, new)
        logger.info(f"Connection {old.phase.value} -> {phase.value}"
                    + (f" ({close_reason})" if close_reason else ""))

    def _publish(self, old: ConnectionState, new: ConnectionState) -> None:
        self._state = new
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("State listener failed")

    def _terminate(self) -> None:
        try:
            self._store.clear()
        except CredentialIOError as e:
            logger.warning(f"Could not clear credentials after logout: {e}")
        self._transition(ConnectionPhase.TERMINATED, close_reason=LOGGED_OUT)

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        async with self._connect_lock:
            # a concurrent attempt may have already moved us out of Idle
            if not self._running or self._state.phase != ConnectionPhase.IDLE:
                return
            self._transition(ConnectionPhase.PAIRING)
            try:
                credential = self._store.load()
            except CredentialIOError as e:
                logger.warning(f"Cannot load credentials, pairing may be required: {e}")
                self._transition(ConnectionPhase.IDLE, close_reason=CREDENTIAL_IO)
                self._schedule_reconnect()
                return
            if credential.is_empty:
                logger.info("No stored credentials; waiting for a pairing scan")

            transport = self._transport_factory()
            self._generation += 1
            generation = self._generation
            self._remove_handler = transport.add_event_handler(
                lambda event: self._events.put_nowait((generation, event))
            )
            self._transport = transport
            self._arm_pairing_timer(generation)
            try:
                await asyncio.wait_for(transport.connect(credential), timeout=self._connect_timeout)
            except asyncio.CancelledError:
                await self._release_transport(generation)
                raise
            except Exception as e:
                logger.warning(f"Connection attempt failed: {e}")
                await self._release_transport(generation)
                if self._state.phase == ConnectionPhase.PAIRING:
                    self._transition(ConnectionPhase.IDLE, close_reason=CONNECT_FAILED)
                self._schedule_reconnect()

    async def _release_transport(self, generation: Optional[int] = None) -> None:
        if generation is not None and generation != self._generation:
            return
        self._cancel_pairing_timer()
        transport, self._transport = self._transport, None
        if self._remove_handler:
            self._remove_handler()
            self._remove_handler = None
        # Events still queued from the released transport become stale.
        self._generation += 1
        if transport is not None:
            try:
                await transport.close()
            except Exception:
                logger.debug("Suppress transport close error", exc_info=True)

    def _schedule_reconnect(self, immediate: bool = False) -> None:
        if not self._running:
            return
        if self.reconnect_pending and self._reconnect_task is not asyncio.current_task():
            logger.debug("Reconnect already scheduled")
            return
        self._attempt += 1
        delay = 0.0 if immediate else backoff_delay(
            self._attempt, self._base_delay, self._max_delay, self._jitter
        )
        logger.warning(f"Reconnecting in {delay:.2f}s (attempt {self._attempt})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="wa-reconnect")

    async def _reconnect_after(self, delay: float) -> None:
        # stays the pending reconnect until the attempt finishes, so stop() can cancel it mid-connect
        try:
            await asyncio.sleep(delay)
            await self._connect()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _arm_pairing_timer(self, generation: int) -> None:
        self._cancel_pairing_timer()

        async def expire() -> None:
            await asyncio.sleep(self._pairing_timeout)
            if generation == self._generation and self._state.phase == ConnectionPhase.PAIRING:
                logger.warning(f"Pairing not completed within {self._pairing_timeout:.0f}s")
                self._events.put_nowait((generation, ConnectionPhaseChanged(
                    TransportPhase.CLOSE, close_reason=PAIRING_TIMEOUT,
                )))

        self._pairing_task = asyncio.create_task(expire(), name="wa-pairing-timeout")

    def _cancel_pairing_timer(self) -> None:
        task, self._pairing_task = self._pairing_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Event consumer
    # ------------------------------------------------------------------

    def _ensure_consumer(self) -> None:
        if self._consumer_task and not self._consumer_task.done():
            return
        self._consumer_task = asyncio.create_task(self._consume(), name="wa-events")

    async def _consume(self) -> None:
        while True:
            generation, event = await self._events.get()
            try:
                if generation != self._generation:
                    logger.debug(f"Dropping stale transport event {event!r}")
                    continue
                await self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Failed to process transport event {event!r}")
            finally:
                self._events.task_done()

    async def _handle_event(self, event: TransportEvent) -> None:
        if isinstance(event, CredentialsUpdated):
            await self._on_credentials(event)
        elif isinstance(event, ConnectionPhaseChanged):
            await self._on_phase(event)
        elif isinstance(event, MessagesReceived):
            if self._on_messages is not None:
                await self._on_messages(event.batch)

    async def _on_credentials(self, event: CredentialsUpdated) -> None:
        try:
            await asyncio.to_thread(self._store.save, event.delta)
        except CredentialIOError as e:
            logger.warning(f"Credential update was not persisted; a restart would force re-pairing: {e}")
            await self._abort_attempt(CREDENTIAL_IO)

    async def _on_phase(self, event: ConnectionPhaseChanged) -> None:
        phase = self._state.phase
        if event.phase == TransportPhase.PAIRING:
            if phase == ConnectionPhase.PAIRING and event.pairing_code != self._state.pairing_code:
                logger.info("New pairing code received; scan it with WhatsApp")
                self._publish(self._state, self._state.evolve(pairing_code=event.pairing_code))
        elif event.phase == TransportPhase.OPEN:
            if phase != ConnectionPhase.PAIRING:
                logger.debug(f"Ignoring open event in phase {phase.value}")
                return
            self._cancel_pairing_timer()
            self._attempt = 0
            number = event.device_number or self._device_number_from_credentials() or "unknown"
            self._transition(ConnectionPhase.OPEN, device_number=number)
        elif event.phase == TransportPhase.CLOSE:
            await self._on_close(event.close_reason or "unknown")

    async def _on_close(self, reason: str) -> None:
        phase = self._state.phase
        if phase == ConnectionPhase.PAIRING and reason != LOGGED_OUT:
            await self._release_transport()
            if self._state.phase != ConnectionPhase.PAIRING:
                # stop() finished the attempt while the transport was closing
                return
            self._transition(ConnectionPhase.IDLE, close_reason=reason)
            self._schedule_reconnect(immediate=reason == RESTART_REQUIRED)
            return
        if phase not in (ConnectionPhase.OPEN, ConnectionPhase.PAIRING):
            return
        self._transition(ConnectionPhase.CLOSING, close_reason=reason)
        await self._release_transport()
        if reason == LOGGED_OUT:
            self._running = False
            await self._cancel_reconnect()
            self._terminate()
            return
        self._transition(ConnectionPhase.IDLE, close_reason=reason)
        self._schedule_reconnect(immediate=reason == RESTART_REQUIRED)

    async def _abort_attempt(self, reason: str) -> None:
        phase = self._state.phase
        if phase == ConnectionPhase.OPEN:
            self._transition(ConnectionPhase.CLOSING, close_reason=reason)
            await self._release_transport()
            self._transition(ConnectionPhase.IDLE, close_reason=reason)
        elif phase == ConnectionPhase.PAIRING:
            await self._release_transport()
            if self._state.phase != ConnectionPhase.PAIRING:
                return
            self._transition(ConnectionPhase.IDLE, close_reason=reason)
        else:
            return
        self._schedule_reconnect()

    def _device_number_from_credentials(self) -> Optional[str]:
        try:
            me = self._store.load().data.get("creds", {}).get("me") or {}
        except CredentialIOError:
            return None
        return device_number_from_jid(me.get("id") if isinstance(me, dict) else None)
