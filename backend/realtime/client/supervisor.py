"""Client session supervisor.

Owns the lifecycle of the client's one persistent connection:

    Disconnected -> Connecting -> Connected -> Degraded (backoff) -> Connecting ...
                                                      \\-> Disconnected (retries exhausted)

While Connected a ``ping`` is sent every ``ping_interval_seconds`` so the
server's heartbeat sweeper never mistakes a listening client for a dead one.

On every entry into Connected (first connect and every reconnect) it
re-issues ``subscribe-aggregate`` and ``subscribe-thread`` for each thread
open in the reconciliation store, then asks the store to resync those
threads so messages created while offline are merged.

Failure policy:
    - TransientTransportError: retry with exponential backoff
      ``min(ceiling, base * 2**attempt)`` plus jitter, up to ``max_retries``;
      after that a single ``degraded`` signal is emitted for the lifetime of
      the supervisor and it stays Disconnected (the app keeps working over
      REST).
    - AuthFailure: fatal. No reconnect attempts until ``update_token``.
"""
import asyncio
import contextlib
import logging
import random
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from ..config import ClientSettings
from ..errors import AuthFailure, TransientTransportError
from ..models import EventType, event
from .reconciliation import ReconciliationStore
from .transport import Transport

logger = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


StateListener = Callable[[SupervisorState], None]
FrameListener = Callable[[dict], None]


class SessionSupervisor:
    """Keeps one transport connected and feeds its frames to the store.

    Args:
        transport: Connection to drive (``WebSocketTransport`` in apps).
        token: Bearer token presented at every handshake.
        settings: Backoff and retry settings.
        store: Reconciliation store to feed; can also be attached later.
        sleep: Awaitable sleep, replaceable in tests.
        rng: Source of jitter in [0, 1).
    """

    def __init__(
        self,
        transport: Transport,
        token: str,
        settings: Optional[ClientSettings] = None,
        store: Optional[ReconciliationStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.transport = transport
        self.settings = settings or ClientSettings()
        self.state = SupervisorState.DISCONNECTED
        self.session_id: Optional[str] = None
        self.last_error: Optional[Exception] = None
        self.degraded = False

        self._token = token
        self._auth_failed = False
        self._stopped = False
        self._task: Optional[asyncio.Task] = None
        self._sleep = sleep
        self._rng = rng
        self._state_listeners: List[StateListener] = []
        self._frame_listeners: List[FrameListener] = []
        self._degraded_listeners: List[Callable[[], None]] = []

        self.store: Optional[ReconciliationStore] = None
        if store is not None:
            self.attach_store(store)

    # =========================================================================
    # Wiring
    # =========================================================================

    def attach_store(self, store: ReconciliationStore) -> None:
        self.store = store
        store.supervisor = self

    def on_state_change(self, callback: StateListener) -> None:
        self._state_listeners.append(callback)

    def on_frame(self, callback: FrameListener) -> None:
        self._frame_listeners.append(callback)

    def on_degraded(self, callback: Callable[[], None]) -> None:
        self._degraded_listeners.append(callback)

    @property
    def is_connected(self) -> bool:
        return self.state == SupervisorState.CONNECTED

    @property
    def auth_failed(self) -> bool:
        return self._auth_failed

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_state(self, state: SupervisorState) -> None:
        if state == self.state:
            return
        logger.info("[Supervisor] %s -> %s", self.state.value, state.value)
        self.state = state
        for callback in list(self._state_listeners):
            try:
                callback(state)
            except Exception:
                logger.exception("[Supervisor] State listener failed")

    def _emit(self, frame: dict) -> None:
        if self.store is not None:
            self.store.apply_live(frame)
        for callback in list(self._frame_listeners):
            try:
                callback(frame)
            except Exception:
                logger.exception("[Supervisor] Frame listener failed")

    def _emit_degraded(self) -> None:
        if self.degraded:
            return
        self.degraded = True
        logger.warning("[Supervisor] Real-time connection degraded, falling back to REST")
        for callback in list(self._degraded_listeners):
            try:
                callback()
            except Exception:
                logger.exception("[Supervisor] Degraded listener failed")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (0-based)."""
        s = self.settings
        delay = min(s.backoff_ceiling_seconds, s.backoff_base_seconds * (2 ** attempt))
        if s.backoff_jitter:
            delay *= 1 + s.backoff_jitter * (2 * self._rng() - 1)
        return max(0.0, min(s.backoff_ceiling_seconds, delay))

    def start(self) -> asyncio.Task:
        """Start the connect loop (no-op if it is already running)."""
        if self.is_running:
            return self._task
        self._stopped = False
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        """Logout: stop reconnecting, close the transport, clear the store."""
        self._stopped = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.transport.close()
        self._set_state(SupervisorState.DISCONNECTED)
        if self.store is not None:
            self.store.clear()

    def update_token(self, token: str) -> None:
        """Install a fresh credential and resume after an auth failure."""
        self._token = token
        if self.store is not None and getattr(self.store.rest, "update_token", None):
            self.store.rest.update_token(token)
        if self._auth_failed:
            logger.info("[Supervisor] Token refreshed, reconnecting")
            self._auth_failed = False
            if not self._stopped:
                self.start()

    async def send(self, frame: dict) -> None:
        """Send an intent on the live connection.

        Raises:
            TransientTransportError: Not connected; the caller should use
                the REST fallback.
        """
        if not self.is_connected:
            raise TransientTransportError(f"Not connected ({self.state.value})")
        await self.transport.send(frame)

    async def _run(self) -> None:
        attempt = 0
        while not self._stopped:
            self._set_state(SupervisorState.CONNECTING)
            try:
                connected = await self.transport.connect(self._token)
            except AuthFailure as e:
                self.last_error = e
                self._auth_failed = True
                logger.warning("[Supervisor] Authentication rejected: %s", e.message)
                self._set_state(SupervisorState.DISCONNECTED)
                return
            except TransientTransportError as e:
                self.last_error = e
                if attempt >= self.settings.max_retries:
                    logger.warning("[Supervisor] Giving up after %d retries: %s", attempt, e.message)
                    self._set_state(SupervisorState.DISCONNECTED)
                    self._emit_degraded()
                    return
                delay = self.backoff_delay(attempt)
                attempt += 1
                logger.info("[Supervisor] Connect failed (%s), retry %d in %.2fs", e.message, attempt, delay)
                self._set_state(SupervisorState.DEGRADED)
                await self._sleep(delay)
                continue

            attempt = 0
            self.session_id = connected.get("sessionId")
            self._set_state(SupervisorState.CONNECTED)
            pinger = asyncio.create_task(self._ping_loop())
            try:
                await self._on_connected()
                await self._pump()
            except TransientTransportError as e:
                self.last_error = e
                logger.info("[Supervisor] Connection lost: %s", e.message)
            finally:
                pinger.cancel()

            await self.transport.close()
            self._emit(event(EventType.DISCONNECTED))
            if self._stopped:
                break
            self._set_state(SupervisorState.DEGRADED)
            await self._sleep(self.backoff_delay(0))

        self._set_state(SupervisorState.DISCONNECTED)

    async def _on_connected(self) -> None:
        """Re-subscribe to everything the store has open, then resync it."""
        await self.transport.send(event(EventType.SUBSCRIBE_AGGREGATE))
        if self.store is None:
            return
        for thread_id in self.store.open_thread_ids():
            await self.transport.send(event(EventType.SUBSCRIBE_THREAD, threadId=thread_id))
        await self.store.resync_all()

    async def _ping_loop(self) -> None:
        """Keep the server's heartbeat fresh while the client only listens."""
        interval = self.settings.ping_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.transport.send(event(EventType.PING))
            except TransientTransportError as e:
                logger.debug("[Supervisor] Ping failed: %s", e.message)
                return

    async def _pump(self) -> None:
        while True:
            frame = await self.transport.recv()
            self._emit(frame)
