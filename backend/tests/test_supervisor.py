"""Tests for the client session supervisor: backoff, degradation, reconnect."""
import asyncio
import json
from typing import List
from unittest.mock import AsyncMock, patch

import pytest

from realtime.client.reconciliation import ReconciliationStore
from realtime.client.supervisor import SessionSupervisor, SupervisorState
from realtime.client.transport import Transport, WebSocketTransport
from realtime.config import ClientSettings
from realtime.errors import AuthFailure, TransientTransportError

from conftest import THREAD, FakeRest, frame, msg

CONNECTED = {"type": "connected", "sessionId": "s-1", "userId": "alice"}


class ScriptedTransport(Transport):
    """Transport whose connect outcomes are scripted; frames come from a queue."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.tokens: List[str] = []
        self.sent: List[dict] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = 0

    async def connect(self, token: str) -> dict:
        self.tokens.append(token)
        outcome = self.outcomes.pop(0) if self.outcomes else CONNECTED
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def send(self, frame: dict) -> None:
        self.sent.append(frame)

    async def recv(self) -> dict:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed += 1

    def of_type(self, event_type: str) -> List[dict]:
        return [f for f in self.sent if f["type"] == event_type]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestBackoff:
    def test_exponential_with_ceiling(self, settings):
        supervisor = SessionSupervisor(ScriptedTransport(), "token", settings.client)
        delays = [supervisor.backoff_delay(attempt) for attempt in range(6)]
        assert delays == [0.01, 0.02, 0.04, 0.08, 0.08, 0.08]

    def test_jitter_never_exceeds_ceiling(self):
        settings = ClientSettings(backoff_base_seconds=1, backoff_ceiling_seconds=4, backoff_jitter=0.5)
        high = SessionSupervisor(ScriptedTransport(), "token", settings, rng=lambda: 0.999)
        low = SessionSupervisor(ScriptedTransport(), "token", settings, rng=lambda: 0.0)

        assert high.backoff_delay(10) <= 4
        assert low.backoff_delay(0) == pytest.approx(0.5)
        assert high.backoff_delay(0) == pytest.approx(1.499)


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_subscribes_aggregate(self, settings):
        transport = ScriptedTransport()
        supervisor = SessionSupervisor(transport, "token", settings.client)
        states = []
        supervisor.on_state_change(states.append)

        supervisor.start()
        await eventually(lambda: supervisor.is_connected)

        assert transport.tokens == ["token"]
        assert transport.sent[0] == {"type": "subscribe-aggregate"}
        assert supervisor.session_id == "s-1"
        assert states == [SupervisorState.CONNECTING, SupervisorState.CONNECTED]
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_frames_reach_listeners(self, settings):
        transport = ScriptedTransport()
        supervisor = SessionSupervisor(transport, "token", settings.client)
        frames = []
        supervisor.on_frame(frames.append)

        supervisor.start()
        await eventually(lambda: supervisor.is_connected)
        transport.inbox.put_nowait({"type": "pong", "requestId": None})
        await eventually(lambda: frames)

        assert frames == [{"type": "pong", "requestId": None}]
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_send_when_disconnected_raises(self, settings):
        supervisor = SessionSupervisor(ScriptedTransport(), "token", settings.client)
        with pytest.raises(TransientTransportError):
            await supervisor.send({"type": "ping"})

    @pytest.mark.asyncio
    async def test_start_twice_returns_same_task(self, settings):
        supervisor = SessionSupervisor(ScriptedTransport(), "token", settings.client)
        task = supervisor.start()
        assert supervisor.start() is task
        await supervisor.stop()


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_back_off_then_connect(self, settings):
        transport = ScriptedTransport(
            TransientTransportError("down"), TransientTransportError("down"), CONNECTED
        )
        sleep = RecordingSleep()
        supervisor = SessionSupervisor(transport, "token", settings.client, sleep=sleep)

        supervisor.start()
        await eventually(lambda: supervisor.is_connected)

        assert sleep.delays == [0.01, 0.02]
        assert supervisor.degraded is False
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_gives_up_and_signals_degraded_once(self, settings):
        transport = ScriptedTransport(*[TransientTransportError("down") for _ in range(10)])
        sleep = RecordingSleep()
        supervisor = SessionSupervisor(transport, "token", settings.client, sleep=sleep)
        signals = []
        supervisor.on_degraded(lambda: signals.append(True))

        await supervisor.start()

        assert len(transport.tokens) == settings.client.max_retries + 1
        assert sleep.delays == [0.01, 0.02, 0.04]
        assert supervisor.state == SupervisorState.DISCONNECTED
        assert signals == [True]

        # A manual retry that also fails does not raise the banner again
        await supervisor.start()
        assert signals == [True]
        assert supervisor.degraded is True


class TestAuthFailure:
    @pytest.mark.asyncio
    async def test_auth_failure_is_fatal_until_token_refresh(self, settings):
        transport = ScriptedTransport(AuthFailure("expired"), CONNECTED)
        sleep = RecordingSleep()
        supervisor = SessionSupervisor(transport, "old-token", settings.client, sleep=sleep)

        await supervisor.start()

        assert supervisor.auth_failed is True
        assert supervisor.state == SupervisorState.DISCONNECTED
        assert transport.tokens == ["old-token"]
        assert sleep.delays == []

        supervisor.update_token("new-token")
        await eventually(lambda: supervisor.is_connected)

        assert transport.tokens == ["old-token", "new-token"]
        assert supervisor.auth_failed is False
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_update_token_refreshes_rest_client(self, settings):
        rest = FakeRest()
        rest.token = "old"
        rest.update_token = lambda token: setattr(rest, "token", token)
        store = ReconciliationStore("alice", rest=rest, settings=settings.client)
        supervisor = SessionSupervisor(ScriptedTransport(), "old", settings.client, store=store)

        supervisor.update_token("new")

        assert rest.token == "new"
        assert supervisor.is_running is False


class TestReconnect:
    @pytest.mark.asyncio
    async def test_reconnect_resubscribes_and_resyncs(self, settings):
        """Messages created while the connection was down are present afterwards."""
        rest = FakeRest()
        rest.add(msg("m1", 1.0))
        store = ReconciliationStore("alice", rest=rest, settings=settings.client)
        transport = ScriptedTransport()
        sleep = RecordingSleep()
        supervisor = SessionSupervisor(transport, "token", settings.client, store=store, sleep=sleep)
        frames = []
        supervisor.on_frame(frames.append)

        await store.open_thread(THREAD)
        supervisor.start()
        await eventually(lambda: len(transport.of_type("subscribe-thread")) == 1)

        transport.inbox.put_nowait(frame("message-created", msg("m2", 2.0)))
        await eventually(lambda: len(store.messages(THREAD)) == 2)

        # Connection drops; m3 and m4 are written while it is down
        rest.add(msg("m2", 2.0), msg("m3", 3.0), msg("m4", 4.0))
        transport.inbox.put_nowait(TransientTransportError("connection reset"))
        await eventually(lambda: len(transport.tokens) == 2 and supervisor.is_connected)
        await eventually(lambda: len(store.messages(THREAD)) == 4)

        assert [e.id for e in store.messages(THREAD)] == ["m1", "m2", "m3", "m4"]
        assert len(transport.of_type("subscribe-aggregate")) == 2
        assert transport.of_type("subscribe-thread") == [{"type": "subscribe-thread", "threadId": THREAD}] * 2
        assert {"type": "disconnected"} in frames
        assert supervisor.degraded is False
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_clears_store_and_closes_transport(self, settings):
        store = ReconciliationStore("alice", settings=settings.client)
        transport = ScriptedTransport()
        supervisor = SessionSupervisor(transport, "token", settings.client, store=store)
        await store.open_thread(THREAD)

        supervisor.start()
        await eventually(lambda: supervisor.is_connected)
        await supervisor.stop()

        assert supervisor.state == SupervisorState.DISCONNECTED
        assert store.open_thread_ids() == []
        assert transport.closed >= 1
        assert supervisor.is_running is False


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_idle_connection_sends_pings(self, settings):
        transport = ScriptedTransport()
        client_settings = settings.client.model_copy(update={"ping_interval_seconds": 0.02})
        supervisor = SessionSupervisor(transport, "token", client_settings)

        supervisor.start()
        await eventually(lambda: len(transport.of_type("ping")) >= 2)
        await supervisor.stop()

        sent = len(transport.of_type("ping"))
        await asyncio.sleep(0.06)
        assert len(transport.of_type("ping")) == sent

    @pytest.mark.asyncio
    async def test_pings_stop_when_connection_drops(self, settings):
        failures = [TransientTransportError("down") for _ in range(settings.client.max_retries + 1)]
        transport = ScriptedTransport(CONNECTED, *failures)
        client_settings = settings.client.model_copy(update={"ping_interval_seconds": 0.02})
        supervisor = SessionSupervisor(transport, "token", client_settings, sleep=RecordingSleep())

        supervisor.start()
        await eventually(lambda: len(transport.of_type("ping")) >= 1)
        transport.inbox.put_nowait(TransientTransportError("connection reset"))
        await eventually(lambda: supervisor.state == SupervisorState.DISCONNECTED and not supervisor.is_running)

        sent = len(transport.of_type("ping"))
        await asyncio.sleep(0.06)
        assert len(transport.of_type("ping")) == sent
        assert supervisor.degraded is True


class TestWebSocketTransport:
    def test_transport_is_abstract(self):
        with pytest.raises(TypeError):
            Transport()

    @pytest.mark.asyncio
    async def test_non_json_handshake_reply_is_transient(self):
        ws = AsyncMock()
        ws.recv.return_value = "<html>502 Bad Gateway</html>"
        transport = WebSocketTransport("ws://test/ws")

        with patch("realtime.client.transport.websockets.connect", AsyncMock(return_value=ws)):
            with pytest.raises(TransientTransportError):
                await transport.connect("token")

        ws.close.assert_awaited()
        assert transport.is_open is False

    @pytest.mark.asyncio
    async def test_malformed_frame_after_connect_is_transient(self):
        ws = AsyncMock()
        ws.recv.side_effect = [json.dumps(CONNECTED), "[1, 2]"]
        transport = WebSocketTransport("ws://test/ws")

        with patch("realtime.client.transport.websockets.connect", AsyncMock(return_value=ws)):
            assert await transport.connect("token") == CONNECTED
            with pytest.raises(TransientTransportError):
                await transport.recv()
        await transport.close()
