"""Tests for gateway/session_manager.py - lifecycle, dispatch and built-in ops."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from gateway.control_channel import ControlChannel
from gateway.heartbeat import HeartbeatConfig
from gateway.session import SessionState
from gateway.session_manager import SessionManager, SessionManagerConfig
from gateway.tunnel_pool import TunnelHandle, TunnelKey
from gateway.webhooks import EventType
from shared.protocol import (
    Envelope,
    HandshakeRejected,
    RemoteError,
    SessionTerminated,
    TunnelEstablishError,
    TunnelUnavailable,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 1.0):
    """Poll until predicate() is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def find(ws, **match):
    """Messages sent to the client matching all given top-level fields."""
    return [m for m in ws.messages() if all(m.get(k) == v for k, v in match.items())]


def handle_for(host="10.0.0.5", port=22, credential="lab", tunnel_id=1, ticket=1):
    return TunnelHandle(TunnelKey(host, port, credential), tunnel_id, ticket)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pool():
    """Mock TunnelPool; each acquire hands out a new ticket."""
    pool = MagicMock()
    tickets = iter(range(1, 1000))

    async def acquire(host, port, credential_id):
        return handle_for(host, port, credential_id, ticket=next(tickets))

    pool.acquire = AsyncMock(side_effect=acquire)
    pool.release = AsyncMock(return_value=True)
    pool.probe = AsyncMock(return_value=1.25)
    pool.exec = AsyncMock(return_value={"exit_status": 0, "stdout": "ok\n", "stderr": ""})
    pool.relay = AsyncMock()
    pool.is_live = MagicMock(return_value=True)
    return pool


@pytest.fixture
def webhooks():
    return MagicMock()


@pytest.fixture
def manager(pool, webhooks, clock):
    return SessionManager(
        pool,
        config=SessionManagerConfig(
            request_timeout=0.3,
            idle_timeout=60.0,
            reconnect_grace=0.2,
            sweep_interval=0.05,
            max_buffered=10,
        ),
        heartbeat_config=HeartbeatConfig(ping_interval=0.05, pong_timeout=10.0),
        webhooks=webhooks,
        clock=clock,
    )


@pytest.fixture
def connect(manager, make_ws):
    """Open a session over a fake websocket; returns (session, ws, reader_task)."""

    async def _connect(session_id=None):
        ws = make_ws()
        channel = ControlChannel(ws)
        if session_id:
            session = await manager.resume_session(session_id, channel)
        else:
            session = await manager.open_session(channel)
        reader = asyncio.create_task(channel.run())
        return session, ws, reader

    return _connect


class TestOpenSession:
    """Tests for session creation."""

    @pytest.mark.asyncio
    async def test_open_session(self, manager, connect, webhooks):
        events = []
        manager.add_listener(lambda name, session: events.append(name))

        session, ws, _ = await connect()
        await wait_until(lambda: ws.sent)

        assert session.state is SessionState.ACTIVE
        assert manager.get(session.id) is session
        assert manager.heartbeat.is_tracked(session.id)
        first = ws.messages()[0]
        assert first["type"] == "event"
        assert first["payload"] == {
            "name": "session.established",
            "data": {"session_id": session.id},
        }
        assert events == ["session.created"]
        webhooks.dispatch.assert_called_once_with(EventType.SESSION_CREATED, session.id, {})

    @pytest.mark.asyncio
    async def test_counts(self, manager, connect):
        await connect()
        await connect()
        counts = manager.counts()
        assert counts["active"] == 2
        assert counts["closed"] == 0
        assert len(manager) == 2


class TestDispatch:
    """Tests for client-originated requests and other inbound envelopes."""

    @pytest.mark.asyncio
    async def test_ping_remote_tunnel_failure(self, connect, pool):
        pool.acquire.side_effect = TunnelEstablishError("10.0.0.5", 22, "unknown credential 'default'")
        session, ws, _ = await connect()

        ws.feed('{"type":"request","id":"1","payload":{"op":"ping-remote","host":"10.0.0.5"}}')
        await wait_until(lambda: find(ws, id="1"))

        reply = find(ws, id="1")[0]
        assert reply["type"] == "error"
        assert reply["payload"]["kind"] == "TunnelEstablishError"
        assert reply["payload"]["details"]["host"] == "10.0.0.5"
        pool.acquire.assert_awaited_once_with("10.0.0.5", 22, "default")
        assert session.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_ping_remote_success(self, connect, pool):
        session, ws, _ = await connect()

        ws.feed(
            {
                "type": "request",
                "id": "2",
                "payload": {"op": "ping-remote", "host": "10.0.0.5", "credential": "lab"},
            }
        )
        await wait_until(lambda: find(ws, id="2"))

        reply = find(ws, id="2")[0]
        assert reply["type"] == "response"
        assert reply["payload"] == {
            "host": "10.0.0.5",
            "port": 22,
            "alive": True,
            "latency_ms": 1.25,
        }
        assert session.tunnel.key == TunnelKey("10.0.0.5", 22, "lab")

    @pytest.mark.asyncio
    async def test_exec(self, connect, pool):
        _, ws, _ = await connect()

        ws.feed(
            {
                "type": "request",
                "id": "3",
                "payload": {
                    "op": "exec",
                    "host": "10.0.0.5",
                    "credential": "lab",
                    "command": "xdotool key F5",
                    "env": {"DISPLAY": ":1"},
                },
            }
        )
        await wait_until(lambda: find(ws, id="3"))

        assert find(ws, id="3")[0]["payload"]["stdout"] == "ok\n"
        handle = pool.exec.await_args.args[0]
        assert pool.exec.await_args.args[1] == "xdotool key F5"
        assert pool.exec.await_args.kwargs == {"env": {"DISPLAY": ":1"}, "timeout": 0.3}
        assert handle.key.host == "10.0.0.5"

    @pytest.mark.asyncio
    async def test_exec_timeout_is_always_bounded(self, connect, pool):
        _, ws, _ = await connect()

        ws.feed(
            {
                "type": "request",
                "id": "3a",
                "payload": {"op": "exec", "host": "10.0.0.5", "command": "sleep 1"},
            }
        )
        ws.feed(
            {
                "type": "request",
                "id": "3b",
                "payload": {"op": "exec", "host": "10.0.0.5", "command": "ls", "timeout": 0.1},
            }
        )
        await wait_until(lambda: find(ws, id="3a") and find(ws, id="3b"))

        timeouts = {call.args[1]: call.kwargs["timeout"] for call in pool.exec.await_args_list}
        assert timeouts == {"sleep 1": 0.3, "ls": 0.1}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload,argument",
        [
            ({"op": "exec", "host": "h"}, "command"),
            ({"op": "exec", "command": "ls"}, "host"),
            ({"op": "exec", "host": "h", "command": "ls", "port": "22"}, "port"),
            ({"op": "exec", "host": "h", "command": "ls", "timeout": -1}, "timeout"),
            ({"op": "relay", "host": "h", "target_port": 9000}, "envelope"),
            ({"op": "relay", "host": "h", "envelope": {"type": "ping"}}, "target_port"),
        ],
    )
    async def test_invalid_arguments(self, connect, payload, argument):
        _, ws, _ = await connect()

        ws.feed({"type": "request", "id": "4", "payload": payload})
        await wait_until(lambda: find(ws, id="4"))

        reply = find(ws, id="4")[0]
        assert reply["payload"]["kind"] == "InvalidArgument"
        assert reply["payload"]["details"]["argument"] == argument

    @pytest.mark.asyncio
    async def test_relay(self, connect, pool):
        pool.relay.return_value = Envelope.response("inner-1", {"frames": 12})
        _, ws, _ = await connect()

        ws.feed(
            {
                "type": "request",
                "id": "5",
                "payload": {
                    "op": "relay",
                    "host": "10.0.0.5",
                    "credential": "lab",
                    "target_port": 9000,
                    "envelope": {"type": "request", "id": "inner-1", "payload": {"op": "stats"}},
                },
            }
        )
        await wait_until(lambda: find(ws, id="5"))

        reply = find(ws, id="5")[0]
        assert reply["payload"]["type"] == "response"
        assert reply["payload"]["payload"] == {"frames": 12}
        inner = pool.relay.await_args.args[1]
        assert inner.op == "stats"
        assert pool.relay.await_args.args[2] == 9000

    @pytest.mark.asyncio
    async def test_relay_invalid_inner_envelope(self, connect):
        _, ws, _ = await connect()

        ws.feed(
            {
                "type": "request",
                "id": "6",
                "payload": {
                    "op": "relay",
                    "host": "h",
                    "target_port": 9000,
                    "envelope": {"type": "request", "payload": {"op": "x"}},
                },
            }
        )
        await wait_until(lambda: find(ws, id="6"))

        assert find(ws, id="6")[0]["payload"]["kind"] == "InvalidArgument"

    @pytest.mark.asyncio
    async def test_unknown_operation(self, connect):
        _, ws, _ = await connect()

        ws.feed({"type": "request", "id": "7", "payload": {"op": "teleport"}})
        await wait_until(lambda: find(ws, id="7"))

        payload = find(ws, id="7")[0]["payload"]
        assert payload["kind"] == "UnknownOperation"
        assert "ping-remote" in payload["details"]["available"]

    @pytest.mark.asyncio
    async def test_registered_handler(self, manager, connect):
        async def screenshot(session, args):
            return f"captured {args['region']}"

        manager.register_handler("screenshot", screenshot)
        _, ws, _ = await connect()

        ws.feed({"type": "request", "id": "8", "payload": {"op": "screenshot", "region": "full"}})
        await wait_until(lambda: find(ws, id="8"))

        assert find(ws, id="8")[0]["payload"] == {"result": "captured full"}

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_operation_failed(self, manager, connect):
        async def broken(session, args):
            raise KeyError("missing")

        manager.register_handler("broken", broken)
        _, ws, _ = await connect()

        ws.feed({"type": "request", "id": "9", "payload": {"op": "broken"}})
        await wait_until(lambda: find(ws, id="9"))

        assert find(ws, id="9")[0]["payload"]["kind"] == "OperationFailed"

    @pytest.mark.asyncio
    async def test_slow_handler_times_out(self, manager, connect):
        async def slow(session, args):
            await asyncio.sleep(5)

        manager.register_handler("slow", slow)
        _, ws, _ = await connect()

        ws.feed({"type": "request", "id": "10", "payload": {"op": "slow"}})
        await wait_until(lambda: find(ws, id="10"))

        assert find(ws, id="10")[0]["payload"]["kind"] == "RequestTimeout"

    @pytest.mark.asyncio
    async def test_unserializable_result(self, manager, connect):
        async def weird(session, args):
            return {"value": object()}

        manager.register_handler("weird", weird)
        _, ws, _ = await connect()

        ws.feed({"type": "request", "id": "11", "payload": {"op": "weird"}})
        await wait_until(lambda: find(ws, id="11"))

        assert find(ws, id="11")[0]["payload"]["kind"] == "OperationFailed"

    @pytest.mark.asyncio
    async def test_each_request_gets_exactly_one_reply(self, manager, connect):
        async def echo(session, args):
            await asyncio.sleep(args["delay"])
            return {"n": args["n"]}

        manager.register_handler("echo", echo)
        _, ws, _ = await connect()

        for n in range(10):
            ws.feed(
                {
                    "type": "request",
                    "id": f"r{n}",
                    "payload": {"op": "echo", "n": n, "delay": (10 - n) * 0.005},
                }
            )
        await wait_until(lambda: len(find(ws, type="response")) == 10)
        await asyncio.sleep(0.05)

        ids = [m["id"] for m in find(ws, type="response")]
        assert sorted(ids) == sorted(f"r{n}" for n in range(10))

    @pytest.mark.asyncio
    async def test_protocol_error_reply(self, connect):
        session, ws, _ = await connect()

        ws.feed("{broken")
        ws.feed({"type": "gossip", "id": "12", "payload": {}})
        await wait_until(lambda: len(find(ws, type="error")) == 2)

        decode_error, unknown_type = find(ws, type="error")
        assert decode_error["payload"]["kind"] == "DecodeError"
        assert "id" not in decode_error
        assert unknown_type["payload"]["kind"] == "UnknownType"
        assert unknown_type["id"] == "12"
        assert session.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_client_ping_gets_pong(self, connect):
        _, ws, _ = await connect()

        ws.feed({"type": "ping", "payload": {"seq": 4}})
        await wait_until(lambda: find(ws, type="pong"))

        assert find(ws, type="pong")[0]["payload"] == {"seq": 4}

    @pytest.mark.asyncio
    async def test_client_events_reach_listeners(self, connect):
        session, ws, _ = await connect()
        seen = []
        session.on_event("bot.status", lambda sess, name, data: seen.append(data))

        ws.feed({"type": "event", "payload": {"name": "bot.status", "data": {"hp": 99}}})
        await wait_until(lambda: seen)

        assert seen == [{"hp": 99}]

    @pytest.mark.asyncio
    async def test_gateway_request_round_trip(self, connect):
        session, ws, _ = await connect()

        task = asyncio.create_task(session.request("get-inventory"))
        await wait_until(lambda: find(ws, type="request"))
        request = find(ws, type="request")[0]
        ws.feed({"type": "response", "id": request["id"], "payload": {"items": ["rune"]}})

        assert await task == {"items": ["rune"]}

    @pytest.mark.asyncio
    async def test_gateway_request_error_reply(self, connect):
        session, ws, _ = await connect()

        task = asyncio.create_task(session.request("get-inventory"))
        await wait_until(lambda: find(ws, type="request"))
        request_id = find(ws, type="request")[0]["id"]
        ws.feed({"type": "error", "id": request_id, "payload": {"kind": "NotLoggedIn"}})

        with pytest.raises(RemoteError) as exc_info:
            await task
        assert exc_info.value.kind == "NotLoggedIn"


class TestTunnelBorrowing:
    """Tests for the session's single borrowed tunnel."""

    async def _ping(self, ws, request_id, host):
        ws.feed(
            {
                "type": "request",
                "id": request_id,
                "payload": {"op": "ping-remote", "host": host, "credential": "lab"},
            }
        )
        await wait_until(lambda: find(ws, id=request_id))

    @pytest.mark.asyncio
    async def test_same_target_reuses_handle(self, connect, pool):
        _, ws, _ = await connect()
        await self._ping(ws, "a", "10.0.0.5")
        await self._ping(ws, "b", "10.0.0.5")

        assert pool.acquire.await_count == 1
        pool.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_switching_target_releases_previous(self, connect, pool):
        session, ws, _ = await connect()
        await self._ping(ws, "a", "10.0.0.5")
        first = session.tunnel
        await self._ping(ws, "b", "10.0.0.6")

        pool.release.assert_awaited_once_with(first)
        assert session.tunnel.key.host == "10.0.0.6"
        assert session.tunnel_users == 0

    @pytest.mark.asyncio
    async def test_release_tunnel_op(self, connect, pool):
        session, ws, _ = await connect()
        await self._ping(ws, "a", "10.0.0.5")

        ws.feed({"type": "request", "id": "rel", "payload": {"op": "release-tunnel"}})
        await wait_until(lambda: find(ws, id="rel"))

        assert find(ws, id="rel")[0]["payload"] == {"released": True}
        assert session.tunnel is None

    @pytest.mark.asyncio
    async def test_release_tunnel_without_tunnel(self, connect):
        _, ws, _ = await connect()

        ws.feed({"type": "request", "id": "rel", "payload": {"op": "release-tunnel"}})
        await wait_until(lambda: find(ws, id="rel"))

        assert find(ws, id="rel")[0]["payload"] == {"released": False}

    @pytest.mark.asyncio
    async def test_unavailable_tunnel_forgotten(self, connect, pool, webhooks):
        session, ws, _ = await connect()
        await self._ping(ws, "a", "10.0.0.5")
        pool.probe.side_effect = TunnelUnavailable("10.0.0.5", 22, "tunnel was invalidated")
        pool.is_live.return_value = False

        await self._ping(ws, "b", "10.0.0.5")

        assert find(ws, id="b")[0]["payload"]["kind"] == "TunnelUnavailable"
        assert session.tunnel is None
        assert webhooks.dispatch.call_args.args[0] is EventType.TUNNEL_DEAD

    @pytest.mark.asyncio
    async def test_live_tunnel_error_keeps_tunnel(self, connect, pool, webhooks):
        session, ws, _ = await connect()
        await self._ping(ws, "a", "10.0.0.5")
        first = session.tunnel
        pool.probe.side_effect = TunnelUnavailable("10.0.0.5", 22, "handle already released")

        await self._ping(ws, "b", "10.0.0.5")

        assert find(ws, id="b")[0]["payload"]["kind"] == "TunnelUnavailable"
        assert session.tunnel == first
        dispatched = [call.args[0] for call in webhooks.dispatch.call_args_list]
        assert EventType.TUNNEL_DEAD not in dispatched

    @pytest.mark.asyncio
    async def test_concurrent_targets_do_not_steal_tunnel(self, connect, pool, webhooks):
        session, ws, _ = await connect()
        started = asyncio.Event()
        used = set()

        async def slow_exec(handle, command, env=None, timeout=None):
            started.set()
            await asyncio.sleep(0.1)
            if handle not in used:
                raise TunnelUnavailable(handle.key.host, 22, "handle already released")
            return {"exit_status": 0, "stdout": handle.key.host, "stderr": ""}

        async def acquire(host, port, credential_id):
            handle = handle_for(host, port, credential_id, ticket=len(used) + 1)
            used.add(handle)
            return handle

        async def release(handle):
            used.discard(handle)
            return True

        pool.acquire.side_effect = acquire
        pool.release.side_effect = release
        pool.exec.side_effect = slow_exec

        ws.feed(
            {
                "type": "request",
                "id": "A",
                "payload": {"op": "exec", "host": "h1", "credential": "lab", "command": "ls"},
            }
        )
        await started.wait()
        await self._ping(ws, "B", "h2")
        await wait_until(lambda: find(ws, id="A"))

        assert find(ws, id="A")[0]["payload"]["stdout"] == "h1"
        assert find(ws, id="B")[0]["type"] == "response"
        assert session.tunnel.key.host == "h1"
        assert [h.key.host for h in used] == ["h1"]
        dispatched = [call.args[0] for call in webhooks.dispatch.call_args_list]
        assert EventType.TUNNEL_DEAD not in dispatched

    @pytest.mark.asyncio
    async def test_session_info(self, connect):
        session, ws, _ = await connect()
        await self._ping(ws, "a", "10.0.0.5")

        ws.feed({"type": "request", "id": "info", "payload": {"op": "session.info"}})
        await wait_until(lambda: find(ws, id="info"))

        info = find(ws, id="info")[0]["payload"]
        assert info["session_id"] == session.id
        assert info["state"] == "active"
        assert info["tunnel"] == {"host": "10.0.0.5", "port": 22, "credential_id": "lab"}


class TestSuspendResume:
    """Tests for Active -> Suspended -> Active/Closed."""

    @pytest.mark.asyncio
    async def test_disconnect_suspends(self, manager, connect, webhooks):
        session, ws, reader = await connect()

        ws.hang_up()
        await reader

        assert session.state is SessionState.SUSPENDED
        assert session.channel is None
        assert not manager.heartbeat.is_tracked(session.id)
        assert webhooks.dispatch.call_args.args[0] is EventType.SESSION_SUSPENDED

    @pytest.mark.asyncio
    async def test_resume_keeps_pending_and_flushes_buffer(self, manager, connect):
        manager.config.reconnect_grace = 5.0
        session, ws, reader = await connect()

        request_task = asyncio.create_task(session.request("get-status", timeout=2.0))
        await wait_until(lambda: find(ws, type="request"))
        request_id = find(ws, type="request")[0]["id"]

        ws.hang_up()
        await reader
        session.send_event("while-away", {"n": 1})
        session.send_event("while-away", {"n": 2})

        resumed, new_ws, _ = await connect(session.id)
        assert resumed is session
        assert session.state is SessionState.ACTIVE
        assert request_id in session.pending

        await wait_until(lambda: len(new_ws.sent) >= 3)
        names = [m["payload"]["name"] for m in new_ws.messages()[:3]]
        assert names == ["session.resumed", "while-away", "while-away"]
        assert [m["payload"]["data"].get("n") for m in new_ws.messages()[1:3]] == [1, 2]

        new_ws.feed({"type": "response", "id": request_id, "payload": {"ok": True}})
        assert await request_task == {"ok": True}

    @pytest.mark.asyncio
    async def test_grace_expiry_closes(self, manager, connect, pool):
        session, ws, reader = await connect()
        ws.feed(
            {
                "type": "request",
                "id": "t",
                "payload": {"op": "ping-remote", "host": "10.0.0.5", "credential": "lab"},
            }
        )
        await wait_until(lambda: find(ws, id="t"))
        handle = session.tunnel
        request_task = asyncio.create_task(session.request("get-status", timeout=5.0))
        await asyncio.sleep(0)

        ws.hang_up()
        await reader
        await wait_until(lambda: session.state is SessionState.CLOSED)

        assert manager.get(session.id) is None
        pool.release.assert_awaited_with(handle)
        with pytest.raises(SessionTerminated, match="grace"):
            await request_task

        with pytest.raises(HandshakeRejected) as exc_info:
            await connect(session.id)
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_resume_active_session_rejected(self, connect):
        session, _, _ = await connect()

        with pytest.raises(HandshakeRejected) as exc_info:
            await connect(session.id)
        assert exc_info.value.status == 409

    @pytest.mark.asyncio
    async def test_check_resumable(self, manager, connect):
        session, ws, reader = await connect()

        with pytest.raises(HandshakeRejected) as exc_info:
            manager.check_resumable(session.id)
        assert exc_info.value.status == 409

        ws.hang_up()
        await reader
        manager.check_resumable(session.id)

        with pytest.raises(HandshakeRejected) as exc_info:
            manager.check_resumable("no-such-session")
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_suspends_then_closes(self, manager, connect, clock):
        session, ws, _ = await connect()

        clock.advance(11)
        await manager.heartbeat.check_all()

        assert session.state is SessionState.SUSPENDED
        assert ws.close_calls[0][0] == 4000
        await wait_until(lambda: session.state is SessionState.CLOSED)

    @pytest.mark.asyncio
    async def test_heartbeat_pings_client(self, manager, connect):
        _, ws, _ = await connect()

        await manager.heartbeat.check_all()
        await wait_until(lambda: find(ws, type="ping"))

        ws.feed({"type": "pong", "payload": {"seq": 1}})
        await asyncio.sleep(0.02)


class TestClose:
    """Tests for explicit close, idle timeout and shutdown."""

    @pytest.mark.asyncio
    async def test_session_close_op(self, manager, connect, webhooks):
        session, ws, _ = await connect()

        ws.feed({"type": "request", "id": "bye", "payload": {"op": "session.close"}})
        await wait_until(lambda: session.state is SessionState.CLOSED)

        assert find(ws, id="bye")[0]["payload"] == {"closed": True}
        assert ws.close_calls[0][0] == 1000
        assert manager.get(session.id) is None
        assert webhooks.dispatch.call_args.args[0] is EventType.SESSION_CLOSED

    @pytest.mark.asyncio
    async def test_close_answers_in_flight_requests(self, manager, connect):
        finished = []

        async def slow(session, args):
            await asyncio.sleep(0.2)
            finished.append(args)
            return {"done": True}

        manager.register_handler("slow", slow)
        session, ws, _ = await connect()

        ws.feed({"type": "request", "id": "X", "payload": {"op": "slow"}})
        await wait_until(lambda: "X" in session.inflight)
        ws.feed({"type": "request", "id": "bye", "payload": {"op": "session.close"}})
        await wait_until(lambda: session.state is SessionState.CLOSED)
        await asyncio.sleep(0.3)

        replies = find(ws, id="X")
        assert len(replies) == 1
        assert replies[0]["type"] == "error"
        assert replies[0]["payload"]["kind"] == "SessionTerminated"
        assert find(ws, id="bye")[0]["payload"] == {"closed": True}
        assert finished == []
        assert session.inflight == {}

    @pytest.mark.asyncio
    async def test_finished_requests_leave_in_flight_table(self, connect):
        session, ws, _ = await connect()

        ws.feed({"type": "request", "id": "info", "payload": {"op": "session.info"}})
        await wait_until(lambda: find(ws, id="info"))

        assert find(ws, id="info")[0]["payload"]["inflight_requests"] == 1
        assert session.inflight == {}

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, manager, connect):
        session, _, _ = await connect()

        assert await manager.close_session(session, "test") is True
        assert await manager.close_session(session, "test") is False

    @pytest.mark.asyncio
    async def test_idle_sweep(self, manager, connect, clock):
        session, ws, _ = await connect()
        ws.feed({"type": "pong", "payload": {"seq": 1}})
        await asyncio.sleep(0.02)

        clock.advance(30)
        assert await manager.sweep() == 0

        # Heartbeat traffic is not activity
        ws.feed({"type": "pong", "payload": {"seq": 2}})
        await asyncio.sleep(0.02)
        clock.advance(31)

        assert await manager.sweep() == 1
        assert session.state is SessionState.CLOSED
        assert session.close_reason == "idle timeout"

    @pytest.mark.asyncio
    async def test_traffic_resets_idle(self, manager, connect, clock):
        session, ws, _ = await connect()
        clock.advance(50)
        ws.feed({"type": "event", "payload": {"name": "tick"}})
        await asyncio.sleep(0.02)
        clock.advance(50)

        assert await manager.sweep() == 0
        assert session.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_stop_closes_everything(self, manager, connect):
        await manager.start()
        first, ws1, _ = await connect()
        second, ws2, _ = await connect()

        await manager.stop()

        assert first.state is SessionState.CLOSED
        assert second.state is SessionState.CLOSED
        assert len(manager) == 0
        assert ws1.close_calls[0][0] == 1001
