"""Session registry, lifecycle state machine and request dispatch."""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from time import monotonic
from typing import Any

from gateway.control_channel import CloseReason, ControlChannel
from gateway.heartbeat import HeartbeatConfig, HeartbeatMonitor
from gateway.session import TERMINAL_STATES, Session, SessionState
from gateway.tunnel_pool import TunnelHandle, TunnelKey, TunnelPool
from gateway.webhooks import EventType, WebhookDispatcher
from shared.config import GatewayConfig
from shared.protocol import (
    EVENT_SESSION_CLOSED,
    EVENT_SESSION_CREATED,
    EVENT_SESSION_ESTABLISHED,
    EVENT_SESSION_RESUMED,
    EVENT_SESSION_SUSPENDED,
    OP_EXEC,
    OP_PING_REMOTE,
    OP_RELAY,
    OP_RELEASE_TUNNEL,
    OP_SESSION_CLOSE,
    OP_SESSION_INFO,
    DecodeError,
    Envelope,
    GatewayError,
    HandshakeRejected,
    InvalidArgument,
    MalformedMessage,
    MessageType,
    OperationFailed,
    RequestTimeout,
    SessionTerminated,
    TunnelUnavailable,
    UnknownOperation,
    UnknownType,
    decode,
)

logger = logging.getLogger(__name__)

# Op handlers receive the session and the request arguments
OpHandler = Callable[[Session, dict], Awaitable[Any]]
LifecycleListener = Callable[[str, Session], Any]

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_TIMEOUT = 4000

# Credential id used when a request names none
DEFAULT_CREDENTIAL = "default"


@dataclass
class SessionManagerConfig:
    """Timing and buffering for sessions. Durations in seconds."""

    request_timeout: float = 10.0
    idle_timeout: float = 1800.0
    reconnect_grace: float = 1800.0
    sweep_interval: float = 1.0
    max_buffered: int = 1000

    @classmethod
    def from_gateway_config(cls, config: GatewayConfig) -> "SessionManagerConfig":
        return cls(
            request_timeout=config.seconds(config.request_timeout_ms),
            idle_timeout=config.seconds(config.session_idle_timeout_ms),
            reconnect_grace=config.seconds(config.reconnect_grace_ms),
            sweep_interval=config.seconds(config.sweep_interval_ms),
            max_buffered=config.max_buffered_envelopes,
        )


def _require_str(args: dict, name: str) -> str:
    value = args.get(name)
    if not isinstance(value, str) or not value:
        raise InvalidArgument(name, "required string")
    return value


def _optional_int(args: dict, name: str, default: int) -> int:
    value = args.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value < 65536:
        raise InvalidArgument(name, "must be an integer port between 1 and 65535")
    return value


class SessionManager:
    """
    Owns every session and drives its state machine.

    Connecting -> Active -> Draining -> Closed, with Active <-> Suspended
    while a client is disconnected but inside its reconnect grace period.
    """

    def __init__(
        self,
        tunnel_pool: TunnelPool,
        config: SessionManagerConfig | None = None,
        heartbeat_config: HeartbeatConfig | None = None,
        webhooks: WebhookDispatcher | None = None,
        clock: Callable[[], float] = monotonic,
    ):
        self.pool = tunnel_pool
        self.config = config or SessionManagerConfig()
        self.webhooks = webhooks
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._listeners: list[LifecycleListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None
        self._running = False

        self.heartbeat = HeartbeatMonitor(
            send_ping=self._send_ping,
            on_unresponsive=self._on_unresponsive,
            config=heartbeat_config,
            clock=clock,
        )

        self._handlers: dict[str, OpHandler] = {
            OP_PING_REMOTE: self._op_ping_remote,
            OP_EXEC: self._op_exec,
            OP_RELAY: self._op_relay,
            OP_RELEASE_TUNNEL: self._op_release_tunnel,
            OP_SESSION_INFO: self._op_session_info,
            OP_SESSION_CLOSE: self._op_session_close,
        }

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in SessionState}
        for session in self._sessions.values():
            counts[session.state.value] += 1
        return counts

    def register_handler(self, op: str, handler: OpHandler) -> None:
        """Register (or replace) the handler for a request op."""
        self._handlers[op] = handler
        logger.debug(f"Registered handler for op {op}")

    def operations(self) -> list[str]:
        return sorted(self._handlers)

    def add_listener(self, listener: LifecycleListener) -> None:
        """Subscribe to lifecycle events (created, suspended, resumed, closed)."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("Session manager already running")
            return
        self._running = True
        await self.heartbeat.start()
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Session manager started (request_timeout={self.config.request_timeout}s, "
            f"idle_timeout={self.config.idle_timeout}s, grace={self.config.reconnect_grace}s)"
        )

    async def stop(self) -> None:
        """Close every session and stop background tasks."""
        self._running = False
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.heartbeat.stop()

        for session in self.sessions():
            await self.close_session(session, "gateway shutting down", code=CLOSE_GOING_AWAY)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Session manager stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def open_session(self, channel: ControlChannel) -> Session:
        """Create a session for a freshly accepted connection and bind the channel."""
        session = Session(
            request_timeout=self.config.request_timeout,
            max_buffered=self.config.max_buffered,
            clock=self._clock,
        )
        self._sessions[session.id] = session
        logger.info(f"Session {session.short_id} connecting from {channel.remote_address}")

        try:
            async with session.lock:
                self._bind(session, channel)
                session.state = SessionState.ACTIVE
                session.send_event(EVENT_SESSION_ESTABLISHED, {"session_id": session.id})
        except Exception:
            logger.exception(f"Handshake failed for session {session.short_id}")
            session.state = SessionState.CLOSED
            self._sessions.pop(session.id, None)
            raise

        self.heartbeat.track(session.id)
        logger.info(f"Session {session.short_id} active")
        await self._emit(EVENT_SESSION_CREATED, session)
        return session

    async def resume_session(self, session_id: str, channel: ControlChannel) -> Session:
        """
        Bind a new channel to a suspended session.

        Raises:
            HandshakeRejected: 404 for unknown or closed sessions, 409 if the
                session already has a live connection
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise HandshakeRejected(404, "unknown session")

        async with session.lock:
            if session.state in TERMINAL_STATES:
                raise HandshakeRejected(404, "session closed")
            if session.state is not SessionState.SUSPENDED:
                raise HandshakeRejected(409, "session already connected")

            if session.grace_task:
                session.grace_task.cancel()
                session.grace_task = None
            self._bind(session, channel)
            session.state = SessionState.ACTIVE
            session.suspended_at = None
            session.send_event(
                EVENT_SESSION_RESUMED,
                {"session_id": session.id, "buffered": len(session.outbox)},
            )
            flushed = session.flush()

        self.heartbeat.track(session.id)
        logger.info(
            f"Session {session.short_id} resumed "
            f"({flushed} buffered envelopes, {len(session.pending)} pending requests)"
        )
        await self._emit(EVENT_SESSION_RESUMED, session)
        return session

    def check_resumable(self, session_id: str) -> None:
        """Handshake-time check; the binding itself is re-checked under the session lock."""
        session = self._sessions.get(session_id)
        if session is None or session.state in TERMINAL_STATES:
            raise HandshakeRejected(404, "unknown or closed session")
        if session.state is not SessionState.SUSPENDED:
            raise HandshakeRejected(409, "session already connected")

    def _bind(self, session: Session, channel: ControlChannel) -> None:
        channel.session_id = session.id
        channel.on_receive = partial(self.handle_envelope, session)
        channel.on_protocol_error = partial(self.handle_protocol_error, session)
        channel.on_close = partial(self._on_channel_closed, session)
        session.channel = channel

    async def _on_channel_closed(
        self, session: Session, channel: ControlChannel, reason: CloseReason
    ) -> None:
        if session.channel is not channel:
            return
        await self.suspend(session, f"channel closed ({reason.value})")

    async def _on_unresponsive(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            await self.suspend(
                session, "heartbeat timeout", close_reason=CloseReason.TIMEOUT, code=CLOSE_TIMEOUT
            )

    async def suspend(
        self,
        session: Session,
        reason: str,
        close_reason: CloseReason = CloseReason.LOCAL,
        code: int = CLOSE_NORMAL,
    ) -> bool:
        """Active -> Suspended: detach the channel and start the reconnect grace timer."""
        async with session.lock:
            if session.state is not SessionState.ACTIVE:
                return False
            session.state = SessionState.SUSPENDED
            session.suspended_at = self._clock()
            channel, session.channel = session.channel, None
            session.grace_task = asyncio.create_task(self._grace_expiry(session))

        self.heartbeat.untrack(session.id)
        logger.warning(
            f"Session {session.short_id} suspended: {reason} "
            f"(grace {self.config.reconnect_grace}s)"
        )
        if channel is not None and not channel.closed:
            await channel.close(code=code, reason=reason, initiated_by=close_reason)
        await self._emit(EVENT_SESSION_SUSPENDED, session, reason=reason)
        return True

    async def _grace_expiry(self, session: Session) -> None:
        await asyncio.sleep(self.config.reconnect_grace)
        logger.info(f"Session {session.short_id} reconnect grace expired")
        await self.close_session(session, "reconnect grace expired")

    async def close_session(self, session: Session, reason: str, code: int = CLOSE_NORMAL) -> bool:
        """Draining -> Closed: release the tunnel, fail pending requests, drop the session."""
        async with session.lock:
            if session.state in TERMINAL_STATES:
                return False
            session.state = SessionState.DRAINING
            session.close_reason = reason
            grace_task, session.grace_task = session.grace_task, None

        if grace_task is not None and grace_task is not asyncio.current_task():
            grace_task.cancel()
        self.heartbeat.untrack(session.id)
        logger.info(f"Session {session.short_id} draining: {reason}")

        cancelled = self._cancel_inflight(session, reason)
        if cancelled:
            logger.info(f"Cancelled {cancelled} in-flight requests on {session.short_id}")

        async with session.tunnel_lock:
            if session.tunnel is not None:
                await self.pool.release(session.tunnel)
                session.tunnel = None
                session.tunnel_users = 0
        failed = session.fail_pending(reason)
        if failed:
            logger.info(f"Failed {failed} pending requests on {session.short_id}")

        channel = session.channel
        if channel is not None:
            await channel.close(code=code, reason=reason[:120])

        async with session.lock:
            session.channel = None
            session.outbox.clear()
            session.state = SessionState.CLOSED
        self._sessions.pop(session.id, None)
        logger.info(f"Session {session.short_id} closed")
        await self._emit(EVENT_SESSION_CLOSED, session, reason=reason)
        return True

    def _cancel_inflight(self, session: Session, reason: str) -> int:
        """Cancel running client requests and answer each with SessionTerminated."""
        current = asyncio.current_task()
        cancelled = 0
        for request_id, task in list(session.inflight.items()):
            if task is current or task.done():
                continue
            task.cancel()
            session.deliver(SessionTerminated(session.id, reason).to_envelope(request_id))
            cancelled += 1
        session.inflight.clear()
        return cancelled

    async def _emit(self, event: str, session: Session, **data) -> None:
        for listener in self._listeners:
            try:
                result = listener(event, session)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Lifecycle listener failed for {event}")
        if self.webhooks is not None:
            self.webhooks.dispatch(EventType(event), session.id, data)

    # ------------------------------------------------------------------
    # Idle sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in session sweep: {e}")

    async def sweep(self) -> int:
        """Close sessions with no request/response/event traffic inside the idle timeout."""
        closed = 0
        for session in self.sessions():
            if session.state in TERMINAL_STATES:
                continue
            if session.idle_for() > self.config.idle_timeout:
                if await self.close_session(session, "idle timeout"):
                    closed += 1
        return closed

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    async def _send_ping(self, session_id: str, ping: Envelope) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.channel is not None:
            session.channel.send(ping)

    async def handle_protocol_error(
        self, session: Session, error: DecodeError | UnknownType
    ) -> None:
        """Answer an undecodable frame with an error envelope; the session carries on."""
        session.deliver(error.to_envelope(error.correlation_id))

    async def handle_envelope(self, session: Session, envelope: Envelope) -> None:
        """Route one inbound envelope. Never waits on op handlers."""
        self.heartbeat.record_pong(session.id)
        msg_type = envelope.type

        if msg_type is MessageType.REQUEST:
            session.touch()
            if session.state in TERMINAL_STATES:
                session.deliver(
                    SessionTerminated(session.id, session.close_reason or "").to_envelope(
                        envelope.id
                    )
                )
                return
            session.inflight[envelope.id] = self._spawn(self._run_handler(session, envelope))

        elif msg_type in (MessageType.RESPONSE, MessageType.ERROR):
            session.touch()
            if not session.resolve(envelope) and msg_type is MessageType.ERROR:
                logger.warning(
                    f"Session {session.short_id} reported error: "
                    f"{envelope.payload.get('kind')}: {envelope.payload.get('message')}"
                )

        elif msg_type is MessageType.EVENT:
            session.touch()
            await session.emit_event(envelope.payload["name"], envelope.payload.get("data"))

        elif msg_type is MessageType.PING:
            session.deliver(Envelope.pong(envelope.payload.get("seq", 0)))

    async def _run_handler(self, session: Session, envelope: Envelope) -> None:
        op = envelope.op
        handler = self._handlers.get(op)
        timeout = self.config.request_timeout
        succeeded = False
        try:
            if handler is None:
                raise UnknownOperation(op, list(self._handlers))
            result = await asyncio.wait_for(handler(session, envelope.args), timeout)
            reply = Envelope.response(envelope.id, result)
            succeeded = True
        except asyncio.TimeoutError:
            logger.warning(f"Op {op} on {session.short_id} exceeded {timeout}s")
            reply = RequestTimeout(op, timeout).to_envelope(envelope.id)
        except GatewayError as e:
            logger.info(f"Op {op} on {session.short_id} failed: {e.kind}: {e.message}")
            reply = e.to_envelope(envelope.id)
        except Exception as e:
            logger.exception(f"Op {op} on {session.short_id} raised")
            reply = OperationFailed(op, str(e) or type(e).__name__).to_envelope(envelope.id)

        # Once off the in-flight table, draining will not answer this id again
        if session.inflight.get(envelope.id) is asyncio.current_task():
            del session.inflight[envelope.id]
        try:
            session.deliver(reply)
        except MalformedMessage as e:
            session.deliver(OperationFailed(op, e.message).to_envelope(envelope.id))
        session.touch()

        if succeeded and op == OP_SESSION_CLOSE:
            await self.close_session(session, "closed by client")

    # ------------------------------------------------------------------
    # Built-in ops
    # ------------------------------------------------------------------

    async def _borrow(self, session: Session, args: dict) -> tuple[TunnelHandle, bool]:
        """
        Borrow a tunnel to the requested target for one operation.

        The session keeps one tunnel between requests. Switching targets
        releases it, unless another operation is still using it; then this
        operation gets a handle of its own instead.

        Returns:
            (handle, shared): shared handles belong to the session, the
            others must be released by the caller
        """
        host = _require_str(args, "host")
        port = _optional_int(args, "port", 22)
        credential_id = args.get("credential", DEFAULT_CREDENTIAL)
        if not isinstance(credential_id, str) or not credential_id:
            raise InvalidArgument("credential", "must be a credential id")
        key = TunnelKey(host, port, credential_id)

        async with session.tunnel_lock:
            current = session.tunnel
            if current is not None and current.key == key:
                session.tunnel_users += 1
                return current, True
            if current is not None and session.tunnel_users:
                logger.debug(
                    f"Session {session.short_id} tunnel {current.key} busy, "
                    f"borrowing {key} for one request"
                )
                return await self._acquire(session, key), False
            if current is not None:
                await self.pool.release(current)
                session.tunnel = None

            session.tunnel = await self._acquire(session, key)
            session.tunnel_users = 1
            return session.tunnel, True

    async def _acquire(self, session: Session, key: TunnelKey) -> TunnelHandle:
        handle = await self.pool.acquire(key.host, key.port, key.credential_id)
        if session.state in TERMINAL_STATES:
            await self.pool.release(handle)
            raise SessionTerminated(session.id, session.close_reason or "session closed")
        return handle

    async def _give_back(self, session: Session, handle: TunnelHandle, shared: bool) -> None:
        if not shared:
            await self.pool.release(handle)
            return
        async with session.tunnel_lock:
            if session.tunnel == handle and session.tunnel_users > 0:
                session.tunnel_users -= 1

    async def _forget_tunnel(self, session: Session, handle: TunnelHandle) -> None:
        async with session.tunnel_lock:
            if session.tunnel == handle:
                session.tunnel = None
                session.tunnel_users = 0

    async def _with_tunnel(self, session: Session, args: dict, operation):
        handle, shared = await self._borrow(session, args)
        try:
            return await operation(handle)
        except TunnelUnavailable:
            if not self.pool.is_live(handle):
                await self._forget_tunnel(session, handle)
                if self.webhooks is not None:
                    self.webhooks.dispatch(
                        EventType.TUNNEL_DEAD, session.id, {"tunnel": str(handle.key)}
                    )
            raise
        finally:
            await self._give_back(session, handle, shared)

    async def _op_ping_remote(self, session: Session, args: dict) -> dict:
        latency = await self._with_tunnel(session, args, self.pool.probe)
        return {
            "host": args["host"],
            "port": args.get("port", 22),
            "alive": True,
            "latency_ms": round(latency, 3),
        }

    async def _op_exec(self, session: Session, args: dict) -> dict:
        command = _require_str(args, "command")
        env = args.get("env")
        if env is not None and not isinstance(env, dict):
            raise InvalidArgument("env", "must be an object")
        timeout = args.get("timeout")
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            raise InvalidArgument("timeout", "must be a positive number of seconds")

        return await self._with_tunnel(
            session,
            args,
            lambda handle: self.pool.exec(
                handle, command, env=env, timeout=timeout or self.config.request_timeout
            ),
        )

    async def _op_relay(self, session: Session, args: dict) -> dict:
        target_port = _optional_int(args, "target_port", 0)
        target_host = args.get("target_host", "127.0.0.1")
        if not isinstance(target_host, str) or not target_host:
            raise InvalidArgument("target_host", "must be a host name")
        raw = args.get("envelope")
        if not isinstance(raw, dict):
            raise InvalidArgument("envelope", "required object")
        try:
            inner = decode(json.dumps(raw))
        except (DecodeError, UnknownType) as e:
            raise InvalidArgument("envelope", e.message) from e

        # Leave headroom under the request timeout for the reply envelope
        timeout = self.config.request_timeout * 0.9
        reply = await self._with_tunnel(
            session,
            args,
            lambda handle: self.pool.relay(
                handle, inner, target_port, target_host=target_host, timeout=timeout
            ),
        )
        return reply.to_dict()

    async def _op_release_tunnel(self, session: Session, args: dict) -> dict:
        async with session.tunnel_lock:
            if session.tunnel is None:
                return {"released": False}
            released = await self.pool.release(session.tunnel)
            session.tunnel = None
            session.tunnel_users = 0
        return {"released": released}

    async def _op_session_info(self, session: Session, args: dict) -> dict:
        return session.snapshot()

    async def _op_session_close(self, session: Session, args: dict) -> dict:
        return {"closed": True}
