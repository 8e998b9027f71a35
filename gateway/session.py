"""Session model: state, pending-request table and outbound buffer."""

import asyncio
import inspect
import itertools
import logging
import secrets
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from time import monotonic
from typing import Any

from gateway.control_channel import ControlChannel
from gateway.tunnel_pool import TunnelHandle
from shared.protocol import (
    ChannelClosed,
    Envelope,
    MessageType,
    RemoteError,
    RequestTimeout,
    SessionTerminated,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DRAINING = "draining"
    CLOSED = "closed"


# States in which a session no longer accepts work
TERMINAL_STATES = frozenset({SessionState.DRAINING, SessionState.CLOSED})


def generate_session_id() -> str:
    """Opaque, unguessable session id; doubles as the resume token."""
    return secrets.token_urlsafe(18)


@dataclass
class PendingRequest:
    """A gateway-originated request waiting for its response."""

    id: str
    op: str
    future: asyncio.Future
    issued_at: float


class Session:
    """
    One logical client session.

    Owned by the SessionManager; state transitions happen under ``lock``.
    Outbound envelopes are sent straight to the bound control channel or,
    while there is none, kept in a bounded outbox until the client resumes.
    Client requests still being handled are tracked in ``inflight`` by id.
    """

    def __init__(
        self,
        session_id: str | None = None,
        request_timeout: float = 10.0,
        max_buffered: int = 1000,
        clock: Callable[[], float] = monotonic,
    ):
        self.id = session_id or generate_session_id()
        self.state = SessionState.CONNECTING
        self.request_timeout = request_timeout
        self.max_buffered = max_buffered
        self._clock = clock

        self.created_at = time.time()
        self.last_activity = clock()
        self.suspended_at: float | None = None
        self.close_reason: str | None = None

        self.channel: ControlChannel | None = None
        self.tunnel: TunnelHandle | None = None
        self.tunnel_users = 0
        self.pending: dict[str, PendingRequest] = {}
        self.inflight: dict[str, asyncio.Task] = {}
        self.outbox: deque[Envelope] = deque()
        self.dropped_envelopes = 0

        self.lock = asyncio.Lock()
        self.tunnel_lock = asyncio.Lock()
        self.grace_task: asyncio.Task | None = None

        self._listeners: dict[str, list[Callable]] = {}
        self._ids = itertools.count(1)

    def __repr__(self) -> str:
        return f"Session({self.id[:8]}..., {self.state.value})"

    @property
    def short_id(self) -> str:
        return f"{self.id[:8]}..."

    @property
    def connected(self) -> bool:
        return self.channel is not None and not self.channel.closed

    def touch(self) -> None:
        """Record request/response/event traffic for idle tracking."""
        self.last_activity = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self.last_activity

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def deliver(self, envelope: Envelope) -> bool:
        """
        Send an envelope now, or buffer it while the channel is down.

        Returns False if the envelope was dropped because the session is
        shutting down.
        """
        if self.state in TERMINAL_STATES and self.channel is None:
            logger.debug(f"Dropping {envelope.type.value} for closed session {self.short_id}")
            return False

        if self.channel is not None:
            try:
                self.channel.send(envelope)
                return True
            except ChannelClosed:
                pass

        self._buffer(envelope)
        return True

    def _buffer(self, envelope: Envelope) -> None:
        if self.max_buffered <= 0:
            self.dropped_envelopes += 1
            logger.warning(f"Session {self.short_id} has no channel, dropping {envelope.type.value}")
            return
        if len(self.outbox) >= self.max_buffered:
            dropped = self.outbox.popleft()
            self.dropped_envelopes += 1
            logger.warning(
                f"Session {self.short_id} outbox full ({self.max_buffered}), "
                f"dropped oldest {dropped.type.value}"
            )
        self.outbox.append(envelope)

    def flush(self) -> int:
        """Send buffered envelopes over the bound channel in order. Returns count sent."""
        sent = 0
        while self.outbox and self.channel is not None:
            envelope = self.outbox.popleft()
            try:
                self.channel.send(envelope)
            except ChannelClosed:
                self.outbox.appendleft(envelope)
                break
            sent += 1
        return sent

    # ------------------------------------------------------------------
    # Gateway-originated requests
    # ------------------------------------------------------------------

    def next_request_id(self) -> str:
        return f"gw-{next(self._ids)}"

    async def request(self, op: str, args: dict | None = None, timeout: float | None = None) -> dict:
        """
        Send a request to the client and wait for its response payload.

        Raises:
            RequestTimeout: If no response arrives within the timeout
            SessionTerminated: If the session closes first
            RemoteError: If the client answers with an error envelope
        """
        if self.state in TERMINAL_STATES:
            raise SessionTerminated(self.id, self.close_reason or "session closed")

        timeout = timeout if timeout is not None else self.request_timeout
        request_id = self.next_request_id()
        future = asyncio.get_running_loop().create_future()
        self.pending[request_id] = PendingRequest(
            id=request_id, op=op, future=future, issued_at=self._clock()
        )
        self.touch()

        try:
            self.deliver(Envelope.request(op, args, id=request_id))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Request {op} ({request_id}) to {self.short_id} timed out")
            raise RequestTimeout(op, timeout) from None
        finally:
            self.pending.pop(request_id, None)

    def resolve(self, envelope: Envelope) -> bool:
        """Complete the pending request matching a response or error envelope."""
        entry = self.pending.get(envelope.id) if envelope.id else None
        if entry is None or entry.future.done():
            logger.debug(
                f"Unmatched {envelope.type.value} id={envelope.id} on session {self.short_id}"
            )
            return False

        if envelope.type is MessageType.RESPONSE:
            entry.future.set_result(envelope.payload)
        else:
            entry.future.set_exception(RemoteError(envelope.payload))
        return True

    def fail_pending(self, reason: str) -> int:
        """Fail every pending request with SessionTerminated."""
        failed = 0
        for entry in list(self.pending.values()):
            if not entry.future.done():
                entry.future.set_exception(SessionTerminated(self.id, reason))
                failed += 1
        self.pending.clear()
        return failed

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def send_event(self, name: str, data: dict | None = None) -> bool:
        """Push an event to the client."""
        self.touch()
        return self.deliver(Envelope.event(name, data))

    def on_event(self, name: str, callback: Callable) -> None:
        """Register a listener for client events; ``"*"`` receives every event."""
        self._listeners.setdefault(name, []).append(callback)

    async def emit_event(self, name: str, data: Any) -> None:
        for callback in self._listeners.get(name, []) + self._listeners.get("*", []):
            try:
                result = callback(self, name, data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Event listener for {name} failed on session {self.short_id}")

    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        tunnel = None
        if self.tunnel is not None:
            tunnel = {
                "host": self.tunnel.key.host,
                "port": self.tunnel.key.port,
                "credential_id": self.tunnel.key.credential_id,
            }
        return {
            "session_id": self.id,
            "state": self.state.value,
            "created_at": self.created_at,
            "idle_seconds": round(self.idle_for(), 3),
            "connected": self.connected,
            "pending_requests": len(self.pending),
            "inflight_requests": len(self.inflight),
            "buffered_envelopes": len(self.outbox),
            "dropped_envelopes": self.dropped_envelopes,
            "tunnel": tunnel,
        }
