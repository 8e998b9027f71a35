"""Background heartbeat monitor for detecting unresponsive sessions."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from time import monotonic

from shared.config import GatewayConfig
from shared.protocol import Envelope

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatConfig:
    """Configuration for the heartbeat monitor."""

    ping_interval: float = 15.0  # Seconds between pings
    pong_timeout: float = 45.0  # Silence after which a session is unresponsive

    @classmethod
    def from_gateway_config(cls, config: GatewayConfig) -> "HeartbeatConfig":
        return cls(
            ping_interval=config.seconds(config.ping_interval_ms),
            pong_timeout=config.seconds(config.pong_timeout_ms),
        )


@dataclass
class SessionLiveness:
    """Tracks liveness for a single session."""

    last_pong: float = field(default_factory=monotonic)
    seq: int = 0
    pings_sent: int = 0


class HeartbeatMonitor:
    """
    Background task that pings every tracked session.

    Only raises the liveness signal: sessions silent for longer than the pong
    timeout are dropped from tracking and reported through ``on_unresponsive``.
    Closing connections is left to the session manager.
    """

    def __init__(
        self,
        send_ping: Callable[[str, Envelope], Awaitable[None]],
        on_unresponsive: Callable[[str], Awaitable[None]],
        config: HeartbeatConfig | None = None,
        clock: Callable[[], float] = monotonic,
    ):
        self.send_ping = send_ping
        self.on_unresponsive = on_unresponsive
        self.config = config or HeartbeatConfig()
        self._clock = clock
        self._sessions: dict[str, SessionLiveness] = {}
        self._task: asyncio.Task | None = None
        self._running = False

    def track(self, session_id: str) -> None:
        """Start (or restart) liveness tracking, counting from now."""
        self._sessions[session_id] = SessionLiveness(last_pong=self._clock())

    def untrack(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def is_tracked(self, session_id: str) -> bool:
        return session_id in self._sessions

    def record_pong(self, session_id: str) -> None:
        """Note a pong (or any proof of life) from a session."""
        liveness = self._sessions.get(session_id)
        if liveness:
            liveness.last_pong = self._clock()

    def last_pong(self, session_id: str) -> float | None:
        liveness = self._sessions.get(session_id)
        return liveness.last_pong if liveness else None

    async def start(self) -> None:
        """Start the background ping task."""
        if self._running:
            logger.warning("Heartbeat monitor already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(
            f"Heartbeat monitor started (interval={self.config.ping_interval}s, "
            f"timeout={self.config.pong_timeout}s)"
        )

    async def stop(self) -> None:
        """Stop the background ping task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Heartbeat monitor stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.check_all()
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}")

            await asyncio.sleep(self.config.ping_interval)

    async def check_all(self) -> None:
        """Expire silent sessions and ping the rest."""
        now = self._clock()
        expired = []
        to_ping = []

        for session_id, liveness in list(self._sessions.items()):
            if now - liveness.last_pong > self.config.pong_timeout:
                expired.append(session_id)
            else:
                to_ping.append((session_id, liveness))

        for session_id in expired:
            self.untrack(session_id)
            logger.warning(
                f"Session {session_id[:8]}... unresponsive "
                f"(no pong for {self.config.pong_timeout}s)"
            )
            try:
                await self.on_unresponsive(session_id)
            except Exception as e:
                logger.error(f"Error signalling unresponsive session {session_id[:8]}...: {e}")

        results = await asyncio.gather(
            *[self._ping(session_id, liveness) for session_id, liveness in to_ping],
            return_exceptions=True,
        )
        for (session_id, _), result in zip(to_ping, results):
            if isinstance(result, Exception):
                logger.debug(f"Ping to {session_id[:8]}... failed: {result}")

    async def _ping(self, session_id: str, liveness: SessionLiveness) -> None:
        liveness.seq += 1
        liveness.pings_sent += 1
        await self.send_ping(session_id, Envelope.ping(liveness.seq))
