"""WebSocket front door: handshake validation, session creation and resume."""

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from http import HTTPStatus
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import serve

from gateway.control_channel import ControlChannel
from gateway.heartbeat import HeartbeatConfig
from gateway.session import Session, SessionState
from gateway.session_manager import OpHandler, SessionManager, SessionManagerConfig
from gateway.tunnel_pool import ParamikoConnector, TunnelPool, TunnelPoolConfig
from gateway.webhooks import WebhookDispatcher
from shared.config import GatewayConfig
from shared.protocol import HandshakeRejected
from shared.version import PROTOCOL_VERSION, SUPPORTED_PROTOCOL_VERSIONS, __version__

logger = logging.getLogger(__name__)

PROTOCOL_HEADER = "X-Gateway-Protocol"
HEALTH_PATH = "/healthz"

# Policy violation; sent when a session binding loses a race after the handshake
CLOSE_REJECTED = 1008


class Gateway:
    """
    Remote Session Gateway.

    Accepts WebSocket connections on ``ws://host:port/[session-id]``. A bare
    path opens a new session; a session id resumes a suspended one.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        connector: ParamikoConnector | None = None,
        webhooks: WebhookDispatcher | None = None,
    ):
        self.config = config or GatewayConfig()
        self.webhooks = webhooks or WebhookDispatcher(self.config.webhook_url)
        self.pool = TunnelPool(
            self.config.credential_store(),
            connector=connector,
            config=TunnelPoolConfig.from_gateway_config(self.config),
        )
        self.manager = SessionManager(
            self.pool,
            config=SessionManagerConfig.from_gateway_config(self.config),
            heartbeat_config=HeartbeatConfig.from_gateway_config(self.config),
            webhooks=self.webhooks,
        )
        self._server = None
        self._connect_callbacks: list[Callable] = []
        self._waiters: dict[str | None, list[asyncio.Future]] = {}

    async def __aenter__(self) -> "Gateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        if self._server is None:
            return self.config.port
        return next(iter(self._server.sockets)).getsockname()[1]

    @property
    def running(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        if self._server is not None:
            logger.warning("Gateway already started")
            return

        await self.webhooks.start()
        await self.pool.start()
        await self.manager.start()
        self._server = await serve(
            self._handle_connection,
            host=self.config.host,
            port=self.config.port,
            process_request=self._process_request,
            # Liveness is tracked with protocol-level ping/pong envelopes
            ping_interval=None,
            max_size=self.config.max_message_size,
        )
        logger.info(
            f"Gateway {__version__} listening on ws://{self.config.host}:{self.port} "
            f"(protocol v{PROTOCOL_VERSION})"
        )

    async def stop(self) -> None:
        """Close every session, stop accepting connections and tear down tunnels."""
        if self._server is None:
            logger.warning("Gateway not started")
            return

        logger.info("Stopping gateway...")
        await self.manager.stop()
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        await self.pool.close()
        await self.webhooks.stop()

        for waiters in self._waiters.values():
            for waiter in waiters:
                waiter.cancel()
        self._waiters.clear()
        logger.info("Gateway stopped")

    async def serve_forever(self) -> None:
        """Run until cancelled."""
        if self._server is None:
            await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sessions(self) -> list[Session]:
        return self.manager.sessions()

    def get_session(self, session_id: str) -> Session | None:
        return self.manager.get(session_id)

    def register_handler(self, op: str, handler: OpHandler) -> None:
        self.manager.register_handler(op, handler)

    def on_connect(self, callback: Callable) -> None:
        """Call ``callback(session, resumed)`` whenever a client connects or resumes."""
        self._connect_callbacks.append(callback)

    async def wait_for_session(
        self, session_id: str | None = None, timeout: float | None = None
    ) -> Session | None:
        """
        Wait until a session is connected.

        With a session id, returns once that session is Active; without one,
        returns the next session that connects. Returns None on timeout.
        """
        if session_id is not None:
            session = self.manager.get(session_id)
            if session is not None and session.state is SessionState.ACTIVE:
                return session

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(session_id, []).append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            waiters = self._waiters.get(session_id, [])
            if waiter in waiters:
                waiters.remove(waiter)

    def health(self) -> dict:
        return {
            "status": "healthy",
            "service": "rsgateway",
            "version": __version__,
            "protocol": PROTOCOL_VERSION,
            "sessions": self.manager.counts(),
            "total_sessions": len(self.manager),
            "tunnels": self.pool.stats(),
        }

    # ------------------------------------------------------------------
    # Handshake and connection handling
    # ------------------------------------------------------------------

    def _process_request(self, connection, request):
        """
        Validate the upgrade request before the handshake completes.

        Returns None to accept, or an HTTP response to reject.
        """
        parts = urlsplit(request.path)

        if parts.path == HEALTH_PATH:
            response = connection.respond(HTTPStatus.OK, json.dumps(self.health()))
            del response.headers["Content-Type"]
            response.headers["Content-Type"] = "application/json"
            return response

        version = request.headers.get(PROTOCOL_HEADER)
        if version is None:
            version = parse_qs(parts.query).get("v", [PROTOCOL_VERSION])[0]
        if version not in SUPPORTED_PROTOCOL_VERSIONS:
            logger.warning(f"Rejected handshake: unsupported protocol version {version!r}")
            return connection.respond(
                HTTPStatus.BAD_REQUEST, f"Unsupported protocol version: {version}\n"
            )

        token = parts.path.strip("/") or None
        if token is not None:
            try:
                self.manager.check_resumable(token)
            except HandshakeRejected as e:
                logger.warning(f"Rejected resume of {token[:8]}...: {e.details['reason']}")
                return connection.respond(HTTPStatus(e.status), f"{e.message}\n")

        connection.resume_token = token
        return None

    async def _handle_connection(self, websocket) -> None:
        channel = ControlChannel(websocket)
        token = getattr(websocket, "resume_token", None)

        try:
            if token:
                session = await self.manager.resume_session(token, channel)
            else:
                session = await self.manager.open_session(channel)
        except HandshakeRejected as e:
            logger.warning(f"Connection from {channel.remote_address} rejected: {e.message}")
            await websocket.close(CLOSE_REJECTED, e.message[:120])
            return

        # Callbacks may issue requests to the client, so the reader must already be running
        reader = asyncio.create_task(channel.run())
        await self._notify_connect(session, resumed=token is not None)
        reason = await reader
        logger.debug(f"Connection for {session.short_id} ended ({reason.value})")

    async def _notify_connect(self, session: Session, resumed: bool) -> None:
        for key in (session.id, None):
            for waiter in self._waiters.pop(key, []):
                if not waiter.done():
                    waiter.set_result(session)

        for callback in self._connect_callbacks:
            try:
                result = callback(session, resumed)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"on_connect callback failed for {session.short_id}")
