"""Pool of shared SSH tunnels to remote hosts."""

import asyncio
import itertools
import logging
import re
import shlex
import socket
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from time import monotonic
from typing import Callable, NamedTuple

import paramiko

from shared.config import CredentialStore, GatewayConfig, SshCredential
from shared.protocol import (
    Envelope,
    InvalidArgument,
    OperationFailed,
    RequestTimeout,
    TunnelEstablishError,
    TunnelUnavailable,
    decode,
    encode,
    frame,
    read_frame,
)

logger = logging.getLogger(__name__)

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class TunnelKey(NamedTuple):
    """Pool key: one tunnel per (host, port, credential id)."""

    host: str
    port: int
    credential_id: str

    def __str__(self) -> str:
        return f"{self.credential_id}@{self.host}:{self.port}"


class TunnelHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DEAD = "dead"


@dataclass
class Tunnel:
    """A pooled SSH connection. Only the pool touches these directly."""

    key: TunnelKey
    tunnel_id: int
    client: paramiko.SSHClient
    created_at: float
    last_used: float
    health: TunnelHealth = TunnelHealth.HEALTHY
    probe_failures: int = 0
    tickets: set[int] = field(default_factory=set)

    @property
    def refcount(self) -> int:
        return len(self.tickets)

    @property
    def usable(self) -> bool:
        if self.health is TunnelHealth.DEAD:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def to_dict(self, now: float) -> dict:
        return {
            "tunnel_id": self.tunnel_id,
            "host": self.key.host,
            "port": self.key.port,
            "credential_id": self.key.credential_id,
            "health": self.health.value,
            "refcount": self.refcount,
            "idle_seconds": round(now - self.last_used, 1),
        }


@dataclass(frozen=True)
class TunnelHandle:
    """Borrowed reference to a pooled tunnel, resolved through the pool on every use."""

    key: TunnelKey
    tunnel_id: int
    ticket: int


@dataclass
class TunnelPoolConfig:
    """Configuration for the tunnel pool."""

    connect_timeout: float = 10.0  # Seconds allowed for SSH establishment
    idle_grace: float = 60.0  # Unreferenced tunnels older than this are evicted
    reap_interval: float = 15.0  # Seconds between reaper passes
    max_probe_failures: int = 2  # Consecutive failed probes before a tunnel is dead

    @classmethod
    def from_gateway_config(cls, config: GatewayConfig) -> "TunnelPoolConfig":
        idle_grace = config.seconds(config.tunnel_idle_grace_ms)
        return cls(
            connect_timeout=config.seconds(config.tunnel_connect_timeout_ms),
            idle_grace=idle_grace,
            reap_interval=max(min(idle_grace / 2, 15.0), 0.05),
            max_probe_failures=config.tunnel_max_probe_failures,
        )


class ParamikoConnector:
    """Opens SSH connections with paramiko (blocking; called from a worker thread)."""

    def __init__(self, keepalive_interval: int = 30, known_hosts: str | None = None):
        self.keepalive_interval = keepalive_interval
        self.known_hosts = known_hosts

    def connect(
        self, key: TunnelKey, credential: SshCredential, timeout: float
    ) -> paramiko.SSHClient:
        connect_kwargs = {
            "hostname": key.host,
            "port": key.port,
            "username": credential.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }

        if credential.password:
            connect_kwargs["password"] = credential.password
        if credential.key_file:
            key_path = Path(credential.key_file).expanduser()
            if not key_path.exists():
                raise TunnelEstablishError(key.host, key.port, f"key file not found: {key_path}")
            connect_kwargs["key_filename"] = str(key_path)
            if credential.passphrase:
                connect_kwargs["passphrase"] = credential.passphrase
        if not credential.password and not credential.key_file:
            connect_kwargs["allow_agent"] = True
            connect_kwargs["look_for_keys"] = True

        client = paramiko.SSHClient()
        if self.known_hosts:
            client.load_host_keys(str(Path(self.known_hosts).expanduser()))
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        logger.info(f"Opening SSH connection to {credential.username}@{key.host}:{key.port}")
        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise TunnelEstablishError(key.host, key.port, f"authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TunnelEstablishError(key.host, key.port, str(e) or type(e).__name__) from e

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(self.keepalive_interval)
        return client


class TunnelPool:
    """
    Shares SSH connections between sessions.

    Tunnels are keyed by (host, port, credential id). acquire/release/invalidate
    are serialized per key; different keys proceed independently. Concurrent
    acquisitions of a missing key share a single establishment attempt.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        connector: ParamikoConnector | None = None,
        config: TunnelPoolConfig | None = None,
        clock: Callable[[], float] = monotonic,
    ):
        self.credentials = credentials
        self.connector = connector or ParamikoConnector()
        self.config = config or TunnelPoolConfig()
        self._clock = clock
        self._tunnels: dict[TunnelKey, Tunnel] = {}
        self._by_id: dict[int, Tunnel] = {}
        self._locks: dict[TunnelKey, asyncio.Lock] = {}
        self._establishing: dict[TunnelKey, asyncio.Task] = {}
        self._closing: set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._tickets = itertools.count(1)
        self._reaper: asyncio.Task | None = None
        self._closed = False

    def _lock_for(self, key: TunnelKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Borrowing
    # ------------------------------------------------------------------

    async def acquire(self, host: str, port: int, credential_id: str) -> TunnelHandle:
        """
        Borrow a tunnel to host:port authenticated with ``credential_id``.

        Raises:
            TunnelEstablishError: If a new connection cannot be established
        """
        if self._closed:
            raise TunnelEstablishError(host, port, "tunnel pool closed")

        key = TunnelKey(host, int(port), credential_id)

        async with self._lock_for(key):
            tunnel = self._tunnels.get(key)
            if tunnel is not None:
                if tunnel.usable:
                    return self._borrow(tunnel)
                logger.info(f"Discarding unusable tunnel {key}")
                self._remove(tunnel)

            pending = self._establishing.get(key)
            if pending is None:
                pending = asyncio.create_task(self._establish(key))
                self._establishing[key] = pending

        tunnel = await asyncio.shield(pending)

        async with self._lock_for(key):
            if self._by_id.get(tunnel.tunnel_id) is not tunnel or not tunnel.usable:
                raise TunnelUnavailable(host, port, "tunnel closed before it could be borrowed")
            return self._borrow(tunnel)

    def _borrow(self, tunnel: Tunnel) -> TunnelHandle:
        ticket = next(self._tickets)
        tunnel.tickets.add(ticket)
        tunnel.last_used = self._clock()
        logger.debug(f"Borrowed tunnel {tunnel.key} (refcount={tunnel.refcount})")
        return TunnelHandle(key=tunnel.key, tunnel_id=tunnel.tunnel_id, ticket=ticket)

    async def _establish(self, key: TunnelKey) -> Tunnel:
        try:
            credential = self.credentials.get(key.credential_id)
            if credential is None:
                raise TunnelEstablishError(
                    key.host, key.port, f"unknown credential '{key.credential_id}'"
                )

            timeout = self.config.connect_timeout
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(None, self.connector.connect, key, credential, timeout)
            try:
                client = await asyncio.wait_for(asyncio.shield(future), timeout)
            except asyncio.TimeoutError:
                future.add_done_callback(_close_late_client)
                raise TunnelEstablishError(
                    key.host, key.port, f"connect timed out after {timeout:g}s"
                ) from None
            except TunnelEstablishError:
                raise
            except Exception as e:
                raise TunnelEstablishError(key.host, key.port, str(e) or type(e).__name__) from e

            now = self._clock()
            tunnel = Tunnel(
                key=key,
                tunnel_id=next(self._ids),
                client=client,
                created_at=now,
                last_used=now,
            )
            async with self._lock_for(key):
                if self._closed:
                    self._close_client(tunnel)
                    raise TunnelEstablishError(key.host, key.port, "tunnel pool closed")
                self._tunnels[key] = tunnel
                self._by_id[tunnel.tunnel_id] = tunnel
            logger.info(f"Tunnel {tunnel.tunnel_id} established to {key}")
            return tunnel
        except TunnelEstablishError as e:
            logger.warning(f"Tunnel establishment to {key} failed: {e.details.get('reason')}")
            raise
        finally:
            self._establishing.pop(key, None)

    async def release(self, handle: TunnelHandle) -> bool:
        """Return a borrowed handle. Never closes the tunnel; the reaper does that."""
        async with self._lock_for(handle.key):
            tunnel = self._by_id.get(handle.tunnel_id)
            if tunnel is None or handle.ticket not in tunnel.tickets:
                return False
            tunnel.tickets.discard(handle.ticket)
            tunnel.last_used = self._clock()
            logger.debug(f"Released tunnel {tunnel.key} (refcount={tunnel.refcount})")
            return True

    async def invalidate(self, handle: TunnelHandle, reason: str = "invalidated") -> bool:
        """Mark a tunnel dead and drop it from the pool immediately."""
        async with self._lock_for(handle.key):
            tunnel = self._by_id.get(handle.tunnel_id)
            if tunnel is None:
                return False
            logger.warning(
                f"Invalidating tunnel {tunnel.tunnel_id} to {tunnel.key} "
                f"({reason}, refcount={tunnel.refcount})"
            )
            self._remove(tunnel)
            return True

    def _remove(self, tunnel: Tunnel) -> None:
        """Drop a tunnel from the maps and close it in the background. Caller holds the key lock."""
        tunnel.health = TunnelHealth.DEAD
        if self._tunnels.get(tunnel.key) is tunnel:
            del self._tunnels[tunnel.key]
        self._by_id.pop(tunnel.tunnel_id, None)
        self._close_client(tunnel)

    def _close_client(self, tunnel: Tunnel) -> None:
        task = asyncio.create_task(asyncio.to_thread(tunnel.client.close))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def is_live(self, handle: TunnelHandle) -> bool:
        """Whether the tunnel behind a handle is still pooled and not dead."""
        tunnel = self._by_id.get(handle.tunnel_id)
        return tunnel is not None and tunnel.health is not TunnelHealth.DEAD

    def _resolve(self, handle: TunnelHandle) -> Tunnel:
        tunnel = self._by_id.get(handle.tunnel_id)
        if tunnel is None or tunnel.health is TunnelHealth.DEAD:
            raise TunnelUnavailable(handle.key.host, handle.key.port, "tunnel was invalidated")
        if handle.ticket not in tunnel.tickets:
            raise TunnelUnavailable(handle.key.host, handle.key.port, "handle already released")
        tunnel.last_used = self._clock()
        return tunnel

    # ------------------------------------------------------------------
    # Operations over a borrowed tunnel
    # ------------------------------------------------------------------

    async def _run(self, handle: TunnelHandle, op: str, func, *args):
        """Run a blocking tunnel operation in a worker thread; I/O errors kill the tunnel."""
        tunnel = self._resolve(handle)
        try:
            return await asyncio.to_thread(func, tunnel.client, *args)
        except paramiko.ChannelException as e:
            # Remote side refused the channel; the connection itself is fine
            raise OperationFailed(op, f"channel refused: {e}") from e
        except (paramiko.SSHException, EOFError, OSError) as e:
            if isinstance(e, (socket.timeout, TimeoutError)):
                raise
            await self.invalidate(handle, reason=f"{op} failed: {e}")
            raise TunnelUnavailable(handle.key.host, handle.key.port, str(e) or "I/O error") from e

    async def probe(self, handle: TunnelHandle) -> float:
        """Round-trip the SSH transport, return latency in milliseconds."""
        start = monotonic()
        await self._run(handle, "probe", _probe_blocking)
        return (monotonic() - start) * 1000

    async def exec(
        self,
        handle: TunnelHandle,
        command: str,
        env: dict | None = None,
        timeout: float | None = None,
    ) -> dict:
        """Run a command on the remote host."""
        full_command = build_command(command, env)
        try:
            return await self._run(handle, "exec", _exec_blocking, full_command, timeout)
        except (socket.timeout, TimeoutError):
            raise RequestTimeout("exec", timeout or 0) from None

    async def relay(
        self,
        handle: TunnelHandle,
        envelope: Envelope,
        target_port: int,
        target_host: str = "127.0.0.1",
        timeout: float = 10.0,
    ) -> Envelope:
        """Send one framed envelope to a port reachable from the SSH host, return the reply."""
        data = encode(envelope)
        try:
            reply = await self._run(
                handle, "relay", _relay_blocking, target_host, target_port, data, timeout
            )
        except (socket.timeout, TimeoutError):
            raise RequestTimeout("relay", timeout) from None
        return decode(reply)

    # ------------------------------------------------------------------
    # Reaper and health checks
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background reaper."""
        if self._reaper:
            logger.warning("Tunnel reaper already running")
            return
        self._reaper = asyncio.create_task(self._reap_loop())
        logger.info(
            f"Tunnel pool started (idle_grace={self.config.idle_grace}s, "
            f"connect_timeout={self.config.connect_timeout}s)"
        )

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reap_interval)
            try:
                await self.reap()
            except Exception as e:
                logger.error(f"Error in tunnel reaper: {e}")

    async def reap(self) -> int:
        """Probe every tunnel; evict dead ones and idle unreferenced ones. Returns evictions."""
        evicted = 0
        for tunnel in list(self._by_id.values()):
            alive = await asyncio.to_thread(_transport_alive, tunnel.client)
            async with self._lock_for(tunnel.key):
                if self._by_id.get(tunnel.tunnel_id) is not tunnel:
                    continue

                if alive:
                    tunnel.probe_failures = 0
                    tunnel.health = TunnelHealth.HEALTHY
                else:
                    tunnel.probe_failures += 1
                    tunnel.health = (
                        TunnelHealth.DEAD
                        if tunnel.probe_failures >= self.config.max_probe_failures
                        else TunnelHealth.DEGRADED
                    )
                    logger.warning(
                        f"Tunnel {tunnel.key} probe failed "
                        f"({tunnel.probe_failures}/{self.config.max_probe_failures})"
                    )

                idle = self._clock() - tunnel.last_used
                if tunnel.health is TunnelHealth.DEAD:
                    logger.info(f"Evicting dead tunnel {tunnel.key}")
                elif tunnel.refcount == 0 and idle > self.config.idle_grace:
                    logger.info(f"Evicting idle tunnel {tunnel.key} (idle {idle:.1f}s)")
                else:
                    continue
                self._remove(tunnel)
                evicted += 1
        return evicted

    async def close(self) -> None:
        """Tear down every tunnel and stop the reaper."""
        self._closed = True
        if self._reaper:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        for task in list(self._establishing.values()):
            task.cancel()

        for tunnel in list(self._by_id.values()):
            async with self._lock_for(tunnel.key):
                self._remove(tunnel)

        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info("Tunnel pool closed")

    def stats(self) -> list[dict]:
        now = self._clock()
        return [tunnel.to_dict(now) for tunnel in self._by_id.values()]

    def __len__(self) -> int:
        return len(self._by_id)


def build_command(command: str, env: dict | None = None) -> str:
    """Prefix a command with exported environment variables."""
    if not env:
        return command
    exports = []
    for name, value in env.items():
        if not _ENV_NAME.match(name):
            raise InvalidArgument("env", f"invalid variable name {name!r}")
        exports.append(f"export {name}={shlex.quote(str(value))}")
    return " && ".join(exports + [command])


def _close_late_client(future: asyncio.Future) -> None:
    """Close a connection that finished after its establishment already timed out."""
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


def _transport_alive(client: paramiko.SSHClient) -> bool:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        return False
    try:
        transport.send_ignore()
    except (paramiko.SSHException, EOFError, OSError):
        return False
    return True


def _probe_blocking(client: paramiko.SSHClient) -> None:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise paramiko.SSHException("transport is not active")
    # Either reply proves the peer is there; only a dead transport fails
    transport.global_request("keepalive@openssh.com", wait=True)
    if not transport.is_active():
        raise paramiko.SSHException("transport closed during probe")


def _exec_blocking(client: paramiko.SSHClient, command: str, timeout: float | None) -> dict:
    stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
    stdin.close()
    out = stdout.read()
    err = stderr.read()
    exit_status = stdout.channel.recv_exit_status()
    return {
        "exit_status": exit_status,
        "stdout": out.decode("utf-8", errors="replace"),
        "stderr": err.decode("utf-8", errors="replace"),
    }


def _relay_blocking(
    client: paramiko.SSHClient,
    target_host: str,
    target_port: int,
    data: bytes,
    timeout: float,
) -> bytes:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise paramiko.SSHException("transport is not active")

    chan = transport.open_channel(
        "direct-tcpip", (target_host, target_port), ("127.0.0.1", 0), timeout=timeout
    )
    try:
        chan.settimeout(timeout)
        chan.sendall(frame(data))
        return read_frame(chan.recv)
    finally:
        chan.close()
