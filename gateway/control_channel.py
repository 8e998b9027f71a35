"""Ordered framed send/receive over one WebSocket connection."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from shared.protocol import ChannelClosed, DecodeError, Envelope, UnknownType, decode, encode

logger = logging.getLogger(__name__)

# Time allowed for queued frames to go out before a local close
DRAIN_TIMEOUT = 2.0


class CloseReason(str, Enum):
    """Who or what ended a control channel."""

    LOCAL = "local"
    REMOTE = "remote"
    TIMEOUT = "timeout"
    ERROR = "error"


class ControlChannel:
    """
    Wraps one WebSocket connection.

    Outbound envelopes go through a queue drained by a single writer task, so
    frames leave in the order ``send`` was called. Inbound frames are decoded
    and handed to ``on_receive`` one at a time in receipt order. The owner
    learns about closure exactly once through ``on_close``.
    """

    def __init__(
        self,
        websocket,
        session_id: str | None = None,
        on_receive: Callable[[Envelope], Awaitable[None]] | None = None,
        on_protocol_error: Callable[[DecodeError | UnknownType], Awaitable[None]] | None = None,
        on_close: Callable[["ControlChannel", CloseReason], Awaitable[None]] | None = None,
    ):
        self.websocket = websocket
        self.session_id = session_id
        self.on_receive = on_receive
        self.on_protocol_error = on_protocol_error
        self.on_close = on_close
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None
        self._closed = False
        self._released = False
        self.close_reason: CloseReason | None = None
        self.frames_in = 0
        self.frames_out = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_address(self):
        return getattr(self.websocket, "remote_address", None)

    def _label(self) -> str:
        return f"{self.session_id[:8]}..." if self.session_id else "unbound"

    def send(self, envelope: Envelope) -> None:
        """
        Queue an envelope for sending. Never blocks.

        Raises:
            ChannelClosed: If the channel has been closed
            MalformedMessage: If the envelope cannot be encoded
        """
        if self._closed:
            raise ChannelClosed(self.session_id)
        self._queue.put_nowait(encode(envelope))

    def start_writer(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())

    async def run(self) -> CloseReason:
        """Read frames until the connection ends; returns the close reason."""
        self.start_writer()
        reason = CloseReason.REMOTE
        try:
            async for message in self.websocket:
                self.frames_in += 1
                await self._dispatch(message)
        except ConnectionClosedError as e:
            logger.warning(f"Channel {self._label()} connection error: {e}")
            reason = CloseReason.ERROR
        except ConnectionClosed:
            logger.debug(f"Channel {self._label()} closed by peer")
        finally:
            await self.close(initiated_by=reason)
        return self.close_reason

    async def _dispatch(self, message: str | bytes) -> None:
        try:
            envelope = decode(message)
        except (DecodeError, UnknownType) as e:
            logger.warning(f"Channel {self._label()} protocol error: {e.message}")
            if self.on_protocol_error:
                await self.on_protocol_error(e)
            return

        if self.on_receive:
            try:
                await self.on_receive(envelope)
            except Exception:
                logger.exception(f"Error handling {envelope.type.value} on {self._label()}")

    async def _write_loop(self) -> None:
        while True:
            data = await self._queue.get()
            if data is None:
                return
            try:
                await self.websocket.send(data.decode("utf-8"))
                self.frames_out += 1
            except ConnectionClosedError as e:
                logger.warning(f"Channel {self._label()} send failed: {e}")
                self._close_task = asyncio.create_task(self.close(initiated_by=CloseReason.ERROR))
                return
            except ConnectionClosed:
                self._close_task = asyncio.create_task(self.close(initiated_by=CloseReason.REMOTE))
                return

    async def close(
        self,
        code: int = 1000,
        reason: str = "",
        initiated_by: CloseReason = CloseReason.LOCAL,
    ) -> None:
        """Close the channel. Safe to call any number of times from any task."""
        if self._closed:
            return
        self._closed = True
        self.close_reason = initiated_by

        writer = self._writer_task
        if writer is not None and writer is not asyncio.current_task():
            # Let already-queued frames go out before the socket closes
            self._queue.put_nowait(None)
            try:
                await asyncio.wait_for(asyncio.shield(writer), DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Channel {self._label()} drain timed out, dropping queued frames")
                writer.cancel()
                try:
                    await writer
                except asyncio.CancelledError:
                    pass

        await self._release(code, reason)
        logger.info(f"Channel {self._label()} closed ({initiated_by.value})")

        if self.on_close:
            try:
                await self.on_close(self, initiated_by)
            except Exception:
                logger.exception(f"Error in close handler for {self._label()}")

    async def _release(self, code: int, reason: str) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self.websocket.close(code, reason)
        except Exception as e:
            logger.debug(f"Error closing websocket for {self._label()}: {e}")
