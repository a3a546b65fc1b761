"""Transport adapters carrying raw bridge frames.

The bridge only depends on the :class:`Transport` capability set; any adapter
providing ``connect``/``disconnect``/``is_connected``/``on_message``/``write``
(plus ``on_status`` for connection changes) is interchangeable.

Variants:

* :class:`LoopbackTransport` – two in-process ends created with ``pair()``.
* :class:`NativeProcessTransport` – spawns the peer as a child process and speaks
  native-messaging framing (4-byte little-endian length + UTF-8 JSON) over its
  stdin/stdout.
* :class:`StdioTransport` – the host end of the same framing on this process's
  own stdin/stdout.
* :class:`WebSocketTransport` – one text frame per message over ``websockets``.
"""

from __future__ import annotations

import asyncio
import struct
import sys
from abc import ABC, abstractmethod
from typing import BinaryIO, Callable, List, Optional, Sequence

import websockets

from core.errors import ChannelUnavailable
from core.logging import logger

__all__ = [
    "Transport",
    "LoopbackTransport",
    "NativeProcessTransport",
    "StdioTransport",
    "WebSocketTransport",
    "encode_frame",
    "read_frame",
]

MessageHandler = Callable[[bytes], None]
StatusHandler = Callable[[bool], None]

_HEADER = struct.Struct("<I")
DEFAULT_MAX_FRAME_BYTES = 1024 * 1024


# ---------------------------------------------------------------------------
# Native-messaging framing
# ---------------------------------------------------------------------------


def encode_frame(body: bytes, max_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> bytes:
    if len(body) > max_bytes:
        raise ValueError(f"frame of {len(body)} bytes exceeds limit of {max_bytes}")
    return _HEADER.pack(len(body)) + body


async def read_frame(reader: asyncio.StreamReader, max_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> Optional[bytes]:
    """Read one length-prefixed frame. Returns ``None`` on a clean EOF."""
    try:
        header = await reader.readexactly(_HEADER.size)
    except asyncio.IncompleteReadError:
        return None
    (length,) = _HEADER.unpack(header)
    if length > max_bytes:
        raise ValueError(f"incoming frame of {length} bytes exceeds limit of {max_bytes}")
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError:
        return None


# ---------------------------------------------------------------------------
# Capability set
# ---------------------------------------------------------------------------


class Transport(ABC):
    """Duplex channel delivering whole frames."""

    name = "transport"

    def __init__(self) -> None:
        self._message_handlers: List[MessageHandler] = []
        self._status_handlers: List[StatusHandler] = []

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def write(self, frame: bytes) -> None:
        ...

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_status(self, handler: StatusHandler) -> None:
        self._status_handlers.append(handler)

    # ------------------------------------------------------------------
    def _deliver(self, frame: bytes) -> None:
        for handler in list(self._message_handlers):
            try:
                handler(frame)
            except Exception:
                logger.exception(f"{self.name}: message handler failed")

    def _notify_status(self, connected: bool) -> None:
        logger.info(f"{self.name}: {'connected' if connected else 'disconnected'}")
        for handler in list(self._status_handlers):
            try:
                handler(connected)
            except Exception:
                logger.exception(f"{self.name}: status handler failed")


# ---------------------------------------------------------------------------
# In-process loopback
# ---------------------------------------------------------------------------


class LoopbackTransport(Transport):
    """One end of an in-process channel. Frames are delivered in write order."""

    name = "loopback"

    def __init__(self) -> None:
        super().__init__()
        self._peer: Optional[LoopbackTransport] = None
        self._connected = False

    @classmethod
    def pair(cls) -> tuple["LoopbackTransport", "LoopbackTransport"]:
        left, right = cls(), cls()
        left._peer, right._peer = right, left
        return left, right

    async def connect(self) -> None:
        if self._connected:
            return
        self._connected = True
        self._notify_status(True)

    async def disconnect(self) -> None:
        """Close this end. The peer observes the drop as well."""
        if not self._connected:
            return
        self._connected = False
        self._notify_status(False)
        if self._peer is not None and self._peer._connected:
            await self._peer.disconnect()

    def is_connected(self) -> bool:
        return self._connected

    async def write(self, frame: bytes) -> None:
        peer = self._peer
        if not self._connected or peer is None or not peer._connected:
            raise ChannelUnavailable("loopback peer is not connected")
        asyncio.get_running_loop().call_soon(peer._receive, bytes(frame))

    def _receive(self, frame: bytes) -> None:
        if self._connected:
            self._deliver(frame)


# ---------------------------------------------------------------------------
# Length-prefixed stream transports
# ---------------------------------------------------------------------------


class _StreamTransport(Transport):
    """Shared read loop and writer for the native-messaging framing."""

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        super().__init__()
        self.max_frame_bytes = max_frame_bytes
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    async def write(self, frame: bytes) -> None:
        if not self._connected or self._writer is None:
            raise ChannelUnavailable(f"{self.name} is not connected")
        try:
            self._writer.write(encode_frame(frame, self.max_frame_bytes))
            await self._writer.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._mark_closed()
            raise ChannelUnavailable(f"{self.name} write failed: {e}") from e

    def _start(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader, self._writer = reader, writer
        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop(reader))
        self._notify_status(True)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                frame = await read_frame(reader, self.max_frame_bytes)
                if frame is None:
                    break
                self._deliver(frame)
        except ValueError as e:
            logger.error(f"{self.name}: protocol error, closing channel: {e}")
        finally:
            self._mark_closed()

    async def _stop_reader(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _mark_closed(self) -> None:
        if self._connected:
            self._connected = False
            self._notify_status(False)


class NativeProcessTransport(_StreamTransport):
    """Runs the peer as a child process and talks to it over its stdio."""

    name = "native"

    def __init__(self, command: Sequence[str], max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        super().__init__(max_frame_bytes)
        if not command:
            raise ValueError("native transport needs a command to spawn")
        self.command = list(command)
        self._process: Optional[asyncio.subprocess.Process] = None

    async def connect(self) -> None:
        if self._connected:
            return
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ChannelUnavailable(f"could not start {self.command[0]}: {e}") from e
        self._start(self._process.stdout, self._process.stdin)

    async def disconnect(self) -> None:
        process, self._process = self._process, None
        await self._stop_reader()
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                process.terminate()
            await process.wait()
        self._mark_closed()


class StdioTransport(_StreamTransport):
    """Host end of a native-messaging channel using this process's stdin/stdout."""

    name = "stdio"

    def __init__(
        self,
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ) -> None:
        super().__init__(max_frame_bytes)
        self._stdin = stdin or sys.stdin.buffer
        self._stdout = stdout or sys.stdout.buffer

    async def connect(self) -> None:
        if self._connected:
            return
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self.max_frame_bytes + _HEADER.size)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), self._stdin)
        w_transport, w_protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, self._stdout)
        writer = asyncio.StreamWriter(w_transport, w_protocol, reader, loop)
        self._start(reader, writer)

    async def disconnect(self) -> None:
        await self._stop_reader()
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        self._mark_closed()


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class WebSocketTransport(Transport):
    """Socket channel on top of ``websockets``; one text message per frame."""

    name = "websocket"

    def __init__(self, url: str, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        super().__init__()
        self.url = url
        self.max_frame_bytes = max_frame_bytes
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return
        try:
            self._ws = await websockets.connect(
                self.url,
                max_size=self.max_frame_bytes,
                ping_interval=30,
                ping_timeout=10,
            )
        except (OSError, websockets.exceptions.InvalidHandshake, websockets.exceptions.InvalidURI) as e:
            raise ChannelUnavailable(f"could not connect to {self.url}: {e}") from e
        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop())
        self._notify_status(True)

    async def disconnect(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self._mark_closed()

    def is_connected(self) -> bool:
        return self._connected

    async def write(self, frame: bytes) -> None:
        if not self._connected or self._ws is None:
            raise ChannelUnavailable("websocket is not connected")
        try:
            await self._ws.send(frame.decode("utf-8"))
        except websockets.ConnectionClosed as e:
            self._mark_closed()
            raise ChannelUnavailable(f"websocket closed: {e}") from e

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                self._deliver(message.encode("utf-8") if isinstance(message, str) else message)
        except websockets.ConnectionClosed as e:
            logger.warning(f"websocket closed: {e}")
        finally:
            self._mark_closed()

    def _mark_closed(self) -> None:
        if self._connected:
            self._connected = False
            self._notify_status(False)
