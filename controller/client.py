"""
DaemonClient - asyncio client for one session daemon socket.

Used by the Session Manager (as ``controller``) and by ``holdfast attach``
(as ``direct-attach``). Listeners are plain callables registered with
``on(event, fn)``; events are ``data``, ``replay``, ``exit``, ``close`` and
``pong``. Register listeners before awaiting anything after ``connect()``
returns, since frames that arrived with WELCOME are dispatched on the next
loop iteration.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from core.protocol import (
    PROTOCOL_VERSION,
    ClientType,
    ExitInfo,
    Frame,
    FrameParser,
    FrameType,
    ProtocolError,
    SpawnRequest,
    Welcome,
    encode_data,
    encode_hello,
    encode_ping,
    encode_pong,
    encode_resize,
    encode_signal,
    encode_spawn,
    parse_message,
)

CONNECT_TIMEOUT = 5.0
READ_CHUNK = 65536
EVENTS = ("data", "replay", "exit", "close", "pong")


class DaemonClientError(Exception):
    """Connect or handshake failure."""


class DaemonClient:
    def __init__(
        self,
        socket_path: Path,
        client_type: ClientType = ClientType.CONTROLLER,
        logger: Optional[logging.Logger] = None,
    ):
        self.socket_path = Path(socket_path)
        self.client_type = client_type
        self.log = logger or logging.getLogger("holdfast.client")
        self.welcome: Optional[Welcome] = None
        self.replay_data: Optional[bytes] = None
        self.exit_info: Optional[ExitInfo] = None

        self._listeners: dict[str, list[Callable]] = {name: [] for name in EVENTS}
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._parser = FrameParser()
        self._read_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._replay_event = asyncio.Event()
        self._pong_event = asyncio.Event()
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected

    # -------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------

    def on(self, event: str, fn: Callable) -> None:
        if event not in self._listeners:
            raise ValueError(f"unknown event: {event}")
        self._listeners[event].append(fn)

    def off(self, event: str, fn: Callable) -> None:
        try:
            self._listeners[event].remove(fn)
        except (KeyError, ValueError):
            pass

    def _emit(self, event: str, *args) -> None:
        for fn in list(self._listeners[event]):
            try:
                fn(*args)
            except Exception:
                self.log.exception(f"{event} listener failed")

    # -------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------

    async def connect(self, timeout: float = CONNECT_TIMEOUT) -> Welcome:
        """Open the socket, HELLO, and wait for WELCOME."""
        if self._connected or self._closed:
            raise DaemonClientError("client already used")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(self.socket_path)), timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise DaemonClientError(f"cannot connect to {self.socket_path}: {e}") from e

        self._writer.write(encode_hello(self.client_type))
        try:
            welcome, leftover = await asyncio.wait_for(self._await_welcome(), timeout)
        except (OSError, asyncio.TimeoutError, ProtocolError, DaemonClientError) as e:
            self._writer.close()
            self._closed = True
            raise DaemonClientError(f"handshake with {self.socket_path} failed: {e}") from e

        if welcome.version < PROTOCOL_VERSION:
            self._writer.close()
            self._closed = True
            raise DaemonClientError(f"daemon speaks older protocol v{welcome.version}")
        if welcome.version > PROTOCOL_VERSION:
            self.log.warning(f"Daemon speaks newer protocol v{welcome.version}; continuing")

        self.welcome = welcome
        self._connected = True
        self._read_task = asyncio.create_task(self._read_loop(leftover))
        return welcome

    async def _await_welcome(self) -> tuple[Welcome, list[Frame]]:
        while True:
            chunk = await self._reader.read(READ_CHUNK)
            if not chunk:
                raise DaemonClientError("connection closed before WELCOME")
            frames = self._parser.feed(chunk)
            for i, frame in enumerate(frames):
                if frame.type == FrameType.WELCOME:
                    return parse_message(Welcome, frame.payload), frames[i + 1:]

    async def _read_loop(self, pending: list[Frame]) -> None:
        try:
            for frame in pending:
                self._dispatch(frame)
            while True:
                chunk = await self._reader.read(READ_CHUNK)
                if not chunk:
                    break
                for frame in self._parser.feed(chunk):
                    self._dispatch(frame)
                if self._parser.dropped:
                    self.log.warning(f"Dropped {self._parser.dropped} oversized frame(s)")
                    self._parser.dropped = 0
        except (ConnectionError, OSError) as e:
            self.log.debug(f"Connection to {self.socket_path} lost: {e}")
        finally:
            self._finish()

    def _dispatch(self, frame: Frame) -> None:
        ftype = frame.type
        if ftype == FrameType.DATA:
            self._emit("data", frame.payload)
        elif ftype == FrameType.REPLAY:
            self.replay_data = frame.payload
            self._replay_event.set()
            self._emit("replay", frame.payload)
        elif ftype == FrameType.EXIT:
            try:
                info = parse_message(ExitInfo, frame.payload)
            except ProtocolError as e:
                self.log.warning(f"Malformed EXIT from {self.socket_path}: {e}")
                info = ExitInfo()
            self.exit_info = info
            self._emit("exit", info)
        elif ftype == FrameType.PING:
            self._write(encode_pong())
        elif ftype == FrameType.PONG:
            self._pong_event.set()
            self._emit("pong")

    async def wait_for_replay(self, timeout: float = 2.0) -> bytes:
        """The REPLAY payload, or b"" if none arrives in time."""
        try:
            await asyncio.wait_for(self._replay_event.wait(), timeout)
        except asyncio.TimeoutError:
            return b""
        return self.replay_data or b""

    # -------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------

    def _write(self, frame: bytes) -> bool:
        if not self._connected or self._writer is None or self._writer.is_closing():
            return False
        try:
            self._writer.write(frame)
        except (ConnectionError, OSError, RuntimeError) as e:
            self.log.debug(f"Write to {self.socket_path} failed: {e}")
            return False
        return True

    def write(self, data: bytes) -> bool:
        return self._write(encode_data(data))

    def resize(self, cols: int, rows: int) -> bool:
        return self._write(encode_resize(cols, rows))

    def signal(self, name: str) -> bool:
        return self._write(encode_signal(name))

    def spawn(self, request: SpawnRequest) -> bool:
        return self._write(encode_spawn(request))

    def ping(self) -> bool:
        return self._write(encode_ping())

    # -------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------

    def start_heartbeat(self, interval: float, timeout: float) -> None:
        if self._heartbeat_task is None and self._connected:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(interval, timeout))

    async def _heartbeat_loop(self, interval: float, timeout: float) -> None:
        while self._connected:
            await asyncio.sleep(interval)
            self._pong_event.clear()
            if not self.ping():
                break
            try:
                await asyncio.wait_for(self._pong_event.wait(), timeout)
            except asyncio.TimeoutError:
                self.log.warning(f"No PONG from {self.socket_path} within {timeout}s")
                self._heartbeat_task = None
                await self.close()
                return

    # -------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------

    def _finish(self) -> None:
        """Mark disconnected and fire ``close`` exactly once."""
        if self._closed:
            return
        self._closed = True
        self._connected = False
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._writer is not None:
            self._writer.close()
        self._emit("close")

    async def close(self) -> None:
        task = self._read_task
        self._finish()
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
