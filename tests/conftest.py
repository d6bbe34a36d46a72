"""Shared fixtures: short socket dirs, a scripted PTY, a raw protocol client."""

import asyncio
import itertools
import logging
import shutil
import signal
import tempfile
from collections import deque
from pathlib import Path
from typing import Optional

import pytest

from core.protocol import (
    ClientType,
    ExitInfo,
    Frame,
    FrameParser,
    FrameType,
    encode_hello,
)

_fake_pids = itertools.count(40000)


@pytest.fixture
def sock_dir():
    """A short directory for Unix sockets (sun_path is ~104 bytes)."""
    path = Path(tempfile.mkdtemp(prefix="hf", dir="/tmp"))
    path.chmod(0o700)
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def log():
    return logging.getLogger("holdfast.test")


# ---------------------------------------------------------------------------
# Scripted PTY
# ---------------------------------------------------------------------------


class FakePty:
    """Stands in for daemon.pty_process.PtyProcess; the test drives output and exit."""

    TERMINATING = {signal.SIGTERM, signal.SIGKILL, signal.SIGINT, signal.SIGHUP}

    def __init__(self, logger):
        self.log = logger
        self.pid: Optional[int] = None
        self.exit_info: Optional[ExitInfo] = None
        self.command = None
        self.args: list[str] = []
        self.size = None
        self.written: list[bytes] = []
        self.signals: list[int] = []
        self.resizes: list[tuple[int, int]] = []
        self.closed = False
        self.reading = False
        self._on_data = None
        self._on_eof = None

    @property
    def alive(self) -> bool:
        return self.pid is not None and self.exit_info is None

    def spawn(self, command, args, cwd, env, cols, rows):
        self.command, self.args, self.size = command, list(args), (cols, rows)
        self.pid = next(_fake_pids)
        return self.pid

    def start_reading(self, on_data, on_eof):
        self._on_data, self._on_eof = on_data, on_eof
        self.reading = True

    def stop_reading(self):
        self.reading = False

    def drain(self):
        return b""

    def poll(self):
        return self.exit_info

    def close(self):
        self.reading = False
        self.closed = True

    def write(self, data):
        self.written.append(bytes(data))

    def resize(self, cols, rows):
        self.resizes.append((cols, rows))

    def kill(self, signum):
        if not self.alive:
            return False
        self.signals.append(signum)
        if signum in self.TERMINATING:
            self.exit_info = ExitInfo(code=None, signal=signal.Signals(signum).name)
            if self.reading:
                asyncio.get_running_loop().call_soon(self._on_eof)
        return True

    # -- test controls --

    def emit(self, data: bytes) -> None:
        if self.reading:
            self._on_data(data)

    def finish(self, code: Optional[int] = 0, sig: Optional[str] = None) -> None:
        self.exit_info = ExitInfo(code=code, signal=sig)
        if self.reading:
            self.reading = False
            self._on_eof()


@pytest.fixture
def fake_ptys():
    """List of FakePty instances created through ``fake_ptys.factory``."""

    class _Registry(list):
        def factory(self, logger):
            pty = FakePty(logger)
            self.append(pty)
            return pty

    return _Registry()


# ---------------------------------------------------------------------------
# Raw protocol client
# ---------------------------------------------------------------------------


class RawClient:
    """Minimal frame-level client for asserting exact daemon behavior."""

    def __init__(self, reader, writer):
        self.reader = reader
        self.writer = writer
        self.parser = FrameParser()
        self.frames: deque[Frame] = deque()

    @classmethod
    async def connect(cls, path, client_type: Optional[ClientType] = ClientType.CONTROLLER):
        reader, writer = await asyncio.open_unix_connection(str(path))
        client = cls(reader, writer)
        if client_type is not None:
            client.send(encode_hello(client_type))
        return client

    def send(self, data: bytes) -> None:
        self.writer.write(data)

    async def next_frame(self, timeout: float = 2.0) -> Frame:
        while not self.frames:
            chunk = await asyncio.wait_for(self.reader.read(65536), timeout)
            if not chunk:
                raise EOFError("daemon closed the connection")
            self.frames.extend(self.parser.feed(chunk))
        return self.frames.popleft()

    async def expect(self, frame_type: int, timeout: float = 2.0) -> Frame:
        """Next frame, asserting its type."""
        frame = await self.next_frame(timeout)
        assert frame.type == frame_type, f"expected {frame_type!r}, got {frame.type!r}"
        return frame

    async def handshake(self) -> tuple[Frame, Frame]:
        welcome = await self.expect(FrameType.WELCOME)
        replay = await self.expect(FrameType.REPLAY)
        return welcome, replay

    async def collect_output(self, until: bytes, timeout: float = 5.0) -> bytes:
        """Accumulate DATA/REPLAY payloads until ``until`` appears."""
        out = b""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while until not in out:
            frame = await self.next_frame(max(0.01, deadline - loop.time()))
            if frame.type in (FrameType.DATA, FrameType.REPLAY):
                out += frame.payload
        return out

    async def wait_closed(self, timeout: float = 2.0) -> bool:
        """True once the daemon has closed this connection."""
        try:
            while True:
                chunk = await asyncio.wait_for(self.reader.read(65536), timeout)
                if not chunk:
                    return True
                self.frames.extend(self.parser.feed(chunk))
        except ConnectionError:
            return True
        except asyncio.TimeoutError:
            return False

    def close(self) -> None:
        self.writer.close()


@pytest.fixture
def raw_client():
    return RawClient
