"""
Holdfast Session Daemon - one PTY, one child, many clients.

Serves the framed protocol (core.protocol) on an owner-only Unix socket.
Every PTY read is appended to the replay buffer and broadcast as DATA to
every attached connection; input from any connection is written to the PTY.
Supervisory frames (SIGNAL, SPAWN) are honored only from the controller
connection, of which there is at most one.

Each connection is handled by its own coroutine; output fan-out happens
synchronously inside the PTY reader callback, so a client that joins sees
exactly the replay snapshot followed by every later byte.
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from core.config import DEFAULT_COLS, DEFAULT_REPLAY_LINES, DEFAULT_ROWS
from core.procinfo import process_start_time
from core.protocol import (
    MAX_FRAME_SIZE,
    PROTOCOL_VERSION,
    ClientType,
    ExitInfo,
    Frame,
    FrameParser,
    FrameType,
    Hello,
    ProtocolError,
    Resize,
    SignalRequest,
    SpawnRequest,
    Welcome,
    encode_data,
    encode_exit,
    encode_pong,
    encode_replay,
    encode_welcome,
    parse_message,
    resolve_signal,
)
from core.replay import ReplayBuffer
from core.security import AuditLogger, unlink_socket_if_exists
from daemon.pty_process import PtyProcess

MAX_WRITE_BUFFER = 1024 * 1024  # drop clients that lag behind this much
EXIT_LINGER = 5.0               # seconds to wait for a controller after child exit
RETIRE_GRACE = 5.0              # SIGTERM -> SIGKILL for children replaced by SPAWN
REAP_INTERVAL = 0.1
READ_CHUNK = 65536


@dataclass(eq=False)
class Connection:
    id: int
    writer: asyncio.StreamWriter
    client_type: ClientType
    replay_backlog: int = 0  # bytes still buffered from the REPLAY frame

    @property
    def is_controller(self) -> bool:
        return self.client_type is ClientType.CONTROLLER


class SessionDaemon:
    """Owns the PTY, the replay buffer and the listening socket for one session."""

    def __init__(
        self,
        session_id: str,
        socket_path: Path,
        logger: logging.Logger,
        audit: Optional[AuditLogger] = None,
        replay_lines: int = DEFAULT_REPLAY_LINES,
        pty_factory: Callable[[logging.Logger], PtyProcess] = PtyProcess,
        exit_linger: Optional[float] = EXIT_LINGER,
        max_write_buffer: int = MAX_WRITE_BUFFER,
        handle_sigchld: bool = True,
    ):
        self.session_id = session_id
        self.socket_path = Path(socket_path)
        self.log = logger
        self.audit = audit
        self.replay = ReplayBuffer(replay_lines)
        self.exit_linger = exit_linger
        self.max_write_buffer = max_write_buffer
        self.cols = DEFAULT_COLS
        self.rows = DEFAULT_ROWS
        self.start_time = process_start_time(os.getpid()) or time.time()

        self._pty_factory = pty_factory
        self._handle_sigchld = handle_sigchld
        self._pty: Optional[PtyProcess] = None
        self._retired: dict[PtyProcess, float] = {}  # pty -> SIGKILL deadline
        self._reap_handle: Optional[asyncio.TimerHandle] = None
        self._connections: dict[int, Connection] = {}
        self._next_conn_id = 1
        self._server: Optional[asyncio.AbstractServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._exit_info: Optional[ExitInfo] = None
        self._exit_seen_by_controller = False
        self._linger_handle: Optional[asyncio.TimerHandle] = None
        self._stopped = asyncio.Event()
        self._stopping = False

    # -------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------

    @property
    def child_pid(self) -> Optional[int]:
        return self._pty.pid if self._pty else None

    @property
    def child_alive(self) -> bool:
        return self._pty is not None and self._pty.alive and self._exit_info is None

    @property
    def exit_info(self) -> Optional[ExitInfo]:
        return self._exit_info

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def _audit(self, method: str, *args) -> None:
        if self.audit is not None:
            getattr(self.audit, method)(self.session_id, *args)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def start(self, command: str, args: Optional[list[str]] = None,
                    cwd: Optional[str] = None,
                    env: Optional[dict[str, str]] = None,
                    cols: int = DEFAULT_COLS, rows: int = DEFAULT_ROWS) -> None:
        """Spawn the child and start listening. Raises OSError on failure."""
        self._loop = asyncio.get_running_loop()
        self.cols, self.rows = cols, rows

        if self._handle_sigchld:
            try:
                self._loop.add_signal_handler(signal.SIGCHLD, self._on_sigchld)
            except (NotImplementedError, RuntimeError, ValueError):
                self._handle_sigchld = False

        self._spawn(command, list(args or []), cwd, env or {})

        unlink_socket_if_exists(self.socket_path)
        old_umask = os.umask(0o177)
        try:
            self._server = await asyncio.start_unix_server(
                self._handle_connection, path=str(self.socket_path),
            )
        finally:
            os.umask(old_umask)
        os.chmod(self.socket_path, 0o600)

        self._audit("daemon_start", os.getpid())
        self.log.info(f"Listening on {self.socket_path} (session {self.session_id})")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def request_stop(self) -> None:
        """Ask the daemon to shut down; safe from signal handlers and timers."""
        self._stopped.set()

    async def serve_until_stopped(self) -> None:
        await self._stopped.wait()
        await self.shutdown()

    async def shutdown(self) -> None:
        """Terminate the child, close every connection, remove the socket."""
        if self._stopping:
            return
        self._stopping = True
        self._stopped.set()
        self._cancel_linger()
        if self._reap_handle is not None:
            self._reap_handle.cancel()
        if self._handle_sigchld and self._loop is not None:
            self._loop.remove_signal_handler(signal.SIGCHLD)

        if self._server is not None:
            self._server.close()
        for conn in list(self._connections.values()):
            conn.writer.close()
        self._connections.clear()

        ptys = list(self._retired)
        if self._pty is not None:
            ptys.append(self._pty)
        for pty in ptys:
            await self._terminate(pty)
        self._retired.clear()

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), 1.0)
            except asyncio.TimeoutError:
                pass
        unlink_socket_if_exists(self.socket_path)
        self._audit("daemon_stop")
        self.log.info("Daemon stopped")

    async def _terminate(self, pty: PtyProcess, grace: float = 2.0) -> None:
        if pty.alive:
            pty.kill(signal.SIGTERM)
            deadline = time.monotonic() + grace
            while pty.poll() is None and time.monotonic() < deadline:
                await asyncio.sleep(REAP_INTERVAL)
            if pty.poll() is None:
                pty.kill(signal.SIGKILL)
                for _ in range(10):
                    if pty.poll() is not None:
                        break
                    await asyncio.sleep(REAP_INTERVAL)
        pty.close()

    # -------------------------------------------------------------------
    # Child process
    # -------------------------------------------------------------------

    def _spawn(self, command: str, args: list[str], cwd: Optional[str],
               env: dict[str, str]) -> None:
        pty = self._pty_factory(self.log)
        pid = pty.spawn(command, args, cwd, env, self.cols, self.rows)
        self._pty = pty
        self._exit_info = None
        self._exit_seen_by_controller = False
        pty.start_reading(
            on_data=lambda data: self._on_output(pty, data),
            on_eof=lambda: self._check_child(pty, retry=True),
        )
        self._audit("child_spawn", " ".join([command, *args]), pid)

    def _on_output(self, pty: PtyProcess, data: bytes) -> None:
        if pty is not self._pty:
            return
        self.replay.append(data)
        self._broadcast(encode_data(data))

    def _on_sigchld(self) -> None:
        if self._pty is not None:
            self._check_child(self._pty)
        self._reap_retired()

    def _check_child(self, pty: PtyProcess, retry: bool = False) -> None:
        """Reap ``pty``'s child if it has exited.

        After EOF on the master the exit status can lag behind, so ``retry``
        polls again until the child is reaped.
        """
        if pty is not self._pty or self._exit_info is not None or self._stopping:
            return
        info = pty.poll()
        if info is None:
            if retry:
                self._loop.call_later(REAP_INTERVAL, self._check_child, pty, True)
            return
        pty.stop_reading()
        remaining = pty.drain()
        if remaining:
            self._on_output(pty, remaining)
        pty.close()
        self._record_exit(info)

    def _record_exit(self, info: ExitInfo) -> None:
        self._exit_info = info
        self.log.info(f"Child exited: code={info.code} signal={info.signal}")
        self._audit("child_exit", info.code, info.signal)
        frame = encode_exit(info)
        for conn in list(self._connections.values()):
            if self._send(conn, frame) and conn.is_controller:
                self._exit_seen_by_controller = True
        self._maybe_schedule_shutdown()

    def _respawn(self, request: SpawnRequest) -> None:
        old = self._pty
        if old is not None:
            old.stop_reading()
            if old.alive and old.poll() is None:
                old.kill(signal.SIGTERM)
                old.close()
                self._retired[old] = time.monotonic() + RETIRE_GRACE
                self._schedule_reap()
            else:
                old.close()
        self._pty = None
        self._cancel_linger()
        self.replay.clear()
        self.log.info(f"Respawning: {request.command} {' '.join(request.args)}")
        try:
            self._spawn(request.command, request.args, request.cwd, request.env)
        except OSError as e:
            self.log.error(f"Respawn failed: {e}")
            self._record_exit(ExitInfo(code=None, signal=None))

    def _schedule_reap(self) -> None:
        if self._reap_handle is None and self._loop is not None:
            self._reap_handle = self._loop.call_later(REAP_INTERVAL, self._reap_tick)

    def _reap_tick(self) -> None:
        self._reap_handle = None
        self._reap_retired()
        if self._retired:
            self._schedule_reap()

    def _reap_retired(self) -> None:
        now = time.monotonic()
        for pty, deadline in list(self._retired.items()):
            if pty.poll() is not None:
                del self._retired[pty]
            elif now >= deadline:
                pty.kill(signal.SIGKILL)

    # -------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter) -> None:
        conn: Optional[Connection] = None
        parser = FrameParser()
        try:
            while not self._stopping:
                chunk = await reader.read(READ_CHUNK)
                if not chunk:
                    break
                for frame in parser.feed(chunk):
                    if conn is None:
                        # nothing but HELLO is accepted before the handshake
                        if frame.type == FrameType.HELLO:
                            conn = self._handshake(writer, frame.payload)
                            if conn is None:
                                return
                        continue
                    if conn.id not in self._connections:
                        return
                    self._dispatch(conn, frame)
                if parser.dropped:
                    self.log.warning(f"Dropped {parser.dropped} oversized frame(s)")
                    parser.dropped = 0
        except ProtocolError as e:
            label = conn.id if conn else "pending"
            self.log.warning(f"Closing connection {label}: {e}")
        except (ConnectionError, OSError):
            pass
        finally:
            if conn is not None:
                self._remove(conn, "disconnected")
            writer.close()

    def _handshake(self, writer: asyncio.StreamWriter, payload: bytes) -> Optional[Connection]:
        hello = parse_message(Hello, payload)
        if hello.version < PROTOCOL_VERSION:
            self.log.warning(f"Rejecting client with protocol v{hello.version}")
            return None
        if hello.version > PROTOCOL_VERSION:
            self.log.warning(f"Client speaks newer protocol v{hello.version}; continuing")

        self._cancel_linger()
        conn = Connection(self._next_conn_id, writer, hello.client_type)
        self._next_conn_id += 1
        self._connections[conn.id] = conn

        if conn.is_controller:
            for old in list(self._connections.values()):
                if old is not conn and old.is_controller:
                    self._audit("controller_replaced", old.id, conn.id)
                    self._drop(old, "replaced by new controller")

        self._audit("client_attach", conn.client_type.value, conn.id)
        self.log.info(f"Client {conn.id} attached ({conn.client_type.value})")

        welcome = Welcome(
            version=PROTOCOL_VERSION,
            child_pid=self.child_pid,
            cols=self.cols,
            rows=self.rows,
            start_time=self.start_time,
        )
        if not self._send(conn, encode_welcome(welcome)):
            return None
        if self._send(conn, encode_replay(self.replay.snapshot()[-MAX_FRAME_SIZE:])):
            conn.replay_backlog = self._buffered(conn)
        if self._exit_info is not None:
            if self._send(conn, encode_exit(self._exit_info)) and conn.is_controller:
                self._exit_seen_by_controller = True
        return conn

    def _dispatch(self, conn: Connection, frame: Frame) -> None:
        ftype = frame.type
        if ftype == FrameType.DATA:
            if self.child_alive:
                self._pty.write(frame.payload)

        elif ftype == FrameType.RESIZE:
            size = parse_message(Resize, frame.payload)
            self.cols, self.rows = size.cols, size.rows
            if self._pty is not None:
                self._pty.resize(size.cols, size.rows)

        elif ftype == FrameType.SIGNAL:
            if not conn.is_controller:
                self._audit("supervisory_ignored", "SIGNAL", conn.id)
                return
            request = parse_message(SignalRequest, frame.payload)
            try:
                signum = resolve_signal(request.signal)
            except ProtocolError as e:
                self.log.warning(f"Client {conn.id}: {e}")
                self._audit("signal_rejected", request.signal)
                return
            if self.child_alive and self._pty.kill(signum):
                self._audit("signal_delivered", request.signal, self._pty.pid)

        elif ftype == FrameType.SPAWN:
            if not conn.is_controller:
                self._audit("supervisory_ignored", "SPAWN", conn.id)
                return
            self._respawn(parse_message(SpawnRequest, frame.payload))

        elif ftype == FrameType.PING:
            self._send(conn, encode_pong())

        elif ftype in (FrameType.PONG, FrameType.HELLO):
            pass

        else:
            self.log.debug(f"Ignoring unknown frame type 0x{ftype:02x}")

    def _send(self, conn: Connection, frame: bytes) -> bool:
        """Write one frame or drop the connection. Never queues."""
        writer = conn.writer
        try:
            if writer.is_closing():
                self._drop(conn, "transport closing")
                return False
            buffered = writer.transport.get_write_buffer_size()
            if conn.replay_backlog:
                # the snapshot does not count against the lag budget
                conn.replay_backlog = min(conn.replay_backlog, buffered)
                buffered -= conn.replay_backlog
            if buffered > self.max_write_buffer:
                self._drop(conn, f"write buffer {buffered} bytes")
                return False
            writer.write(frame)
        except (ConnectionError, OSError, RuntimeError, AttributeError) as e:
            self._drop(conn, f"write failed: {e}")
            return False
        return True

    @staticmethod
    def _buffered(conn: Connection) -> int:
        try:
            return conn.writer.transport.get_write_buffer_size()
        except (AttributeError, RuntimeError):
            return 0

    def _broadcast(self, frame: bytes) -> None:
        for conn in list(self._connections.values()):
            self._send(conn, frame)

    def _drop(self, conn: Connection, reason: str) -> None:
        if self._connections.pop(conn.id, None) is None:
            return
        self.log.info(f"Dropping client {conn.id}: {reason}")
        conn.writer.close()
        self._maybe_schedule_shutdown()

    def _remove(self, conn: Connection, reason: str) -> None:
        if self._connections.pop(conn.id, None) is None:
            return
        self.log.info(f"Client {conn.id} {reason}")
        self._maybe_schedule_shutdown()

    # -------------------------------------------------------------------
    # Self-exit once nobody is left to care
    # -------------------------------------------------------------------

    def _maybe_schedule_shutdown(self) -> None:
        if self._stopping or self._exit_info is None or self._connections:
            return
        if self._exit_seen_by_controller:
            self.request_stop()
            return
        if self.exit_linger is None or self._linger_handle is not None:
            return
        self._linger_handle = self._loop.call_later(self.exit_linger, self._linger_expired)

    def _linger_expired(self) -> None:
        self._linger_handle = None
        if self._exit_info is not None and not self._connections:
            self.log.info("Child gone and no clients left; exiting")
            self.request_stop()

    def _cancel_linger(self) -> None:
        if self._linger_handle is not None:
            self._linger_handle.cancel()
            self._linger_handle = None
