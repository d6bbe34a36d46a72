"""
PTY ownership for one child process.

PtyProcess opens a pseudo-terminal, forks, and execs the command with the
slave as its controlling terminal. The parent keeps the master end in
non-blocking mode and exposes it to the daemon's event loop. Exit is
detected with a non-blocking waitpid (poll), which the daemon calls on
SIGCHLD and whenever the master reports EIO.
"""

import asyncio
import errno
import fcntl
import logging
import os
import signal
import struct
import termios
from typing import Callable, Optional

from core.protocol import ExitInfo

READ_SIZE = 65536
MAX_PENDING_INPUT = 1024 * 1024  # input held back while the child is not reading
EXEC_FAILURE_STATUS = 127


def _set_pty_size(fd: int, rows: int, cols: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _make_nonblocking(fd: int) -> None:
    flags = fcntl.fcntl(fd, fcntl.F_GETFL)
    fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)


def exit_info_from_status(status: int) -> ExitInfo:
    if os.WIFSIGNALED(status):
        signum = os.WTERMSIG(status)
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        return ExitInfo(code=None, signal=name)
    return ExitInfo(code=os.waitstatus_to_exitcode(status), signal=None)


class PtyProcess:
    """One child process on one PTY."""

    def __init__(self, logger: logging.Logger,
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 max_pending_input: int = MAX_PENDING_INPUT):
        self.log = logger
        self.max_pending_input = max_pending_input
        self._loop = loop
        self.pid: Optional[int] = None
        self.master_fd: Optional[int] = None
        self.exit_info: Optional[ExitInfo] = None
        self._reading = False
        self._pending_input = bytearray()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def alive(self) -> bool:
        return self.pid is not None and self.exit_info is None

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def spawn(self, command: str, args: list[str], cwd: Optional[str],
              env: dict[str, str], cols: int, rows: int) -> int:
        """Fork and exec ``command``. Returns the child pid."""
        child_env = os.environ.copy()
        child_env.update(env)
        child_env["TERM"] = "xterm-256color"
        argv = [command, *args]

        master_fd, slave_fd = os.openpty()
        try:
            _set_pty_size(slave_fd, rows, cols)
            pid = os.fork()
        except OSError:
            os.close(master_fd)
            os.close(slave_fd)
            raise

        if pid == 0:
            # Child: never returns
            try:
                os.close(master_fd)
                os.setsid()
                fcntl.ioctl(slave_fd, termios.TIOCSCTTY, 0)
                os.dup2(slave_fd, 0)
                os.dup2(slave_fd, 1)
                os.dup2(slave_fd, 2)
                if slave_fd > 2:
                    os.close(slave_fd)
                if cwd:
                    os.chdir(cwd)
                signal.signal(signal.SIGPIPE, signal.SIG_DFL)
                os.execvpe(command, argv, child_env)
            except BaseException as e:
                try:
                    os.write(2, f"holdfast: cannot exec {command}: {e}\r\n".encode())
                finally:
                    os._exit(EXEC_FAILURE_STATUS)

        os.close(slave_fd)
        _make_nonblocking(master_fd)
        self.pid = pid
        self.master_fd = master_fd
        self.log.info(f"Spawned pid={pid} cmd={command} {cols}x{rows}")
        return pid

    def start_reading(self, on_data: Callable[[bytes], None],
                      on_eof: Callable[[], None]) -> None:
        """Register the master fd with the loop. ``on_eof`` fires once on EIO/EOF."""
        if self.master_fd is None:
            return

        def _readable() -> None:
            try:
                data = os.read(self.master_fd, READ_SIZE)
            except BlockingIOError:
                return
            except OSError as e:
                if e.errno not in (errno.EIO, errno.EBADF):
                    self.log.warning(f"PTY read failed: {e}")
                data = b""
            if not data:
                self.stop_reading()
                on_eof()
                return
            on_data(data)

        self.loop.add_reader(self.master_fd, _readable)
        self._reading = True

    def stop_reading(self) -> None:
        if self._reading and self.master_fd is not None:
            try:
                self.loop.remove_reader(self.master_fd)
            except (ValueError, OSError):
                pass
        self._reading = False

    def drain(self) -> bytes:
        """Read whatever output is still buffered in the master."""
        if self.master_fd is None:
            return b""
        chunks = []
        while True:
            try:
                data = os.read(self.master_fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            chunks.append(data)
        return b"".join(chunks)

    def poll(self) -> Optional[ExitInfo]:
        """Non-blocking reap. Returns ExitInfo once the child has exited."""
        if self.exit_info is not None or self.pid is None:
            return self.exit_info
        try:
            pid, status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            self.exit_info = ExitInfo(code=None, signal=None)
            return self.exit_info
        if pid == 0:
            return None
        self.exit_info = exit_info_from_status(status)
        return self.exit_info

    def close(self) -> None:
        """Release the master fd. Does not signal the child."""
        self.stop_reading()
        if self._pending_input and self.master_fd is not None:
            try:
                self.loop.remove_writer(self.master_fd)
            except (ValueError, OSError):
                pass
        self._pending_input.clear()
        if self.master_fd is not None:
            try:
                os.close(self.master_fd)
            except OSError:
                pass
            self.master_fd = None

    # -------------------------------------------------------------------
    # Input and control
    # -------------------------------------------------------------------

    def write(self, data: bytes) -> None:
        if self.master_fd is None or not data:
            return
        if self._pending_input:
            self._hold_input(data)
            return
        try:
            written = os.write(self.master_fd, data)
        except BlockingIOError:
            written = 0
        except OSError as e:
            self.log.debug(f"PTY write failed: {e}")
            return
        if written < len(data):
            self._hold_input(data[written:])
            self.loop.add_writer(self.master_fd, self._flush_input)

    def _hold_input(self, data: bytes) -> None:
        room = self.max_pending_input - len(self._pending_input)
        if len(data) > room:
            self.log.warning(f"Child not reading input; dropped {len(data) - max(room, 0)} bytes")
            data = data[:max(room, 0)]
        self._pending_input.extend(data)

    def _flush_input(self) -> None:
        if self.master_fd is None:
            return
        try:
            written = os.write(self.master_fd, self._pending_input)
        except BlockingIOError:
            return
        except OSError as e:
            self.log.debug(f"PTY write failed: {e}")
            written = len(self._pending_input)
        del self._pending_input[:written]
        if not self._pending_input:
            self.loop.remove_writer(self.master_fd)

    def resize(self, cols: int, rows: int) -> None:
        if self.master_fd is None:
            return
        try:
            _set_pty_size(self.master_fd, rows, cols)
        except OSError as e:
            self.log.debug(f"TIOCSWINSZ failed: {e}")
            return
        if self.alive:
            self.kill(signal.SIGWINCH)

    def kill(self, signum: int) -> bool:
        """Signal the child's process group, falling back to the pid."""
        if not self.alive:
            return False
        try:
            os.killpg(self.pid, signum)
            return True
        except (ProcessLookupError, PermissionError):
            pass
        try:
            os.kill(self.pid, signum)
            return True
        except (ProcessLookupError, PermissionError):
            return False
