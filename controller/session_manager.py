"""
Session Manager - creates, rediscovers, supervises and tears down daemons.

One ManagedSession per daemon. The manager is the only ``controller``
client of its daemons; it persists (socket path, pid, start time) so a
restarted controller can find them again, applies the restart policy when
a child exits, and keeps a controller-side replay buffer so browser
clients can reconnect without asking the daemon again.
"""

import asyncio
import json
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from core.config import (
    DEFAULT_COLS,
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_HEARTBEAT_TIMEOUT,
    DEFAULT_KILL_GRACE,
    DEFAULT_LAUNCH_TIMEOUT,
    DEFAULT_MAX_RESTARTS,
    DEFAULT_REPLAY_LINES,
    DEFAULT_RESTART_DELAY,
    DEFAULT_RESTART_RESET_AFTER,
    DEFAULT_ROWS,
    DEFAULT_SOCKET_WAIT,
    LOG_DIR,
    RUN_DIR,
)
from core.procinfo import is_process_alive, same_process
from core.protocol import ClientType, ExitInfo, SpawnRequest
from core.replay import ReplayBuffer
from core.security import (
    AuditLogger,
    ensure_private_dir,
    is_genuine_socket,
    session_id_from_socket,
    socket_path_for,
    unlink_socket_if_exists,
    validate_session_id,
)
from controller.client import DaemonClient, DaemonClientError
from controller.store import SessionRecord, SessionStore

DAEMON_MODULE = "daemon.main"
SOCKET_POLL_INTERVAL = 0.05
PROBE_TIMEOUT = 2.0
DAEMON_EXIT_WAIT = 1.0


class SessionLaunchError(Exception):
    """A session could not be created. Nothing is left behind when raised."""


# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------

class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    EXITED = "exited"
    GONE = "gone"


class EventKind(str, Enum):
    EXITED = "EXITED"
    RESTART_BUDGET_EXCEEDED = "RESTART_BUDGET_EXCEEDED"
    STALE = "STALE"
    RESTARTING = "RESTARTING"
    LOST = "LOST"
    KILLED = "KILLED"


@dataclass
class RestartPolicy:
    enabled: bool = False
    delay: float = DEFAULT_RESTART_DELAY
    max_restarts: int = DEFAULT_MAX_RESTARTS
    reset_after: float = DEFAULT_RESTART_RESET_AFTER


@dataclass
class LaunchSpec:
    command: str
    args: list[str] = field(default_factory=list)
    cwd: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS

    def to_spawn_request(self) -> SpawnRequest:
        return SpawnRequest(command=self.command, args=self.args, cwd=self.cwd, env=self.env)


@dataclass
class SessionEvent:
    session_id: str
    kind: EventKind
    detail: dict = field(default_factory=dict)


@dataclass(eq=False)
class ManagedSession:
    id: str
    socket_path: Path
    daemon_pid: int
    start_time: float
    policy: RestartPolicy
    launch: Optional[LaunchSpec] = None
    kind: str = "shell"
    ref: Optional[str] = None
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS
    state: SessionState = SessionState.STARTING
    restart_count: int = 0
    last_exit: Optional[ExitInfo] = None
    client: Optional[DaemonClient] = None
    replay: ReplayBuffer = field(default_factory=ReplayBuffer, repr=False)
    listeners: list = field(default_factory=list, repr=False)
    closing: bool = False
    restart_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    reset_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            id=self.id,
            socket_path=str(self.socket_path),
            daemon_pid=self.daemon_pid,
            daemon_start_time=self.start_time,
            kind=self.kind,
            ref=self.ref,
        )

    def subscribe(self, fn: Callable[[bytes], None]) -> Callable[[], None]:
        """Receive live output; returns an unsubscribe function."""
        self.listeners.append(fn)

        def unsubscribe() -> None:
            if fn in self.listeners:
                self.listeners.remove(fn)

        return unsubscribe


# ---------------------------------------------------------------------------
# Daemon launcher
# ---------------------------------------------------------------------------

class DaemonLauncher:
    """Starts ``python -m daemon.main`` detached and reads its startup report."""

    def __init__(self, settings: dict, logger: logging.Logger):
        self.settings = settings
        self.log = logger

    @staticmethod
    def _find_project_root() -> Optional[Path]:
        """Directory that contains the ``daemon`` package."""
        root = Path(__file__).resolve().parent.parent
        return root if (root / "daemon" / "main.py").exists() else None

    def _daemon_env(self) -> dict[str, str]:
        env = os.environ.copy()
        root = self._find_project_root()
        if root is not None:
            existing = env.get("PYTHONPATH")
            env["PYTHONPATH"] = f"{root}{os.pathsep}{existing}" if existing else str(root)
        return env

    async def launch(self, session_id: str, spec: LaunchSpec,
                     socket_path: Path) -> tuple[int, float]:
        """Returns (daemon pid, daemon start time)."""
        config = {
            "session_id": session_id,
            "command": spec.command,
            "args": spec.args,
            "cwd": spec.cwd,
            "env": spec.env,
            "cols": spec.cols,
            "rows": spec.rows,
            "socket_path": str(socket_path),
            "replay_lines": self.settings.get("replay_lines", DEFAULT_REPLAY_LINES),
            "log_dir": str(self.settings.get("log_dir", LOG_DIR)),
        }
        timeout = self.settings.get("launch_timeout", DEFAULT_LAUNCH_TIMEOUT)
        try:
            proc = await asyncio.create_subprocess_exec(
                sys.executable, "-m", DAEMON_MODULE, json.dumps(config),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=self._daemon_env(),
            )
        except OSError as e:
            raise SessionLaunchError(f"cannot start daemon: {e}") from e

        try:
            line = await asyncio.wait_for(proc.stdout.readline(), timeout)
        except asyncio.TimeoutError:
            if proc.returncode is None:
                proc.kill()
            raise SessionLaunchError(f"daemon for {session_id} did not report within {timeout}s")
        finally:
            try:
                await asyncio.wait_for(proc.wait(), 5.0)
            except asyncio.TimeoutError:
                pass

        try:
            report = json.loads(line)
        except json.JSONDecodeError:
            report = None
        if not isinstance(report, dict):
            raise SessionLaunchError(f"daemon for {session_id} exited without reporting")
        if "error" in report:
            raise SessionLaunchError(f"daemon for {session_id} failed: {report['error']}")
        try:
            return int(report["pid"]), float(report["startTime"])
        except (KeyError, TypeError, ValueError) as e:
            raise SessionLaunchError(f"bad startup report: {report!r}") from e


# ---------------------------------------------------------------------------
# Session Manager
# ---------------------------------------------------------------------------

class SessionManager:
    def __init__(
        self,
        settings: dict,
        store: SessionStore,
        logger: logging.Logger,
        on_event: Optional[Callable[[SessionEvent], None]] = None,
        audit: Optional[AuditLogger] = None,
        launcher: Optional[DaemonLauncher] = None,
        client_factory: Callable[..., DaemonClient] = DaemonClient,
    ):
        self.settings = settings
        self.store = store
        self.log = logger
        self.on_event = on_event
        self.audit = audit
        self.launcher = launcher or DaemonLauncher(settings, logger)
        self.run_dir = Path(settings.get("run_dir", RUN_DIR))
        self._client_factory = client_factory
        self._sessions: dict[str, ManagedSession] = {}
        self._tasks: set[asyncio.Task] = set()

    def _setting(self, key: str, default):
        return self.settings.get(key, default)

    # --- Queries ---

    def get(self, session_id: str) -> Optional[ManagedSession]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[ManagedSession]:
        return list(self._sessions.values())

    # --- Create ---

    async def create_session(
        self,
        session_id: str,
        launch: LaunchSpec,
        policy: Optional[RestartPolicy] = None,
        kind: str = "shell",
        ref: Optional[str] = None,
    ) -> ManagedSession:
        """Launch a daemon for ``launch`` and attach to it as controller."""
        try:
            validate_session_id(session_id)
        except ValueError as e:
            raise SessionLaunchError(str(e)) from e
        if session_id in self._sessions:
            raise SessionLaunchError(f"session {session_id} already exists")

        ensure_private_dir(self.run_dir)
        socket_path = socket_path_for(session_id, self.run_dir)
        unlink_socket_if_exists(socket_path)

        pid, start_time = await self.launcher.launch(session_id, launch, socket_path)
        self.log.info(f"Daemon for {session_id} started (pid={pid})")

        session = ManagedSession(
            id=session_id,
            socket_path=socket_path,
            daemon_pid=pid,
            start_time=start_time,
            policy=policy or RestartPolicy(),
            launch=launch,
            kind=kind,
            ref=ref,
            cols=launch.cols,
            rows=launch.rows,
            replay=ReplayBuffer(self._setting("replay_lines", DEFAULT_REPLAY_LINES)),
        )
        self._sessions[session_id] = session
        try:
            await self._wait_for_socket(socket_path)
            welcome = await self._attach(session)
            session.cols, session.rows = welcome.cols, welcome.rows
            await self.store.save(session.to_record())
        except Exception as e:
            self.log.error(f"Session {session_id} setup failed, rolling back: {e}")
            await self._rollback(session)
            if isinstance(e, SessionLaunchError):
                raise
            raise SessionLaunchError(f"session {session_id} setup failed: {e}") from e

        if session.state == SessionState.STARTING:
            session.state = SessionState.RUNNING
        self._start_heartbeat(session)
        if self.audit:
            self.audit.session_create(session_id, pid)
        return session

    async def _wait_for_socket(self, path: Path) -> None:
        timeout = self._setting("socket_wait", DEFAULT_SOCKET_WAIT)
        deadline = time.monotonic() + timeout
        while not is_genuine_socket(path):
            if time.monotonic() >= deadline:
                raise SessionLaunchError(f"socket {path} did not appear within {timeout}s")
            await asyncio.sleep(SOCKET_POLL_INTERVAL)

    async def _attach(self, session: ManagedSession):
        client = self._client_factory(session.socket_path, ClientType.CONTROLLER, self.log)
        session.client = client
        client.on("data", lambda data: self._on_data(session, data))
        client.on("replay", lambda data: self._on_replay(session, data))
        client.on("exit", lambda info: self._on_exit(session, info))
        client.on("close", lambda: self._on_close(session))
        return await client.connect()

    async def _rollback(self, session: ManagedSession) -> None:
        session.closing = True
        self._cancel_timers(session)
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
        if session.client is not None:
            await session.client.close()
        if same_process(session.daemon_pid, session.start_time):
            self._signal_pid(session.daemon_pid, signal.SIGKILL)
        unlink_socket_if_exists(session.socket_path)
        try:
            await self.store.delete(session.id)
        except Exception:
            self.log.exception(f"Could not delete record for {session.id}")

    def _start_heartbeat(self, session: ManagedSession) -> None:
        if session.client is not None and session.client.connected:
            session.client.start_heartbeat(
                self._setting("heartbeat_interval", DEFAULT_HEARTBEAT_INTERVAL),
                self._setting("heartbeat_timeout", DEFAULT_HEARTBEAT_TIMEOUT),
            )

    # --- Discover ---

    async def discover(self) -> list[ManagedSession]:
        """Reattach to every persisted daemon that is still genuinely ours."""
        reattached = []
        for record in await self.store.load_all():
            if record.id in self._sessions:
                continue
            session = await self._reattach(record)
            if session is not None:
                reattached.append(session)
        self.log.info(f"Discovery: {len(reattached)} session(s) reattached")
        return reattached

    async def reconnect_session(self, session_id: str) -> Optional[ManagedSession]:
        """Reattach to a single persisted session."""
        if session_id in self._sessions:
            return self._sessions[session_id]
        record = await self.store.get(session_id)
        if record is None:
            return None
        return await self._reattach(record)

    async def _reattach(self, record: SessionRecord) -> Optional[ManagedSession]:
        socket_path = Path(record.socket_path)
        alive = same_process(record.daemon_pid, record.daemon_start_time)

        if not alive:
            if is_process_alive(record.daemon_pid):
                reason = "pid reused by another process"
            else:
                reason = "daemon not running"
        elif not is_genuine_socket(socket_path):
            reason = "socket missing"
        else:
            session = ManagedSession(
                id=record.id,
                socket_path=socket_path,
                daemon_pid=record.daemon_pid,
                start_time=record.daemon_start_time,
                policy=RestartPolicy(enabled=False),
                kind=record.kind,
                ref=record.ref,
                replay=ReplayBuffer(self._setting("replay_lines", DEFAULT_REPLAY_LINES)),
            )
            self._sessions[record.id] = session
            try:
                welcome = await self._attach(session)
            except DaemonClientError as e:
                reason = f"connect failed: {e}"
                session.closing = True
                self._sessions.pop(record.id, None)
            else:
                session.cols, session.rows = welcome.cols, welcome.rows
                await session.client.wait_for_replay()
                if session.state == SessionState.STARTING:
                    session.state = SessionState.RUNNING
                self._start_heartbeat(session)
                self.log.info(f"Reattached to {record.id} (pid={record.daemon_pid})")
                return session

        self.log.warning(f"Session {record.id} is stale: {reason}")
        if alive:
            # our daemon, but unreachable
            await self._terminate_daemon(record.daemon_pid, record.daemon_start_time)
        unlink_socket_if_exists(socket_path)
        await self.store.delete(record.id)
        if self.audit:
            self.audit.session_gone(record.id, f"stale: {reason}")
        self._emit(SessionEvent(record.id, EventKind.STALE, {"reason": reason}))
        return None

    # --- Output ---

    def _on_data(self, session: ManagedSession, data: bytes) -> None:
        session.replay.append(data)
        for fn in list(session.listeners):
            try:
                fn(data)
            except Exception:
                self.log.exception(f"Output listener for {session.id} failed")

    def _on_replay(self, session: ManagedSession, data: bytes) -> None:
        session.replay.clear()
        session.replay.append(data)

    # --- Exit, restart, loss ---

    def _on_exit(self, session: ManagedSession, info: ExitInfo) -> None:
        if session.closing or session.state in (SessionState.EXITED, SessionState.GONE):
            return
        session.last_exit = info
        self._cancel_reset(session)
        detail = {"code": info.code, "signal": info.signal}
        policy = session.policy

        if not policy.enabled or session.launch is None:
            session.state = SessionState.EXITED
            self._emit(SessionEvent(session.id, EventKind.EXITED, detail))
            self._spawn_task(self._retire(session, "child exited"))
            return

        if session.restart_count >= policy.max_restarts:
            session.state = SessionState.GONE
            detail["restarts"] = session.restart_count
            self._emit(SessionEvent(session.id, EventKind.RESTART_BUDGET_EXCEEDED, detail))
            self._spawn_task(self._retire(session, "restart budget exceeded"))
            return

        session.restart_count += 1
        session.state = SessionState.RESTARTING
        detail.update(attempt=session.restart_count, delay=policy.delay)
        self._emit(SessionEvent(session.id, EventKind.RESTARTING, detail))
        loop = asyncio.get_running_loop()
        session.restart_handle = loop.call_later(policy.delay, self._respawn, session)

    def _respawn(self, session: ManagedSession) -> None:
        session.restart_handle = None
        if session.closing or session.state != SessionState.RESTARTING:
            return
        if session.client is None or not session.client.spawn(session.launch.to_spawn_request()):
            self.log.warning(f"Could not send SPAWN to {session.id}")
            return
        self.log.info(f"Restarted {session.id} (attempt {session.restart_count})")
        session.replay.clear()
        session.state = SessionState.RUNNING
        stable_after = max(session.policy.reset_after, session.policy.delay)
        loop = asyncio.get_running_loop()
        session.reset_handle = loop.call_later(stable_after, self._reset_restarts, session)

    def _reset_restarts(self, session: ManagedSession) -> None:
        session.reset_handle = None
        if session.restart_count:
            self.log.info(f"{session.id} stable; restart counter reset")
        session.restart_count = 0

    def _on_close(self, session: ManagedSession) -> None:
        if session.closing or session.state in (SessionState.EXITED, SessionState.GONE):
            return
        session.state = SessionState.GONE
        self._emit(SessionEvent(session.id, EventKind.LOST, {}))
        daemon_alive = same_process(session.daemon_pid, session.start_time)
        self._spawn_task(self._retire(session, "connection lost", forget=not daemon_alive))

    async def _retire(self, session: ManagedSession, reason: str, forget: bool = True) -> None:
        """Stop tracking ``session``. ``forget`` also drops its record and socket."""
        session.closing = True
        self._cancel_timers(session)
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
        if session.client is not None:
            await session.client.close()
        if forget:
            unlink_socket_if_exists(session.socket_path)
            await self.store.delete(session.id)
        if self.audit:
            self.audit.session_gone(session.id, reason)
        self.log.info(f"Session {session.id} retired: {reason}")

    # --- Kill ---

    async def kill_session(self, session_id: str) -> bool:
        """Terminate the child and its daemon. Idempotent; never raises for unknown ids."""
        session = self._sessions.get(session_id)
        if session is None:
            await self._kill_untracked(session_id)
            return False

        session.closing = True
        self._cancel_timers(session)
        client = session.client
        grace = self._setting("kill_grace", DEFAULT_KILL_GRACE)

        if client is not None and client.connected and session.state in (
            SessionState.STARTING, SessionState.RUNNING,
        ):
            done = asyncio.Event()
            client.on("exit", lambda info: done.set())
            client.on("close", done.set)
            client.signal("SIGTERM")
            if not await self._wait_event(done, grace):
                self.log.warning(f"{session_id} ignored SIGTERM; sending SIGKILL")
                client.signal("SIGKILL")
                await self._wait_event(done, 2.0)

        if client is not None:
            await client.close()
        await self._terminate_daemon(session.daemon_pid, session.start_time)

        if self._sessions.get(session_id) is session:
            del self._sessions[session_id]
        session.state = SessionState.GONE
        unlink_socket_if_exists(session.socket_path)
        await self.store.delete(session_id)
        if self.audit:
            self.audit.session_kill(session_id)
        self._emit(SessionEvent(session_id, EventKind.KILLED, {}))
        return True

    async def _kill_untracked(self, session_id: str) -> None:
        record = await self.store.get(session_id)
        if record is not None:
            await self._terminate_daemon(record.daemon_pid, record.daemon_start_time,
                                         wait_first=False)
            unlink_socket_if_exists(Path(record.socket_path))
            await self.store.delete(session_id)
        try:
            unlink_socket_if_exists(socket_path_for(session_id, self.run_dir))
        except ValueError:
            pass

    @staticmethod
    async def _wait_event(event: asyncio.Event, timeout: float) -> bool:
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _wait_for_exit(self, pid: int, start_time: float, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while same_process(pid, start_time):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(SOCKET_POLL_INTERVAL)
        return True

    async def _terminate_daemon(self, pid: int, start_time: float,
                                wait_first: bool = True) -> None:
        """Make sure the daemon identified by (pid, start_time) is gone."""
        if wait_first and await self._wait_for_exit(pid, start_time, DAEMON_EXIT_WAIT):
            return
        if not same_process(pid, start_time):
            return
        self._signal_pid(pid, signal.SIGTERM)
        grace = self._setting("kill_grace", DEFAULT_KILL_GRACE)
        if not await self._wait_for_exit(pid, start_time, grace):
            self.log.warning(f"Daemon pid={pid} ignored SIGTERM; sending SIGKILL")
            self._signal_pid(pid, signal.SIGKILL)

    def _signal_pid(self, pid: int, signum: int) -> None:
        if pid <= 0 or pid == os.getpid():
            self.log.warning(f"Refusing to signal pid={pid}")
            return
        try:
            os.kill(pid, signum)
        except (ProcessLookupError, PermissionError) as e:
            self.log.debug(f"kill({pid}, {signum}) failed: {e}")

    # --- Stale sockets ---

    async def cleanup_stale_sockets(self) -> int:
        """Remove daemon sockets in the run dir that nobody is listening on."""
        if not self.run_dir.is_dir():
            return 0
        managed = {s.socket_path for s in self._sessions.values()}
        removed = 0
        for path in sorted(self.run_dir.iterdir()):
            session_id = session_id_from_socket(path)
            if session_id is None or session_id in self._sessions or path in managed:
                continue
            if path.is_symlink() or not is_genuine_socket(path):
                continue
            if await self._probe(path):
                continue
            if unlink_socket_if_exists(path):
                removed += 1
                self.log.info(f"Removed stale socket {path}")
        return removed

    @staticmethod
    async def _probe(path: Path) -> bool:
        """True if something accepts connections on ``path``."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(path)), PROBE_TIMEOUT,
            )
        except asyncio.TimeoutError:
            return True
        except OSError:
            return False
        writer.close()
        return True

    # --- Shutdown ---

    async def shutdown(self, kill: bool = False) -> None:
        """Detach from every session (daemons keep running) or kill them all."""
        for session in list(self._sessions.values()):
            if kill:
                await self.kill_session(session.id)
            else:
                session.closing = True
                self._cancel_timers(session)
                self._sessions.pop(session.id, None)
                if session.client is not None:
                    await session.client.close()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # --- Helpers ---

    def _emit(self, event: SessionEvent) -> None:
        self.log.info(f"Session {event.session_id}: {event.kind.value} {event.detail}")
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception:
            self.log.exception("Session event handler failed")

    def _spawn_task(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.log.error(f"Background session task failed: {task.exception()!r}")

    @staticmethod
    def _cancel_reset(session: ManagedSession) -> None:
        if session.reset_handle is not None:
            session.reset_handle.cancel()
            session.reset_handle = None

    def _cancel_timers(self, session: ManagedSession) -> None:
        self._cancel_reset(session)
        if session.restart_handle is not None:
            session.restart_handle.cancel()
            session.restart_handle = None
