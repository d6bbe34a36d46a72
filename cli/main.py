#!/usr/bin/env python3
"""
Holdfast CLI - run, inspect, attach to and kill persistent terminal sessions.

Usage:
    holdfast run build-1 -- npm run dev
    holdfast run agent --restart --max-restarts 5 -- claude
    holdfast ls
    holdfast attach build-1          - direct attach (Ctrl-\\ detaches)
    holdfast attach /path/to/holdfast-build-1.sock
    holdfast kill build-1
    holdfast serve --port 9785       - controller with the browser bridge

Config: reads HOLDFAST_* from the environment, ./config.env or
        ~/.holdfast/config.env, then ~/.holdfast/settings.json.
"""

import argparse
import asyncio
import json
import os
import shutil
import signal
import sys
import termios
import tty
from pathlib import Path
from typing import Optional

from core.config import load_settings
from core.logs import setup_logging
from core.procinfo import same_process
from core.protocol import ClientType
from core.security import AuditLogger, is_genuine_socket, socket_path_for
from controller.client import DaemonClient, DaemonClientError
from controller.service import Controller
from controller.session_manager import (
    EventKind,
    LaunchSpec,
    RestartPolicy,
    SessionEvent,
    SessionLaunchError,
    SessionManager,
)
from controller.store import SessionRecord, SessionStore

DETACH_KEY = b"\x1c"  # Ctrl-\
STDIN_CHUNK = 4096

# ---------------------------------------------------------------------------
# Output Formatting
# ---------------------------------------------------------------------------

def _print_status(msg):
    print(f"\033[36m[holdfast]\033[0m {msg}")

def _print_error(msg):
    print(f"\033[31m[holdfast error]\033[0m {msg}", file=sys.stderr)

def _format_exit(code, sig):
    if sig:
        return f"signal {sig}"
    if code is None:
        return "unknown status"
    return f"exit {code}"

def _record_status(record: SessionRecord) -> str:
    if not same_process(record.daemon_pid, record.daemon_start_time):
        return "stale"
    if not is_genuine_socket(Path(record.socket_path)):
        return "no-socket"
    return "live"


# ---------------------------------------------------------------------------
# Shared setup
# ---------------------------------------------------------------------------

def _cli_logger(settings: dict, verbose: bool = False):
    return setup_logging(
        "holdfast.cli",
        log_file=Path(settings["log_dir"]) / "cli.log",
        verbose=verbose,
        console=verbose,
    )


def _open_store(settings: dict) -> SessionStore:
    return SessionStore.for_path(Path(settings["db_file"]))


def _resolve_socket(target: str, run_dir: Path) -> Path:
    """Session id or explicit socket path."""
    if os.sep in target or target.endswith(".sock"):
        return Path(target).expanduser()
    return socket_path_for(target, run_dir)


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"expected KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def cmd_run(settings: dict, args) -> int:
    """Create a session; stay attached only to supervise restarts."""
    log = _cli_logger(settings, args.verbose)
    store = _open_store(settings)
    command = list(args.cmd)
    if not command:
        command = [os.environ.get("SHELL", "/bin/sh")]
    try:
        env = _parse_env(args.env)
    except ValueError as e:
        _print_error(str(e))
        return 2

    finished = asyncio.Event()

    def on_event(event: SessionEvent):
        if event.session_id != args.session_id:
            return
        if event.kind == EventKind.RESTARTING:
            d = event.detail
            _print_status(f"{event.session_id}: child {_format_exit(d.get('code'), d.get('signal'))}, "
                          f"restart {d.get('attempt')} in {d.get('delay')}s")
        else:
            _print_status(f"{event.session_id}: {event.kind.value} {event.detail or ''}".rstrip())
            finished.set()

    await store.init()
    existing = await store.get(args.session_id)
    if existing is not None and _record_status(existing) != "stale":
        _print_error(f"Session {args.session_id} is already running (pid {existing.daemon_pid})")
        await store.close()
        return 1

    manager = SessionManager(
        settings, store, log, on_event=on_event,
        audit=AuditLogger(Path(settings["log_dir"]) / "audit.log"),
    )
    launch = LaunchSpec(
        command=command[0],
        args=command[1:],
        cwd=args.cwd or os.getcwd(),
        env=env,
        cols=args.cols or settings["cols"],
        rows=args.rows or settings["rows"],
    )
    policy = RestartPolicy(
        enabled=args.restart,
        delay=settings["restart_delay"] if args.restart_delay is None else args.restart_delay,
        max_restarts=settings["max_restarts"] if args.max_restarts is None else args.max_restarts,
        reset_after=settings["restart_reset_after"],
    )

    try:
        session = await manager.create_session(
            args.session_id, launch, policy, kind=args.kind, ref=args.ref,
        )
    except SessionLaunchError as e:
        _print_error(str(e))
        await store.close()
        return 1

    _print_status(f"Session {session.id} running (daemon pid {session.daemon_pid})")
    _print_status(f"Socket: {session.socket_path}")
    _print_status(f"Attach with: holdfast attach {session.id}")

    if args.restart:
        _print_status("Supervising restarts... (Ctrl+C to detach, session keeps running)")
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, finished.set)
        try:
            await finished.wait()
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    await manager.shutdown(kill=False)
    await store.close()
    return 0


async def cmd_ls(settings: dict, args) -> int:
    store = _open_store(settings)
    await store.init()
    try:
        records = await store.load_all()
    finally:
        await store.close()

    rows = [
        {
            "id": r.id,
            "status": _record_status(r),
            "pid": r.daemon_pid,
            "kind": r.kind,
            "ref": r.ref,
            "socket": r.socket_path,
        }
        for r in records
    ]
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    if not rows:
        _print_status("No sessions")
        return 0

    print(f"\n  {'ID':<24} {'STATUS':<10} {'PID':>7}  {'KIND':<10} REF")
    for row in rows:
        print(f"  {row['id']:<24} {row['status']:<10} {row['pid']:>7}  "
              f"{row['kind']:<10} {row['ref'] or '-'}")
    print()
    return 0


async def cmd_kill(settings: dict, args) -> int:
    log = _cli_logger(settings, args.verbose)
    store = _open_store(settings)
    await store.init()
    manager = SessionManager(
        settings, store, log,
        audit=AuditLogger(Path(settings["log_dir"]) / "audit.log"),
    )
    try:
        await manager.reconnect_session(args.session_id)
        killed = await manager.kill_session(args.session_id)
    finally:
        await manager.shutdown(kill=False)
        await store.close()
    if killed:
        _print_status(f"Killed session {args.session_id}")
    else:
        _print_status(f"No live session {args.session_id} (cleaned up any leftovers)")
    return 0


async def attach(socket_path: Path, log, stdin_fd: Optional[int] = None,
                 stdout=None) -> int:
    """Direct-attach to a daemon socket until detach, child exit or disconnect."""
    fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
    out = sys.stdout.buffer if stdout is None else stdout
    client = DaemonClient(socket_path, ClientType.DIRECT_ATTACH, log)
    done = asyncio.Event()
    detached = False

    def on_output(data: bytes):
        out.write(data)
        out.flush()

    client.on("replay", on_output)
    client.on("data", on_output)
    client.on("exit", lambda info: done.set())
    client.on("close", done.set)

    try:
        await client.connect()
    except DaemonClientError as e:
        _print_error(str(e))
        return 1

    loop = asyncio.get_running_loop()
    interactive = os.isatty(fd)
    saved = termios.tcgetattr(fd) if interactive else None

    def on_stdin():
        nonlocal detached
        try:
            data = os.read(fd, STDIN_CHUNK)
        except OSError:
            data = b""
        if not data:
            detached = True
            done.set()
            return
        if DETACH_KEY in data:
            before = data.split(DETACH_KEY, 1)[0]
            if before:
                client.write(before)
            detached = True
            done.set()
            return
        client.write(data)

    def on_winch():
        size = shutil.get_terminal_size()
        client.resize(size.columns, size.lines)

    try:
        if interactive:
            tty.setraw(fd)
            on_winch()
            loop.add_signal_handler(signal.SIGWINCH, on_winch)
        loop.add_reader(fd, on_stdin)
        await done.wait()
    finally:
        loop.remove_reader(fd)
        if interactive:
            loop.remove_signal_handler(signal.SIGWINCH)
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        await client.close()

    print()
    if client.exit_info is not None and not detached:
        info = client.exit_info
        _print_status(f"Session ended ({_format_exit(info.code, info.signal)})")
        return info.code if info.code is not None else 1
    if detached:
        _print_status("Detached (session keeps running)")
    else:
        _print_error("Connection to daemon lost")
        return 1
    return 0


async def cmd_attach(settings: dict, args) -> int:
    log = _cli_logger(settings, args.verbose)
    try:
        path = _resolve_socket(args.target, Path(settings["run_dir"]))
    except ValueError as e:
        _print_error(str(e))
        return 2
    if not is_genuine_socket(path):
        _print_error(f"No daemon socket at {path}")
        return 1
    _print_status(f"Attaching to {path} (Ctrl-\\ to detach)")
    return await attach(path, log)


async def cmd_serve(settings: dict, args) -> int:
    if args.host:
        settings["bridge_host"] = args.host
    if args.port:
        settings["bridge_port"] = args.port
    log = setup_logging(
        "holdfast.controller",
        log_file=Path(settings["log_dir"]) / "controller.log",
        verbose=args.verbose,
    )
    controller = Controller(settings, log)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, controller.request_stop)

    print(f"\n{'='*56}")
    print("  Holdfast Controller")
    print(f"  Bridge:  ws://{settings['bridge_host']}:{settings['bridge_port']}/sessions/<id>")
    print(f"  Sockets: {settings['run_dir']}")
    print(f"  Store:   {settings['db_file']}")
    print(f"  Logs:    {Path(settings['log_dir']) / 'controller.log'}")
    print(f"  PID:     {os.getpid()}")
    print(f"{'='*56}\n")

    try:
        await controller.serve_forever()
    except OSError as e:
        _print_error(f"Controller failed: {e}")
        return 1
    return 0


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="holdfast",
        description="Holdfast - persistent terminal sessions without tmux",
        epilog="run: put the command after --, e.g. holdfast run dev -- npm start",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # holdfast run
    p_run = sub.add_parser("run", help="Start a session in a detached daemon")
    p_run.add_argument("session_id", help="Session id ([A-Za-z0-9_.-], max 64)")
    p_run.add_argument("--cwd", help="Working directory (default: current)")
    p_run.add_argument("--env", action="append", default=[], metavar="KEY=VALUE",
                       help="Extra environment variable (repeatable)")
    p_run.add_argument("--cols", type=int, help="Initial columns")
    p_run.add_argument("--rows", type=int, help="Initial rows")
    p_run.add_argument("--kind", default="shell", help="Session type tag")
    p_run.add_argument("--ref", help="External reference tag")
    p_run.add_argument("--restart", action="store_true",
                       help="Restart the child on exit (stays in the foreground)")
    p_run.add_argument("--max-restarts", type=int, help="Restart ceiling")
    p_run.add_argument("--restart-delay", type=float, help="Seconds before each restart")

    # holdfast ls
    p_ls = sub.add_parser("ls", help="List persisted sessions")
    p_ls.add_argument("--json", action="store_true", help="Machine-readable output")

    # holdfast attach
    p_attach = sub.add_parser("attach", help="Attach this terminal to a session")
    p_attach.add_argument("target", help="Session id or socket path")

    # holdfast kill
    p_kill = sub.add_parser("kill", help="Kill a session and its daemon")
    p_kill.add_argument("session_id", help="Session id")

    # holdfast serve
    p_serve = sub.add_parser("serve", help="Run the controller and browser bridge")
    p_serve.add_argument("--host", help="Bridge bind address")
    p_serve.add_argument("--port", type=int, help="Bridge port")

    return parser


COMMANDS = {
    "run": cmd_run,
    "ls": cmd_ls,
    "attach": cmd_attach,
    "kill": cmd_kill,
    "serve": cmd_serve,
}


def parse_args(argv=None) -> argparse.Namespace:
    """Everything after the first ``--`` is the command for ``run``."""
    argv = sys.argv[1:] if argv is None else list(argv)
    cmd = []
    if "--" in argv:
        split = argv.index("--")
        argv, cmd = argv[:split], argv[split + 1:]
    args = build_parser().parse_args(argv)
    args.cmd = cmd
    return args


def main(argv=None):
    args = parse_args(argv)
    settings = load_settings()
    sys.exit(asyncio.run(COMMANDS[args.command](settings, args)))


if __name__ == "__main__":
    main()
