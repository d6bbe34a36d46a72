#!/usr/bin/env python3
"""
Holdfast daemon entry point.

Launched by the controller as a detached process, one per session:

    python3 -m daemon.main '<json launch config>'
    python3 -m daemon.main --foreground '<json launch config>'   # debugging

The process detaches (fork + setsid), starts the SessionDaemon, and writes a
single JSON line to its original stdout once the socket is listening:

    {"pid": <daemon pid>, "startTime": <daemon start time>}

or ``{"error": "..."}`` if the launch failed. stdout is then closed so the
launcher sees EOF.

Logs: ~/.holdfast/logs/daemon-<session>.log
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from core.config import DEFAULT_COLS, DEFAULT_REPLAY_LINES, DEFAULT_ROWS, LOG_DIR
from core.logs import setup_logging
from core.security import AuditLogger, ensure_private_dir, validate_session_id
from daemon.session_daemon import SessionDaemon

# ---------------------------------------------------------------------------
# Launch config
# ---------------------------------------------------------------------------


class LaunchConfig(BaseModel):
    session_id: str
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)
    cols: int = Field(default=DEFAULT_COLS, gt=0)
    rows: int = Field(default=DEFAULT_ROWS, gt=0)
    socket_path: Path
    replay_lines: int = Field(default=DEFAULT_REPLAY_LINES, gt=0)
    log_dir: Path = LOG_DIR

    @field_validator("session_id")
    @classmethod
    def _valid_session_id(cls, value: str) -> str:
        return validate_session_id(value)


def _report(payload: dict) -> None:
    """Write the single startup line for the launcher."""
    try:
        sys.stdout.write(json.dumps(payload) + "\n")
        sys.stdout.flush()
    except (OSError, ValueError):
        pass


def _close_stdout() -> None:
    devnull = os.open(os.devnull, os.O_RDWR)
    os.dup2(devnull, sys.stdout.fileno())
    os.close(devnull)


def _detach() -> None:
    """Fork into the background. stdout stays open for the startup report."""
    pid = os.fork()
    if pid > 0:
        os._exit(0)
    os.setsid()
    devnull = os.open(os.devnull, os.O_RDWR)
    os.dup2(devnull, sys.stdin.fileno())
    os.dup2(devnull, sys.stderr.fileno())
    os.close(devnull)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def run_daemon(launch: LaunchConfig, log, foreground: bool = False) -> int:
    ensure_private_dir(launch.socket_path.parent)
    daemon = SessionDaemon(
        session_id=launch.session_id,
        socket_path=launch.socket_path,
        logger=log,
        audit=AuditLogger(launch.log_dir / "audit.log"),
        replay_lines=launch.replay_lines,
    )
    try:
        await daemon.start(
            launch.command, launch.args, cwd=launch.cwd, env=launch.env,
            cols=launch.cols, rows=launch.rows,
        )
    except OSError as e:
        log.error(f"Launch failed: {e}")
        _report({"error": str(e)})
        await daemon.shutdown()
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, daemon.request_stop)
    if not foreground:
        loop.add_signal_handler(signal.SIGHUP, lambda: None)

    _report({"pid": os.getpid(), "startTime": daemon.start_time})
    if not foreground:
        _close_stdout()

    await daemon.serve_until_stopped()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Holdfast session daemon")
    parser.add_argument("config", help="JSON launch config")
    parser.add_argument("--foreground", action="store_true", help="Do not detach")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    try:
        launch = LaunchConfig.model_validate_json(args.config)
    except ValidationError as e:
        _report({"error": f"invalid launch config: {e}"})
        return 2

    if not args.foreground:
        _detach()

    log = setup_logging(
        f"holdfast.daemon.{launch.session_id}",
        log_file=launch.log_dir / f"daemon-{launch.session_id}.log",
        verbose=args.verbose,
        console=args.foreground,
    )
    log.info(f"Starting daemon pid={os.getpid()} session={launch.session_id}")
    return asyncio.run(run_daemon(launch, log, foreground=args.foreground))


if __name__ == "__main__":
    sys.exit(main())
