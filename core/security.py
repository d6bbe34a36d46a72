"""
Holdfast Security Module

Filesystem boundary and audit trail shared by the daemon and controller:
- Owner-only directories and sockets
- Genuine-socket checks (never follow or unlink symlinks)
- Session id validation and socket naming
- Structured audit logging

Daemon sockets are the only authentication boundary: anyone who can connect
can read and write the session, so every path here fails closed.
"""

import json
import logging
import os
import re
import stat
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.config import LOG_DIR, RUN_DIR, SOCKET_PREFIX, SOCKET_SUFFIX

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")

# ---------------------------------------------------------------------------
# 1. Paths and sockets
# ---------------------------------------------------------------------------


def ensure_private_dir(path: Path) -> Path:
    """Create ``path`` if needed and restrict it to the owner (0700)."""
    path.mkdir(parents=True, exist_ok=True)
    path.chmod(0o700)
    return path


def validate_session_id(session_id: str) -> str:
    if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
        raise ValueError(f"invalid session id: {session_id!r}")
    if session_id in (".", ".."):
        raise ValueError(f"invalid session id: {session_id!r}")
    return session_id


def socket_path_for(session_id: str, run_dir: Path = RUN_DIR) -> Path:
    validate_session_id(session_id)
    return run_dir / f"{SOCKET_PREFIX}{session_id}{SOCKET_SUFFIX}"


def session_id_from_socket(path: Path) -> Optional[str]:
    """Inverse of socket_path_for; None if the name does not match."""
    name = path.name
    if not (name.startswith(SOCKET_PREFIX) and name.endswith(SOCKET_SUFFIX)):
        return None
    session_id = name[len(SOCKET_PREFIX):-len(SOCKET_SUFFIX)]
    return session_id if SESSION_ID_RE.match(session_id) else None


def is_genuine_socket(path: Path) -> bool:
    """True only for a real socket file. Symlinks are never genuine."""
    try:
        st = os.lstat(path)
    except OSError:
        return False
    return stat.S_ISSOCK(st.st_mode)


def unlink_socket_if_exists(path: Path) -> bool:
    """Remove ``path`` if it is a genuine socket. Returns True if removed."""
    if not is_genuine_socket(path):
        return False
    try:
        os.unlink(path)
    except FileNotFoundError:
        return False
    return True


# ---------------------------------------------------------------------------
# 2. Audit Logging
# ---------------------------------------------------------------------------

class AuditLogger:
    """
    Structured audit trail for security-relevant events.
    Separate from the operational log.

    Events logged:
      - DAEMON_START / DAEMON_STOP
      - CLIENT_ATTACH / CONTROLLER_REPLACED
      - SIGNAL_DELIVERED / SIGNAL_REJECTED / SUPERVISORY_IGNORED
      - CHILD_SPAWN / CHILD_EXIT
      - SESSION_CREATE / SESSION_KILL / SESSION_GONE
    """

    def __init__(self, log_path: Optional[Path] = None):
        self._log_path = log_path or (LOG_DIR / "audit.log")
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

        self._logger = logging.getLogger("holdfast.audit")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False  # keep out of the operational log

        # Avoid duplicate handlers on re-init
        if not self._logger.handlers:
            handler = RotatingFileHandler(
                self._log_path,
                maxBytes=5 * 1024 * 1024,  # 5MB
                backupCount=10,
            )
            handler.setFormatter(logging.Formatter(
                "%(asctime)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S%z"
            ))
            self._logger.addHandler(handler)

    def log(self, event: str, source: str = "-", details: str = ""):
        """Write a structured audit entry."""
        entry = json.dumps({
            "event": event,
            "source": source,
            "details": details,
            "ts": datetime.now(timezone.utc).isoformat(),
        })
        self._logger.info(entry)

    def daemon_start(self, session_id: str, pid: int):
        self.log("DAEMON_START", session_id, f"pid={pid}")

    def daemon_stop(self, session_id: str):
        self.log("DAEMON_STOP", session_id)

    def client_attach(self, session_id: str, client_type: str, conn_id: int):
        self.log("CLIENT_ATTACH", session_id, f"type={client_type} conn={conn_id}")

    def controller_replaced(self, session_id: str, old_conn: int, new_conn: int):
        self.log("CONTROLLER_REPLACED", session_id, f"old={old_conn} new={new_conn}")

    def signal_delivered(self, session_id: str, name: str, pid: int):
        self.log("SIGNAL_DELIVERED", session_id, f"signal={name} pid={pid}")

    def signal_rejected(self, session_id: str, name: str):
        self.log("SIGNAL_REJECTED", session_id, f"signal={name[:32]}")

    def supervisory_ignored(self, session_id: str, frame: str, conn_id: int):
        self.log("SUPERVISORY_IGNORED", session_id, f"frame={frame} conn={conn_id}")

    def child_spawn(self, session_id: str, command: str, pid: int):
        self.log("CHILD_SPAWN", session_id, f"cmd={command[:80]} pid={pid}")

    def child_exit(self, session_id: str, code: Optional[int], sig: Optional[str]):
        self.log("CHILD_EXIT", session_id, f"code={code} signal={sig}")

    def session_create(self, session_id: str, pid: int):
        self.log("SESSION_CREATE", session_id, f"daemon_pid={pid}")

    def session_kill(self, session_id: str):
        self.log("SESSION_KILL", session_id)

    def session_gone(self, session_id: str, reason: str):
        self.log("SESSION_GONE", session_id, reason)
