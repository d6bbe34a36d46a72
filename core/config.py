"""
Holdfast configuration - paths, defaults, and shared config helpers.

All modules import path constants from here. The ~/.holdfast/ directory
(or $HOLDFAST_HOME) is the single location for sockets, logs, and state.
"""

import json
import os
from pathlib import Path
from typing import Callable

# ---------------------------------------------------------------------------
# Paths - the ~/.holdfast/ directory tree
# ---------------------------------------------------------------------------

HOLDFAST_DIR = Path(os.environ.get("HOLDFAST_HOME") or Path.home() / ".holdfast")
RUN_DIR = HOLDFAST_DIR / "run"
LOG_DIR = HOLDFAST_DIR / "logs"
DB_FILE = HOLDFAST_DIR / "sessions.db"
SETTINGS_FILE = HOLDFAST_DIR / "settings.json"

SOCKET_PREFIX = "holdfast-"
SOCKET_SUFFIX = ".sock"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
DEFAULT_REPLAY_LINES = 10_000      # matches renderer scrollback
DEFAULT_HEARTBEAT_INTERVAL = 10.0  # seconds between PINGs
DEFAULT_HEARTBEAT_TIMEOUT = 5.0    # seconds to wait for PONG
DEFAULT_KILL_GRACE = 5.0           # SIGTERM -> SIGKILL escalation
DEFAULT_RESTART_DELAY = 2.0
DEFAULT_MAX_RESTARTS = 50
DEFAULT_RESTART_RESET_AFTER = 300.0
DEFAULT_BRIDGE_HOST = "127.0.0.1"
DEFAULT_BRIDGE_PORT = 9785
DEFAULT_LAUNCH_TIMEOUT = 10.0
DEFAULT_SOCKET_WAIT = 5.0

# ENV_VAR_NAME -> (config_key, cast_fn), shared by env and config.env parsing
ENV_KEY_MAP: dict[str, tuple[str, Callable]] = {
    "HOLDFAST_REPLAY_LINES": ("replay_lines", int),
    "HOLDFAST_HEARTBEAT": ("heartbeat_interval", float),
    "HOLDFAST_HEARTBEAT_TIMEOUT": ("heartbeat_timeout", float),
    "HOLDFAST_KILL_GRACE": ("kill_grace", float),
    "HOLDFAST_RESTART_DELAY": ("restart_delay", float),
    "HOLDFAST_MAX_RESTARTS": ("max_restarts", int),
    "HOLDFAST_RESTART_RESET": ("restart_reset_after", float),
    "HOLDFAST_BRIDGE_HOST": ("bridge_host", str),
    "HOLDFAST_BRIDGE_PORT": ("bridge_port", int),
}

# ---------------------------------------------------------------------------
# Shared config helpers
# ---------------------------------------------------------------------------


def source_env_file(
    path: Path,
    config: dict,
    key_map: dict[str, tuple[str, Callable]],
) -> None:
    """Parse key=value pairs from a shell-style env file.

    Args:
        path: Path to the .env file.
        config: Dict to update with parsed values.
        key_map: Mapping of ENV_VAR_NAME -> (config_key, cast_fn).
            Values that fail the cast are skipped.
    """
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export "):].strip()
            value = value.strip().strip('"').strip("'")
            if key in key_map:
                cfg_key, cast = key_map[key]
                try:
                    config[cfg_key] = cast(value)
                except (ValueError, TypeError):
                    pass


def default_settings() -> dict:
    return {
        "run_dir": RUN_DIR,
        "log_dir": LOG_DIR,
        "db_file": DB_FILE,
        "cols": DEFAULT_COLS,
        "rows": DEFAULT_ROWS,
        "replay_lines": DEFAULT_REPLAY_LINES,
        "heartbeat_interval": DEFAULT_HEARTBEAT_INTERVAL,
        "heartbeat_timeout": DEFAULT_HEARTBEAT_TIMEOUT,
        "kill_grace": DEFAULT_KILL_GRACE,
        "restart_delay": DEFAULT_RESTART_DELAY,
        "max_restarts": DEFAULT_MAX_RESTARTS,
        "restart_reset_after": DEFAULT_RESTART_RESET_AFTER,
        "bridge_host": DEFAULT_BRIDGE_HOST,
        "bridge_port": DEFAULT_BRIDGE_PORT,
        "launch_timeout": DEFAULT_LAUNCH_TIMEOUT,
        "socket_wait": DEFAULT_SOCKET_WAIT,
    }


def load_saved_settings(path: Path = SETTINGS_FILE) -> dict:
    """Read settings.json, returning {} if missing or unreadable."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(
    env: dict | None = None,
    search_dirs: list[Path] | None = None,
    settings_file: Path = SETTINGS_FILE,
) -> dict:
    """Build the effective settings.

    Priority: environment > config.env > settings.json > defaults.
    """
    env = os.environ if env is None else env
    config = default_settings()

    known = {cfg_key for cfg_key, _ in ENV_KEY_MAP.values()}
    for key, value in load_saved_settings(settings_file).items():
        if key in known:
            config[key] = value

    for search in search_dirs or [Path.cwd(), HOLDFAST_DIR]:
        cfg_file = search / "config.env"
        if cfg_file.exists():
            source_env_file(cfg_file, config, ENV_KEY_MAP)
            break

    for env_key, (cfg_key, cast) in ENV_KEY_MAP.items():
        if env_key in env:
            try:
                config[cfg_key] = cast(env[env_key])
            except (ValueError, TypeError):
                pass

    return config
