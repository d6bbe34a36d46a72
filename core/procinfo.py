"""
Process identity helpers.

A pid alone is not an identity: pids are reused. Holdfast identifies a
daemon by (pid, start_time) and treats a mismatch as a different process.
"""

from typing import Optional

import psutil

START_TIME_TOLERANCE = 1.0  # seconds


def process_start_time(pid: int) -> Optional[float]:
    """Start time of ``pid`` as a Unix timestamp, or None if it is gone."""
    if pid <= 0:
        return None
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        return proc.create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, ValueError):
        return None


def is_process_alive(pid: int) -> bool:
    return process_start_time(pid) is not None


def same_process(pid: int, start_time: float,
                 tolerance: float = START_TIME_TOLERANCE) -> bool:
    """True if ``pid`` is alive and started within ``tolerance`` of ``start_time``."""
    actual = process_start_time(pid)
    if actual is None:
        return False
    return abs(actual - start_time) <= tolerance
