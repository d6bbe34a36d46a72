"""
Controller process - wires the store, Session Manager and browser bridge.

Startup reattaches to every daemon that survived the previous controller,
sweeps sockets nobody is listening on, then serves browsers. Stopping
detaches: daemons and their children keep running for the next start.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from core.config import DB_FILE, DEFAULT_BRIDGE_HOST, DEFAULT_BRIDGE_PORT, LOG_DIR, RUN_DIR
from core.security import AuditLogger, ensure_private_dir
from controller.bridge import BrowserBridge
from controller.session_manager import SessionEvent, SessionManager
from controller.store import SessionStore


class Controller:
    def __init__(self, settings: dict, logger: logging.Logger,
                 store: Optional[SessionStore] = None,
                 audit: Optional[AuditLogger] = None):
        self.settings = settings
        self.log = logger
        self.store = store or SessionStore.for_path(Path(settings.get("db_file", DB_FILE)))
        self.audit = audit or AuditLogger(Path(settings.get("log_dir", LOG_DIR)) / "audit.log")
        self.manager = SessionManager(
            settings, self.store, logger, on_event=self._on_event, audit=self.audit,
        )
        self.bridge = BrowserBridge(self.manager, logger)
        self._stopped = asyncio.Event()
        self._started = False

    def _on_event(self, event: SessionEvent) -> None:
        self.bridge.notify(event)

    async def start(self, serve_bridge: bool = True) -> None:
        ensure_private_dir(Path(self.settings.get("run_dir", RUN_DIR)))
        await self.store.init()
        sessions = await self.manager.discover()
        removed = await self.manager.cleanup_stale_sockets()
        self.log.info(f"Controller ready: {len(sessions)} session(s), "
                      f"{removed} stale socket(s) removed")
        if serve_bridge:
            await self.bridge.start(
                self.settings.get("bridge_host", DEFAULT_BRIDGE_HOST),
                self.settings.get("bridge_port", DEFAULT_BRIDGE_PORT),
            )
        self._started = True

    async def serve_forever(self) -> None:
        """Start, then run until ``request_stop()``."""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        self._stopped.set()

    async def stop(self) -> None:
        """Detach from all sessions. Daemons keep running."""
        if not self._started:
            return
        self._started = False
        await self.bridge.stop()
        await self.manager.shutdown(kill=False)
        await self.store.close()
        self.log.info("Controller stopped (sessions left running)")
