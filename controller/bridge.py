"""
Browser bridge - WebSocket access to managed sessions.

    ws://<host>:<port>/sessions/<id>

Every message is binary with a one-byte channel prefix:

    0x00 + JSON   control  {"type": "...", "payload": {...}}
    0x01 + bytes  terminal data

Browser -> controller control types: ``resize`` {cols, rows}, ``ping``.
Controller -> browser: ``pong``, ``session`` {kind, detail} lifecycle events.

A new browser receives the controller-side replay snapshot first and then
live output. Each browser has a bounded send queue; a browser that cannot
keep up is disconnected instead of stalling the others.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from core.protocol import ProtocolError, Resize, encode_control, parse_message
from core.security import SESSION_ID_RE
from controller.session_manager import EventKind, ManagedSession, SessionEvent

CHANNEL_CONTROL = 0x00
CHANNEL_DATA = 0x01
QUEUE_SIZE = 1024
MAX_MESSAGE_SIZE = 2**20  # 1MB

CLOSE_UNKNOWN_SESSION = 4404
CLOSE_SLOW_CONSUMER = 4408
CLOSE_SESSION_ENDED = 1000

ENDING_EVENTS = {
    EventKind.EXITED,
    EventKind.RESTART_BUDGET_EXCEEDED,
    EventKind.STALE,
    EventKind.LOST,
    EventKind.KILLED,
}

_CLOSE = object()


def control_message(message_type: str, payload: Optional[dict] = None) -> bytes:
    return bytes([CHANNEL_CONTROL]) + encode_control(message_type, payload)


def data_message(data: bytes) -> bytes:
    return bytes([CHANNEL_DATA]) + data


def session_id_from_path(path: str) -> Optional[str]:
    """``/sessions/<id>`` -> id, or None for anything else."""
    parts = urlsplit(path).path.strip("/").split("/")
    if len(parts) != 2 or parts[0] != "sessions":
        return None
    return parts[1] if SESSION_ID_RE.match(parts[1]) else None


@dataclass(eq=False)
class Browser:
    websocket: ServerConnection
    session_id: str
    queue: asyncio.Queue
    pump: Optional[asyncio.Task] = field(default=None, repr=False)
    dropped: bool = False

    @property
    def source(self) -> str:
        peer = self.websocket.remote_address
        return f"{peer[0]}:{peer[1]}" if peer else "unknown"


class BrowserBridge:
    def __init__(self, manager, logger: logging.Logger, queue_size: int = QUEUE_SIZE):
        self.manager = manager
        self.log = logger
        self.queue_size = queue_size
        self._browsers: dict[str, set[Browser]] = {}
        self._server: Optional[Server] = None
        self._closers: set[asyncio.Task] = set()

    def browsers(self, session_id: str) -> set[Browser]:
        return set(self._browsers.get(session_id, ()))

    # --- Connections ---

    async def handle_client(self, websocket: ServerConnection) -> None:
        """Serve one browser for the lifetime of its connection."""
        session_id = session_id_from_path(websocket.request.path)
        session: Optional[ManagedSession] = (
            self.manager.get(session_id) if session_id else None
        )
        if session is None:
            self.log.info(f"Browser asked for unknown session: {websocket.request.path}")
            await websocket.close(CLOSE_UNKNOWN_SESSION, "unknown session")
            return

        browser = Browser(websocket, session.id, asyncio.Queue(self.queue_size))
        # no await between snapshot and subscribe
        snapshot = session.replay.snapshot()
        if snapshot:
            browser.queue.put_nowait(data_message(snapshot))
        unsubscribe = session.subscribe(lambda data: self._enqueue(browser, data_message(data)))
        self._browsers.setdefault(session.id, set()).add(browser)
        browser.pump = asyncio.create_task(self._pump(browser))
        self.log.info(f"Browser {browser.source} attached to {session.id}")

        try:
            async for message in websocket:
                self._handle_message(session, browser, message)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            unsubscribe()
            self._forget(browser)
            if browser.pump is not None and not browser.pump.done():
                browser.pump.cancel()
            self.log.info(f"Browser {browser.source} detached from {session.id}")

    async def _pump(self, browser: Browser) -> None:
        ws = browser.websocket
        try:
            while True:
                item = await browser.queue.get()
                if item is _CLOSE:
                    await ws.close(CLOSE_SESSION_ENDED, "session ended")
                    return
                await ws.send(item)
        except websockets.exceptions.ConnectionClosed:
            pass

    def _enqueue(self, browser: Browser, item) -> None:
        if browser.dropped:
            return
        try:
            browser.queue.put_nowait(item)
        except asyncio.QueueFull:
            self._drop(browser)

    def _drop(self, browser: Browser) -> None:
        browser.dropped = True
        self.log.warning(f"Browser {browser.source} on {browser.session_id} too slow; dropping")
        self._forget(browser)
        if browser.pump is not None:
            browser.pump.cancel()
        closer = asyncio.create_task(
            browser.websocket.close(CLOSE_SLOW_CONSUMER, "slow consumer"))
        self._closers.add(closer)
        closer.add_done_callback(self._closers.discard)

    def _forget(self, browser: Browser) -> None:
        peers = self._browsers.get(browser.session_id)
        if peers is None:
            return
        peers.discard(browser)
        if not peers:
            del self._browsers[browser.session_id]

    # --- Inbound ---

    def _handle_message(self, session: ManagedSession, browser: Browser, message) -> None:
        if isinstance(message, str) or not message:
            self.log.debug(f"Ignoring non-binary message from {browser.source}")
            return
        channel, body = message[0], bytes(message[1:])
        if channel == CHANNEL_DATA:
            if session.client is not None:
                session.client.write(body)
        elif channel == CHANNEL_CONTROL:
            self._handle_control(session, browser, body)
        else:
            self.log.debug(f"Unknown channel 0x{channel:02x} from {browser.source}")

    def _handle_control(self, session: ManagedSession, browser: Browser, body: bytes) -> None:
        try:
            msg = json.loads(body)
        except ValueError:
            self.log.debug(f"Invalid control JSON from {browser.source}")
            return
        if not isinstance(msg, dict):
            return

        msg_type = msg.get("type", "")
        if msg_type == "ping":
            self._enqueue(browser, control_message("pong"))
        elif msg_type == "resize":
            try:
                size = parse_message(Resize, json.dumps(msg.get("payload") or {}).encode())
            except ProtocolError as e:
                self.log.debug(f"Bad resize from {browser.source}: {e}")
                return
            session.cols, session.rows = size.cols, size.rows
            if session.client is not None:
                session.client.resize(size.cols, size.rows)
        else:
            self.log.debug(f"Unknown control type {msg_type!r} from {browser.source}")

    # --- Outbound events ---

    def notify(self, event: SessionEvent) -> None:
        """Forward a lifecycle event to the session's browsers."""
        message = control_message("session", {
            "kind": event.kind.value,
            "detail": event.detail,
        })
        for browser in self.browsers(event.session_id):
            self._enqueue(browser, message)
            if event.kind in ENDING_EVENTS:
                self._enqueue(browser, _CLOSE)

    # --- Server ---

    async def start(self, host: str, port: int) -> Server:
        self._server = await serve(
            self.handle_client,
            host,
            port,
            ping_interval=20,
            ping_timeout=10,
            max_size=MAX_MESSAGE_SIZE,
        )
        self.log.info(f"Browser bridge listening on ws://{host}:{self.port}")
        return self._server

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
