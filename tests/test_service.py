"""Tests for controller.service - startup sweep, bridge, detach on stop."""

import asyncio
import os
import socket

import pytest

from controller.service import Controller
from controller.store import SessionRecord, SessionStore
from core.config import default_settings
from core.security import AuditLogger, socket_path_for


@pytest.fixture
def settings(sock_dir, tmp_path):
    s = default_settings()
    s.update(
        run_dir=sock_dir,
        log_dir=tmp_path / "logs",
        db_file=tmp_path / "sessions.db",
        bridge_host="127.0.0.1",
        bridge_port=0,
    )
    return s


def _controller(settings, log):
    store = SessionStore.for_path(settings["db_file"])
    audit = AuditLogger(settings["log_dir"] / "audit.log")
    return Controller(settings, log, store=store, audit=audit)


class TestStartup:
    @pytest.mark.asyncio
    async def test_sweeps_dead_socket_and_stale_record(self, settings, log):
        dead = socket_path_for("dead", settings["run_dir"])
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(str(dead))
        sock.close()

        seed = SessionStore.for_path(settings["db_file"])
        await seed.init()
        await seed.save(SessionRecord("old", "/nowhere.sock", os.getpid(), 1.0))
        await seed.close()

        controller = _controller(settings, log)
        await controller.start(serve_bridge=False)
        try:
            assert not dead.exists()
            assert controller.manager.list_sessions() == []
            assert await controller.store.get("old") is None
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_bridge_listens(self, settings, log):
        controller = _controller(settings, log)
        await controller.start()
        try:
            port = controller.bridge.port
            assert port
            _, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.close()
        finally:
            await controller.stop()
        assert controller.bridge.port is None


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, settings, log):
        controller = _controller(settings, log)
        await controller.stop()

    @pytest.mark.asyncio
    async def test_serve_forever_until_requested(self, settings, log):
        controller = _controller(settings, log)
        task = asyncio.create_task(controller.serve_forever())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while controller.bridge.port is None:
            assert loop.time() < deadline, "bridge never started"
            await asyncio.sleep(0.01)

        controller.request_stop()
        await asyncio.wait_for(task, 2.0)
        assert controller.bridge.port is None
