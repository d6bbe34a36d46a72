"""Tests for controller.client - DaemonClient against a live SessionDaemon."""

import asyncio
import logging
import signal

import pytest

from controller.client import DaemonClient, DaemonClientError
from core.protocol import (
    PROTOCOL_VERSION,
    ClientType,
    ExitInfo,
    SpawnRequest,
    Welcome,
    encode_replay,
    encode_welcome,
)
from daemon.session_daemon import SessionDaemon


async def _daemon(sock_dir, log, fake_ptys) -> SessionDaemon:
    daemon = SessionDaemon(
        "client", sock_dir / "holdfast-client.sock", log,
        pty_factory=fake_ptys.factory, handle_sigchld=False, exit_linger=None,
    )
    await daemon.start("bash", [], cols=120, rows=40)
    return daemon


async def _until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestConnect:
    """Handshake and failure modes."""

    @pytest.mark.asyncio
    async def test_connect_returns_welcome_and_replay(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        try:
            fake_ptys[0].emit(b"earlier output\n")
            client = DaemonClient(daemon.socket_path, logger=log)
            welcome = await client.connect()
            assert welcome.child_pid == fake_ptys[0].pid
            assert (welcome.cols, welcome.rows) == (120, 40)
            assert client.connected
            assert await client.wait_for_replay() == b"earlier output\n"
            await client.close()
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_missing_socket(self, sock_dir, log):
        client = DaemonClient(sock_dir / "holdfast-nobody.sock", logger=log)
        with pytest.raises(DaemonClientError):
            await client.connect(timeout=0.5)
        assert not client.connected

    @pytest.mark.asyncio
    async def test_older_daemon_rejected(self, sock_dir, log):
        path = sock_dir / "holdfast-old.sock"

        async def old_daemon(reader, writer):
            await reader.read(64)
            writer.write(encode_welcome(Welcome(
                version=PROTOCOL_VERSION - 1, child_pid=1, cols=80, rows=24, start_time=0.0,
            )))
            await writer.drain()
            writer.close()

        server = await asyncio.start_unix_server(old_daemon, path=str(path))
        try:
            client = DaemonClient(path, logger=log)
            with pytest.raises(DaemonClientError, match="older protocol"):
                await client.connect(timeout=1.0)
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_newer_daemon_accepted_with_warning(self, sock_dir, log, caplog):
        path = sock_dir / "holdfast-new.sock"

        async def new_daemon(reader, writer):
            await reader.read(64)
            writer.write(encode_welcome(Welcome(
                version=PROTOCOL_VERSION + 1, child_pid=7, cols=80, rows=24, start_time=0.0,
            )))
            writer.write(encode_replay(b"history"))
            await writer.drain()
            await reader.read()
            writer.close()

        server = await asyncio.start_unix_server(new_daemon, path=str(path))
        try:
            client = DaemonClient(path, logger=log)
            with caplog.at_level(logging.WARNING):
                welcome = await client.connect(timeout=1.0)
            assert welcome.version == PROTOCOL_VERSION + 1
            assert client.connected
            assert await client.wait_for_replay() == b"history"
            assert "newer protocol" in caplog.text
            await client.close()
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_client_is_single_use(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        try:
            client = DaemonClient(daemon.socket_path, logger=log)
            await client.connect()
            await client.close()
            with pytest.raises(DaemonClientError):
                await client.connect()
        finally:
            await daemon.shutdown()


class TestEvents:
    """data / exit / close listeners."""

    @pytest.mark.asyncio
    async def test_data_and_exit(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        try:
            client = DaemonClient(daemon.socket_path, logger=log)
            data, exits = [], []
            client.on("data", data.append)
            client.on("exit", exits.append)
            await client.connect()
            await client.wait_for_replay()

            fake_ptys[0].emit(b"one ")
            fake_ptys[0].emit(b"two")
            fake_ptys[0].finish(code=9)
            await _until(lambda: exits)

            assert b"".join(data) == b"one two"
            assert exits == [ExitInfo(code=9, signal=None)]
            assert client.exit_info.code == 9
            await client.close()
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_listener_errors_are_contained(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        try:
            client = DaemonClient(daemon.socket_path, logger=log)
            seen = []

            def broken(_data):
                raise RuntimeError("listener bug")

            client.on("data", broken)
            client.on("data", seen.append)
            await client.connect()
            fake_ptys[0].emit(b"x")
            await _until(lambda: seen)
            assert client.connected
            await client.close()
        finally:
            await daemon.shutdown()

    def test_unknown_event_rejected(self, sock_dir):
        client = DaemonClient(sock_dir / "holdfast-x.sock")
        with pytest.raises(ValueError):
            client.on("welcome", print)

    @pytest.mark.asyncio
    async def test_close_fires_once(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        try:
            client = DaemonClient(daemon.socket_path, logger=log)
            closes = []
            client.on("close", lambda: closes.append(1))
            await client.connect()
            await client.close()
            await client.close()
            assert closes == [1]
            assert not client.connected
            assert client.write(b"late") is False
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_daemon_shutdown_fires_close(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        client = DaemonClient(daemon.socket_path, logger=log)
        closes = []
        client.on("close", lambda: closes.append(1))
        await client.connect()
        await daemon.shutdown()
        await _until(lambda: closes)
        assert not client.connected


class TestCommands:
    """Outbound frames reach the daemon."""

    @pytest.mark.asyncio
    async def test_write_resize_signal_spawn(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        try:
            client = DaemonClient(daemon.socket_path, logger=log)
            await client.connect()
            assert client.write(b"ls\r")
            assert client.resize(100, 50)
            await _until(lambda: fake_ptys[0].written and fake_ptys[0].resizes)
            assert fake_ptys[0].written == [b"ls\r"]
            assert fake_ptys[0].resizes[-1] == (100, 50)

            assert client.signal("SIGWINCH")
            await _until(lambda: fake_ptys[0].signals)
            assert fake_ptys[0].signals == [signal.SIGWINCH]

            assert client.spawn(SpawnRequest(command="zsh"))
            await _until(lambda: len(fake_ptys) == 2)
            assert fake_ptys[1].command == "zsh"
            await client.close()
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_direct_attach_cannot_signal(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        try:
            client = DaemonClient(daemon.socket_path, ClientType.DIRECT_ATTACH, log)
            await client.connect()
            client.signal("SIGTERM")
            client.write(b"typed")
            await _until(lambda: fake_ptys[0].written)
            assert fake_ptys[0].signals == []
            await client.close()
        finally:
            await daemon.shutdown()


class TestHeartbeat:
    """PING/PONG liveness."""

    @pytest.mark.asyncio
    async def test_daemon_answers_ping(self, sock_dir, log, fake_ptys):
        daemon = await _daemon(sock_dir, log, fake_ptys)
        try:
            client = DaemonClient(daemon.socket_path, logger=log)
            pongs = []
            client.on("pong", lambda: pongs.append(1))
            await client.connect()
            client.start_heartbeat(interval=0.02, timeout=1.0)
            await _until(lambda: len(pongs) >= 2)
            assert client.connected
            await client.close()
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_silent_daemon_is_dropped(self, sock_dir, log):
        path = sock_dir / "holdfast-mute.sock"

        async def mute_daemon(reader, writer):
            await reader.read(64)
            writer.write(encode_welcome(Welcome(child_pid=1, cols=80, rows=24, start_time=0.0)))
            writer.write(encode_replay(b""))
            await writer.drain()
            while await reader.read(64):
                pass
            writer.close()

        server = await asyncio.start_unix_server(mute_daemon, path=str(path))
        try:
            client = DaemonClient(path, logger=log)
            closes = []
            client.on("close", lambda: closes.append(1))
            await client.connect()
            client.start_heartbeat(interval=0.02, timeout=0.1)
            await _until(lambda: closes)
            assert not client.connected
        finally:
            server.close()
            await server.wait_closed()
