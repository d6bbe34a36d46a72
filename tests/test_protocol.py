"""Tests for core.protocol - framing and control payloads."""

import json
import signal
import struct

import pytest

from core.protocol import (
    HEADER_SIZE,
    MAX_FRAME_SIZE,
    PROTOCOL_VERSION,
    ClientType,
    ExitInfo,
    Frame,
    FrameParser,
    FrameType,
    Hello,
    ProtocolError,
    Resize,
    SpawnRequest,
    Welcome,
    encode_data,
    encode_exit,
    encode_frame,
    encode_hello,
    encode_ping,
    encode_resize,
    encode_spawn,
    encode_welcome,
    parse_message,
    resolve_signal,
)

# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


class TestEncoding:
    """Frame layout on the wire."""

    def test_header_layout(self):
        frame = encode_data(b"hello")
        assert frame[0] == 0x01
        assert struct.unpack(">I", frame[1:5])[0] == 5
        assert frame[HEADER_SIZE:] == b"hello"

    def test_type_codes(self):
        assert FrameType.DATA == 0x01
        assert FrameType.RESIZE == 0x02
        assert FrameType.SIGNAL == 0x03
        assert FrameType.EXIT == 0x04
        assert FrameType.REPLAY == 0x05
        assert FrameType.PING == 0x06
        assert FrameType.PONG == 0x07
        assert FrameType.HELLO == 0x08
        assert FrameType.WELCOME == 0x09
        assert FrameType.SPAWN == 0x0A

    def test_empty_payload(self):
        assert encode_ping() == bytes([0x06, 0, 0, 0, 0])

    def test_oversize_payload_refused(self):
        with pytest.raises(ValueError):
            encode_frame(FrameType.DATA, b"x" * (MAX_FRAME_SIZE + 1))

    def test_json_uses_camel_case(self):
        frame = encode_hello(ClientType.DIRECT_ATTACH)
        body = json.loads(frame[HEADER_SIZE:])
        assert body == {"version": PROTOCOL_VERSION, "clientType": "direct-attach"}

        welcome = encode_welcome(Welcome(child_pid=42, cols=80, rows=24, start_time=1.5))
        body = json.loads(welcome[HEADER_SIZE:])
        assert body["childPid"] == 42
        assert body["startTime"] == 1.5

    def test_resize_payload(self):
        frame = encode_resize(120, 40)
        assert frame[0] == FrameType.RESIZE
        assert json.loads(frame[HEADER_SIZE:]) == {"cols": 120, "rows": 40}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestFrameParser:
    """Incremental decoding under arbitrary fragmentation."""

    def test_single_frame(self):
        parser = FrameParser()
        frames = parser.feed(encode_data(b"abc"))
        assert frames == [Frame(FrameType.DATA, b"abc")]

    def test_byte_by_byte(self):
        stream = encode_data(b"one") + encode_ping() + encode_resize(10, 5)
        parser = FrameParser()
        frames = []
        for i in range(len(stream)):
            frames.extend(parser.feed(stream[i:i + 1]))
        assert [f.type for f in frames] == [FrameType.DATA, FrameType.PING, FrameType.RESIZE]
        assert frames[0].payload == b"one"
        assert parser.pending == 0

    def test_many_frames_in_one_chunk(self):
        stream = b"".join(encode_data(bytes([i])) for i in range(50))
        frames = FrameParser().feed(stream)
        assert [f.payload for f in frames] == [bytes([i]) for i in range(50)]

    def test_unknown_type_is_surfaced(self):
        frames = FrameParser().feed(encode_frame(0x7F, b"future"))
        assert frames == [Frame(0x7F, b"future")]

    def test_oversize_frame_is_skipped(self):
        parser = FrameParser(max_frame_size=8)
        big = struct.pack(">BI", FrameType.DATA, 20) + b"y" * 20
        stream = big + encode_data(b"ok")
        frames = []
        # split inside the oversize payload
        frames.extend(parser.feed(stream[:10]))
        frames.extend(parser.feed(stream[10:]))
        assert frames == [Frame(FrameType.DATA, b"ok")]
        assert parser.dropped == 1

    def test_oversize_frame_complete_in_buffer(self):
        parser = FrameParser(max_frame_size=4)
        stream = struct.pack(">BI", FrameType.DATA, 6) + b"zzzzzz" + encode_data(b"ab")
        assert parser.feed(stream) == [Frame(FrameType.DATA, b"ab")]
        assert parser.dropped == 1


# ---------------------------------------------------------------------------
# Control payloads
# ---------------------------------------------------------------------------


class TestMessages:
    """pydantic validation of JSON payloads."""

    def test_hello_defaults_to_controller(self):
        hello = parse_message(Hello, b'{"version": 1}')
        assert hello.client_type is ClientType.CONTROLLER

    def test_hello_unknown_client_type(self):
        with pytest.raises(ProtocolError):
            parse_message(Hello, b'{"version": 1, "clientType": "root"}')

    def test_invalid_json(self):
        with pytest.raises(ProtocolError):
            parse_message(Resize, b"{cols:")

    def test_resize_rejects_zero(self):
        with pytest.raises(ProtocolError):
            parse_message(Resize, b'{"cols": 0, "rows": 24}')

    def test_exit_info(self):
        frame = encode_exit(ExitInfo(code=None, signal="SIGTERM"))
        info = parse_message(ExitInfo, frame[HEADER_SIZE:])
        assert info.code is None
        assert info.signal == "SIGTERM"

    def test_spawn_request(self):
        req = SpawnRequest(command="bash", args=["-l"], cwd="/tmp", env={"A": "1"})
        parsed = parse_message(SpawnRequest, encode_spawn(req)[HEADER_SIZE:])
        assert parsed == req


class TestResolveSignal:
    """Signal allowlist."""

    def test_allowed(self):
        assert resolve_signal("SIGTERM") == signal.SIGTERM
        assert resolve_signal("SIGWINCH") == signal.SIGWINCH

    @pytest.mark.parametrize("name", ["SIGSTOP", "SIGUSR1", "9", "", "kill"])
    def test_rejected(self, name):
        with pytest.raises(ProtocolError):
            resolve_signal(name)
