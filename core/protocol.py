"""
Holdfast wire protocol.

Every message on a daemon socket is a frame:

    [1 byte type][4 byte big-endian payload length][payload]

DATA and REPLAY carry raw terminal bytes. Control frames carry JSON objects
with camelCase keys, validated with pydantic on the receiving side. Both the
daemon and the controller-side client import from this module.
"""

import json
import signal
import struct
from enum import Enum, IntEnum
from typing import NamedTuple, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

PROTOCOL_VERSION = 1
HEADER_SIZE = 5
MAX_FRAME_SIZE = 16 * 1024 * 1024  # 16 MiB

_HEADER = struct.Struct(">BI")


class ProtocolError(Exception):
    """Malformed control payload. Scoped to one connection."""


class FrameType(IntEnum):
    DATA = 0x01
    RESIZE = 0x02
    SIGNAL = 0x03
    EXIT = 0x04
    REPLAY = 0x05
    PING = 0x06
    PONG = 0x07
    HELLO = 0x08
    WELCOME = 0x09
    SPAWN = 0x0A


class ClientType(str, Enum):
    CONTROLLER = "controller"
    DIRECT_ATTACH = "direct-attach"


# Only these may be delivered to the child via a SIGNAL frame.
ALLOWED_SIGNALS = frozenset({"SIGINT", "SIGTERM", "SIGKILL", "SIGHUP", "SIGWINCH"})


class Frame(NamedTuple):
    """A decoded frame. ``type`` is a raw int so unknown types survive parsing."""

    type: int
    payload: bytes


# ---------------------------------------------------------------------------
# Control payloads
# ---------------------------------------------------------------------------


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Resize(_Message):
    cols: int = Field(gt=0, le=10_000)
    rows: int = Field(gt=0, le=10_000)


class SignalRequest(_Message):
    signal: str


class ExitInfo(_Message):
    code: Optional[int] = None
    signal: Optional[str] = None


class Hello(_Message):
    version: int
    client_type: ClientType = Field(default=ClientType.CONTROLLER, alias="clientType")


class Welcome(_Message):
    version: int = PROTOCOL_VERSION
    child_pid: Optional[int] = Field(default=None, alias="childPid")
    cols: int
    rows: int
    start_time: float = Field(alias="startTime")


class SpawnRequest(_Message):
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)


M = TypeVar("M", bound=BaseModel)


def parse_message(model: type[M], payload: bytes) -> M:
    """Validate a JSON control payload, raising ProtocolError on any defect."""
    try:
        return model.model_validate_json(payload)
    except (ValidationError, ValueError) as e:
        raise ProtocolError(f"invalid {model.__name__} payload: {e}") from e


def resolve_signal(name: str) -> int:
    """Map an allowed signal name to its number."""
    if name not in ALLOWED_SIGNALS:
        raise ProtocolError(f"signal not allowed: {name!r}")
    return int(getattr(signal, name))


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_frame(frame_type: int, payload: bytes = b"") -> bytes:
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError(f"payload of {len(payload)} bytes exceeds MAX_FRAME_SIZE")
    return _HEADER.pack(frame_type, len(payload)) + payload


def _encode_json(frame_type: FrameType, message: BaseModel) -> bytes:
    return encode_frame(frame_type, message.model_dump_json(by_alias=True).encode())


def encode_data(data: bytes) -> bytes:
    return encode_frame(FrameType.DATA, data)


def encode_replay(data: bytes) -> bytes:
    return encode_frame(FrameType.REPLAY, data)


def encode_resize(cols: int, rows: int) -> bytes:
    return _encode_json(FrameType.RESIZE, Resize(cols=cols, rows=rows))


def encode_signal(name: str) -> bytes:
    return _encode_json(FrameType.SIGNAL, SignalRequest(signal=name))


def encode_exit(info: ExitInfo) -> bytes:
    return _encode_json(FrameType.EXIT, info)


def encode_ping() -> bytes:
    return encode_frame(FrameType.PING)


def encode_pong() -> bytes:
    return encode_frame(FrameType.PONG)


def encode_hello(client_type: ClientType = ClientType.CONTROLLER,
                 version: int = PROTOCOL_VERSION) -> bytes:
    return _encode_json(FrameType.HELLO, Hello(version=version, client_type=client_type))


def encode_welcome(welcome: Welcome) -> bytes:
    return _encode_json(FrameType.WELCOME, welcome)


def encode_spawn(request: SpawnRequest) -> bytes:
    return _encode_json(FrameType.SPAWN, request)


def encode_control(message_type: str, payload: Optional[dict] = None) -> bytes:
    """JSON body for the browser bridge control channel."""
    return json.dumps({"type": message_type, "payload": payload or {}}).encode()


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class FrameParser:
    """
    Incremental frame decoder.

    Feed it whatever the transport delivers; it returns every complete frame
    and keeps the remainder. A header announcing more than MAX_FRAME_SIZE
    bytes is not fatal: its payload is discarded as it streams past and
    ``dropped`` is incremented so the owner can log it.
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE):
        self.max_frame_size = max_frame_size
        self.dropped = 0
        self._buf = bytearray()
        self._skip = 0

    def feed(self, chunk: bytes) -> list[Frame]:
        if self._skip:
            if len(chunk) <= self._skip:
                self._skip -= len(chunk)
                return []
            chunk = chunk[self._skip:]
            self._skip = 0
        self._buf.extend(chunk)

        frames = []
        while len(self._buf) >= HEADER_SIZE:
            frame_type, length = _HEADER.unpack_from(self._buf)
            if length > self.max_frame_size:
                self.dropped += 1
                available = len(self._buf) - HEADER_SIZE
                if available >= length:
                    del self._buf[:HEADER_SIZE + length]
                    continue
                self._skip = length - available
                self._buf.clear()
                break
            end = HEADER_SIZE + length
            if len(self._buf) < end:
                break
            frames.append(Frame(frame_type, bytes(self._buf[HEADER_SIZE:end])))
            del self._buf[:end]
        return frames

    @property
    def pending(self) -> int:
        """Bytes buffered towards an incomplete frame."""
        return len(self._buf)
