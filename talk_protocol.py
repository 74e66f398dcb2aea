"""Length-prefixed JSON framing and the daemon request/response schema.

Every frame is a 4-byte big-endian payload length followed by a UTF-8 JSON
payload (newline-terminated). The same framing is used in both directions.
"""

from __future__ import annotations

import json
import struct
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

HEADER = struct.Struct(">I")
TERMINAL_TYPES = frozenset({"say:done", "ask:done", "error", "pong"})


# ── Requests ─────────────────────────────────────────────────────────────────

class SayRequest(BaseModel):
    type: Literal["say"]
    id: str
    message: str
    voice: str


class AskRequest(BaseModel):
    type: Literal["ask"]
    id: str
    message: str
    voice: str
    timeout: float
    ack: bool


class PingRequest(BaseModel):
    type: Literal["ping"]


class ShutdownRequest(BaseModel):
    type: Literal["shutdown"]


DaemonRequest = Annotated[
    Union[SayRequest, AskRequest, PingRequest, ShutdownRequest],
    Field(discriminator="type"),
]

_request_adapter: TypeAdapter = TypeAdapter(DaemonRequest)


# ── Responses ────────────────────────────────────────────────────────────────

class TraceEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    at_ms: float = Field(alias="atMs")
    event: str
    detail: dict[str, Any] | None = None


class SayDone(BaseModel):
    type: Literal["say:done"] = "say:done"
    id: str


class AskDone(BaseModel):
    type: Literal["ask:done"] = "ask:done"
    id: str
    transcript: str


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    id: str
    message: str


class Pong(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["pong"] = "pong"
    uptime: float
    command_count: int = Field(alias="commandCount")


class LogResponse(BaseModel):
    type: Literal["log"] = "log"
    id: str
    entry: TraceEntry


DaemonResponse = Annotated[
    Union[SayDone, AskDone, ErrorResponse, Pong, LogResponse],
    Field(discriminator="type"),
]

_response_adapter: TypeAdapter = TypeAdapter(DaemonResponse)


def parse_request(obj: Any):
    """Validate a decoded message as a request. Raises ValidationError."""
    return _request_adapter.validate_python(obj)


def parse_response(obj: Any):
    return _response_adapter.validate_python(obj)


def invalid_request_response(error: Exception) -> ErrorResponse:
    if isinstance(error, ValidationError):
        detail = str(error)
    else:
        detail = f"{type(error).__name__}: {error}"
    return ErrorResponse(id="unknown", message=f"Invalid request: {detail}")


# ── Framing ──────────────────────────────────────────────────────────────────

def encode_message(msg: BaseModel | dict) -> bytes:
    """Encode one message as a length-prefixed frame."""
    if isinstance(msg, BaseModel):
        msg = msg.model_dump(by_alias=True, exclude_none=True)
    payload = (json.dumps(msg) + "\n").encode("utf-8")
    return HEADER.pack(len(payload)) + payload


def decode_payload(payload: bytes) -> Any:
    return json.loads(payload.decode("utf-8"))


class MessageParser:
    """Byte accumulator that splits a stream into frames.

    Chunks may split frames anywhere, down to one byte at a time, and a single
    chunk may carry several frames.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed_frames(self, chunk: bytes) -> list[bytes]:
        self._buffer += chunk
        frames = []
        while len(self._buffer) >= HEADER.size:
            (length,) = HEADER.unpack_from(self._buffer, 0)
            end = HEADER.size + length
            if len(self._buffer) < end:
                break
            frames.append(bytes(self._buffer[HEADER.size:end]))
            del self._buffer[:end]
        return frames

    def feed(self, chunk: bytes) -> list[Any]:
        return [decode_payload(p) for p in self.feed_frames(chunk)]

    @property
    def buffered(self) -> int:
        return len(self._buffer)
