"""Wire protocol between the relay server and its clients.

Every record is a server-sent event::

    data: {"type": "content", "data": "Hel", "id": "<request-id>-1"}\\n\\n

The JSON payload keeps newlines and the blank-line separator inside
``data`` escaped, so fragment text can never break framing.

A stream is always ``metadata``, zero or more ``content``, then exactly one
terminal frame (``done`` or ``error``).  When the upstream never opened the
``metadata`` frame is absent and the stream is a lone ``error``.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Union

_logger = logging.getLogger(__name__)

MEDIA_TYPE = "text/event-stream"
FIELD_PREFIX = "data:"
RECORD_SEPARATOR = "\n\n"

FRAME_TYPES = ("metadata", "content", "done", "error")


class FrameDecodeError(ValueError):
    """A record could not be parsed into a frame."""


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MetadataFrame:
    """First frame of every opened stream."""

    request_id: str
    timestamp: str
    model: str
    provider: str
    id: str | None = None

    def belongs_to(self, request_id: str | None) -> bool:
        return request_id is None or self.request_id == request_id


@dataclass(frozen=True)
class ContentFrame:
    """One incremental text fragment."""

    text: str
    id: str | None = None

    def belongs_to(self, request_id: str | None) -> bool:
        return _id_belongs(self.id, request_id)


@dataclass(frozen=True)
class DoneFrame:
    """Terminal success."""

    id: str | None = None

    def belongs_to(self, request_id: str | None) -> bool:
        return _id_belongs(self.id, request_id)


@dataclass(frozen=True)
class ErrorFrame:
    """Terminal failure with a human-readable message."""

    message: str
    id: str | None = None

    def belongs_to(self, request_id: str | None) -> bool:
        return _id_belongs(self.id, request_id)


Frame = Union[MetadataFrame, ContentFrame, DoneFrame, ErrorFrame]


def _id_belongs(frame_id: str | None, request_id: str | None) -> bool:
    """Whether *frame_id* is ``<request-id>`` or ``<request-id>-<suffix>``.

    Request ids contain hyphens themselves.  Untagged frames belong to
    whatever stream carried them.
    """
    if not frame_id or request_id is None:
        return True
    return frame_id == request_id or frame_id.startswith(f"{request_id}-")


def is_terminal(frame: Frame) -> bool:
    return isinstance(frame, (DoneFrame, ErrorFrame))


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode_frame(frame: Frame) -> str:
    """Serialize *frame* as one SSE record."""
    if isinstance(frame, MetadataFrame):
        kind = "metadata"
        data = json.dumps({
            "requestId": frame.request_id,
            "timestamp": frame.timestamp,
            "model": frame.model,
            "provider": frame.provider,
        })
    elif isinstance(frame, ContentFrame):
        kind, data = "content", frame.text
    elif isinstance(frame, DoneFrame):
        kind, data = "done", ""
    elif isinstance(frame, ErrorFrame):
        kind, data = "error", frame.message
    else:
        raise TypeError(f"Not a frame: {frame!r}")

    payload: dict[str, str] = {"type": kind, "data": data}
    if frame.id:
        payload["id"] = frame.id
    return f"{FIELD_PREFIX} {json.dumps(payload, ensure_ascii=False)}{RECORD_SEPARATOR}"


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def parse_record(record: str) -> Frame | None:
    """Parse one SSE record.

    Returns ``None`` for records that carry no ``data`` field (comments,
    keep-alives).  Raises ``FrameDecodeError`` for anything malformed.
    """
    lines = []
    for line in record.split("\n"):
        if line.startswith(FIELD_PREFIX):
            value = line[len(FIELD_PREFIX):]
            lines.append(value[1:] if value.startswith(" ") else value)
    if not lines:
        return None

    raw = "\n".join(lines)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise FrameDecodeError(f"invalid JSON payload: {e}") from e
    if not isinstance(payload, dict):
        raise FrameDecodeError("payload is not an object")

    kind = payload.get("type")
    data = payload.get("data", "")
    frame_id = payload.get("id")
    if frame_id is not None and not isinstance(frame_id, str):
        frame_id = str(frame_id)
    if not isinstance(data, str):
        raise FrameDecodeError(f"'data' must be a string, got {type(data).__name__}")

    if kind == "content":
        return ContentFrame(text=data, id=frame_id)
    if kind == "done":
        return DoneFrame(id=frame_id)
    if kind == "error":
        return ErrorFrame(message=data, id=frame_id)
    if kind == "metadata":
        try:
            meta = json.loads(data)
        except json.JSONDecodeError as e:
            raise FrameDecodeError(f"invalid metadata: {e}") from e
        if not isinstance(meta, dict) or not meta.get("requestId"):
            raise FrameDecodeError("metadata without requestId")
        return MetadataFrame(
            request_id=str(meta["requestId"]),
            timestamp=str(meta.get("timestamp", "")),
            model=str(meta.get("model", "")),
            provider=str(meta.get("provider", "")),
            id=frame_id,
        )
    raise FrameDecodeError(f"unknown frame type: {kind!r}")


class FrameDecoder:
    """Incremental decoder from transport bytes to frames.

    Bytes may be split anywhere, including inside a UTF-8 sequence or a
    record separator.  Malformed records are logged and skipped; frames
    are returned strictly in arrival order.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped = 0

    def feed(self, chunk: bytes) -> list[Frame]:
        text = self._decoder.decode(chunk)
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        frames: list[Frame] = []
        while RECORD_SEPARATOR in self._buffer:
            record, self._buffer = self._buffer.split(RECORD_SEPARATOR, 1)
            self._parse_into(record, frames)
        return frames

    def flush(self) -> list[Frame]:
        """Decode whatever is left once the transport has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        record, self._buffer = self._buffer, ""
        frames: list[Frame] = []
        if record.strip():
            self._parse_into(record, frames)
        return frames

    def _parse_into(self, record: str, frames: list[Frame]) -> None:
        try:
            frame = parse_record(record)
        except FrameDecodeError as e:
            self.skipped += 1
            _logger.warning("Skipping malformed frame %r: %s", record[:200], e)
            return
        if frame is not None:
            frames.append(frame)
