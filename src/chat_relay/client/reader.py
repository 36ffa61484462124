"""Client-side consumer of the relay's event stream."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Protocol

import httpx

from chat_relay.protocol import (
    ContentFrame,
    DoneFrame,
    ErrorFrame,
    Frame,
    FrameDecoder,
    MetadataFrame,
)

_logger = logging.getLogger(__name__)


class StreamSink(Protocol):
    """What a ``StreamReader`` drives.  ``ChatSession`` implements it.

    Every call carries the reader's ``stream_id`` so the sink can drop
    events from a stream it no longer considers active.
    """

    def is_active(self, stream_id: str) -> bool: ...

    async def on_open(self, stream_id: str) -> None: ...

    async def on_metadata(self, stream_id: str, frame: MetadataFrame) -> None: ...

    async def on_content(self, stream_id: str, frame: ContentFrame) -> None: ...

    async def on_done(self, stream_id: str, frame: DoneFrame) -> None: ...

    async def on_error(self, stream_id: str, message: str) -> None: ...


class StreamReader:
    """Decode one response body into frames and feed them to a sink.

    Parameters
    ----------
    sink:
        Receiver of the decoded events.
    stream_id:
        Client-side identity of this stream.
    """

    def __init__(self, sink: StreamSink, stream_id: str) -> None:
        self._sink = sink
        self.stream_id = stream_id
        self.request_id: str | None = None
        self.frames_seen = 0
        self._decoder = FrameDecoder()
        self._terminated = False

    @property
    def skipped(self) -> int:
        """Records that failed to parse and were ignored."""
        return self._decoder.skipped

    async def consume_response(self, response: httpx.Response) -> None:
        await self.consume(response.aiter_bytes())

    async def consume(self, chunks: AsyncIterator[bytes]) -> None:
        """Read *chunks* until a terminal frame, EOF or a transport failure."""
        await self._sink.on_open(self.stream_id)
        try:
            async for chunk in chunks:
                for frame in self._decoder.feed(chunk):
                    await self._dispatch(frame)
                    if self._terminated:
                        return
                if not self._sink.is_active(self.stream_id):
                    _logger.debug("Stream %s abandoned, stop reading", self.stream_id)
                    return
            for frame in self._decoder.flush():
                await self._dispatch(frame)
                if self._terminated:
                    return
        except (httpx.HTTPError, httpx.StreamError) as e:
            _logger.warning("Stream %s transport failure: %s", self.stream_id, e)
            await self._sink.on_error(self.stream_id, f"Connection lost: {e}")
            return

        if self._sink.is_active(self.stream_id):
            await self._sink.on_error(self.stream_id, "Stream ended before completion")

    async def _dispatch(self, frame: Frame) -> None:
        self.frames_seen += 1
        if not isinstance(frame, MetadataFrame) and not frame.belongs_to(self.request_id):
            _logger.debug("Skipping frame %s from another request", frame.id)
            return
        if isinstance(frame, MetadataFrame):
            self.request_id = frame.request_id
            await self._sink.on_metadata(self.stream_id, frame)
        elif isinstance(frame, ContentFrame):
            await self._sink.on_content(self.stream_id, frame)
        elif isinstance(frame, DoneFrame):
            self._terminated = True
            await self._sink.on_done(self.stream_id, frame)
        elif isinstance(frame, ErrorFrame):
            self._terminated = True
            await self._sink.on_error(self.stream_id, frame.message)
        else:
            raise TypeError(f"Not a frame: {frame!r}")
