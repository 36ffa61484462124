"""Tests for ChatSession: end to end against the relay and against scripted streams."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from fakes import openai_chunk

from chat_relay.client.session import (
    GENERIC_ERROR_TEXT,
    ChatSession,
    RetryExhaustedError,
    SessionBusyError,
)
from chat_relay.protocol import (
    ContentFrame,
    DoneFrame,
    ErrorFrame,
    MetadataFrame,
    encode_frame,
)
from chat_relay.types import ConnectionStatus, SessionEventType

URL = "http://relay/api/chat"


@pytest.fixture
async def session(app):
    """A session talking to the in-process relay."""
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
    async with ChatSession(URL, http=http) as session:
        yield session
    await http.aclose()


def _relay_body(rid: str, *frames) -> bytes:
    meta = MetadataFrame(
        request_id=rid, timestamp="2026-01-01T00:00:00+00:00",
        model="m", provider="openai", id=rid,
    )
    return "".join(encode_frame(f) for f in (meta, *frames)).encode()


class ScriptedRelay:
    """Relay stand-in that answers each request from a list of bodies."""

    def __init__(self, *bodies: bytes) -> None:
        self.bodies = list(bodies)
        self.requests: list[httpx.Request] = []
        self.entered = asyncio.Event()
        self.gate: asyncio.Event | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        body = self.bodies.pop(0) if len(self.bodies) > 1 else self.bodies[0]
        return httpx.Response(200, content=body)

    def session(self, **kwargs) -> ChatSession:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return ChatSession(URL, http=http, **kwargs)


# ---------------------------------------------------------------------------
# End to end through the relay
# ---------------------------------------------------------------------------

class TestSendMessage:
    @pytest.mark.asyncio
    async def test_hello(self, session):
        assert await session.send_message("Hi") is True

        messages = session.messages
        assert [(m.role, m.content) for m in messages] == [("user", "Hi"), ("assistant", "Hello!")]
        assert not messages[1].is_error
        assert session.connection_status == ConnectionStatus.DISCONNECTED
        assert session.is_loading is False
        assert session.error is None
        assert session.streaming_message is None

    @pytest.mark.asyncio
    async def test_events(self, session):
        events = []
        session.events.subscribe_all(events.append)
        await session.send_message("Hi")

        types = [e.type for e in events]
        assert types[0] == SessionEventType.REQUEST_STARTED
        assert types[-1] == SessionEventType.REQUEST_SUCCEEDED
        assert types.count(SessionEventType.STREAM_CONTENT) == 2
        assert SessionEventType.STREAM_METADATA in types
        assert SessionEventType.STREAM_DONE in types

        statuses = [
            e.data["status"] for e in events
            if e.type == SessionEventType.CONNECTION_CHANGED
        ]
        assert statuses == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
            ConnectionStatus.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_metrics(self, session):
        metadata = []
        session.events.subscribe(SessionEventType.STREAM_METADATA, metadata.append)
        await session.send_message("Hi")

        assert len(metadata) == 1
        assert session.metrics.request_id == metadata[0].data["request_id"]
        assert session.metrics.message_count == 2
        assert len(session.metrics.latency_ms) == 2
        assert session.metrics.error_count == 0

    @pytest.mark.asyncio
    async def test_blank_text_is_ignored(self, session, upstream):
        assert await session.send_message("   ") is False
        assert session.messages == []
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_history_sent_on_next_turn(self, session, upstream):
        await session.send_message("Hi")
        await session.send_message("And again")

        assert len(session.messages) == 4
        user_prompt = upstream.payloads[1]["messages"][1]["content"]
        assert "user: Hi\nassistant: Hello!" in user_prompt
        assert "And again" in user_prompt

    @pytest.mark.asyncio
    async def test_payload_forwarded_and_cached(self, config, session, upstream):
        config.providers["qwen"].api_key = "qwen-key"
        await session.send_message("Hi", {"provider": "qwen"})
        assert session.last_payload == {"provider": "qwen"}
        assert upstream.requests[0].url.host == "dashscope.aliyuncs.com"


class TestFailures:
    @pytest.mark.asyncio
    async def test_mid_stream_error_keeps_partial_text(self, session, upstream):
        errors = []
        session.events.subscribe(SessionEventType.STREAM_ERROR, errors.append)
        upstream.stream(
            openai_chunk("Hel"),
            openai_chunk("lo"),
            {"error": {"message": "quota exceeded"}},
            done=False,
        )
        assert await session.send_message("Hi") is True

        user, assistant = session.messages
        assert assistant.content == "Hello"
        assert assistant.is_error
        assert session.connection_status == ConnectionStatus.ERROR
        assert "quota exceeded" in session.error
        assert [e.data["error"] for e in errors] == [session.error]

    @pytest.mark.asyncio
    async def test_relay_rejection(self, session):
        await session.send_message("Hi", {"provider": "mystery"})

        user, assistant = session.messages
        assert assistant.is_error
        assert "Unsupported provider" in assistant.content
        assert session.connection_status == ConnectionStatus.ERROR
        assert session.error == assistant.content

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(500, content=b"upstream exploded"),
        ))
        async with ChatSession(URL, http=http) as session:
            await session.send_message("Hi")
            assert session.messages[-1].content == "upstream exploded"
        await http.aclose()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        async with ChatSession(URL, http=http) as session:
            assert await session.send_message("Hi") is True
            user, assistant = session.messages
            assert assistant.content == GENERIC_ERROR_TEXT
            assert assistant.is_error
            assert session.error == "connection refused"
            assert session.connection_status == ConnectionStatus.ERROR
            assert not session.is_loading
        await http.aclose()

    @pytest.mark.asyncio
    async def test_stream_ends_without_terminal_frame(self):
        relay = ScriptedRelay(_relay_body("r1", ContentFrame(text="Hal", id="r1-1")))
        async with relay.session() as session:
            await session.send_message("Hi")
            assistant = session.messages[-1]
            assert assistant.content == "Hal"
            assert assistant.is_error
            assert session.error == "Stream ended before completion"
            assert session.connection_status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_error_frame_before_any_content(self):
        relay = ScriptedRelay(_relay_body("r1", ErrorFrame(message="upstream down", id="r1-error")))
        async with relay.session() as session:
            await session.send_message("Hi")
            assistant = session.messages[-1]
            assert assistant.content == "upstream down"
            assert assistant.is_error


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_replaces_failed_answer(self):
        relay = ScriptedRelay(
            _relay_body("r1", ContentFrame(text="Hel", id="r1-1"), ErrorFrame(message="quota exceeded", id="r1-error")),
            _relay_body("r2", ContentFrame(text="Hello!", id="r2-1"), DoneFrame(id="r2-done")),
        )
        async with relay.session() as session:
            await session.send_message("Hi", {"documentIds": ["doc-1"]})
            assert session.connection_status == ConnectionStatus.ERROR
            assert session.messages[-1].is_error

            assert await session.retry() is True

            assert [(m.role, m.content) for m in session.messages] == [("user", "Hi"), ("assistant", "Hello!")]
            assert session.retry_count == 1
            assert session.error is None
            assert session.connection_status == ConnectionStatus.DISCONNECTED

        resent = json.loads(relay.requests[1].content)
        assert resent == {
            "messages": [{"role": "user", "content": "Hi"}],
            "documentIds": ["doc-1"],
        }

    @pytest.mark.asyncio
    async def test_retry_after_rejection(self, session, upstream):
        await session.send_message("Hi", {"provider": "mystery"})
        assert len(session.messages) == 2

        await session.retry()
        user, assistant = session.messages
        assert (user.role, user.content) == ("user", "Hi")
        assert assistant.role == "assistant"
        assert assistant.is_error
        assert "Unsupported provider" in assistant.content

    @pytest.mark.asyncio
    async def test_retry_limit(self, session, upstream):
        upstream.stream({"error": {"message": "quota exceeded"}}, done=False)
        await session.send_message("Hi")

        for _ in range(3):
            assert await session.retry() is True
            assert len(session.messages) == 2
        assert len(upstream.requests) == 4

        with pytest.raises(RetryExhaustedError):
            await session.retry()
        assert session.error == "Maximum retry attempts reached"
        assert len(upstream.requests) == 4

    @pytest.mark.asyncio
    async def test_new_message_resets_retry_count(self, session, upstream):
        upstream.stream({"error": {"message": "quota exceeded"}}, done=False)
        await session.send_message("Hi")
        await session.retry()
        assert session.retry_count == 1

        upstream.respond = upstream._hello
        await session.send_message("Something else")
        assert session.retry_count == 0

    @pytest.mark.asyncio
    async def test_nothing_to_retry(self, session, upstream):
        assert await session.retry() is False
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_retry_keeps_earlier_turns(self, session, upstream):
        await session.send_message("First")
        upstream.stream({"error": {"message": "quota exceeded"}}, done=False)
        await session.send_message("Second")
        upstream.respond = upstream._hello
        await session.retry()

        assert [(m.role, m.content) for m in session.messages] == [
            ("user", "First"),
            ("assistant", "Hello!"),
            ("user", "Second"),
            ("assistant", "Hello!"),
        ]


# ---------------------------------------------------------------------------
# One request at a time
# ---------------------------------------------------------------------------

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_second_send_while_in_flight_is_ignored(self):
        relay = ScriptedRelay(_relay_body("r1", ContentFrame(text="ok", id="r1-1"), DoneFrame(id="r1-done")))
        relay.gate = asyncio.Event()
        async with relay.session() as session:
            first = asyncio.create_task(session.send_message("first"))
            await relay.entered.wait()

            assert session.is_loading
            assert await session.send_message("second") is False
            assert await session.retry() is False
            with pytest.raises(SessionBusyError):
                session.clear()

            relay.gate.set()
            assert await first is True
            assert [(m.role, m.content) for m in session.messages] == [("user", "first"), ("assistant", "ok")]
            assert len(relay.requests) == 1

    @pytest.mark.asyncio
    async def test_clear(self, session):
        await session.send_message("Hi")
        session.clear()
        assert session.messages == []
        assert session.error is None
        assert session.retry_count == 0

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self):
        relay = ScriptedRelay(_relay_body("r1", ContentFrame(text="late", id="r1-1"), DoneFrame(id="r1-done")))
        relay.gate = asyncio.Event()
        async with relay.session() as session:
            task = asyncio.create_task(session.send_message("first"))
            await relay.entered.wait()

            assert await session.cancel() is True
            assert await task is False
            assert not session.is_loading
            assert session.connection_status == ConnectionStatus.DISCONNECTED
            assert [m.role for m in session.messages] == ["user"]

            relay.gate.set()
            assert await session.send_message("again") is True
            assert session.messages[-1].content == "late"

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, session):
        assert await session.cancel() is False


# ---------------------------------------------------------------------------
# Frame ownership
# ---------------------------------------------------------------------------

class TestStaleFrames:
    @pytest.mark.asyncio
    async def test_frames_from_another_request_are_dropped(self):
        body = _relay_body(
            "r2",
            ContentFrame(text="stale ", id="r1-7"),
            ContentFrame(text="fresh", id="r2-1"),
            DoneFrame(id="r1-done"),
            DoneFrame(id="r2-done"),
        )
        relay = ScriptedRelay(body)
        async with relay.session() as session:
            await session.send_message("Hi")
            assert session.messages[-1].content == "fresh"
            assert session.connection_status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_frames_tagged_with_bare_request_id(self):
        rid = "3f2c9a1e-7b4d-4e0a-9c61-5d2f8e7a1b00"
        relay = ScriptedRelay(_relay_body(rid, ContentFrame(text="Hello", id=rid), DoneFrame(id=rid)))
        async with relay.session() as session:
            await session.send_message("Hi")
            assert session.messages[-1].content == "Hello"
            assert not session.messages[-1].is_error
            assert session.connection_status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_uuid_request_ids_are_not_confused(self):
        rid = "3f2c9a1e-7b4d-4e0a-9c61-5d2f8e7a1b00"
        body = _relay_body(
            rid,
            ContentFrame(text="stale", id=f"{rid}0-1"),
            ContentFrame(text="fresh", id=f"{rid}-1"),
            DoneFrame(id=f"{rid}-done"),
        )
        relay = ScriptedRelay(body)
        async with relay.session() as session:
            await session.send_message("Hi")
            assert session.messages[-1].content == "fresh"
            assert session.connection_status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_frames_for_abandoned_stream_are_ignored(self):
        relay = ScriptedRelay(_relay_body("r1", DoneFrame(id="r1-done")))
        async with relay.session() as session:
            await session.send_message("Hi")
            before = [(m.role, m.content) for m in session.messages]

            await session.on_open("old-stream")
            await session.on_content("old-stream", ContentFrame(text="ghost", id="r1-2"))
            await session.on_error("old-stream", "ghost failure")

            assert [(m.role, m.content) for m in session.messages] == before
            assert session.error is None
            assert session.connection_status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self):
        body = (
            _relay_body("r1", ContentFrame(text="a", id="r1-1"))
            + b"data: {not json}\n\n"
            + encode_frame(ContentFrame(text="b", id="r1-2")).encode()
            + encode_frame(DoneFrame(id="r1-done")).encode()
        )
        relay = ScriptedRelay(body)
        async with relay.session() as session:
            await session.send_message("Hi")
            assert session.messages[-1].content == "ab"
            assert session.connection_status == ConnectionStatus.DISCONNECTED


class TestRequestBody:
    @pytest.mark.asyncio
    async def test_wire_shape(self):
        relay = ScriptedRelay(_relay_body("r1", DoneFrame(id="r1-done")))
        async with relay.session(headers={"X-Tenant-Id": "t-1"}) as session:
            await session.send_message("  Hi  ", {"documentIds": ["d"]})

        request = relay.requests[0]
        assert request.headers["x-tenant-id"] == "t-1"
        assert json.loads(request.content) == {
            "messages": [{"role": "user", "content": "Hi"}],
            "documentIds": ["d"],
        }
