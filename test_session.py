"""Tests for StreamSession over an httpx mock transport."""

import asyncio
import json

import httpx
import pytest

from chatstream.exceptions import InvalidStateError, TransportError
from chatstream.models import FailureKind, MessageStatus
from chatstream.streaming.models import (
    DiagnosticKind,
    PatchKind,
    SessionState,
    StreamMode,
    StreamRequest,
)
from chatstream.streaming.session import CancellationToken, StreamSession


def ndjson(*records) -> bytes:
    return b"".join(
        json.dumps(record, ensure_ascii=False).encode() + b"\n" for record in records
    )


REQUEST = StreamRequest(
    url="/api/bot/user-chat",
    body={"query": "hi", "sessionId": "conv-1"},
    headers={"Content-Type": "application/json", "Accept": "application/x-ndjson"},
)


def collecting_session(transport, **kwargs):
    patches, diagnostics = [], []
    session = StreamSession(
        transport,
        on_patch=patches.append,
        on_diagnostic=diagnostics.append,
        **kwargs,
    )
    return session, patches, diagnostics


async def wait_until(predicate, timeout=1.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


class TestNdjsonSession:
    """Test the NDJSON read loop end to end."""

    @pytest.mark.asyncio
    async def test_hello_scenario(self, make_transport, stream_handler):
        body = (
            b'{"type":"chunk","data":"Hel"}\n'
            b'{"type":"chunk","data":"lo"}\n'
            b'{"type":"complete","data":{"finishReason":"stop"}}\n'
        )
        handler, _ = stream_handler([body])
        session, patches, _ = collecting_session(make_transport(handler))

        result = await session.start(REQUEST)

        assert result.state is SessionState.COMPLETED
        assert result.message.text == "Hello"
        assert result.message.status is MessageStatus.COMPLETE
        assert result.message.finish_reason == "stop"
        assert [p.kind for p in patches] == [
            PatchKind.INSERT, PatchKind.UPDATE_LAST, PatchKind.FINALIZE,
        ]

    @pytest.mark.asyncio
    async def test_record_split_across_reads(self, make_transport, stream_handler):
        handler, _ = stream_handler([
            b'{"type":"ch',
            b'unk","data":"x"}\n',
            b'{"type":"complete","data":{"finishReason":"stop"}}\n',
        ])
        session, patches, diagnostics = collecting_session(make_transport(handler))

        result = await session.start(REQUEST)

        assert result.message.text == "x"
        assert diagnostics == []
        assert result.stats["total_records"] == 2

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_reads(
        self, make_transport, stream_handler
    ):
        encoded = ndjson({"type": "chunk", "data": "café ☕"})
        split = encoded.index("☕".encode()) + 1
        handler, _ = stream_handler([encoded[:split], encoded[split:]])
        session, _, diagnostics = collecting_session(make_transport(handler))

        result = await session.start(REQUEST)

        assert result.message.text == "café ☕"
        assert diagnostics == []

    @pytest.mark.asyncio
    async def test_unterminated_last_record_is_flushed(
        self, make_transport, stream_handler
    ):
        handler, _ = stream_handler([
            b'{"type":"chunk","data":"a"}\n',
            b'{"type":"complete","data":{"finishReason":"stop"}}',
        ])
        session, _, _ = collecting_session(make_transport(handler))

        result = await session.start(REQUEST)

        assert result.message.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_malformed_record_does_not_end_stream(
        self, make_transport, stream_handler
    ):
        handler, _ = stream_handler([
            b'{"type":"chunk","data":"a"}\n',
            b'{"type":"chunk","data":\n',
            b'{"type":"mystery"}\n',
            b'{"type":"chunk","data":"b"}\n',
        ])
        session, _, diagnostics = collecting_session(make_transport(handler))

        result = await session.start(REQUEST)

        assert result.state is SessionState.COMPLETED
        assert result.message.text == "ab"
        assert [d.kind for d in diagnostics] == [DiagnosticKind.MALFORMED_RECORD] * 2
        assert all(d.session_id == session.id for d in diagnostics)

    @pytest.mark.asyncio
    async def test_events_after_complete_are_reported_not_applied(
        self, make_transport, stream_handler
    ):
        handler, _ = stream_handler([ndjson(
            {"type": "chunk", "data": "done"},
            {"type": "complete", "data": {"finishReason": "stop"}},
            {"type": "chunk", "data": " extra"},
            {"type": "complete", "data": {"finishReason": "length"}},
        )])
        session, patches, diagnostics = collecting_session(make_transport(handler))

        result = await session.start(REQUEST)

        assert result.message.text == "done"
        assert result.message.finish_reason == "stop"
        assert len(patches) == 2
        assert [d.kind for d in diagnostics] == [DiagnosticKind.LATE_EVENT] * 2

    @pytest.mark.asyncio
    async def test_end_of_input_without_complete(self, make_transport, stream_handler):
        handler, _ = stream_handler([ndjson({"type": "chunk", "data": "partial"})])
        session, _, _ = collecting_session(make_transport(handler))

        result = await session.start(REQUEST)

        assert result.state is SessionState.COMPLETED
        assert result.message.status is MessageStatus.COMPLETE
        assert result.message.text == "partial"

    @pytest.mark.asyncio
    async def test_empty_stream_fails(self, make_transport, stream_handler):
        handler, _ = stream_handler([])
        session, patches, _ = collecting_session(
            make_transport(handler), fallback_text="Sorry"
        )

        result = await session.start(REQUEST)

        assert result.state is SessionState.FAILED
        assert result.error is None
        assert result.message.status is MessageStatus.FAILED
        assert result.message.failure_kind is FailureKind.EMPTY_STREAM
        assert result.message.text == "Sorry"
        assert [p.kind for p in patches] == [PatchKind.FINALIZE]

    @pytest.mark.asyncio
    async def test_request_is_sent_as_given(self, make_transport, stream_handler):
        handler, requests = stream_handler([ndjson({"type": "chunk", "data": "x"})])
        session, _, _ = collecting_session(make_transport(handler))

        await session.start(REQUEST)

        (request,) = requests
        assert request.method == "POST"
        assert request.url.path == "/api/bot/user-chat"
        assert request.headers["accept"] == "application/x-ndjson"
        assert json.loads(request.content) == {"query": "hi", "sessionId": "conv-1"}

    @pytest.mark.asyncio
    async def test_failing_diagnostic_listener_does_not_end_stream(
        self, make_transport, stream_handler
    ):
        handler, _ = stream_handler([
            ndjson({"type": "chunk", "data": "Hel"}),
            b"not json\n",
            ndjson(
                {"type": "chunk", "data": "lo"},
                {"type": "complete", "data": {"finishReason": "stop"}},
            ),
        ])

        def broken(diagnostic):
            raise ValueError("listener bug")

        session = StreamSession(make_transport(handler), on_diagnostic=broken)

        result = await session.start(REQUEST)

        assert result.state is SessionState.COMPLETED
        assert result.error is None
        assert result.message.text == "Hello"
        assert result.message.finish_reason == "stop"
        assert result.stats["diagnostics"] == 1


class TestRawSession:
    """Test raw-text mode."""

    @pytest.mark.asyncio
    async def test_hi_there(self, make_transport, stream_handler):
        handler, _ = stream_handler([b"Hi ", b"there"])
        session, patches, _ = collecting_session(
            make_transport(handler), mode=StreamMode.RAW
        )

        result = await session.start(REQUEST)

        assert result.message.text == "Hi there"
        assert result.message.status is MessageStatus.COMPLETE
        assert [p.kind for p in patches] == [
            PatchKind.INSERT, PatchKind.UPDATE_LAST, PatchKind.FINALIZE,
        ]

    @pytest.mark.asyncio
    async def test_raw_text_keeps_newlines(self, make_transport, stream_handler):
        handler, _ = stream_handler([b"line one\n", b"\nline two"])
        session, _, _ = collecting_session(make_transport(handler), mode=StreamMode.RAW)

        result = await session.start(REQUEST)

        assert result.message.text == "line one\n\nline two"


class TestTransportFailures:
    """Test status errors and network failures."""

    @pytest.mark.asyncio
    async def test_status_500(self, make_transport, stream_handler):
        handler, _ = stream_handler(status=500, content=b"boom")
        session, patches, _ = collecting_session(make_transport(handler))

        with pytest.raises(TransportError) as exc_info:
            await session.start(REQUEST)

        assert exc_info.value.status_code == 500
        assert exc_info.value.category == "status_error"
        assert exc_info.value.session_id == session.id
        assert session.state is SessionState.FAILED
        assert [p.kind for p in patches] == [PatchKind.FINALIZE]
        assert session.message.status is MessageStatus.FAILED
        assert session.message.failure_kind is FailureKind.TRANSPORT_ERROR
        assert session.get_stats()["chunk_records"] == 0

    @pytest.mark.asyncio
    async def test_connection_error(self, make_transport):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        session, _, _ = collecting_session(make_transport(handler))

        with pytest.raises(TransportError) as exc_info:
            await session.start(REQUEST)

        assert exc_info.value.category == "connection_error"
        assert session.state is SessionState.FAILED
        assert session.error is exc_info.value

    @pytest.mark.asyncio
    async def test_error_mid_stream_keeps_partial_text(self, make_transport):
        async def broken_body():
            yield b'{"type":"chunk","data":"half"}\n'
            raise httpx.ReadError("connection reset")

        def handler(request):
            return httpx.Response(200, content=broken_body())

        session, _, _ = collecting_session(
            make_transport(handler), fallback_text="Sorry"
        )

        with pytest.raises(TransportError):
            await session.start(REQUEST)

        assert session.message.status is MessageStatus.FAILED
        assert session.message.text == "half"

    @pytest.mark.asyncio
    async def test_error_after_complete_keeps_completion(self, make_transport):
        async def body():
            yield ndjson(
                {"type": "chunk", "data": "ok"},
                {"type": "complete", "data": {"finishReason": "stop"}},
            )
            raise httpx.ReadError("connection reset")

        def handler(request):
            return httpx.Response(200, content=body())

        session, _, _ = collecting_session(make_transport(handler))

        result = await session.start(REQUEST)

        assert result.state is SessionState.COMPLETED
        assert result.message.status is MessageStatus.COMPLETE


class TestCancellation:
    """Test stop() semantics."""

    @pytest.mark.asyncio
    async def test_stop_mid_stream_completes_partial(
        self, make_transport, stream_handler
    ):
        handler, _ = stream_handler(
            [ndjson({"type": "chunk", "data": "partial"})], hang=True
        )
        session, patches, _ = collecting_session(make_transport(handler))

        task = asyncio.create_task(session.start(REQUEST))
        await wait_until(lambda: patches)
        session.stop()
        result = await asyncio.wait_for(task, 1.0)

        assert result.state is SessionState.CANCELLED
        assert result.error is None
        assert result.message.status is MessageStatus.COMPLETE
        assert result.message.finish_reason == "cancelled"
        assert result.message.text == "partial"

    @pytest.mark.asyncio
    async def test_stop_before_first_chunk(self, make_transport, stream_handler):
        handler, _ = stream_handler([], hang=True)
        session, patches, _ = collecting_session(make_transport(handler))

        task = asyncio.create_task(session.start(REQUEST))
        await wait_until(lambda: session.state is SessionState.STREAMING)
        session.stop()
        result = await asyncio.wait_for(task, 1.0)

        assert result.state is SessionState.CANCELLED
        assert result.message.status is MessageStatus.FAILED
        assert result.message.failure_kind is FailureKind.CANCELLED_BY_USER
        assert [p.kind for p in patches] == [PatchKind.FINALIZE]

    @pytest.mark.asyncio
    async def test_stop_before_start_sends_nothing(
        self, make_transport, stream_handler
    ):
        handler, requests = stream_handler([ndjson({"type": "chunk", "data": "x"})])
        session, _, _ = collecting_session(make_transport(handler))

        session.stop()
        result = await session.start(REQUEST)

        assert result.state is SessionState.CANCELLED
        assert requests == []

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_transport, stream_handler):
        handler, _ = stream_handler([], hang=True)
        session, _, _ = collecting_session(make_transport(handler))

        task = asyncio.create_task(session.start(REQUEST))
        await wait_until(lambda: session.state is SessionState.STREAMING)
        session.stop()
        session.stop()
        await asyncio.wait_for(task, 1.0)
        session.stop()

        assert session.state is SessionState.CANCELLED
        assert (await session.wait_closed()).state is SessionState.CANCELLED

    @pytest.mark.asyncio
    async def test_stop_from_another_thread(self, make_transport, stream_handler):
        handler, _ = stream_handler([], hang=True)
        session, _, _ = collecting_session(make_transport(handler))

        task = asyncio.create_task(session.start(REQUEST))
        await wait_until(lambda: session.state is SessionState.STREAMING)
        await asyncio.to_thread(session.stop)
        result = await asyncio.wait_for(task, 1.0)

        assert result.state is SessionState.CANCELLED

    @pytest.mark.asyncio
    async def test_external_cancel_finalizes_and_propagates(
        self, make_transport, stream_handler
    ):
        handler, _ = stream_handler([], hang=True)
        session, _, _ = collecting_session(make_transport(handler))

        task = asyncio.create_task(session.start(REQUEST))
        await wait_until(lambda: session.state is SessionState.STREAMING)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert session.state is SessionState.CANCELLED
        assert session.message.is_final

    @pytest.mark.asyncio
    async def test_stop_after_complete_keeps_completion(
        self, make_transport, stream_handler
    ):
        handler, _ = stream_handler(
            [ndjson(
                {"type": "chunk", "data": "done"},
                {"type": "complete", "data": {"finishReason": "stop"}},
            )],
            hang=True,
        )
        session, patches, _ = collecting_session(make_transport(handler))

        task = asyncio.create_task(session.start(REQUEST))
        await wait_until(lambda: any(p.kind is PatchKind.FINALIZE for p in patches))
        session.stop()
        result = await asyncio.wait_for(task, 1.0)

        assert result.state is SessionState.COMPLETED
        assert result.message.status is MessageStatus.COMPLETE
        assert result.message.finish_reason == "stop"
        assert len(patches) == 2


class TestSessionState:
    """Test state guards."""

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, make_transport, stream_handler):
        handler, _ = stream_handler([ndjson({"type": "chunk", "data": "x"})])
        session, _, _ = collecting_session(make_transport(handler))
        await session.start(REQUEST)

        with pytest.raises(InvalidStateError) as exc_info:
            await session.start(REQUEST)
        assert exc_info.value.state is SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_start_while_streaming_raises(self, make_transport, stream_handler):
        handler, _ = stream_handler([], hang=True)
        session, _, _ = collecting_session(make_transport(handler))

        task = asyncio.create_task(session.start(REQUEST))
        await wait_until(lambda: session.state is SessionState.STREAMING)
        with pytest.raises(InvalidStateError):
            await session.start(REQUEST)

        session.stop()
        await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_wait_closed_on_idle_session_returns(self, make_transport, stream_handler):
        handler, _ = stream_handler([])
        session, _, _ = collecting_session(make_transport(handler))
        result = await session.wait_closed()
        assert result.state is SessionState.IDLE
        assert result.message is None


class TestCancellationToken:
    """Test the token outside a session."""

    def test_cancel_reports_first_signal_only(self):
        token = CancellationToken()
        assert not token.cancelled
        assert token.cancel() is True
        assert token.cancel() is False
        assert token.cancelled
