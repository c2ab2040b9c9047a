"""
Streaming session: one request, one response body, one assistant message.

The session owns its cancellation token and the task that reads the body.
Reading is strictly sequential, so reducer state needs no locking; the token
is the only thing shared with callers of ``stop()``.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ..exceptions import InvalidStateError, StreamError, TransportError
from ..logging_utils import ContextualLogger, StreamErrorHandler
from ..models import FailureKind, Message, MessageStatus
from ..transport import Transport
from . import reducer
from .decoder import ByteDecoder
from .framer import LineFramer
from .models import (
    Diagnostic,
    DiagnosticKind,
    MalformedEvent,
    Patch,
    SessionResult,
    SessionState,
    StreamMode,
    StreamRequest,
)
from .parser import EventParser

PatchListener = Callable[[Patch], None]
DiagnosticListener = Callable[[Diagnostic], None]


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class CancellationToken:
    """
    Cancellation signal shared between ``stop()`` and the read loop.

    ``cancel()`` is idempotent and may be called from any thread. Once bound
    to the reader task it also cancels that task, which interrupts a read
    that is waiting on the network.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        self._loop = task.get_loop()
        if self.cancelled:
            task.cancel()

    def release(self) -> None:
        self._task = None
        self._loop = None

    def cancel(self) -> bool:
        """Signal cancellation; returns False if it was already signalled."""
        if self._event.is_set():
            return False
        self._event.set()

        task, loop = self._task, self._loop
        if task is None or loop is None or loop.is_closed():
            return True
        if _running_loop() is loop:
            task.cancel()
        else:
            loop.call_soon_threadsafe(task.cancel)
        return True


class StreamSession:
    """
    Drive one streaming request from send to a terminal state.

    Patches are passed to ``on_patch`` in the order the reducer produces them,
    each tagged with this session's id. Malformed or late records go to
    ``on_diagnostic`` and never end the session.

    Cancellation policy: a message that already has text is finalized
    ``complete`` with ``finish_reason="cancelled"``; a stop before the first
    chunk finalizes it ``failed`` with ``FailureKind.CANCELLED_BY_USER``.
    A stop that arrives after the ``complete`` event leaves the session
    ``COMPLETED``.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        mode: StreamMode = StreamMode.NDJSON,
        on_patch: PatchListener | None = None,
        on_diagnostic: DiagnosticListener | None = None,
        session_id: str | None = None,
        encoding: str = "utf-8",
        fallback_text: str | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.mode = mode
        self.started_at: datetime | None = None

        self._transport = transport
        self._on_patch = on_patch
        self._on_diagnostic = on_diagnostic
        self._fallback_text = fallback_text

        self._token = CancellationToken()
        self._decoder = ByteDecoder(encoding)
        self._framer = LineFramer()
        self._parser = EventParser()
        self._reducer_state = reducer.begin(self.id)
        self._state = SessionState.IDLE
        self._error: StreamError | None = None
        self._closed = asyncio.Event()

        self._log = ContextualLogger({"session_id": self.id, "mode": mode.value})
        self._started_at_perf: float | None = None
        self._stats: dict[str, Any] = {
            "bytes_received": 0,
            "transport_chunks": 0,
            "patches": 0,
            "diagnostics": 0,
            "first_delta_ms": None,
            "duration_ms": None,
        }

    # ------------------------------------------------------------------ #
    # Public surface                                                      #
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def message(self) -> Message:
        """The session's assistant message in its latest form."""
        return self._reducer_state.message

    @property
    def error(self) -> StreamError | None:
        return self._error

    @property
    def result(self) -> SessionResult:
        return SessionResult(
            session_id=self.id,
            state=self._state,
            message=self.message if self._reducer_state.finished else None,
            error=self._error,
            stats=self.get_stats(),
        )

    def get_stats(self) -> dict[str, Any]:
        return {**self._stats, **self._parser.get_stats()}

    async def start(self, request: StreamRequest) -> SessionResult:
        """
        Issue ``request`` and consume the response until a terminal state.

        Raises:
            InvalidStateError: The session has already been started.
            TransportError: Non-success status, missing body or a network
                failure. The message is finalized ``failed`` first.
        """
        if self._state is not SessionState.IDLE:
            raise InvalidStateError(
                f"Session {self.id} cannot start from state {self._state.value}",
                state=self._state,
                session_id=self.id,
            )

        self.started_at = datetime.now(UTC)
        self._started_at_perf = time.perf_counter()
        self._transition(SessionState.SENDING)
        self._log.info("Session started", method=request.method, url=request.url)

        reader = asyncio.create_task(
            self._read(request), name=f"stream-session-{self.id}"
        )
        self._token.bind(reader)
        try:
            await reader
        except asyncio.CancelledError:
            self._finalize_cancelled()
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        except TransportError as e:
            if e.session_id is None:
                e.session_id = self.id
            if self._finalize_failed(e):
                raise
        except Exception as e:
            error = StreamErrorHandler.create_transport_error(
                e, "stream_session", context={"session_id": self.id}
            )
            if self._finalize_failed(error):
                raise error from e
        else:
            if self._token.cancelled:
                self._finalize_cancelled()
            else:
                self._finalize_end_of_input()
        finally:
            self._teardown()

        return self.result

    def stop(self) -> None:
        """Request cancellation. Idempotent; a no-op once terminal."""
        if self._state.is_terminal:
            return
        if self._token.cancel():
            self._log.info("Stop requested", state=self._state.value)

    async def wait_closed(self) -> SessionResult:
        """Wait until the session reaches a terminal state."""
        if self._state is not SessionState.IDLE:
            await self._closed.wait()
        return self.result

    # ------------------------------------------------------------------ #
    # Read loop                                                           #
    # ------------------------------------------------------------------ #

    async def _read(self, request: StreamRequest) -> None:
        async with self._transport.send(
            request.method, request.url, request.headers, request.body
        ) as response:
            if not response.ok:
                raise TransportError(
                    f"Stream request failed: {response.status} {response.reason}".rstrip(),
                    category="status_error",
                    session_id=self.id,
                    status_code=response.status,
                    response_data={"error_text": response.error_text},
                )
            if response.body is None:
                raise TransportError(
                    "Stream response has no body",
                    category="missing_body",
                    session_id=self.id,
                    status_code=response.status,
                )

            self._transition(SessionState.STREAMING)
            async for data in response.body:
                self._stats["bytes_received"] += len(data)
                self._stats["transport_chunks"] += 1
                self._feed(self._decoder.decode(data))
                if self._token.cancelled:
                    return

        self._feed(self._decoder.flush())
        if self.mode is StreamMode.NDJSON:
            for line in self._framer.flush():
                self._handle_line(line)

    def _feed(self, text: str) -> None:
        if not text:
            return
        if self.mode is StreamMode.RAW:
            self._apply(reducer.reduce_text(self._reducer_state, text))
            return
        for line in self._framer.push(text):
            self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        event = self._parser.parse(line)
        if isinstance(event, MalformedEvent):
            self._report(DiagnosticKind.MALFORMED_RECORD, event.raw, event.error)
            return
        if self._reducer_state.finished:
            self._report(DiagnosticKind.LATE_EVENT, line, "event after completion")
            return
        self._apply(reducer.reduce(self._reducer_state, event))

    def _apply(self, transition: reducer.Transition) -> None:
        self._reducer_state, patch = transition
        if patch is None:
            return
        if self._stats["first_delta_ms"] is None and self._started_at_perf:
            elapsed = time.perf_counter() - self._started_at_perf
            self._stats["first_delta_ms"] = round(elapsed * 1000, 2)
        self._stats["patches"] += 1
        if self._on_patch is not None:
            self._on_patch(patch)

    def _report(self, kind: DiagnosticKind, raw: str, error: str) -> None:
        self._stats["diagnostics"] += 1
        self._log.warning(
            "Stream record ignored", kind=kind.value, error=error, raw=raw[:200]
        )
        if self._on_diagnostic is None:
            return
        try:
            self._on_diagnostic(
                Diagnostic(kind=kind, session_id=self.id, raw=raw, error=error)
            )
        except Exception:
            self._log.exception("Diagnostic listener failed", kind=kind.value)

    # ------------------------------------------------------------------ #
    # Terminal transitions                                                #
    # ------------------------------------------------------------------ #

    def _finalize_end_of_input(self) -> None:
        self._apply(
            reducer.finish(self._reducer_state, fallback_text=self._fallback_text)
        )
        message = self._reducer_state.message
        if message.status is MessageStatus.FAILED:
            self._log.warning(
                "Stream ended without content",
                failure_kind=FailureKind.EMPTY_STREAM.value,
            )
            self._transition(SessionState.FAILED)
        else:
            self._transition(SessionState.COMPLETED)

    def _finalize_cancelled(self) -> None:
        if self._reducer_state.finished:
            self._log.info("Stop after completion ignored")
            self._transition(SessionState.COMPLETED)
            return
        self._apply(reducer.cancel(self._reducer_state))
        self._transition(SessionState.CANCELLED)

    def _finalize_failed(self, error: TransportError) -> bool:
        """Return False when the message had already completed."""
        if self._reducer_state.finished:
            self._log.warning(
                "Transport error after completion ignored", error=str(error)
            )
            self._transition(SessionState.COMPLETED)
            return False

        self._apply(
            reducer.fail(
                self._reducer_state,
                FailureKind.TRANSPORT_ERROR,
                str(error),
                fallback_text=self._fallback_text,
            )
        )
        self._error = error
        self._log.error(
            "Session failed",
            error_category=error.category,
            status_code=error.status_code,
        )
        self._transition(SessionState.FAILED)
        return True

    def _transition(self, new_state: SessionState) -> None:
        if self._state.is_terminal:
            raise InvalidStateError(
                f"Session {self.id} is already {self._state.value}",
                state=self._state,
                session_id=self.id,
            )
        self._log.debug(
            "Session state changed",
            previous=self._state.value,
            current=new_state.value,
        )
        self._state = new_state

    def _teardown(self) -> None:
        self._token.release()
        self._decoder.reset()
        self._framer.reset()
        if self._started_at_perf is not None:
            elapsed = time.perf_counter() - self._started_at_perf
            self._stats["duration_ms"] = round(elapsed * 1000, 2)
        self._log.info("Session finished", state=self._state.value, **self.get_stats())
        self._closed.set()
