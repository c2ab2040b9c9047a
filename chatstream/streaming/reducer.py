"""
Pure state machine folding stream events into message-list patches.

Nothing here performs I/O or keeps references into the conversation's list:
every transition takes a ``ReducerState`` and returns a new one together with
the ``Patch`` (if any) the owner of the list should apply.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from ..models import FailureKind, Message, MessageRole, MessageStatus, TextPart
from .models import (
    ChunkEvent,
    CompleteEvent,
    Patch,
    PatchKind,
    StreamEvent,
)

CANCELLED_FINISH_REASON = "cancelled"
EMPTY_STREAM_DETAIL = "empty stream"


@dataclass(frozen=True)
class ReducerState:
    """Reducer view of the one assistant message a session produces."""
    session_id: str
    message: Message
    inserted: bool = False
    finished: bool = False
    chunk_count: int = 0


Transition = tuple[ReducerState, Patch | None]


def begin(session_id: str, *, message_id: str | None = None) -> ReducerState:
    """Allocate the pending assistant message for a new session."""
    message = Message(
        role=MessageRole.ASSISTANT,
        status=MessageStatus.PENDING,
        session_id=session_id,
        **({"id": message_id} if message_id else {}),
    )
    return ReducerState(session_id=session_id, message=message)


def reduce(state: ReducerState, event: StreamEvent) -> Transition:
    """Apply one parsed NDJSON event."""
    if state.finished:
        return state, None
    if isinstance(event, ChunkEvent):
        return reduce_text(state, event.text)
    if isinstance(event, CompleteEvent):
        return _finalize(
            state, status=MessageStatus.COMPLETE, finish_reason=event.finish_reason
        )
    # Malformed records leave the message untouched
    return state, None


def reduce_text(state: ReducerState, text: str) -> Transition:
    """Apply one text delta (raw mode, or the payload of a chunk event)."""
    if state.finished or not text:
        return state, None

    if not state.inserted:
        message = state.message.model_copy(
            update={
                "content": (TextPart(text=text),),
                "status": MessageStatus.STREAMING,
            }
        )
        kind = PatchKind.INSERT
    else:
        message = state.message.with_text_appended(text)
        kind = PatchKind.UPDATE_LAST

    new_state = replace(
        state, message=message, inserted=True, chunk_count=state.chunk_count + 1
    )
    return new_state, Patch(kind=kind, session_id=state.session_id, message=message)


def finish(state: ReducerState, *, fallback_text: str | None = None) -> Transition:
    """End of input without (or after) an explicit ``complete`` event."""
    if state.finished:
        return state, None
    if state.chunk_count == 0:
        return fail(
            state,
            FailureKind.EMPTY_STREAM,
            EMPTY_STREAM_DETAIL,
            fallback_text=fallback_text,
        )
    return _finalize(state, status=MessageStatus.COMPLETE)


def fail(
    state: ReducerState,
    kind: FailureKind,
    detail: str,
    *,
    fallback_text: str | None = None,
) -> Transition:
    """
    Finalize the message as failed.

    ``fallback_text`` replaces the content only when nothing was received, so
    partial text that already reached the user is kept.
    """
    if state.finished:
        return state, None
    content = state.message.content
    if fallback_text and not state.message.text:
        content = (TextPart(text=fallback_text),)
    return _finalize(
        state,
        status=MessageStatus.FAILED,
        content=content,
        failure_kind=kind,
        failure_detail=detail,
    )


def cancel(state: ReducerState) -> Transition:
    """User stop: partial content completes, nothing received fails."""
    if state.finished:
        return state, None
    if state.chunk_count == 0:
        return _finalize(
            state,
            status=MessageStatus.FAILED,
            failure_kind=FailureKind.CANCELLED_BY_USER,
            failure_detail="stopped before the first chunk",
        )
    return _finalize(
        state, status=MessageStatus.COMPLETE, finish_reason=CANCELLED_FINISH_REASON
    )


def _finalize(state: ReducerState, **update) -> Transition:
    message = state.message.model_copy(update=update)
    new_state = replace(state, message=message, finished=True)
    return new_state, Patch(
        kind=PatchKind.FINALIZE, session_id=state.session_id, message=message
    )


def apply_patch(
    messages: tuple[Message, ...], patch: Patch
) -> tuple[Message, ...]:
    """
    Return a new message list with ``patch`` applied.

    Updates and finalizes target the message by id. A finalize for a message
    that never reached the list (failure before the first chunk) appends it.
    """
    if patch.kind is PatchKind.INSERT:
        return (*messages, patch.message)

    for index in range(len(messages) - 1, -1, -1):
        if messages[index].id == patch.message.id:
            return (*messages[:index], patch.message, *messages[index + 1:])

    if patch.kind is PatchKind.FINALIZE:
        return (*messages, patch.message)
    return messages
