"""
Incremental streaming response consumer.

This package turns a chunked HTTP response into a growing assistant message:
- Raw text and NDJSON event framing
- Immutable message snapshots built by a pure reducer
- Cancellable sessions with explicit terminal states
- A conversation controller owning the message list
"""

from __future__ import annotations

from .config import Configuration
from .conversation import ConversationController
from .exceptions import InvalidStateError, StreamError, TransportError
from .models import FailureKind, Message, MessageRole, MessageStatus, TextPart
from .streaming import (
    ChunkEvent,
    CompleteEvent,
    Diagnostic,
    MalformedEvent,
    Patch,
    PatchKind,
    SessionResult,
    SessionState,
    StreamMode,
    StreamRequest,
    StreamSession,
)
from .transport import HttpxTransport, Transport, TransportResponse

__all__ = [
    "ChunkEvent",
    "CompleteEvent",
    "Configuration",
    "ConversationController",
    "Diagnostic",
    "FailureKind",
    "HttpxTransport",
    "InvalidStateError",
    "MalformedEvent",
    "Message",
    "MessageRole",
    "MessageStatus",
    "Patch",
    "PatchKind",
    "SessionResult",
    "SessionState",
    "StreamError",
    "StreamMode",
    "StreamRequest",
    "StreamSession",
    "TextPart",
    "Transport",
    "TransportError",
    "TransportResponse",
]
