"""
Streaming-specific dataclasses: events, patches, session state and the NDJSON
wire schema.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import StreamError
from ..models import Message


class StreamMode(Enum):
    """How the response body is framed."""
    NDJSON = "ndjson"
    RAW = "raw"


class SessionState(Enum):
    """Lifecycle of a streaming session."""
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED
        )

    @property
    def is_active(self) -> bool:
        return self in (SessionState.SENDING, SessionState.STREAMING)


class PatchKind(Enum):
    """Message-list mutations produced by the reducer."""
    INSERT = "insert"
    UPDATE_LAST = "update-last"
    FINALIZE = "finalize"


class DiagnosticKind(Enum):
    """Non-fatal conditions reported on the diagnostic channel."""
    MALFORMED_RECORD = "malformed_record"
    LATE_EVENT = "late_event"


# --------------------------------------------------------------------------- #
# Stream events                                                               #
# --------------------------------------------------------------------------- #

@dataclass(frozen=True)
class ChunkEvent:
    """A text fragment of the assistant reply."""
    text: str


@dataclass(frozen=True)
class CompleteEvent:
    """Server signalled the end of the reply."""
    finish_reason: str | None = None


@dataclass(frozen=True)
class MalformedEvent:
    """A record that could not be parsed into a known event."""
    raw: str
    error: str = ""


StreamEvent = ChunkEvent | CompleteEvent | MalformedEvent


@dataclass(frozen=True)
class Patch:
    """Minimal description of a change to the message list."""
    kind: PatchKind
    session_id: str
    message: Message


@dataclass(frozen=True)
class Diagnostic:
    """Side-channel report; never aborts a session."""
    kind: DiagnosticKind
    session_id: str
    raw: str
    error: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StreamRequest:
    """Everything the transport needs to open one stream."""
    url: str
    body: dict[str, Any]
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionResult:
    """Outcome of one session, available once it is terminal."""
    session_id: str
    state: SessionState
    message: Message | None
    error: StreamError | None = None
    stats: dict[str, Any] = field(default_factory=dict)


# --------------------------------------------------------------------------- #
# NDJSON wire schema                                                          #
# --------------------------------------------------------------------------- #

class WireChunk(BaseModel):
    """``{"type": "chunk", "data": "<text>"}``"""
    type: Literal["chunk"]
    data: str


class CompletePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    finish_reason: str | None = Field(default=None, alias="finishReason")


class WireComplete(BaseModel):
    """``{"type": "complete", "data": {"finishReason": "<reason>"}}``"""
    type: Literal["complete"]
    data: CompletePayload = Field(default_factory=CompletePayload)


WireEvent = Annotated[WireChunk | WireComplete, Field(discriminator="type")]
