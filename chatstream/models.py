"""
Conversation message models.

Messages are immutable pydantic models. Every change made while a response
streams in produces a new instance, so snapshots handed to subscribers are
never mutated behind their back.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class MessageRole(Enum):
    """Conversation roles."""
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(Enum):
    """Lifecycle of a message."""
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


class FailureKind(Enum):
    """Why a message ended up failed."""
    TRANSPORT_ERROR = "transport_error"
    EMPTY_STREAM = "empty_stream"
    CANCELLED_BY_USER = "cancelled"


class TextPart(BaseModel):
    """Plain text content part."""
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


Part = TextPart


class Message(BaseModel):
    """
    One conversation entry.

    Content is an ordered tuple of parts so new part types can be added
    without changing how text deltas accumulate (always onto the last text
    part).
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: MessageRole
    content: tuple[Part, ...] = ()
    status: MessageStatus = MessageStatus.COMPLETE
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    session_id: str | None = None
    finish_reason: str | None = None
    failure_kind: FailureKind | None = None
    failure_detail: str | None = None

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=MessageRole.USER, content=(TextPart(text=text),))

    @classmethod
    def assistant(cls, text: str, **kwargs: Any) -> Message:
        return cls(
            role=MessageRole.ASSISTANT,
            content=(TextPart(text=text),) if text else (),
            **kwargs,
        )

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.content)

    @property
    def is_final(self) -> bool:
        return self.status in (MessageStatus.COMPLETE, MessageStatus.FAILED)

    def with_text_appended(self, delta: str) -> Message:
        """Return a copy with ``delta`` appended to the last text part."""
        if self.content and isinstance(self.content[-1], TextPart):
            last = self.content[-1]
            parts = (*self.content[:-1], TextPart(text=last.text + delta))
        else:
            parts = (*self.content, TextPart(text=delta))
        return self.model_copy(update={"content": parts})

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the ``messages`` request body."""
        return {
            "id": self.id,
            "role": self.role.value,
            "parts": [part.model_dump() for part in self.content],
        }
