"""
Error types for streaming sessions.

Only transport-level and session-level failures are raised across component
boundaries. Record-level problems (malformed NDJSON lines) are reported as
diagnostics and never raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .models import FailureKind

if TYPE_CHECKING:
    from .streaming.models import SessionState


class StreamError(Exception):
    """Base streaming error with session context."""

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        status_code: int | None = None,
        response_data: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.session_id = session_id
        self.status_code = status_code
        self.response_data = response_data or {}


class TransportError(StreamError):
    """Non-success status, missing body, or a network failure mid-stream."""

    kind = FailureKind.TRANSPORT_ERROR

    def __init__(
        self,
        message: str,
        *,
        category: str = "transport_error",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.category = category


class InvalidStateError(StreamError):
    """Operation not allowed in the session's current state."""

    def __init__(
        self,
        message: str,
        *,
        state: SessionState | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.state = state
