"""
Streaming pipeline for chunked HTTP responses.

This package contains:
- Incremental byte decoding
- NDJSON line framing and record parsing
- The pure reducer folding events into message patches
- The session driving one request/response cycle
"""

from __future__ import annotations

from .decoder import ByteDecoder, decode
from .framer import LineFramer
from .models import (
    ChunkEvent,
    CompleteEvent,
    Diagnostic,
    DiagnosticKind,
    MalformedEvent,
    Patch,
    PatchKind,
    SessionResult,
    SessionState,
    StreamEvent,
    StreamMode,
    StreamRequest,
)
from .parser import EventParser, parse_line
from .reducer import ReducerState, apply_patch
from .session import CancellationToken, StreamSession

__all__ = [
    "ByteDecoder",
    "CancellationToken",
    "ChunkEvent",
    "CompleteEvent",
    "Diagnostic",
    "DiagnosticKind",
    "EventParser",
    "LineFramer",
    "MalformedEvent",
    "Patch",
    "PatchKind",
    "ReducerState",
    "SessionResult",
    "SessionState",
    "StreamEvent",
    "StreamMode",
    "StreamRequest",
    "StreamSession",
    "apply_patch",
    "decode",
    "parse_line",
]
