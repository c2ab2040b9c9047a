"""
NDJSON record parsing.

Each framed line is validated against the wire schema in one step. Anything
that does not match (invalid JSON, unknown ``type``, wrong field types)
becomes a ``MalformedEvent`` so a single bad record never ends the stream.
"""

from __future__ import annotations

from pydantic import TypeAdapter, ValidationError

from .models import (
    ChunkEvent,
    CompleteEvent,
    MalformedEvent,
    StreamEvent,
    WireChunk,
    WireEvent,
)

_WIRE_EVENT: TypeAdapter[WireEvent] = TypeAdapter(WireEvent)


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    if location:
        return f"{first['type']} at {location}: {first['msg']}"
    return f"{first['type']}: {first['msg']}"


def parse_line(line: str) -> StreamEvent:
    """Parse one record without touching any counters."""
    try:
        record = _WIRE_EVENT.validate_json(line)
    except ValidationError as e:
        return MalformedEvent(raw=line, error=_describe(e))

    if isinstance(record, WireChunk):
        return ChunkEvent(text=record.data)
    return CompleteEvent(finish_reason=record.data.finish_reason)


class EventParser:
    """Record parser with per-session counters for monitoring."""

    def __init__(self) -> None:
        self.stats = {
            "total_records": 0,
            "chunk_records": 0,
            "complete_records": 0,
            "malformed_records": 0,
        }

    def parse(self, line: str) -> StreamEvent:
        event = parse_line(line)
        self.stats["total_records"] += 1
        if isinstance(event, ChunkEvent):
            self.stats["chunk_records"] += 1
        elif isinstance(event, CompleteEvent):
            self.stats["complete_records"] += 1
        else:
            self.stats["malformed_records"] += 1
        return event

    def get_stats(self) -> dict[str, int]:
        return self.stats.copy()

    def reset_stats(self) -> None:
        for key in self.stats:
            self.stats[key] = 0
