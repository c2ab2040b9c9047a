"""
Newline framing for NDJSON bodies.

EOF counts as an implicit terminator: ``flush()`` returns a non-empty
unterminated remainder as a final record instead of dropping it.
"""

from __future__ import annotations


class LineFramer:
    """Split decoded text into complete, non-empty lines."""

    def __init__(self) -> None:
        # Unterminated tail, joined when a newline arrives
        self._parts: list[str] = []

    @property
    def pending(self) -> str:
        return "".join(self._parts)

    def push(self, text: str) -> list[str]:
        """Add text; return every line completed by it."""
        if "\n" not in text:
            if text:
                self._parts.append(text)
            return []

        self._parts.append(text)
        *complete, tail = "".join(self._parts).split("\n")
        self._parts = [tail] if tail else []
        return [line for raw in complete if (line := raw.strip())]

    def flush(self) -> list[str]:
        remainder = self.pending.strip()
        self._parts = []
        return [remainder] if remainder else []

    def reset(self) -> None:
        self._parts = []
