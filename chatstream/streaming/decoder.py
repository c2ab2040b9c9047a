"""
Incremental byte decoding for chunked response bodies.

A chunk boundary can fall in the middle of a multi-byte character. The
trailing incomplete sequence is handed back as a continuation and prepended
to the next chunk instead of being decoded into replacement characters.
"""

from __future__ import annotations

import codecs


def decode(
    data: bytes,
    continuation: bytes = b"",
    *,
    encoding: str = "utf-8",
    errors: str = "replace",
    final: bool = False,
) -> tuple[str, bytes]:
    """
    Decode ``continuation + data`` and return ``(text, continuation')``.

    Args:
        data: Newly received bytes
        continuation: Undecoded tail carried over from the previous call
        encoding: Codec name
        errors: Error handler for genuinely invalid input
        final: End of input; any leftover bytes are decoded with ``errors``

    Returns:
        Decoded text and the bytes that still await completion
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors=errors)
    decoder.setstate((continuation, 0))
    text = decoder.decode(data, final=final)
    pending, _ = decoder.getstate()
    return text, pending


class ByteDecoder:
    """Holds the continuation for one session."""

    def __init__(self, encoding: str = "utf-8", errors: str = "replace"):
        codecs.lookup(encoding)
        self.encoding = encoding
        self.errors = errors
        self.continuation = b""

    def decode(self, data: bytes, *, final: bool = False) -> str:
        text, self.continuation = decode(
            data,
            self.continuation,
            encoding=self.encoding,
            errors=self.errors,
            final=final,
        )
        return text

    def flush(self) -> str:
        """Decode whatever is left at end of input."""
        return self.decode(b"", final=True)

    def reset(self) -> None:
        self.continuation = b""
