"""Newline-delimited JSON framing.

Each frame is one UTF-8 JSON value followed by ``\\n``.  Socket reads may cut
a frame anywhere (even inside a multi-byte character), so :class:`LineFramer`
keeps the unterminated tail as bytes until the next chunk arrives.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from hostrpc.errors import FrameParseError

DELIMITER = b"\n"


@dataclass(frozen=True)
class Frame:
    """One decoded line: either ``payload`` or ``error`` is meaningful."""

    raw: str
    payload: Any = None
    error: FrameParseError | None = None


class LineFramer:
    """Splits a byte stream into non-blank text lines."""

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        """Bytes of the current partial line."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[str]:
        """Add *chunk* and return every line it completed."""
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(DELIMITER)
        return _non_blank(complete)

    def flush(self) -> list[str]:
        """Return the unterminated tail (at EOF) and clear the buffer."""
        tail, self._buffer = self._buffer, b""
        return _non_blank([tail])

    def reset(self) -> None:
        self._buffer = b""


def _non_blank(raw_lines: list[bytes]) -> list[str]:
    lines: list[str] = []
    for raw in raw_lines:
        text = raw.decode("utf-8", errors="replace").strip()
        if text:
            lines.append(text)
    return lines


def encode_frame(message: Any) -> bytes:
    """Serialise *message* as one frame."""
    return json.dumps(message).encode("utf-8") + DELIMITER


def decode_frame(line: str) -> Frame:
    """Parse one line; parse failures are returned, not raised."""
    try:
        return Frame(raw=line, payload=json.loads(line))
    except json.JSONDecodeError as exc:
        return Frame(raw=line, error=FrameParseError(line, str(exc)))
