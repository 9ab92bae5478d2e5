"""Newline-delimited JSON decoding for agent stdout.

The agent CLI writes one JSON event per line, but the pipe hands us
arbitrary chunks. StreamEventDecoder keeps the unterminated tail of the
previous chunk and only parses complete lines, so the decoded events do
not depend on where the chunk boundaries fell.
"""
from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Signature: callback(raw_line, exception) -> None
DecodeErrorCallback = Callable[[str, Exception], None]


@dataclass
class StreamEvent:
    """One decoded event record.

    ``kind`` is the top-level ``type`` (system | assistant | user | result);
    ``payload`` is the full record as decoded.
    """
    kind: str
    subtype: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> StreamEvent:
        return cls(
            kind=str(record.get("type") or ""),
            subtype=str(record.get("subtype") or ""),
            payload=record,
        )


class StreamEventDecoder:
    """Splits a byte/text stream into StreamEvents, one per line."""

    def __init__(self, on_error: DecodeErrorCallback | None = None) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._on_error = on_error
        self.error_count = 0

    @property
    def pending(self) -> str:
        """Carry-over text not yet terminated by a newline."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Append *chunk* and return events for every line it completed."""
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        if not chunk:
            return []
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def flush(self) -> list[StreamEvent]:
        """Decode whatever is left once the stream has ended."""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._decode_lines([tail])

    def reset(self) -> None:
        self._buffer = ""
        self._utf8.reset()

    def _decode_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            text = line.strip()
            if not text:
                continue
            try:
                record = json.loads(text)
                if not isinstance(record, dict):
                    raise ValueError(
                        f"expected a JSON object, got {type(record).__name__}"
                    )
            except ValueError as exc:
                # json.JSONDecodeError is a ValueError subclass
                self._report(text, exc)
                continue
            events.append(StreamEvent.from_record(record))
        return events

    def _report(self, line: str, exc: Exception) -> None:
        self.error_count += 1
        logger.warning(
            "Dropping undecodable stream line (%s): %.200s", exc, line,
        )
        if self._on_error is not None:
            self._on_error(line, exc)
