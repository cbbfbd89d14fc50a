"""Claude CLI stream-json events and incremental parsing."""

from __future__ import annotations

import asyncio
import codecs
import json
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any

READ_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class StreamEvent:
    """One structured progress record written by the CLI."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StreamEvent | None:
        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type:
            return None
        return cls(type=event_type, payload=payload)

    @property
    def subtype(self) -> str | None:
        value = self.payload.get("subtype")
        return value if isinstance(value, str) else None

    @property
    def session_id(self) -> str | None:
        value = self.payload.get("session_id")
        return value if isinstance(value, str) and value else None

    @property
    def is_init(self) -> bool:
        return self.type == "system" and self.subtype == "init"

    @property
    def is_result(self) -> bool:
        return self.type == "result"

    @property
    def result_text(self) -> str:
        value = self.payload.get("result")
        return value if isinstance(value, str) else ""

    @property
    def cost_usd(self) -> float | None:
        value = self.payload.get("total_cost_usd")
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        return float(value)

    def content_blocks(self) -> list[dict[str, Any]]:
        message = self.payload.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if not isinstance(content, list):
            return []
        return [block for block in content if isinstance(block, dict)]

    def text_fragments(self) -> list[str]:
        if self.type != "assistant":
            return []
        return [
            block["text"]
            for block in self.content_blocks()
            if block.get("type") == "text" and isinstance(block.get("text"), str) and block["text"]
        ]

    def tool_names(self) -> list[str]:
        if self.type != "assistant":
            return []
        return [
            block["name"]
            for block in self.content_blocks()
            if block.get("type") == "tool_use" and isinstance(block.get("name"), str)
        ]


def parse_stream_line(line: str) -> StreamEvent | None:
    """Parse one stdout line; anything that is not a typed JSON object yields None."""

    trimmed = line.strip()
    if not trimmed or not trimmed.startswith("{"):
        return None
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return StreamEvent.from_payload(payload)


class LineSplitter:
    """Turn arbitrary byte chunks into complete text lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return lines

    def flush(self) -> str:
        """Return the trailing partial line, if any, and reset."""

        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return tail


async def iter_stream_events(stream: asyncio.StreamReader, *, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[StreamEvent]:
    """Lazily yield events in the order the process wrote them."""

    splitter = LineSplitter()
    while chunk := await stream.read(chunk_size):
        for line in splitter.feed(chunk):
            event = parse_stream_line(line)
            if event is not None:
                yield event
    tail = splitter.flush()
    if tail.strip():
        event = parse_stream_line(tail)
        if event is not None:
            yield event


def extract_result(events: Iterable[StreamEvent]) -> tuple[str, float | None]:
    """Final text and cost: last result event wins, else joined assistant text."""

    ordered = list(events)
    for event in reversed(ordered):
        if event.is_result:
            return event.result_text, event.cost_usd

    texts: list[str] = []
    for event in ordered:
        texts.extend(event.text_fragments())
    return "\n".join(texts), None
