from __future__ import annotations

import json
from typing import Any

from deep_research.models.events import EventType, StreamEvent
from deep_research.models.research import Source


def progress(value: float, status: str, details: dict[str, Any] | None = None) -> StreamEvent:
    data: dict[str, Any] = {"progress": value, "status": status}
    if details:
        data["details"] = details
    return StreamEvent(event=EventType.PROGRESS, data=data)


def search_results(content: str) -> StreamEvent:
    return StreamEvent(event=EventType.SEARCH_RESULTS, data={"content": content})


def sources(items: list[Source]) -> StreamEvent:
    return StreamEvent(
        event=EventType.SOURCES,
        data={"sources": [s.model_dump(exclude_none=True) for s in items]},
    )


def source_update(source: Source) -> StreamEvent:
    return StreamEvent(
        event=EventType.SOURCE_UPDATE,
        data={"url": source.url, "data": source.model_dump(exclude_none=True)},
    )


def learning(content: str) -> StreamEvent:
    return StreamEvent(event=EventType.LEARNING, data={"content": content})


def learnings(items: list[str]) -> StreamEvent:
    return StreamEvent(event=EventType.LEARNINGS, data={"content": items})


def reasoning_trace(content: str) -> StreamEvent:
    return StreamEvent(event=EventType.REASONING_TRACE, data={"content": content})


def content_chunk(chunk: str) -> StreamEvent:
    return StreamEvent(event=EventType.CONTENT_CHUNK, data={"content": chunk})


def content(text: str) -> StreamEvent:
    return StreamEvent(event=EventType.CONTENT, data={"content": text})


def error(message: str) -> StreamEvent:
    return StreamEvent(event=EventType.ERROR, data={"content": message})


def complete(status: str = "Research complete") -> StreamEvent:
    return StreamEvent(event=EventType.COMPLETE, data={"status": status})


def decode_line(line: str) -> StreamEvent | None:
    """Decode one frame. Returns None for blank lines.

    Lines that are not JSON frames are surfaced as raw streamed text.
    """
    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return content_chunk(line)
    if not isinstance(payload, dict) or "type" not in payload:
        return content_chunk(line)
    try:
        return StreamEvent.from_dict(payload)
    except ValueError:
        return content_chunk(line)


class FrameDecoder:
    """Incremental decoder for newline-delimited JSON frames.

    Network chunks may carry several frames or end mid-frame; partial lines
    are buffered until their terminating newline arrives.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[StreamEvent]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            event = decode_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[StreamEvent]:
        tail, self._buffer = self._buffer, ""
        event = decode_line(tail)
        return [event] if event is not None else []
