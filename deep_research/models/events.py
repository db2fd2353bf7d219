from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    PROGRESS = "progress"
    CONTENT = "content"
    CONTENT_CHUNK = "content_chunk"
    SEARCH_RESULTS = "search_results"
    SOURCES = "sources"
    SOURCE_UPDATE = "source_update"
    LEARNING = "learning"
    LEARNINGS = "learnings"
    REASONING_TRACE = "reasoning_trace"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass
class StreamEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event.value, **self.data}

    def encode(self) -> str:
        """Serialize as one newline-terminated JSON frame."""
        return json.dumps(self.to_dict(), ensure_ascii=False) + "\n"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StreamEvent":
        data = dict(payload)
        event = EventType(data.pop("type"))
        return cls(event=event, data=data)
