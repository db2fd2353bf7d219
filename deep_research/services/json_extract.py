from __future__ import annotations

import json
import re
from typing import Any

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Pull the first JSON object out of free-form model text.

    Tries a direct parse, then a fenced ```json block, then the outermost
    ``{...}`` span. Raises ``json.JSONDecodeError`` when nothing parses.
    """
    text = (raw_text or "").strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    match = _FENCED_BLOCK.search(text)
    if match:
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed

    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def normalize_text_list(value: Any, *, max_items: int, min_len: int = 1) -> list[str]:
    """Coerce a model-provided list into unique, stripped strings."""
    if not isinstance(value, list) or max_items <= 0:
        return []
    items: list[str] = []
    seen: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            continue
        text = item.strip()
        key = text.lower()
        if len(text) < min_len or key in seen:
            continue
        seen.add(key)
        items.append(text)
        if len(items) >= max_items:
            break
    return items
