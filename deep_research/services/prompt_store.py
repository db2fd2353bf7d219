from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

from deep_research.exceptions import PromptCatalogError


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"

# Every prompt the agents render, with the placeholders its template must use.
REQUIRED_PROMPTS: dict[str, tuple[str, ...]] = {
    "system.researcher": (),
    "system.streaming_assistant": (),
    "planner.user": ("breadth", "topic", "learnings_block"),
    "planner.learnings_block": ("learnings",),
    "distiller.user": ("query", "results", "max_learnings", "max_follow_ups"),
    "synthesis.streaming_user": ("query", "results"),
    "synthesis.user": ("query", "results"),
    "report.final_user": ("query", "learnings"),
}

_cached: tuple[Path, int, dict[str, Any]] | None = None


def _lookup(catalog: dict[str, Any], key: str) -> Any:
    node: Any = catalog
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    return node


def validate_catalog(catalog: Any) -> None:
    """Check that every required prompt exists and uses its placeholders."""
    if not isinstance(catalog, dict):
        raise PromptCatalogError("Prompt catalog must be a JSON object.")
    problems: list[str] = []
    for key, placeholders in REQUIRED_PROMPTS.items():
        try:
            template = _lookup(catalog, key)
        except KeyError:
            problems.append(f"{key}: missing")
            continue
        if not isinstance(template, str):
            problems.append(f"{key}: not a string")
            continue
        absent = [name for name in placeholders if f"${name}" not in template and f"${{{name}}}" not in template]
        if absent:
            problems.append(f"{key}: missing placeholder(s) {', '.join(absent)}")
    if problems:
        raise PromptCatalogError("Invalid prompt catalog: " + "; ".join(problems))


def load_catalog(path: Path | None = None) -> dict[str, Any]:
    """Load and validate the catalogue, reusing it until the file changes."""
    global _cached
    path = path or PROMPTS_PATH
    mtime_ns = path.stat().st_mtime_ns
    if _cached is not None and _cached[0] == path and _cached[1] == mtime_ns:
        return _cached[2]

    payload = json.loads(path.read_text(encoding="utf-8"))
    validate_catalog(payload)
    _cached = (path, mtime_ns, payload)
    return payload


def get_prompt(key: str) -> str:
    """Return the raw template for a dotted key such as ``planner.user``."""
    node = _lookup(load_catalog(), key)
    if not isinstance(node, str):
        raise TypeError(f"Prompt key must map to a string: {key}")
    return node


def render_prompt(key: str, **values: Any) -> str:
    template = Template(get_prompt(key))
    try:
        return template.substitute(**values)
    except KeyError as exc:
        missing = str(exc.args[0])
        raise KeyError(f"Missing template value '{missing}' for prompt '{key}'") from exc
