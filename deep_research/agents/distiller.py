from __future__ import annotations

import json
from typing import Any

from loguru import logger

from deep_research.llm_client import BaseModelProvider
from deep_research.models.research import Distillation, FollowUp, SearchResult
from deep_research.services.json_extract import extract_json_object, normalize_text_list
from deep_research.services.prompt_store import render_prompt
from deep_research.tools.web_utils import trim_text


def format_results_for_prompt(results: list[SearchResult], max_chars_per_result: int = 4000) -> str:
    blocks = []
    for index, result in enumerate(results, 1):
        content = trim_text(result.snippet, max_chars_per_result) or "No content available"
        title = result.title or f"Result {index}"
        blocks.append(f"## Result {index}: {title}\nURL: {result.url or '#'}\nContent: {content}")
    return "\n\n".join(blocks)


def _follow_ups_from(value: Any, limit: int) -> list[FollowUp]:
    if not isinstance(value, list) or limit <= 0:
        return []
    follow_ups: list[FollowUp] = []
    seen: set[str] = set()
    for item in value:
        if isinstance(item, str):
            query, goal = item, ""
        elif isinstance(item, dict):
            query, goal = item.get("query"), item.get("goal") or ""
        else:
            continue
        if not isinstance(query, str) or not query.strip():
            continue
        key = query.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        follow_ups.append(FollowUp(query=query.strip(), goal=str(goal).strip()))
        if len(follow_ups) >= limit:
            break
    return follow_ups


class ResultDistiller:
    """Turns one query's search results into learnings and follow-up questions."""

    name = "distiller"

    def __init__(self, provider: BaseModelProvider):
        self.provider = provider

    async def distill(
        self,
        query: str,
        results: list[SearchResult],
        max_learnings: int = 3,
        max_follow_ups: int = 3,
    ) -> Distillation:
        if not results:
            return Distillation()

        messages = [
            {"role": "system", "content": render_prompt("system.researcher")},
            {
                "role": "user",
                "content": render_prompt(
                    "distiller.user",
                    query=query,
                    results=format_results_for_prompt(results),
                    max_learnings=max_learnings,
                    max_follow_ups=max_follow_ups,
                ),
            },
        ]
        try:
            response = await self.provider.chat(messages, caller=self.name)
        except Exception as exc:
            logger.warning(f"Distillation call failed for '{query[:50]}': {exc}")
            return Distillation()

        try:
            payload = extract_json_object(response.content)
        except json.JSONDecodeError as exc:
            logger.warning(f"Could not parse distillation for '{query[:50]}': {exc}")
            return Distillation()

        return Distillation(
            learnings=normalize_text_list(payload.get("learnings"), max_items=max(0, max_learnings)),
            follow_ups=_follow_ups_from(payload.get("followUpQuestions"), max(0, max_follow_ups)),
        )
