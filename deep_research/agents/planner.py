from __future__ import annotations

import json

from loguru import logger

from deep_research.llm_client import BaseModelProvider
from deep_research.models.research import PlannedQuery
from deep_research.services.json_extract import extract_json_object
from deep_research.services.prompt_store import render_prompt

FALLBACK_GOAL = "Directly answering the user's original query"


class QueryPlanner:
    """Asks the model for the next batch of search queries on a topic.

    Always returns between 1 and ``breadth`` queries; any provider or parse
    failure degrades to the topic itself.
    """

    name = "planner"

    def __init__(self, provider: BaseModelProvider):
        self.provider = provider

    @staticmethod
    def fallback(topic: str) -> list[PlannedQuery]:
        return [PlannedQuery(query=topic, research_goal=FALLBACK_GOAL)]

    def _build_messages(self, topic: str, breadth: int, prior_learnings: list[str]) -> list[dict[str, str]]:
        learnings_block = ""
        if prior_learnings:
            learnings_block = render_prompt("planner.learnings_block", learnings="\n".join(prior_learnings))
        return [
            {"role": "system", "content": render_prompt("system.researcher")},
            {
                "role": "user",
                "content": render_prompt(
                    "planner.user",
                    breadth=breadth,
                    topic=topic,
                    learnings_block=learnings_block,
                ),
            },
        ]

    @staticmethod
    def parse_queries(raw_text: str, breadth: int) -> list[PlannedQuery]:
        """Parse the model's ``{"queries": [...]}`` payload. Raises on bad shape."""
        payload = extract_json_object(raw_text)
        raw_queries = payload.get("queries")
        if not isinstance(raw_queries, list):
            raise ValueError("Response has no queries array")

        planned: list[PlannedQuery] = []
        seen: set[str] = set()
        for item in raw_queries:
            if isinstance(item, str):
                query, goal = item, ""
            elif isinstance(item, dict):
                query = item.get("query")
                goal = item.get("researchGoal") or item.get("research_goal") or ""
            else:
                continue
            if not isinstance(query, str) or not query.strip():
                continue
            key = query.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            planned.append(PlannedQuery(query=query.strip(), research_goal=str(goal).strip()))
            if len(planned) >= breadth:
                break
        if not planned:
            raise ValueError("Response contained no usable queries")
        return planned

    async def generate_queries(
        self,
        topic: str,
        breadth: int,
        prior_learnings: list[str] | None = None,
    ) -> list[PlannedQuery]:
        breadth = max(1, breadth)
        logger.info(f"Generating up to {breadth} search queries for: {topic[:40]}...")
        messages = self._build_messages(topic, breadth, prior_learnings or [])
        try:
            response = await self.provider.chat(messages, caller=self.name)
        except Exception as exc:
            logger.warning(f"Query planning call failed, using the topic itself: {exc}")
            return self.fallback(topic)

        try:
            queries = self.parse_queries(response.content, breadth)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning(f"Could not parse planned queries, using the topic itself: {exc}")
            return self.fallback(topic)

        logger.info(f"Generated {len(queries)} search queries: {[q.query for q in queries]}")
        return queries
