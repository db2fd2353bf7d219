from __future__ import annotations

import json

import pytest

from conftest import ScriptedProvider
from deep_research.agents.planner import FALLBACK_GOAL, QueryPlanner
from deep_research.exceptions import ProviderError
from deep_research.services.model_registry import MODEL_CONFIGS


def planner_with(reply) -> tuple[QueryPlanner, ScriptedProvider]:
    provider = ScriptedProvider(MODEL_CONFIGS["gpt-4o"], {"planner": reply})
    return QueryPlanner(provider), provider


def queries_payload(*queries: str) -> str:
    return json.dumps({"queries": [{"query": q, "researchGoal": f"goal for {q}"} for q in queries]})


@pytest.mark.asyncio
async def test_generate_queries_parses_and_caps_at_breadth():
    planner, _ = planner_with(queries_payload("a", "b", "c", "d"))

    queries = await planner.generate_queries("topic", 3)

    assert [q.query for q in queries] == ["a", "b", "c"]
    assert queries[0].research_goal == "goal for a"


@pytest.mark.asyncio
async def test_generate_queries_accepts_fenced_json_with_prose():
    reply = "Here you go:\n```json\n" + queries_payload("solar panels", "wind turbines") + "\n```\nGood luck."
    planner, _ = planner_with(reply)

    queries = await planner.generate_queries("renewables", 5)

    assert [q.query for q in queries] == ["solar panels", "wind turbines"]


@pytest.mark.asyncio
async def test_invalid_json_falls_back_to_the_topic():
    planner, _ = planner_with("I think you should search for things.")

    queries = await planner.generate_queries("history of cryptocurrency", 3)

    assert len(queries) == 1
    assert queries[0].query == "history of cryptocurrency"
    assert queries[0].research_goal == FALLBACK_GOAL


@pytest.mark.asyncio
async def test_provider_failure_falls_back_to_the_topic():
    planner, _ = planner_with(ProviderError("upstream down"))

    queries = await planner.generate_queries("topic", 2)

    assert [q.query for q in queries] == ["topic"]


@pytest.mark.asyncio
async def test_empty_or_duplicate_queries_are_dropped():
    planner, _ = planner_with(queries_payload("Same", "same ", "", "other"))

    queries = await planner.generate_queries("topic", 5)

    assert [q.query for q in queries] == ["Same", "other"]


@pytest.mark.asyncio
async def test_empty_queries_array_falls_back():
    planner, _ = planner_with('{"queries": []}')

    queries = await planner.generate_queries("topic", 3)

    assert [q.query for q in queries] == ["topic"]


@pytest.mark.asyncio
async def test_prior_learnings_are_included_in_the_prompt():
    planner, provider = planner_with(queries_payload("x"))

    await planner.generate_queries("topic", 2, ["Bitcoin launched in 2009"])

    _, messages = provider.calls[0]
    assert "Bitcoin launched in 2009" in messages[-1]["content"]
    assert "maximum of 2 queries" in messages[-1]["content"]
