from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import pytest

from conftest import (
    FakeSearchClient,
    collect,
    failed_outcome,
    make_results,
    of_type,
    successful_outcome,
    user_query,
)
from deep_research.agents.orchestrator import ResearchOrchestrator, deep_progress, query_key
from deep_research.exceptions import ProviderError
from deep_research.models.events import EventType
from deep_research.models.research import ResearchOptions, RunStatus

DEEP = ResearchOptions(deep=True, depth=2, breadth=2)


def plan_reply(messages):
    topic = user_query(messages)
    return json.dumps({"queries": [{"query": f"{topic} / angle {i}", "researchGoal": "cover it"} for i in (1, 2)]})


def distill_reply_for(root: str):
    def reply(messages):
        query = user_query(messages)
        return json.dumps(
            {
                "learnings": [f"Fact about {query}"],
                "followUpQuestions": [{"query": f"{query} follow-up", "goal": "dig"}, {"query": root}],
            }
        )

    return reply


def search_by_query(query: str):
    slug = abs(hash(query)) % 10_000
    return successful_outcome(make_results(2, prefix=f"https://site{slug}.example.org/page"))


def all_source_urls(events) -> list[str]:
    urls = []
    for event in of_type(events, EventType.SOURCES):
        urls.extend(s["url"] for s in event.data["sources"])
    return urls


# --- Regular mode ---


@pytest.mark.asyncio
async def test_regular_mode_streams_results_sources_chunks_then_high_confidence_report(make_registry):
    registry = make_registry(chunks=["Bitcoin ", "appeared ", "in 2009."])
    search = FakeSearchClient(lambda q: successful_outcome(make_results(5)))
    orchestrator = ResearchOrchestrator(registry, model_key="claude-3.7-sonnet", search_client=search)

    events = await collect(orchestrator.research("history of cryptocurrency"))
    types = [e.event for e in events]

    search_frames = of_type(events, EventType.SEARCH_RESULTS)
    assert len(search_frames) == 1
    assert all(f"## {i}. Article {i}" in search_frames[0].data["content"] for i in range(1, 6))

    source_frames = of_type(events, EventType.SOURCES)
    assert len(source_frames) == 1
    assert len({s["url"] for s in source_frames[0].data["sources"]}) == 5

    chunks = of_type(events, EventType.CONTENT_CHUNK)
    assert "".join(e.data["content"] for e in chunks) == "Bitcoin appeared in 2009."
    assert types.index(EventType.SOURCES) < types.index(EventType.CONTENT_CHUNK)

    report = of_type(events, EventType.CONTENT)[-1].data["content"]
    assert "Confidence level:** High" in report
    assert "## Sources" in report
    assert types[-1] == EventType.COMPLETE
    assert orchestrator.run.status == RunStatus.COMPLETE
    assert search.calls == ["history of cryptocurrency"]


@pytest.mark.asyncio
async def test_regular_mode_with_failed_search_continues_on_model_knowledge(make_registry):
    registry = make_registry({"synthesis": "Answer from background knowledge."})
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=FakeSearchClient())

    events = await collect(orchestrator.research("q"))

    assert of_type(events, EventType.SOURCES) == []
    assert "Web Search Unavailable" in of_type(events, EventType.SEARCH_RESULTS)[0].data["content"]
    assert of_type(events, EventType.CONTENT_CHUNK) == []
    contents = of_type(events, EventType.CONTENT)
    assert len(contents) == 1
    assert "Answer from background knowledge." in contents[0].data["content"]
    assert "Moderate (Based on AI knowledge)" in contents[0].data["content"]
    assert events[-1].event == EventType.COMPLETE
    assert registry.providers["gpt-4o"].callers() == ["synthesis"]


@pytest.mark.asyncio
async def test_regular_mode_synthesis_failure_emits_error_then_fallback_report(make_registry):
    registry = make_registry({"synthesis": ProviderError("model unavailable")})
    search = FakeSearchClient(lambda q: successful_outcome(make_results(2)))
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=search)

    events = await collect(orchestrator.research("q"))
    types = [e.event for e in events]

    assert EventType.ERROR in types
    assert types.index(EventType.ERROR) < types.index(EventType.CONTENT)
    report = of_type(events, EventType.CONTENT)[0].data["content"]
    assert "## 1. Article 1" in report
    assert types[-1] == EventType.COMPLETE


@pytest.mark.asyncio
async def test_unknown_model_key_uses_default_model(make_registry):
    registry = make_registry({"synthesis": "ok"}, chunks=["ok"])
    orchestrator = ResearchOrchestrator(registry, model_key="does-not-exist", search_client=FakeSearchClient())

    assert orchestrator.model_key == registry.default_key
    events = await collect(orchestrator.research("q"))
    assert events[-1].event == EventType.COMPLETE


# --- Deep mode ---


@pytest.mark.asyncio
async def test_deep_mode_with_zero_results_completes_with_no_findings_report(make_registry):
    registry = make_registry({"planner": plan_reply})
    search = FakeSearchClient(lambda q: failed_outcome(q))
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=search)

    events = await collect(orchestrator.research("q", ResearchOptions(deep=True, depth=2, breadth=3)))

    assert events[-1].event == EventType.COMPLETE
    assert of_type(events, EventType.LEARNINGS) == []
    assert orchestrator.run.learnings == []
    report = of_type(events, EventType.CONTENT)[-1].data["content"]
    assert "no findings were gathered" in report
    callers = registry.providers["gpt-4o"].callers()
    assert "distiller" not in callers
    assert "final_report" not in callers


@pytest.mark.asyncio
async def test_deep_mode_respects_depth_bounds_and_visits_each_query_once(make_registry):
    root = "renewable energy"
    registry = make_registry(
        {"planner": plan_reply, "distiller": distill_reply_for(root), "final_report": "# Final\n\nDone."}
    )
    search = FakeSearchClient(search_by_query)
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=search)

    events = await collect(orchestrator.research(root, DEEP))
    run = orchestrator.run
    provider = registry.providers["gpt-4o"]

    planned_topics = [user_query(m) for caller, m in provider.calls if caller == "planner"]
    assert len(planned_topics) == len({query_key(t) for t in planned_topics})
    assert planned_topics[0] == root
    # root + one follow-up per depth-1 unit; the root echo is never re-planned
    assert planned_topics[1:] == [f"{root} / angle 1 follow-up", f"{root} / angle 2 follow-up"]
    assert len(run.visited_queries) == 3
    assert all(" follow-up follow-up" not in t for t in planned_topics)

    assert len(run.learnings) == len(search.calls) == 6
    assert events[-1].event == EventType.COMPLETE
    report = of_type(events, EventType.CONTENT)[-1].data["content"]
    assert report.startswith("# Final")
    assert "Confidence level:** High" in report


@pytest.mark.asyncio
async def test_depth_one_produces_no_follow_up_levels(make_registry):
    registry = make_registry({"planner": plan_reply, "distiller": distill_reply_for("q"), "final_report": "Report"})
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=FakeSearchClient(search_by_query))

    await collect(orchestrator.research("q", ResearchOptions(deep=True, depth=1, breadth=2)))

    assert registry.providers["gpt-4o"].callers().count("planner") == 1


@pytest.mark.asyncio
async def test_deep_mode_sources_are_unique_across_frames(make_registry):
    registry = make_registry({"planner": plan_reply, "distiller": distill_reply_for("q"), "final_report": "Report"})
    # every query returns the same two URLs
    search = FakeSearchClient(lambda q: successful_outcome(make_results(2)))
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=search)

    events = await collect(orchestrator.research("q", DEEP))

    urls = all_source_urls(events)
    assert sorted(urls) == ["https://example.com/article-1", "https://example.com/article-2"]
    assert len(orchestrator.run.sources) == 2


@pytest.mark.asyncio
async def test_deep_mode_bounds_concurrency(make_registry):
    def wide_plan(messages):
        topic = user_query(messages)
        return json.dumps({"queries": [{"query": f"{topic} {i}", "researchGoal": ""} for i in range(5)]})

    registry = make_registry({"planner": wide_plan, "distiller": "{}", "final_report": "Report"})
    search = FakeSearchClient(search_by_query, delay=0.01)
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=search)

    await collect(orchestrator.research("q", ResearchOptions(deep=True, depth=1, breadth=5)))

    assert len(search.calls) == 5
    assert search.max_in_flight == 2


@pytest.mark.asyncio
async def test_deep_mode_progress_is_monotonic_and_bounded(make_registry):
    registry = make_registry({"planner": plan_reply, "distiller": distill_reply_for("q"), "final_report": "Report"})
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=FakeSearchClient(search_by_query))

    events = await collect(orchestrator.research("q", DEEP))
    values = [e.data["progress"] for e in of_type(events, EventType.PROGRESS)]

    assert values == sorted(values)
    assert values[-1] == 100
    assert all(0 <= v <= 100 for v in values)


def test_deep_progress_formula():
    assert deep_progress(1, 2, 0, 0) == 20
    assert deep_progress(1, 2, 1, 2) == 37
    assert deep_progress(2, 2, 4, 4) == 90


@pytest.mark.asyncio
async def test_deep_mode_clamps_depth_and_breadth(make_registry):
    registry = make_registry({"planner": plan_reply})
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=FakeSearchClient())

    await collect(orchestrator.research("q", ResearchOptions(deep=True, depth=99, breadth=0)))

    assert orchestrator.run.depth == 5
    assert orchestrator.run.breadth == 2


@pytest.mark.asyncio
async def test_unit_failure_is_narrated_and_run_continues(make_registry):
    registry = make_registry({"planner": plan_reply, "final_report": "Report"})

    def flaky(query: str):
        if query.endswith("angle 1"):
            raise RuntimeError("search exploded")
        return failed_outcome(query)

    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=FakeSearchClient(flaky))

    events = await collect(orchestrator.research("q", ResearchOptions(deep=True, depth=1, breadth=2)))

    traces = [e.data["content"] for e in of_type(events, EventType.REASONING_TRACE)]
    assert any("search exploded" in t for t in traces)
    assert events[-1].event == EventType.COMPLETE


@pytest.mark.asyncio
async def test_fatal_control_loop_error_emits_error_and_partial_report(make_registry):
    registry = make_registry({"planner": plan_reply, "distiller": distill_reply_for("q")})
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=FakeSearchClient(search_by_query))

    with patch.object(orchestrator, "_next_level", side_effect=RuntimeError("queue corrupted")):
        events = await collect(orchestrator.research("q", DEEP))

    types = [e.event for e in events]
    assert EventType.COMPLETE not in types
    assert types[-2:] == [EventType.ERROR, EventType.CONTENT]
    assert "We found 2 insights" in events[-2].data["content"]
    partial = events[-1].data["content"]
    assert partial.startswith("# Partial Research Report: q")
    assert "https://site" in partial
    assert orchestrator.run.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_fatal_error_without_learnings_emits_only_error(make_registry):
    registry = make_registry({"planner": plan_reply})
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=FakeSearchClient())

    with patch.object(orchestrator, "_next_level", side_effect=RuntimeError("queue corrupted")):
        events = await collect(orchestrator.research("q", DEEP))

    assert events[-1].event == EventType.ERROR
    assert of_type(events, EventType.CONTENT) == []


# --- Cancellation ---


@pytest.mark.asyncio
async def test_abort_stops_the_stream(make_registry):
    registry = make_registry({"planner": plan_reply, "distiller": distill_reply_for("q"), "final_report": "Report"})
    orchestrator = ResearchOrchestrator(registry, model_key="gpt-4o", search_client=FakeSearchClient(search_by_query))

    events = []
    async for event in orchestrator.research("q", DEEP):
        events.append(event)
        if event.event == EventType.LEARNINGS:
            orchestrator.abort()

    assert events[-1].event == EventType.LEARNINGS
    assert EventType.COMPLETE not in [e.event for e in events]
    assert orchestrator.aborted is True


@pytest.mark.asyncio
async def test_abort_cancels_in_flight_search(make_registry):
    started = asyncio.Event()
    cancelled = False

    class BlockingSearch:
        async def search(self, query):
            nonlocal cancelled
            started.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled = True
                raise

    orchestrator = ResearchOrchestrator(make_registry(), model_key="gpt-4o", search_client=BlockingSearch())
    events = []

    async def consume():
        async for event in orchestrator.research("q"):
            events.append(event)

    task = asyncio.create_task(consume())
    await started.wait()
    seen_before_abort = len(events)
    orchestrator.abort()
    await asyncio.wait_for(task, timeout=1)

    assert cancelled is True
    assert len(events) == seen_before_abort
    assert EventType.SEARCH_RESULTS not in [e.event for e in events]
