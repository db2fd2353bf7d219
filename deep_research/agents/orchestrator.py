from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Coroutine, TypeVar
from uuid import uuid4

from loguru import logger

from deep_research.agents.distiller import ResultDistiller
from deep_research.agents.planner import QueryPlanner
from deep_research.config import settings
from deep_research.exceptions import ResearchAborted
from deep_research.models.events import StreamEvent
from deep_research.models.research import (
    PlannedQuery,
    ResearchMode,
    ResearchNode,
    ResearchOptions,
    ResearchRun,
    RunStatus,
    clamp_breadth,
    clamp_depth,
)
from deep_research.services import logger as log_service
from deep_research.services import report, streaming
from deep_research.services.model_registry import ModelRegistry
from deep_research.services.prompt_store import render_prompt
from deep_research.tools.search_client import SearchClient
from deep_research.tools.web_utils import trim_text

T = TypeVar("T")


def query_key(query: str) -> str:
    """Identity used for visited-query bookkeeping."""
    return " ".join(query.split()).lower()


def deep_progress(current_depth: int, max_depth: int, completed: int, total: int) -> int:
    level_share = completed / total / max_depth if total else 0.0
    return int(min(90, 20 + 70 * ((current_depth - 1) / max_depth + level_share)))


class ResearchOrchestrator:
    """Drives one research run and streams its events.

    Regular mode: search once, stream the results, synthesise a report.
    Deep mode: breadth-first over a queue of ``ResearchNode``; each node is
    planned into queries that run concurrently (bounded by a semaphore),
    and distilled follow-ups feed the next level until ``depth`` is reached.

    An orchestrator serves a single run. ``abort()`` cancels whatever is in
    flight and no further events are yielded.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        *,
        model_key: str | None = None,
        search_client: SearchClient | None = None,
        concurrency_limit: int | None = None,
        learnings_per_query: int | None = None,
        follow_ups_per_query: int | None = None,
    ):
        self.model_key = registry.resolve_key(model_key)
        self.model_config = registry.get_config(self.model_key)
        self.provider = registry.get_provider(self.model_key)
        self.search_client = search_client or SearchClient()
        self.planner = QueryPlanner(self.provider)
        self.distiller = ResultDistiller(self.provider)
        self.concurrency_limit = max(1, concurrency_limit or settings.concurrency_limit)
        self.learnings_per_query = learnings_per_query or settings.learnings_per_query
        self.follow_ups_per_query = follow_ups_per_query or settings.follow_ups_per_query
        self.run_id = uuid4().hex[:12]
        self.run: ResearchRun | None = None
        self._aborted = False
        self._tasks: set[asyncio.Future[Any]] = set()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        logger.info(f"Research run {self.run_id} aborted with {len(self._tasks)} task(s) in flight")
        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Task plumbing
    # ------------------------------------------------------------------

    async def _tracked(self, coro: Coroutine[Any, Any, T]) -> T:
        """Await ``coro`` as a task that ``abort()`` can cancel."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self._aborted and task.cancelled():
                raise ResearchAborted() from None
            raise
        finally:
            self._tasks.discard(task)

    async def _relay(
        self, work: Awaitable[Any], channel: asyncio.Queue[StreamEvent]
    ) -> AsyncIterator[StreamEvent]:
        """Run ``work`` and yield whatever it puts on ``channel`` until it finishes."""
        task = asyncio.ensure_future(work)
        self._tasks.add(task)
        try:
            while True:
                getter = asyncio.ensure_future(channel.get())
                try:
                    await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    if not getter.done():
                        getter.cancel()
                if getter.done() and not getter.cancelled():
                    yield getter.result()
                    continue
                break
            while not channel.empty():
                yield channel.get_nowait()
            if task.cancelled() and self._aborted:
                raise ResearchAborted()
            task.result()
        finally:
            if not task.done():
                task.cancel()
            self._tasks.discard(task)

    def _progress(self, run: ResearchRun, value: float, status: str, details: dict[str, Any] | None = None) -> StreamEvent:
        return streaming.progress(run.advance_progress(value), status, details)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def start_run(self, query: str, options: ResearchOptions) -> ResearchRun:
        mode = ResearchMode.DEEP if options.deep else ResearchMode.REGULAR
        depth = clamp_depth(options.depth if options.depth is not None else settings.default_depth)
        breadth = clamp_breadth(options.breadth if options.breadth is not None else settings.default_breadth)
        self.run = ResearchRun(query=query, mode=mode, depth=depth, breadth=breadth)
        return self.run

    async def research(self, query: str, options: ResearchOptions | None = None) -> AsyncIterator[StreamEvent]:
        run = self.start_run(query, options or ResearchOptions())
        log_service.log_research_step(
            self.run_id,
            "research",
            "started",
            {"mode": run.mode.value, "depth": run.depth, "breadth": run.breadth, "model": self.model_key},
        )
        events = self._deep_research(run) if run.mode == ResearchMode.DEEP else self._regular_research(run)
        try:
            async for event in events:
                if self._aborted:
                    break
                yield event
                if self._aborted:
                    break
        except ResearchAborted:
            logger.info(f"Research run {self.run_id} stopped after abort")
        finally:
            await events.aclose()
            log_service.log_research_step(
                self.run_id,
                "research",
                "aborted" if self._aborted else run.status.value,
                {"learnings": len(run.learnings), "sources": len(run.sources)},
            )

    # ------------------------------------------------------------------
    # Regular mode
    # ------------------------------------------------------------------

    def _synthesis_messages(self, query: str, results_text: str) -> list[dict[str, str]]:
        if self.model_config.supports_streaming:
            system, user = "system.streaming_assistant", "synthesis.streaming_user"
        else:
            system, user = "system.researcher", "synthesis.user"
        return [
            {"role": "system", "content": render_prompt(system)},
            {"role": "user", "content": render_prompt(user, query=query, results=results_text)},
        ]

    async def _regular_research(self, run: ResearchRun) -> AsyncIterator[StreamEvent]:
        query = run.query
        run.status = RunStatus.SEARCHING
        yield self._progress(run, 10, "Searching the web")
        yield streaming.reasoning_trace(f'Searching the web for: "{query}"')

        outcome = await self._tracked(self.search_client.search(query))
        run.any_search_succeeded = outcome.succeeded
        new_sources, _ = run.register_sources(outcome.sources)

        yield streaming.search_results(outcome.message)
        if new_sources:
            yield streaming.sources(new_sources)
        if outcome.succeeded:
            yield streaming.reasoning_trace(f"Found {len(outcome.results)} search results.")
        else:
            yield streaming.reasoning_trace("Web search unavailable; continuing with the model's own knowledge.")
        yield self._progress(run, 40, "Search complete")

        run.status = RunStatus.SYNTHESIZING
        yield self._progress(run, 50, f"Analyzing information with {self.model_config.name}...")
        messages = self._synthesis_messages(query, outcome.message)

        text = ""
        failure: str | None = None
        try:
            if self.provider.supports_streaming:
                parts: list[str] = []
                channel: asyncio.Queue[StreamEvent] = asyncio.Queue()

                async def pump() -> None:
                    async for chunk in self.provider.stream_chat(messages, caller="synthesis"):
                        parts.append(chunk)
                        channel.put_nowait(streaming.content_chunk(chunk))

                async for event in self._relay(pump(), channel):
                    yield event
                text = "".join(parts)
            else:
                response = await self._tracked(self.provider.chat(messages, caller="synthesis"))
                text = response.content
        except ResearchAborted:
            raise
        except Exception as exc:
            logger.error(f"Synthesis failed for run {self.run_id}: {exc}")
            failure = str(exc)

        if failure is None and not text.strip():
            failure = "the model returned an empty response"
        if failure is not None:
            yield streaming.error(f"Error generating the research report: {failure}")
            text = report.synthesis_fallback_report(query, outcome.message)

        yield self._progress(run, 90, "Finalizing report")
        final = report.format_report(text, [s.url for s in run.sources], run.any_search_succeeded)
        yield streaming.content(final)

        run.status = RunStatus.COMPLETE
        yield self._progress(
            run,
            100,
            "Research complete",
            {"confidence": report.confidence_score(run.any_search_succeeded)},
        )
        yield streaming.complete()

    # ------------------------------------------------------------------
    # Deep mode
    # ------------------------------------------------------------------

    async def _research_unit(
        self,
        run: ResearchRun,
        node: ResearchNode,
        planned: PlannedQuery,
        position: int,
        count: int,
        channel: asyncio.Queue[StreamEvent],
        follow_ups: list[ResearchNode],
    ) -> None:
        """Search, distill and collect follow-ups for one planned query.

        Failures are narrated on the channel; they never escape.
        """
        put = channel.put_nowait
        query = planned.query
        try:
            put(streaming.reasoning_trace(f'Searching for: "{query}" ({position}/{count})'))
            if planned.research_goal:
                put(streaming.reasoning_trace(f"Search goal: {planned.research_goal}"))

            outcome = await self.search_client.search(query)
            if outcome.succeeded:
                run.any_search_succeeded = True
            put(streaming.reasoning_trace(f'Found {len(outcome.results)} search results for query "{query}"'))

            new_sources, enriched = run.register_sources(outcome.sources)
            if new_sources:
                put(streaming.sources(new_sources))
            for source in enriched:
                put(streaming.source_update(source))

            if outcome.results:
                run.status = RunStatus.DISTILLING
                put(streaming.reasoning_trace("Extracting key learnings from search results..."))
                distillation = await self.distiller.distill(
                    query,
                    outcome.results,
                    self.learnings_per_query,
                    self.follow_ups_per_query,
                )
                if distillation.learnings:
                    run.learnings.extend(distillation.learnings)
                    put(streaming.learnings(distillation.learnings))
                    put(
                        streaming.reasoning_trace(
                            f"Extracted {len(distillation.learnings)} key insights from search results."
                        )
                    )
                next_depth = node.depth + 1
                if distillation.follow_ups and next_depth <= run.depth:
                    follow_ups.extend(ResearchNode(query=f.query, depth=next_depth) for f in distillation.follow_ups)
                    put(
                        streaming.reasoning_trace(
                            f"Generated {len(distillation.follow_ups)} follow-up questions for deeper research."
                        )
                    )
        except Exception as exc:
            logger.error(f'Error processing query "{query}": {exc}')
            put(streaming.reasoning_trace(f'Error processing query "{query}": {exc}'))

        run.completed_queries += 1
        put(
            self._progress(
                run,
                deep_progress(node.depth, run.depth, run.completed_queries, run.total_queries),
                f"Researching ({position}/{count}): {query}",
                {
                    "currentDepth": node.depth,
                    "totalDepth": run.depth,
                    "completedQueries": run.completed_queries,
                    "totalQueries": run.total_queries,
                },
            )
        )

    async def _research_node(
        self, run: ResearchRun, node: ResearchNode, follow_ups: list[ResearchNode]
    ) -> AsyncIterator[StreamEvent]:
        run.status = RunStatus.PLANNING
        yield streaming.reasoning_trace("Generating targeted search queries based on the sub-question...")
        planned = await self._tracked(self.planner.generate_queries(node.query, run.breadth, list(run.learnings)))
        run.total_queries += len(planned)
        yield streaming.reasoning_trace(
            f"Generated {len(planned)} search queries to explore different aspects of the question."
        )

        run.status = RunStatus.SEARCHING
        channel: asyncio.Queue[StreamEvent] = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.concurrency_limit)

        async def unit(position: int, item: PlannedQuery) -> None:
            async with semaphore:
                await self._research_unit(run, node, item, position, len(planned), channel, follow_ups)

        async def run_units() -> None:
            await asyncio.gather(*(unit(i, item) for i, item in enumerate(planned, 1)))

        async for event in self._relay(run_units(), channel):
            yield event

    def _next_level(self, run: ResearchRun, candidates: list[ResearchNode]) -> list[ResearchNode]:
        queued: set[str] = set()
        level: list[ResearchNode] = []
        for node in candidates:
            key = query_key(node.query)
            if node.depth > run.depth or key in run.visited_queries or key in queued:
                continue
            queued.add(key)
            level.append(node)
        return level

    async def _final_report(self, run: ResearchRun) -> str:
        if not run.learnings:
            return report.format_report(report.no_findings_report(run.query), [], run.any_search_succeeded)

        learnings_text = trim_text("\n".join(f"- {item}" for item in run.learnings), settings.report_max_chars)
        messages = [
            {"role": "system", "content": render_prompt("system.researcher")},
            {"role": "user", "content": render_prompt("report.final_user", query=run.query, learnings=learnings_text)},
        ]
        try:
            response = await self._tracked(self.provider.chat(messages, caller="final_report"))
            text = response.content
        except ResearchAborted:
            raise
        except Exception as exc:
            logger.error(f"Final report generation failed for run {self.run_id}: {exc}")
            text = ""
        if not text.strip():
            text = report.fallback_report(run.query, run.learnings, run.sources)
        return report.format_report(text, [s.url for s in run.sources], run.any_search_succeeded)

    async def _deep_research(self, run: ResearchRun) -> AsyncIterator[StreamEvent]:
        yield self._progress(
            run,
            5,
            "Starting deep research",
            {"totalDepth": run.depth, "breadth": run.breadth},
        )
        yield streaming.reasoning_trace(
            f'Starting deep research on "{run.query}" with depth {run.depth} and breadth {run.breadth}.'
        )

        try:
            level = [ResearchNode(query=run.query, depth=1)]
            while level:
                current_depth = level[0].depth
                yield self._progress(
                    run,
                    deep_progress(current_depth, run.depth, 0, 0),
                    f"Exploring depth {current_depth} of {run.depth}",
                    {"currentDepth": current_depth, "totalDepth": run.depth, "topics": len(level)},
                )
                follow_ups: list[ResearchNode] = []
                for index, node in enumerate(level, 1):
                    if node.depth > run.depth:
                        continue
                    key = query_key(node.query)
                    if key in run.visited_queries:
                        continue
                    run.visited_queries.add(key)
                    yield streaming.reasoning_trace(
                        f'Researching sub-question: "{node.query}" ({index}/{len(level)} at depth {node.depth})'
                    )
                    async for event in self._research_node(run, node, follow_ups):
                        yield event
                level = self._next_level(run, follow_ups)
                if level:
                    yield streaming.reasoning_trace(
                        f"Queued {len(level)} follow-up questions for depth {level[0].depth}."
                    )

            run.status = RunStatus.SYNTHESIZING
            yield self._progress(run, 90, "Generating final report...")
            if not run.learnings:
                yield streaming.reasoning_trace("No findings were gathered; writing a report that says so.")
            final = await self._final_report(run)
        except ResearchAborted:
            raise
        except Exception as exc:
            run.status = RunStatus.FAILED
            logger.exception(f"Deep research failed for run {self.run_id}: {exc}")
            yield streaming.error(
                f"An error occurred during deep research. We found {len(run.learnings)} insights "
                "before the error occurred."
            )
            if run.learnings:
                yield streaming.content(
                    report.partial_report(run.query, run.learnings, list(run.visited_urls))
                )
            return

        yield streaming.content(final)
        run.status = RunStatus.COMPLETE
        yield self._progress(
            run,
            100,
            "Research complete",
            {
                "learnings": len(run.learnings),
                "sources": len(run.sources),
                "confidence": report.confidence_score(run.any_search_succeeded),
            },
        )
        yield streaming.complete()
