from __future__ import annotations

import asyncio
import re
from typing import Any, Callable

import pytest

from deep_research.llm_client import BaseModelProvider, ModelResponse
from deep_research.models.events import EventType, StreamEvent
from deep_research.models.research import SearchOutcome, SearchResult
from deep_research.services.model_registry import ModelConfig, ModelRegistry
from deep_research.tools import web_utils
from deep_research.tools.search_client import (
    format_results,
    results_to_sources,
    unavailable_message,
)

Reply = Any  # str | Exception | Callable[[list[dict]], str]


def user_query(messages: list[dict[str, str]]) -> str:
    """The ``USER QUERY:`` line of a rendered planner/distiller prompt."""
    match = re.search(r"USER QUERY: (.+)", messages[-1]["content"])
    return match.group(1).strip() if match else ""


class ScriptedProvider(BaseModelProvider):
    """Answers by caller name (planner, distiller, synthesis, final_report)."""

    def __init__(self, config: ModelConfig, replies: dict[str, Reply] | None = None, chunks: list[Any] | None = None):
        super().__init__(config)
        self.replies = replies or {}
        self.chunks = chunks
        self.calls: list[tuple[str, list[dict[str, str]]]] = []

    def _reply(self, caller: str, messages: list[dict[str, str]]) -> str:
        reply = self.replies.get(caller, "")
        if callable(reply):
            reply = reply(messages)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def chat(self, messages, *, caller="unknown"):
        self.calls.append((caller, messages))
        return ModelResponse(content=self._reply(caller, messages), model=self.config.id)

    async def stream_chat(self, messages, *, caller="unknown"):
        self.calls.append((caller, messages))
        chunks = self.chunks if self.chunks is not None else [self._reply(caller, messages)]
        for chunk in chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def callers(self) -> list[str]:
        return [caller for caller, _ in self.calls]


class StubRegistry(ModelRegistry):
    """Real catalogue, scripted providers."""

    def __init__(self, provider_factory: Callable[[ModelConfig], BaseModelProvider]):
        super().__init__()
        self._provider_factory = provider_factory
        self.providers: dict[str, BaseModelProvider] = {}

    def get_provider(self, key, *, temperature=None, max_tokens=None):
        config = self.get_config(self.resolve_key(key))
        if config.key not in self.providers:
            self.providers[config.key] = self._provider_factory(config)
        return self.providers[config.key]


class FakeSearchClient:
    def __init__(self, handler: Callable[[str], SearchOutcome] | None = None, delay: float = 0.0):
        self.handler = handler or failed_outcome
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def search(self, query: str) -> SearchOutcome:
        self.calls.append(query)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self.handler(query)
        finally:
            self.in_flight -= 1


def make_results(count: int, prefix: str = "https://example.com/article") -> list[SearchResult]:
    results = []
    for i in range(1, count + 1):
        url = f"{prefix}-{i}"
        domain = web_utils.extract_domain(url)
        results.append(
            SearchResult(
                title=f"Article {i}",
                url=url,
                snippet=f"Body text of article {i}.",
                domain=domain,
                favicon=web_utils.favicon_url(domain),
            )
        )
    return results


def successful_outcome(results: list[SearchResult]) -> SearchOutcome:
    return SearchOutcome(
        results=results,
        sources=results_to_sources(results),
        succeeded=True,
        message=format_results(results),
    )


def failed_outcome(query: str) -> SearchOutcome:
    return SearchOutcome(succeeded=False, message=unavailable_message(query))


async def collect(events) -> list[StreamEvent]:
    return [event async for event in events]


def of_type(events: list[StreamEvent], event_type: EventType) -> list[StreamEvent]:
    return [e for e in events if e.event == event_type]


@pytest.fixture
def make_registry():
    def _make(replies: dict[str, Reply] | None = None, chunks: list[Any] | None = None) -> StubRegistry:
        return StubRegistry(lambda config: ScriptedProvider(config, replies, chunks))

    return _make
