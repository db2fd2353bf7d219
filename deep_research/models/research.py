from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

MIN_DEPTH = 1
MAX_DEPTH = 5
MIN_BREADTH = 2
MAX_BREADTH = 5


class ResearchMode(str, Enum):
    REGULAR = "regular"
    DEEP = "deep"


class RunStatus(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    PLANNING = "planning"
    DISTILLING = "distilling"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    FAILED = "failed"


class ResearchQuery(BaseModel):
    """A query at a given position in the follow-up tree."""

    model_config = ConfigDict(frozen=True)

    query: str
    depth: int = Field(default=1, ge=MIN_DEPTH, le=MAX_DEPTH)


class ResearchNode(ResearchQuery):
    """Work-queue entry for deep research."""


class SearchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    url: str
    snippet: str = ""
    domain: Optional[str] = None
    favicon: Optional[str] = None


class Source(BaseModel):
    """De-duplicated, client-facing form of a search result."""

    title: str
    url: str
    domain: str
    relevance: float = Field(default=0.5, ge=0.0, le=1.0)
    favicon: Optional[str] = None
    snippet: Optional[str] = None


class SearchOutcome(BaseModel):
    results: list[SearchResult] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    succeeded: bool = False
    # Formatted results block on success, human-readable fallback text otherwise.
    message: str = ""


class PlannedQuery(BaseModel):
    query: str
    research_goal: str = ""


class FollowUp(BaseModel):
    query: str
    goal: str = ""


class Distillation(BaseModel):
    learnings: list[str] = Field(default_factory=list)
    follow_ups: list[FollowUp] = Field(default_factory=list)


def clamp_depth(depth: int) -> int:
    return min(max(MIN_DEPTH, int(depth)), MAX_DEPTH)


def clamp_breadth(breadth: int) -> int:
    return min(max(MIN_BREADTH, int(breadth)), MAX_BREADTH)


@dataclass
class ResearchRun:
    """Mutable state of one research invocation. Never shared across requests."""

    query: str
    mode: ResearchMode
    depth: int
    breadth: int
    learnings: list[str] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    visited_queries: set[str] = field(default_factory=set)
    visited_urls: set[str] = field(default_factory=set)
    progress: int = 0
    status: RunStatus = RunStatus.IDLE
    any_search_succeeded: bool = False
    completed_queries: int = 0
    total_queries: int = 0

    def advance_progress(self, value: float) -> int:
        """Move progress forward; never backwards."""
        self.progress = max(self.progress, min(100, int(value)))
        return self.progress

    def register_sources(self, sources: list[Source]) -> tuple[list[Source], list[Source]]:
        """Merge freshly searched sources into the run.

        Returns (new_sources, enriched_sources). A URL is added once; a
        placeholder title is upgraded in place when a real one shows up.
        """
        by_url = {source.url: source for source in self.sources}
        new_sources: list[Source] = []
        enriched: list[Source] = []
        new_urls: set[str] = set()
        enriched_urls: set[str] = set()
        for candidate in sources:
            if not candidate.url:
                continue
            existing = by_url.get(candidate.url)
            if existing is None:
                source = candidate.model_copy()
                self.sources.append(source)
                self.visited_urls.add(source.url)
                by_url[source.url] = source
                new_urls.add(source.url)
                new_sources.append(source)
                continue
            if existing.title == "Untitled" and candidate.title not in ("", "Untitled"):
                existing.title = candidate.title
                if not existing.snippet and candidate.snippet:
                    existing.snippet = candidate.snippet
                if existing.url not in new_urls and existing.url not in enriched_urls:
                    enriched_urls.add(existing.url)
                    enriched.append(existing)
        return new_sources, enriched


@dataclass
class ResearchOptions:
    deep: bool = False
    depth: Optional[int] = None
    breadth: Optional[int] = None
