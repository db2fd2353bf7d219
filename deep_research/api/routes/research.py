from __future__ import annotations

import json as _json
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sse_starlette.sse import EventSourceResponse

from deep_research.agents.orchestrator import ResearchOrchestrator
from deep_research.api.deps import get_registry, get_search_client
from deep_research.models.events import StreamEvent
from deep_research.models.research import ResearchOptions
from deep_research.models.schemas import ResearchRequest
from deep_research.services import logger as log_service
from deep_research.services import streaming
from deep_research.services.model_registry import ModelRegistry
from deep_research.tools.search_client import SearchClient

router = APIRouter(prefix="/api/research", tags=["research"])

STREAM_MEDIA_TYPE = "text/event-stream"


async def run_research(
    orchestrator: ResearchOrchestrator,
    query: str,
    options: ResearchOptions,
) -> AsyncIterator[StreamEvent]:
    """Relay orchestrator events, turning unexpected failures into one error frame.

    If the consumer goes away mid-stream the run is aborted and nothing more
    is written.
    """
    log_service.log_event(
        event_type="research_started",
        message="Research started",
        run_id=orchestrator.run_id,
        model=orchestrator.model_key,
        deep=options.deep,
        query=query[:100],
    )
    finished = False
    try:
        async for event in orchestrator.research(query, options):
            yield event
        finished = True
    except Exception as e:
        log_service.log_event(
            event_type="stream_error",
            message="Unhandled error in research stream",
            error=str(e),
            run_id=orchestrator.run_id,
        )
        yield streaming.error("Research stream failed unexpectedly.")
    finally:
        if not finished:
            orchestrator.abort()
        log_service.log_event(
            event_type="research_finished",
            message="Research stream closed",
            run_id=orchestrator.run_id,
        )


@router.post("")
async def research(
    request: ResearchRequest,
    registry: ModelRegistry = Depends(get_registry),
    search_client: SearchClient = Depends(get_search_client),
):
    """Stream a research run as newline-delimited JSON frames."""
    orchestrator = ResearchOrchestrator(
        registry,
        model_key=request.model_key,
        search_client=search_client,
    )
    options = request.options.to_options()

    async def frames():
        async for event in run_research(orchestrator, request.query, options):
            yield event.encode()

    return StreamingResponse(
        frames(),
        media_type=STREAM_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/events")
async def research_events(
    query: str = Query(..., min_length=1),
    deep: bool = False,
    depth: int | None = None,
    breadth: int | None = None,
    model: str | None = None,
    registry: ModelRegistry = Depends(get_registry),
    search_client: SearchClient = Depends(get_search_client),
):
    """Same frames as ``POST /api/research``, as SSE ``data:`` records."""
    orchestrator = ResearchOrchestrator(registry, model_key=model, search_client=search_client)
    options = ResearchOptions(deep=deep, depth=depth, breadth=breadth)

    async def event_generator():
        async for event in run_research(orchestrator, query, options):
            yield {"data": _json.dumps(event.to_dict(), ensure_ascii=False)}

    return EventSourceResponse(event_generator())
