"""Deep Research - command line runner.

Runs a research query in-process, or streams one from a running server
with ``--server``.
"""

import argparse
import asyncio
from typing import AsyncIterator

import httpx

from deep_research.agents.orchestrator import ResearchOrchestrator
from deep_research.models.events import StreamEvent
from deep_research.models.research import ResearchOptions
from deep_research.services.model_registry import ModelRegistry
from deep_research.services.streaming import FrameDecoder


def render_event(event: StreamEvent) -> None:
    """Print one event in a terminal-friendly form."""
    event_type = event.event.value
    data = event.data

    if event_type == "progress":
        print(f"\n[{data.get('progress', 0):>3}%] {data.get('status', '')}")

    elif event_type == "reasoning_trace":
        print(f"  [~] {data.get('content', '')}")

    elif event_type == "search_results":
        print(f"\n[+] Search results received ({len(data.get('content', ''))} chars)")

    elif event_type == "sources":
        for source in data.get("sources", []):
            print(f"  [src] {source.get('title', 'Untitled')[:70]} - {source.get('url')}")

    elif event_type == "source_update":
        print(f"  [src] updated {data.get('url')}")

    elif event_type in ("learning", "learnings"):
        content = data.get("content", [])
        items = content if isinstance(content, list) else [content]
        for item in items:
            print(f"  [*] {item}")

    elif event_type == "content_chunk":
        print(data.get("content", ""), end="", flush=True)

    elif event_type == "content":
        print(f"\n{'=' * 50}")
        print("REPORT:")
        print(f"{'=' * 50}")
        print(data.get("content", ""))

    elif event_type == "error":
        print(f"\n[!] Error: {data.get('content', 'Unknown error')}")

    elif event_type == "complete":
        print(f"\n[*] {data.get('status', 'Research complete')}")


async def stream_remote(
    server: str,
    query: str,
    options: ResearchOptions,
    model: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[StreamEvent]:
    """Yield events from ``POST {server}/api/research``."""
    payload = {
        "query": query,
        "options": {
            "isDeepResearch": options.deep,
            "depth": options.depth,
            "breadth": options.breadth,
        },
        "modelKey": model,
    }
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))
    decoder = FrameDecoder()
    try:
        async with http.stream("POST", f"{server.rstrip('/')}/api/research", json=payload) as response:
            response.raise_for_status()
            async for chunk in response.aiter_text():
                for event in decoder.feed(chunk):
                    yield event
        for event in decoder.flush():
            yield event
    finally:
        if owns_client:
            await http.aclose()


async def run_research(
    query: str,
    options: ResearchOptions,
    model: str | None = None,
    server: str | None = None,
) -> None:
    """Run research on the given query."""
    print(f"Research query: {query}")
    print("-" * 50)

    if server:
        events = stream_remote(server, query, options, model)
    else:
        orchestrator = ResearchOrchestrator(ModelRegistry(), model_key=model)
        events = orchestrator.research(query, options)

    async for event in events:
        render_event(event)


def main():
    parser = argparse.ArgumentParser(description="Deep Research - streaming research assistant")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument("--model", "-m", help="Model key (default: from config)")
    parser.add_argument("--deep", action="store_true", help="Run recursive deep research")
    parser.add_argument("--depth", type=int, help="Deep research depth (1-5)")
    parser.add_argument("--breadth", type=int, help="Deep research breadth (2-5)")
    parser.add_argument("--server", help="Stream from a running server instead of running locally")

    args = parser.parse_args()

    options = ResearchOptions(deep=args.deep, depth=args.depth, breadth=args.breadth)
    asyncio.run(run_research(args.query, options, args.model, args.server))


if __name__ == "__main__":
    main()
