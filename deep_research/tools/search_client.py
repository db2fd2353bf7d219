from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from deep_research.config import settings
from deep_research.models.research import SearchOutcome, SearchResult, Source
from deep_research.services import logger as log_service
from deep_research.tools import web_utils

STATUS_MESSAGES = {
    400: "Bad Request - The request was malformed or contains invalid parameters",
    401: "Unauthorized - API key is missing or invalid",
    403: "Forbidden - The API key doesn't have permission to perform the request",
    404: "Not Found - The requested resource was not found (check API endpoint URL)",
    429: "Too Many Requests - Rate limit exceeded, try again later",
    500: "Internal Server Error - Something went wrong on the server",
    502: "Bad Gateway - The server received an invalid response from upstream",
    503: "Service Unavailable - The server is currently unable to handle the request",
    504: "Gateway Timeout - The upstream server failed to respond in time",
}


def status_message(status: int) -> str:
    return STATUS_MESSAGES.get(status, f"Unknown status code {status}")


def unavailable_message(query: str) -> str:
    return (
        "## Web Search Unavailable\n"
        "Unfortunately, a live web search could not be performed at this time. "
        "The report will rely on the model's background knowledge.\n\n"
        f"The query was: {query}\n\n"
        "This is based on existing model knowledge rather than real-time web search results."
    )


def auth_failure_message(query: str) -> str:
    return (
        "## API Authentication Error\n"
        "There was an issue authenticating with the web search service. This might be due "
        "to an invalid API key or expired credentials.\n\n"
        f"The query was: {query}\n\n"
        "This report will be based on AI knowledge rather than real-time web search results."
    )


def no_results_message(query: str) -> str:
    return (
        "## No Search Results\n"
        "The web search did not yield any relevant results for this query.\n\n"
        f"The query was: {query}\n\n"
        "This report will be based on AI knowledge rather than real-time web search results."
    )


def alternative_endpoint(base_url: str) -> str:
    """The same search endpoint with the API version segment toggled."""
    base = base_url.rstrip("/")
    if "/v1" in base:
        return base.replace("/v1", "") + "/search"
    return base + "/v1/search"


def normalize_result(raw: Any) -> SearchResult | None:
    """Map one provider result onto the canonical shape. Drops items without an http(s) URL."""
    if not isinstance(raw, dict):
        return None
    metadata = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}
    url = raw.get("url") or metadata.get("sourceURL") or ""
    if not isinstance(url, str) or not web_utils.is_valid_url(url):
        return None
    title = raw.get("title") or metadata.get("title") or "Untitled"
    snippet = (
        raw.get("markdown")
        or raw.get("description")
        or raw.get("snippet")
        or raw.get("content")
        or ""
    )
    domain = web_utils.extract_domain(url)
    return SearchResult(
        title=str(title),
        url=url,
        snippet=str(snippet),
        domain=domain,
        favicon=web_utils.favicon_url(domain),
    )


def results_to_sources(results: list[SearchResult]) -> list[Source]:
    return [
        Source(
            title=result.title,
            url=result.url,
            domain=result.domain or "unknown",
            relevance=max(0.1, round(0.9 - index * 0.05, 2)),
            favicon=result.favicon,
            snippet=web_utils.trim_text(result.snippet, 300) or None,
        )
        for index, result in enumerate(results)
    ]


def format_results(results: list[SearchResult], *, max_chars_per_result: int = 4000) -> str:
    """Render results as the markdown block shown to users and models."""
    blocks = []
    for index, result in enumerate(results, 1):
        body = web_utils.trim_text(result.snippet, max_chars_per_result) or "No content available"
        blocks.append(
            f"## {index}. {result.title}\n"
            f"**Source:** [{result.url}]({result.url}) ({result.domain or 'unknown'})\n"
            f"{body}"
        )
    return "\n\n".join(blocks)


class SearchClient:
    """Firecrawl-style web search with retries and a non-raising fallback.

    ``search`` always returns a ``SearchOutcome``; provider failures are
    reported through ``succeeded=False`` and a human-readable message.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        limit: int | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_key = api_key if api_key is not None else settings.firecrawl_api_key
        self.base_url = (base_url or settings.firecrawl_base_url).rstrip("/")
        self.timeout = float(timeout if timeout is not None else settings.firecrawl_request_timeout)
        self.max_retries = max(int(max_retries if max_retries is not None else settings.search_max_retries), 0)
        self.limit = int(limit if limit is not None else settings.search_limit)
        self._client = http_client
        self._sleep = sleep

    def _payload(self, query: str) -> dict[str, Any]:
        return {
            "query": query,
            "limit": self.limit,
            "country": settings.search_country,
            "lang": settings.search_lang,
            "scrapeOptions": {
                "formats": ["markdown", "links"],
                "onlyMainContent": True,
            },
            # Provider-side budget in ms, kept below our own HTTP timeout.
            "timeout": int(self.timeout * 1000 * 0.75),
        }

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, endpoint: str, query: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                endpoint, json=self._payload(query), headers=self._headers(), timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(endpoint, json=self._payload(query), headers=self._headers())

    @staticmethod
    def _parse_results(response: httpx.Response) -> list[SearchResult]:
        try:
            body = response.json()
        except ValueError:
            return []
        raw_items = body.get("data") if isinstance(body, dict) else None
        if not isinstance(raw_items, list):
            return []
        return [r for r in (normalize_result(item) for item in raw_items) if r is not None]

    @staticmethod
    def _success(results: list[SearchResult]) -> SearchOutcome:
        return SearchOutcome(
            results=results,
            sources=results_to_sources(results),
            succeeded=True,
            message=format_results(results),
        )

    async def _try_alternative(self, query: str) -> SearchOutcome | None:
        endpoint = alternative_endpoint(self.base_url)
        logger.warning(f"Search endpoint not found, trying alternative path {endpoint}")
        try:
            response = await self._post(endpoint, query)
        except httpx.HTTPError as exc:
            logger.error(f"Alternative search endpoint also failed: {exc}")
            return None
        if response.is_success:
            results = self._parse_results(response)
            if results:
                logger.warning(
                    f"Alternative endpoint succeeded; update FIRECRAWL_BASE_URL to {endpoint.rsplit('/search', 1)[0]}"
                )
                return self._success(results)
        return None

    async def search(self, query: str) -> SearchOutcome:
        try:
            return await self._search_with_retries(query)
        except httpx.HTTPError as exc:
            logger.error(f"Search failed unexpectedly for '{query[:50]}': {exc}")
            return SearchOutcome(succeeded=False, message=unavailable_message(query))
        except ValueError as exc:
            logger.error(f"Search response could not be mapped for '{query[:50]}': {exc}")
            return SearchOutcome(succeeded=False, message=unavailable_message(query))

    async def _search_with_retries(self, query: str) -> SearchOutcome:
        endpoint = f"{self.base_url}/search"
        retries = 0
        tried_alternative = False

        while True:
            attempt = retries + 1
            try:
                response = await self._post(endpoint, query)
            except httpx.HTTPError as exc:
                log_service.log_search_call(query, attempt, "network_error", error=repr(exc))
                if retries < self.max_retries:
                    retries += 1
                    await self._sleep(1.0 * 2**retries)
                    continue
                return SearchOutcome(succeeded=False, message=unavailable_message(query))

            status = response.status_code

            if status == 404 and not tried_alternative:
                tried_alternative = True
                alternative = await self._try_alternative(query)
                if alternative is not None:
                    return alternative

            if response.is_success:
                results = self._parse_results(response)
                if results:
                    log_service.log_search_call(query, attempt, "success", results_count=len(results))
                    return self._success(results)
                log_service.log_search_call(query, attempt, "empty", http_status=status)
                if retries < self.max_retries:
                    retries += 1
                    await self._sleep(1.0 * retries)
                    continue
                return SearchOutcome(succeeded=False, message=no_results_message(query))

            log_service.log_search_call(
                query, attempt, "http_error", http_status=status, error=status_message(status)
            )

            if status in (401, 403):
                if retries < min(1, self.max_retries):
                    retries += 1
                    await self._sleep(2.0)
                    continue
                return SearchOutcome(succeeded=False, message=auth_failure_message(query))

            if retries < self.max_retries:
                retries += 1
                if status == 429:
                    await self._sleep(3.0 * retries)
                else:
                    await self._sleep(1.0 * 2**retries)
                continue
            return SearchOutcome(succeeded=False, message=unavailable_message(query))
