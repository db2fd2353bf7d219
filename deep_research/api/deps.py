from __future__ import annotations

from fastapi import Request

from deep_research.services.model_registry import ModelRegistry
from deep_research.tools.search_client import SearchClient


def get_registry(request: Request) -> ModelRegistry:
    """The process-wide model registry built at startup."""
    return request.app.state.registry


def get_search_client(request: Request) -> SearchClient:
    return request.app.state.search_client
