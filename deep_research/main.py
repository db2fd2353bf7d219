from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deep_research.api.routes import models, research
from deep_research.config import settings
from deep_research.services.logger import logger
from deep_research.services.model_registry import ModelRegistry
from deep_research.tools.search_client import SearchClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    app.state.registry = ModelRegistry()
    app.state.search_client = SearchClient()
    if not settings.firecrawl_api_key:
        logger.warning("FIRECRAWL_API_KEY is not set; web search will fall back to model knowledge")
    if not settings.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY is not set; OpenRouter models will fail")
    yield
    # Shutdown


app = FastAPI(
    title="Deep Research",
    description="Streaming research assistant over web search and chat-completion models",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)
app.include_router(models.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deep-research"}
