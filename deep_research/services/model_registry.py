"""Model catalogue and provider construction.

A ``ModelRegistry`` is built once per process (FastAPI lifespan or CLI) and
handed to whatever needs a provider; there is no module-level instance.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger
from openai import AsyncOpenAI

from deep_research.config import settings
from deep_research.exceptions import UnknownModelError
from deep_research.llm_client import BaseModelProvider, ChatCompletionsProvider

PERPLEXITY = "perplexity"
OPENROUTER = "openrouter"


@dataclass(frozen=True)
class ModelConfig:
    key: str
    id: str
    name: str
    description: str
    provider: str
    context_length: int
    capabilities: tuple[str, ...]
    default_temperature: float = 0.7
    default_max_tokens: int = 4000

    @property
    def supports_streaming(self) -> bool:
        return "streaming" in self.capabilities

    @property
    def endpoint(self) -> str:
        return PERPLEXITY if self.provider == PERPLEXITY else OPENROUTER


MODEL_CONFIGS: dict[str, ModelConfig] = {
    config.key: config
    for config in (
        ModelConfig(
            key="claude-3.7-sonnet",
            id="anthropic/claude-3.7-sonnet",
            name="Claude 3.7 Sonnet",
            description="Fast model with 200K context window, excellent for reasoning.",
            provider="anthropic",
            context_length=200000,
            capabilities=("reasoning", "analysis", "streaming", "research"),
        ),
        ModelConfig(
            key="deepseek-r1",
            id="deepseek/deepseek-r1:free",
            name="DeepSeek R1",
            description="Open-source model with strong reasoning capabilities.",
            provider="deepseek",
            context_length=128000,
            capabilities=("reasoning", "math", "coding"),
        ),
        ModelConfig(
            key="gpt-4o",
            id="openai/gpt-4o",
            name="GPT-4o",
            description="OpenAI's multimodal model with strong reasoning and coding abilities.",
            provider="openai",
            context_length=128000,
            capabilities=("reasoning", "coding", "analysis"),
        ),
        ModelConfig(
            key="claude-3-sonnet",
            id="anthropic/claude-3-sonnet",
            name="Claude 3 Sonnet",
            description="Balanced model with strong reasoning capabilities.",
            provider="anthropic",
            context_length=200000,
            capabilities=("reasoning", "analysis", "research"),
        ),
        ModelConfig(
            key="llama-3-70b-instruct",
            id="meta/llama-3-70b-instruct",
            name="Llama-3-70B-Instruct",
            description="Meta's open-source large language model.",
            provider="meta",
            context_length=8192,
            capabilities=("reasoning", "instruction-following"),
        ),
        ModelConfig(
            key="sonar-deep-research",
            id="sonar-deep-research",
            name="Sonar Deep Research",
            description="Specialized research model with 128K context window.",
            provider=PERPLEXITY,
            context_length=128000,
            capabilities=("research", "analysis", "reasoning"),
        ),
        ModelConfig(
            key="sonar-reasoning-pro",
            id="sonar-reasoning-pro",
            name="Sonar Reasoning Pro",
            description="Enhanced reasoning model with 128K context window.",
            provider=PERPLEXITY,
            context_length=128000,
            capabilities=("reasoning", "analysis", "research"),
        ),
        ModelConfig(
            key="sonar-pro",
            id="sonar-pro",
            name="Sonar Pro",
            description="Premium Perplexity model with 200K context window.",
            provider=PERPLEXITY,
            context_length=200000,
            capabilities=("reasoning", "analysis", "research"),
        ),
        ModelConfig(
            key="sonar",
            id="sonar",
            name="Sonar",
            description="Standard Perplexity model with 128K context window.",
            provider=PERPLEXITY,
            context_length=128000,
            capabilities=("reasoning", "analysis"),
        ),
        ModelConfig(
            key="deepseek-distill-70b",
            id="deepseek/deepseek-r1-distill-llama-70b",
            name="DeepSeek R1 Distill 70B",
            description="Fast Llama-3 model distilled with DeepSeek R1.",
            provider="groq",
            context_length=131072,
            capabilities=("reasoning", "research", "fast-inference"),
        ),
        ModelConfig(
            key="gemini-flash",
            id="google/gemini-2.0-flash-001",
            name="Gemini Flash 2.0",
            description="Google model with 1M context window, great for large texts.",
            provider="google",
            context_length=1000000,
            capabilities=("reasoning", "processing", "summarization"),
            default_temperature=0.3,
        ),
    )
}

# OpenRouter provider routing for models served by a specific upstream.
PROVIDER_ROUTING: dict[str, dict[str, Any]] = {
    "groq": {"provider": {"order": ["Groq"], "allow_fallbacks": False}},
}


def build_openai_client(endpoint: str) -> AsyncOpenAI:
    if endpoint == PERPLEXITY:
        return AsyncOpenAI(
            api_key=settings.perplexity_api_key,
            base_url=settings.perplexity_base_url,
        )
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    return AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
        default_headers={
            "HTTP-Referer": settings.app_url,
            "X-Title": settings.app_name,
        },
    )


class ModelRegistry:
    def __init__(
        self,
        configs: dict[str, ModelConfig] | None = None,
        *,
        default_key: str | None = None,
        client_factory: Callable[[str], AsyncOpenAI] = build_openai_client,
    ):
        self._configs = dict(configs if configs is not None else MODEL_CONFIGS)
        self.default_key = default_key or settings.default_model_key
        if self.default_key not in self._configs:
            raise UnknownModelError(f"Default model '{self.default_key}' is not registered")
        self._client_factory = client_factory
        self._clients: dict[str, AsyncOpenAI] = {}
        self._providers: dict[tuple[str, float | None, int | None], BaseModelProvider] = {}

    def available_models(self) -> list[ModelConfig]:
        return list(self._configs.values())

    def get_config(self, key: str) -> ModelConfig:
        try:
            return self._configs[key]
        except KeyError:
            raise UnknownModelError(f"Unknown model key: {key}") from None

    def resolve_key(self, key: str | None) -> str:
        """Map a requested key onto a registered one, falling back to the default."""
        if key and key in self._configs:
            return key
        logger.warning(f"Using default model {self.default_key} instead of {key or 'undefined'}")
        return self.default_key

    def _client_for(self, endpoint: str) -> AsyncOpenAI:
        if endpoint not in self._clients:
            self._clients[endpoint] = self._client_factory(endpoint)
        return self._clients[endpoint]

    def get_provider(
        self,
        key: str | None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> BaseModelProvider:
        config = self.get_config(self.resolve_key(key))
        cache_key = (config.key, temperature, max_tokens)
        provider = self._providers.get(cache_key)
        if provider is None:
            provider = ChatCompletionsProvider(
                config,
                lambda: self._client_for(config.endpoint),
                temperature=temperature,
                max_tokens=max_tokens,
                extra_body=PROVIDER_ROUTING.get(config.provider),
            )
            self._providers[cache_key] = provider
        return provider
