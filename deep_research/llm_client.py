"""Chat-completion providers behind one small interface.

Every backend we talk to (OpenRouter, Perplexity) speaks the OpenAI
chat-completions protocol, so a single ``ChatCompletionsProvider`` built on
the ``openai`` SDK covers them; per-model differences live in ``ModelConfig``.
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from openai import APITimeoutError, AsyncOpenAI, OpenAIError

from deep_research.config import settings
from deep_research.exceptions import ProviderError, ProviderTimeoutError
from deep_research.services.logger import log_llm_call

if TYPE_CHECKING:
    from deep_research.services.model_registry import ModelConfig


ChatMessage = dict[str, str]


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ModelResponse:
    content: str
    model: str = ""
    usage: Usage = field(default_factory=Usage)


def _usage_from(raw: Any) -> Usage:
    return Usage(
        input_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        output_tokens=getattr(raw, "completion_tokens", 0) or 0,
    )


class BaseModelProvider(ABC):
    def __init__(
        self,
        config: ModelConfig,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.config = config
        self.temperature = config.default_temperature if temperature is None else temperature
        self.max_tokens = config.default_max_tokens if max_tokens is None else max_tokens

    @property
    def supports_streaming(self) -> bool:
        return self.config.supports_streaming

    @abstractmethod
    async def chat(self, messages: list[ChatMessage], *, caller: str = "unknown") -> ModelResponse:
        ...

    async def stream_chat(
        self, messages: list[ChatMessage], *, caller: str = "unknown"
    ) -> AsyncIterator[str]:
        """Yield response text incrementally. Falls back to one chunk."""
        response = await self.chat(messages, caller=caller)
        if response.content:
            yield response.content


class ChatCompletionsProvider(BaseModelProvider):
    """OpenAI-compatible chat completions through ``AsyncOpenAI``."""

    def __init__(
        self,
        config: ModelConfig,
        client_factory: Callable[[], AsyncOpenAI],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        extra_body: dict[str, Any] | None = None,
        request_timeout: float | None = None,
        stream_timeout: float | None = None,
    ):
        super().__init__(config, temperature=temperature, max_tokens=max_tokens)
        self._client_factory = client_factory
        self._client: AsyncOpenAI | None = None
        self.extra_body = extra_body
        self.request_timeout = request_timeout if request_timeout is not None else settings.llm_request_timeout
        self.stream_timeout = stream_timeout if stream_timeout is not None else settings.llm_stream_timeout

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except OpenAIError as exc:
                raise ProviderError(f"Could not create client for {self.config.key}: {exc}") from exc
        return self._client

    def _request_kwargs(self, messages: list[ChatMessage]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.config.id,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.extra_body:
            kwargs["extra_body"] = self.extra_body
        return kwargs

    async def chat(self, messages: list[ChatMessage], *, caller: str = "unknown") -> ModelResponse:
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.chat.completions.create(
                **self._request_kwargs(messages), timeout=self.request_timeout
            )
        except APITimeoutError as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            log_llm_call(self.config.id, caller, duration_ms=duration_ms, status="timeout", error=str(exc))
            raise ProviderTimeoutError(f"{self.config.name} timed out after {self.request_timeout}s") from exc
        except OpenAIError as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            log_llm_call(self.config.id, caller, duration_ms=duration_ms, status="error", error=str(exc))
            raise ProviderError(f"{self.config.name} request failed: {exc}") from exc

        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ProviderError(f"{self.config.name} returned no choices")
        content = getattr(choices[0].message, "content", None) or ""
        usage = _usage_from(getattr(response, "usage", None))
        log_llm_call(
            self.config.id,
            caller,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return ModelResponse(content=content, model=getattr(response, "model", "") or self.config.id, usage=usage)

    async def stream_chat(
        self, messages: list[ChatMessage], *, caller: str = "unknown"
    ) -> AsyncIterator[str]:
        client = self._get_client()
        start = time.monotonic()
        usage = Usage()
        try:
            stream = await client.chat.completions.create(
                **self._request_kwargs(messages),
                stream=True,
                timeout=self.stream_timeout,
            )
        except APITimeoutError as exc:
            log_llm_call(self.config.id, caller, status="timeout", error=str(exc))
            raise ProviderTimeoutError(f"{self.config.name} timed out after {self.stream_timeout}s") from exc
        except OpenAIError as exc:
            log_llm_call(self.config.id, caller, status="error", error=str(exc))
            raise ProviderError(f"{self.config.name} stream failed: {exc}") from exc

        try:
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = _usage_from(chunk.usage)
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                text = getattr(delta, "content", None) if delta else None
                if text:
                    yield text
        except APITimeoutError as exc:
            log_llm_call(self.config.id, caller, status="timeout", error=str(exc))
            raise ProviderTimeoutError(f"{self.config.name} stream timed out") from exc
        except OpenAIError as exc:
            log_llm_call(self.config.id, caller, status="error", error=str(exc))
            raise ProviderError(f"{self.config.name} stream failed: {exc}") from exc
        finally:
            await stream.close()

        log_llm_call(
            self.config.id,
            caller,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
