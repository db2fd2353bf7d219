"""Exceptions raised across the research service."""


class DeepResearchError(Exception):
    """Base exception for research service errors."""

    pass


class ProviderError(DeepResearchError):
    """Raised when a chat-completion provider call fails."""

    pass


class ProviderTimeoutError(ProviderError):
    """Raised when a chat-completion provider call times out."""

    pass


class UnknownModelError(DeepResearchError):
    """Raised when a model key is not present in the registry."""

    pass


class ResearchAborted(DeepResearchError):
    """Raised inside a run when ``abort()`` cancelled the work it was awaiting."""

    pass


class PromptCatalogError(DeepResearchError, ValueError):
    """Raised when the prompt catalogue is missing a prompt or a placeholder."""

    pass
