"""Error taxonomy shared by the pipeline and the HTTP layer."""

from __future__ import annotations


class ContentForgeError(Exception):
    """Base error. `code` is the machine-readable tag surfaced to API clients."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(ContentForgeError):
    """Provider credentials are missing or unusable."""

    code = "configuration_required"


class ProviderError(ContentForgeError):
    """The LLM backend rejected or failed the call (auth, rate limit, network)."""

    code = "provider_error"

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ValidationError(ContentForgeError):
    code = "validation_error"


class NotFoundError(ContentForgeError):
    code = "not_found"


class GenerationInProgress(ContentForgeError):
    """Work for the same record or session is already queued or running."""

    code = "generation_in_progress"


class ResearchUnavailable(ContentForgeError):
    """The search backend is unconfigured or unreachable. Absorbed by the research module."""

    code = "research_unavailable"


class ResearchDegraded(ContentForgeError):
    """A single competitor page could not be fetched or parsed."""

    code = "research_degraded"


CONFIGURE_API_KEY_MESSAGE = "Please configure your AI API key in Settings before generating content."
