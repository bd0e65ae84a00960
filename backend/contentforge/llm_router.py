from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Settings, settings as default_settings
from .errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "anthropic", "google")

CREATIVITY_TEMPERATURE: Dict[str, float] = {
    "conservative": 0.3,
    "balanced": 0.5,
    "creative": 0.8,
}
# Used by callers that don't expose a creativity setting (outline, section).
FIXED_TEMPERATURE = 0.7


@dataclass
class ProviderCredentials:
    """Per-account provider configuration. Read-only input to the pipeline."""

    api_key: str
    provider: str = "openai"
    model: str = ""
    creativity: str = "balanced"


@dataclass
class LLMChoice:
    text: str
    finish_reason: str | None = None


def temperature_for(creativity: str | None) -> float:
    return CREATIVITY_TEMPERATURE.get((creativity or "balanced").strip().lower(), 0.5)


def max_tokens_for_words(words: int, *, cfg: Settings | None = None) -> int:
    """Token budget for ~`words` words of output, capped to bound cost and latency."""
    cfg = cfg or default_settings
    budget = int(words) * cfg.TOKENS_PER_WORD
    return max(256, min(budget, cfg.MAX_OUTPUT_TOKENS))


def safe_provider_and_model(ai_provider: str | None, ai_model: str | None, *, cfg: Settings | None = None) -> Tuple[str, str]:
    """Normalize provider/model names and apply defaults."""
    cfg = cfg or default_settings
    provider = (ai_provider or "openai").strip().lower()

    # Normalize common provider labels coming from the settings UI
    if provider in {"gpt", "openai", "chatgpt"}:
        provider = "openai"
    elif provider in {"claude", "anthropic"}:
        provider = "anthropic"
    elif provider in {"gemini", "google", "google-ai"}:
        provider = "google"

    model = (ai_model or "").strip() or cfg.default_model(provider)
    return provider, model


def _describe_failure(provider: str, exc: Exception) -> str:
    """Turn an SDK exception into a message a user can act on."""
    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    name = type(exc).__name__
    detail = str(exc) or name
    if status in (401, 403) or "Authentication" in name or "PermissionDenied" in name:
        return f"{provider} rejected the API key: {detail}"
    if status == 429 or "RateLimit" in name or "ResourceExhausted" in name:
        return f"{provider} rate limit reached, try again later: {detail}"
    if "Timeout" in name:
        return f"{provider} request timed out: {detail}"
    if "Connection" in name:
        return f"Could not reach {provider}: {detail}"
    return f"{provider} request failed: {detail}"


class ProviderAdapter:
    """Uniform `complete(prompt, ...) -> text` over one LLM backend.

    Calls are blocking; the orchestrator runs them with `asyncio.to_thread`.
    The adapter never retries.
    """

    provider = "base"

    def __init__(self, api_key: str, *, timeout: float | None = None, client: Any = None) -> None:
        self.api_key = api_key
        self.timeout = timeout or default_settings.LLM_TIMEOUT_SECONDS
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self._make_client()
        return self._client

    def _make_client(self) -> Any:
        raise NotImplementedError

    def _complete(self, prompt: str, *, model: str, max_tokens: int, temperature: float) -> LLMChoice:
        raise NotImplementedError

    def complete(self, prompt: str, *, model: str, max_tokens: int, temperature: float = FIXED_TEMPERATURE) -> str:
        try:
            choice = self._complete(prompt, model=model, max_tokens=max_tokens, temperature=temperature)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(_describe_failure(self.provider, e), provider=self.provider) from e
        text = (choice.text or "").strip()
        if not text:
            raise ProviderError(f"{self.provider} returned an empty response", provider=self.provider)
        if choice.finish_reason in {"length", "max_tokens", "MAX_TOKENS"}:
            logger.info("%s output hit the token limit (%d tokens)", self.provider, max_tokens)
        return text


class OpenAIAdapter(ProviderAdapter):
    """Chat-completion style backend."""

    provider = "openai"

    def _make_client(self) -> Any:
        from openai import OpenAI

        return OpenAI(api_key=self.api_key, timeout=self.timeout)

    def _complete(self, prompt: str, *, model: str, max_tokens: int, temperature: float) -> LLMChoice:
        messages = [{"role": "user", "content": prompt}]
        resp = self._create_with_adaptive_params(
            model=model, messages=messages, temperature=temperature, token_budget=max_tokens
        )
        choice = resp.choices[0]
        return LLMChoice(text=choice.message.content or "", finish_reason=getattr(choice, "finish_reason", None))

    def _create_with_adaptive_params(self, *, model: str, messages: List[Dict[str, str]], temperature: float, token_budget: int):
        """Create a chat completion while adapting to model-specific parameter support."""
        create = self.client.chat.completions.create
        try:
            return create(model=model, messages=messages, temperature=temperature, max_tokens=token_budget)
        except Exception as e:
            msg = str(e)
            # Newer reasoning models only accept max_completion_tokens and the default temperature
            if "Unsupported parameter" in msg and "max_completion_tokens" in msg:
                try:
                    return create(model=model, messages=messages, temperature=temperature, max_completion_tokens=token_budget)
                except Exception as e2:
                    if "Unsupported value" in str(e2) and "temperature" in str(e2):
                        return create(model=model, messages=messages, max_completion_tokens=token_budget)
                    raise
            if "Unsupported value" in msg and "temperature" in msg:
                return create(model=model, messages=messages, max_tokens=token_budget)
            raise


class AnthropicAdapter(ProviderAdapter):
    """Message style backend."""

    provider = "anthropic"

    def _make_client(self) -> Any:
        import anthropic

        return anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)

    def _complete(self, prompt: str, *, model: str, max_tokens: int, temperature: float) -> LLMChoice:
        message = self.client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        parts = [getattr(block, "text", "") for block in (message.content or []) if getattr(block, "type", "text") == "text"]
        return LLMChoice(text="".join(parts), finish_reason=getattr(message, "stop_reason", None))


class GoogleAdapter(ProviderAdapter):
    """Single-shot generate style backend."""

    provider = "google"

    def _make_client(self) -> Any:
        from google import genai

        return genai.Client(api_key=self.api_key)

    def _complete(self, prompt: str, *, model: str, max_tokens: int, temperature: float) -> LLMChoice:
        from google.genai import types

        resp = self.client.models.generate_content(
            model=model,
            contents=prompt,
            config=types.GenerateContentConfig(max_output_tokens=max_tokens, temperature=temperature),
        )
        finish = None
        candidates = getattr(resp, "candidates", None) or []
        if candidates:
            finish = str(getattr(candidates[0], "finish_reason", "") or "") or None
        return LLMChoice(text=resp.text or "", finish_reason=finish)


ADAPTERS: Dict[str, type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GoogleAdapter,
}

AdapterFactory = Callable[[ProviderCredentials], ProviderAdapter]


def build_adapter(credentials: Optional[ProviderCredentials], *, cfg: Settings | None = None) -> ProviderAdapter:
    """Select the adapter for an account once per request.

    Raises ConfigurationError when the account has no usable key or an unknown provider.
    """
    cfg = cfg or default_settings
    if credentials is None or not (credentials.api_key or "").strip():
        raise ConfigurationError("No AI API key configured for this account.")
    provider, _model = safe_provider_and_model(credentials.provider, credentials.model, cfg=cfg)
    adapter_cls = ADAPTERS.get(provider)
    if adapter_cls is None:
        raise ConfigurationError(f"Unsupported AI provider: {credentials.provider}")
    return adapter_cls(credentials.api_key.strip(), timeout=cfg.LLM_TIMEOUT_SECONDS)


def resolve_model(credentials: ProviderCredentials, *, cfg: Settings | None = None) -> str:
    return safe_provider_and_model(credentials.provider, credentials.model, cfg=cfg)[1]
