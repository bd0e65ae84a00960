import logging
import os
from typing import Any

from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Central configuration for the backend services.

    Values come from the environment; keyword overrides win (tests and embedding apps).
    """

    # General
    ENV: str = os.getenv("ENV", "dev")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    BASE_DIR: str = os.path.dirname(os.path.dirname(__file__))
    DATA_DIR: str = os.getenv("DATA_DIR", os.path.join(BASE_DIR, "data"))
    DB_PATH: str = os.getenv("DB_PATH", os.path.join(DATA_DIR, "contentforge.db"))
    OUTPUT_DIR: str = os.path.join(BASE_DIR, "outputs")
    EXPORTS_DIR: str = os.getenv("EXPORTS_DIR", os.path.join(OUTPUT_DIR, "exports"))
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # LLM providers. API keys are per account (credential store), not global.
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "120"))
    # Cap on a single background completion call (seconds).
    GENERATION_MAX_SECONDS: float = float(os.getenv("GENERATION_MAX_SECONDS", "900"))
    MAX_OUTPUT_TOKENS: int = int(os.getenv("MAX_OUTPUT_TOKENS", "4000"))
    TOKENS_PER_WORD: int = int(os.getenv("TOKENS_PER_WORD", "2"))
    DEFAULT_OPENAI_MODEL: str = os.getenv("DEFAULT_OPENAI_MODEL", "gpt-4o-mini")
    DEFAULT_ANTHROPIC_MODEL: str = os.getenv("DEFAULT_ANTHROPIC_MODEL", "claude-3-5-haiku-latest")
    DEFAULT_GOOGLE_MODEL: str = os.getenv("DEFAULT_GOOGLE_MODEL", "gemini-1.5-flash")

    # Uploaded reference documents are truncated to this many characters.
    REFERENCE_CONTEXT_CHARS: int = int(os.getenv("REFERENCE_CONTEXT_CHARS", "10000"))
    MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

    # Background workers draining the generation queue
    GENERATION_WORKERS: int = int(os.getenv("GENERATION_WORKERS", "4"))

    # Competitor research (SerpAPI). Without a key, research uses offline fallback data.
    SERPAPI_KEY: str | None = os.getenv("SERPAPI_KEY")
    SERPAPI_URL: str = os.getenv("SERPAPI_URL", "https://serpapi.com/search")
    SEARCH_TIMEOUT_SECONDS: float = float(os.getenv("SEARCH_TIMEOUT_SECONDS", "30"))
    PAGE_FETCH_TIMEOUT_SECONDS: float = float(os.getenv("PAGE_FETCH_TIMEOUT_SECONDS", "15"))
    RESEARCH_MAX_RESULTS: int = int(os.getenv("RESEARCH_MAX_RESULTS", "10"))
    RESEARCH_FETCH_DELAY_SECONDS: float = float(os.getenv("RESEARCH_FETCH_DELAY_SECONDS", "1.0"))
    RESEARCH_USER_AGENT: str = os.getenv(
        "RESEARCH_USER_AGENT",
        "Mozilla/5.0 (compatible; ContentAnalyzer/1.0)",
    )

    # Images attached after generation: stock | pexels | none
    IMAGE_PROVIDER: str = os.getenv("IMAGE_PROVIDER", "stock")
    PEXELS_API_KEY: str | None = os.getenv("PEXELS_API_KEY")

    def __init__(self, **overrides: Any) -> None:
        for k, v in overrides.items():
            if not hasattr(type(self), k):
                raise AttributeError(f"unknown setting: {k}")
            setattr(self, k, v)

    def default_model(self, provider: str) -> str:
        return {
            "openai": self.DEFAULT_OPENAI_MODEL,
            "anthropic": self.DEFAULT_ANTHROPIC_MODEL,
            "google": self.DEFAULT_GOOGLE_MODEL,
        }.get(provider, self.DEFAULT_OPENAI_MODEL)


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    root.setLevel((level or settings.LOG_LEVEL).upper())
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)


settings = Settings()
