import threading
from typing import Any, Callable, List, Optional

import pytest
import pytest_asyncio

from contentforge.config import Settings
from contentforge.jobs import JobQueue
from contentforge.llm_router import LLMChoice, ProviderAdapter, ProviderCredentials
from contentforge.storage import CredentialStore, RecordStore

ACCOUNT = "acct-1"

ARTICLE = (
    "## Why caching matters\n\n"
    + "Caching keeps hot data close to the code that needs it. " * 20
    + "\n\n## Cache invalidation\n\n- Use TTLs\n- Version your keys\n"
)


class FakeAdapter(ProviderAdapter):
    """Scripted adapter: each call pops the next response.

    A response may be a string, an exception instance (raised), or a callable
    taking the prompt. When the script runs out, `default` is returned.
    """

    provider = "fake"

    def __init__(self, responses: Optional[List[Any]] = None, *, default: str = ARTICLE, gate: threading.Event | None = None):
        super().__init__("sk-test", timeout=5, client=object())
        self.responses = list(responses or [])
        self.default = default
        self.gate = gate
        self.prompts: List[str] = []
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def _complete(self, prompt: str, *, model: str, max_tokens: int, temperature: float) -> LLMChoice:
        if self.gate is not None:
            self.gate.wait(timeout=5)
        with self._lock:
            self.prompts.append(prompt)
            self.calls.append({"model": model, "max_tokens": max_tokens, "temperature": temperature})
            item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(prompt)
        return LLMChoice(text=item, finish_reason="stop")


@pytest.fixture
def cfg(tmp_path) -> Settings:
    return Settings(
        DATA_DIR=str(tmp_path),
        DB_PATH=str(tmp_path / "test.db"),
        EXPORTS_DIR=str(tmp_path / "exports"),
        SERPAPI_KEY=None,
        RESEARCH_FETCH_DELAY_SECONDS=0,
        GENERATION_WORKERS=2,
        GENERATION_MAX_SECONDS=10,
        IMAGE_PROVIDER="stock",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def record_store(cfg) -> RecordStore:
    store = RecordStore(cfg.DB_PATH)
    store.init_db()
    return store


@pytest.fixture
def credential_store(cfg) -> CredentialStore:
    store = CredentialStore(cfg.DB_PATH)
    store.init_db()
    return store


@pytest.fixture
def account(credential_store) -> str:
    credential_store.save_credentials(ACCOUNT, api_key="sk-test", provider="openai", model="gpt-4o-mini", creativity="balanced")
    return ACCOUNT


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def adapter_factory(fake_adapter) -> Callable[[ProviderCredentials], ProviderAdapter]:
    return lambda creds: fake_adapter


@pytest_asyncio.fixture
async def queue():
    q = JobQueue(workers=2)
    yield q
    await q.stop()
