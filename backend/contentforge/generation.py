from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .config import Settings, settings as default_settings
from .documents import UploadedFile, build_reference_context
from .errors import (
    CONFIGURE_API_KEY_MESSAGE,
    ConfigurationError,
    GenerationInProgress,
    ValidationError,
)
from .jobs import JobQueue
from .llm_router import (
    AdapterFactory,
    ProviderAdapter,
    build_adapter,
    max_tokens_for_words,
    safe_provider_and_model,
    temperature_for,
)
from .postprocess import PostProcessor
from .storage import CredentialStore, RecordStore

logger = logging.getLogger(__name__)

MIN_TARGET_LENGTH = 100
MAX_TARGET_LENGTH = 10000


def parse_keywords(value: Any) -> List[str]:
    """Accept "a, b, c" or ["a", "b"]; drop blanks and duplicates, keep order."""
    if value is None:
        return []
    items = value.split(",") if isinstance(value, str) else list(value)
    out: List[str] = []
    for k in items:
        k = str(k).strip()
        if k and k not in out:
            out.append(k)
    return out


def parse_target_length(value: Any) -> int:
    try:
        n = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError("targetLength must be a whole number of words") from None
    if not MIN_TARGET_LENGTH <= n <= MAX_TARGET_LENGTH:
        raise ValidationError(f"targetLength must be between {MIN_TARGET_LENGTH} and {MAX_TARGET_LENGTH}")
    return n


@dataclass
class GenerationRequest:
    topic: str
    keywords: List[str] = field(default_factory=list)
    tone: str = "professional"
    language: str = "English"
    target_length: int = 1500
    uploaded_files: List[UploadedFile] = field(default_factory=list)
    include_images: bool = False
    seo_optimize: bool = True
    outline: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "GenerationRequest":
        """Build and validate a request from API / stored camelCase input."""
        topic = str(d.get("topic") or "").strip()
        if not topic:
            raise ValidationError("topic is required")
        return cls(
            topic=topic,
            keywords=parse_keywords(d.get("keywords")),
            tone=str(d.get("tone") or "professional"),
            language=str(d.get("language") or "English"),
            target_length=parse_target_length(d.get("targetLength", 1500)),
            uploaded_files=[UploadedFile.from_dict(f) for f in (d.get("uploadedFiles") or []) if isinstance(f, Mapping)],
            include_images=bool(d.get("includeImages", False)),
            seo_optimize=bool(d.get("seoOptimize", True)),
            outline=(str(d.get("outline")).strip() or None) if d.get("outline") else None,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "keywords": list(self.keywords),
            "tone": self.tone,
            "language": self.language,
            "targetLength": self.target_length,
            "uploadedFiles": [f.as_dict() for f in self.uploaded_files],
            "includeImages": self.include_images,
            "seoOptimize": self.seo_optimize,
            "outline": self.outline,
        }


def build_article_prompt(req: GenerationRequest, *, reference_context: str = "") -> str:
    outline_block = f"Follow this outline:\n{req.outline}\n\n" if req.outline else ""
    reference_block = (
        f"Reference material (use it as grounding, do not copy it verbatim):\n{reference_context}\n\n"
        if reference_context
        else ""
    )
    return (
        f"Write a comprehensive {req.target_length}-word blog post about \"{req.topic}\".\n\n"
        f"{outline_block}"
        "Requirements:\n"
        f"- Tone: {req.tone}\n"
        f"- Language: {req.language}\n"
        f"- Target keywords: {', '.join(req.keywords) if req.keywords else 'N/A'}\n"
        "- Use markdown formatting with a clear H2/H3 heading structure\n"
        "- Include lists, and tables where they help comparison\n"
        "- Include code examples in fenced code blocks where relevant\n"
        "- Make it engaging and informative\n\n"
        f"{reference_block}"
        "Write the complete blog post in markdown format."
    )


def _elapsed_since(iso_ts: str | None) -> float:
    if not iso_ts:
        return 0.0
    try:
        started = datetime.fromisoformat(iso_ts)
    except ValueError:
        return 0.0
    return max(0.0, (datetime.now(timezone.utc) - started).total_seconds())


class ContentGenerator:
    """Accept-and-poll orchestrator for full-article generation.

    `start_generation` validates and creates the record synchronously, then
    hands the slow part to the job queue keyed by record id.
    """

    def __init__(
        self,
        store: RecordStore,
        credentials: CredentialStore,
        queue: JobQueue,
        *,
        adapter_factory: AdapterFactory | None = None,
        post_processor: PostProcessor | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.store = store
        self.credentials = credentials
        self.queue = queue
        self.adapter_factory = adapter_factory or functools.partial(build_adapter, cfg=self.cfg)
        self.post_processor = post_processor or PostProcessor(store)

    def _adapter_for(self, owner: str):
        creds = self.credentials.get_credentials(owner)
        if creds is None:
            raise ConfigurationError(CONFIGURE_API_KEY_MESSAGE)
        adapter = self.adapter_factory(creds)
        provider, model = safe_provider_and_model(creds.provider, creds.model, cfg=self.cfg)
        return adapter, provider, model, creds.creativity

    async def start_generation(self, owner: str, req: GenerationRequest) -> str:
        adapter, provider, model, creativity = self._adapter_for(owner)
        record_id = self.store.create_record(
            owner=owner,
            title=req.topic,
            status="generating",
            fields={
                "language": req.language,
                "tone": req.tone,
                "target_length": req.target_length,
                "keywords_json": req.keywords,
                "outline": req.outline,
                "provider": provider,
                "model": model,
                "progress": "Queued",
                "request_json": {**req.as_dict(), "uploadedFiles": []},
                "uploaded_files_json": [f.as_dict() for f in req.uploaded_files],
            },
        )
        self._submit(record_id, owner, req, adapter, model, creativity)
        logger.info("generation %s accepted (provider=%s model=%s)", record_id, provider, model)
        return record_id

    async def retry_generation(self, owner: str, record_id: str) -> str:
        """Re-queue a failed generation with its original parameters."""
        row = self.store.require_row(record_id, owner)
        if row["status"] == "generating" or self.queue.is_active(record_id):
            raise GenerationInProgress("Content is already being generated")
        if row["status"] != "draft" or not row.get("error"):
            raise ValidationError("Only failed generations can be retried")

        adapter, provider, model, creativity = self._adapter_for(owner)
        stored = dict(row.get("request_json") or {"topic": row["title"]})
        stored["uploadedFiles"] = row.get("uploaded_files_json") or []
        req = GenerationRequest.from_dict(stored)
        self.store.update_record(
            record_id,
            {"status": "generating", "error": None, "progress": "Queued", "provider": provider, "model": model},
        )
        self._submit(record_id, owner, req, adapter, model, creativity)
        logger.info("generation %s re-queued", record_id)
        return record_id

    def _submit(self, record_id: str, owner: str, req: GenerationRequest, adapter: ProviderAdapter, model: str, creativity: str) -> None:
        work = functools.partial(self._run, record_id, owner, req, adapter, model, creativity)
        if not self.queue.submit(record_id, work):
            raise GenerationInProgress("Content is already being generated")

    def _progress(self, record_id: str, label: str) -> None:
        self.store.update_record(record_id, {"progress": label})

    async def _run(
        self,
        record_id: str,
        owner: str,
        req: GenerationRequest,
        adapter: ProviderAdapter,
        model: str,
        creativity: str,
    ) -> None:
        started = time.monotonic()
        try:
            self._progress(record_id, "Preparing prompt")
            reference = build_reference_context(req.uploaded_files, limit=self.cfg.REFERENCE_CONTEXT_CHARS)
            prompt = build_article_prompt(req, reference_context=reference)

            self._progress(record_id, "Writing content")
            content = await asyncio.wait_for(
                asyncio.to_thread(
                    adapter.complete,
                    prompt,
                    model=model,
                    max_tokens=max_tokens_for_words(req.target_length, cfg=self.cfg),
                    temperature=temperature_for(creativity),
                ),
                timeout=self.cfg.GENERATION_MAX_SECONDS,
            )
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                message = f"Generation timed out after {int(self.cfg.GENERATION_MAX_SECONDS)}s"
            else:
                message = getattr(e, "message", None) or str(e) or type(e).__name__
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self.store.update_record(
                record_id,
                {"status": "draft", "error": message, "progress": "Failed", "generation_time_ms": elapsed_ms},
            )
            logger.warning("generation %s failed after %d ms: %s", record_id, elapsed_ms, message)
            return

        elapsed_ms = int((time.monotonic() - started) * 1000)
        post_process = req.seo_optimize or req.include_images
        self.store.update_record(
            record_id,
            {
                "content": content,
                "status": "completed",
                "error": None,
                "progress": "Post-processing" if post_process else "Completed",
                "generation_time_ms": elapsed_ms,
            },
        )
        row = self.store.require_row(record_id)
        self.credentials.increment_usage(owner, posts=1, words=row.get("word_count") or 0)
        logger.info("generation %s completed in %d ms (%d words)", record_id, elapsed_ms, row.get("word_count") or 0)

        if post_process:
            await self.post_processor.run(record_id, seo=req.seo_optimize, images=req.include_images)
            self._progress(record_id, "Completed")

    def get_status(self, owner: str, record_id: str) -> Dict[str, Any]:
        row = self.store.require_row(record_id, owner)
        generating = row["status"] == "generating"
        gen_ms = row.get("generation_time_ms")
        return {
            "id": row["record_id"],
            "status": row["status"],
            "progress": row.get("progress") or ("Generating" if generating else "Completed"),
            "title": row["title"],
            "wordCount": row.get("word_count") or 0,
            "elapsedTime": round(_elapsed_since(row.get("created_at")) if generating else (gen_ms or 0) / 1000, 1),
            "generationTime": gen_ms,
            "error": row.get("error"),
            "views": row.get("views") or 0,
        }
