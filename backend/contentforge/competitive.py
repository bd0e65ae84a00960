"""Interactive competitive flow: research -> editable outline -> per-section generation.

Sessions live in process memory. Per-section state (content, error) is the
source of truth while a batch runs, so a poll mid-batch sees exactly which
sections are done.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .config import Settings, settings as default_settings
from .errors import (
    CONFIGURE_API_KEY_MESSAGE,
    ConfigurationError,
    ContentForgeError,
    GenerationInProgress,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from .exporter import assemble_markdown, export_article
from .jobs import JobQueue
from .llm_router import AdapterFactory, ProviderAdapter, build_adapter, safe_provider_and_model
from .outline import (
    OutlineGenerator,
    OutlineSection,
    move_section,
    renumber,
    selected_sections,
    selected_word_total,
    validate_section_words,
    words_for_bucket,
)
from .research import CompetitorResearch, CompetitorSummary
from .sections import SectionGenerator
from .storage import CredentialStore

logger = logging.getLogger(__name__)


@dataclass
class CompetitiveSession:
    id: str
    owner: str
    title: str
    tone: str = "professional"
    language: str = "English"
    target_audience: str = ""
    seo_keywords: List[str] = field(default_factory=list)
    words_per_section: int = 800
    competitors: List[CompetitorSummary] = field(default_factory=list)
    sections: List[OutlineSection] = field(default_factory=list)
    strategy: Dict[str, Any] = field(default_factory=dict)
    batch_status: str = "idle"
    progress: float = 0.0
    batch_error: Optional[str] = None
    # orders of sections being generated one at a time
    generating: Set[int] = field(default_factory=set)
    exports: List[Dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def section_at(self, order: int) -> OutlineSection:
        for s in self.sections:
            if s.order == order:
                return s
        raise NotFoundError(f"No section at position {order}")

    def touch(self) -> None:
        self.updated_at = time.time()

    def as_dict(self) -> Dict[str, Any]:
        chosen = selected_sections(self.sections)
        return {
            "id": self.id,
            "title": self.title,
            "tone": self.tone,
            "language": self.language,
            "targetAudience": self.target_audience,
            "seoKeywords": list(self.seo_keywords),
            "wordsPerSection": self.words_per_section,
            "competitors": [c.as_dict() for c in self.competitors],
            "outline": [s.as_dict() for s in sorted(self.sections, key=lambda s: s.order)],
            **self.strategy,
            "totalWords": selected_word_total(self.sections),
            "batch": {
                "status": self.batch_status,
                "progress": self.progress,
                "completed": sum(1 for s in chosen if s.content),
                "total": len(chosen),
                "error": self.batch_error,
                "generating": sorted(self.generating),
            },
            "exports": list(self.exports),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class SessionStore:
    """In-memory session registry (single process)."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CompetitiveSession] = {}

    def add(self, session: CompetitiveSession) -> CompetitiveSession:
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str, owner: str) -> CompetitiveSession:
        s = self._sessions.get(session_id)
        if s is None or s.owner != owner:
            raise NotFoundError("Session not found")
        return s

    def list_for(self, owner: str) -> List[CompetitiveSession]:
        return sorted((s for s in self._sessions.values() if s.owner == owner), key=lambda s: s.created_at, reverse=True)


def _error_message(e: Exception) -> str:
    return getattr(e, "message", None) or str(e) or type(e).__name__


class CompetitiveWriter:
    def __init__(
        self,
        credentials: CredentialStore,
        queue: JobQueue,
        *,
        sessions: SessionStore | None = None,
        research: CompetitorResearch | None = None,
        adapter_factory: AdapterFactory | None = None,
        outlines: OutlineGenerator | None = None,
        sections: SectionGenerator | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.credentials = credentials
        self.queue = queue
        self.sessions = sessions or SessionStore()
        self.research = research or CompetitorResearch(self.cfg)
        self.adapter_factory = adapter_factory or functools.partial(build_adapter, cfg=self.cfg)
        self.outlines = outlines or OutlineGenerator()
        self.sections = sections or SectionGenerator(self.cfg)

    def _adapter_for(self, owner: str) -> tuple[ProviderAdapter, str]:
        creds = self.credentials.get_credentials(owner)
        if creds is None:
            raise ConfigurationError(CONFIGURE_API_KEY_MESSAGE)
        adapter = self.adapter_factory(creds)
        _provider, model = safe_provider_and_model(creds.provider, creds.model, cfg=self.cfg)
        return adapter, model

    # -----------------
    # Stateless operations
    # -----------------

    async def outline_for(
        self,
        owner: str,
        *,
        title: str,
        competitors: Sequence[Mapping[str, Any]] = (),
        seo_keywords: Sequence[str] = (),
        tone: str = "professional",
        target_audience: str = "",
        language: str = "English",
        words_per_section: str | None = None,
    ) -> Dict[str, Any]:
        if not (title or "").strip():
            raise ValidationError("title is required")
        words = words_for_bucket(words_per_section)
        adapter, model = self._adapter_for(owner)
        result = await self.outlines.generate_outline(
            adapter,
            model=model,
            topic=title.strip(),
            keywords=seo_keywords,
            tone=tone,
            language=language,
            competitors=[CompetitorSummary.from_dict(c) for c in competitors],
            target_audience=target_audience,
            words_per_section=words,
        )
        result["outline"] = [s.as_dict() for s in result["outline"]]
        return result

    async def section_for(
        self,
        owner: str,
        *,
        title: str,
        description: str = "",
        word_count: int = 800,
        tone: str = "professional",
        seo_keywords: Sequence[str] = (),
        blog_title: str = "",
        previous_titles: Sequence[str] = (),
        competitors: Sequence[Mapping[str, Any]] = (),
        language: str = "English",
    ) -> Dict[str, Any]:
        if not (title or "").strip():
            raise ValidationError("title is required")
        section = OutlineSection(title=title.strip(), description=description, word_count=validate_section_words(word_count))
        adapter, model = self._adapter_for(owner)
        result = await self.sections.generate_section(
            adapter,
            model=model,
            section=section,
            blog_title=blog_title or title,
            prior_sections=[OutlineSection(title=t) for t in previous_titles if t],
            competitors=[CompetitorSummary.from_dict(c) for c in competitors],
            tone=tone,
            seo_keywords=seo_keywords,
            language=language,
        )
        return result.as_dict()

    # -----------------
    # Sessions
    # -----------------

    async def create_session(
        self,
        owner: str,
        *,
        title: str,
        tone: str = "professional",
        target_audience: str = "",
        seo_keywords: Sequence[str] = (),
        language: str = "English",
        words_per_section: str | None = None,
        competitors: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> CompetitiveSession:
        title = (title or "").strip()
        if not title:
            raise ValidationError("title is required")
        words = words_for_bucket(words_per_section)
        adapter, model = self._adapter_for(owner)

        if competitors:
            found = [CompetitorSummary.from_dict(c) for c in competitors]
        else:
            found = await self.research.research(title)

        result = await self.outlines.generate_outline(
            adapter,
            model=model,
            topic=title,
            keywords=seo_keywords,
            tone=tone,
            language=language,
            competitors=found,
            target_audience=target_audience,
            words_per_section=words,
        )
        session = CompetitiveSession(
            id=uuid.uuid4().hex,
            owner=owner,
            title=title,
            tone=tone,
            language=language,
            target_audience=target_audience,
            seo_keywords=list(seo_keywords),
            words_per_section=words,
            competitors=found,
            sections=result["outline"],
            strategy={k: result[k] for k in ("seoStrategy", "targetKeywords", "contentGaps", "uniqueValue") if k in result},
        )
        logger.info("session %s created for %r (%d sections, outline via %s)", session.id, title, len(session.sections), result["source"])
        return self.sessions.add(session)

    def get_session(self, owner: str, session_id: str) -> CompetitiveSession:
        return self.sessions.get(session_id, owner)

    def _require_idle(self, session: CompetitiveSession, order: Optional[int] = None) -> None:
        """Reject work that would race a running batch or an in-flight section.

        With `order`, only that section has to be idle. Without it, the
        whole session does.
        """
        if self.queue.is_active(self._key(session)):
            raise GenerationInProgress("Sections are being generated for this session")
        if order is None and session.generating:
            raise GenerationInProgress("A section is being generated for this session")
        if order is not None and order in session.generating:
            raise GenerationInProgress(f"Section {order} is already being generated")

    def edit_section(
        self,
        owner: str,
        session_id: str,
        order: int,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        word_count: Optional[int] = None,
        selected: Optional[bool] = None,
        content: Optional[str] = None,
    ) -> CompetitiveSession:
        session = self.get_session(owner, session_id)
        self._require_idle(session, order)
        sec = session.section_at(order)
        if title is not None:
            if not title.strip():
                raise ValidationError("title cannot be empty")
            sec.title = title.strip()
        if description is not None:
            sec.description = description
        if word_count is not None:
            sec.word_count = validate_section_words(word_count)
        if selected is not None:
            sec.selected = bool(selected)
        if content is not None:
            sec.content = content if content.strip() else None
            sec.actual_word_count = len(content.split())
            sec.error = None
        session.touch()
        return session

    def move_section(self, owner: str, session_id: str, order: int, direction: str) -> CompetitiveSession:
        session = self.get_session(owner, session_id)
        self._require_idle(session)
        move_section(session.sections, order, direction)
        session.touch()
        return session

    def add_section(self, owner: str, session_id: str, *, title: str, description: str = "") -> CompetitiveSession:
        session = self.get_session(owner, session_id)
        self._require_idle(session)
        if not (title or "").strip():
            raise ValidationError("title is required")
        renumber(session.sections)
        session.sections.append(
            OutlineSection(title=title.strip(), description=description, word_count=session.words_per_section, order=len(session.sections))
        )
        session.touch()
        return session

    async def generate_section(self, owner: str, session_id: str, order: int) -> OutlineSection:
        """Generate one section now. The failure is kept on the section and re-raised."""
        session = self.get_session(owner, session_id)
        self._require_idle(session, order)
        sec = session.section_at(order)
        adapter, model = self._adapter_for(owner)
        session.generating.add(order)
        try:
            await self.sections.generate_into(
                adapter,
                session.sections,
                sec,
                model=model,
                blog_title=session.title,
                competitors=session.competitors,
                tone=session.tone,
                seo_keywords=session.seo_keywords,
                language=session.language,
            )
        except ContentForgeError:
            raise
        except Exception as e:
            raise ProviderError(_error_message(e)) from e
        finally:
            session.generating.discard(order)
            session.touch()
        return sec

    @staticmethod
    def _key(session: CompetitiveSession) -> str:
        return f"session:{session.id}"

    def start_generate_all(self, owner: str, session_id: str) -> CompetitiveSession:
        session = self.get_session(owner, session_id)
        adapter, model = self._adapter_for(owner)
        if not selected_sections(session.sections):
            raise ValidationError("Select at least one section to generate")
        if session.generating:
            raise GenerationInProgress("A section is being generated for this session")

        work = functools.partial(self._run_batch, session, adapter, model)
        if not self.queue.submit(self._key(session), work):
            raise GenerationInProgress("Sections are being generated for this session")
        session.batch_status = "running"
        session.batch_error = None
        session.touch()
        return session

    async def _run_batch(self, session: CompetitiveSession, adapter: ProviderAdapter, model: str) -> None:
        async def on_progress(done: int, total: int) -> None:
            session.progress = round(done / total, 4) if total else 1.0
            session.touch()

        try:
            failures = await self.sections.generate_all(
                adapter,
                session.sections,
                model=model,
                blog_title=session.title,
                competitors=session.competitors,
                tone=session.tone,
                seo_keywords=session.seo_keywords,
                language=session.language,
                on_progress=on_progress,
            )
        except asyncio.CancelledError:
            session.batch_status = "failed"
            session.batch_error = "Batch cancelled"
            raise
        except Exception as e:
            session.batch_status = "failed"
            session.batch_error = _error_message(e)
            logger.exception("batch for session %s failed", session.id)
            return

        session.batch_status = "completed"
        session.batch_error = f"{failures} section(s) failed" if failures else None
        session.touch()
        logger.info("batch for session %s finished (%d failed)", session.id, failures)

    def export(self, owner: str, session_id: str, formats: Sequence[str] = ("md",)) -> Dict[str, Any]:
        session = self.get_session(owner, session_id)
        if not any(s.content for s in selected_sections(session.sections)):
            raise ValidationError("Generate at least one section before exporting")
        result = export_article(
            exports_dir=self.cfg.EXPORTS_DIR,
            title=session.title,
            markdown=assemble_markdown(session.title, session.sections),
            formats=formats,
        )
        session.exports.append(result)
        session.touch()
        return result
