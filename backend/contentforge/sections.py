from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence

from .config import Settings, settings as default_settings
from .llm_router import FIXED_TEMPERATURE, ProviderAdapter, max_tokens_for_words
from .outline import OutlineSection, selected_sections
from .research import CompetitorSummary
from .storage import count_words

logger = logging.getLogger(__name__)

_STOPWORDS = {
    "the", "and", "for", "with", "from", "into", "your", "that", "this", "what",
    "when", "where", "why", "how", "about", "over", "under", "between", "vs",
}

MAX_COMPETITOR_HEADINGS = 8

ProgressCallback = Callable[[int, int], Awaitable[None]]


@dataclass
class SectionResult:
    content: str
    actual_word_count: int
    generated_at: str

    def as_dict(self) -> dict:
        return {"content": self.content, "wordCount": self.actual_word_count, "generatedAt": self.generated_at}


def first_keyword(title: str) -> str:
    """First meaningful token of a section title, lower-cased."""
    tokens = re.findall(r"[\w'-]+", (title or "").lower())
    for tok in tokens:
        if len(tok) > 3 and tok not in _STOPWORDS:
            return tok
    return tokens[0] if tokens else ""


def relevant_competitor_headings(
    section_title: str, competitors: Sequence[CompetitorSummary], limit: int = MAX_COMPETITOR_HEADINGS
) -> List[str]:
    """Competitor headings that mention the section's first keyword. Lexical, not semantic."""
    kw = first_keyword(section_title)
    if not kw:
        return []
    out: List[str] = []
    seen = set()
    for c in competitors:
        for h in c.headings:
            key = h.strip().lower()
            if kw in key and key not in seen:
                seen.add(key)
                out.append(h.strip())
                if len(out) >= limit:
                    return out
    return out


def build_section_prompt(
    *,
    section: OutlineSection,
    blog_title: str,
    prior_titles: Sequence[str],
    competitor_headings: Sequence[str],
    tone: str,
    seo_keywords: Sequence[str],
    language: str = "English",
) -> str:
    headings_block = "\n".join(f"- {h}" for h in competitor_headings) if competitor_headings else "- none overlapping"
    return (
        f"Write a {section.word_count}-word section for a blog post titled \"{blog_title}\".\n\n"
        "SECTION DETAILS:\n"
        f"Title: {section.title}\n"
        f"Description: {section.description or 'n/a'}\n"
        f"Target word count: {section.word_count}\n"
        f"Tone: {tone or 'professional'}\n"
        f"Language: {language or 'English'}\n"
        f"SEO Keywords: {', '.join(seo_keywords) if seo_keywords else 'N/A'}\n\n"
        "CONTEXT:\n"
        f"Previous Sections: {', '.join(prior_titles) if prior_titles else 'None'}\n\n"
        "COMPETITOR HEADINGS ON THIS SUBTOPIC:\n"
        f"{headings_block}\n\n"
        "REQUIREMENTS:\n"
        "- Start with a level-2 markdown heading for the section title\n"
        "- Include relevant examples and actionable insights\n"
        "- Use markdown formatting (lists, code blocks where appropriate)\n"
        "- Naturally incorporate the SEO keywords\n"
        "- Flow on from the previous sections without repeating them\n"
        "- Add value the competitor headings above do not cover\n\n"
        "Write the complete section content in markdown format:"
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SectionGenerator:
    """Generates outline sections one provider call at a time."""

    def __init__(self, cfg: Settings | None = None) -> None:
        self.cfg = cfg or default_settings

    async def generate_section(
        self,
        adapter: ProviderAdapter,
        *,
        model: str,
        section: OutlineSection,
        blog_title: str,
        prior_sections: Sequence[OutlineSection] = (),
        competitors: Sequence[CompetitorSummary] = (),
        tone: str = "professional",
        seo_keywords: Sequence[str] = (),
        language: str = "English",
    ) -> SectionResult:
        prompt = build_section_prompt(
            section=section,
            blog_title=blog_title,
            prior_titles=[s.title for s in prior_sections],
            competitor_headings=relevant_competitor_headings(section.title, competitors),
            tone=tone,
            seo_keywords=seo_keywords,
            language=language,
        )
        content = await asyncio.to_thread(
            adapter.complete,
            prompt,
            model=model,
            max_tokens=max_tokens_for_words(section.word_count, cfg=self.cfg),
            temperature=FIXED_TEMPERATURE,
        )
        return SectionResult(content=content, actual_word_count=count_words(content), generated_at=_now_iso())

    async def generate_into(
        self,
        adapter: ProviderAdapter,
        sections: Sequence[OutlineSection],
        target: OutlineSection,
        *,
        model: str,
        blog_title: str,
        competitors: Sequence[CompetitorSummary] = (),
        tone: str = "professional",
        seo_keywords: Sequence[str] = (),
        language: str = "English",
    ) -> SectionResult:
        """Generate `target` and write the outcome onto it.

        On failure the section keeps its previous content, gets `error` set, and
        the exception propagates.
        """
        prior = [s for s in selected_sections(sections) if s.order < target.order]
        try:
            result = await self.generate_section(
                adapter,
                model=model,
                section=target,
                blog_title=blog_title,
                prior_sections=prior,
                competitors=competitors,
                tone=tone,
                seo_keywords=seo_keywords,
                language=language,
            )
        except Exception as e:
            target.error = getattr(e, "message", None) or str(e) or type(e).__name__
            raise
        target.content = result.content
        target.actual_word_count = result.actual_word_count
        target.generated_at = result.generated_at
        target.error = None
        return result

    async def generate_all(
        self,
        adapter: ProviderAdapter,
        sections: Sequence[OutlineSection],
        *,
        model: str,
        blog_title: str,
        competitors: Sequence[CompetitorSummary] = (),
        tone: str = "professional",
        seo_keywords: Sequence[str] = (),
        language: str = "English",
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Generate every selected section without content, in `order`.

        A failing section records its own error and the batch moves on.
        Returns the number of sections that failed.
        """
        todo = selected_sections(sections)
        total = len(todo)
        done = sum(1 for s in todo if s.content)
        failures = 0
        if on_progress:
            await on_progress(done, total)

        for sec in todo:
            if sec.content:
                continue
            try:
                await self.generate_into(
                    adapter,
                    sections,
                    sec,
                    model=model,
                    blog_title=blog_title,
                    competitors=competitors,
                    tone=tone,
                    seo_keywords=seo_keywords,
                    language=language,
                )
                done += 1
            except Exception:
                failures += 1
                logger.warning("section %d (%r) failed: %s", sec.order, sec.title, sec.error)
            if on_progress:
                await on_progress(done, total)
        return failures
