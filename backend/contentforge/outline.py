from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import ValidationError
from .llm_router import FIXED_TEMPERATURE, ProviderAdapter
from .research import CompetitorSummary

logger = logging.getLogger(__name__)

WORDS_PER_SECTION: Dict[str, int] = {
    "very-short": 300,
    "short": 500,
    "medium": 800,
    "long": 1200,
    "very-long": 1500,
}
DEFAULT_BUCKET = "medium"

SECTION_MIN_WORDS = 100
SECTION_MAX_WORDS = 2000

OUTLINE_MAX_TOKENS = 2000

DEFAULT_SEO_STRATEGY = "Focus on comprehensive coverage and user intent"


def _int_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def words_for_bucket(bucket: str | None) -> int:
    key = (bucket or DEFAULT_BUCKET).strip().lower().replace("_", "-").replace(" ", "-")
    if key not in WORDS_PER_SECTION:
        raise ValidationError(f"Unknown words-per-section setting: {bucket}")
    return WORDS_PER_SECTION[key]


def validate_section_words(value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError("wordCount must be a number") from None
    if not SECTION_MIN_WORDS <= n <= SECTION_MAX_WORDS:
        raise ValidationError(f"wordCount must be between {SECTION_MIN_WORDS} and {SECTION_MAX_WORDS}")
    return n


@dataclass
class OutlineSection:
    title: str
    description: str = ""
    word_count: int = WORDS_PER_SECTION[DEFAULT_BUCKET]
    order: int = 0
    selected: bool = True
    content: Optional[str] = None
    competitive_advantage: str = ""
    seo_value: str = ""
    error: Optional[str] = None
    actual_word_count: int = 0
    generated_at: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "wordCount": self.word_count,
            "order": self.order,
            "selected": self.selected,
            "content": self.content,
            "competitiveAdvantage": self.competitive_advantage,
            "seoValue": self.seo_value,
            "error": self.error,
            "actualWordCount": self.actual_word_count,
            "generatedAt": self.generated_at,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, order: int = 0, default_words: int | None = None) -> "OutlineSection":
        word_count = _int_or(d.get("wordCount", d.get("word_count")), int(default_words or WORDS_PER_SECTION[DEFAULT_BUCKET]))
        return cls(
            title=str(d.get("title") or "").strip(),
            description=str(d.get("description") or "").strip(),
            word_count=word_count,
            order=_int_or(d.get("order"), order),
            selected=bool(d.get("selected", True)),
            content=d.get("content") or None,
            competitive_advantage=str(d.get("competitiveAdvantage") or d.get("competitive_advantage") or ""),
            seo_value=str(d.get("seoValue") or d.get("seo_value") or ""),
            error=d.get("error") or None,
            actual_word_count=_int_or(d.get("actualWordCount", d.get("actual_word_count")), 0),
            generated_at=d.get("generatedAt") or d.get("generated_at") or None,
        )


@dataclass
class OutlineParse:
    """Tagged parser result. `source` is one of json | fenced | heuristic | default."""

    sections: List[OutlineSection]
    source: str
    extras: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Parser stages. Each is pure and returns None (or []) when it cannot help.
# ---------------------------------------------------------------------------


def parse_strict_json(raw: str) -> Optional[Dict[str, Any]]:
    """Decode `raw` as an outline object: {"outline": [...]} or a bare list of sections."""
    try:
        data = json.loads((raw or "").strip())
    except (ValueError, TypeError):
        return None
    if isinstance(data, list):
        data = {"outline": data}
    if not isinstance(data, dict):
        return None
    items = data.get("outline") or data.get("sections")
    if not isinstance(items, list):
        return None
    if not any(isinstance(x, dict) and str(x.get("title") or "").strip() for x in items):
        return None
    data["outline"] = items
    return data


_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def extract_fenced_json(raw: str) -> Optional[Dict[str, Any]]:
    """Pull JSON out of a fenced code block, or the outermost {...} span."""
    text = raw or ""
    for m in _FENCE_RE.finditer(text):
        data = parse_strict_json(m.group(1))
        if data is not None:
            return data
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return parse_strict_json(text[start : end + 1])
    return None


_NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s+(.+)$")
_BULLET_RE = re.compile(r"^\s*[-*•]\s+(.+)$")
_HEADING_RE = re.compile(r"^\s*#{1,6}\s+(.+)$")


def _clean_title(s: str) -> str:
    s = re.sub(r"[*_`]+", "", s).strip()
    s = re.sub(r"^(section|part)\s+\d+\s*[:.-]\s*", "", s, flags=re.IGNORECASE)
    return s.strip(" :-")


def parse_outline_text(raw: str, words_per_section: int) -> List[OutlineSection]:
    """Line-oriented fallback: numbered, bulleted and markdown-heading lines start a section."""
    sections: List[OutlineSection] = []
    current: Optional[OutlineSection] = None
    desc: List[str] = []

    def close() -> None:
        if current is not None:
            current.description = " ".join(desc).strip()
            sections.append(current)

    for line in (raw or "").splitlines():
        if not line.strip():
            continue
        m = _NUMBERED_RE.match(line) or _BULLET_RE.match(line) or _HEADING_RE.match(line)
        title = _clean_title(m.group(1)) if m else ""
        if title:
            close()
            current = OutlineSection(
                title=title,
                word_count=words_per_section,
                order=len(sections),
                competitive_advantage="Comprehensive coverage of the topic",
            )
            desc = []
        elif current is not None:
            desc.append(line.strip())
    close()
    return sections


def default_outline(topic: str, words_per_section: int) -> List[OutlineSection]:
    t = (topic or "").strip() or "the topic"
    rows = [
        ("Introduction", f"What {t} is and why it matters to the reader", "Clear and engaging introduction"),
        ("Core Concepts", f"The fundamental ideas behind {t}", "Solid grounding before the details"),
        ("Step-by-Step Implementation", f"How to put {t} into practice", "Actionable, ordered guidance"),
        ("Advanced Strategies", f"Techniques that take {t} further", "Depth competitors skip"),
        ("Common Mistakes to Avoid", f"Pitfalls people hit with {t} and how to avoid them", "Practical troubleshooting"),
        ("Tools and Resources", f"Tools, libraries and references for {t}", "Curated next steps"),
        ("Conclusion", f"Summary and next steps for {t}", "Actionable takeaways"),
    ]
    return [
        OutlineSection(title=title, description=desc, word_count=words_per_section, order=i, competitive_advantage=adv)
        for i, (title, desc, adv) in enumerate(rows)
    ]


def _sections_from_json(items: Sequence[Any], words_per_section: int) -> List[OutlineSection]:
    out: List[OutlineSection] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        sec = OutlineSection.from_dict({k: v for k, v in item.items() if k != "order"}, order=len(out))
        if not sec.title:
            continue
        # The caller's words-per-section setting wins over model-suggested sizes.
        sec.word_count = words_per_section
        sec.order = len(out)
        sec.selected = True
        sec.content = None
        sec.error = None
        out.append(sec)
    return out


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return []


def parse_outline_response(raw: str, topic: str, words_per_section: int) -> OutlineParse:
    """strict json -> fenced/embedded json -> heuristic lines -> fixed default. Never empty."""
    data = parse_strict_json(raw)
    source = "json"
    if data is None:
        data = extract_fenced_json(raw)
        source = "fenced"

    if data is not None:
        sections = _sections_from_json(data["outline"], words_per_section)
        if sections:
            extras = {
                "seoStrategy": str(data.get("seoStrategy") or DEFAULT_SEO_STRATEGY),
                "targetKeywords": _as_str_list(data.get("targetKeywords")) or [topic],
                "contentGaps": _as_str_list(data.get("contentGaps")),
                "uniqueValue": str(data.get("uniqueValue") or ""),
            }
            return OutlineParse(sections=sections, source=source, extras=extras)

    extras = {
        "seoStrategy": DEFAULT_SEO_STRATEGY,
        "targetKeywords": [topic],
        "contentGaps": [],
        "uniqueValue": "",
    }
    sections = parse_outline_text(raw, words_per_section)
    if sections:
        return OutlineParse(sections=sections, source="heuristic", extras=extras)
    return OutlineParse(sections=default_outline(topic, words_per_section), source="default", extras=extras)


# ---------------------------------------------------------------------------
# Editing helpers (caller-side mutations of an outline)
# ---------------------------------------------------------------------------


def renumber(sections: List[OutlineSection]) -> List[OutlineSection]:
    """Sort by `order` and reassign 0..n-1."""
    sections.sort(key=lambda s: s.order)
    for i, s in enumerate(sections):
        s.order = i
    return sections


def move_section(sections: List[OutlineSection], order: int, direction: str) -> List[OutlineSection]:
    """Swap the section at `order` with its neighbour. Moving past either end is a no-op."""
    renumber(sections)
    if not 0 <= order < len(sections):
        raise ValidationError(f"No section at position {order}")
    if direction not in {"up", "down"}:
        raise ValidationError("direction must be 'up' or 'down'")
    other = order - 1 if direction == "up" else order + 1
    if 0 <= other < len(sections):
        sections[order].order, sections[other].order = other, order
        renumber(sections)
    return sections


def selected_sections(sections: Iterable[OutlineSection]) -> List[OutlineSection]:
    return sorted((s for s in sections if s.selected), key=lambda s: s.order)


def selected_word_total(sections: Iterable[OutlineSection]) -> int:
    return sum(s.word_count for s in sections if s.selected)


def outline_as_text(sections: Iterable[OutlineSection]) -> str:
    """Numbered plain-text rendering, used inside full-article prompts."""
    lines = []
    for i, s in enumerate(selected_sections(sections), start=1):
        line = f"{i}. {s.title}"
        if s.description:
            line += f" - {s.description}"
        lines.append(line)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


def build_outline_prompt(
    *,
    topic: str,
    keywords: Sequence[str],
    tone: str,
    language: str,
    target_length: int | None,
    competitors: Sequence[CompetitorSummary],
    target_audience: str = "",
) -> str:
    comp_lines = []
    for c in competitors:
        comp_lines.append(
            f"Rank #{c.ranking}: {c.title}\n"
            f"Headings: {', '.join(c.headings) or 'n/a'}\n"
            f"Word Count: {c.word_count}"
        )
    comp_block = "\n\n".join(comp_lines) if comp_lines else "[no competitor data]"
    length_line = f"- Total target length: ~{target_length} words\n" if target_length else ""

    return (
        f"Analyze the top-ranking competitors and create a superior blog outline for \"{topic}\".\n\n"
        f"COMPETITOR ANALYSIS:\n{comp_block}\n\n"
        "REQUIREMENTS:\n"
        "- Create an outline that can outrank these competitors\n"
        f"- Target audience: {target_audience or 'general'}\n"
        f"- Tone: {tone or 'professional'}\n"
        f"- Language: {language or 'English'}\n"
        f"- SEO Keywords: {', '.join(keywords) if keywords else 'extract from title'}\n"
        f"{length_line}"
        "- Include sections that competitors are missing\n"
        "- Structure for featured snippets and rich results\n\n"
        "Respond with JSON only, using this structure:\n"
        "{\n"
        '  "outline": [\n'
        '    {"title": "Section Title", "description": "What this section covers", "wordCount": 500,\n'
        '     "competitiveAdvantage": "Why this beats competitors", "seoValue": "Search intent it serves"}\n'
        "  ],\n"
        '  "seoStrategy": "Overall SEO strategy",\n'
        '  "targetKeywords": ["keyword1", "keyword2"],\n'
        '  "contentGaps": ["topic competitors miss"],\n'
        '  "uniqueValue": "What makes this post different"\n'
        "}\n"
    )


class OutlineGenerator:
    """One provider call -> parsed outline plus strategy fields."""

    async def generate_outline(
        self,
        adapter: ProviderAdapter,
        *,
        model: str,
        topic: str,
        keywords: Sequence[str] = (),
        tone: str = "professional",
        language: str = "English",
        target_length: int | None = None,
        competitors: Sequence[CompetitorSummary] = (),
        target_audience: str = "",
        words_per_section: int = WORDS_PER_SECTION[DEFAULT_BUCKET],
    ) -> Dict[str, Any]:
        if not (topic or "").strip():
            raise ValidationError("title is required")
        prompt = build_outline_prompt(
            topic=topic,
            keywords=keywords,
            tone=tone,
            language=language,
            target_length=target_length,
            competitors=competitors,
            target_audience=target_audience,
        )
        raw = await asyncio.to_thread(
            adapter.complete,
            prompt,
            model=model,
            max_tokens=OUTLINE_MAX_TOKENS,
            temperature=FIXED_TEMPERATURE,
        )
        parsed = parse_outline_response(raw, topic, words_per_section)
        if parsed.source != "json":
            logger.info("outline for %r parsed via %s stage", topic, parsed.source)

        return {
            "outline": parsed.sections,
            "source": parsed.source,
            **parsed.extras,
            "competitorAnalysis": [
                {"title": c.title, "headings": c.headings, "ranking": c.ranking, "wordCount": c.word_count}
                for c in competitors
            ],
        }
