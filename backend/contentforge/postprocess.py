"""Best-effort enhancements applied once content exists: SEO analysis and images.

Nothing here may fail a generation. `PostProcessor.run` logs and swallows
per-step errors, the standalone endpoints let them propagate.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import Settings, settings as default_settings
from .storage import RecordStore

logger = logging.getLogger(__name__)

META_DESCRIPTION_CHARS = 160

BASELINE_SUGGESTIONS = [
    "Add more internal links",
    "Add alt text to images",
]


@dataclass
class SeoReport:
    score: int
    meta_description: str
    suggestions: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "metaDescription": self.meta_description,
            "suggestions": list(self.suggestions),
            "keywords": list(self.keywords),
        }


def strip_markdown(text: str) -> str:
    s = re.sub(r"```.*?```", " ", text or "", flags=re.DOTALL)
    s = re.sub(r"!\[[^\]]*\]\([^)]*\)", " ", s)
    s = re.sub(r"\[([^\]]*)\]\([^)]*\)", r"\1", s)
    s = re.sub(r"^\s{0,3}(#{1,6}|>|[-*+]|\d+\.)\s+", "", s, flags=re.MULTILINE)
    s = re.sub(r"[*_`|]+", "", s)
    return re.sub(r"\s+", " ", s).strip()


def meta_description(content: str, limit: int = META_DESCRIPTION_CHARS) -> str:
    plain = strip_markdown(content)
    if len(plain) <= limit:
        return plain
    return plain[:limit].rstrip() + "..."


class SeoAnalyzer:
    """Deterministic heuristic scorer: same input, same score."""

    def analyze(self, content: str, title: str, keywords: Sequence[str] = ()) -> SeoReport:
        text = content or ""
        lower = text.lower()
        words = len(text.split())
        kws = [k.strip() for k in keywords if k and k.strip()] or [title]
        headings = re.findall(r"^\s{0,3}#{2,3}\s+(.+)$", text, flags=re.MULTILINE)

        score = 40
        suggestions: List[str] = []

        if words >= 1500:
            score += 15
        elif words >= 800:
            score += 10
        elif words >= 300:
            score += 5
        else:
            suggestions.append("Expand the content to at least 800 words")

        if len(headings) >= 3:
            score += 15
        else:
            suggestions.append("Break the content up with more H2/H3 headings")

        head_text = " ".join(headings).lower()
        if any(k.lower() in head_text for k in kws):
            score += 10
        else:
            suggestions.append("Include target keywords in headings")

        first_para = lower[:600]
        if any(k.lower() in first_para for k in kws):
            score += 10
        else:
            suggestions.append("Mention the primary keyword in the introduction")

        if re.search(r"^\s*([-*+]|\d+\.)\s+", text, flags=re.MULTILINE):
            score += 5
        else:
            suggestions.append("Use lists to make key points scannable")

        if re.search(r"\[[^\]]+\]\([^)]+\)", text):
            score += 5

        meta = meta_description(text)
        if len(strip_markdown(text)) < 120:
            suggestions.append("Optimize meta description length")
        else:
            score += 5

        for s in BASELINE_SUGGESTIONS:
            if s not in suggestions:
                suggestions.append(s)

        return SeoReport(score=max(0, min(100, score)), meta_description=meta, suggestions=suggestions, keywords=kws)


# ---------------------------------------------------------------------------
# Image attachment
# ---------------------------------------------------------------------------


class ImageAttacher:
    name = "base"

    async def images_for(self, title: str, sections: Sequence[str] = ()) -> List[Dict[str, str]]:
        raise NotImplementedError


class NullImageAttacher(ImageAttacher):
    name = "none"

    async def images_for(self, title: str, sections: Sequence[str] = ()) -> List[Dict[str, str]]:
        return []


class StockImageAttacher(ImageAttacher):
    """Fixed placeholder images. Used when no image backend is configured."""

    name = "stock"

    async def images_for(self, title: str, sections: Sequence[str] = ()) -> List[Dict[str, str]]:
        return [
            {
                "url": "https://images.pexels.com/photos/1181671/pexels-photo-1181671.jpeg",
                "alt": "Technology concept",
                "caption": "Modern technology illustration",
                "section": "introduction",
            },
            {
                "url": "https://images.pexels.com/photos/574071/pexels-photo-574071.jpeg",
                "alt": "Code on screen",
                "caption": "Programming code example",
                "section": "implementation",
            },
        ]


def _is_valid_key(key: str | None) -> bool:
    """Treat empty and placeholder values as missing."""
    if not key:
        return False
    lowered = key.strip().lower()
    return lowered not in {"pexels_api_key", "changeme"} and "your-" not in lowered


class PexelsImageAttacher(ImageAttacher):
    """Photo search on Pexels. Only URLs are stored, nothing is downloaded."""

    name = "pexels"
    SEARCH_URL = "https://api.pexels.com/v1/search"

    def __init__(self, api_key: str, *, max_items: int = 3, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.api_key = api_key
        self.max_items = max_items
        self._transport = transport

    async def images_for(self, title: str, sections: Sequence[str] = ()) -> List[Dict[str, str]]:
        labels = ["introduction", *[s for s in sections if s]]
        params = {"query": title, "per_page": self.max_items}
        async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
            r = await client.get(self.SEARCH_URL, params=params, headers={"Authorization": self.api_key})
            r.raise_for_status()
            photos = r.json().get("photos", [])

        images: List[Dict[str, str]] = []
        for i, photo in enumerate(photos[: self.max_items]):
            src = photo.get("src", {})
            url = src.get("large") or src.get("original")
            if not url:
                continue
            images.append(
                {
                    "url": url,
                    "alt": photo.get("alt") or title,
                    "caption": f"Photo by {photo.get('photographer') or 'Pexels'}",
                    "section": labels[i] if i < len(labels) else labels[-1],
                }
            )
        return images


def build_image_attacher(cfg: Settings | None = None) -> ImageAttacher:
    cfg = cfg or default_settings
    provider = (cfg.IMAGE_PROVIDER or "stock").strip().lower()
    if provider == "none":
        return NullImageAttacher()
    if provider == "pexels":
        if _is_valid_key(cfg.PEXELS_API_KEY):
            return PexelsImageAttacher(cfg.PEXELS_API_KEY or "")
        logger.warning("IMAGE_PROVIDER=pexels but PEXELS_API_KEY is missing; using stock images")
    return StockImageAttacher()


def _section_labels(content: str) -> List[str]:
    return [h.strip().lower() for h in re.findall(r"^\s{0,3}##\s+(.+)$", content or "", flags=re.MULTILINE)]


class PostProcessor:
    """Applies SEO analysis and image attachment to a stored record."""

    def __init__(self, store: RecordStore, *, analyzer: SeoAnalyzer | None = None, images: ImageAttacher | None = None) -> None:
        self.store = store
        self.analyzer = analyzer or SeoAnalyzer()
        self.images = images or StockImageAttacher()

    def optimize_seo(self, record_id: str, keywords: Optional[Sequence[str]] = None) -> SeoReport:
        row = self.store.require_row(record_id)
        kws = list(keywords) if keywords else list(row.get("keywords_json") or [])
        report = self.analyzer.analyze(row.get("content") or "", row["title"], kws)
        self.store.update_record(
            record_id,
            {
                "seo_score": report.score,
                "meta_description": report.meta_description,
                "seo_suggestions_json": report.suggestions,
                "keywords_json": report.keywords,
            },
        )
        return report

    async def attach_images(self, record_id: str) -> List[Dict[str, str]]:
        row = self.store.require_row(record_id)
        images = await self.images.images_for(row["title"], _section_labels(row.get("content") or ""))
        self.store.update_record(record_id, {"images_json": images})
        return images

    async def run(self, record_id: str, *, seo: bool, images: bool) -> None:
        if seo:
            try:
                self.optimize_seo(record_id)
            except Exception:
                logger.warning("SEO post-processing failed for %s", record_id, exc_info=True)
        if images:
            try:
                await self.attach_images(record_id)
            except Exception:
                logger.warning("image attachment failed for %s (%s)", record_id, self.images.name, exc_info=True)
