"""Competitor research: top-ranking pages for a topic.

Primary path queries SerpAPI and scrapes each organic result. Any page that
cannot be fetched degrades to a snippet-only summary. If the search backend is
unconfigured or fails outright, a deterministic offline set is returned, so
`research()` never raises for a non-empty topic.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from .config import Settings, settings as default_settings
from .documents import split_sentences
from .errors import ResearchDegraded, ResearchUnavailable

logger = logging.getLogger(__name__)

# Tried in order; the first container with real text wins.
CONTENT_SELECTORS = (
    "article",
    "main",
    "[role=main]",
    ".post-content",
    ".entry-content",
    ".article-content",
    ".article-body",
    "#content",
    ".content",
)

HIGH_AUTHORITY_DOMAINS = {
    "wikipedia.org",
    "github.com",
    "stackoverflow.com",
    "medium.com",
    "forbes.com",
    "nytimes.com",
    "hubspot.com",
    "moz.com",
    "ahrefs.com",
    "developer.mozilla.org",
    "microsoft.com",
    "google.com",
    "aws.amazon.com",
    "ibm.com",
}

SNIPPET_WORD_MULTIPLIER = 10


@dataclass
class CompetitorSummary:
    title: str
    url: str
    domain: str
    meta_description: str = ""
    headings: List[str] = field(default_factory=list)
    snippet: str = ""
    ranking: int = 0
    word_count: int = 0
    estimated_authority: int = 0
    degraded: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "domain": self.domain,
            "metaDescription": self.meta_description,
            "headings": list(self.headings),
            "snippet": self.snippet,
            "ranking": self.ranking,
            "wordCount": self.word_count,
            "estimatedAuthority": self.estimated_authority,
            "degraded": self.degraded,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "CompetitorSummary":
        url = str(d.get("url") or "")
        return cls(
            title=str(d.get("title") or ""),
            url=url,
            domain=str(d.get("domain") or extract_domain(url)),
            meta_description=str(d.get("metaDescription") or d.get("meta_description") or ""),
            headings=[str(h) for h in (d.get("headings") or []) if str(h).strip()],
            snippet=str(d.get("snippet") or ""),
            ranking=_int_or(d.get("ranking"), 0),
            word_count=_int_or(d.get("wordCount", d.get("word_count")), 0),
            estimated_authority=_int_or(d.get("estimatedAuthority", d.get("estimated_authority")), 0),
            degraded=bool(d.get("degraded", False)),
        )


def _int_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def extract_domain(url: str) -> str:
    try:
        host = (urlparse(url or "").hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def estimate_authority(domain: str, ranking: int) -> int:
    """Coarse 0-100 authority guess. Placeholder heuristic, deterministic."""
    d = (domain or "").lower()
    if any(d == known or d.endswith("." + known) for known in HIGH_AUTHORITY_DOMAINS):
        return 90
    if d.endswith(".gov") or d.endswith(".edu"):
        return 85
    position = min(max(int(ranking or 10), 1), 10)
    return 70 - (position - 1) * 4


def headings_from_snippet(snippet: str, limit: int = 5) -> List[str]:
    """Stand-in headings when the page itself could not be read."""
    out: List[str] = []
    for sentence in split_sentences(snippet):
        h = sentence.rstrip(".!?… ").strip()
        if len(h) > 80:
            h = h[:77].rsplit(" ", 1)[0] + "..."
        if h:
            out.append(h)
        if len(out) >= limit:
            break
    return out


def _slug(topic: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", topic.lower()).strip("-") or "topic"


def synthetic_competitors(topic: str) -> List[CompetitorSummary]:
    """Deterministic offline competitor set for demos, tests and outages."""
    t = (topic or "").strip() or "this topic"
    slug = _slug(t)
    templates: List[Tuple[str, str, str, str, List[str], str, int]] = [
        (
            f"The Ultimate Guide to {t}",
            f"https://example1.com/{slug}",
            f"Learn everything about {t} with our comprehensive guide. Expert tips, best practices, and real-world examples.",
            f"Discover the complete guide to {t}. This comprehensive resource covers everything from basics to advanced techniques.",
            [
                "Introduction",
                f"What is {t}",
                "Benefits and Advantages",
                "Step-by-Step Implementation",
                "Common Mistakes to Avoid",
                "Advanced Techniques",
                "Tools and Resources",
                "Case Studies",
                "Future Trends",
                "Conclusion",
            ],
            "example1.com",
            3500,
        ),
        (
            f"{t}: Best Practices and Expert Tips",
            f"https://example2.com/blog/{slug}-guide",
            f"Master {t} with proven strategies and expert insights. Practical tips for immediate results.",
            f"Expert guide to {t} with actionable strategies and proven techniques for success.",
            [
                "Getting Started",
                "Core Concepts",
                "Implementation Strategy",
                "Optimization Techniques",
                "Measuring Success",
                "Troubleshooting",
                "Expert Recommendations",
                "Final Thoughts",
            ],
            "example2.com",
            2800,
        ),
        (
            f"How to Master {t}",
            f"https://example3.com/{slug}-mastery",
            f"Complete {t} tutorial with modern approaches and cutting-edge techniques.",
            f"Stay ahead with the latest {t} strategies and techniques.",
            [
                f"Why {t} Matters",
                "Current Landscape",
                "Essential Skills",
                "Modern Approaches",
                "Tools and Technologies",
                "Real-World Applications",
                "Success Stories",
                "Next Steps",
            ],
            "example3.com",
            3200,
        ),
    ]
    out: List[CompetitorSummary] = []
    for i, (title, url, meta, snippet, headings, domain, words) in enumerate(templates, start=1):
        out.append(
            CompetitorSummary(
                title=title,
                url=url,
                domain=domain,
                meta_description=meta,
                headings=headings,
                snippet=snippet,
                ranking=i,
                word_count=words,
                estimated_authority=estimate_authority(domain, i),
            )
        )
    return out


def parse_page(html: str) -> Tuple[List[str], int, str]:
    """Return (headings, word_count, text) from a competitor page."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript", "template", "svg"]):
        tag.decompose()

    headings = []
    for el in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        text = el.get_text(" ", strip=True)
        if text:
            headings.append(text)

    # Chrome around the article skews word counts
    for tag in soup(["header", "footer", "nav", "aside", "form"]):
        tag.decompose()

    text = ""
    for selector in CONTENT_SELECTORS:
        el = soup.select_one(selector)
        if el is None:
            continue
        candidate = el.get_text(" ", strip=True)
        if len(candidate.split()) >= 50:
            text = candidate
            break
    if not text:
        body = soup.body or soup
        text = body.get_text(" ", strip=True)

    text = re.sub(r"\s+", " ", text).strip()
    return headings, len(text.split()), text[:5000]


def degraded_summary(result: Mapping[str, Any], ranking: int) -> CompetitorSummary:
    url = str(result.get("link") or result.get("url") or "")
    snippet = str(result.get("snippet") or "")
    domain = extract_domain(url)
    return CompetitorSummary(
        title=str(result.get("title") or domain or url),
        url=url,
        domain=domain,
        meta_description=snippet,
        headings=headings_from_snippet(snippet),
        snippet=snippet,
        ranking=ranking,
        word_count=len(snippet.split()) * SNIPPET_WORD_MULTIPLIER,
        estimated_authority=estimate_authority(domain, ranking),
        degraded=True,
    )


class CompetitorResearch:
    """`research(topic)` -> competitor summaries ordered by ranking."""

    def __init__(self, cfg: Settings | None = None, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.cfg = cfg or default_settings
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=timeout,
            headers={"User-Agent": self.cfg.RESEARCH_USER_AGENT},
            transport=self._transport,
        )

    async def research(self, topic: str) -> List[CompetitorSummary]:
        topic = (topic or "").strip()
        try:
            competitors = await self._research_live(topic)
        except ResearchUnavailable as e:
            logger.info("research fallback for %r: %s", topic, e)
            return synthetic_competitors(topic)
        except Exception:
            logger.warning("research failed for %r, using offline fallback", topic, exc_info=True)
            return synthetic_competitors(topic)
        if not competitors:
            logger.info("search returned no organic results for %r, using offline fallback", topic)
            return synthetic_competitors(topic)
        return competitors

    async def _research_live(self, topic: str) -> List[CompetitorSummary]:
        results = await self.search(topic)
        ranked = sorted(
            results[: self.cfg.RESEARCH_MAX_RESULTS],
            key=lambda r: _int_or(r.get("position"), 0) or 10_000,
        )

        competitors: List[CompetitorSummary] = []
        async with self._client(self.cfg.PAGE_FETCH_TIMEOUT_SECONDS) as client:
            for i, result in enumerate(ranked):
                ranking = i + 1
                if i > 0 and self.cfg.RESEARCH_FETCH_DELAY_SECONDS > 0:
                    await asyncio.sleep(self.cfg.RESEARCH_FETCH_DELAY_SECONDS)
                try:
                    competitors.append(await self._summarize(client, result, ranking))
                except ResearchDegraded as e:
                    logger.warning("competitor #%d degraded to snippet: %s", ranking, e)
                    competitors.append(degraded_summary(result, ranking))
        return competitors

    async def search(self, topic: str) -> List[Dict[str, Any]]:
        if not self.cfg.SERPAPI_KEY:
            raise ResearchUnavailable("SERPAPI_KEY not configured")
        params = {
            "q": topic,
            "api_key": self.cfg.SERPAPI_KEY,
            "engine": "google",
            "num": self.cfg.RESEARCH_MAX_RESULTS,
        }
        async with self._client(self.cfg.SEARCH_TIMEOUT_SECONDS) as client:
            try:
                r = await client.get(self.cfg.SERPAPI_URL, params=params)
            except httpx.HTTPError as e:
                raise ResearchUnavailable(f"search request failed: {e}") from e
        if r.status_code != 200:
            raise ResearchUnavailable(f"search backend returned {r.status_code}")
        data = r.json()
        return [x for x in (data.get("organic_results") or []) if isinstance(x, dict) and x.get("link")]

    async def _summarize(self, client: httpx.AsyncClient, result: Mapping[str, Any], ranking: int) -> CompetitorSummary:
        url = str(result["link"])
        try:
            r = await client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ResearchDegraded(f"{url}: {type(e).__name__}") from e
        if r.status_code != 200:
            raise ResearchDegraded(f"{url}: HTTP {r.status_code}")

        try:
            headings, word_count, _text = parse_page(r.text)
        except Exception as e:
            raise ResearchDegraded(f"{url}: unparseable page ({type(e).__name__})") from e
        snippet = str(result.get("snippet") or "")
        if not headings:
            headings = headings_from_snippet(snippet)
        domain = extract_domain(url)
        return CompetitorSummary(
            title=str(result.get("title") or domain),
            url=url,
            domain=domain,
            meta_description=snippet,
            headings=headings,
            snippet=snippet,
            ranking=ranking,
            word_count=word_count or len(snippet.split()) * SNIPPET_WORD_MULTIPLIER,
            estimated_authority=estimate_authority(domain, ranking),
        )
