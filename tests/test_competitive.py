import asyncio
import json
import os
import threading

import pytest

from contentforge.competitive import CompetitiveWriter
from contentforge.errors import (
    ConfigurationError,
    GenerationInProgress,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from contentforge.research import CompetitorResearch, synthetic_competitors

from conftest import ACCOUNT, FakeAdapter

OUTLINE_JSON = json.dumps(
    {
        "outline": [
            {"title": "Why Caching Matters", "description": "Latency and cost"},
            {"title": "Cache Layers", "description": "Browser, CDN, app, DB"},
            {"title": "Invalidation", "description": "TTLs and versioned keys"},
        ],
        "seoStrategy": "Target beginners",
        "targetKeywords": ["caching"],
        "contentGaps": ["stampedes"],
        "uniqueValue": "Worked examples",
    }
)


@pytest.fixture
def adapter():
    return FakeAdapter([OUTLINE_JSON], default="## Section\n\nGenerated section body text.")


@pytest.fixture
def writer(credential_store, queue, cfg, adapter):
    return CompetitiveWriter(
        credential_store,
        queue,
        research=CompetitorResearch(cfg),
        adapter_factory=lambda creds: adapter,
        cfg=cfg,
    )


async def _session(writer, **kwargs):
    kwargs.setdefault("title", "Intro to Caching")
    kwargs.setdefault("words_per_section", "short")
    return await writer.create_session(ACCOUNT, **kwargs)


async def _wait_for_batch(writer, session, timeout=5.0):
    for _ in range(int(timeout / 0.02)):
        if session.batch_status != "running":
            return
        await asyncio.sleep(0.02)
    raise AssertionError("batch did not finish")


class TestStatelessOperations:
    @pytest.mark.asyncio
    async def test_outline_for_applies_bucket(self, writer, account, adapter):
        result = await writer.outline_for(
            ACCOUNT,
            title="Intro to Caching",
            competitors=[c.as_dict() for c in synthetic_competitors("Intro to Caching")],
            words_per_section="very-long",
        )
        assert [s["wordCount"] for s in result["outline"]] == [1500, 1500, 1500]
        assert [s["order"] for s in result["outline"]] == [0, 1, 2]
        assert result["seoStrategy"] == "Target beginners"
        assert "Rank #2" in adapter.prompts[0]

    @pytest.mark.asyncio
    async def test_outline_requires_credentials(self, writer):
        with pytest.raises(ConfigurationError):
            await writer.outline_for("nobody", title="Caching")

    @pytest.mark.asyncio
    async def test_section_for_validates_word_count(self, writer, account):
        with pytest.raises(ValidationError):
            await writer.section_for(ACCOUNT, title="Intro", word_count=50)

    @pytest.mark.asyncio
    async def test_section_for_uses_prior_titles(self, writer, account, adapter):
        adapter.responses = []
        result = await writer.section_for(
            ACCOUNT, title="Eviction", word_count=400, blog_title="Caching", previous_titles=["Intro", "Layers"]
        )
        assert result["wordCount"] == 6
        assert "Previous Sections: Intro, Layers" in adapter.prompts[0]
        assert adapter.calls[0]["max_tokens"] == 800


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_session_researches_when_no_competitors(self, writer, account):
        session = await _session(writer)
        assert [c.domain for c in session.competitors] == ["example1.com", "example2.com", "example3.com"]
        assert [s.title for s in session.sections] == ["Why Caching Matters", "Cache Layers", "Invalidation"]
        assert all(s.word_count == 500 for s in session.sections)
        data = session.as_dict()
        assert data["totalWords"] == 1500
        assert data["batch"]["status"] == "idle"
        assert data["contentGaps"] == ["stampedes"]

    @pytest.mark.asyncio
    async def test_create_session_with_given_competitors(self, writer, account):
        comps = [{"title": "Mine", "url": "https://www.mine.example/x", "headings": ["A"], "ranking": 1}]
        session = await _session(writer, competitors=comps)
        assert [c.domain for c in session.competitors] == ["mine.example"]

    @pytest.mark.asyncio
    async def test_sessions_are_private(self, writer, account):
        session = await _session(writer)
        with pytest.raises(NotFoundError):
            writer.get_session("intruder", session.id)
        assert writer.sessions.list_for("intruder") == []
        assert writer.sessions.list_for(ACCOUNT) == [session]

    @pytest.mark.asyncio
    async def test_edit_move_and_add(self, writer, account):
        session = await _session(writer)

        writer.edit_section(ACCOUNT, session.id, 1, title="Cache Tiers", word_count=700, selected=False)
        assert session.section_at(1).title == "Cache Tiers"
        assert session.as_dict()["totalWords"] == 1000

        writer.move_section(ACCOUNT, session.id, 2, "up")
        assert [s.title for s in sorted(session.sections, key=lambda s: s.order)] == [
            "Why Caching Matters",
            "Invalidation",
            "Cache Tiers",
        ]

        writer.add_section(ACCOUNT, session.id, title="Monitoring", description="Hit ratio")
        added = session.section_at(3)
        assert added.title == "Monitoring"
        assert added.word_count == 500

        with pytest.raises(ValidationError):
            writer.edit_section(ACCOUNT, session.id, 0, word_count=5000)
        with pytest.raises(ValidationError):
            writer.edit_section(ACCOUNT, session.id, 0, title="  ")
        with pytest.raises(NotFoundError):
            writer.edit_section(ACCOUNT, session.id, 42, title="Ghost")

    @pytest.mark.asyncio
    async def test_manual_content_edit(self, writer, account):
        session = await _session(writer)
        writer.edit_section(ACCOUNT, session.id, 0, content="hand written words")
        sec = session.section_at(0)
        assert sec.content == "hand written words"
        assert sec.actual_word_count == 3

    @pytest.mark.asyncio
    async def test_blank_content_edit_leaves_section_ungenerated(self, writer, account, adapter):
        session = await _session(writer)
        writer.edit_section(ACCOUNT, session.id, 0, content="   \n ")
        sec = session.section_at(0)
        assert sec.content is None
        assert sec.actual_word_count == 0

        writer.start_generate_all(ACCOUNT, session.id)
        await _wait_for_batch(writer, session)
        assert sec.content.startswith("## Section")


class TestSectionGeneration:
    @pytest.mark.asyncio
    async def test_generate_single_section(self, writer, account):
        session = await _session(writer)
        sec = await writer.generate_section(ACCOUNT, session.id, 1)
        assert sec.content.startswith("## Section")
        assert sec.actual_word_count == 6
        assert session.as_dict()["batch"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_failed_section_keeps_error(self, writer, account, adapter):
        session = await _session(writer)
        adapter.responses = [RuntimeError("quota exceeded")]
        with pytest.raises(ProviderError):
            await writer.generate_section(ACCOUNT, session.id, 0)
        sec = session.section_at(0)
        assert sec.content is None
        assert "quota exceeded" in sec.error

    @pytest.mark.asyncio
    async def test_generate_all_with_one_failure(self, writer, account, adapter):
        session = await _session(writer)
        adapter.responses = ["first", RuntimeError("boom"), "third"]

        writer.start_generate_all(ACCOUNT, session.id)
        assert session.batch_status == "running"
        await _wait_for_batch(writer, session)

        assert session.batch_status == "completed"
        assert session.batch_error == "1 section(s) failed"
        assert [s.content for s in session.sections] == ["first", None, "third"]
        assert session.progress == pytest.approx(2 / 3, abs=1e-3)

        adapter.responses = ["second"]
        writer.start_generate_all(ACCOUNT, session.id)
        await _wait_for_batch(writer, session)
        assert [s.content for s in session.sections] == ["first", "second", "third"]
        assert session.batch_error is None
        assert session.progress == 1.0

    @pytest.mark.asyncio
    async def test_edits_rejected_while_batch_runs(self, credential_store, queue, cfg, account):
        gate = threading.Event()
        adapter = FakeAdapter([OUTLINE_JSON])
        writer = CompetitiveWriter(
            credential_store, queue, research=CompetitorResearch(cfg), adapter_factory=lambda creds: adapter, cfg=cfg
        )
        session = await _session(writer)
        adapter.gate = gate
        try:
            writer.start_generate_all(ACCOUNT, session.id)
            with pytest.raises(GenerationInProgress):
                writer.start_generate_all(ACCOUNT, session.id)
            with pytest.raises(GenerationInProgress):
                writer.edit_section(ACCOUNT, session.id, 0, title="New")
            with pytest.raises(GenerationInProgress):
                await writer.generate_section(ACCOUNT, session.id, 0)
        finally:
            gate.set()
        await _wait_for_batch(writer, session)
        assert session.batch_status == "completed"

    @pytest.mark.asyncio
    async def test_single_section_and_batch_never_overlap(self, credential_store, queue, cfg, account):
        gate = threading.Event()
        adapter = FakeAdapter([OUTLINE_JSON], default="one section")
        writer = CompetitiveWriter(
            credential_store, queue, research=CompetitorResearch(cfg), adapter_factory=lambda creds: adapter, cfg=cfg
        )
        session = await _session(writer)
        adapter.gate = gate
        task = asyncio.create_task(writer.generate_section(ACCOUNT, session.id, 0))
        try:
            for _ in range(100):
                if session.generating:
                    break
                await asyncio.sleep(0.01)
            assert session.as_dict()["batch"]["generating"] == [0]

            with pytest.raises(GenerationInProgress):
                writer.start_generate_all(ACCOUNT, session.id)
            with pytest.raises(GenerationInProgress):
                await writer.generate_section(ACCOUNT, session.id, 0)
            with pytest.raises(GenerationInProgress):
                writer.edit_section(ACCOUNT, session.id, 0, content="typed over")
            with pytest.raises(GenerationInProgress):
                writer.move_section(ACCOUNT, session.id, 1, "up")
            writer.edit_section(ACCOUNT, session.id, 2, title="Invalidation Basics")
        finally:
            gate.set()
        sec = await task

        assert sec.content == "one section"
        assert session.generating == set()
        assert len(adapter.prompts) == 2
        writer.start_generate_all(ACCOUNT, session.id)
        await _wait_for_batch(writer, session)
        assert session.batch_status == "completed"

    @pytest.mark.asyncio
    async def test_generate_all_needs_a_selection(self, writer, account):
        session = await _session(writer)
        for s in session.sections:
            s.selected = False
        with pytest.raises(ValidationError):
            writer.start_generate_all(ACCOUNT, session.id)


class TestExport:
    @pytest.mark.asyncio
    async def test_export_requires_content(self, writer, account):
        session = await _session(writer)
        with pytest.raises(ValidationError):
            writer.export(ACCOUNT, session.id, ["md"])

    @pytest.mark.asyncio
    async def test_export_writes_selected_sections(self, writer, account):
        session = await _session(writer)
        writer.edit_section(ACCOUNT, session.id, 0, content="## Why Caching Matters\n\nBecause latency.")
        writer.edit_section(ACCOUNT, session.id, 1, content="## Cache Layers\n\nSkipped body.", selected=False)

        result = writer.export(ACCOUNT, session.id, ["md"])

        md_path = next(e["path"] for e in result["exports"] if e["format"] == "md")
        assert os.path.exists(md_path)
        with open(md_path, encoding="utf-8") as f:
            text = f.read()
        assert text.startswith("# Intro to Caching")
        assert "Because latency." in text
        assert "Skipped body." not in text
        assert session.exports == [result]
