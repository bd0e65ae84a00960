import httpx
import pytest

from contentforge.config import Settings
from contentforge.postprocess import (
    BASELINE_SUGGESTIONS,
    ImageAttacher,
    NullImageAttacher,
    PexelsImageAttacher,
    PostProcessor,
    SeoAnalyzer,
    StockImageAttacher,
    build_image_attacher,
    meta_description,
    strip_markdown,
)

from conftest import ARTICLE


class ExplodingImages(ImageAttacher):
    name = "exploding"

    async def images_for(self, title, sections=()):
        raise RuntimeError("image backend down")


class TestSeoAnalyzer:
    def test_deterministic(self):
        a = SeoAnalyzer().analyze(ARTICLE, "Caching", ["caching"])
        b = SeoAnalyzer().analyze(ARTICLE, "Caching", ["caching"])
        assert a == b

    def test_score_bounds_and_baseline_suggestions(self):
        for content in ("", "tiny", ARTICLE, ARTICLE * 20):
            report = SeoAnalyzer().analyze(content, "Caching", ["caching"])
            assert 0 <= report.score <= 100
            for s in BASELINE_SUGGESTIONS:
                assert s in report.suggestions

    def test_richer_content_scores_higher(self):
        thin = SeoAnalyzer().analyze("caching is nice", "Caching", ["caching"])
        rich = SeoAnalyzer().analyze(ARTICLE, "Caching", ["caching"])
        assert rich.score > thin.score
        assert "Expand the content to at least 800 words" in thin.suggestions

    def test_title_is_keyword_when_none_given(self):
        report = SeoAnalyzer().analyze(ARTICLE, "Caching", [])
        assert report.keywords == ["Caching"]

    def test_meta_description_is_plain_and_bounded(self):
        meta = meta_description(ARTICLE)
        assert len(meta) <= 163
        assert meta.endswith("...")
        assert "#" not in meta
        assert meta_description("## Short\n\nJust this.") == "Short Just this."

    def test_strip_markdown(self):
        assert strip_markdown("**bold** [link](http://x) ![img](y.png)\n- item") == "bold link item"


class TestImageAttachers:
    def test_build_from_config(self):
        assert isinstance(build_image_attacher(Settings(IMAGE_PROVIDER="none")), NullImageAttacher)
        assert isinstance(build_image_attacher(Settings(IMAGE_PROVIDER="stock")), StockImageAttacher)
        assert isinstance(build_image_attacher(Settings(IMAGE_PROVIDER="pexels", PEXELS_API_KEY="your-key")), StockImageAttacher)
        assert isinstance(build_image_attacher(Settings(IMAGE_PROVIDER="pexels", PEXELS_API_KEY="abc123")), PexelsImageAttacher)

    @pytest.mark.asyncio
    async def test_pexels_maps_photos_to_sections(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "abc123"
            assert request.url.params["query"] == "Caching"
            return httpx.Response(
                200,
                json={
                    "photos": [
                        {"src": {"large": "https://img/1.jpg"}, "alt": "Servers", "photographer": "Ann"},
                        {"src": {}, "alt": "broken"},
                        {"src": {"original": "https://img/3.jpg"}, "photographer": None},
                    ]
                },
            )

        attacher = PexelsImageAttacher("abc123", transport=httpx.MockTransport(handler))
        images = await attacher.images_for("Caching", ["why caching matters"])
        assert [i["url"] for i in images] == ["https://img/1.jpg", "https://img/3.jpg"]
        assert images[0]["section"] == "introduction"
        assert images[0]["caption"] == "Photo by Ann"
        assert images[1]["alt"] == "Caching"


class TestPostProcessor:
    def _record(self, record_store, content=ARTICLE):
        return record_store.create_record(
            owner="u", title="Caching", status="completed", fields={"content": content, "keywords_json": ["caching"]}
        )

    def test_optimize_seo_persists_report(self, record_store):
        rid = self._record(record_store)
        report = PostProcessor(record_store).optimize_seo(rid)
        rec = record_store.get_record(rid)
        assert rec["seo"]["score"] == report.score
        assert rec["seo"]["metaDescription"] == report.meta_description
        assert rec["seo"]["suggestions"] == report.suggestions
        assert rec["seo"]["keywords"] == ["caching"]

    @pytest.mark.asyncio
    async def test_attach_images_stores_urls(self, record_store):
        rid = self._record(record_store)
        images = await PostProcessor(record_store, images=StockImageAttacher()).attach_images(rid)
        assert len(images) == 2
        assert record_store.get_record(rid)["images"] == images

    @pytest.mark.asyncio
    async def test_run_swallows_image_failures(self, record_store, caplog):
        rid = self._record(record_store)
        processor = PostProcessor(record_store, images=ExplodingImages())

        await processor.run(rid, seo=True, images=True)

        rec = record_store.get_record(rid)
        assert rec["status"] == "completed"
        assert rec["content"] == ARTICLE
        assert rec["seo"]["score"] > 0
        assert rec["images"] == []
        assert "image attachment failed" in caplog.text
