import json
import time

import pytest
from fastapi.testclient import TestClient

from contentforge.main import create_app
from contentforge.postprocess import StockImageAttacher
from contentforge.research import CompetitorResearch

from conftest import ACCOUNT, ARTICLE, FakeAdapter

HEADERS = {"X-Account-Id": ACCOUNT}

OUTLINE_JSON = json.dumps(
    {
        "outline": [
            {"title": "Why Caching Matters", "description": "Latency"},
            {"title": "Invalidation", "description": "TTLs"},
        ],
        "seoStrategy": "Beginner intent",
    }
)


@pytest.fixture
def fake():
    return FakeAdapter()


@pytest.fixture
def client(cfg, fake):
    app = create_app(
        cfg,
        adapter_factory=lambda creds: fake,
        research=CompetitorResearch(cfg),
        images=StockImageAttacher(),
    )
    with TestClient(app) as c:
        yield c


@pytest.fixture
def configured(client):
    r = client.put(
        "/account/credentials",
        json={"apiKey": "sk-test", "provider": "openai", "creativity": "balanced"},
        headers=HEADERS,
    )
    assert r.status_code == 200
    return client


def _wait_until_done(client, record_id, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        status = client.get(f"/generate/status/{record_id}", headers=HEADERS).json()
        if status["status"] != "generating" and status["progress"] in ("Completed", "Failed"):
            return status
        time.sleep(0.05)
    raise AssertionError("generation did not finish")


class TestAccount:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_missing_account_header(self, client):
        r = client.get("/account")
        assert r.status_code == 401
        assert r.json()["detail"]["code"] == "account_required"

    def test_credentials_never_echo_key(self, configured):
        body = configured.get("/account", headers=HEADERS).json()
        assert body["aiSettings"]["hasApiKey"] is True
        assert body["aiSettings"]["model"] == "gpt-4o-mini"
        assert "sk-test" not in json.dumps(body)

    def test_invalid_creativity(self, client):
        r = client.put("/account/credentials", json={"apiKey": "k", "creativity": "wild"}, headers=HEADERS)
        assert r.status_code == 422
        assert r.json()["detail"]["code"] == "validation_error"


class TestGenerationFlow:
    def test_generate_poll_and_read(self, configured, fake):
        r = configured.post(
            "/generate",
            json={"topic": "Intro to Caching", "keywords": "caching, redis", "targetLength": 1500},
            headers=HEADERS,
        )
        assert r.status_code == 202
        record_id = r.json()["recordId"]

        status = _wait_until_done(configured, record_id)
        assert status["status"] == "completed"
        assert status["wordCount"] == len(ARTICLE.split())
        assert status["error"] is None

        rec = configured.get(f"/contents/{record_id}", headers=HEADERS).json()
        assert rec["content"] == ARTICLE
        assert rec["metadata"]["readingTime"] >= 1
        assert rec["analytics"]["views"] == 1
        assert fake.calls[0]["max_tokens"] == 3000
        assert fake.calls[0]["temperature"] == 0.5

        again = configured.get(f"/contents/{record_id}", headers=HEADERS).json()
        assert again["analytics"]["views"] == 2

        account = configured.get("/account", headers=HEADERS).json()
        assert account["usage"]["totalPosts"] == 1

    def test_generate_without_credentials(self, client):
        r = client.post("/generate", json={"topic": "Caching"}, headers=HEADERS)
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "configuration_required"
        assert client.get("/contents", headers=HEADERS).json()["contents"] == []

    def test_generate_validates_input(self, configured):
        r = configured.post("/generate", json={"topic": "  "}, headers=HEADERS)
        assert r.status_code == 422
        r = configured.post("/generate", json={"topic": "x", "targetLength": 50}, headers=HEADERS)
        assert r.status_code == 422

    def test_structured_outline_is_flattened(self, configured, fake):
        outline = [
            {"title": "Basics", "description": "what it is", "selected": True},
            {"title": "Skip", "selected": False},
            {"title": "Eviction"},
        ]
        r = configured.post("/generate", json={"topic": "Caching", "outline": outline}, headers=HEADERS)
        _wait_until_done(configured, r.json()["recordId"])
        assert "1. Basics - what it is\n2. Eviction" in fake.prompts[0]

    def test_failure_then_retry(self, configured, fake):
        fake.responses = [RuntimeError("rate limited")]
        record_id = configured.post("/generate", json={"topic": "Caching"}, headers=HEADERS).json()["recordId"]

        status = _wait_until_done(configured, record_id)
        assert status["status"] == "draft"
        assert "rate limited" in status["error"]

        # The worker releases the record key just after writing the failure.
        for _ in range(20):
            r = configured.post(f"/generate/{record_id}/retry", headers=HEADERS)
            if r.status_code != 409:
                break
            time.sleep(0.05)
        assert r.status_code == 202
        status = _wait_until_done(configured, record_id)
        assert status["status"] == "completed"
        assert status["error"] is None

    def test_malformed_body_uses_error_shape(self, configured):
        r = configured.post("/generate", json={"topic": "Caching", "targetLength": 1500.5}, headers=HEADERS)
        assert r.status_code == 422
        detail = r.json()["detail"]
        assert detail["code"] == "validation_error"
        assert "targetLength" in detail["message"]

        r = configured.post("/contents/any/publish", json={"url": "https://blog/x"}, headers=HEADERS)
        assert r.status_code == 422
        assert r.json()["detail"]["code"] == "validation_error"
        assert "externalId" in r.json()["detail"]["message"]

    def test_unknown_record(self, configured):
        r = configured.get("/generate/status/does-not-exist", headers=HEADERS)
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "not_found"


class TestContents:
    def _completed(self, client):
        record_id = client.post("/generate", json={"topic": "Intro to Caching"}, headers=HEADERS).json()["recordId"]
        _wait_until_done(client, record_id)
        return record_id

    def test_list_search_and_status_filter(self, configured):
        record_id = self._completed(configured)
        found = configured.get("/contents", params={"search": "CACHING"}, headers=HEADERS).json()["contents"]
        assert [c["id"] for c in found] == [record_id]
        assert configured.get("/contents", params={"status": "draft"}, headers=HEADERS).json()["contents"] == []
        assert configured.get("/contents", params={"status": "bogus"}, headers=HEADERS).status_code == 422
        other = configured.get("/contents", headers={"X-Account-Id": "someone-else"}).json()["contents"]
        assert other == []

    def test_edit_content_recomputes_metadata(self, configured):
        record_id = self._completed(configured)
        r = configured.put(
            f"/contents/{record_id}",
            json={"title": "Edited", "content": "fresh words " * 300, "keywords": "caching, cdn"},
            headers=HEADERS,
        )
        assert r.status_code == 200
        body = r.json()
        assert body["title"] == "Edited"
        assert body["metadata"]["wordCount"] == 600
        assert body["metadata"]["readingTime"] == 3
        assert body["seo"]["keywords"] == ["caching", "cdn"]

        r = configured.put(f"/contents/{record_id}", json={"status": "published"}, headers=HEADERS)
        assert r.status_code == 422
        r = configured.put("/contents/missing", json={"title": "x"}, headers=HEADERS)
        assert r.status_code == 404

    def test_seo_images_publish_export(self, configured):
        record_id = self._completed(configured)

        seo = configured.post(f"/contents/{record_id}/seo", json={"keywords": ["caching"]}, headers=HEADERS).json()
        assert 0 <= seo["score"] <= 100
        assert seo["keywords"] == ["caching"]

        images = configured.post(f"/contents/{record_id}/images", headers=HEADERS).json()["images"]
        assert len(images) == 2

        published = configured.post(
            f"/contents/{record_id}/publish", json={"url": "https://blog/x", "externalId": "7"}, headers=HEADERS
        ).json()
        assert published["status"] == "published"
        assert published["publishing"]["externalId"] == "7"

        exported = configured.post(f"/contents/{record_id}/export", json={"formats": ["md", "pdf"]}, headers=HEADERS).json()
        assert [e["format"] for e in exported["exports"]] == ["md", "pdf"]


class TestUpload:
    def test_upload_text(self, client):
        text = b"Caching keeps hot data close. Eviction policies decide what leaves the cache. More caching notes here."
        r = client.post("/upload", files={"file": ("notes.txt", text, "text/plain")}, headers=HEADERS)
        assert r.status_code == 200
        body = r.json()
        assert body["filename"] == "notes.txt"
        assert body["extractedText"].startswith("Caching keeps hot data close.")
        assert body["characterCount"] == len(body["extractedText"])
        assert "caching" in body["keywords"]

    def test_upload_unsupported(self, client):
        r = client.post("/upload", files={"file": ("pic.png", b"\x89PNG", "image/png")}, headers=HEADERS)
        assert r.status_code == 422


class TestCompetitiveApi:
    def test_research_fallback(self, client):
        r = client.post("/competitive/research", json={"topic": "Intro to Caching"}, headers=HEADERS)
        assert r.status_code == 200
        assert [c["ranking"] for c in r.json()["competitors"]] == [1, 2, 3]

    def test_session_lifecycle(self, configured, fake):
        fake.responses = [OUTLINE_JSON]
        r = configured.post(
            "/competitive/sessions", json={"title": "Intro to Caching", "wordsPerSection": "short"}, headers=HEADERS
        )
        assert r.status_code == 201
        session = r.json()
        sid = session["id"]
        assert [s["wordCount"] for s in session["outline"]] == [500, 500]

        r = configured.patch(f"/competitive/sessions/{sid}/sections/1", json={"wordCount": 300}, headers=HEADERS)
        assert r.json()["outline"][1]["wordCount"] == 300

        r = configured.post(f"/competitive/sessions/{sid}/sections", json={"title": "FAQ"}, headers=HEADERS)
        assert r.status_code == 201
        assert len(r.json()["outline"]) == 3

        r = configured.post(f"/competitive/sessions/{sid}/sections/2/move", json={"direction": "up"}, headers=HEADERS)
        assert [s["title"] for s in r.json()["outline"]] == ["Why Caching Matters", "FAQ", "Invalidation"]

        r = configured.post(f"/competitive/sessions/{sid}/generate-all", headers=HEADERS)
        assert r.status_code == 202

        deadline = time.time() + 5
        while time.time() < deadline:
            body = configured.get(f"/competitive/sessions/{sid}", headers=HEADERS).json()
            if body["batch"]["status"] != "running":
                break
            time.sleep(0.05)
        assert body["batch"]["status"] == "completed"
        assert body["batch"]["completed"] == 3

        r = configured.post(f"/competitive/sessions/{sid}/export", json={"formats": ["md"]}, headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["errors"] == []

        listed = configured.get("/competitive/sessions", headers=HEADERS).json()["sessions"]
        assert [s["id"] for s in listed] == [sid]

    def test_section_provider_error(self, configured, fake):
        fake.responses = [RuntimeError("upstream 500")]
        r = configured.post("/competitive/section", json={"title": "Eviction", "wordCount": 300}, headers=HEADERS)
        assert r.status_code == 502
        assert r.json()["detail"]["code"] == "provider_error"

    def test_unknown_bucket(self, configured):
        r = configured.post("/competitive/outline", json={"title": "Caching", "wordsPerSection": "huge"}, headers=HEADERS)
        assert r.status_code == 422
