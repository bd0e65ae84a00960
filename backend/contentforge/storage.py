from __future__ import annotations

import json
import math
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import GenerationInProgress, NotFoundError, ValidationError
from .llm_router import ProviderCredentials

STATUSES = ("generating", "draft", "completed", "published")
EDITABLE_STATUSES = ("draft", "completed")
WORDS_PER_MINUTE = 200


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def count_words(content: str | None) -> int:
    return len((content or "").split())


def reading_time(word_count: int) -> int:
    return math.ceil(word_count / WORDS_PER_MINUTE)


class _SQLiteStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn


RECORD_COLUMNS = [
    "record_id",
    "owner",
    "title",
    "status",
    "created_at",
    "updated_at",
    # CONTENT
    "content",
    "outline",
    # METADATA
    "language",
    "tone",
    "target_length",
    "word_count",
    "reading_time",
    # SEO
    "keywords_json",
    "meta_description",
    "seo_score",
    "seo_suggestions_json",
    # GENERATION
    "provider",
    "model",
    "generation_time_ms",
    "error",
    "progress",
    "request_json",
    # ATTACHMENTS
    "uploaded_files_json",
    "images_json",
    # ANALYTICS / PUBLISHING
    "views",
    "published_url",
    "external_id",
    "published_at",
]

JSON_COLUMNS = {"keywords_json", "seo_suggestions_json", "request_json", "uploaded_files_json", "images_json"}

# Derived from `content`; callers never write them.
DERIVED_COLUMNS = {"word_count", "reading_time"}


class RecordStore(_SQLiteStore):
    """GenerationRecord persistence.

    The background task and read endpoints touch disjoint columns, so rows are
    updated field-by-field without locking.
    """

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS contents (
                  record_id TEXT PRIMARY KEY,
                  owner TEXT NOT NULL,
                  title TEXT NOT NULL,
                  status TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  content TEXT,
                  outline TEXT,
                  language TEXT,
                  tone TEXT,
                  target_length INTEGER,
                  word_count INTEGER NOT NULL DEFAULT 0,
                  reading_time INTEGER NOT NULL DEFAULT 0,
                  keywords_json TEXT,
                  meta_description TEXT,
                  seo_score INTEGER NOT NULL DEFAULT 0,
                  seo_suggestions_json TEXT,
                  provider TEXT,
                  model TEXT,
                  generation_time_ms INTEGER,
                  error TEXT,
                  progress TEXT,
                  request_json TEXT,
                  uploaded_files_json TEXT,
                  images_json TEXT,
                  views INTEGER NOT NULL DEFAULT 0,
                  published_url TEXT,
                  external_id TEXT,
                  published_at TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contents_owner_created ON contents (owner, created_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contents_status ON contents (status)")
            conn.commit()

    def create_record(self, *, owner: str, title: str, status: str = "generating", fields: Dict[str, Any] | None = None) -> str:
        if status not in STATUSES:
            raise ValidationError(f"invalid status: {status}")
        fields = dict(fields or {})
        record_id = uuid.uuid4().hex
        now = _utc_now_iso()

        row: Dict[str, Any] = {
            "record_id": record_id,
            "owner": owner,
            "title": title,
            "status": status,
            "created_at": now,
            "updated_at": now,
        }
        if fields.get("content"):
            row["word_count"] = count_words(fields["content"])
            row["reading_time"] = reading_time(row["word_count"])

        for k in RECORD_COLUMNS:
            if k in row or k in DERIVED_COLUMNS or k not in fields:
                continue
            v = fields[k]
            row[k] = json.dumps(v, ensure_ascii=False) if k in JSON_COLUMNS else v

        cols = list(row)
        placeholders = ",".join(["?"] * len(cols))
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO contents ({','.join(cols)}) VALUES ({placeholders})",
                [row[c] for c in cols],
            )
            conn.commit()
        return record_id

    def get_row(self, record_id: str, owner: str | None = None) -> Optional[Dict[str, Any]]:
        q = "SELECT * FROM contents WHERE record_id = ?"
        args: List[Any] = [record_id]
        if owner is not None:
            q += " AND owner = ?"
            args.append(owner)
        with self._connect() as conn:
            row = conn.execute(q, args).fetchone()
        return _decode_row(row) if row else None

    def get_record(self, record_id: str, owner: str | None = None) -> Optional[Dict[str, Any]]:
        row = self.get_row(record_id, owner)
        return record_view(row) if row else None

    def require_row(self, record_id: str, owner: str | None = None) -> Dict[str, Any]:
        row = self.get_row(record_id, owner)
        if not row:
            raise NotFoundError("Content not found")
        return row

    def list_records(
        self,
        *,
        owner: str,
        search: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        q = "SELECT * FROM contents"
        where: List[str] = ["owner = ?"]
        args: List[Any] = [owner]

        if status:
            where.append("status = ?")
            args.append(status)
        if search and search.strip():
            where.append("(LOWER(title) LIKE ? OR LOWER(COALESCE(content, '')) LIKE ?)")
            needle = f"%{search.strip().lower()}%"
            args.extend([needle, needle])

        q += " WHERE " + " AND ".join(where)
        q += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        args.extend([int(limit), int(offset)])

        with self._connect() as conn:
            rows = conn.execute(q, args).fetchall()
        return [record_view(_decode_row(r)) for r in rows]

    def update_record(self, record_id: str, fields: Dict[str, Any]) -> None:
        """Update columns in place. Word count and reading time follow `content`."""
        if not fields:
            return
        bad = DERIVED_COLUMNS.intersection(fields)
        if bad:
            raise ValidationError(f"{', '.join(sorted(bad))} are derived from content and cannot be set")
        if "status" in fields and fields["status"] not in STATUSES:
            raise ValidationError(f"invalid status: {fields['status']}")

        fields = dict(fields)
        if "content" in fields:
            words = count_words(fields["content"])
            fields["word_count"] = words
            fields["reading_time"] = reading_time(words)
        fields["updated_at"] = _utc_now_iso()

        sets: List[str] = []
        args: List[Any] = []
        for k, v in fields.items():
            if k not in RECORD_COLUMNS or k in {"record_id", "owner", "created_at"}:
                continue
            if k in JSON_COLUMNS:
                v = json.dumps(v, ensure_ascii=False)
            sets.append(f"{k} = ?")
            args.append(v)

        args.append(record_id)
        with self._connect() as conn:
            conn.execute(f"UPDATE contents SET {', '.join(sets)} WHERE record_id = ?", args)
            conn.commit()

    def increment_views(self, record_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE contents SET views = views + 1 WHERE record_id = ?", (record_id,))
            conn.commit()

    def edit_record(
        self,
        record_id: str,
        *,
        owner: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        keywords: Optional[List[str]] = None,
        meta_description: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply a user edit. Rejected while the record is still generating."""
        row = self.require_row(record_id, owner)
        if row["status"] == "generating":
            raise GenerationInProgress("Content is still being generated")

        fields: Dict[str, Any] = {}
        if title is not None:
            if not title.strip():
                raise ValidationError("title cannot be empty")
            fields["title"] = title.strip()
        if content is not None:
            fields["content"] = content
        if keywords is not None:
            fields["keywords_json"] = keywords
        if meta_description is not None:
            fields["meta_description"] = meta_description
        if status is not None:
            if status not in EDITABLE_STATUSES:
                raise ValidationError(f"status must be one of: {', '.join(EDITABLE_STATUSES)}")
            fields["status"] = status
        self.update_record(record_id, fields)
        return self.get_record(record_id, owner) or {}

    def mark_published(self, record_id: str, *, owner: str, url: str, external_id: str) -> Dict[str, Any]:
        row = self.require_row(record_id, owner)
        if row["status"] not in {"completed", "published"}:
            raise ValidationError("Only completed content can be published")
        self.update_record(
            record_id,
            {"status": "published", "published_url": url, "external_id": external_id, "published_at": _utc_now_iso()},
        )
        return self.get_record(record_id, owner) or {}


def _decode_row(r: sqlite3.Row) -> Dict[str, Any]:
    d = dict(r)
    for jf in JSON_COLUMNS:
        if d.get(jf):
            d[jf] = json.loads(d[jf])
    return d


def record_view(row: Dict[str, Any]) -> Dict[str, Any]:
    """Nested GenerationRecord shape returned to API clients."""
    return {
        "id": row["record_id"],
        "owner": row["owner"],
        "title": row["title"],
        "status": row["status"],
        "content": row.get("content"),
        "outline": row.get("outline"),
        "metadata": {
            "language": row.get("language"),
            "tone": row.get("tone"),
            "targetLength": row.get("target_length"),
            "wordCount": row.get("word_count") or 0,
            "readingTime": row.get("reading_time") or 0,
        },
        "seo": {
            "keywords": row.get("keywords_json") or [],
            "metaDescription": row.get("meta_description"),
            "score": row.get("seo_score") or 0,
            "suggestions": row.get("seo_suggestions_json") or [],
        },
        "generation": {
            "provider": row.get("provider"),
            "model": row.get("model"),
            "generationTime": row.get("generation_time_ms"),
            "error": row.get("error"),
        },
        "uploadedFiles": row.get("uploaded_files_json") or [],
        "images": row.get("images_json") or [],
        "analytics": {"views": row.get("views") or 0},
        "publishing": {
            "url": row.get("published_url"),
            "externalId": row.get("external_id"),
            "publishedAt": row.get("published_at"),
        },
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


class CredentialStore(_SQLiteStore):
    """Per-account provider credentials and lifetime usage counters."""

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                  account_id TEXT PRIMARY KEY,
                  api_key TEXT,
                  provider TEXT NOT NULL DEFAULT 'openai',
                  model TEXT,
                  creativity TEXT NOT NULL DEFAULT 'balanced',
                  total_posts INTEGER NOT NULL DEFAULT 0,
                  total_words INTEGER NOT NULL DEFAULT 0,
                  words_used INTEGER NOT NULL DEFAULT 0,
                  words_limit INTEGER NOT NULL DEFAULT 10000,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def save_credentials(
        self,
        account_id: str,
        *,
        api_key: str | None,
        provider: str,
        model: str | None = None,
        creativity: str = "balanced",
    ) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO accounts (account_id, api_key, provider, model, creativity, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                  api_key=COALESCE(excluded.api_key, accounts.api_key),
                  provider=excluded.provider,
                  model=excluded.model,
                  creativity=excluded.creativity,
                  updated_at=excluded.updated_at
                """,
                (account_id, api_key, provider, model, creativity, now, now),
            )
            conn.commit()

    def get_credentials(self, account_id: str) -> Optional[ProviderCredentials]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT api_key, provider, model, creativity FROM accounts WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        if not row or not row["api_key"]:
            return None
        return ProviderCredentials(
            api_key=row["api_key"],
            provider=row["provider"],
            model=row["model"] or "",
            creativity=row["creativity"],
        )

    def increment_usage(self, account_id: str, *, posts: int = 0, words: int = 0) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO accounts (account_id, total_posts, total_words, words_used, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                  total_posts = accounts.total_posts + excluded.total_posts,
                  total_words = accounts.total_words + excluded.total_words,
                  words_used = accounts.words_used + excluded.words_used,
                  updated_at = excluded.updated_at
                """,
                (account_id, int(posts), int(words), int(words), now, now),
            )
            conn.commit()

    def get_account(self, account_id: str) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE account_id = ?", (account_id,)).fetchone()
        d = dict(row) if row else {}
        return {
            "accountId": account_id,
            "aiSettings": {
                "provider": d.get("provider") or "openai",
                "model": d.get("model") or "",
                "creativity": d.get("creativity") or "balanced",
                "hasApiKey": bool(d.get("api_key")),
            },
            "usage": {
                "totalPosts": d.get("total_posts") or 0,
                "totalWords": d.get("total_words") or 0,
            },
            "subscription": {
                "wordsUsed": d.get("words_used") or 0,
                "wordsLimit": d.get("words_limit") or 10000,
            },
        }

    def get_usage(self, account_id: str) -> Dict[str, int]:
        account = self.get_account(account_id)
        return {**account["usage"], **account["subscription"]}
