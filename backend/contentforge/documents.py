from __future__ import annotations

import io
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping

from docx import Document as DocxDocument
from pypdf import PdfReader

from .errors import ValidationError

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIME = "text/plain"

_EXTENSION_MIME = {".pdf": PDF_MIME, ".docx": DOCX_MIME, ".txt": TEXT_MIME, ".md": TEXT_MIME}


@dataclass
class UploadedFile:
    filename: str
    extracted_text: str

    def as_dict(self) -> Dict[str, str]:
        return {"filename": self.filename, "extractedText": self.extracted_text}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "UploadedFile":
        return cls(
            filename=str(d.get("filename") or d.get("originalName") or ""),
            extracted_text=str(d.get("extractedText") or d.get("extracted_text") or ""),
        )


def clean_text(text: str) -> str:
    """Normalize line endings and collapse excess whitespace."""
    s = (text or "").replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r" *\n *", "\n", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    return s.strip()


def guess_mime_type(filename: str, declared: str | None = None) -> str:
    declared = (declared or "").split(";")[0].strip().lower()
    if declared in {PDF_MIME, DOCX_MIME, TEXT_MIME}:
        return declared
    name = (filename or "").lower()
    for ext, mime in _EXTENSION_MIME.items():
        if name.endswith(ext):
            return mime
    return declared


def _extract_pdf(data: bytes) -> str:
    """Embedded-text extraction only; scanned PDFs come back (near) empty."""
    reader = PdfReader(io.BytesIO(data))
    parts: List[str] = []
    for page in reader.pages:
        t = page.extract_text() or ""
        if t.strip():
            parts.append(t)
    return "\n\n".join(parts)


def _extract_docx(data: bytes) -> str:
    doc = DocxDocument(io.BytesIO(data))
    return "\n".join(p.text for p in doc.paragraphs)


def extract_text(data: bytes, mime_type: str) -> str:
    """Plain text from PDF, DOCX or TXT bytes.

    Raises ValidationError for unsupported types or unreadable files.
    """
    if mime_type == PDF_MIME:
        extractor = _extract_pdf
    elif mime_type == DOCX_MIME:
        extractor = _extract_docx
    elif mime_type == TEXT_MIME:
        return clean_text((data or b"").decode("utf-8", errors="replace"))
    else:
        raise ValidationError(f"Unsupported file type: {mime_type or 'unknown'}")

    try:
        return clean_text(extractor(data or b""))
    except Exception as e:
        raise ValidationError(f"Failed to extract text from document: {e}") from e


def split_sentences(text: str) -> List[str]:
    t = re.sub(r"\s+", " ", text or "").strip()
    if not t:
        return []
    return [p.strip() for p in re.split(r"(?<=[.!?])\s+", t) if p.strip()]


def extract_keywords(text: str, limit: int = 10) -> List[str]:
    words = [w for w in re.sub(r"[^\w\s]", "", (text or "").lower()).split() if len(w) > 3]
    return [w for w, _ in Counter(words).most_common(limit)]


def summarize_document(text: str) -> Dict[str, Any]:
    sentences = [s for s in split_sentences(text) if len(s) > 10]
    return {
        "summary": " ".join(sentences[:3]),
        "keywords": extract_keywords(text),
        "wordCount": len((text or "").split()),
        "characterCount": len(text or ""),
    }


def build_reference_context(files: Iterable[UploadedFile], *, limit: int) -> str:
    """Concatenate extracted document text into one bounded blob for prompts."""
    pieces = [f.extracted_text.strip() for f in files if f.extracted_text and f.extracted_text.strip()]
    blob = "\n\n".join(pieces)
    if len(blob) > limit:
        blob = blob[:limit].rstrip()
    return blob
