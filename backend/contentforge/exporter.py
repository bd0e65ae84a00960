from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Literal, Optional, Sequence

from .outline import OutlineSection, selected_sections

ExportFormat = Literal["md", "docx", "pdf"]
EXPORT_FORMATS = ("md", "docx", "pdf")


def _utc_now_compact() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def _slug(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (title or "").lower()).strip("-")[:60] or "article"


def normalize_formats(formats: Iterable[str] | None) -> List[str]:
    wanted = [(f or "").strip().lower() for f in (formats or [])]
    wanted = [f for f in dict.fromkeys(wanted) if f in EXPORT_FORMATS]  # de-dupe, preserve order
    return wanted or ["md"]


def assemble_markdown(title: str, sections: Sequence[OutlineSection]) -> str:
    """`# title` followed by each selected, generated section in order."""
    parts = [f"# {title}".strip()]
    for sec in selected_sections(sections):
        body = (sec.content or "").strip()
        if not body:
            continue
        # Sections are asked to open with their own H2; add one if the model didn't.
        if not re.match(r"^#{1,3}\s", body):
            body = f"## {sec.title}\n\n{body}"
        parts.append(body)
    return "\n\n".join(parts).strip() + "\n"


def _write_docx(path: Path, markdown: str) -> None:
    from docx import Document

    doc = Document()
    in_code = False
    for line in markdown.splitlines():
        if line.strip().startswith("```"):
            in_code = not in_code
            continue
        if in_code:
            doc.add_paragraph(line)
            continue
        m = re.match(r"^(#{1,6})\s+(.*)$", line)
        if m:
            doc.add_heading(m.group(2).strip(), level=min(len(m.group(1)), 4))
            continue
        bullet = re.match(r"^\s*[-*+]\s+(.*)$", line)
        if bullet:
            doc.add_paragraph(bullet.group(1), style="List Bullet")
            continue
        numbered = re.match(r"^\s*\d+\.\s+(.*)$", line)
        if numbered:
            doc.add_paragraph(numbered.group(1), style="List Number")
            continue
        if line.strip():
            doc.add_paragraph(re.sub(r"[*_`]+", "", line.strip()))
    doc.save(str(path))


def _latin1(s: str) -> str:
    # Core PDF fonts only cover latin-1
    return s.encode("latin-1", "replace").decode("latin-1")


def _write_pdf(path: Path, markdown: str) -> None:
    from fpdf import FPDF

    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()

    for line in markdown.splitlines():
        m = re.match(r"^(#{1,6})\s+(.*)$", line)
        if m:
            size = {1: 16, 2: 14}.get(len(m.group(1)), 12)
            pdf.set_font("Helvetica", style="B", size=size)
            pdf.multi_cell(0, 8, _latin1(m.group(2).strip()), new_x="LMARGIN", new_y="NEXT")
            pdf.ln(1)
            continue
        if not line.strip():
            pdf.ln(3)
            continue
        pdf.set_font("Helvetica", size=11)
        pdf.multi_cell(0, 6, _latin1(re.sub(r"[*_`]+", "", line)), new_x="LMARGIN", new_y="NEXT")
    pdf.output(str(path))


def export_article(
    *,
    exports_dir: str,
    title: str,
    markdown: str,
    formats: Iterable[str],
    filename_prefix: Optional[str] = None,
) -> dict:
    """Write the article in the requested formats (best-effort).

    Markdown is always written, even when the other formats fail.
    """
    out_dir = Path(exports_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    base = f"{(filename_prefix or _slug(title)).strip().replace(' ', '_')}_{_utc_now_compact()}"
    wanted = normalize_formats(formats)

    out: dict = {"title": title, "exports": [], "errors": []}

    md_path = out_dir / f"{base}.md"
    md_path.write_text(markdown, encoding="utf-8")
    out["exports"].append({"format": "md", "path": str(md_path)})

    if "docx" in wanted:
        try:
            docx_path = out_dir / f"{base}.docx"
            _write_docx(docx_path, markdown)
            out["exports"].append({"format": "docx", "path": str(docx_path)})
        except Exception as e:
            out["errors"].append(f"docx_export_failed: {e}")

    if "pdf" in wanted:
        try:
            pdf_path = out_dir / f"{base}.pdf"
            _write_pdf(pdf_path, markdown)
            out["exports"].append({"format": "pdf", "path": str(pdf_path)})
        except Exception as e:
            out["errors"].append(f"pdf_export_failed: {e}")

    return out


def record_markdown(title: str, content: str) -> str:
    body = (content or "").strip()
    if re.match(r"^#\s", body):
        return body + "\n"
    return f"# {title}\n\n{body}\n"
