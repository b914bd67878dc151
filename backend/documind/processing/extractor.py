"""
Text Extraction
═══════════════

Turns raw document bytes into plain text plus per-page texts:

  PDF            → pypdf, one entry per page
  DOCX           → python-docx, non-empty paragraphs joined by newlines
  TXT / MD / *   → UTF-8 decode, latin-1 fallback

`pages` is filled only for formats with real page boundaries (PDF); the
indexer chunks page by page when there is more than one.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_PDF_TYPES  = frozenset({"pdf", "application/pdf"})
_DOCX_TYPES = frozenset({
    "docx",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
})


@dataclass
class ExtractedText:
    """
    text       : full document text ("\\n\\n" between pages)
    page_count : number of pages (1 for non-paginated formats)
    pages      : per-page text, pages[i] is page i + 1; empty when N/A
    """
    text:       str
    page_count: int
    pages:      list[str] = field(default_factory=list)


def _normalize_file_type(file_type: str) -> str:
    return file_type.strip().lower().lstrip(".")


def extract_text(data: bytes, file_type: str) -> ExtractedText:
    """
    Extract plain text from PDF, DOCX, or text content.
    Parse failures propagate to the caller (the indexer records them).
    """
    kind = _normalize_file_type(file_type)

    try:
        if kind in _PDF_TYPES:
            return _extract_pdf(data)
        if kind in _DOCX_TYPES:
            return _extract_docx(data)
        return _extract_plain(data)
    except Exception as exc:
        logger.warning("Text extraction failed | type=%s error=%s", file_type, exc)
        raise


def _extract_pdf(data: bytes) -> ExtractedText:
    """Extract text from PDF bytes using pypdf."""
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return ExtractedText(text="\n\n".join(pages), page_count=len(pages), pages=pages)


def _extract_docx(data: bytes) -> ExtractedText:
    """Extract text from DOCX bytes using python-docx."""
    import docx

    doc = docx.Document(io.BytesIO(data))
    text = "\n".join(para.text for para in doc.paragraphs if para.text.strip())
    return ExtractedText(text=text, page_count=1)


def _extract_plain(data: bytes) -> ExtractedText:
    # Plain text / markdown: decode with UTF-8, fallback to latin-1
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = data.decode("latin-1", errors="replace")
    return ExtractedText(text=text, page_count=1)
