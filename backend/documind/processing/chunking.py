"""
Recursive Character Chunker  —  Overlapping, Size-Bounded Segments
══════════════════════════════════════════════════════════════════

Splits extracted document text into chunks of at most `chunk_size`
characters, with `chunk_overlap` characters repeated between neighbours.

Boundary selection
──────────────────
  For every window [start, start + chunk_size) that does not reach the end
  of the text, we look backwards (at most BREAK_SEARCH_WINDOW chars) for the
  highest-priority separator:

      "\\n\\n"  →  "\\n"  →  ". "  →  "? "  →  "! "  →  "; "  →  ", "  →  " "

  and cut just after it. If none is found the window is cut hard at
  chunk_size, which is what guarantees the size bound.

  The next window starts `chunk_overlap` chars before the previous cut,
  unless that would not move forward, in which case it starts at the cut.

Post-pass
─────────
  merge_small_chunks() folds chunks shorter than `min_chunk_size` into a
  neighbour (forward; a trailing fragment goes backward) and re-indexes.

Determinism
───────────
  No randomness, no model calls: identical text + options always produce
  identical boundaries. Offsets are [start, end) spans into the
  *normalized* text returned by normalize_text().
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from documind.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE     = 1000
DEFAULT_CHUNK_OVERLAP  = 200
DEFAULT_MIN_CHUNK_SIZE = 100

SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", "? ", "! ", "; ", ", ", " ")
BREAK_SEARCH_WINDOW = 200

# GPT tokenizer averages ~0.25 tokens/char for English text
CHARS_PER_TOKEN_EST = 4

PAGE_SEPARATOR = "\n\n"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkOptions:
    chunk_size:     int = DEFAULT_CHUNK_SIZE
    chunk_overlap:  int = DEFAULT_CHUNK_OVERLAP
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ValidationError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValidationError(
                f"chunk_overlap must be in [0, chunk_size), got {self.chunk_overlap}"
            )
        if self.min_chunk_size < 0:
            raise ValidationError(f"min_chunk_size must be >= 0, got {self.min_chunk_size}")


@dataclass
class TextChunk:
    """
    One chunk of a document.

    content      : stripped chunk text
    chunk_index  : 0-based position within the document
    start_offset : inclusive start of the span in the normalized text
    end_offset   : exclusive end of the span
    token_count  : estimated token count (ceil(len / 4))
    page_number  : 1-based page, when chunked page by page
    """
    content:      str
    chunk_index:  int
    start_offset: int
    end_offset:   int
    token_count:  int
    page_number:  Optional[int] = None
    metadata:     dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_text(text: str) -> str:
    """
    Normalize Unicode, unify line endings, collapse excess whitespace.
    Preserves paragraph breaks (double newlines).
    """
    # Normalize Unicode (NFC form: consistent character composition)
    text = unicodedata.normalize("NFC", text)
    # Replace non-breaking spaces, zero-width chars, etc.
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    # Collapse 3+ newlines to double newline (preserve paragraph breaks)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN_EST)


def _find_break_point(text: str, start: int, end: int) -> int:
    floor = max(start, end - BREAK_SEARCH_WINDOW)
    for sep in SEPARATORS:
        idx = text.rfind(sep, floor, end)
        if idx > start:
            return idx + len(sep)
    return end


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def chunk_text(text: str, options: ChunkOptions | None = None) -> list[TextChunk]:
    """
    Split `text` into overlapping chunks. Does not merge small chunks; see
    merge_small_chunks().
    """
    opts = options or ChunkOptions()
    opts.validate()

    text = normalize_text(text)
    if not text:
        return []

    if len(text) <= opts.chunk_size:
        return [TextChunk(
            content=text,
            chunk_index=0,
            start_offset=0,
            end_offset=len(text),
            token_count=estimate_tokens(text),
        )]

    chunks: list[TextChunk] = []
    start = 0
    length = len(text)

    while start < length:
        end = min(start + opts.chunk_size, length)
        if end < length:
            end = _find_break_point(text, start, end)

        content = text[start:end].strip()
        if content:
            chunks.append(TextChunk(
                content=content,
                chunk_index=len(chunks),
                start_offset=start,
                end_offset=end,
                token_count=estimate_tokens(content),
            ))

        if end >= length:
            break

        next_start = end - opts.chunk_overlap
        start = next_start if next_start > start else end

    logger.debug(
        "chunk_text | chars=%d chunks=%d size=%d overlap=%d",
        length, len(chunks), opts.chunk_size, opts.chunk_overlap,
    )
    return chunks


def merge_small_chunks(chunks: list[TextChunk], min_size: int = DEFAULT_MIN_CHUNK_SIZE) -> list[TextChunk]:
    """
    Fold chunks shorter than `min_size` into the following chunk; a short
    final chunk is folded into the one before it. Output is re-indexed.
    """
    if not chunks:
        return []

    merged: list[TextChunk] = []
    current = chunks[0]

    for nxt in chunks[1:]:
        if len(current.content) < min_size:
            current = _join(current, nxt)
        else:
            merged.append(current)
            current = nxt

    if merged and len(current.content) < min_size:
        merged[-1] = _join(merged[-1], current)
    else:
        merged.append(current)

    return [replace(chunk, chunk_index=i) for i, chunk in enumerate(merged)]


def _join(first: TextChunk, second: TextChunk) -> TextChunk:
    content = f"{first.content} {second.content}"
    return TextChunk(
        content=content,
        chunk_index=first.chunk_index,
        start_offset=first.start_offset,
        end_offset=max(first.end_offset, second.end_offset),
        token_count=estimate_tokens(content),
        page_number=first.page_number,
        metadata={**first.metadata, **second.metadata},
    )


def join_pages(pages: Iterable[str]) -> str:
    """Full-document text whose offsets chunk_by_pages() refers to."""
    return PAGE_SEPARATOR.join(p for p in (normalize_text(page) for page in pages) if p)


def chunk_by_pages(pages: list[str], options: ChunkOptions | None = None) -> list[TextChunk]:
    """
    Chunk each page on its own so no chunk straddles a page break.

    `pages[i]` is page i + 1. Offsets are shifted into the text produced by
    join_pages(pages); chunk indices run across the whole document.
    """
    chunks: list[TextChunk] = []
    offset = 0

    for page_number, page in enumerate(pages, start=1):
        normalized = normalize_text(page)
        if not normalized:
            continue

        for chunk in chunk_text(normalized, options):
            chunks.append(replace(
                chunk,
                chunk_index=len(chunks),
                start_offset=offset + chunk.start_offset,
                end_offset=offset + chunk.end_offset,
                page_number=page_number,
                metadata={**chunk.metadata, "page_number": page_number},
            ))

        offset += len(normalized) + len(PAGE_SEPARATOR)

    return chunks
