"""Content-derived identifiers for source revisions and chunks."""

from __future__ import annotations

import hashlib
import math
from collections.abc import Iterable
from dataclasses import dataclass

from .chunking import AnchoredChunk

_PAGE_SEPARATOR = "\n\n---\n\n"


@dataclass(slots=True, frozen=True)
class PageText:
    page_no: int
    text: str


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def compute_source_revision(canonical_text: str) -> str:
    return sha256_hex(canonical_text)


def compute_pdf_source_revision(pages: Iterable[PageText]) -> str:
    """Hash canonical page texts in page order, independent of input order."""

    ordered = sorted(pages, key=lambda page: page.page_no)
    serialized = _PAGE_SEPARATOR.join(f"page:{page.page_no}\n{page.text}" for page in ordered)
    return sha256_hex(serialized)


def compute_chunk_id(
    *,
    source_id: str,
    source_revision: str,
    page_no: int | None,
    chunk: AnchoredChunk,
) -> str:
    """Stable id for a chunk; identical content and anchors always hash the same."""

    parts = [
        f"source_id:{source_id}",
        f"source_revision:{source_revision}",
        f"page_no:{'' if page_no is None else page_no}",
        f"start_offset:{chunk.start_offset}",
        f"end_offset:{chunk.end_offset}",
        "text:",
        chunk.text,
    ]
    return sha256_hex("\n".join(parts))


def estimate_token_count(text: str) -> int:
    """Rough token estimate (four characters per token)."""

    return math.ceil(len(text) / 4)
