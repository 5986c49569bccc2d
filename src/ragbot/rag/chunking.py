"""Deterministic, offset-anchored chunking of canonical text."""

from __future__ import annotations

from dataclasses import dataclass

MIN_CHUNK_SIZE = 100
# Boundary search starts this far into the window so chunks never get too short.
_MIN_WINDOW_RATIO = 0.6
# Most structural separator first; the rightmost occurrence of the first hit wins.
_SEPARATORS = ("\n\n", "\n", " ")
_SKIPPABLE = " \n\r\t"


@dataclass(slots=True, frozen=True)
class ChunkingConfig:
    """Chunk size and overlap, both measured in characters."""

    chunk_size: int = 1200
    chunk_overlap: int = 200

    def __post_init__(self) -> None:
        if isinstance(self.chunk_size, bool) or not isinstance(self.chunk_size, int):
            msg = "chunk_size must be an integer"
            raise ValueError(msg)
        if isinstance(self.chunk_overlap, bool) or not isinstance(self.chunk_overlap, int):
            msg = "chunk_overlap must be an integer"
            raise ValueError(msg)
        if self.chunk_size < MIN_CHUNK_SIZE:
            msg = f"chunk_size must be >= {MIN_CHUNK_SIZE}"
            raise ValueError(msg)
        if self.chunk_overlap < 0:
            msg = "chunk_overlap must be non-negative"
            raise ValueError(msg)
        if self.chunk_overlap >= self.chunk_size:
            msg = "chunk_overlap must be smaller than chunk_size"
            raise ValueError(msg)


@dataclass(slots=True, frozen=True)
class AnchoredChunk:
    """A slice of canonical text; ``text == canonical[start_offset:end_offset]``."""

    start_offset: int
    end_offset: int
    text: str


def chunk_text(canonical_text: str, config: ChunkingConfig | None = None) -> list[AnchoredChunk]:
    """Split canonical text into overlapping chunks with exact, trimmed offsets.

    Non-final windows are cut at the last paragraph break, else line break, else
    space found between 60% of ``chunk_size`` and the window end. Boundary
    whitespace is trimmed from each chunk while keeping the offsets pointing at
    the exact substring. The cursor then moves to ``end - chunk_overlap`` and
    always advances by at least one character.
    """

    config = config or ChunkingConfig()
    if not canonical_text.strip():
        msg = "cannot chunk empty text"
        raise ValueError(msg)

    size = config.chunk_size
    length = len(canonical_text)
    chunks: list[AnchoredChunk] = []
    start = 0

    while start < length:
        end = min(start + size, length)
        if end < length:
            end = _find_boundary(canonical_text, start, end, size)

        trimmed_start, trimmed_end = _trim(canonical_text, start, end)
        if trimmed_end > trimmed_start:
            chunks.append(
                AnchoredChunk(
                    start_offset=trimmed_start,
                    end_offset=trimmed_end,
                    text=canonical_text[trimmed_start:trimmed_end],
                )
            )

        if end >= length:
            break
        next_start = max(0, end - config.chunk_overlap)
        start = next_start if next_start > start else start + 1

    if not chunks:
        msg = "no chunks produced"
        raise ValueError(msg)
    return chunks


def _find_boundary(text: str, start: int, hard_end: int, size: int) -> int:
    min_end = min(len(text), start + int(size * _MIN_WINDOW_RATIO))
    window = text[min_end:hard_end]
    for separator in _SEPARATORS:
        index = window.rfind(separator)
        if index != -1:
            return min_end + index + len(separator)
    return hard_end


def _trim(text: str, start: int, end: int) -> tuple[int, int]:
    while start < end and text[start] in _SKIPPABLE:
        start += 1
    while end > start and text[end - 1] in _SKIPPABLE:
        end -= 1
    return start, end
