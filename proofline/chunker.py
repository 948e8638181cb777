from __future__ import annotations

import logging
import re
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Tuple

from .schemas import Chunk, Finding, Span

logger = logging.getLogger(__name__)

ABBREVIATIONS = frozenset(
    {
        "dr", "mr", "mrs", "ms", "prof", "sr", "jr", "vs", "etc", "inc", "ltd", "corp",
        "fig", "ref", "vol", "no", "pp", "ch", "sec", "dept", "univ", "assoc", "bros",
        "co", "al", "eg", "ie", "ca", "cf", "approx", "est", "max", "min", "avg",
    }
)

# Terminal punctuation, optional closing quotes/brackets, whitespace, then a
# capital letter (possibly behind an opening quote). Decimals never match
# because the punctuation has to be followed by whitespace.
_SENTENCE_END = re.compile(r"([.!?]+)[\"')\]]*\s+(?=[\"']?[A-Z])")
_TRAILING_WORD = re.compile(r"(\w+)$")
_COMPLETE_START = re.compile(r"^[A-Z]")
_COMPLETE_END = re.compile(r"[.!?][\"']?$")

MIN_BREAK_RATIO = 0.6


class TextChunker:
    """Splits text into overlapping windows that keep their document offsets."""

    def __init__(
        self,
        chunk_size: int = 5000,
        chunk_overlap: int = 200,
        *,
        respect_sentences: bool = True,
    ) -> None:
        if chunk_size < 1 or chunk_overlap < 0:
            raise ValueError("chunk_size must be positive and chunk_overlap non-negative")
        if chunk_size <= chunk_overlap * 2:
            raise ValueError("chunk_size must be more than twice chunk_overlap")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.respect_sentences = respect_sentences

    def split(self, text: Optional[str]) -> List[Chunk]:
        if not text or not text.strip():
            return []

        windows = self._windows(text)
        total = len(windows)
        chunks: List[Chunk] = []
        for index, (start, end) in enumerate(windows):
            piece = text[start:end]
            chunks.append(
                Chunk(
                    text=piece,
                    index=index,
                    total_chunks=total,
                    original_start=start,
                    original_end=end,
                    overlap_start=start if index > 0 else None,
                    overlap_end=windows[index + 1][0] if index < total - 1 else None,
                    has_complete_sentences=has_complete_sentences(piece),
                )
            )
        logger.debug(
            "Split %s chars into %s chunks (size=%s, overlap=%s)",
            len(text),
            total,
            self.chunk_size,
            self.chunk_overlap,
        )
        return chunks

    def whole(self, text: Optional[str]) -> List[Chunk]:
        """Single chunk spanning the whole region, regardless of chunk_size."""
        if not text or not text.strip():
            return []
        return [
            Chunk(
                text=text,
                index=0,
                total_chunks=1,
                original_start=0,
                original_end=len(text),
                has_complete_sentences=has_complete_sentences(text),
            )
        ]

    def _windows(self, text: str) -> List[Tuple[int, int]]:
        length = len(text)
        windows: List[Tuple[int, int]] = []
        start = 0
        while start < length:
            end = min(length, start + self.chunk_size)
            if end < length and self.respect_sentences:
                end = self._find_sentence_break(text, start, end)
            windows.append((start, end))
            if end >= length:
                break
            next_start = end - self.chunk_overlap
            if next_start <= start:
                next_start = end
            start = next_start
        return windows

    def _find_sentence_break(self, text: str, start: int, end: int) -> int:
        min_end = start + int(self.chunk_size * MIN_BREAK_RATIO)
        best = None
        for boundary in find_sentence_boundaries(text, start, end):
            if boundary >= min_end:
                best = boundary
        return best if best is not None else end


def find_sentence_boundaries(text: str, start: int = 0, end: Optional[int] = None) -> List[int]:
    """Offsets just past each sentence end inside ``text[start:end]``."""
    if end is None:
        end = len(text)
    boundaries: List[int] = []
    for match in _SENTENCE_END.finditer(text, start, end):
        punctuation = match.group(1)
        if "..." in punctuation:
            continue
        if punctuation == ".":
            word = _TRAILING_WORD.search(text, max(start, match.start() - 10), match.start())
            if word and word.group(1).lower() in ABBREVIATIONS:
                continue
        boundaries.append(match.end())
    return boundaries


def has_complete_sentences(text: str) -> bool:
    trimmed = text.strip()
    if not trimmed:
        return False
    return bool(_COMPLETE_START.search(trimmed) and _COMPLETE_END.search(trimmed))


def map_to_original(span: Span, chunk: Chunk) -> Span:
    """Shift a chunk-local span into the coordinates the chunk was cut from."""
    start = chunk.original_start + span.start
    start = max(chunk.original_start, min(start, chunk.original_end))
    end = chunk.original_start + span.end
    end = max(start, min(end, chunk.original_end))
    return Span(start=start, end=end)


def deduplicate(
    findings: Iterable[Finding],
    *,
    min_overlap: float = 0.5,
    text_similarity: float = 0.85,
) -> List[Finding]:
    """Collapse findings reported more than once for the same span.

    Two findings are duplicates when their spans overlap by at least
    ``min_overlap`` of the shorter span and their matched text is equal or
    near-equal. The survivor is the one from the lowest chunk index, then
    the earliest discovered.
    """
    ranked = sorted(findings, key=lambda f: (f.chunk_index, f.discovered_at, f.ordinal))
    kept: List[Finding] = []
    for finding in ranked:
        duplicate_of = next(
            (
                existing
                for existing in kept
                if _spans_overlap(finding, existing, min_overlap)
                and _texts_match(finding.matched_text, existing.matched_text, text_similarity)
            ),
            None,
        )
        if duplicate_of is None:
            kept.append(finding)
        else:
            logger.debug(
                "Dropped duplicate finding %s at %s-%s (kept %s)",
                finding.id,
                finding.start,
                finding.end,
                duplicate_of.id,
            )
    kept.sort(key=lambda f: (f.start, f.end, f.chunk_index, f.ordinal, f.id))
    return kept


def _spans_overlap(first: Finding, second: Finding, min_overlap: float) -> bool:
    shared = min(first.end, second.end) - max(first.start, second.start)
    if shared <= 0:
        return False
    shorter = min(first.end - first.start, second.end - second.start)
    return shared / shorter >= min_overlap


def _normalise(text: str) -> str:
    return " ".join(text.split()).casefold()


def _texts_match(first: str, second: str, threshold: float) -> bool:
    first, second = _normalise(first), _normalise(second)
    if first == second:
        return True
    if not first or not second:
        return False
    ratio = max(
        SequenceMatcher(None, first, second).ratio(),
        SequenceMatcher(None, second, first).ratio(),
    )
    return ratio >= threshold
