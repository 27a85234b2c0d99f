"""
Locate extraction text in the source document.

Two passes per extraction: a literal search, then (optionally) a windowed
fuzzy search over word-token runs scored with ``difflib.SequenceMatcher``.
All offsets index the original, unmodified source string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import List, Optional, Sequence, Set, Tuple

from spanextract.ai.types import AlignmentStatus, CharInterval, Extraction
from spanextract.core.unified_config import AlignmentConfig
from spanextract.exceptions import AlignmentError
from spanextract.logging_config import get_logger
from spanextract.processors.tokenizer import Token, Tokenizer, default_tokenizer

logger = get_logger(__name__)

# Candidate runs may differ from the extraction's word count by this fraction.
LENGTH_TOLERANCE = 0.25


@dataclass
class FuzzyMatch:
    start: int
    end: int
    score: float


class TextAligner:
    """Recovers character intervals for extractions."""

    def __init__(self, config: Optional[AlignmentConfig] = None, tokenizer: Optional[Tokenizer] = None):
        self.config = config or AlignmentConfig()
        self.tokenizer = tokenizer or default_tokenizer()
        self._flags = 0 if self.config.case_sensitive else re.IGNORECASE

    def align_extractions(self, extractions: Sequence[Extraction], source_text: str, base_offset: int = 0) -> int:
        """Align ``extractions`` in place against ``source_text``; return the number aligned."""
        if not isinstance(source_text, str):
            raise AlignmentError(f"Source text must be str, got {type(source_text).__name__}")
        if base_offset < 0:
            raise AlignmentError("base_offset cannot be negative", details={"base_offset": base_offset})

        source_words: Optional[List[Token]] = None
        aligned = exact = 0
        for extraction in extractions:
            needle = extraction.extraction_text if isinstance(extraction.extraction_text, str) else ""
            if not needle.strip():
                extraction.set_alignment(AlignmentStatus.NONE)
                continue

            span = self._exact_span(needle, source_text)
            if span is not None:
                extraction.set_alignment(AlignmentStatus.EXACT, span.shifted(base_offset))
                aligned += 1
                exact += 1
                continue

            if not self.config.enable_fuzzy_alignment:
                extraction.set_alignment(AlignmentStatus.NONE)
                continue

            if source_words is None:
                source_words = self.tokenizer.tokenize(source_text).words()
            match = self._fuzzy_match(needle, source_text, source_words)
            if match is not None and self._accepts(match.score):
                extraction.set_alignment(
                    AlignmentStatus.FUZZY,
                    CharInterval(match.start + base_offset, match.end + base_offset),
                    match.score,
                )
                aligned += 1
            else:
                extraction.set_alignment(AlignmentStatus.NONE)

        logger.debug(
            "Aligned %d/%d extractions (%d exact)",
            aligned,
            len(extractions),
            exact,
            extra={"base_offset": base_offset, "source_length": len(source_text)},
        )
        return aligned

    def align_chunk_extractions(self, extractions: Sequence[Extraction], chunk_text: str, chunk_offset: int) -> int:
        return self.align_extractions(extractions, chunk_text, base_offset=chunk_offset)

    def _accepts(self, score: float) -> bool:
        threshold = self.config.fuzzy_alignment_threshold
        if score >= threshold:
            return True
        if self.config.accept_match_lesser:
            return score >= threshold * self.config.lesser_match_ratio
        return False

    def _exact_span(self, needle: str, source: str) -> Optional[CharInterval]:
        match = re.search(re.escape(needle), source, self._flags)
        if match is None:
            stripped = needle.strip()
            if stripped == needle:
                return None
            match = re.search(re.escape(stripped), source, self._flags)
            if match is None:
                return None
        return CharInterval(match.start(), match.end())

    def _normalize(self, word: str) -> str:
        return word if self.config.case_sensitive else word.lower()

    def _fuzzy_match(self, needle: str, source: str, source_words: List[Token]) -> Optional[FuzzyMatch]:
        target = [self._normalize(needle[tok.start:tok.end]) for tok in self.tokenizer.tokenize(needle).words()]
        if not target or not source_words:
            return None

        count = len(target)
        tolerance = max(1, int(round(count * LENGTH_TOLERANCE)))
        lengths = range(max(1, count - tolerance), count + tolerance + 1)
        words = [self._normalize(source[tok.start:tok.end]) for tok in source_words]

        best: Optional[FuzzyMatch] = None
        seen: Set[Tuple[int, int]] = set()
        for first, last in self._windows(len(needle), source_words, len(source)):
            for i in range(first, last):
                for length in lengths:
                    j = i + length
                    if j > last or (i, length) in seen:
                        continue
                    seen.add((i, length))
                    score = SequenceMatcher(None, target, words[i:j], autojunk=False).ratio()
                    if best is None or score > best.score:
                        best = FuzzyMatch(source_words[i].start, source_words[j - 1].end, score)
            if best is not None and best.score >= 1.0:
                break
        return best

    def _windows(self, needle_length: int, source_words: List[Token], source_length: int):
        """Yield ``(first, last)`` word-index ranges for each search window, left to right."""
        window = max(self.config.max_search_window, 2 * needle_length)
        step = max(1, window - needle_length)
        start = 0
        first = 0
        while True:
            end = start + window
            while first < len(source_words) and source_words[first].start < start:
                first += 1
            last = first
            while last < len(source_words) and source_words[last].end <= end:
                last += 1
            if last > first:
                yield first, last
            if end >= source_length:
                break
            start += step


__all__ = ["FuzzyMatch", "LENGTH_TOLERANCE", "TextAligner"]
