"""Common chunk data structures and interfaces."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from spanextract.ai.types import Chunk, OverlapInfo
from spanextract.exceptions import ChunkingError
from spanextract.processors.tokenizer import TokenizedText, Tokenizer, default_tokenizer

LOGGER = logging.getLogger(__name__)

SIZE_UNITS = ("chars", "tokens")


class BaseChunker(ABC):
    """
    Walks the token stream of a document and emits budget-bounded chunks.

    Subclasses only decide where a chunk ends inside the window of tokens that
    fit the budget; token-boundary safety, overlap and bookkeeping live here.
    """

    strategy_name = "base"

    def __init__(
        self,
        max_chunk_size: int,
        overlap_size: int = 0,
        size_unit: str = "chars",
        tokenizer: Optional[Tokenizer] = None,
        log_stats: bool = False,
    ):
        if max_chunk_size is None or max_chunk_size < 0:
            raise ChunkingError(
                "max_chunk_size must be a non-negative integer",
                max_chunk_size=max_chunk_size,
                strategy=self.strategy_name,
            )
        if overlap_size < 0:
            raise ChunkingError(
                "overlap_size cannot be negative",
                max_chunk_size=max_chunk_size,
                strategy=self.strategy_name,
                details={"overlap_size": overlap_size},
            )
        if max_chunk_size and overlap_size >= max_chunk_size:
            raise ChunkingError(
                "overlap_size must be smaller than max_chunk_size",
                max_chunk_size=max_chunk_size,
                strategy=self.strategy_name,
                details={"overlap_size": overlap_size},
            )
        if size_unit not in SIZE_UNITS:
            raise ChunkingError(
                f"Unknown size unit '{size_unit}'",
                max_chunk_size=max_chunk_size,
                strategy=self.strategy_name,
            )
        self.max_chunk_size = max_chunk_size
        self.overlap_size = overlap_size
        self.size_unit = size_unit
        self.tokenizer = tokenizer or default_tokenizer()
        self.log_stats = log_stats

    def chunk(self, text: str, document_id: Optional[str] = None) -> List[Chunk]:
        """Split a document into chunks."""
        if self.max_chunk_size == 0 or not text or not text.strip():
            return []

        tokenized = self._tokenize(text)
        tokens = tokenized.tokens
        total = len(tokens)
        chunks: List[Chunk] = []
        new_start = 0

        while new_start < total:
            chunk_start = self._overlap_start(tokenized, chunks, new_start)
            limit = self._fit_limit(tokenized, chunk_start)
            while limit <= new_start and chunk_start < new_start:
                # Overlap leaves no room for a new token; give some of it back.
                chunk_start += 1
                limit = self._fit_limit(tokenized, chunk_start)
            if limit <= new_start:
                # A single token larger than the budget becomes its own chunk.
                end = new_start + 1
            else:
                end = self._choose_end(tokenized, chunk_start, new_start, limit)
                end = max(new_start + 1, min(end, limit))

            span = tokenized.char_interval(chunk_start, end)
            overlap_info = None
            if chunk_start < new_start:
                overlap_info = OverlapInfo(
                    previous_chunk_id=chunks[-1].id,
                    start=tokens[chunk_start].start,
                    end=tokens[new_start].start,
                )
            chunks.append(
                Chunk(
                    id=len(chunks),
                    text=text[span.start_pos:span.end_pos],
                    char_offset=span.start_pos,
                    char_length=span.length,
                    document_id=document_id,
                    has_overlap=overlap_info is not None,
                    overlap_info=overlap_info,
                    token_span=(chunk_start, end),
                    meta={"strategy": self.strategy_name},
                )
            )
            new_start = end

        self._log_stats(chunks)
        return chunks

    @abstractmethod
    def _choose_end(self, tokenized: TokenizedText, chunk_start: int, new_start: int, limit: int) -> int:
        """Pick the exclusive end token for a chunk, within ``(new_start, limit]``."""

    def _tokenize(self, text: str) -> TokenizedText:
        try:
            return self.tokenizer.tokenize(text)
        except Exception as exc:
            raise ChunkingError(
                f"Tokenizer failed: {exc}",
                max_chunk_size=self.max_chunk_size,
                strategy=self.strategy_name,
            ) from exc

    def _span_size(self, tokenized: TokenizedText, start: int, end: int) -> int:
        if end <= start:
            return 0
        if self.size_unit == "tokens":
            return end - start
        return tokenized.tokens[end - 1].end - tokenized.tokens[start].start

    def _fit_limit(self, tokenized: TokenizedText, chunk_start: int) -> int:
        """Largest exclusive end such that ``[chunk_start, end)`` fits the budget."""
        total = len(tokenized.tokens)
        if self.size_unit == "tokens":
            return min(total, chunk_start + self.max_chunk_size)
        budget_end = tokenized.tokens[chunk_start].start + self.max_chunk_size
        end = chunk_start
        while end < total and tokenized.tokens[end].end <= budget_end:
            end += 1
        return end

    def _overlap_start(self, tokenized: TokenizedText, chunks: List[Chunk], new_start: int) -> int:
        if not chunks or not self.overlap_size:
            return new_start
        previous_start = chunks[-1].token_span[0]
        back = new_start
        while back - 1 > previous_start and self._span_size(tokenized, back - 1, new_start) <= self.overlap_size:
            back -= 1
        return back

    def _log_stats(self, chunks: List[Chunk]) -> None:
        if not chunks:
            return
        sizes = np.array([chunk.char_length for chunk in chunks], dtype=float)
        overlapped = sum(1 for chunk in chunks if chunk.has_overlap)
        level = logging.INFO if self.log_stats else logging.DEBUG
        LOGGER.log(
            level,
            "%s chunker: %d chunks | mean=%.1f median=%.1f p90=%.1f chars | overlapped=%d",
            self.strategy_name,
            len(chunks),
            float(np.mean(sizes)),
            float(np.median(sizes)),
            float(np.percentile(sizes, 90)),
            overlapped,
        )


__all__ = ["BaseChunker", "Chunk", "SIZE_UNITS"]
