"""Fixed-size chunker implementation."""

from __future__ import annotations

from spanextract.processors.tokenizer import TokenizedText

from .base import BaseChunker


class FixedChunker(BaseChunker):
    """Closes a chunk as soon as the next token would exceed the budget."""

    strategy_name = "fixed"

    def _choose_end(self, tokenized: TokenizedText, chunk_start: int, new_start: int, limit: int) -> int:
        return limit


__all__ = ["FixedChunker"]
