"""Boundary-aware chunker that prefers paragraph, heading and sentence breaks."""

from __future__ import annotations

import bisect
import logging
from typing import FrozenSet, List, Optional, Tuple

from spanextract.processors.tokenizer import TokenizedText, TokenType

from .base import BaseChunker

LOGGER = logging.getLogger(__name__)

_NLP = None


def _load_spacy():
    """Blank English pipeline with a rule-based sentencizer; needs no model download."""
    global _NLP
    if _NLP is not None:
        return _NLP
    import spacy

    nlp = spacy.blank("en")
    if "sentencizer" not in nlp.pipe_names:
        nlp.add_pipe("sentencizer")
    _NLP = nlp
    return _NLP


class SemanticChunker(BaseChunker):
    """
    Inside each budget window pick the latest paragraph or heading break past
    the window midpoint, else the latest sentence end, else any paragraph
    break, else the fixed-size cut.

    Sentence ends come from spaCy's sentencizer and are snapped to the token
    boundary at or before each ``sent.end_char``; whitespace directly after a
    sentence stays with it.
    """

    strategy_name = "semantic"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._sentence_cache: Optional[Tuple[str, FrozenSet[int]]] = None

    @property
    def nlp(self):
        return _load_spacy()

    def _choose_end(self, tokenized: TokenizedText, chunk_start: int, new_start: int, limit: int) -> int:
        if limit >= len(tokenized.tokens):
            return limit

        sentence_ends = self._sentence_ends(tokenized)
        paragraphs: List[int] = []
        sentences: List[int] = []
        for end in range(new_start + 1, limit + 1):
            if self._is_paragraph_break(tokenized, end):
                paragraphs.append(end)
            elif end in sentence_ends:
                sentences.append(end)

        midpoint = self.max_chunk_size / 2.0
        late_paragraph = self._latest(
            [end for end in paragraphs if self._span_size(tokenized, chunk_start, end) > midpoint]
        )
        if late_paragraph is not None:
            return late_paragraph
        if sentences:
            return sentences[-1]
        if paragraphs:
            return paragraphs[-1]
        LOGGER.debug("No semantic boundary in window [%d, %d); using fixed cut", chunk_start, limit)
        return limit

    def _sentence_ends(self, tokenized: TokenizedText) -> FrozenSet[int]:
        """Exclusive end token of every sentence but the last."""
        cached = self._sentence_cache
        if cached is not None and cached[0] is tokenized.text:
            return cached[1]

        text = tokenized.text
        tokens = tokenized.tokens
        nlp = self.nlp
        if len(text) >= nlp.max_length:
            nlp.max_length = len(text) + 1
        token_ends = [token.end for token in tokens]
        ends = set()
        for sent in nlp(text).sents:
            if sent.end_char >= len(text):
                continue
            boundary = bisect.bisect_right(token_ends, sent.end_char)
            if boundary == 0:
                continue
            if boundary < len(tokens) and tokens[boundary].kind == TokenType.WHITESPACE:
                boundary += 1
            ends.add(boundary)

        result = frozenset(ends)
        self._sentence_cache = (text, result)
        LOGGER.debug("Sentencizer found %d sentence boundaries", len(result))
        return result

    @staticmethod
    def _latest(candidates: List[int]) -> Optional[int]:
        return candidates[-1] if candidates else None

    @staticmethod
    def _is_paragraph_break(tokenized: TokenizedText, end: int) -> bool:
        """True when a chunk ending before token ``end`` closes a paragraph or precedes a heading."""
        tokens = tokenized.tokens
        previous = tokens[end - 1]
        if previous.kind != TokenType.WHITESPACE:
            return False
        gap = tokenized.text[previous.start:previous.end]
        if gap.count("\n") >= 2:
            return True
        if "\n" in gap and end < len(tokens):
            return tokenized.token_text(end) == "#"
        return False


__all__ = ["SemanticChunker"]
