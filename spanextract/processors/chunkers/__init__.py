"""Chunker factory and public exports."""

from __future__ import annotations

from typing import Any, List, Optional

from spanextract.ai.types import Chunk, Document
from spanextract.core.unified_config import ChunkingConfig, ChunkingStrategy, normalize_strategy
from spanextract.exceptions import ChunkingError, ConfigurationError
from spanextract.processors.tokenizer import Tokenizer, build_tokenizer

from .base import BaseChunker
from .fixed import FixedChunker
from .semantic import SemanticChunker


def _chunking_section(cfg: Any) -> ChunkingConfig:
    if isinstance(cfg, ChunkingConfig):
        return cfg
    return getattr(cfg, "chunking", None) or ChunkingConfig()


def get_chunker(cfg: Any, tokenizer: Optional[Tokenizer] = None) -> BaseChunker:
    """Return the configured chunker implementation.

    ``cfg`` may be a full ``ExtractConfig`` (its ``max_char_buffer`` is the
    fallback budget) or a bare ``ChunkingConfig``. Without an explicit
    ``tokenizer`` the one named in ``chunking.tokenizer`` is used.
    """
    section = _chunking_section(cfg)
    max_size = section.max_chunk_size
    if max_size is None:
        max_size = getattr(cfg, "max_char_buffer", None)
    if max_size is None:
        raise ChunkingError("No chunk budget configured", strategy=section.strategy_name)

    try:
        strategy = normalize_strategy(section.strategy)
    except ConfigurationError as exc:
        raise ChunkingError(str(exc), max_chunk_size=max_size, strategy=section.strategy_name) from exc

    if tokenizer is None:
        try:
            tokenizer = build_tokenizer(section.tokenizer, section.encoding_name)
        except ConfigurationError as exc:
            raise ChunkingError(str(exc), max_chunk_size=max_size, strategy=section.strategy_name) from exc

    log_stats = bool(getattr(cfg, "debug", False))
    kwargs = dict(
        max_chunk_size=max_size,
        overlap_size=section.overlap_size,
        size_unit=section.size_unit,
        tokenizer=tokenizer,
        log_stats=log_stats,
    )
    if strategy == ChunkingStrategy.FIXED:
        return FixedChunker(**kwargs)
    return SemanticChunker(**kwargs)


def chunk_document(document: Document, cfg: Any, tokenizer: Optional[Tokenizer] = None) -> List[Chunk]:
    """Chunk ``document`` under ``cfg``. Deterministic for a given tokenizer."""
    chunker = get_chunker(cfg, tokenizer)
    return chunker.chunk(document.text, document_id=document.document_id)


__all__ = [
    "BaseChunker",
    "Chunk",
    "FixedChunker",
    "SemanticChunker",
    "chunk_document",
    "get_chunker",
]
