"""Merge per-chunk results into one annotated document."""

from __future__ import annotations

from typing import Dict, Hashable, List, Optional, Sequence, Set, Tuple

from spanextract.ai.types import AnnotatedDocument, ChunkResult, Extraction
from spanextract.exceptions import AggregationError
from spanextract.logging_config import get_logger

logger = get_logger(__name__)


def _identity(extraction: Extraction) -> Tuple[Hashable, ...]:
    if extraction.char_interval is not None:
        return (extraction.extraction_class, extraction.char_interval.start_pos, extraction.char_interval.end_pos)
    return (extraction.extraction_class, extraction.extraction_text.strip().casefold())


def _position(extraction: Extraction) -> Tuple[int, int]:
    if extraction.char_interval is None:
        return (1, 0)
    return (0, extraction.char_interval.start_pos)


class Aggregator:
    """
    Orders chunk results by id and drops what the overlap between neighbouring
    chunks produced twice. The earlier chunk always wins.
    """

    def aggregate(
        self,
        text: str,
        results: Sequence[ChunkResult],
        document_id: Optional[str] = None,
    ) -> AnnotatedDocument:
        ordered = sorted(results, key=lambda result: result.chunk_id)
        failed = [result for result in ordered if not result.is_success]
        if ordered and len(failed) == len(ordered):
            raise AggregationError(
                f"All {len(ordered)} chunks failed",
                failed_chunks=len(failed),
                total_chunks=len(ordered),
                details={"errors": [result.error for result in failed]},
            )

        succeeded: Set[int] = {result.chunk_id for result in ordered if result.is_success}
        aligned_seen: Set[Tuple[Hashable, ...]] = set()
        unaligned_by_chunk: Dict[int, Set[Tuple[Hashable, ...]]] = {}
        extractions: List[Extraction] = []
        warnings: List[str] = []
        dropped_overlap = dropped_duplicates = 0

        for result in ordered:
            warnings.extend(f"chunk {result.chunk_id}: {warning}" for warning in result.warnings)
            if not result.is_success:
                continue
            overlap = result.overlap_info
            predecessor_ok = overlap is not None and overlap.previous_chunk_id in succeeded
            predecessor_unaligned = (
                unaligned_by_chunk.get(overlap.previous_chunk_id, set()) if predecessor_ok else set()
            )
            own_unaligned = unaligned_by_chunk.setdefault(result.chunk_id, set())
            kept: List[Extraction] = []

            for extraction in result.extractions or []:
                interval = extraction.char_interval
                if predecessor_ok and interval is not None and overlap.contains(interval):
                    dropped_overlap += 1
                    continue
                key = _identity(extraction)
                if interval is not None:
                    if key in aligned_seen:
                        dropped_duplicates += 1
                        continue
                    aligned_seen.add(key)
                else:
                    if key in predecessor_unaligned:
                        dropped_duplicates += 1
                        continue
                    own_unaligned.add(key)
                kept.append(extraction)
            # Source order within a chunk, unaligned extractions last.
            kept.sort(key=_position)
            extractions.extend(kept)

        for index, extraction in enumerate(extractions):
            extraction.extraction_index = index

        errors = [f"chunk {result.chunk_id}: {result.error}" for result in failed]
        if failed:
            logger.warning(
                "%d of %d chunks failed; returning partial results",
                len(failed),
                len(ordered),
                extra={"document_id": document_id},
            )
        logger.debug(
            "Aggregated %d extractions from %d chunks (overlap drops=%d, duplicate drops=%d)",
            len(extractions),
            len(ordered),
            dropped_overlap,
            dropped_duplicates,
        )
        return AnnotatedDocument(
            text=text,
            extractions=extractions,
            document_id=document_id,
            errors=errors,
            warnings=warnings,
            metadata={
                "chunk_count": len(ordered),
                "failed_chunks": len(failed),
                "dropped_overlap": dropped_overlap,
                "dropped_duplicates": dropped_duplicates,
            },
        )


__all__ = ["Aggregator"]
