"""Cross-pass accumulation, deduplication and quality gating for multi-pass extraction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from spanextract.ai.types import Extraction

ALIGNMENT_WEIGHT = 0.7
LENGTH_WEIGHT = 0.3
# Extraction text of this many characters or more gets the full length credit.
LENGTH_SATURATION = 20
MAX_LISTED_EXTRACTIONS = 20


def quality_score(extraction: Extraction) -> float:
    """0.7 x alignment confidence + 0.3 x a length factor saturating at ``LENGTH_SATURATION`` chars."""
    length_factor = min(1.0, len(extraction.extraction_text.strip()) / LENGTH_SATURATION)
    return ALIGNMENT_WEIGHT * extraction.alignment_confidence() + LENGTH_WEIGHT * length_factor


def is_duplicate(left: Extraction, right: Extraction) -> bool:
    if left.extraction_class != right.extraction_class:
        return False
    if left.extraction_text.strip().casefold() != right.extraction_text.strip().casefold():
        return False
    if left.char_interval is None and right.char_interval is None:
        return True
    if left.char_interval is None or right.char_interval is None:
        return False
    return left.char_interval == right.char_interval or left.char_interval.overlaps(right.char_interval)


@dataclass
class MergeStats:
    added: int = 0
    replaced: int = 0
    duplicates: int = 0
    rejected: int = 0


def merge_pass(
    accumulated: List[Extraction],
    incoming: Sequence[Extraction],
    pass_number: int,
    quality_threshold: float,
) -> MergeStats:
    """Fold ``incoming`` into ``accumulated`` in place.

    Later-pass extractions below ``quality_threshold`` are rejected. Duplicates
    keep whichever copy has the higher alignment confidence.
    """
    stats = MergeStats()
    for extraction in incoming:
        if pass_number > 1 and quality_score(extraction) < quality_threshold:
            stats.rejected += 1
            continue
        index = _find_duplicate(accumulated, extraction)
        if index is None:
            accumulated.append(extraction)
            stats.added += 1
        elif extraction.confidence_rank() > accumulated[index].confidence_rank():
            accumulated[index] = extraction
            stats.replaced += 1
        else:
            stats.duplicates += 1
    return stats


def _find_duplicate(accumulated: Sequence[Extraction], extraction: Extraction) -> Optional[int]:
    for index, existing in enumerate(accumulated):
        if is_duplicate(existing, extraction):
            return index
    return None


def needs_refinement(extraction_count: int, failed: bool, min_extractions: int) -> bool:
    return failed or extraction_count < min_extractions


def refinement_context(
    base_context: Optional[str],
    pass_number: int,
    previous: Sequence[Extraction],
) -> str:
    """Additional prompt context asking the model to find what earlier passes missed."""
    lines = []
    if base_context:
        lines.append(base_context.strip())
        lines.append("")
    lines.append(f"This is refinement pass {pass_number}. Earlier passes may have missed entities in this text.")
    if previous:
        lines.append("Already extracted (do not repeat these):")
        for extraction in previous[:MAX_LISTED_EXTRACTIONS]:
            lines.append(f"- {extraction.extraction_class}: {extraction.extraction_text}")
    else:
        lines.append("Earlier passes found nothing. Look carefully for every relevant entity.")
    return "\n".join(lines)


__all__ = [
    "MergeStats",
    "is_duplicate",
    "merge_pass",
    "needs_refinement",
    "quality_score",
    "refinement_context",
]
