"""Typed data models shared across pipeline components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Document:
    text: str
    document_id: Optional[str] = None
    additional_context: Optional[str] = None


@dataclass(frozen=True)
class CharInterval:
    """Half-open ``[start_pos, end_pos)`` span into the source document."""

    start_pos: int
    end_pos: int

    @property
    def length(self) -> int:
        return self.end_pos - self.start_pos

    def overlaps(self, other: "CharInterval") -> bool:
        return self.start_pos < other.end_pos and other.start_pos < self.end_pos

    def within(self, start: int, end: int) -> bool:
        return start <= self.start_pos and self.end_pos <= end

    def shifted(self, offset: int) -> "CharInterval":
        return CharInterval(self.start_pos + offset, self.end_pos + offset)


class AlignmentStatus(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    NONE = "none"


@dataclass
class Extraction:
    extraction_class: str
    extraction_text: str
    char_interval: Optional[CharInterval] = None
    alignment_status: AlignmentStatus = AlignmentStatus.NONE
    alignment_score: Optional[float] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    normalized_value: Optional[str] = None
    extraction_index: Optional[int] = None

    @property
    def is_aligned(self) -> bool:
        return self.alignment_status != AlignmentStatus.NONE and self.char_interval is not None

    def set_alignment(
        self,
        status: AlignmentStatus,
        interval: Optional[CharInterval] = None,
        score: Optional[float] = None,
    ) -> None:
        if status == AlignmentStatus.NONE:
            self.char_interval = None
            self.alignment_score = None
        else:
            self.char_interval = interval
            self.alignment_score = 1.0 if status == AlignmentStatus.EXACT else score
        self.alignment_status = status

    def confidence_rank(self) -> Tuple[int, float]:
        """Sort key: exact beats any fuzzy, a higher fuzzy score beats a lower one, unaligned is last."""
        if self.alignment_status == AlignmentStatus.EXACT:
            return (2, 1.0)
        if self.alignment_status == AlignmentStatus.FUZZY:
            return (1, float(self.alignment_score or 0.0))
        return (0, 0.0)

    def alignment_confidence(self) -> float:
        if self.alignment_status == AlignmentStatus.EXACT:
            return 1.0
        if self.alignment_status == AlignmentStatus.FUZZY:
            return float(self.alignment_score or 0.0)
        return 0.0


@dataclass
class ExampleData:
    text: str
    extractions: List[Extraction] = field(default_factory=list)


@dataclass(frozen=True)
class OverlapInfo:
    """Leading span of a chunk that it shares with its predecessor (document coordinates)."""

    previous_chunk_id: int
    start: int
    end: int

    def contains(self, interval: CharInterval) -> bool:
        return interval.within(self.start, self.end)


@dataclass
class Chunk:
    id: int
    text: str
    char_offset: int
    char_length: int
    document_id: Optional[str] = None
    has_overlap: bool = False
    overlap_info: Optional[OverlapInfo] = None
    token_span: Tuple[int, int] = (0, 0)
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def char_end(self) -> int:
        return self.char_offset + self.char_length

    def is_blank(self) -> bool:
        return not self.text.strip()


@dataclass
class ChunkResult:
    chunk_id: int
    extractions: Optional[List[Extraction]] = None
    error: Optional[str] = None
    char_offset: int = 0
    char_length: int = 0
    processing_time: float = 0.0
    overlap_info: Optional[OverlapInfo] = None
    warnings: List[str] = field(default_factory=list)
    passes: int = 1

    @property
    def is_success(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, chunk: Chunk, extractions: List[Extraction], **kwargs) -> "ChunkResult":
        return cls(
            chunk_id=chunk.id,
            extractions=list(extractions),
            char_offset=chunk.char_offset,
            char_length=chunk.char_length,
            overlap_info=chunk.overlap_info,
            **kwargs,
        )

    @classmethod
    def failure(cls, chunk: Chunk, error: str, **kwargs) -> "ChunkResult":
        return cls(
            chunk_id=chunk.id,
            extractions=None,
            error=error,
            char_offset=chunk.char_offset,
            char_length=chunk.char_length,
            overlap_info=chunk.overlap_info,
            **kwargs,
        )


@dataclass
class AnnotatedDocument:
    text: str
    extractions: Optional[List[Extraction]] = None
    document_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def extraction_count(self) -> int:
        return len(self.extractions or [])


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    field: Optional[str] = None


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    raw_output_file: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add_error(self, code: str, message: str, field: Optional[str] = None) -> None:
        self.errors.append(ValidationIssue(code, message, field))

    def add_warning(self, code: str, message: str, field: Optional[str] = None) -> None:
        self.warnings.append(ValidationIssue(code, message, field))


@dataclass(frozen=True)
class ScoredOutput:
    output: Optional[str]
    score: Optional[float] = None

    def text(self) -> str:
        return self.output or ""


__all__ = [
    "AlignmentStatus",
    "AnnotatedDocument",
    "CharInterval",
    "Chunk",
    "ChunkResult",
    "Document",
    "ExampleData",
    "Extraction",
    "OverlapInfo",
    "ScoredOutput",
    "ValidationIssue",
    "ValidationResult",
]
