"""
Exception hierarchy for the extraction pipeline.

Every error carries a machine readable ``error_code`` and a ``details`` dict so
callers can log or serialize failures without parsing messages.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class SpanExtractError(Exception):
    """Base class for all pipeline errors."""

    default_code = "SPANEXTRACT_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details: Dict[str, Any] = dict(details or {})
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


def _compact(**fields: Any) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class ConfigurationError(SpanExtractError):
    """Invalid or inconsistent configuration values."""

    default_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None, **kwargs):
        details = _compact(field=field, value=value)
        details.update(kwargs.pop("details", {}) or {})
        super().__init__(message, details=details, **kwargs)


class ChunkingError(SpanExtractError):
    """No chunk plan can be produced for the document. Fatal to the document."""

    default_code = "CHUNKING_ERROR"

    def __init__(
        self,
        message: str,
        max_chunk_size: Optional[int] = None,
        strategy: Optional[str] = None,
        **kwargs,
    ):
        details = _compact(max_chunk_size=max_chunk_size, strategy=strategy)
        details.update(kwargs.pop("details", {}) or {})
        super().__init__(message, details=details, **kwargs)


class ModelCallError(SpanExtractError):
    """Transport or provider failure while calling the language model."""

    default_code = "MODEL_CALL_ERROR"

    def __init__(
        self,
        message: str,
        model_id: Optional[str] = None,
        provider: Optional[str] = None,
        chunk_id: Optional[int] = None,
        **kwargs,
    ):
        details = _compact(model_id=model_id, provider=provider, chunk_id=chunk_id)
        details.update(kwargs.pop("details", {}) or {})
        super().__init__(message, details=details, **kwargs)


class ResolutionError(SpanExtractError):
    """Model output could not be turned into structured records."""

    default_code = "RESOLUTION_ERROR"

    def __init__(
        self,
        message: str,
        diagnostic: Optional[str] = None,
        raw_length: Optional[int] = None,
        **kwargs,
    ):
        details = _compact(diagnostic=diagnostic, raw_length=raw_length)
        details.update(kwargs.pop("details", {}) or {})
        super().__init__(message, details=details, **kwargs)
        self.diagnostic = diagnostic


class ParseError(ResolutionError):
    """Raised when no structured data survives fence stripping and repair."""

    default_code = "PARSE_ERROR"


class AlignmentError(SpanExtractError):
    """Structural alignment failure. Callers degrade to unaligned extractions."""

    default_code = "ALIGNMENT_ERROR"

    def __init__(self, message: str, extraction_text: Optional[str] = None, **kwargs):
        details = _compact(extraction_text=extraction_text)
        details.update(kwargs.pop("details", {}) or {})
        super().__init__(message, details=details, **kwargs)


class AggregationError(SpanExtractError):
    """No usable output could be assembled for the document."""

    default_code = "AGGREGATION_ERROR"

    def __init__(
        self,
        message: str,
        failed_chunks: Optional[int] = None,
        total_chunks: Optional[int] = None,
        **kwargs,
    ):
        details = _compact(failed_chunks=failed_chunks, total_chunks=total_chunks)
        details.update(kwargs.pop("details", {}) or {})
        super().__init__(message, details=details, **kwargs)


__all__ = [
    "AggregationError",
    "AlignmentError",
    "ChunkingError",
    "ConfigurationError",
    "ModelCallError",
    "ParseError",
    "ResolutionError",
    "SpanExtractError",
]
