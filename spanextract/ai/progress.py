"""Progress events emitted by the pipeline and the sinks that consume them."""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from tqdm import tqdm

from spanextract.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProcessingStarted:
    text_length: int
    model: str
    provider: str

    tag = "inference"
    level = logging.INFO
    debug_only = False

    def describe(self) -> str:
        return f"{self.provider}/{self.model} -- {self.text_length} chars input"


@dataclass(frozen=True)
class ChunkingStarted:
    total_chars: int
    chunk_count: int
    strategy: str

    tag = "chunking"
    level = logging.INFO
    debug_only = False

    def describe(self) -> str:
        return f"{self.chunk_count} chunks ({self.strategy} strategy, {self.total_chars} chars total)"


@dataclass(frozen=True)
class BatchProgress:
    batch_number: int
    total_batches: int
    chunks_processed: int
    total_chunks: int

    tag = "progress"
    level = logging.DEBUG
    debug_only = False

    def describe(self) -> str:
        return f"{self.chunks_processed}/{self.total_chunks} chunks processed"


@dataclass(frozen=True)
class ModelCall:
    provider: str
    model: str
    input_length: int

    tag = "inference"
    level = logging.DEBUG
    debug_only = True

    def describe(self) -> str:
        return f"{self.provider} call -- {self.input_length} chars"


@dataclass(frozen=True)
class ModelResponse:
    success: bool
    output_length: Optional[int] = None

    tag = "inference"
    debug_only = True

    @property
    def level(self) -> int:
        return logging.DEBUG if self.success else logging.WARNING

    def describe(self) -> str:
        if self.success:
            return f"response received -- {self.output_length or 0} chars"
        return "no response from model"


@dataclass(frozen=True)
class ValidationStarted:
    raw_output_length: int

    tag = "validation"
    level = 5  # below DEBUG; trace
    debug_only = True

    def describe(self) -> str:
        return f"validating {self.raw_output_length} chars of model output"


@dataclass(frozen=True)
class ValidationCompleted:
    extractions_found: int
    aligned_count: int
    errors: int
    warnings: int

    tag = "validation"
    level = logging.DEBUG
    debug_only = True

    def describe(self) -> str:
        return (
            f"{self.extractions_found} extractions ({self.aligned_count} aligned), "
            f"{self.errors} errors, {self.warnings} warnings"
        )


@dataclass(frozen=True)
class AggregationStarted:
    chunk_count: int

    tag = "aggregation"
    level = logging.DEBUG
    debug_only = False

    def describe(self) -> str:
        return f"merging results from {self.chunk_count} chunks"


@dataclass(frozen=True)
class ProcessingCompleted:
    total_extractions: int
    processing_time_ms: int

    tag = "done"
    level = logging.INFO
    debug_only = False

    def describe(self) -> str:
        return f"{self.total_extractions} extractions found in {self.processing_time_ms}ms"


@dataclass(frozen=True)
class RetryAttempt:
    operation: str
    attempt: int
    max_attempts: int
    delay_seconds: float

    tag = "retry"
    level = logging.WARNING
    debug_only = False

    def describe(self) -> str:
        return (
            f"{self.operation} failed (attempt {self.attempt}/{self.max_attempts}), "
            f"retrying in {self.delay_seconds:g}s"
        )


@dataclass(frozen=True)
class Error:
    operation: str
    error: str

    tag = "error"
    level = logging.ERROR
    debug_only = False

    def describe(self) -> str:
        return f"{self.operation}: {self.error}"


@dataclass(frozen=True)
class Debug:
    operation: str
    details: str

    tag = "debug"
    level = logging.DEBUG
    debug_only = True

    def describe(self) -> str:
        return f"{self.operation}: {self.details}"


ProgressEvent = Union[
    ProcessingStarted,
    ChunkingStarted,
    BatchProgress,
    ModelCall,
    ModelResponse,
    ValidationStarted,
    ValidationCompleted,
    AggregationStarted,
    ProcessingCompleted,
    RetryAttempt,
    Error,
    Debug,
]


class ProgressSink(Protocol):
    def handle(self, event: ProgressEvent) -> None:
        ...


class NullProgressSink:
    """Discards every event."""

    def handle(self, event: ProgressEvent) -> None:
        return None


class LoggingProgressSink:
    """Forwards events to a logger at a level chosen per event type."""

    def __init__(self, target: Optional[logging.Logger] = None):
        self.logger = target or get_logger("spanextract.progress")

    def handle(self, event: ProgressEvent) -> None:
        self.logger.log(event.level, "[%s] %s", event.tag, event.describe(), extra={"event": type(event).__name__})


class ConsoleProgressSink:
    """
    Prints ``[tag] message`` lines through ``tqdm.write`` and keeps a chunk
    progress bar while a chunked document is in flight. Errors always print.
    """

    def __init__(self, show_progress: bool = True, show_debug: bool = False, stream=None):
        self.show_progress = show_progress
        self.show_debug = show_debug
        self.stream = stream
        self._bar: Optional[tqdm] = None
        self._lock = threading.Lock()

    @classmethod
    def quiet(cls, **kwargs) -> "ConsoleProgressSink":
        return cls(show_progress=False, show_debug=False, **kwargs)

    @classmethod
    def verbose(cls, **kwargs) -> "ConsoleProgressSink":
        return cls(show_progress=True, show_debug=True, **kwargs)

    @staticmethod
    def format_message(tag: str, message: str) -> str:
        return f"[{tag}] {message}"

    def handle(self, event: ProgressEvent) -> None:
        with self._lock:
            if isinstance(event, Error):
                tqdm.write(self.format_message(event.tag, event.describe()), file=self.stream or sys.stderr)
                return
            if isinstance(event, ChunkingStarted):
                self._open_bar(event.chunk_count)
            elif isinstance(event, BatchProgress):
                self._advance_bar(event.chunks_processed)
            elif isinstance(event, ProcessingCompleted):
                self._close_bar()

            if event.debug_only and not self.show_debug:
                return
            if not event.debug_only and not self.show_progress:
                return
            if isinstance(event, BatchProgress) and self._bar is not None:
                return
            tqdm.write(self.format_message(event.tag, event.describe()), file=self.stream or sys.stdout)

    def _open_bar(self, total: int) -> None:
        self._close_bar()
        if self.show_progress and total > 1:
            self._bar = tqdm(total=total, desc="chunks", unit="chunk", leave=False, file=self.stream or sys.stderr)

    def _advance_bar(self, processed: int) -> None:
        if self._bar is not None:
            self._bar.update(max(0, processed - self._bar.n))

    def _close_bar(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def emit(sink: Optional[ProgressSink], event: ProgressEvent) -> None:
    """Deliver ``event`` to ``sink``; a failing sink is logged, never raised."""
    if sink is None:
        return
    try:
        sink.handle(event)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Progress sink %s failed on %s: %s", type(sink).__name__, type(event).__name__, exc)


__all__ = [
    "AggregationStarted",
    "BatchProgress",
    "ChunkingStarted",
    "ConsoleProgressSink",
    "Debug",
    "Error",
    "LoggingProgressSink",
    "ModelCall",
    "ModelResponse",
    "NullProgressSink",
    "ProcessingCompleted",
    "ProcessingStarted",
    "ProgressEvent",
    "ProgressSink",
    "RetryAttempt",
    "ValidationCompleted",
    "ValidationStarted",
    "emit",
]
