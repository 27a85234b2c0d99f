"""Span-anchored structured extraction from unstructured text with language models."""

from spanextract.ai.annotator import Annotator, extract, extract_sync
from spanextract.ai.llm_backends import LLMBackendBase, build_backend
from spanextract.ai.progress import ConsoleProgressSink, LoggingProgressSink, NullProgressSink
from spanextract.ai.prompting import FewShotPromptTemplate, PromptTemplate, build_prompt_template
from spanextract.ai.types import (
    AlignmentStatus,
    AnnotatedDocument,
    CharInterval,
    Chunk,
    ChunkResult,
    Document,
    ExampleData,
    Extraction,
    ScoredOutput,
)
from spanextract.core.unified_config import (
    AlignmentConfig,
    ChunkingConfig,
    ExtractConfig,
    ValidationConfig,
    get_config,
)
from spanextract.exceptions import SpanExtractError

__version__ = "0.1.0"

__all__ = [
    "AlignmentConfig",
    "AlignmentStatus",
    "AnnotatedDocument",
    "Annotator",
    "CharInterval",
    "Chunk",
    "ChunkResult",
    "ChunkingConfig",
    "ConsoleProgressSink",
    "Document",
    "ExampleData",
    "ExtractConfig",
    "Extraction",
    "FewShotPromptTemplate",
    "LLMBackendBase",
    "LoggingProgressSink",
    "NullProgressSink",
    "PromptTemplate",
    "ScoredOutput",
    "SpanExtractError",
    "ValidationConfig",
    "build_backend",
    "build_prompt_template",
    "extract",
    "extract_sync",
    "get_config",
]
