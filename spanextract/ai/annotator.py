"""
Pipeline orchestrator.

Short documents go to the model in one call. Longer ones are chunked, each
chunk is processed through the worker pool (model call, resolution, alignment
at the chunk's offset), under-productive chunks are optionally re-run with
refinement guidance, and the per-chunk results are aggregated.
"""

from __future__ import annotations

import asyncio
import inspect
import math
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from spanextract.ai.llm_backends import LLMBackendBase, build_backend
from spanextract.ai.multipass import merge_pass, needs_refinement, refinement_context
from spanextract.ai.progress import (
    AggregationStarted,
    BatchProgress,
    ChunkingStarted,
    Debug,
    Error,
    ModelCall,
    ModelResponse,
    NullProgressSink,
    ProcessingCompleted,
    ProcessingStarted,
    ProgressSink,
    ValidationCompleted,
    ValidationStarted,
    emit,
)
from spanextract.ai.prompting import PromptTemplate, build_prompt_template
from spanextract.ai.types import (
    AlignmentStatus,
    AnnotatedDocument,
    Chunk,
    ChunkResult,
    Document,
    ExampleData,
    Extraction,
    ValidationResult,
)
from spanextract.ai.worker_pool import AsyncWorkerPool, ChunkTask
from spanextract.core.unified_config import ExtractConfig, get_config
from spanextract.exceptions import AlignmentError, ModelCallError, ResolutionError
from spanextract.logging_config import get_logger
from spanextract.processors.aggregator import Aggregator
from spanextract.processors.alignment import TextAligner
from spanextract.processors.chunkers import chunk_document
from spanextract.processors.tokenizer import Tokenizer, default_tokenizer
from spanextract.validation.resolver import Resolver

logger = get_logger(__name__)

RAW_RESPONSE_CLASS = "raw_response"


class Annotator:
    """Runs documents through model inference, resolution, alignment and aggregation."""

    def __init__(
        self,
        backend: LLMBackendBase,
        prompt_template: PromptTemplate,
        config: Optional[ExtractConfig] = None,
        resolver: Optional[Resolver] = None,
        aligner: Optional[TextAligner] = None,
        tokenizer: Optional[Tokenizer] = None,
        progress: Optional[ProgressSink] = None,
    ):
        self.config = (config or get_config()).validate()
        self.backend = backend
        self.prompt_template = prompt_template
        self.tokenizer = tokenizer or default_tokenizer()
        # None lets the chunker build the tokenizer named in config.chunking.
        self.chunk_tokenizer = tokenizer
        self.resolver = resolver or Resolver(self.config.validation)
        self.aligner = aligner or TextAligner(self.config.alignment, self.tokenizer)
        self.progress = progress or NullProgressSink()
        self.aggregator = Aggregator()
        self.expected_fields: List[str] = list(prompt_template.expected_fields)
        self.max_output_tokens = self.config.max_output_tokens or max(len(self.expected_fields) * 200, 500)
        self._pool = AsyncWorkerPool(self.config.max_workers)
        self.performance_stats: Dict[str, Any] = {
            "documents": 0,
            "chunked_documents": 0,
            "chunks": 0,
            "failed_chunks": 0,
            "model_calls": 0,
            "refinement_passes": 0,
            "avg_processing_time": 0.0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def annotate_document(self, document: Document) -> AnnotatedDocument:
        return await self.annotate_text(document.text, document.additional_context, document.document_id)

    async def annotate_text(
        self,
        text: str,
        additional_context: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> AnnotatedDocument:
        context = additional_context if additional_context is not None else self.config.additional_context
        start_time = time.perf_counter()
        emit(
            self.progress,
            ProcessingStarted(len(text), self.backend.model_id, self.backend.provider_name),
        )

        if len(text) <= self.config.max_char_buffer:
            document = await self._annotate_direct(text, context, document_id)
        else:
            if self.config.debug:
                emit(
                    self.progress,
                    Debug(
                        "chunking",
                        f"Text length ({len(text)} chars) exceeds buffer limit "
                        f"({self.config.max_char_buffer} chars), chunking",
                    ),
                )
            document = await self._annotate_chunked(text, context, document_id)

        processing_time = time.perf_counter() - start_time
        document.metadata["processing_time"] = processing_time
        self._update_stats(processing_time, document)
        emit(self.progress, ProcessingCompleted(document.extraction_count, int(processing_time * 1000)))
        logger.info(
            "Extracted %d extractions in %.2fs",
            document.extraction_count,
            processing_time,
            extra={"document_id": document_id, "chunked": document.metadata.get("chunked", False)},
        )
        return document

    def get_performance_stats(self) -> Dict[str, Any]:
        return self.performance_stats.copy()

    def close(self) -> None:
        self._pool.shutdown()

    # ------------------------------------------------------------------
    # Direct path
    # ------------------------------------------------------------------
    async def _annotate_direct(self, text: str, context: Optional[str], document_id: Optional[str]) -> AnnotatedDocument:
        if not text.strip():
            return AnnotatedDocument(text=text, extractions=[], document_id=document_id, metadata={"chunked": False})
        prompt = self.prompt_template.render(text, context)
        try:
            raw = await self._infer(prompt)
        except ModelCallError as exc:
            emit(self.progress, Error("model_call", str(exc)))
            raise

        document = AnnotatedDocument(text=text, document_id=document_id, metadata={"chunked": False})
        try:
            extractions, validation = await self._resolve(raw)
        except ResolutionError as exc:
            logger.warning("Could not resolve model output, keeping raw response: %s", exc)
            document.extractions = [Extraction(extraction_class=RAW_RESPONSE_CLASS, extraction_text=raw)]
            document.warnings.append(f"Unstructured model response: {exc}")
            return document

        aligned = self._align(extractions, text, 0, document.warnings)
        self._report_validation(extractions, aligned, validation)
        document.extractions = extractions
        document.errors.extend(issue.message for issue in validation.errors)
        document.warnings.extend(issue.message for issue in validation.warnings)
        if validation.raw_output_file:
            document.metadata["raw_output_files"] = [validation.raw_output_file]
        return document

    # ------------------------------------------------------------------
    # Chunked path
    # ------------------------------------------------------------------
    async def _annotate_chunked(self, text: str, context: Optional[str], document_id: Optional[str]) -> AnnotatedDocument:
        chunk_start = time.perf_counter()
        chunks = chunk_document(Document(text, document_id, context), self.config, self.chunk_tokenizer)
        chunk_duration = time.perf_counter() - chunk_start
        strategy = self.config.chunking.strategy_name
        emit(self.progress, ChunkingStarted(len(text), len(chunks), strategy))
        self._log_chunk_summary(chunks, strategy, chunk_duration)

        if not chunks:
            return AnnotatedDocument(text=text, extractions=[], document_id=document_id, metadata={"chunked": True})

        results: Dict[int, ChunkResult] = {}
        for result in await self._run_pass([ChunkTask(chunk, 1, context) for chunk in chunks]):
            results[result.chunk_id] = result

        passes_run = 1
        if self.config.multipass_active:
            passes_run = await self._refine(chunks, results, context)

        emit(self.progress, AggregationStarted(len(chunks)))
        document = self.aggregator.aggregate(text, list(results.values()), document_id)
        document.metadata.update({"chunked": True, "passes": passes_run})

        failed = sum(1 for result in results.values() if not result.is_success)
        self.performance_stats["chunks"] += len(chunks)
        self.performance_stats["failed_chunks"] += failed
        return document

    async def _refine(self, chunks: Sequence[Chunk], results: Dict[int, ChunkResult], context: Optional[str]) -> int:
        passes_run = 1
        min_extractions = self.config.multipass_min_extractions
        threshold = self.config.multipass_quality_threshold
        for pass_number in range(2, self.config.extraction_passes + 1):
            tasks = []
            for chunk in chunks:
                current = results[chunk.id]
                if chunk.is_blank() and current.is_success:
                    continue
                found = current.extractions or []
                if needs_refinement(len(found), not current.is_success, min_extractions):
                    tasks.append(ChunkTask(chunk, pass_number, refinement_context(context, pass_number, found)))
            if not tasks:
                logger.debug("No chunks need refinement after pass %d", pass_number - 1)
                break

            logger.info("Refinement pass %d over %d chunks", pass_number, len(tasks))
            passes_run = pass_number
            self.performance_stats["refinement_passes"] += 1
            for task, outcome in zip(tasks, await self._run_pass(tasks)):
                previous = results[task.chunk.id]
                if not outcome.is_success:
                    previous.passes = pass_number
                    previous.warnings.append(f"pass {pass_number} failed: {outcome.error}")
                    continue
                merged = list(previous.extractions or [])
                stats = merge_pass(merged, outcome.extractions or [], pass_number, threshold)
                logger.debug(
                    "Chunk %d pass %d: +%d new, %d replaced, %d duplicate, %d below quality",
                    task.chunk.id,
                    pass_number,
                    stats.added,
                    stats.replaced,
                    stats.duplicates,
                    stats.rejected,
                )
                results[task.chunk.id] = ChunkResult.success(
                    task.chunk,
                    merged,
                    processing_time=previous.processing_time + outcome.processing_time,
                    warnings=previous.warnings + outcome.warnings,
                    passes=pass_number,
                )
        return passes_run

    async def _run_pass(self, tasks: List[ChunkTask]) -> List[ChunkResult]:
        total = len(tasks)
        batch_length = self.config.batch_length
        total_batches = max(1, math.ceil(total / batch_length))
        emit(self.progress, BatchProgress(1, total_batches, 0, total))

        def _on_result(done: int, _result: ChunkResult) -> None:
            if done % batch_length == 0 or done == total:
                emit(self.progress, BatchProgress(math.ceil(done / batch_length), total_batches, done, total))

        return await self._pool.map(tasks, self._process_chunk, _on_result)

    async def _process_chunk(self, task: ChunkTask) -> ChunkResult:
        chunk = task.chunk
        start_time = time.perf_counter()
        if chunk.is_blank():
            return ChunkResult.success(chunk, [], passes=task.pass_number)

        try:
            prompt = self.prompt_template.render(chunk.text, task.context)
            raw = await self._infer(prompt, chunk_id=chunk.id)
            extractions, validation = await self._resolve(raw)
        except (ModelCallError, ResolutionError) as exc:
            logger.warning("Chunk %d failed: %s", chunk.id, exc, extra={"error_code": exc.error_code})
            emit(self.progress, Error(f"chunk {chunk.id}", str(exc)))
            return ChunkResult.failure(
                chunk, str(exc), processing_time=time.perf_counter() - start_time, passes=task.pass_number
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while processing chunk %d", chunk.id)
            emit(self.progress, Error(f"chunk {chunk.id}", str(exc)))
            return ChunkResult.failure(
                chunk, f"{type(exc).__name__}: {exc}",
                processing_time=time.perf_counter() - start_time,
                passes=task.pass_number,
            )

        warnings = [issue.message for issue in validation.errors + validation.warnings]
        aligned = self._align(extractions, chunk.text, chunk.char_offset, warnings)
        self._report_validation(extractions, aligned, validation)
        if self.config.debug:
            emit(
                self.progress,
                Debug("chunk_processing", f"Chunk {chunk.id} produced {len(extractions)} extractions ({aligned} aligned)"),
            )
        return ChunkResult.success(
            chunk,
            extractions,
            processing_time=time.perf_counter() - start_time,
            warnings=warnings,
            passes=task.pass_number,
        )

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------
    async def _infer(self, prompt: str, chunk_id: Optional[int] = None) -> str:
        emit(self.progress, ModelCall(self.backend.provider_name, self.backend.model_id, len(prompt)))
        params = {"temperature": self.config.temperature, "max_completion_tokens": self.max_output_tokens}
        self.performance_stats["model_calls"] += 1
        try:
            if inspect.iscoroutinefunction(self.backend.infer):
                outputs = await self.backend.infer([prompt], **params)
            else:
                outputs = await self._pool.run_blocking(self.backend.infer, [prompt], **params)
        except ModelCallError as exc:
            if chunk_id is not None:
                exc.details.setdefault("chunk_id", chunk_id)
            emit(self.progress, ModelResponse(success=False))
            raise
        except Exception as exc:
            emit(self.progress, ModelResponse(success=False))
            raise ModelCallError(
                f"Model call failed: {exc}",
                model_id=self.backend.model_id,
                provider=self.backend.provider_name,
                chunk_id=chunk_id,
            ) from exc

        if not outputs or not outputs[0]:
            emit(self.progress, ModelResponse(success=False))
            raise ModelCallError(
                "Model returned no output",
                model_id=self.backend.model_id,
                provider=self.backend.provider_name,
                chunk_id=chunk_id,
            )
        text = outputs[0][0].text()
        emit(self.progress, ModelResponse(success=True, output_length=len(text)))
        return text

    async def _resolve(self, raw: str) -> Tuple[List[Extraction], ValidationResult]:
        emit(self.progress, ValidationStarted(len(raw)))
        if self.config.validation.save_raw_outputs:
            return await self._pool.run_blocking(self.resolver.validate_and_parse, raw, self.expected_fields)
        return self.resolver.validate_and_parse(raw, self.expected_fields)

    def _align(self, extractions: List[Extraction], source: str, offset: int, warnings: List[str]) -> int:
        try:
            return self.aligner.align_extractions(extractions, source, offset)
        except AlignmentError as exc:
            logger.warning("Alignment failed, leaving extractions unaligned: %s", exc, extra=exc.details)
            warnings.append(f"Alignment failed: {exc}")
            for extraction in extractions:
                extraction.set_alignment(AlignmentStatus.NONE)
            return 0

    def _report_validation(self, extractions: List[Extraction], aligned: int, validation: ValidationResult) -> None:
        emit(
            self.progress,
            ValidationCompleted(len(extractions), aligned, len(validation.errors), len(validation.warnings)),
        )
        if self.config.debug and validation.raw_output_file:
            emit(self.progress, Debug("validation", f"Raw output saved to: {validation.raw_output_file}"))

    def _log_chunk_summary(self, chunks: Sequence[Chunk], strategy: str, duration: float) -> None:
        if not chunks:
            return
        avg_chunk_size = sum(chunk.char_length for chunk in chunks) / len(chunks)
        logger.info(
            "Chunked document via %s: %d chunks, avg size %.1f chars, chunk_time %.3fs",
            strategy,
            len(chunks),
            avg_chunk_size,
            duration,
            extra={
                "chunking_method": strategy,
                "chunk_count": len(chunks),
                "avg_chunk_size": round(avg_chunk_size, 2),
                "overlapping_chunks": sum(1 for chunk in chunks if chunk.has_overlap),
                "chunking_duration": round(duration, 4),
            },
        )

    def _update_stats(self, processing_time: float, document: AnnotatedDocument) -> None:
        stats = self.performance_stats
        total_before = stats["documents"]
        stats["documents"] = total_before + 1
        if document.metadata.get("chunked"):
            stats["chunked_documents"] += 1
        stats["avg_processing_time"] = (
            (stats["avg_processing_time"] * total_before + processing_time) / (total_before + 1)
        )


async def extract(
    text: str,
    examples: Sequence[ExampleData],
    config: Optional[ExtractConfig] = None,
    backend: Optional[LLMBackendBase] = None,
    description: str = "",
    progress: Optional[ProgressSink] = None,
    additional_context: Optional[str] = None,
    document_id: Optional[str] = None,
) -> AnnotatedDocument:
    """One-shot extraction: build the template, backend and annotator, then annotate ``text``."""
    config = config or get_config()
    template = build_prompt_template(description, examples, config)
    backend = backend or build_backend(config, progress=progress)
    annotator = Annotator(backend, template, config, progress=progress)
    try:
        return await annotator.annotate_text(text, additional_context, document_id)
    finally:
        annotator.close()


def extract_sync(*args: Any, **kwargs: Any) -> AnnotatedDocument:
    """Blocking wrapper around :func:`extract`."""
    return asyncio.run(extract(*args, **kwargs))


__all__ = ["Annotator", "RAW_RESPONSE_CLASS", "extract", "extract_sync"]
