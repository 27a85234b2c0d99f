"""
Tests for the extraction pipeline orchestrator, with fake model backends.
"""
import json

import pytest

from spanextract.ai.annotator import RAW_RESPONSE_CLASS, Annotator, extract, extract_sync
from spanextract.ai.progress import (
    AggregationStarted,
    BatchProgress,
    ChunkingStarted,
    ProcessingCompleted,
    ProcessingStarted,
)
from spanextract.ai.prompting import FewShotPromptTemplate
from spanextract.ai.types import AlignmentStatus, Document, ScoredOutput
from spanextract.exceptions import AggregationError, ModelCallError
from spanextract.processors.chunkers import chunk_document

DRUGS = ["aspirin", "ibuprofen", "warfarin", "heparin", "insulin", "metformin", "lisinopril", "statin"]


class RecordingSink:
    def __init__(self):
        self.events = []

    def handle(self, event):
        self.events.append(event)


def drug_responder(prompt_chunk, failing=()):
    """Answer with every known drug name present in the prompted chunk."""

    def respond(prompt):
        chunk = prompt_chunk(prompt)
        for name in failing:
            if name in chunk:
                raise RuntimeError(f"provider choked on {name}")
        return json.dumps([{"medication": drug} for drug in DRUGS if drug in chunk])

    return respond


def long_text():
    return "".join(f"Patient received {drug} today. " for drug in DRUGS)


def make_annotator(backend, examples, config, progress=None):
    return Annotator(backend, FewShotPromptTemplate("Extract medications.", examples), config, progress=progress)


@pytest.mark.asyncio
async def test_direct_path_aligns_extractions(make_backend, examples, config):
    backend = make_backend(lambda _: '```json\n[{"medication": "aspirin", "dosage": "100mg"}]\n```')
    annotator = make_annotator(backend, examples, config)
    text = "Patient was given Aspirin 100mg at noon."
    document = await annotator.annotate_text(text, document_id="note-1")

    assert document.document_id == "note-1"
    assert document.metadata["chunked"] is False
    assert [e.extraction_text for e in document.extractions] == ["aspirin", "100mg"]
    for extraction in document.extractions:
        assert extraction.alignment_status == AlignmentStatus.EXACT
        interval = extraction.char_interval
        assert text[interval.start_pos:interval.end_pos].lower() == extraction.extraction_text.lower()
    assert backend.params == [{"temperature": 0.5, "max_completion_tokens": 500}]
    assert len(backend.prompts) == 1


@pytest.mark.asyncio
async def test_direct_path_keeps_unparseable_output_as_raw_response(make_backend, examples, config):
    backend = make_backend(lambda _: "Sorry, I found nothing useful.")
    document = await make_annotator(backend, examples, config).annotate_text("Patient is stable.")
    assert len(document.extractions) == 1
    assert document.extractions[0].extraction_class == RAW_RESPONSE_CLASS
    assert document.extractions[0].extraction_text == "Sorry, I found nothing useful."
    assert document.warnings


@pytest.mark.asyncio
async def test_direct_path_model_failure_raises(make_backend, examples, config):
    def respond(_):
        raise RuntimeError("connection reset")

    annotator = make_annotator(make_backend(respond), examples, config)
    with pytest.raises(ModelCallError):
        await annotator.annotate_text("Patient is stable.")


@pytest.mark.asyncio
async def test_blank_document_makes_no_model_call(make_backend, examples, config):
    backend = make_backend(lambda _: "[]")
    document = await make_annotator(backend, examples, config).annotate_text("   \n ")
    assert document.extractions == []
    assert backend.prompts == []


@pytest.mark.asyncio
async def test_chunked_path_uses_absolute_offsets(make_backend, examples, config, prompt_chunk):
    config.max_char_buffer = 40
    backend = make_backend(drug_responder(prompt_chunk))
    text = long_text()
    document = await make_annotator(backend, examples, config).annotate_text(text)

    assert document.metadata["chunked"] is True
    assert document.metadata["passes"] == 1
    assert sorted(e.extraction_text for e in document.extractions) == sorted(DRUGS)
    for extraction in document.extractions:
        interval = extraction.char_interval
        assert text[interval.start_pos:interval.end_pos] == extraction.extraction_text
    assert [e.extraction_index for e in document.extractions] == list(range(len(DRUGS)))
    starts = [e.char_interval.start_pos for e in document.extractions]
    assert starts == sorted(starts)


@pytest.mark.asyncio
async def test_chunk_failures_are_partial(make_backend, examples, config, prompt_chunk):
    config.max_char_buffer = 40
    backend = make_backend(drug_responder(prompt_chunk, failing=("warfarin",)))
    text = long_text()
    annotator = make_annotator(backend, examples, config)
    document = await annotator.annotate_text(text)

    chunks = chunk_document(Document(text), config)
    failed_chunks = [chunk for chunk in chunks if "warfarin" in chunk.text]
    expected = sorted(
        drug for chunk in chunks if "warfarin" not in chunk.text for drug in DRUGS if drug in chunk.text
    )
    assert sorted(e.extraction_text for e in document.extractions) == expected
    assert len(document.errors) == len(failed_chunks)
    assert all(error.startswith(f"chunk {chunk.id}:") for error, chunk in zip(document.errors, failed_chunks))
    assert annotator.get_performance_stats()["failed_chunks"] == len(failed_chunks)


@pytest.mark.asyncio
async def test_all_chunks_failing_raises(make_backend, examples, config):
    config.max_char_buffer = 40

    def respond(_):
        raise RuntimeError("down")

    with pytest.raises(AggregationError):
        await make_annotator(make_backend(respond), examples, config).annotate_text(long_text())


@pytest.mark.asyncio
async def test_concurrency_is_bounded(make_backend, examples, config, prompt_chunk):
    config.max_char_buffer = 20
    config.max_workers = 2
    backend = make_backend(drug_responder(prompt_chunk), delay=0.05)
    annotator = make_annotator(backend, examples, config)
    await annotator.annotate_text(long_text())
    assert len(backend.prompts) >= 10
    assert backend.peak == 2


@pytest.mark.asyncio
async def test_blank_chunks_skip_the_model(make_backend, examples, config, prompt_chunk):
    config.max_char_buffer = 30
    backend = make_backend(drug_responder(prompt_chunk))
    text = "aspirin given." + " " * 100 + "ibuprofen given."
    document = await make_annotator(backend, examples, config).annotate_text(text)
    assert len(backend.prompts) == 2
    assert document.metadata["chunk_count"] == 3
    assert sorted(e.extraction_text for e in document.extractions) == ["aspirin", "ibuprofen"]


@pytest.mark.asyncio
async def test_refinement_pass_recovers_missed_entities(make_backend, examples, config, prompt_chunk):
    config.max_char_buffer = 40
    config.enable_multipass = True
    config.extraction_passes = 2
    inner = drug_responder(prompt_chunk)

    def respond(prompt):
        if "refinement pass" not in prompt:
            return "[]"
        return inner(prompt)

    backend = make_backend(respond)
    annotator = make_annotator(backend, examples, config)
    document = await annotator.annotate_text(long_text())

    assert sorted(e.extraction_text for e in document.extractions) == sorted(DRUGS)
    assert document.metadata["passes"] == 2
    assert annotator.get_performance_stats()["refinement_passes"] == 1
    refinement_prompts = [prompt for prompt in backend.prompts if "refinement pass 2" in prompt]
    assert refinement_prompts


@pytest.mark.asyncio
async def test_progress_events_in_order(make_backend, examples, config, prompt_chunk):
    config.max_char_buffer = 40
    config.batch_length = 3
    sink = RecordingSink()
    backend = make_backend(drug_responder(prompt_chunk))
    await make_annotator(backend, examples, config, progress=sink).annotate_text(long_text())

    kinds = [type(event) for event in sink.events]
    assert kinds[0] is ProcessingStarted
    assert kinds[1] is ChunkingStarted
    assert kinds[-1] is ProcessingCompleted
    assert AggregationStarted in kinds
    batches = [event for event in sink.events if isinstance(event, BatchProgress)]
    assert batches[0].chunks_processed == 0
    assert batches[-1].chunks_processed == batches[-1].total_chunks


@pytest.mark.asyncio
async def test_coroutine_backend_is_awaited(examples, config):
    class AsyncBackend:
        provider_name = "async-fake"
        model_id = "async-model"

        async def infer(self, prompts, **params):
            return [[ScoredOutput('[{"medication": "aspirin"}]')] for _ in prompts]

    annotator = Annotator(AsyncBackend(), FewShotPromptTemplate("", examples), config)
    document = await annotator.annotate_text("Give aspirin now.")
    assert document.extractions[0].alignment_status == AlignmentStatus.EXACT


@pytest.mark.asyncio
async def test_extract_helper(make_backend, examples, config):
    backend = make_backend(lambda _: '[{"medication": "aspirin"}]')
    document = await extract("Give aspirin now.", examples, config=config, backend=backend)
    assert document.extraction_count == 1


def test_extract_sync_and_stats(make_backend, examples, config):
    backend = make_backend(lambda _: '[{"dosage": "100mg"}]')
    document = extract_sync("Take 100mg twice.", examples, config=config, backend=backend, document_id="d")
    assert document.document_id == "d"
    assert document.extractions[0].char_interval.start_pos == 5
    assert document.metadata["processing_time"] >= 0
