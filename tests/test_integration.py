"""
End-to-end tests for the complete pipeline
"""
import json
import os

import pytest

from spanextract.ai.annotator import Annotator, extract_sync
from spanextract.ai.prompting import FewShotPromptTemplate
from spanextract.ai.types import AlignmentStatus
from spanextract.core.unified_config import ChunkingConfig, ExtractConfig

DRUGS = ["aspirin", "ibuprofen", "warfarin", "heparin", "insulin", "metformin"]

NOTE = "\n\n".join(
    f"Day {day}. The patient received {drug} after breakfast. Vitals were stable overnight."
    for day, drug in enumerate(DRUGS, start=1)
)


class TestPipeline:
    """Full runs over a multi-chunk document with a scripted backend"""

    @pytest.fixture
    def overlapping_config(self, config):
        config.max_char_buffer = 80
        config.chunking = ChunkingConfig(max_chunk_size=80, strategy="semantic", overlap_size=30)
        return config

    @pytest.fixture
    def backend(self, make_backend, prompt_chunk):
        def respond(prompt):
            chunk = prompt_chunk(prompt)
            return json.dumps([{"medication": drug} for drug in DRUGS if drug in chunk])

        return make_backend(respond)

    @pytest.mark.asyncio
    async def test_overlap_does_not_duplicate(self, overlapping_config, backend, examples):
        annotator = Annotator(backend, FewShotPromptTemplate("Extract medications.", examples), overlapping_config)
        document = await annotator.annotate_text(NOTE, document_id="note")

        assert [e.extraction_text for e in document.extractions] == DRUGS
        assert all(e.alignment_status == AlignmentStatus.EXACT for e in document.extractions)
        for extraction in document.extractions:
            interval = extraction.char_interval
            assert NOTE[interval.start_pos:interval.end_pos] == extraction.extraction_text
        assert document.metadata["chunk_count"] > len(DRUGS)
        assert document.errors == []

    def test_results_are_deterministic(self, overlapping_config, backend, examples):
        first = extract_sync(NOTE, examples, config=overlapping_config, backend=backend)
        second = extract_sync(NOTE, examples, config=overlapping_config, backend=backend)
        assert [(e.extraction_text, e.char_interval) for e in first.extractions] == [
            (e.extraction_text, e.char_interval) for e in second.extractions
        ]


@pytest.mark.integration
def test_against_local_ollama(examples):
    """Needs a running Ollama server; run with ``pytest -m integration``."""
    config = ExtractConfig(
        model_id=os.getenv("SPANEXTRACT_MODEL_ID", "mistral"),
        model_url=os.getenv("SPANEXTRACT_MODEL_URL", "http://localhost:11434"),
        llm_max_retries=1,
    )
    document = extract_sync(
        "The patient was started on metformin 500mg twice daily.",
        examples,
        config=config,
        description="Extract medications and dosages.",
    )
    assert document.extraction_count >= 1
