import pytest

from spanextract.ai.types import AlignmentStatus, CharInterval, Chunk, ChunkResult, Extraction, OverlapInfo
from spanextract.exceptions import AggregationError
from spanextract.processors.aggregator import Aggregator

TEXT = "aspirin 100mg daily then ibuprofen 200mg nightly"


def aligned(cls, text, start):
    extraction = Extraction(cls, text)
    extraction.set_alignment(AlignmentStatus.EXACT, CharInterval(start, start + len(text)))
    return extraction


def chunk(chunk_id, offset, length, overlap=None):
    return Chunk(
        id=chunk_id,
        text=TEXT[offset:offset + length],
        char_offset=offset,
        char_length=length,
        has_overlap=overlap is not None,
        overlap_info=overlap,
    )


FIRST = chunk(0, 0, 26)
SECOND = chunk(1, 20, 28, OverlapInfo(previous_chunk_id=0, start=20, end=26))


def test_results_are_ordered_and_reindexed():
    results = [
        ChunkResult.success(SECOND, [aligned("medication", "ibuprofen", 25)]),
        ChunkResult.success(FIRST, [aligned("medication", "aspirin", 0), aligned("dosage", "100mg", 8)]),
    ]
    document = Aggregator().aggregate(TEXT, results, document_id="doc")
    assert [e.extraction_text for e in document.extractions] == ["aspirin", "100mg", "ibuprofen"]
    assert [e.extraction_index for e in document.extractions] == [0, 1, 2]
    assert document.document_id == "doc"
    assert document.metadata["chunk_count"] == 2
    assert document.errors == []


def test_extraction_inside_overlap_is_dropped_from_later_chunk():
    results = [
        ChunkResult.success(FIRST, [aligned("word", "then", 20)]),
        ChunkResult.success(SECOND, [aligned("word", "then", 20), aligned("medication", "ibuprofen", 25)]),
    ]
    document = Aggregator().aggregate(TEXT, results)
    assert [e.extraction_text for e in document.extractions] == ["then", "ibuprofen"]
    assert document.metadata["dropped_overlap"] == 1


def test_overlap_tie_goes_to_earlier_chunk_across_classes():
    results = [
        ChunkResult.success(FIRST, [aligned("word", "then", 20)]),
        ChunkResult.success(SECOND, [aligned("time", "then", 20)]),
    ]
    document = Aggregator().aggregate(TEXT, results)
    assert [(e.extraction_class, e.extraction_text) for e in document.extractions] == [("word", "then")]
    assert document.metadata["dropped_overlap"] == 1


def test_chunk_extractions_renumbered_in_source_order():
    results = [
        ChunkResult.success(
            FIRST,
            [
                aligned("dosage", "100mg", 8),
                Extraction("note", "unplaced"),
                aligned("medication", "aspirin", 0),
            ],
        ),
        ChunkResult.success(SECOND, [aligned("dosage", "200mg", 35), aligned("medication", "ibuprofen", 25)]),
    ]
    document = Aggregator().aggregate(TEXT, results)
    assert [e.extraction_text for e in document.extractions] == ["aspirin", "100mg", "unplaced", "ibuprofen", "200mg"]
    assert [e.extraction_index for e in document.extractions] == [0, 1, 2, 3, 4]


def test_overlap_kept_when_predecessor_failed():
    results = [
        ChunkResult.failure(FIRST, "model timed out"),
        ChunkResult.success(SECOND, [aligned("word", "then", 20)]),
    ]
    document = Aggregator().aggregate(TEXT, results)
    assert [e.extraction_text for e in document.extractions] == ["then"]
    assert document.errors == ["chunk 0: model timed out"]
    assert document.metadata["failed_chunks"] == 1


def test_aligned_duplicates_are_dropped():
    results = [
        ChunkResult.success(FIRST, [aligned("medication", "aspirin", 0), aligned("medication", "aspirin", 0)]),
    ]
    document = Aggregator().aggregate(TEXT, results)
    assert document.extraction_count == 1
    assert document.metadata["dropped_duplicates"] == 1


def test_unaligned_duplicates_only_dropped_against_predecessor():
    third = chunk(2, 40, 8)
    results = [
        ChunkResult.success(FIRST, [Extraction("frequency", "Daily")]),
        ChunkResult.success(SECOND, [Extraction("frequency", "daily ")]),
        ChunkResult.success(third, [Extraction("frequency", "daily")]),
    ]
    document = Aggregator().aggregate(TEXT, results)
    assert [e.extraction_text for e in document.extractions] == ["Daily", "daily"]


def test_warnings_are_prefixed():
    results = [ChunkResult.success(FIRST, [], warnings=["trailing_commas_removed"])]
    document = Aggregator().aggregate(TEXT, results)
    assert document.warnings == ["chunk 0: trailing_commas_removed"]


def test_all_chunks_failed_raises():
    results = [ChunkResult.failure(FIRST, "boom"), ChunkResult.failure(SECOND, "bang")]
    with pytest.raises(AggregationError) as exc_info:
        Aggregator().aggregate(TEXT, results)
    assert exc_info.value.details["failed_chunks"] == 2
    assert exc_info.value.details["total_chunks"] == 2


def test_no_results_is_an_empty_document():
    document = Aggregator().aggregate(TEXT, [])
    assert document.extractions == []
    assert document.metadata["chunk_count"] == 0
