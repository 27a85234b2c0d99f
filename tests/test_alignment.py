import pytest

from spanextract.ai.types import AlignmentStatus, Extraction
from spanextract.core.unified_config import AlignmentConfig
from spanextract.exceptions import AlignmentError
from spanextract.processors.alignment import TextAligner

SOURCE = "The patient was given aspirin in the morning."


def align_one(text, source=SOURCE, offset=0, **config):
    extraction = Extraction("medication", text)
    count = TextAligner(AlignmentConfig(**config)).align_extractions([extraction], source, offset)
    return extraction, count


def test_exact_match_is_case_insensitive_by_default():
    extraction, count = align_one("ASPIRIN")
    assert count == 1
    assert extraction.alignment_status == AlignmentStatus.EXACT
    assert (extraction.char_interval.start_pos, extraction.char_interval.end_pos) == (22, 29)
    assert extraction.alignment_score == 1.0
    assert SOURCE[22:29] == "aspirin"


def test_case_sensitive_blocks_exact_match():
    extraction, count = align_one("ASPIRIN", case_sensitive=True)
    assert count == 0
    assert extraction.alignment_status == AlignmentStatus.NONE
    assert extraction.char_interval is None


def test_first_occurrence_wins():
    extraction, _ = align_one("aspirin", source="aspirin then aspirin")
    assert extraction.char_interval.start_pos == 0


def test_fuzzy_match_over_word_runs():
    extraction, count = align_one("patient given aspirin")
    assert count == 1
    assert extraction.alignment_status == AlignmentStatus.FUZZY
    assert extraction.alignment_score == pytest.approx(6 / 7)
    assert (extraction.char_interval.start_pos, extraction.char_interval.end_pos) == (4, 29)
    # The verbatim text is never rewritten.
    assert extraction.extraction_text == "patient given aspirin"


def test_fuzzy_threshold_boundary():
    score = 2.0 * 3 / 7
    at_threshold, _ = align_one("patient given aspirin", fuzzy_alignment_threshold=score)
    assert at_threshold.alignment_status == AlignmentStatus.FUZZY

    above, _ = align_one("patient given aspirin", fuzzy_alignment_threshold=0.86)
    assert above.alignment_status == AlignmentStatus.NONE
    assert above.alignment_score is None


def test_accept_match_lesser_keeps_lower_score():
    extraction, count = align_one(
        "patient given aspirin",
        fuzzy_alignment_threshold=0.9,
        accept_match_lesser=True,
        lesser_match_ratio=0.5,
    )
    assert count == 1
    assert extraction.alignment_status == AlignmentStatus.FUZZY
    assert extraction.alignment_score == pytest.approx(6 / 7)


def test_fuzzy_disabled():
    extraction, count = align_one("patient given aspirin", enable_fuzzy_alignment=False)
    assert count == 0
    assert extraction.alignment_status == AlignmentStatus.NONE


def test_fuzzy_ties_pick_earliest_candidate():
    source = "aspirin given. aspirin given."
    extraction, _ = align_one("aspirin was given", source=source)
    assert extraction.alignment_status == AlignmentStatus.FUZZY
    assert extraction.char_interval.start_pos == 0
    assert extraction.char_interval.end_pos == 13


def test_windowed_search_reaches_far_matches():
    source = "filler " * 500 + "the patient was given aspirin"
    extraction, _ = align_one("patient given aspirin", source=source, max_search_window=50)
    assert extraction.alignment_status == AlignmentStatus.FUZZY
    assert source[extraction.char_interval.start_pos:extraction.char_interval.end_pos] == "patient was given aspirin"


def test_chunk_offset_is_applied():
    extraction = Extraction("medication", "aspirin")
    TextAligner().align_chunk_extractions([extraction], SOURCE, chunk_offset=100)
    assert (extraction.char_interval.start_pos, extraction.char_interval.end_pos) == (122, 129)


def test_empty_text_is_never_aligned():
    extraction, count = align_one("   ")
    assert count == 0
    assert extraction.alignment_status == AlignmentStatus.NONE


def test_mixed_batch_count():
    extractions = [
        Extraction("medication", "aspirin"),
        Extraction("time", "morning"),
        Extraction("unknown", "completely unrelated words"),
    ]
    assert TextAligner().align_extractions(extractions, SOURCE) == 2
    assert extractions[2].alignment_status == AlignmentStatus.NONE


def test_structural_errors_raise():
    aligner = TextAligner()
    with pytest.raises(AlignmentError):
        aligner.align_extractions([Extraction("a", "b")], None)
    with pytest.raises(AlignmentError):
        aligner.align_extractions([Extraction("a", "b")], SOURCE, base_offset=-1)
