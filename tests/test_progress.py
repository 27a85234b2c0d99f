import io
import logging

from spanextract.ai.progress import (
    BatchProgress,
    ChunkingStarted,
    ConsoleProgressSink,
    Error,
    LoggingProgressSink,
    ModelCall,
    ModelResponse,
    ProcessingCompleted,
    ProcessingStarted,
    RetryAttempt,
    emit,
)


def test_describe_messages():
    assert ProcessingStarted(1500, "mistral", "ollama").describe() == "ollama/mistral -- 1500 chars input"
    assert ChunkingStarted(5000, 5, "fixed").describe() == "5 chunks (fixed strategy, 5000 chars total)"
    assert BatchProgress(1, 2, 0, 12).describe() == "0/12 chunks processed"
    assert RetryAttempt("ollama generate", 1, 3, 2.0).describe() == (
        "ollama generate failed (attempt 1/3), retrying in 2s"
    )
    assert ConsoleProgressSink.format_message("done", "3 extractions") == "[done] 3 extractions"


def test_response_level_depends_on_success():
    assert ModelResponse(success=True, output_length=10).level == logging.DEBUG
    assert ModelResponse(success=False).level == logging.WARNING


def test_console_sink_filters_debug_events():
    stream = io.StringIO()
    sink = ConsoleProgressSink(stream=stream)
    sink.handle(ProcessingStarted(10, "m", "p"))
    sink.handle(ModelCall("p", "m", 42))
    sink.handle(ProcessingCompleted(2, 15))
    lines = stream.getvalue().splitlines()
    assert lines == ["[inference] p/m -- 10 chars input", "[done] 2 extractions found in 15ms"]


def test_verbose_sink_shows_debug_events():
    stream = io.StringIO()
    ConsoleProgressSink.verbose(stream=stream).handle(ModelCall("p", "m", 42))
    assert "[inference] p call -- 42 chars" in stream.getvalue()


def test_quiet_sink_still_reports_errors():
    stream = io.StringIO()
    sink = ConsoleProgressSink.quiet(stream=stream)
    sink.handle(ProcessingStarted(10, "m", "p"))
    sink.handle(Error("chunk 3", "timeout"))
    assert stream.getvalue().splitlines() == ["[error] chunk 3: timeout"]


def test_logging_sink_uses_event_level(caplog):
    sink = LoggingProgressSink(logging.getLogger("spanextract.test.progress"))
    with caplog.at_level(logging.DEBUG, logger="spanextract.test.progress"):
        sink.handle(RetryAttempt("call", 1, 2, 0.5))
        sink.handle(BatchProgress(1, 1, 0, 3))
    assert [record.levelno for record in caplog.records] == [logging.WARNING, logging.DEBUG]
    assert caplog.records[0].getMessage() == "[retry] call failed (attempt 1/2), retrying in 0.5s"
    assert caplog.records[0].event == "RetryAttempt"


def test_emit_never_raises_from_a_broken_sink():
    class BrokenSink:
        def handle(self, event):
            raise RuntimeError("sink down")

    emit(BrokenSink(), ProcessingCompleted(0, 0))
    emit(None, ProcessingCompleted(0, 0))
