"""
Test-wide fixtures and configuration.

Ensures the suite runs in SPANEXTRACT_ENV=testing and provides fake model
backends so no test needs a real provider.
"""
import os
import threading
import time
from typing import Callable, Dict, List, Optional

import pytest

from spanextract.ai.llm_backends import LLMBackendBase
from spanextract.ai.types import ExampleData, Extraction
from spanextract.core import unified_config
from spanextract.core.unified_config import ExtractConfig


def pytest_configure(config: pytest.Config) -> None:  # noqa: D401
    os.environ.setdefault("SPANEXTRACT_ENV", "testing")
    os.environ.setdefault("ENABLE_GPU", "false")
    unified_config.reload_config()


class FakeBackend(LLMBackendBase):
    """Backend returning canned responses chosen by a callable on the prompt."""

    provider_name = "fake"

    def __init__(self, respond: Callable[[str], str], delay: float = 0.0):
        super().__init__(ExtractConfig())
        self.model_id = "fake-model"
        self.respond = respond
        self.delay = delay
        self.prompts: List[str] = []
        self.params: List[Dict] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def generate(self, prompt: str, **params) -> str:
        with self._lock:
            self.prompts.append(prompt)
            self.params.append(params)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.respond(prompt)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def make_backend():
    def _make(respond: Callable[[str], str], delay: float = 0.0) -> FakeBackend:
        return FakeBackend(respond, delay)

    return _make


@pytest.fixture
def examples() -> List[ExampleData]:
    return [
        ExampleData(
            text="Patient takes aspirin 100mg daily.",
            extractions=[
                Extraction("medication", "aspirin"),
                Extraction("dosage", "100mg"),
            ],
        )
    ]


@pytest.fixture
def config() -> ExtractConfig:
    cfg = ExtractConfig()
    cfg.max_workers = 4
    cfg.max_char_buffer = 1000
    return cfg


def chunk_text_of(prompt: str) -> Optional[str]:
    """Return the text after the final 'Input:' marker of a rendered prompt."""
    marker = "Input:\n"
    idx = prompt.rfind(marker)
    if idx == -1:
        return None
    body = prompt[idx + len(marker):]
    return body.rsplit("\n\nOutput:", 1)[0]


@pytest.fixture
def prompt_chunk():
    return chunk_text_of


class FakeEncoding:
    """Stands in for a tiktoken ``Encoding`` with fixed piece offsets.

    Repeated offsets mimic byte-level pieces that split one character.
    """

    def __init__(self, offsets: List[int]):
        self.offsets = offsets
        self.encode_calls: List[Dict] = []

    def encode(self, text: str, disallowed_special=()) -> List[int]:
        self.encode_calls.append({"text": text, "disallowed_special": disallowed_special})
        return list(range(len(self.offsets)))

    def decode_with_offsets(self, tokens: List[int]):
        return self.encode_calls[-1]["text"], [self.offsets[token] for token in tokens]


BPE_TEXT = "Hi café!\n\n12 ok"
# "Hi" | " caf" | "é" split over two pieces | "!" | "\n\n" | "12" | " ok"
BPE_OFFSETS = [0, 2, 6, 6, 7, 8, 10, 12]


@pytest.fixture
def fake_encoding() -> FakeEncoding:
    return FakeEncoding(BPE_OFFSETS)


@pytest.fixture
def bpe_text() -> str:
    return BPE_TEXT
