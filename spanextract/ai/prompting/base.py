"""Base interface for prompt templates."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from spanextract.ai.types import ExampleData


class PromptTemplate(ABC):
    """Renders the prompt for one chunk of source text."""

    name: str = "base"

    def __init__(self, description: str = "", examples: Optional[Sequence[ExampleData]] = None) -> None:
        self.description = description
        self.examples: List[ExampleData] = list(examples or [])

    @abstractmethod
    def render(self, chunk_text: str, additional_context: Optional[str] = None) -> str:
        """Return the full prompt for ``chunk_text``."""

    @property
    def expected_fields(self) -> List[str]:
        """Extraction classes demonstrated by the examples, in first-seen order."""
        seen = {}
        for example in self.examples:
            for extraction in example.extractions:
                seen.setdefault(extraction.extraction_class, None)
        return list(seen)


__all__ = ["PromptTemplate"]
