"""Prompt template factory and public exports."""

from __future__ import annotations

from typing import Optional, Sequence

from spanextract.ai.prompting.base import PromptTemplate
from spanextract.ai.prompting.few_shot import FewShotPromptTemplate
from spanextract.ai.types import ExampleData


def build_prompt_template(
    description: str,
    examples: Optional[Sequence[ExampleData]] = None,
    config=None,
) -> PromptTemplate:
    """Return the few-shot template configured by ``config`` (fenced output by default)."""
    fence_output = bool(getattr(config, "fence_output", True))
    return FewShotPromptTemplate(description, examples, fence_output=fence_output)


__all__ = [
    "FewShotPromptTemplate",
    "PromptTemplate",
    "build_prompt_template",
]
