"""Few-shot prompt template rendered from annotated examples."""

from __future__ import annotations

import json
import textwrap
from typing import Any, Dict, List, Optional, Sequence

from spanextract.ai.prompting.base import PromptTemplate
from spanextract.ai.types import ExampleData, Extraction


class FewShotPromptTemplate(PromptTemplate):
    """Shows each example's text and its extractions as JSON, then asks for the same on the chunk."""

    name = "few_shot"

    TEMPLATE = textwrap.dedent(
        """\
        {description}

        Return a JSON array. Each element maps an extraction class to text copied verbatim from the input.
        Put extra details for a class under "<class>_attributes". Use only these classes: {classes}.

        {examples}
        {context}Input:
        {chunk}

        Output:
        """
    )

    def __init__(
        self,
        description: str,
        examples: Optional[Sequence[ExampleData]] = None,
        fence_output: bool = True,
    ) -> None:
        super().__init__(description, examples)
        self.fence_output = fence_output

    def render(self, chunk_text: str, additional_context: Optional[str] = None) -> str:
        context = f"Additional context:\n{additional_context.strip()}\n\n" if additional_context else ""
        return self.TEMPLATE.format(
            description=self.description.strip(),
            classes=", ".join(self.expected_fields) or "any",
            examples=self._render_examples(),
            context=context,
            chunk=chunk_text,
        )

    def _render_examples(self) -> str:
        blocks: List[str] = []
        for number, example in enumerate(self.examples, start=1):
            payload = json.dumps(_example_payload(example.extractions), ensure_ascii=False, indent=2)
            if self.fence_output:
                payload = f"```json\n{payload}\n```"
            blocks.append(f"Example {number} Input:\n{example.text}\n\nExample {number} Output:\n{payload}\n")
        return "\n".join(blocks)


def _example_payload(extractions: Sequence[Extraction]) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for extraction in extractions:
        item: Dict[str, Any] = {extraction.extraction_class: extraction.extraction_text}
        if extraction.attributes:
            item[f"{extraction.extraction_class}_attributes"] = dict(extraction.attributes)
        items.append(item)
    return items


__all__ = ["FewShotPromptTemplate"]
