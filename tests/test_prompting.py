import json

from spanextract.ai.prompting import FewShotPromptTemplate, build_prompt_template
from spanextract.ai.types import ExampleData, Extraction
from spanextract.core.unified_config import ExtractConfig


def test_expected_fields_follow_first_seen_order(examples):
    extra = ExampleData("Give ibuprofen.", [Extraction("route", "oral"), Extraction("medication", "ibuprofen")])
    template = FewShotPromptTemplate("Extract medications.", examples + [extra])
    assert template.expected_fields == ["medication", "dosage", "route"]


def test_render_includes_examples_context_and_chunk(examples, prompt_chunk):
    template = FewShotPromptTemplate("Extract medications.", examples)
    prompt = template.render("Give 5mg warfarin.", "Discharge summary")
    assert prompt.startswith("Extract medications.")
    assert "Use only these classes: medication, dosage." in prompt
    assert "Example 1 Input:\nPatient takes aspirin 100mg daily." in prompt
    assert "```json" in prompt
    assert "Additional context:\nDischarge summary\n\n" in prompt
    assert prompt.endswith("Output:\n")
    assert prompt_chunk(prompt) == "Give 5mg warfarin."


def test_example_payload_is_class_keyed(examples):
    examples[0].extractions[0].attributes = {"route": "oral"}
    prompt = FewShotPromptTemplate("", examples, fence_output=False).render("text")
    assert "```" not in prompt
    start = prompt.index("Example 1 Output:\n") + len("Example 1 Output:\n")
    payload, _ = json.JSONDecoder().raw_decode(prompt[start:])
    assert payload == [
        {"medication": "aspirin", "medication_attributes": {"route": "oral"}},
        {"dosage": "100mg"},
    ]


def test_render_tolerates_braces_in_input(examples):
    prompt = FewShotPromptTemplate("Find {things}.", examples).render('{"not": "a template"}')
    assert 'Find {things}.' in prompt
    assert '{"not": "a template"}' in prompt


def test_build_prompt_template_reads_fence_setting(examples):
    template = build_prompt_template("desc", examples, ExtractConfig(fence_output=False))
    assert isinstance(template, FewShotPromptTemplate)
    assert template.fence_output is False
    assert build_prompt_template("desc", examples).fence_output is True
