"""
Command-line entry point.

Reads a text file and a JSON file of few-shot examples, runs extraction with
the configured backend and writes the annotated document as JSON, e.g.::

    spanextract notes.txt --examples examples.json --description "Extract medications" --out result.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from spanextract.ai.annotator import extract_sync
from spanextract.ai.progress import ConsoleProgressSink
from spanextract.ai.types import AnnotatedDocument, ExampleData, Extraction
from spanextract.core.unified_config import ExtractConfig
from spanextract.exceptions import SpanExtractError
from spanextract.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def load_examples(path: Path) -> List[ExampleData]:
    """Parse ``[{"text": ..., "extractions": [{"extraction_class": ..., "extraction_text": ...}]}]``."""
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"{path}: expected a JSON list of examples")
    examples = []
    for entry in payload:
        extractions = [
            Extraction(
                extraction_class=item["extraction_class"],
                extraction_text=item["extraction_text"],
                attributes={key: str(value) for key, value in (item.get("attributes") or {}).items()},
            )
            for item in entry.get("extractions", [])
        ]
        examples.append(ExampleData(text=entry["text"], extractions=extractions))
    return examples


def extraction_to_dict(extraction: Extraction) -> Dict[str, Any]:
    interval = extraction.char_interval
    return {
        "extraction_class": extraction.extraction_class,
        "extraction_text": extraction.extraction_text,
        "char_interval": None if interval is None else [interval.start_pos, interval.end_pos],
        "alignment_status": extraction.alignment_status.value,
        "alignment_score": extraction.alignment_score,
        "attributes": dict(extraction.attributes),
        "normalized_value": extraction.normalized_value,
        "extraction_index": extraction.extraction_index,
    }


def document_to_dict(document: AnnotatedDocument) -> Dict[str, Any]:
    return {
        "document_id": document.document_id,
        "extractions": [extraction_to_dict(extraction) for extraction in document.extractions or []],
        "errors": list(document.errors),
        "warnings": list(document.warnings),
        "metadata": dict(document.metadata),
    }


def apply_overrides(config: ExtractConfig, args: argparse.Namespace) -> ExtractConfig:
    if args.backend:
        config.llm_backend = args.backend
    if args.model:
        config.model_id = args.model
    if args.passes:
        config.extraction_passes = args.passes
        config.enable_multipass = args.passes > 1
    if args.max_workers:
        config.max_workers = args.max_workers
    if args.log_level:
        config.log_level = args.log_level
    return config


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract span-anchored entities from a text document.")
    parser.add_argument("input", help="Path to the UTF-8 text document.")
    parser.add_argument("--examples", required=True, help="JSON file with few-shot examples.")
    parser.add_argument("--description", default="", help="Task description placed at the top of the prompt.")
    parser.add_argument("--context", default=None, help="Additional context passed to every prompt.")
    parser.add_argument("--out", default=None, help="Write the result here instead of stdout.")
    parser.add_argument("--backend", default=None, help="Model backend (ollama, llama_cpp, transformers).")
    parser.add_argument("--model", default=None, help="Model identifier for the backend.")
    parser.add_argument("--passes", type=int, default=None, help="Number of extraction passes.")
    parser.add_argument("--max-workers", type=int, default=None, help="Concurrent chunk workers.")
    parser.add_argument("--log-level", default=None, help="Logging verbosity.")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--quiet", action="store_true", help="Only print errors.")
    verbosity.add_argument("--verbose", action="store_true", help="Also print debug progress events.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    config = apply_overrides(ExtractConfig.from_environment(), args)
    setup_logging(config.log_level)

    if args.quiet:
        progress = ConsoleProgressSink.quiet()
    elif args.verbose:
        progress = ConsoleProgressSink.verbose()
    else:
        progress = ConsoleProgressSink()

    input_path = Path(args.input)
    try:
        text = input_path.read_text(encoding="utf-8")
        examples = load_examples(Path(args.examples))
    except (OSError, ValueError, KeyError) as exc:
        logger.error("Could not read inputs: %s", exc)
        return 2

    try:
        document = extract_sync(
            text,
            examples,
            config=config,
            description=args.description,
            progress=progress,
            additional_context=args.context,
            document_id=input_path.name,
        )
    except SpanExtractError as exc:
        logger.error("Extraction failed: %s", exc, extra={"error_code": exc.error_code, "details": exc.details})
        return 1

    rendered = json.dumps(document_to_dict(document), ensure_ascii=False, indent=2)
    if args.out:
        Path(args.out).write_text(rendered + "\n", encoding="utf-8")
    else:
        sys.stdout.write(rendered + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
