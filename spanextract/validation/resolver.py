"""
Turn raw model responses into extraction records.

The resolver strips Markdown fences and ``<json>`` tags, repairs common
structural damage (trailing commas, unbalanced brackets, truncated output),
maps each parsed object onto extractions and coerces value types. Only a
response with no recoverable structure raises; everything else is reported
through :class:`ValidationResult` warnings and errors.
"""

from __future__ import annotations

import json
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from spanextract.ai.types import Extraction, ValidationResult
from spanextract.core.unified_config import ValidationConfig
from spanextract.exceptions import ParseError
from spanextract.logging_config import get_logger
from spanextract.validation.coercion import coerce_string, coerce_value, stringify

logger = get_logger(__name__)

_JSON_TAG = re.compile(r"<json>(.*?)(?:</json>|\Z)", re.DOTALL | re.IGNORECASE)
_FENCE = re.compile(r"```[\w+-]*[ \t]*\r?\n?(.*?)(?:```|\Z)", re.DOTALL)

_CLASS_KEYS = ("extraction_class", "class")
_TEXT_KEYS = ("extraction_text", "text")
_EXPLICIT_KEYS = set(_CLASS_KEYS + _TEXT_KEYS + ("attributes",))

_CLOSERS = {"{": "}", "[": "]"}


class Resolver:
    """Parses and validates model output against the expected extraction classes."""

    def __init__(self, config: Optional[ValidationConfig] = None):
        self.config = config or ValidationConfig()

    def validate_and_parse(
        self,
        raw_response: str,
        expected_fields: Sequence[str],
    ) -> Tuple[List[Extraction], ValidationResult]:
        result = ValidationResult()
        raw_response = raw_response or ""
        if self.config.save_raw_outputs:
            self._preserve_raw(raw_response, result)

        payload = self._strip_wrappers(raw_response, result)
        data = self._parse_payload(payload, result, len(raw_response))
        items = self._as_items(data, result, len(raw_response))

        expected = list(dict.fromkeys(expected_fields or ()))
        extractions: List[Extraction] = []
        for position, item in enumerate(items):
            if not isinstance(item, dict):
                result.add_error(
                    "invalid_item",
                    f"Item {position} is a {type(item).__name__}, expected an object",
                )
                continue
            extractions.extend(self._map_item(item, position, expected, result))

        for index, extraction in enumerate(extractions):
            extraction.extraction_index = index

        logger.debug(
            "Resolved %d extractions (%d warnings, %d errors)",
            len(extractions),
            len(result.warnings),
            len(result.errors),
            extra={"raw_length": len(raw_response)},
        )
        return extractions, result

    # ------------------------------------------------------------------
    # Raw preservation
    # ------------------------------------------------------------------
    def _preserve_raw(self, raw_response: str, result: ValidationResult) -> None:
        try:
            result.raw_output_file = str(self.save_raw_output(raw_response))
        except OSError as exc:
            logger.warning("Failed to save raw model output: %s", exc)
            result.add_warning("raw_output_write_failed", f"Could not save raw output: {exc}")

    def save_raw_output(self, raw_response: str) -> Path:
        directory = Path(self.config.raw_outputs_dir)
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = directory / f"raw_output_{timestamp}_{uuid.uuid4().hex[:8]}.txt"
        path.write_text(raw_response, encoding="utf-8")
        return path

    # ------------------------------------------------------------------
    # Fence stripping
    # ------------------------------------------------------------------
    def _strip_wrappers(self, raw: str, result: ValidationResult) -> str:
        text = raw
        tagged = _JSON_TAG.search(text)
        if tagged:
            outside = text[:tagged.start()] + text[tagged.end():]
            text = tagged.group(1)
        else:
            fenced = _FENCE.search(text)
            if fenced:
                outside = text[:fenced.start()] + text[fenced.end():]
                text = fenced.group(1)
            else:
                outside = ""
        if outside.strip():
            result.add_warning("prose_discarded", "Discarded text outside the fenced JSON block")

        starts = [pos for pos in (text.find("["), text.find("{")) if pos != -1]
        if not starts:
            raise ParseError(
                "No JSON structure found in model response",
                diagnostic=_preview(raw),
                raw_length=len(raw),
            )
        first = min(starts)
        if text[:first].strip():
            result.add_warning("leading_text_discarded", "Discarded text before the JSON payload")
        return text[first:].rstrip()

    # ------------------------------------------------------------------
    # Parsing and repair
    # ------------------------------------------------------------------
    def _parse_payload(self, payload: str, result: ValidationResult, raw_length: int) -> Any:
        parsed = _decode(payload)
        if parsed is not None:
            value, trailing = parsed
            if trailing:
                result.add_warning("trailing_text_discarded", "Discarded text after the JSON payload")
            return value

        for candidate, repairs in self._repair_candidates(payload):
            parsed = _decode(candidate)
            if parsed is None:
                continue
            value, trailing = parsed
            for code, message in repairs:
                result.add_warning(code, message)
            if trailing:
                result.add_warning("trailing_text_discarded", "Discarded text after the JSON payload")
            logger.debug("Repaired model output with: %s", ", ".join(code for code, _ in repairs))
            return value

        raise ParseError(
            "Could not parse JSON from model response after repair",
            diagnostic=_preview(payload),
            raw_length=raw_length,
        )

    def _repair_candidates(self, payload: str) -> Iterable[Tuple[str, List[Tuple[str, str]]]]:
        without_commas = _strip_trailing_commas(payload)
        if without_commas != payload:
            yield without_commas, [("trailing_commas_removed", "Removed trailing commas")]

        balanced, balance_repairs = _balance(payload)
        candidate, comma_repairs = _with_comma_repair(balanced)
        if balance_repairs:
            yield candidate, balance_repairs + comma_repairs

        cuts = _element_boundaries(payload)
        for cut in reversed(cuts[-self.config.max_truncation_attempts:]):
            truncated, balance_repairs = _balance(payload[:cut])
            candidate, comma_repairs = _with_comma_repair(truncated)
            repairs = [("truncated_trailing_element", "Dropped an incomplete trailing element")]
            yield candidate, repairs + balance_repairs + comma_repairs

    def _as_items(self, data: Any, result: ValidationResult, raw_length: int) -> List[Any]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            wrapped = data.get("extractions")
            if isinstance(wrapped, list) and len(data) == 1:
                return wrapped
            result.add_warning("object_coerced_to_list", "Model returned a single object; treated as a list")
            return [data]
        raise ParseError(
            f"Model response parsed to a {type(data).__name__}, not an object or list",
            raw_length=raw_length,
        )

    # ------------------------------------------------------------------
    # Field mapping
    # ------------------------------------------------------------------
    def _map_item(
        self,
        item: Dict[str, Any],
        position: int,
        expected: List[str],
        result: ValidationResult,
    ) -> List[Extraction]:
        if any(key in item for key in _CLASS_KEYS) and any(key in item for key in _TEXT_KEYS):
            return self._map_explicit(item, position, result)
        matching = [key for key in item if key in expected]
        if matching:
            return self._map_class_keys(item, matching, position, result)
        return self._map_record(item, position, expected, result)

    def _map_explicit(self, item: Dict[str, Any], position: int, result: ValidationResult) -> List[Extraction]:
        extraction_class = _first_present(item, _CLASS_KEYS)
        text = _first_present(item, _TEXT_KEYS)
        if extraction_class is None or text is None:
            result.add_warning("null_value_skipped", f"Item {position} has a null class or text", field="text")
            return []
        attributes = item.get("attributes")
        extra = {key: value for key, value in item.items() if key not in _EXPLICIT_KEYS}
        if attributes is not None and not isinstance(attributes, dict):
            extra["attributes"] = attributes
            attributes = None
        merged = dict(attributes or {})
        merged.update(extra)
        return [self._build(stringify(extraction_class), text, merged, result)]

    def _map_class_keys(
        self,
        item: Dict[str, Any],
        matching: List[str],
        position: int,
        result: ValidationResult,
    ) -> List[Extraction]:
        suffix = self.config.attribute_suffix
        attribute_keys = {f"{key}{suffix}" for key in matching}
        shared = {
            key: value
            for key, value in item.items()
            if key not in matching and key not in attribute_keys
        }
        extractions: List[Extraction] = []
        for key in matching:
            value = item[key]
            own = item.get(f"{key}{suffix}")
            attributes = dict(shared)
            if isinstance(own, dict):
                attributes.update(own)
            values = value if isinstance(value, list) else [value]
            for entry in values:
                if entry is None:
                    result.add_warning("null_value_skipped", f"Skipped null value for '{key}' in item {position}", field=key)
                    continue
                extractions.append(self._build(key, entry, attributes, result))
        return extractions

    def _map_record(
        self,
        item: Dict[str, Any],
        position: int,
        expected: List[str],
        result: ValidationResult,
    ) -> List[Extraction]:
        if not item:
            result.add_warning("empty_item", f"Item {position} is an empty object")
            return []
        for name in expected:
            result.add_warning("missing_field", f"Expected field '{name}' missing from item {position}", field=name)
        class_key = next(iter(item))
        text = item[class_key]
        if text is None:
            result.add_warning("null_value_skipped", f"Skipped null value for '{class_key}' in item {position}", field=class_key)
            return []
        attributes = {key: value for key, value in item.items() if key != class_key}
        return [self._build(class_key, text, attributes, result)]

    def _build(self, extraction_class: str, text: Any, attributes: Dict[str, Any], result: ValidationResult) -> Extraction:
        verbatim = stringify(text)
        normalized = None
        if self.config.enable_type_coercion:
            coerced = coerce_string(verbatim)
            if coerced is not None and coerced != verbatim:
                normalized = coerced
        return Extraction(
            extraction_class=extraction_class,
            extraction_text=verbatim,
            attributes=self._attributes(attributes, result),
            normalized_value=normalized,
        )

    def _attributes(self, raw: Dict[str, Any], result: ValidationResult) -> Dict[str, str]:
        attributes: Dict[str, str] = {}
        for key, value in raw.items():
            if value is None:
                result.add_warning("null_value_skipped", f"Skipped null attribute '{key}'", field=key)
                continue
            if self.config.enable_type_coercion:
                attributes[str(key)] = coerce_value(value)
            else:
                attributes[str(key)] = stringify(value)
        return attributes


def _first_present(item: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in item and item[key] is not None:
            return item[key]
    return None


def _preview(text: str, limit: int = 120) -> str:
    return text[:limit].replace("\n", " ")


def _decode(text: str) -> Optional[Tuple[Any, bool]]:
    """Decode the leading JSON value; return it with a flag for non-blank trailing text."""
    try:
        value, end = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError:
        return None
    return value, bool(text[end:].strip())


def _scan(text: str):
    """Yield ``(index, char, in_string)`` with string/escape state tracked."""
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            yield index, char, True
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            yield index, char, True
            continue
        yield index, char, False


def _strip_trailing_commas(text: str) -> str:
    drop = set()
    pending: Optional[int] = None
    for index, char, in_string in _scan(text):
        if in_string:
            pending = None
            continue
        if char == ",":
            pending = index
        elif char in "]}":
            if pending is not None:
                drop.add(pending)
            pending = None
        elif not char.isspace():
            pending = None
    if not drop:
        return text
    return "".join(char for index, char in enumerate(text) if index not in drop)


def _with_comma_repair(text: str) -> Tuple[str, List[Tuple[str, str]]]:
    repaired = _strip_trailing_commas(text)
    if repaired != text:
        return repaired, [("trailing_commas_removed", "Removed trailing commas")]
    return text, []


def _balance(text: str) -> Tuple[str, List[Tuple[str, str]]]:
    stack: List[str] = []
    kept: List[str] = []
    dropped = 0
    for _, char, in_string in _scan(text):
        if not in_string:
            if char in _CLOSERS:
                stack.append(char)
            elif char in "]}":
                if stack and _CLOSERS[stack[-1]] == char:
                    stack.pop()
                else:
                    dropped += 1
                    continue
        kept.append(char)

    repairs: List[Tuple[str, str]] = []
    repaired = "".join(kept)
    if dropped:
        repairs.append(("stray_closers_dropped", f"Dropped {dropped} unmatched closing bracket(s)"))
    if _ends_inside_string(repaired):
        if repaired.endswith("\\"):
            repaired = repaired[:-1]
        repaired += '"'
        repairs.append(("unterminated_string_closed", "Closed an unterminated string"))
    if stack:
        repaired = repaired.rstrip() + "".join(_CLOSERS[opener] for opener in reversed(stack))
        repairs.append(("brackets_closed", f"Appended {len(stack)} missing closing bracket(s)"))
    return repaired, repairs


def _ends_inside_string(text: str) -> bool:
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
    return in_string


def _element_boundaries(text: str) -> List[int]:
    """Offsets of commas separating elements inside a container, left to right."""
    cuts: List[int] = []
    depth = 0
    for index, char, in_string in _scan(text):
        if in_string:
            continue
        if char in _CLOSERS:
            depth += 1
        elif char in "]}":
            depth = max(0, depth - 1)
        elif char == "," and depth >= 1:
            cuts.append(index)
    return cuts


__all__ = ["Resolver"]
