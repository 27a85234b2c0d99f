"""Type coercion for values parsed out of model responses."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

_CURRENCY_SYMBOLS = "$€£¥₹"
_NUMERIC_PATTERN = re.compile(
    r"^(?P<sign>[-+]?)\s*[" + re.escape(_CURRENCY_SYMBOLS) + r"]?\s*(?P<sign2>[-+]?)"
    r"(?P<number>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?|\.\d+)$"
)
_TRUE_WORDS = {"true", "yes"}
_FALSE_WORDS = {"false", "no"}


def stringify(value: Any) -> str:
    """Render a parsed JSON value as text without changing its meaning."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def coerce_string(text: str) -> Optional[str]:
    """Return the canonical form of ``text`` if it reads as a number or boolean, else ``None``."""
    candidate = text.strip()
    if not candidate:
        return None
    lowered = candidate.lower()
    if lowered in _TRUE_WORDS:
        return "true"
    if lowered in _FALSE_WORDS:
        return "false"
    match = _NUMERIC_PATTERN.match(candidate)
    if match is None:
        return None
    signs = (match.group("sign") + match.group("sign2")).replace("+", "")
    negative = signs.count("-") % 2 == 1
    number = match.group("number").replace(",", "")
    if number.startswith("."):
        number = "0" + number
    if "." not in number:
        number = str(int(number))
    else:
        whole, fraction = number.split(".", 1)
        number = f"{int(whole)}.{fraction}"
    return f"-{number}" if negative else number


def coerce_value(value: Any) -> str:
    """Coerce a parsed value to its canonical text form."""
    if isinstance(value, str):
        coerced = coerce_string(value)
        return coerced if coerced is not None else value
    return stringify(value)


__all__ = ["coerce_string", "coerce_value", "stringify"]
