"""Tagged parsing of JSON objects embedded in model output."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", flags=re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Parsed:
    fields: dict[str, Any]

    def text(self, key: str) -> str | None:
        """Return `fields[key]` as a stripped string, or None when absent/blank."""
        value = self.fields.get(key)
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        value = str(value).strip()
        return value or None


@dataclass(frozen=True, slots=True)
class Unparsed:
    raw_text: str


ParseResult: TypeAlias = Parsed | Unparsed


def parse_json_object(text: str) -> ParseResult:
    """Extract the first JSON object from `text`.

    Accepts a bare object, a fenced ```json block, or an object surrounded
    by prose. Anything else, including valid JSON that is not an object,
    is `Unparsed`.
    """
    candidates = [text.strip()]
    candidates.extend(block.strip() for block in _FENCE_PATTERN.findall(text))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return Parsed(value)

    logger.debug("No JSON object found in %d-char model output", len(text))
    return Unparsed(text)
