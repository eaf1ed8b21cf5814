"""Structured-output parsing for model replies.

Every parser returns a ``(value, error)`` tuple instead of raising: exactly
one of the two is ``None``.  Callers log the error and substitute their
documented default.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def strip_fences(raw: str) -> str:
    """Remove markdown fences."""
    return re.sub(r"```(?:json)?|```", "", raw).strip()


def _segment(text: str, opener: str, closer: str) -> str | None:
    start, end = text.find(opener), text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def attempt_repair(raw: str) -> str:
    """Lightweight repair for common LLM JSON mistakes."""
    txt = raw.strip()
    txt = txt.replace("“", '"').replace("”", '"').replace("‘", "'").replace("’", "'")
    txt = re.sub(r",\s*([}\]])", r"\1", txt)
    # Lone backslashes that are not valid JSON escapes.
    txt = re.sub(r'\\(?!["\\/bfnrtu])', r"\\\\", txt)
    return txt


def _load(raw: str, opener: str, closer: str) -> tuple[Any, str | None]:
    """Staged JSON load: direct parse of the outermost segment, then repair + parse."""
    errors: list[str] = []
    stripped = strip_fences(raw)
    segment = _segment(stripped, opener, closer)
    if segment is None:
        return None, f"no JSON {opener}{closer} segment found"

    try:
        return json.loads(segment), None
    except json.JSONDecodeError as e:
        errors.append(f"direct: {e}")

    try:
        return json.loads(attempt_repair(segment)), None
    except json.JSONDecodeError as e:
        errors.append(f"repair: {e}")

    return None, "; ".join(errors)


def parse_json_model(
    raw: str,
    model_cls: type[M],
    normalize: Any = None,
) -> tuple[M | None, str | None]:
    """Parse the first JSON object in *raw* into *model_cls*."""
    data, err = _load(raw, "{", "}")
    if err:
        return None, err
    if not isinstance(data, dict):
        return None, f"expected a JSON object, got {type(data).__name__}"
    if normalize is not None:
        data = normalize(data)
    try:
        return model_cls.model_validate(data), None
    except ValidationError as e:
        return None, f"{model_cls.__name__}: {e.error_count()} validation error(s)"


def parse_json_list(
    raw: str,
    item_cls: type[M],
    normalize: Any = None,
) -> tuple[list[M] | None, str | None]:
    """Parse a JSON array of *item_cls* objects.

    Items that fail validation are dropped individually and logged; a
    response with no parseable array is an error.  *normalize*, when given,
    maps each raw dict before validation.
    """
    data, err = _load(raw, "[", "]")
    if err:
        return None, err
    if not isinstance(data, list):
        return None, f"expected a JSON array, got {type(data).__name__}"

    items: list[M] = []
    for i, entry in enumerate(data):
        if not isinstance(entry, dict):
            logger.warning("Dropping non-object item %d from %s list", i, item_cls.__name__)
            continue
        if normalize is not None:
            entry = normalize(entry)
        try:
            items.append(item_cls.model_validate(entry))
        except ValidationError as e:
            logger.warning("Dropping invalid %s item %d: %s", item_cls.__name__, i, e.error_count())
    return items, None


def extract_block(raw: str, marker: str, stop_markers: Iterable[str] = ()) -> str | None:
    """Text following ``MARKER:`` up to the next stop marker (or the end)."""
    stops = "|".join(re.escape(f"{s}:") for s in stop_markers)
    lookahead = f"(?={stops}|$)" if stops else "$"
    m = re.search(rf"{re.escape(marker)}:\s*([\s\S]*?){lookahead}", raw, re.IGNORECASE)
    if not m:
        return None
    return m.group(1).strip()
