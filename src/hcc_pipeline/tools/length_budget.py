"""Length budget: target word counts, length ratio and length mode.

``calculate_length_config`` is the single source of the ratio that drives
both the prose guidance given to the model and every chunk's numeric bounds.
"""

from __future__ import annotations

import logging
import re

from ..models import LengthConfig, LengthMode

logger = logging.getLogger(__name__)

# Sentinel target pairs for qualitative requests without numbers.
EXPAND_SENTINEL = (-1, -1)
COMPRESS_SENTINEL = (-2, -2)

CHUNK_WINDOW = 0.20

_MODE_THRESHOLDS: list[tuple[float, LengthMode]] = [
    (0.5, LengthMode.HEAVY_COMPRESSION),
    (0.8, LengthMode.MODERATE_COMPRESSION),
    (1.2, LengthMode.MAINTAIN),
    (1.8, LengthMode.MODERATE_EXPANSION),
]


def round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def length_mode_for_ratio(ratio: float) -> LengthMode:
    """Deterministic step function over the length ratio."""
    for threshold, mode in _MODE_THRESHOLDS:
        if ratio < threshold:
            return mode
    return LengthMode.HEAVY_EXPANSION


def calculate_length_config(
    total_input_words: int,
    target_min: int | None = None,
    target_max: int | None = None,
) -> LengthConfig:
    """Turn a requested target (or a sentinel) into a :class:`LengthConfig`."""
    pair = (target_min, target_max)
    if pair == EXPAND_SENTINEL:
        actual_min = round_half_up(total_input_words * 1.3)
        actual_max = round_half_up(total_input_words * 1.5)
    elif pair == COMPRESS_SENTINEL:
        actual_min = round_half_up(total_input_words * 0.3)
        actual_max = round_half_up(total_input_words * 0.5)
    elif not target_min or not target_max:
        actual_min = actual_max = total_input_words
    else:
        actual_min, actual_max = target_min, target_max

    mid = round_half_up((actual_min + actual_max) / 2)
    ratio = mid / total_input_words if total_input_words else 1.0
    return LengthConfig(
        target_min_words=actual_min,
        target_max_words=actual_max,
        target_mid_words=mid,
        length_ratio=ratio,
        length_mode=length_mode_for_ratio(ratio),
    )


def chunk_bounds(input_words: int, ratio: float) -> tuple[int, int, int]:
    """``(target, min, max)`` words for one chunk; min/max are target ±20%."""
    target = round_half_up(input_words * ratio)
    return (
        target,
        round_half_up(target * (1 - CHUNK_WINDOW)),
        round_half_up(target * (1 + CHUNK_WINDOW)),
    )


# ---------------------------------------------------------------------------
# Free-text target parsing
# ---------------------------------------------------------------------------

_NUM = r"(\d[\d,]*(?:\.\d+)?k?)"

_RANGE_RE = re.compile(rf"{_NUM}\s*(?:-|–|—|to)\s*{_NUM}\s*words?")
_SHORTEN_RE = re.compile(rf"(?:shorten|reduce|compress|cut|trim)\s*(?:it\s*)?(?:to|down\s*to)?\s*{_NUM}\s*words?")
_EXPAND_RE = re.compile(rf"(?:expand|enrich|elaborate)\s*(?:it\s*)?(?:to)?\s*{_NUM}\s*words?")
_AT_LEAST_RE = re.compile(rf"at\s*least\s*{_NUM}\s*words?")
_NO_MORE_RE = re.compile(rf"no\s*more\s*than\s*{_NUM}\s*words?")
_NO_LESS_RE = re.compile(rf"no\s*(?:less|fewer)\s*(?:than)?\s*{_NUM}\s*words?")
_APPROX_RE = re.compile(rf"(?:approximately|around|about|roughly)\s*{_NUM}\s*words?")
_EXACT_RE = re.compile(rf"{_NUM}\s*words?")
_QUALITATIVE_EXPAND_RE = re.compile(r"expand|enrich|elaborate|develop")
_QUALITATIVE_COMPRESS_RE = re.compile(r"compress|summari[sz]e|shorten|condense")


def _parse_number(raw: str) -> int:
    cleaned = raw.replace(",", "").strip()
    if cleaned.endswith("k"):
        return round_half_up(float(cleaned[:-1]) * 1000)
    return int(float(cleaned))


def _around(target: int) -> tuple[int, int]:
    return round_half_up(target * 0.9), round_half_up(target * 1.1)


def parse_target_length(instructions: str | None) -> tuple[int, int] | None:
    """Extract a ``(min, max)`` word target from free-text instructions.

    Returns one of the sentinel pairs for qualitative requests ("expand",
    "condense") that carry no number, or ``None`` when nothing applies.
    """
    if not instructions:
        return None
    text = instructions.lower()

    m = _RANGE_RE.search(text)
    if m:
        return _parse_number(m.group(1)), _parse_number(m.group(2))

    for pattern in (_SHORTEN_RE, _EXPAND_RE):
        m = pattern.search(text)
        if m:
            return _around(_parse_number(m.group(1)))

    at_least = _AT_LEAST_RE.search(text)
    no_more = _NO_MORE_RE.search(text)
    if at_least and no_more:
        return _parse_number(at_least.group(1)), _parse_number(no_more.group(1))

    m = _NO_LESS_RE.search(text)
    if m:
        low = _parse_number(m.group(1))
        return low, round_half_up(low * 1.2)

    m = _APPROX_RE.search(text) or _EXACT_RE.search(text)
    if m:
        return _around(_parse_number(m.group(1)))

    has_digits = any(ch.isdigit() for ch in text)
    if not has_digits and _QUALITATIVE_EXPAND_RE.search(text):
        return EXPAND_SENTINEL
    if not has_digits and _QUALITATIVE_COMPRESS_RE.search(text):
        return COMPRESS_SENTINEL
    return None


def length_config_from_instructions(
    total_input_words: int,
    instructions: str | None,
) -> LengthConfig:
    parsed = parse_target_length(instructions)
    if parsed:
        logger.info("Parsed length target %s from instructions", parsed)
    target_min, target_max = parsed if parsed else (None, None)
    return calculate_length_config(total_input_words, target_min, target_max)


# ---------------------------------------------------------------------------
# Prose guidance
# ---------------------------------------------------------------------------

_GUIDANCE: dict[LengthMode, str] = {
    LengthMode.HEAVY_COMPRESSION: (
        "LENGTH MODE: HEAVY COMPRESSION\n"
        "Significantly compress this chunk while keeping the core arguments.\n"
        "- Keep only the single most important example\n"
        "- Remove repetition, transitions and rhetorical flourishes\n"
        "- Keep thesis statements and key claims verbatim"
    ),
    LengthMode.MODERATE_COMPRESSION: (
        "LENGTH MODE: MODERATE COMPRESSION\n"
        "Compress this chunk while keeping the argument structure.\n"
        "- Keep the strongest one or two examples\n"
        "- Tighten prose without losing meaning\n"
        "- Keep every key claim and its primary support"
    ),
    LengthMode.MAINTAIN: (
        "LENGTH MODE: MAINTAIN LENGTH\n"
        "Your output should be about as long as the input.\n"
        "- Improve clarity and flow without changing length significantly\n"
        "- Do not add or remove substantial content"
    ),
    LengthMode.MODERATE_EXPANSION: (
        "LENGTH MODE: MODERATE EXPANSION\n"
        "Expand this chunk while keeping its focus.\n"
        "- Add one or two supporting examples for key claims\n"
        "- Develop the implications of major points\n"
        "- Do not add tangents or padding"
    ),
    LengthMode.HEAVY_EXPANSION: (
        "LENGTH MODE: HEAVY EXPANSION\n"
        "Significantly expand this chunk with substantive additions.\n"
        "- Add two or three concrete examples\n"
        "- Support each major claim with analysis and context\n"
        "- Add qualifications where the argument needs them\n"
        "- Every addition must be substantive"
    ),
}


def length_guidance(mode: LengthMode) -> str:
    return _GUIDANCE[mode]
