"""Word counting, word-range slicing and model-output cleanup."""

from __future__ import annotations

import re

_WORD_RE = re.compile(r"\S+")

# Characters a complete reply may end on.
_VALID_ENDINGS = frozenset({".", "!", "?", '"', "'", ")", "]", "—", ":"})
_SENTENCE_BOUNDARY_RE = re.compile(r"[.!?][\"']?\s")


def count_words(text: str) -> int:
    """Count whitespace-delimited words."""
    return len(_WORD_RE.findall(text))


def word_spans(text: str) -> list[tuple[int, int]]:
    """Character ``(start, end)`` span of every word in *text*."""
    return [m.span() for m in _WORD_RE.finditer(text)]


def slice_words(
    text: str,
    start: int,
    end: int,
    spans: list[tuple[int, int]] | None = None,
) -> str:
    """Return the text covering words ``[start, end)``.

    Slicing is done on character offsets, so whitespace and paragraph
    breaks between the selected words survive.  Pass precomputed *spans*
    when slicing the same text repeatedly.
    """
    spans = spans if spans is not None else word_spans(text)
    start = max(start, 0)
    end = min(end, len(spans))
    if start >= end:
        return ""
    return text[spans[start][0]:spans[end - 1][1]]


def is_truncated(text: str) -> bool:
    """Heuristic for a cut-off model reply.

    A reply is truncated when it does not end on terminal punctuation and
    contains fewer than two sentence boundaries.
    """
    trimmed = text.strip()
    if not trimmed:
        return True
    if trimmed[-1] in _VALID_ENDINGS:
        return False
    return len(_SENTENCE_BOUNDARY_RE.findall(trimmed)) < 2


def clean_markdown(text: str) -> str:
    """Strip markdown decoration that models add to prose replies."""
    text = re.sub(r"```[a-z]*\n?([\s\S]*?)```", r"\1", text, flags=re.IGNORECASE)
    text = re.sub(r"\*{1,3}([^*]+)\*{1,3}", r"\1", text)
    text = re.sub(r"(?m)^#{1,6}\s+", "", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"~~([^~]+)~~", r"\1", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    text = re.sub(r"(?m)^>\s+", "", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def count_paragraphs(text: str) -> int:
    return len([p for p in re.split(r"\n\s*\n", text) if p.strip()])
