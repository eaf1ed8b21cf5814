"""Document assembly: order-preserving concatenation of chapter outputs."""

from __future__ import annotations

from typing import Iterable, Mapping

SEPARATOR = "\n\n"


def assemble_part(chapter_outputs: Iterable[str]) -> str:
    return SEPARATOR.join(chapter_outputs)


def assemble_document(chapter_outputs: Mapping[tuple[int, int], str]) -> str:
    """Join chapter outputs keyed by ``(part_index, chapter_index)`` in structure order."""
    return SEPARATOR.join(chapter_outputs[key] for key in sorted(chapter_outputs))
