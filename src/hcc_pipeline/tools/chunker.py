"""Paragraph-aligned chunking with greedy bin-packing."""

from __future__ import annotations

import re

from ..models import TextChunk
from .text import count_words

TARGET_CHUNK_SIZE = 500

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"(?:(?<=[.!?])|(?<=[.!?][\"')\]]))\s+")


def _pack(pieces: list[str], target_size: int, joiner: str) -> list[str]:
    """Greedy bin-packing: add pieces until the next one would overflow."""
    packed: list[str] = []
    current: list[str] = []
    current_words = 0
    for piece in pieces:
        words = count_words(piece)
        if current and current_words + words > target_size:
            packed.append(joiner.join(current))
            current, current_words = [], 0
        current.append(piece)
        current_words += words
    if current:
        packed.append(joiner.join(current))
    return packed


def split_oversized_paragraph(paragraph: str, target_size: int = TARGET_CHUNK_SIZE) -> list[str]:
    """Split one paragraph that exceeds *target_size*.

    Sentence boundaries are used first; a single sentence that is still too
    long is cut on word boundaries.
    """
    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(paragraph) if s.strip()]
    pieces: list[str] = []
    for sentence in sentences:
        if count_words(sentence) <= target_size:
            pieces.append(sentence)
            continue
        words = sentence.split()
        pieces.extend(
            " ".join(words[i:i + target_size]) for i in range(0, len(words), target_size)
        )
    return _pack(pieces, target_size, " ")


def smart_chunk(
    text: str,
    target_size: int = TARGET_CHUNK_SIZE,
    overlap_words: int = 0,
) -> list[TextChunk]:
    """Split *text* into chunks of at most *target_size* words.

    Chunks end on paragraph boundaries.  Text at or below the target yields
    exactly one chunk.  With *overlap_words*, each chunk after the first
    carries the tail of its predecessor as read-only ``context_before``.
    """
    total = count_words(text)
    if total <= target_size:
        return [TextChunk(index=0, text=text.strip(), word_count=total)]

    paragraphs: list[str] = []
    for para in _PARAGRAPH_SPLIT_RE.split(text):
        para = para.strip()
        if not para:
            continue
        if count_words(para) > target_size:
            paragraphs.extend(split_oversized_paragraph(para, target_size))
        else:
            paragraphs.append(para)

    chunks: list[TextChunk] = []
    for i, chunk_text in enumerate(_pack(paragraphs, target_size, "\n\n")):
        context = ""
        if overlap_words > 0 and chunks:
            context = " ".join(chunks[-1].text.split()[-overlap_words:])
        chunks.append(TextChunk(
            index=i,
            text=chunk_text,
            word_count=count_words(chunk_text),
            context_before=context,
        ))
    return chunks
