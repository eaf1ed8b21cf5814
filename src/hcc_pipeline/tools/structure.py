"""Structure detection: split a document into Parts -> Chapters word ranges.

Explicit headings ("PART II", "Book 3", "Chapter 7", "4. Results") drive
the split when present.  Otherwise the document gets a virtual structure of
fixed-size parts subdivided into fixed-size chapters.

Also hosts the range validator and the repair chain used whenever heading
alignment or a generation step produces section ranges that break
contiguity.
"""

from __future__ import annotations

import bisect
import logging
import math
import re
from typing import Callable, Sequence

from ..models import ChapterNode, DocumentStructure, PartNode, WordRange
from .text import word_spans

logger = logging.getLogger(__name__)

VIRTUAL_PART_SIZE = 25000
VIRTUAL_CHAPTER_SIZE = 5000

_NUMERAL = r"(?:[IVXLCDM]+|[0-9]+)\b"

PART_PATTERNS = [
    re.compile(rf"^[ \t]*(?:PART|Part)\s+{_NUMERAL}.*$", re.MULTILINE),
    re.compile(rf"^[ \t]*(?:BOOK|Book)\s+{_NUMERAL}.*$", re.MULTILINE),
    re.compile(rf"^[ \t]*(?:SECTION|Section)\s+{_NUMERAL}.*$", re.MULTILINE),
]

CHAPTER_PATTERNS = [
    re.compile(rf"^[ \t]*(?:CHAPTER|Chapter)\s+{_NUMERAL}.*$", re.MULTILINE),
]

NUMBERED_HEADING = re.compile(r"^[ \t]*[0-9]+\.\s+[A-Z].*$", re.MULTILINE)
_HEADING_KEYWORD = re.compile(r"^[0-9]+\.\s+(?:chapter|section|part)\b", re.IGNORECASE)
_MAX_NUMBERED_HEADING_WORDS = 10
_LIST_SIBLING_GAP = 50  # words

_MAX_TITLE_CHARS = 80


# ---------------------------------------------------------------------------
# Heading discovery
# ---------------------------------------------------------------------------


def _find_headings(
    text: str,
    patterns: Sequence[re.Pattern],
    word_starts: list[int],
    accept: Callable[[str], bool] | None = None,
) -> dict[int, str]:
    """Map word index -> heading title for every line matching *patterns*."""
    found: dict[int, str] = {}
    for pattern in patterns:
        for m in pattern.finditer(text):
            line = m.group(0).strip()
            if not line or (accept is not None and not accept(line)):
                continue
            offset = m.start() + (len(m.group(0)) - len(m.group(0).lstrip()))
            idx = bisect.bisect_left(word_starts, offset)
            if idx >= len(word_starts):
                continue
            found.setdefault(idx, line[:_MAX_TITLE_CHARS])
    return dict(sorted(found.items()))


def _looks_like_heading(line: str) -> bool:
    if _HEADING_KEYWORD.search(line):
        return True
    return len(line.split()) <= _MAX_NUMBERED_HEADING_WORDS and not line.endswith((".", ";", ":", ","))


def _numbered_headings(text: str, word_starts: list[int]) -> dict[int, str]:
    """Numbered lines ("4. Results") that read as headings rather than list items.

    A line titled "N. Chapter ...", "N. Section ..." or "N. Part ..." always
    counts.  Any other numbered line must be short, must not end like a
    sentence, and must not sit within :data:`_LIST_SIBLING_GAP` words of
    another numbered line.
    """
    found = _find_headings(text, [NUMBERED_HEADING], word_starts, accept=_looks_like_heading)
    indices = list(found)
    kept: dict[int, str] = {}
    for k, idx in enumerate(indices):
        title = found[idx]
        near_prev = k > 0 and idx - indices[k - 1] < _LIST_SIBLING_GAP
        near_next = k + 1 < len(indices) and indices[k + 1] - idx < _LIST_SIBLING_GAP
        if _HEADING_KEYWORD.search(title) or not (near_prev or near_next):
            kept[idx] = title
    return kept


def _split_oversized(chapter: ChapterNode, chapter_size: int) -> list[ChapterNode]:
    """Cut a headed chapter longer than *chapter_size* into near-equal pieces."""
    if chapter_size <= 0 or chapter.size <= chapter_size:
        return [chapter]
    count = math.ceil(chapter.size / chapter_size)
    return [
        ChapterNode(
            title=chapter.title if k == 0 else f"{chapter.title} ({k + 1}/{count})",
            start=chapter.start + r.start,
            end=chapter.start + r.end,
            virtual=chapter.virtual,
        )
        for k, r in enumerate(even_split(count, chapter.size))
    ]


def _virtual_chapters(
    start: int,
    end: int,
    chapter_size: int,
    first_number: int,
) -> list[ChapterNode]:
    """Fixed-size chapters over ``[start, end)``; the last one absorbs the remainder."""
    count = max(1, (end - start) // chapter_size)
    chapters: list[ChapterNode] = []
    for c in range(count):
        c_start = start + c * chapter_size
        c_end = end if c == count - 1 else c_start + chapter_size
        chapters.append(ChapterNode(
            title=f"Section {first_number + c}",
            start=c_start,
            end=c_end,
            virtual=True,
        ))
    return chapters


def _virtual_structure(total: int, part_size: int, chapter_size: int) -> list[PartNode]:
    part_count = max(1, total // part_size)
    parts: list[PartNode] = []
    next_chapter = 1
    for p in range(part_count):
        p_start = p * part_size
        p_end = total if p == part_count - 1 else p_start + part_size
        chapters = _virtual_chapters(p_start, p_end, chapter_size, next_chapter)
        next_chapter += len(chapters)
        parts.append(PartNode(
            title=f"Part {p + 1}",
            start=p_start,
            end=p_end,
            virtual=True,
            chapters=chapters,
        ))
    return parts


def _headed_structure(
    total: int,
    part_heads: dict[int, str],
    chapter_heads: dict[int, str],
    chapter_size: int,
) -> list[PartNode]:
    if part_heads:
        starts = list(part_heads)
        titles = list(part_heads.values())
        starts[0] = 0  # preamble joins the first part
        part_bounds = [
            (starts[i], starts[i + 1] if i + 1 < len(starts) else total, titles[i], False)
            for i in range(len(starts))
        ]
    else:
        part_bounds = [(0, total, "Part 1", True)]

    parts: list[PartNode] = []
    next_chapter = 1
    for p_start, p_end, p_title, p_virtual in part_bounds:
        heads = [(i, t) for i, t in chapter_heads.items() if p_start <= i < p_end]
        if not heads:
            chapters = _virtual_chapters(p_start, p_end, chapter_size, next_chapter)
        else:
            # The first chapter of a part starts at the part boundary.
            heads[0] = (p_start, heads[0][1])
            chapters = [
                piece
                for k, (c_start, title) in enumerate(heads)
                for piece in _split_oversized(
                    ChapterNode(
                        title=title,
                        start=c_start,
                        end=heads[k + 1][0] if k + 1 < len(heads) else p_end,
                    ),
                    chapter_size,
                )
            ]
        next_chapter += len(chapters)
        parts.append(PartNode(
            title=p_title,
            start=p_start,
            end=p_end,
            virtual=p_virtual,
            chapters=chapters,
        ))
    return parts


def detect_structure(
    text: str,
    part_size: int = VIRTUAL_PART_SIZE,
    chapter_size: int = VIRTUAL_CHAPTER_SIZE,
) -> DocumentStructure:
    """Split *text* into Parts -> Chapters covering every word exactly once."""
    spans = word_spans(text)
    total = len(spans)
    word_starts = [s for s, _ in spans]

    part_heads = _find_headings(text, PART_PATTERNS, word_starts)
    chapter_heads = _find_headings(text, CHAPTER_PATTERNS, word_starts)
    for idx, title in _numbered_headings(text, word_starts).items():
        chapter_heads.setdefault(idx, title)
    chapter_heads = dict(sorted(chapter_heads.items()))

    if total and (part_heads or chapter_heads):
        parts = _headed_structure(total, part_heads, chapter_heads, chapter_size)
        headings_found = True
    else:
        parts = _virtual_structure(total, part_size, chapter_size)
        headings_found = False

    structure = DocumentStructure(total_words=total, parts=parts, headings_found=headings_found)
    chapter_ranges = [WordRange(start=ch.start, end=ch.end) for _, _, ch in structure.chapters()]
    if total and not validate_ranges(chapter_ranges, total):
        logger.warning("Heading-aligned chapters failed validation, repairing ranges")
        _apply_ranges(structure, repair_ranges(chapter_ranges, total, section_count=len(chapter_ranges)))
    logger.debug(
        "Detected %d part(s), %d chapter(s) over %d words (headings=%s)",
        len(structure.parts), len(structure.chapters()), total, structure.headings_found,
    )
    return structure


def _apply_ranges(structure: DocumentStructure, ranges: Sequence[WordRange]) -> None:
    """Move every chapter onto *ranges* (document order); parts follow their chapters."""
    flat = iter(ranges)
    for part in structure.parts:
        for chapter in part.chapters:
            r = next(flat)
            chapter.start, chapter.end = r.start, r.end
        if part.chapters:
            part.start, part.end = part.chapters[0].start, part.chapters[-1].end


# ---------------------------------------------------------------------------
# Range validation and repair
# ---------------------------------------------------------------------------


def validate_ranges(ranges: Sequence[WordRange], total: int) -> bool:
    """True when *ranges* tile ``[0, total)`` with no gaps, overlaps or empty ranges."""
    if not ranges:
        return False
    if ranges[0].start != 0 or ranges[-1].end != total:
        return False
    for i, r in enumerate(ranges):
        if r.start >= r.end:
            return False
        if i and r.start != ranges[i - 1].end:
            return False
    return True


def snap_repair(ranges: Sequence[WordRange], total: int) -> list[WordRange] | None:
    """Close gaps and overlaps by moving each range's end to the next range's start.

    The first range is pinned to 0 and the last to *total*.  Ranges that
    collapse to nothing borrow one word from their successor.
    """
    if not ranges:
        return None
    ordered = sorted(
        (WordRange(start=max(0, r.start), end=min(total, r.end)) for r in ranges),
        key=lambda r: r.start,
    )
    ordered[0].start = 0
    for prev, curr in zip(ordered, ordered[1:]):
        prev.end = curr.start
    ordered[-1].end = total

    for i, r in enumerate(ordered[:-1]):
        if r.start >= r.end:
            r.end = r.start + 1
            ordered[i + 1].start = r.end
    return ordered


def even_split(count: int, total: int) -> list[WordRange]:
    """Split ``[0, total)`` into *count* near-equal ranges; the last ends at *total*."""
    if count <= 0:
        return []
    per = math.ceil(total / count) if total else 0
    ranges = [
        WordRange(start=min(i * per, total), end=min((i + 1) * per, total))
        for i in range(count)
    ]
    ranges[-1].end = total
    return ranges


RepairStrategy = Callable[[Sequence[WordRange], int, int], "list[WordRange] | None"]

REPAIR_CHAIN: list[tuple[str, RepairStrategy]] = [
    ("snap", lambda ranges, total, count: snap_repair(ranges, total)),
    ("even_split", lambda ranges, total, count: even_split(count, total)),
]


def repair_ranges(
    ranges: Sequence[WordRange],
    total: int,
    section_count: int | None = None,
) -> list[WordRange]:
    """Return ranges that tile ``[0, total)``, repairing *ranges* if needed.

    Strategies in :data:`REPAIR_CHAIN` are tried in order; the first result
    that validates wins.  When none validates, the even split is returned
    unconditionally.  The number of sections is preserved.
    """
    count = section_count if section_count is not None else len(ranges)
    if validate_ranges(ranges, total) and len(ranges) == count:
        return [WordRange(start=r.start, end=r.end) for r in ranges]

    for name, strategy in REPAIR_CHAIN:
        candidate = strategy(ranges, total, count)
        if candidate and len(candidate) == count and validate_ranges(candidate, total):
            logger.warning("Section ranges repaired with %s strategy", name)
            return candidate

    logger.warning("Range repair exhausted; forcing even split over %d section(s)", count)
    return even_split(count, total)
