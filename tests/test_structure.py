"""Tests for tools/structure.py — structure detection and range repair."""

from __future__ import annotations

from hcc_pipeline.models import ChapterNode, PartNode, WordRange
from hcc_pipeline.tools import structure as structure_mod
from hcc_pipeline.tools.structure import (
    detect_structure,
    even_split,
    repair_ranges,
    snap_repair,
    validate_ranges,
)

from conftest import paragraph, words


def _ranges(*pairs: tuple[int, int]) -> list[WordRange]:
    return [WordRange(start=s, end=e) for s, e in pairs]


def _pairs(ranges) -> list[tuple[int, int]]:
    return [(r.start, r.end) for r in ranges]


class TestVirtualStructure:
    def test_small_document_is_one_part_one_chapter(self):
        s = detect_structure(words(120))
        assert s.headings_found is False
        assert len(s.parts) == 1
        assert _pairs(s.parts[0].chapters) == [(0, 120)]

    def test_last_unit_absorbs_remainder(self):
        s = detect_structure(words(23), part_size=10, chapter_size=4)
        assert _pairs(s.parts) == [(0, 10), (10, 23)]
        assert _pairs(s.parts[0].chapters) == [(0, 4), (4, 10)]
        assert _pairs(s.parts[1].chapters) == [(10, 14), (14, 18), (18, 23)]

    def test_virtual_chapters_numbered_across_parts(self):
        s = detect_structure(words(23), part_size=10, chapter_size=4)
        titles = [ch.title for _, _, ch in s.chapters()]
        assert titles == ["Section 1", "Section 2", "Section 3", "Section 4", "Section 5"]
        assert all(ch.virtual for _, _, ch in s.chapters())

    def test_empty_text(self):
        s = detect_structure("")
        assert s.total_words == 0
        assert _pairs(s.parts[0].chapters) == [(0, 0)]


class TestHeadedStructure:
    def test_chapter_headings_align_boundaries(self):
        text = (
            "Intro words here.\n\n"
            "Chapter 1 Beginnings\nSome text in one.\n\n"
            "Chapter 2 Middle\nMore text two here."
        )
        s = detect_structure(text)
        assert s.headings_found is True
        assert len(s.parts) == 1
        chapters = s.parts[0].chapters
        # Preamble joins the first chapter.
        assert _pairs(chapters) == [(0, 10), (10, 17)]
        assert [c.title for c in chapters] == ["Chapter 1 Beginnings", "Chapter 2 Middle"]

    def test_part_headings_group_chapters(self):
        text = (
            "PART I\nChapter 1 A\nalpha beta.\nChapter 2 B\ngamma delta.\n"
            "PART II\nChapter 3 C\nepsilon zeta."
        )
        s = detect_structure(text)
        assert [p.title for p in s.parts] == ["PART I", "PART II"]
        assert _pairs(s.parts) == [(0, 12), (12, 19)]
        assert _pairs(s.parts[0].chapters) == [(0, 7), (7, 12)]
        assert _pairs(s.parts[1].chapters) == [(12, 19)]

    def test_chapters_tile_document(self):
        text = "Chapter 1 One\n" + words(50) + "\n\nChapter 2 Two\n" + words(70)
        s = detect_structure(text)
        ranges = [WordRange(start=ch.start, end=ch.end) for _, _, ch in s.chapters()]
        assert validate_ranges(ranges, s.total_words)

    def test_oversized_headed_chapter_is_split(self):
        s = detect_structure("Chapter 1 One\n" + words(120), chapter_size=50)
        assert _pairs(s.parts[0].chapters) == [(0, 41), (41, 82), (82, 123)]
        assert [c.title for c in s.parts[0].chapters] == [
            "Chapter 1 One", "Chapter 1 One (2/3)", "Chapter 1 One (3/3)",
        ]

    def test_invalid_heading_ranges_are_repaired(self, monkeypatch):
        overlapping = [PartNode(title="Part 1", start=0, end=23, virtual=True, chapters=[
            ChapterNode(title="A", start=0, end=15),
            ChapterNode(title="B", start=10, end=23),
        ])]
        monkeypatch.setattr(structure_mod, "_headed_structure", lambda *args: overlapping)

        s = detect_structure("Chapter 1 A\n" + words(20))
        assert s.headings_found is True
        assert _pairs(s.parts[0].chapters) == [(0, 10), (10, 23)]
        assert [c.title for c in s.parts[0].chapters] == ["A", "B"]
        assert _pairs(s.parts) == [(0, 23)]


class TestNumberedHeadings:
    def test_numbered_list_is_not_a_heading(self):
        paragraphs = [paragraph(i) for i in range(200)]
        text = (
            paragraphs[0] + "\n\n1. The first point.\n2. The second point.\n\n"
            + "\n\n".join(paragraphs[1:])
        )
        s = detect_structure(text)
        assert s.headings_found is False
        assert [ch.size for _, _, ch in s.chapters()] == [5000, 5000, 5000, 5008]

    def test_short_list_items_are_siblings(self):
        s = detect_structure("1. Apples\n2. Pears\n\n" + words(100))
        assert s.headings_found is False

    def test_spaced_numbered_headings(self):
        text = "1. Introduction\n" + words(100) + "\n\n2. Methods\n" + words(100)
        s = detect_structure(text)
        assert s.headings_found is True
        assert _pairs(s.parts[0].chapters) == [(0, 102), (102, 204)]
        assert [c.title for c in s.parts[0].chapters] == ["1. Introduction", "2. Methods"]


class TestValidateRanges:
    def test_contiguous(self):
        assert validate_ranges(_ranges((0, 5), (5, 10)), 10)

    def test_gap(self):
        assert not validate_ranges(_ranges((0, 4), (5, 10)), 10)

    def test_overlap(self):
        assert not validate_ranges(_ranges((0, 6), (5, 10)), 10)

    def test_empty_range(self):
        assert not validate_ranges(_ranges((0, 0), (0, 10)), 10)

    def test_short_of_total(self):
        assert not validate_ranges(_ranges((0, 5), (5, 9)), 10)

    def test_no_ranges(self):
        assert not validate_ranges([], 10)


class TestRepair:
    def test_snap_closes_gap(self):
        repaired = repair_ranges(_ranges((0, 10), (15, 20)), 20)
        assert _pairs(repaired) == [(0, 15), (15, 20)]

    def test_snap_resolves_overlap(self):
        assert _pairs(snap_repair(_ranges((0, 12), (10, 20)), 20)) == [(0, 10), (10, 20)]

    def test_snap_forces_document_boundaries(self):
        assert _pairs(snap_repair(_ranges((3, 8), (8, 15)), 20)) == [(0, 8), (8, 20)]

    def test_snap_gives_collapsed_range_one_word(self):
        repaired = snap_repair(_ranges((0, 5), (0, 5), (10, 20)), 20)
        assert _pairs(repaired) == [(0, 1), (1, 10), (10, 20)]

    def test_valid_ranges_unchanged(self):
        assert _pairs(repair_ranges(_ranges((0, 5), (5, 10)), 10)) == [(0, 5), (5, 10)]

    def test_missing_ranges_fall_back_to_even_split(self):
        assert _pairs(repair_ranges([], 10, section_count=3)) == [(0, 4), (4, 8), (8, 10)]

    def test_repair_always_validates(self):
        messy = _ranges((7, 2), (30, 40), (1, 1))
        repaired = repair_ranges(messy, 25)
        assert len(repaired) == 3
        assert validate_ranges(repaired, 25)

    def test_even_split_zero_sections(self):
        assert even_split(0, 10) == []
