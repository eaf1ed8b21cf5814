"""Deterministic tools: structure detection, length budgets, chunking, assembly and coherence checks."""

from .assembler import assemble_document, assemble_part
from .chunker import smart_chunk
from .coherence import check_coherence
from .length_budget import calculate_length_config, parse_target_length
from .structure import detect_structure, repair_ranges, validate_ranges
from .text import count_words, slice_words

__all__ = [
    "assemble_document",
    "assemble_part",
    "calculate_length_config",
    "check_coherence",
    "count_words",
    "detect_structure",
    "parse_target_length",
    "repair_ranges",
    "slice_words",
    "smart_chunk",
    "validate_ranges",
]
