"""ChapterStitcher — merges processed chunks into one coherent chapter."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from ..models import ChapterDelta, ChunkResult, StitchResult
from ..parsing import extract_block, parse_json_model
from ..providers import CompletionProvider, CompletionRequest
from ..tools.assembler import assemble_part
from ..tools.text import clean_markdown

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are stitching processed chunks into a coherent chapter. You detect \
contradictions between chunks, terminology drift, missing premises and \
redundancies, and you perform only the micro-repairs needed to fix them. \
You never drop an argument a chunk makes.
"""

STITCH_PROMPT = """\
CHAPTER SKELETON:
{chapter_context}

CHUNK DELTAS:
{deltas_json}

PROCESSED CHUNKS:
{chunks_text}

TASK:
1. Detect any contradictions between chunks
2. Detect any terminology drift
3. Identify missing premises or redundancies
4. Perform micro-repairs to fix issues
5. Assemble into a coherent chapter output

Return:
CHAPTER_OUTPUT:
[stitched chapter text]

CHAPTER_DELTA:
{{"net_contribution": "summary", "new_commitments": [], "conflicts_resolved": [], "conflicts_flagged": [], "cross_references": []}}
"""

_DELTA_ALIASES = {
    "netContribution": "net_contribution",
    "newCommitments": "new_commitments",
    "conflictsResolved": "conflicts_resolved",
    "conflictsFlagged": "conflicts_flagged",
    "crossReferences": "cross_references",
}


def _normalize_delta(data: dict[str, Any]) -> dict[str, Any]:
    data = {_DELTA_ALIASES.get(k, k): v for k, v in data.items()}
    if not isinstance(data.get("net_contribution", ""), str):
        data["net_contribution"] = json.dumps(data["net_contribution"])
    return data


def stitch_chapter(
    provider: CompletionProvider,
    chapter_context: str,
    chunks: Sequence[ChunkResult],
) -> StitchResult:
    """Stitch *chunks* into a chapter.

    A single chunk is its own chapter and skips the model call.  A reply
    without a ``CHAPTER_OUTPUT`` block falls back to the chunks joined with
    blank lines.
    """
    fallback = assemble_part(c.processed_text for c in chunks)
    if len(chunks) <= 1:
        return StitchResult(output=fallback)

    chunks_text = "\n\n".join(f"[CHUNK {i + 1}]\n{c.processed_text}" for i, c in enumerate(chunks))
    deltas_json = json.dumps([c.delta.model_dump(mode="json") for c in chunks])
    response = provider.complete(CompletionRequest(
        prompt=STITCH_PROMPT.format(
            chapter_context=chapter_context,
            deltas_json=deltas_json,
            chunks_text=chunks_text,
        ),
        system_instructions=SYSTEM_PROMPT,
        max_output_tokens=16000,
        temperature=0.3,
    ))

    body = extract_block(response.text, "CHAPTER_OUTPUT", ["CHAPTER_DELTA"])
    output = clean_markdown(body) if body else ""
    fallback_used = not output
    if fallback_used:
        logger.warning("Stitcher returned no CHAPTER_OUTPUT; joining %d chunks as-is", len(chunks))
        output = fallback

    delta = ChapterDelta()
    delta_raw = extract_block(response.text, "CHAPTER_DELTA")
    if delta_raw:
        parsed, err = parse_json_model(delta_raw, ChapterDelta, normalize=_normalize_delta)
        if parsed is None:
            logger.warning("Unparseable chapter delta, using empty delta: %s", err)
        else:
            delta = parsed
    return StitchResult(output=output, delta=delta, fallback_used=fallback_used)
