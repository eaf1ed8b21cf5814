"""ChunkTransformer — one length-budgeted completion call per chunk, with retry."""

from __future__ import annotations

import logging
import time
from typing import Callable

from ..errors import ProviderError
from ..models import ChunkDelta, ChunkResult, LengthConfig
from ..parsing import extract_block, parse_json_model
from ..providers import CompletionProvider, CompletionRequest
from ..tools.length_budget import CHUNK_WINDOW, chunk_bounds, length_guidance, round_half_up
from ..tools.text import clean_markdown, count_words, is_truncated

logger = logging.getLogger(__name__)

RETRY_TARGET_FACTOR = 0.85

SYSTEM_PROMPT = """\
You are processing one chunk of a larger document. You maintain coherence with \
the document's established structure: you never contradict a commitment in the \
skeleton, you use key terms exactly as defined, and you flag conflicts between \
the chunk and the skeleton explicitly instead of silently resolving them.
"""

CHUNK_PROMPT = """\
CHAPTER SKELETON (you must honor this):
{chapter_context}

{instructions_block}{previous_block}{context_block}\
*** OUTPUT LENGTH REQUIREMENT ***
This is chunk {chunk_number} of {total_chunks} in this chapter.
- Original chunk length: {input_words} words
- YOUR OUTPUT MUST BE: {min_words}-{max_words} words
- Target: approximately {target_words} words

HARD REQUIREMENTS:
1. Your output MUST be at least {min_words} words
2. Your output MUST NOT exceed {max_words} words
3. Your output MUST end with a complete sentence
{retry_note}
{guidance}

CONSTRAINTS:
- Do NOT contradict any commitment in the skeleton
- Use key terms EXACTLY as defined in the skeleton
- If chunk content conflicts with the skeleton, FLAG IT in the delta report
- Preserve the chunk's contribution to the argument

CHUNK TEXT:
{chunk_text}

Respond in this format:

PROCESSED_TEXT:
[the reconstructed chunk, {min_words}-{max_words} words, ending with a complete sentence]

WORD_COUNT: [number of words in your output]

DELTA_REPORT:
{{"new_claims": [], "terms_used": [], "conflicts": [], "cross_refs": []}}
"""


def attempt_bounds(target: int, attempt: int) -> tuple[int, int, int]:
    """``(target, min, max)`` for a 1-based *attempt*; retries tighten the target."""
    t = target if attempt == 1 else round_half_up(target * RETRY_TARGET_FACTOR)
    return t, round_half_up(t * (1 - CHUNK_WINDOW)), round_half_up(t * (1 + CHUNK_WINDOW))


def summarize_delta(delta: ChunkDelta) -> str:
    """Short text summary of a chunk delta, handed to the next chunk."""
    if delta.is_empty():
        return ""
    parts = []
    if delta.new_claims:
        parts.append("claims: " + "; ".join(str(c) for c in delta.new_claims[:5]))
    if delta.terms_used:
        parts.append("terms: " + ", ".join(str(t) for t in delta.terms_used[:10]))
    if delta.conflicts:
        parts.append("conflicts: " + "; ".join(str(c) for c in delta.conflicts[:3]))
    return " | ".join(parts)


def parse_chunk_reply(raw: str) -> tuple[str, ChunkDelta]:
    """Split a reply into cleaned processed text and its delta report."""
    body = extract_block(raw, "PROCESSED_TEXT", ["WORD_COUNT", "DELTA_REPORT"])
    if body is None:
        # No marker: everything before a stray delta report is the text.
        body = raw.split("DELTA_REPORT:", 1)[0]
    processed = clean_markdown(body)

    delta = ChunkDelta()
    delta_raw = extract_block(raw, "DELTA_REPORT")
    if delta_raw:
        parsed, err = parse_json_model(delta_raw, ChunkDelta)
        if parsed is None:
            logger.warning("Unparseable delta report, using empty delta: %s", err)
        else:
            delta = parsed
    return processed, delta


def _build_prompt(
    chunk_text: str,
    chapter_context: str,
    length_config: LengthConfig,
    input_words: int,
    custom_instructions: str | None,
    total_chunks: int,
    chunk_index: int,
    previous_summary: str,
    context_before: str,
    bounds: tuple[int, int, int],
    attempt: int,
) -> str:
    target, min_words, max_words = bounds
    instructions_block = f"ADDITIONAL INSTRUCTIONS:\n{custom_instructions}\n\n" if custom_instructions else ""
    previous_block = f"PREVIOUS CHUNK SUMMARY:\n{previous_summary}\n\n" if previous_summary else ""
    context_block = (
        f"PRECEDING TEXT (context only, do not rewrite):\n{context_before}\n\n" if context_before else ""
    )
    retry_note = (
        f"\nRETRY ATTEMPT {attempt}: the previous output was outside the window or truncated. "
        f"Produce {min_words}-{max_words} words this time.\n"
        if attempt > 1 else ""
    )
    return CHUNK_PROMPT.format(
        chapter_context=chapter_context,
        instructions_block=instructions_block,
        previous_block=previous_block,
        context_block=context_block,
        chunk_number=chunk_index + 1,
        total_chunks=total_chunks,
        input_words=input_words,
        min_words=min_words,
        max_words=max_words,
        target_words=target,
        retry_note=retry_note,
        guidance=length_guidance(length_config.length_mode),
        chunk_text=chunk_text,
    )


def transform_chunk(
    provider: CompletionProvider,
    chunk_text: str,
    chapter_context: str,
    length_config: LengthConfig,
    chunk_input_words: int,
    custom_instructions: str | None = None,
    *,
    total_chunks: int = 1,
    chunk_index: int = 0,
    previous_summary: str = "",
    context_before: str = "",
    max_retries: int = 2,
    retry_delay_s: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    on_checkpoint: Callable[[int, ChunkResult], None] | None = None,
) -> ChunkResult:
    """Transform one chunk under the length budget.

    Each attempt is accepted iff the output is not truncated and its word
    count is inside the attempt's window.  After *max_retries* attempts the
    last output is kept with ``accepted=False``.  A ``ProviderError`` uses up
    an attempt.  On the final attempt it propagates only when no earlier
    attempt produced text; otherwise that earlier output is kept.
    """
    target, _, _ = chunk_bounds(chunk_input_words, length_config.length_ratio)
    attempts = max(1, max_retries)
    result = ChunkResult()

    for attempt in range(1, attempts + 1):
        bounds = attempt_bounds(target, attempt)
        _, min_words, max_words = bounds
        prompt = _build_prompt(
            chunk_text, chapter_context, length_config, chunk_input_words, custom_instructions,
            total_chunks, chunk_index, previous_summary, context_before, bounds, attempt,
        )
        logger.debug(
            "Chunk %d attempt %d: input=%d target=%d window=[%d, %d]",
            chunk_index, attempt, chunk_input_words, bounds[0], min_words, max_words,
        )
        try:
            response = provider.complete(CompletionRequest(
                prompt=prompt,
                system_instructions=SYSTEM_PROMPT,
                max_output_tokens=4000,
                temperature=0.3,
            ))
        except ProviderError as e:
            if attempt == attempts:
                if not result.attempts:
                    raise
                logger.warning(
                    "Chunk %d final attempt failed: %s; keeping attempt %d output (%d words)",
                    chunk_index, e, result.attempts, result.word_count,
                )
                break
            logger.warning("Chunk %d attempt %d failed: %s; retrying", chunk_index, attempt, e)
            sleep(retry_delay_s)
            continue

        processed, delta = parse_chunk_reply(response.text)
        word_count = count_words(processed)
        truncated = is_truncated(processed)
        accepted = not truncated and min_words <= word_count <= max_words
        result = ChunkResult(
            processed_text=processed,
            word_count=word_count,
            delta=delta,
            attempts=attempt,
            accepted=accepted,
            truncated=truncated,
        )
        if accepted:
            logger.info("Chunk %d accepted: %d words (target %d)", chunk_index, word_count, bounds[0])
            break
        if attempt < attempts:
            logger.warning(
                "Chunk %d rejected (truncated=%s, %d words outside [%d, %d]); retrying",
                chunk_index, truncated, word_count, min_words, max_words,
            )
            sleep(retry_delay_s)
        else:
            logger.warning(
                "Chunk %d: retries exhausted, keeping last output (%d words)", chunk_index, word_count,
            )

    if on_checkpoint is not None:
        on_checkpoint(chunk_index, result)
    return result
