"""Skeleton extraction and compression.

The book skeleton is the document-wide invariant set (thesis, key terms,
commitments) that every chunk request is conditioned on.  It is extracted
once per pass and compressed to a short text block for injection.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ..models import BookSkeleton
from ..parsing import parse_json_model
from ..providers import CompletionProvider, CompletionRequest
from ..tools.text import count_paragraphs, count_words, slice_words, word_spans

logger = logging.getLogger(__name__)

FALLBACK_THESIS = "Unable to extract thesis"

SYSTEM_PROMPT = """\
You are analyzing a book-length document. You extract its GLOBAL STRUCTURE in a \
compressed form that will be injected into every later editing request.
Everything you extract must be traceable to the document. Never invent claims.
"""

EXTRACT_PROMPT = """\
DOCUMENT SAMPLE ({sample_label}):
{sample}

Extract and return as JSON:
{{
  "master_thesis": "The central argument of the entire document in 1-2 sentences",
  "major_divisions": [{{"title": "Part/Section name", "summary": "2-3 sentence summary"}}],
  "global_terms": [{{"term": "key term", "definition": "how it is used throughout"}}],
  "core_commitments": [{{"type": "asserts|rejects|assumes", "claim": "core claim"}}],
  "cross_references": [{{"source": "topic A", "target": "topic B", "relationship": "how they connect"}}]
}}

RULES:
1. master_thesis captures the CORE PURPOSE of the entire work
2. major_divisions has 3-8 entries for major parts/sections
3. global_terms are terms that must be used CONSISTENTLY throughout
4. core_commitments are non-negotiable claims the document makes, worded as in the text
5. Keep this COMPRESSED

Return ONLY valid JSON.
"""

COMPRESS_PROMPT = """\
Compress this skeleton to approximately {target_tokens} tokens while preserving:
1. The thesis statement VERBATIM
2. Key term definitions VERBATIM
3. Core commitments
4. Replace examples with references
5. Compress argument chains to their conclusions

SKELETON:
{skeleton_json}

Return a compressed text summary (not JSON).
"""

# Keys models tend to emit in camelCase or with from/to naming.
_KEY_ALIASES = {
    "masterThesis": "master_thesis",
    "majorDivisions": "major_divisions",
    "globalTerms": "global_terms",
    "coreCommitments": "core_commitments",
    "crossReferences": "cross_references",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def fallback_skeleton() -> BookSkeleton:
    return BookSkeleton(master_thesis=FALLBACK_THESIS)


def _normalize_skeleton(data: dict[str, Any]) -> dict[str, Any]:
    data = {_KEY_ALIASES.get(k, k): v for k, v in data.items()}
    refs = []
    for ref in data.get("cross_references") or []:
        if isinstance(ref, dict):
            ref = dict(ref)
            ref.setdefault("source", ref.pop("from", ""))
            ref.setdefault("target", ref.pop("to", ""))
        refs.append(ref)
    data["cross_references"] = refs

    commitments = []
    for item in data.get("core_commitments") or []:
        if isinstance(item, str):
            item = {"claim": item}
        elif isinstance(item, dict) and item.get("type") not in ("asserts", "rejects", "assumes"):
            item = {**item, "type": "asserts"}
        commitments.append(item)
    data["core_commitments"] = commitments
    if not data.get("master_thesis"):
        data["master_thesis"] = FALLBACK_THESIS
    return data


def build_skeleton_sample(
    text: str,
    sample_words: int = 8000,
    head_words: int = 6000,
    tail_words: int = 2000,
) -> tuple[str, str]:
    """Return ``(sample_label, sample_text)`` for the extraction prompt.

    Documents within *sample_words* are sent whole.  Longer documents send
    their head and tail around a truncation marker, plus paragraph metadata.
    """
    total = count_words(text)
    if total <= sample_words or total <= head_words + tail_words:
        return f"complete, {total} words", text.strip()

    spans = word_spans(text)
    head = slice_words(text, 0, head_words, spans)
    tail = slice_words(text, total - tail_words, total, spans)
    omitted = total - head_words - tail_words
    sample = (
        f"{head}\n\n"
        f"[... TRUNCATED: {omitted} words omitted ...]\n\n"
        f"{tail}\n\n"
        f"METADATA: the full document has {total} words in {count_paragraphs(text)} paragraphs. "
        "Reference content by paragraph position rather than quoting long spans verbatim."
    )
    return f"first {head_words} and last {tail_words} of {total} words", sample


def render_skeleton(skeleton: BookSkeleton) -> str:
    """Deterministic text rendering of a skeleton."""
    lines = [f"Thesis: {skeleton.master_thesis}"]
    if skeleton.global_terms:
        lines.append("Key terms:")
        lines.extend(f"- {t.term}: {t.definition}" for t in skeleton.global_terms)
    if skeleton.core_commitments:
        lines.append("Commitments:")
        lines.extend(f"- [{c.type.value}] {c.claim}" for c in skeleton.core_commitments)
    if skeleton.major_divisions:
        lines.append("Divisions: " + "; ".join(d.title for d in skeleton.major_divisions))
    return "\n".join(lines)


def chapter_context(skeleton: BookSkeleton, compressed: str) -> str:
    return f"Master Thesis: {skeleton.master_thesis}\nContext: {compressed}"


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


def extract_book_skeleton(
    provider: CompletionProvider,
    text: str,
    *,
    sample_words: int = 8000,
    head_words: int = 6000,
    tail_words: int = 2000,
) -> BookSkeleton:
    """Extract the book skeleton; an unparseable reply yields :func:`fallback_skeleton`."""
    label, sample = build_skeleton_sample(text, sample_words, head_words, tail_words)
    response = provider.complete(CompletionRequest(
        prompt=EXTRACT_PROMPT.format(sample_label=label, sample=sample),
        system_instructions=SYSTEM_PROMPT,
        max_output_tokens=4000,
        temperature=0.2,
    ))
    skeleton, err = parse_json_model(response.text, BookSkeleton, normalize=_normalize_skeleton)
    if skeleton is None:
        logger.warning("Skeleton extraction unparseable, using fallback: %s", err)
        return fallback_skeleton()
    logger.info(
        "Skeleton: %d terms, %d commitments, %d divisions",
        len(skeleton.global_terms), len(skeleton.core_commitments), len(skeleton.major_divisions),
    )
    return skeleton


def compress_skeleton(
    provider: CompletionProvider,
    skeleton: BookSkeleton,
    target_tokens: int = 500,
) -> str:
    response = provider.complete(CompletionRequest(
        prompt=COMPRESS_PROMPT.format(
            target_tokens=target_tokens,
            skeleton_json=json.dumps(skeleton.model_dump(mode="json"), indent=2),
        ),
        system_instructions=SYSTEM_PROMPT,
        max_output_tokens=target_tokens * 2,
        temperature=0.2,
    ))
    compressed = response.text.strip()
    if not compressed:
        logger.warning("Empty skeleton compression reply; rendering skeleton directly")
        return render_skeleton(skeleton)
    return compressed
