"""Objection agents — target claims, objections with responses, enhanced responses.

All three calls return JSON arrays.  Items that fail validation are dropped
individually; an unparseable reply yields an empty batch and a warning, never
an exception.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterator, Sequence, TypeVar

from ..models import (
    BookSkeleton,
    EnhancedResponse,
    Objection,
    ObjectionSeverity,
    ObjectionType,
    TargetClaim,
)
from ..parsing import parse_json_list
from ..providers import CompletionProvider, CompletionRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLAIMS_DOCUMENT_CHARS = 25000
SUMMARY_CHARS = 100

SYSTEM_PROMPT = """\
You are a rigorous critic of long-form arguments. You target what a document \
ACTUALLY says, never a strawman, and you represent its commitments accurately.
Return ONLY the JSON array you are asked for.
"""

CLAIMS_PROMPT = """\
Analyze this reconstructed document and identify {count} distinct, substantive \
claims that could be objected to.

DOCUMENT SKELETON:
{skeleton_json}

RECONSTRUCTED DOCUMENT:
{document}

For each claim, provide:
1. The exact quote or precise paraphrase
2. Where it appears (section/paragraph)
3. Why it is substantive enough to warrant an objection

Return as JSON array:
[
  {{"claim_index": 1, "claim": "exact claim text", "location": "section/paragraph", "reason": "why substantive"}}
]

Return exactly {count} claims, ensuring variety across the document.
"""

OBJECTIONS_PROMPT = """\
Generate objections and responses for these {n} claims.

DOCUMENT COMMITMENTS (represent them accurately):
{commitments_json}

TARGET CLAIMS:
{claims_json}

For each claim, generate:
1. claim_targeted: exact quote or precise paraphrase from the document
2. type: one of [{types}]
3. objection: the objection itself (150-300 words)
4. response: a counter-argument (150-300 words)
5. severity: one of [{severities}]

Return as JSON array:
[
  {{"claim_index": 1, "claim_targeted": "exact claim", "claim_location": "section", "type": "logical", \
"objection": "...", "response": "...", "severity": "serious"}}
]
"""

ENHANCE_PROMPT = """\
Enhance these responses to make them more compelling and thorough.

ORIGINAL DOCUMENT COMMITMENTS (must not contradict):
{commitments_json}

OBJECTIONS AND INITIAL RESPONSES:
{items}

For each objection, write an ENHANCED RESPONSE that:
1. Acknowledges the objection's strongest form
2. Gives deeper analysis than the initial response
3. Adds evidence or examples where appropriate
4. Does NOT contradict the document's commitments
5. Is 300-500 words

Return as JSON array:
[
  {{"objection_index": 1, "enhanced_response": "...", "enhancement_notes": "what was improved"}}
]
"""


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_CAMEL = {
    "claimIndex": "claim_index",
    "claimTargeted": "claim_targeted",
    "claimLocation": "claim_location",
    "objectionIndex": "objection_index",
    "enhancedResponse": "enhanced_response",
    "enhancementNotes": "enhancement_notes",
}


def _snake(entry: dict[str, Any]) -> dict[str, Any]:
    return {_CAMEL.get(k, k): v for k, v in entry.items()}


def normalize_objection_type(value: Any) -> ObjectionType:
    try:
        return ObjectionType(str(value).strip().lower())
    except ValueError:
        return ObjectionType.LOGICAL


def normalize_severity(value: Any) -> ObjectionSeverity:
    try:
        return ObjectionSeverity(str(value).strip().lower())
    except ValueError:
        return ObjectionSeverity.MODERATE


def _normalize_claim(entry: dict[str, Any]) -> dict[str, Any]:
    entry = _snake(entry)
    entry.setdefault("claim_index", 0)
    return entry


def _normalize_objection(entry: dict[str, Any]) -> dict[str, Any]:
    entry = _snake(entry)
    entry["index"] = 0
    entry["type"] = normalize_objection_type(entry.get("type"))
    entry["severity"] = normalize_severity(entry.get("severity"))
    for key in ("claim_targeted", "claim_location", "objection", "response"):
        entry[key] = str(entry.get(key) or "")
    return entry


def batches(items: Sequence[T], size: int) -> Iterator[list[T]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def _commitments_json(skeleton: BookSkeleton) -> str:
    return json.dumps([c.model_dump(mode="json") for c in skeleton.core_commitments], indent=2)


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


def find_target_claims(
    provider: CompletionProvider,
    document: str,
    skeleton: BookSkeleton,
    count: int = 25,
) -> list[TargetClaim]:
    response = provider.complete(CompletionRequest(
        prompt=CLAIMS_PROMPT.format(
            count=count,
            skeleton_json=skeleton.model_dump_json(indent=2),
            document=document[:CLAIMS_DOCUMENT_CHARS],
        ),
        system_instructions=SYSTEM_PROMPT,
        max_output_tokens=8000,
        temperature=0.3,
    ))
    claims, err = parse_json_list(response.text, TargetClaim, normalize=_normalize_claim)
    if claims is None:
        logger.warning("Claim identification unparseable, no claims targeted: %s", err)
        return []
    for i, claim in enumerate(claims[:count], start=1):
        claim.claim_index = claim.claim_index or i
    return claims[:count]


def generate_objections(
    provider: CompletionProvider,
    claims: Sequence[TargetClaim],
    skeleton: BookSkeleton,
    *,
    first_index: int = 1,
) -> tuple[list[Objection], str]:
    """One batch of objections; indices continue from *first_index*.

    Returns the objections and the raw reply (checkpointed by the caller).
    """
    response = provider.complete(CompletionRequest(
        prompt=OBJECTIONS_PROMPT.format(
            n=len(claims),
            commitments_json=_commitments_json(skeleton),
            claims_json=json.dumps([c.model_dump(mode="json") for c in claims], indent=2),
            types=", ".join(t.value for t in ObjectionType),
            severities=", ".join(s.value for s in ObjectionSeverity),
        ),
        system_instructions=SYSTEM_PROMPT,
        max_output_tokens=8000,
        temperature=0.4,
    ))
    objections, err = parse_json_list(response.text, Objection, normalize=_normalize_objection)
    if objections is None:
        logger.warning("Objection batch unparseable, batch skipped: %s", err)
        return [], response.text
    for offset, objection in enumerate(objections):
        objection.index = first_index + offset
    return objections, response.text


def enhance_responses(
    provider: CompletionProvider,
    objections: Sequence[Objection],
    skeleton: BookSkeleton,
) -> tuple[list[EnhancedResponse], str]:
    items = "\n---\n".join(
        f"Objection {o.index}: {o.objection}\nInitial Response: {o.response}" for o in objections
    )
    response = provider.complete(CompletionRequest(
        prompt=ENHANCE_PROMPT.format(commitments_json=_commitments_json(skeleton), items=items),
        system_instructions=SYSTEM_PROMPT,
        max_output_tokens=8000,
        temperature=0.4,
    ))
    enhanced, err = parse_json_list(response.text, EnhancedResponse, normalize=_snake)
    if enhanced is None:
        logger.warning("Response enhancement batch unparseable, batch skipped: %s", err)
        return [], response.text
    return enhanced, response.text


def apply_enhancements(objections: Sequence[Objection], enhanced: Sequence[EnhancedResponse]) -> int:
    """Copy enhanced responses onto matching objections; returns how many matched."""
    by_index = {o.index: o for o in objections}
    applied = 0
    for item in enhanced:
        target = by_index.get(item.objection_index)
        if target is None:
            logger.warning("Enhanced response for unknown objection %d dropped", item.objection_index)
            continue
        target.enhanced_response = item.enhanced_response
        target.enhancement_notes = item.enhancement_notes
        applied += 1
    return applied


# ---------------------------------------------------------------------------
# Output formatting
# ---------------------------------------------------------------------------


def format_objections(objections: Sequence[Objection]) -> str:
    lines = [f"# {len(objections)} OBJECTIONS WITH RESPONSES", ""]
    for o in objections:
        lines += [
            f"## Objection {o.index} [{o.type.value.upper()}] - {o.severity.value.upper()}",
            "",
            f"**Claim Targeted:** {o.claim_targeted}",
            "",
            f"**Objection:**\n{o.objection}",
            "",
            f"**Response:**\n{o.response}",
            "",
            "---",
            "",
        ]
    return "\n".join(lines).strip() + "\n"


def format_responses(objections: Sequence[Objection]) -> str:
    enhanced = [o for o in objections if o.enhanced_response]
    lines = [f"# {len(enhanced)} ENHANCED RESPONSES", ""]
    for o in enhanced:
        lines += [
            f"## Response to Objection {o.index}",
            "",
            f"**Original Objection:** {o.objection[:200]}",
            "",
            f"**Enhanced Response:**\n{o.enhanced_response}",
            "",
            f"**Improvements:** {o.enhancement_notes}",
            "",
            "---",
            "",
        ]
    return "\n".join(lines).strip() + "\n"


def objections_skeleton(
    claims: Sequence[TargetClaim],
    objections: Sequence[Objection],
    skeleton: BookSkeleton,
) -> dict[str, Any]:
    return {
        "claims_to_target": [c.model_dump(mode="json") for c in claims],
        "claim_locations": {str(c.claim_index): c.location for c in claims},
        "objection_types": {
            t.value: [o.index for o in objections if o.type == t] for t in ObjectionType
        },
        "severity_distribution": {
            s.value: [o.index for o in objections if o.severity == s] for s in ObjectionSeverity
        },
        "inherited_commitments": [c.model_dump(mode="json") for c in skeleton.core_commitments],
        "objection_summaries": [
            {"index": o.index, "summary": o.objection[:SUMMARY_CHARS]} for o in objections
        ],
        "response_summaries": [
            {"index": o.index, "summary": o.response[:SUMMARY_CHARS]} for o in objections
        ],
    }


def responses_skeleton(
    objections: Sequence[Objection],
    skeleton1: dict[str, Any],
    skeleton2: dict[str, Any],
) -> dict[str, Any]:
    return {
        "objections_to_address": skeleton2.get("objection_summaries", []),
        "initial_responses": skeleton2.get("response_summaries", []),
        "enhancement_strategy": [
            {"index": o.index, "strategy": "deeper_analysis", "notes": o.enhancement_notes}
            for o in objections if o.enhanced_response
        ],
        "enhanced_response_summaries": [
            {"index": o.index, "summary": o.enhanced_response[:SUMMARY_CHARS]}
            for o in objections if o.enhanced_response
        ],
        "inherited_skeleton1": skeleton1,
        "inherited_skeleton2": skeleton2,
    }
