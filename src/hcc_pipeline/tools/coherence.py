"""Coherence checks of a final output against skeleton invariants.

Check 1: Commitment tracing   — every commitment claim prefix is in the output (error).
Check 2: Objection coverage   — every tracked objection is marked integrated (warning).
Check 3: Response integration — a key phrase of each enhanced response is in the output (warning).
Check 4: Terminology drift    — every key term is still in the output (warning).
"""

from __future__ import annotations

from typing import Sequence

from ..models import (
    BookSkeleton,
    CoherenceReport,
    CoherenceSummary,
    Objection,
    Severity,
    Violation,
    ViolationType,
)

COMMITMENT_PREFIX_CHARS = 50
KEY_PHRASE_CHARS = 30


def commitment_key(claim: str) -> str:
    """Normalised prefix used to trace a commitment claim."""
    return claim.strip().lower()[:COMMITMENT_PREFIX_CHARS]


def response_key_phrases(response: str) -> list[str]:
    """Short phrases from the first two sentences of a response."""
    phrases = [s.strip()[:KEY_PHRASE_CHARS] for s in response.split(".")[:2]]
    return [p for p in phrases if p]


def check_commitments(output: str, skeleton: BookSkeleton) -> list[Violation]:
    lowered = output.lower()
    violations = []
    for commitment in skeleton.core_commitments:
        key = commitment_key(commitment.claim)
        if key and key not in lowered:
            violations.append(Violation(
                type=ViolationType.COMMITMENT_MISSING,
                severity=Severity.ERROR,
                description="Original commitment not found in output",
                details={"commitment": commitment.claim, "type": commitment.type.value},
            ))
    return violations


def check_objection_coverage(objections: Sequence[Objection]) -> list[Violation]:
    return [
        Violation(
            type=ViolationType.OBJECTION_NOT_ADDRESSED,
            severity=Severity.WARNING,
            description=f"Objection {o.index} may not be fully addressed",
            details={"objection_index": o.index},
        )
        for o in objections
        if not o.integration_verified
    ]


def check_response_integration(output: str, objections: Sequence[Objection]) -> list[Violation]:
    lowered = output.lower()
    violations = []
    for o in objections:
        if not o.enhanced_response:
            continue
        phrases = response_key_phrases(o.enhanced_response)
        if not any(p.lower() in lowered for p in phrases):
            violations.append(Violation(
                type=ViolationType.RESPONSE_NOT_INTEGRATED,
                severity=Severity.WARNING,
                description=f"Response {o.index} may not be integrated",
                details={"response_index": o.index},
            ))
    return violations


def check_terminology(output: str, skeleton: BookSkeleton) -> list[Violation]:
    lowered = output.lower()
    return [
        Violation(
            type=ViolationType.TERMINOLOGY_DRIFT,
            severity=Severity.WARNING,
            description=f'Key term "{t.term}" may not be preserved',
            details={"term": t.term, "original_definition": t.definition},
        )
        for t in skeleton.global_terms
        if t.term.strip() and t.term.strip().lower() not in lowered
    ]


def summarize(violations: Sequence[Violation]) -> CoherenceSummary:
    def _count(kind: ViolationType) -> int:
        return sum(1 for v in violations if v.type == kind)

    errors = sum(1 for v in violations if v.severity == Severity.ERROR)
    return CoherenceSummary(
        total=len(violations),
        errors=errors,
        warnings=len(violations) - errors,
        commitments_missing=_count(ViolationType.COMMITMENT_MISSING),
        objections_not_addressed=_count(ViolationType.OBJECTION_NOT_ADDRESSED),
        responses_not_integrated=_count(ViolationType.RESPONSE_NOT_INTEGRATED),
        terminology_drifts=_count(ViolationType.TERMINOLOGY_DRIFT),
    )


def check_coherence(
    output: str,
    skeleton: BookSkeleton,
    objections: Sequence[Objection] = (),
) -> CoherenceReport:
    """Run all four checks; ``passed`` iff no error-severity violation."""
    violations = [
        *check_commitments(output, skeleton),
        *check_objection_coverage(objections),
        *check_response_integration(output, objections),
        *check_terminology(output, skeleton),
    ]
    summary = summarize(violations)
    return CoherenceReport(passed=summary.errors == 0, violations=violations, summary=summary)


def missing_commitments(report: CoherenceReport) -> list[str]:
    return [
        v.details.get("commitment", "")
        for v in report.violations
        if v.type == ViolationType.COMMITMENT_MISSING
    ]
