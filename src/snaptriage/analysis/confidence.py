"""Verdict derivation and confidence scoring for log analysis."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from snaptriage._types import Finding, FindingKind, Verdict

# Baseline belief that non-empty output carries a classifiable signal.
PRIOR = 0.5
LOCATION_BONUS = 0.25
FRAME_WEIGHT = 0.05
AMBIGUITY_PENALTY = 0.5
DEFAULT_WEIGHT = 0.5


def derive_verdict(findings: Iterable[Finding]) -> Verdict:
    """
    Pick the verdict for a non-empty, decodable log.

    Errors mean fail and warnings mean warn. Info findings or no findings at
    all mean pass. Only stack frames with no owning error is unknown.
    """
    kinds = {f.kind for f in findings}
    if FindingKind.ERROR in kinds:
        return Verdict.FAIL
    if FindingKind.WARNING in kinds:
        return Verdict.WARN
    if kinds == {FindingKind.STACK_FRAME}:
        return Verdict.UNKNOWN
    return Verdict.PASS


def finding_weight(finding: Finding, weights: Mapping[str, float]) -> float:
    """Evidence carried by one finding, before its repeat count."""
    if finding.kind is FindingKind.STACK_FRAME:
        return FRAME_WEIGHT
    weight = weights.get(finding.rule, DEFAULT_WEIGHT)
    if finding.file and finding.line is not None:
        weight += LOCATION_BONUS
    return weight + FRAME_WEIGHT * len(finding.frames)


def score(
    findings: Iterable[Finding],
    verdict: Verdict,
    *,
    ambiguous_lines: int,
    weights: Mapping[str, float],
) -> float:
    """
    Confidence in [0, 1] for a verdict.

    (prior + evidence) / (prior + evidence + 1 + penalty * ambiguous_lines),
    where evidence sums the weight of every finding times its count. The
    score never decreases when more unambiguous evidence is added, and an
    unknown verdict always scores 0.
    """
    if verdict is Verdict.UNKNOWN:
        return 0.0
    evidence = sum(finding_weight(f, weights) * f.count for f in findings)
    support = PRIOR + evidence
    value = support / (support + 1.0 + AMBIGUITY_PENALTY * ambiguous_lines)
    return round(min(1.0, max(0.0, value)), 4)
