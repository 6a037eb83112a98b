"""
Clean Score Calculator

Computes the 0-100 clean score and letter grade for a violation set.
This is the ONLY place severity buckets are counted: the auditor and
the post-processor both grade through calculate_grade().

Score = 100 minus, for every violation,
    base_penalty(effective severity) x section_weight x confidence

Base penalties:   critical=20, major=7, minor=3, low=1 (unknown=3)
Section weights:  treatment=1.2, event=0.8, faq=0.6, review=0.7,
                  doctor=1.0, default=1.0
Rounded half-up, floored at 0, capped at 100.
"""

from __future__ import annotations

import math
from typing import Iterable

from medcheck.catalog import RuleCatalog
from medcheck.models import GradeResult, Severity, ViolationCandidate

SEVERITY_PENALTY: dict[Severity, int] = {
    Severity.CRITICAL: 20,
    Severity.MAJOR: 7,
    Severity.MINOR: 3,
    Severity.LOW: 1,
}
DEFAULT_PENALTY = 3

GRADE_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (95, "S"),
    (85, "A"),
    (70, "B"),
    (55, "C"),
    (40, "D"),
)


def count_by_severity(violations: Iterable[ViolationCandidate]) -> dict[str, int]:
    """Bucket violations by effective (post-audit) severity."""
    counts = {s.value: 0 for s in Severity}
    for v in violations:
        counts[v.effective_severity.value] += 1
    return counts


def violation_penalty(violation: ViolationCandidate) -> float:
    base = SEVERITY_PENALTY.get(violation.effective_severity, DEFAULT_PENALTY)
    weight = RuleCatalog.section_weight(violation.section_type)
    return base * weight * violation.confidence


def score_to_grade(score: int) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def calculate_grade(violations: Iterable[ViolationCandidate]) -> GradeResult:
    """
    Grade a final violation set.

    Returns:
        GradeResult with the clean score, letter grade, severity counts
        and a breakdown of every penalty applied.
    """
    violations = list(violations)
    breakdown: list[dict] = []
    total_penalty = 0.0

    for v in violations:
        pen = violation_penalty(v)
        total_penalty += pen
        breakdown.append({
            "pattern_id": v.pattern_id,
            "severity": v.effective_severity.value,
            "section_type": v.section_type.value,
            "confidence": v.confidence,
            "penalty": -round(pen, 2),
        })

    # Half-up rounding; Python's round() is banker's rounding.
    score = math.floor(100 - total_penalty + 0.5)
    score = max(0, min(100, score))

    return GradeResult(
        clean_score=score,
        grade=score_to_grade(score),
        violation_count=len(violations),
        severity_counts=count_by_severity(violations),
        breakdown=breakdown,
    )
