"""
Post-Processor — Page-Level False Positive Filters

Runs after the audit, on the final violation set of one page:

  (a) subject name:  the clinic's own registered name is not a claim
                     ("Seoul Dermatology Clinic" containing "Dermatology")
  (b) navigation:    menu / footer phrases, and text repeated across the
                     page's navigation five or more times
  (c) same pattern:  one record per pattern ID, the most confident
                     instance, annotated with the occurrence count

The grade is recomputed with grading.calculate_grade(), the same
function the auditor uses.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import replace
from typing import Optional, Sequence

from medcheck.catalog import DEPARTMENT_NAMES, NAVIGATION_PHRASES
from medcheck.grading import calculate_grade
from medcheck.logging import get_logger
from medcheck.models import AuditResult, ViolationCandidate

logger = get_logger("postprocess")

NAVIGATION_REPEAT_MIN_VIOLATIONS = 5
NAVIGATION_REPEAT_MIN_COUNT = 5

_NAME_WORDS: tuple[str, ...] = tuple(sorted(
    {name.lower() for name in DEPARTMENT_NAMES.values()} | {
        "dermatology", "plastic surgery", "dental", "dentistry",
        "ophthalmology", "eye", "orthopedics", "oriental medicine",
        "korean medicine", "skin", "clinic", "hospital",
    },
    key=len,
    reverse=True,
))


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower())


def name_keywords(subject_name: str) -> set[str]:
    """The full registered name plus any specialty words it contains."""
    name = _normalize(subject_name)
    if not name:
        return set()
    keywords = {name}
    for word in _NAME_WORDS:
        if re.search(rf"\b{re.escape(word)}\b", name):
            keywords.add(word)
    return keywords


def filter_subject_name(
    violations: Sequence[ViolationCandidate],
    subject_name: Optional[str],
) -> list[ViolationCandidate]:
    """(a) Drop matches that are the subject's own name or a part of it."""
    if not subject_name:
        return list(violations)
    name = _normalize(subject_name)
    keywords = name_keywords(subject_name)

    kept = []
    for v in violations:
        text = _normalize(v.original_text)
        if not text:
            kept.append(v)
            continue
        if text in keywords:
            continue
        if text in name and len(text) < len(name):
            continue
        kept.append(v)
    return kept


def filter_navigation_phrases(
    violations: Sequence[ViolationCandidate],
) -> list[ViolationCandidate]:
    """(b) Drop matches that are exactly a navigation/menu phrase."""
    phrases = {_normalize(p) for p in NAVIGATION_PHRASES}
    return [v for v in violations if _normalize(v.original_text) not in phrases]


def collapse_navigation_repeats(
    violations: Sequence[ViolationCandidate],
) -> list[ViolationCandidate]:
    """(b) On a busy page, text repeated five or more times is menu chrome: keep it once."""
    if len(violations) <= NAVIGATION_REPEAT_MIN_VIOLATIONS:
        return list(violations)

    counts = Counter(_normalize(v.original_text) for v in violations)
    repeated = {t for t, n in counts.items() if n >= NAVIGATION_REPEAT_MIN_COUNT}
    if not repeated:
        return list(violations)

    kept = []
    emitted: set[str] = set()
    for v in violations:
        text = _normalize(v.original_text)
        if text in repeated:
            if text in emitted:
                continue
            emitted.add(text)
        kept.append(v)
    return kept


def collapse_same_pattern(
    violations: Sequence[ViolationCandidate],
) -> list[ViolationCandidate]:
    """(c) One record per pattern ID: the most confident, annotated with the count."""
    groups: dict[str, list[ViolationCandidate]] = {}
    for v in violations:
        groups.setdefault(v.pattern_id, []).append(v)

    collapsed = []
    for members in groups.values():
        survivor = members[0]
        for v in members[1:]:
            if v.confidence > survivor.confidence:
                survivor = v
        if len(members) > 1:
            note = f"(found {len(members)} times on page, counted once)"
            description = f"{survivor.description} {note}".strip()
            survivor = replace(survivor, description=description)
        collapsed.append(survivor)
    return collapsed


def postprocess(result: AuditResult, subject_name: Optional[str] = None) -> AuditResult:
    """
    Apply the page-level filters and regrade.

    Returns a new AuditResult; the input is not modified.
    """
    before = len(result.final_violations)

    violations = filter_subject_name(result.final_violations, subject_name)
    after_name = len(violations)
    violations = filter_navigation_phrases(violations)
    violations = collapse_navigation_repeats(violations)
    after_nav = len(violations)
    violations = collapse_same_pattern(violations)

    processed = replace(
        result,
        final_violations=tuple(violations),
        final_count=len(violations),
        grade=calculate_grade(violations),
    )

    if len(violations) != before:
        logger.info(
            "Post-processing removed %d violations (name=%d, navigation=%d, pattern=%d)",
            before - len(violations),
            before - after_name,
            after_name - after_nav,
            after_nav - len(violations),
            extra={
                "analysis_id": result.id,
                "final_count": len(violations),
                "grade": processed.grade.grade,
                "clean_score": processed.grade.clean_score,
            },
        )
    return processed
