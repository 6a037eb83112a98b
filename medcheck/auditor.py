"""
Consensus Auditor — Bounding an Untrusted Proposer

The Proposer (a generative model) returns candidate violations that may
carry fabricated pattern IDs, flag harmless product names, ignore
printed disclaimers, miss obvious matches, or mis-grade confidence.
The auditor reconciles those candidates against the deterministic rule
catalog in six ordered passes:

  1. Identifier validation      FABRICATED_PATTERN_ID       REMOVE
  2. Negative-list suppression  NEGATIVE_LIST_VIOLATION     REMOVE
                                CERTIFICATION_FALSE_POSITIVE REMOVE
  3. Disclaimer enforcement     DISCLAIMER_NOT_APPLIED      DOWNGRADE
  4. Missed-violation supplement GEMINI_MISSED              ADD
  5. Confidence correction      CONFIDENCE_ADJUSTED         ADJUST
  6. Duplicate collapse         DUPLICATE_VIOLATION         REMOVE

Each pass is a pure function: (candidates, ...) -> (new candidates, issues).
No network or storage access happens here.
"""

from __future__ import annotations

import re
import time
from dataclasses import replace
from functools import lru_cache
from typing import Iterable, Optional, Sequence

from medcheck.catalog import (
    NEGATIVE_LIST_CLAIM_WORDS,
    RuleCatalog,
    catalog as default_catalog,
    normalize_term,
)
from medcheck.config import settings
from medcheck.grading import calculate_grade
from medcheck.logging import get_logger
from medcheck.matcher import RuleMatcher
from medcheck.models import (
    AuditIssue,
    AuditResult,
    GrayZone,
    IssueAction,
    IssueType,
    MandatoryItems,
    Severity,
    Source,
    ViolationCandidate,
    generate_audit_id,
)

logger = get_logger("auditor")

PassResult = tuple[list[ViolationCandidate], list[AuditIssue]]

SUPPLEMENT_MIN_CONFIDENCE = 0.7
SUPPLEMENT_CONFIDENCE = {Severity.CRITICAL: 0.95, Severity.MAJOR: 0.85}

# (severity, below this, raise to)
CONFIDENCE_FLOORS: tuple[tuple[Severity, float, float], ...] = (
    (Severity.CRITICAL, 0.7, 0.85),
    (Severity.MAJOR, 0.5, 0.70),
)


# ============================================================
# PASSES
# ============================================================

def validate_identifiers(
    candidates: Sequence[ViolationCandidate],
    rule_catalog: RuleCatalog,
) -> PassResult:
    """Pass 1: drop candidates whose pattern ID is not in the catalog."""
    kept: list[ViolationCandidate] = []
    issues: list[AuditIssue] = []
    for c in candidates:
        if rule_catalog.has(c.pattern_id):
            kept.append(c)
            continue
        issues.append(AuditIssue(
            type=IssueType.FABRICATED_PATTERN_ID,
            action=IssueAction.REMOVE,
            detail=f"Pattern ID '{c.pattern_id}' does not exist in the catalog",
            pattern_id=c.pattern_id,
            original_text=c.original_text,
        ))
    return kept, issues


@lru_cache(maxsize=None)
def _term_regex(term: str) -> re.Pattern:
    # Whitespace may split a normalized term; neighbors must not be letters or digits.
    body = r"\s*".join(re.escape(ch) for ch in term)
    return re.compile(rf"(?<![a-z0-9]){body}(?![a-z0-9])")


_CLAIM_WORD_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(w) for w in NEGATIVE_LIST_CLAIM_WORDS) + r")\b"
)


def negative_list_term(
    text: str,
    negative_terms: Iterable[str],
    slack: int = 5,
) -> Optional[str]:
    """
    The negative-list term this text is, if any.

    A text counts as the term when, after normalization, it is at most
    `slack` characters longer than the term, contains it as a whole word,
    and the leftover words make no claim ("Botox shot" is the product,
    "Free Botox" is an inducement). Short terms never match inside other
    words, so "Perfect" is not RF.
    """
    normalized = normalize_term(text)
    if not normalized:
        return None
    lowered = text.lower()
    for term in negative_terms:
        if len(normalized) > len(term) + slack:
            continue
        match = _term_regex(term).search(lowered)
        if match is None:
            continue
        if _CLAIM_WORD_RE.search(lowered[:match.start()] + " " + lowered[match.end():]):
            continue
        return term
    return None


def is_official_certification(
    candidate: ViolationCandidate,
    rule_catalog: RuleCatalog,
) -> bool:
    """Matched text names a certification AND a regulator appears nearby."""
    if not rule_catalog.has_certification_word(candidate.original_text):
        return False
    return rule_catalog.names_regulator(f"{candidate.original_text} {candidate.context}")


def suppress_negative_list(
    candidates: Sequence[ViolationCandidate],
    rule_catalog: RuleCatalog,
    slack: int = 5,
) -> PassResult:
    """Pass 2: drop product names, specialty names and factual certifications."""
    kept: list[ViolationCandidate] = []
    issues: list[AuditIssue] = []
    terms = rule_catalog.negative_terms

    for c in candidates:
        term = negative_list_term(c.original_text, terms, slack)
        if term is not None:
            issues.append(AuditIssue(
                type=IssueType.NEGATIVE_LIST_VIOLATION,
                action=IssueAction.REMOVE,
                detail=f"'{c.original_text}' is a negative-list term ('{term}'), not a violation",
                pattern_id=c.pattern_id,
                original_text=c.original_text,
            ))
            continue

        if is_official_certification(c, rule_catalog):
            issues.append(AuditIssue(
                type=IssueType.CERTIFICATION_FALSE_POSITIVE,
                action=IssueAction.REMOVE,
                detail=f"'{c.original_text}' states an official certification",
                pattern_id=c.pattern_id,
                original_text=c.original_text,
            ))
            continue

        kept.append(c)
    return kept, issues


def enforce_disclaimers(
    candidates: Sequence[ViolationCandidate],
    source_text: str,
    rule_catalog: RuleCatalog,
) -> PassResult:
    """
    Pass 3: a printed disclaimer lowers every non-absolute candidate one step.

    Already-downgraded candidates are left alone so the downgrade is
    applied at most once.
    """
    rule = rule_catalog.find_disclaimer(source_text)
    if rule is None:
        return list(candidates), []

    out: list[ViolationCandidate] = []
    issues: list[AuditIssue] = []
    for c in candidates:
        if rule_catalog.is_absolute(c.pattern_id) or c.is_downgraded:
            out.append(c)
            continue

        downgraded = c.severity.downgrade()
        out.append(replace(c, adjusted_severity=downgraded, disclaimer_present=True))
        if downgraded != c.severity:
            issues.append(AuditIssue(
                type=IssueType.DISCLAIMER_NOT_APPLIED,
                action=IssueAction.DOWNGRADE,
                detail=(
                    f"Disclaimer '{rule.phrase}' present: severity "
                    f"{c.severity.value} -> {downgraded.value}"
                ),
                pattern_id=c.pattern_id,
                original_text=c.original_text,
                before=c.severity.value,
                after=downgraded.value,
            ))
    return out, issues


def supplement_missed(
    candidates: Sequence[ViolationCandidate],
    source_text: str,
    matcher: RuleMatcher,
    slack: int = 5,
) -> PassResult:
    """
    Pass 4: add critical/major rule matches whose pattern the Proposer never reported.

    Matches that are themselves negative-list terms are not added.
    """
    out = list(candidates)
    issues: list[AuditIssue] = []
    reported = {c.pattern_id for c in candidates}

    matches = matcher.match(
        source_text,
        min_severity=Severity.MAJOR,
        min_confidence=SUPPLEMENT_MIN_CONFIDENCE,
    )
    for m in matches:
        if m.pattern_id in reported:
            continue
        if negative_list_term(m.matched_text, matcher.catalog.negative_terms, slack) is not None:
            continue
        confidence = SUPPLEMENT_CONFIDENCE.get(m.severity)
        if confidence is None:
            continue
        out.append(ViolationCandidate(
            pattern_id=m.pattern_id,
            category=m.category,
            severity=m.severity,
            original_text=m.matched_text,
            context=m.context,
            confidence=confidence,
            reasoning="Detected by the rule engine; not reported by the proposer",
            disclaimer_present=m.disclaimer_detected,
            adjusted_severity=m.severity,
            source=Source.RULE_ENGINE_SUPPLEMENT,
            description=m.description,
        ))
        issues.append(AuditIssue(
            type=IssueType.GEMINI_MISSED,
            action=IssueAction.ADD,
            detail=f"Rule engine found {m.severity.value} '{m.matched_text}' missed by the proposer",
            pattern_id=m.pattern_id,
            original_text=m.matched_text,
            after=str(confidence),
        ))
    return out, issues


def correct_confidence(candidates: Sequence[ViolationCandidate]) -> PassResult:
    """Pass 5: raise implausibly low confidences for severe findings. Never lowers."""
    out: list[ViolationCandidate] = []
    issues: list[AuditIssue] = []
    for c in candidates:
        corrected = c
        for severity, floor, raised in CONFIDENCE_FLOORS:
            if c.severity == severity and c.confidence < floor:
                corrected = replace(c, confidence=raised)
                issues.append(AuditIssue(
                    type=IssueType.CONFIDENCE_ADJUSTED,
                    action=IssueAction.ADJUST,
                    detail=(
                        f"{severity.value} finding with confidence {c.confidence:.2f} "
                        f"raised to {raised:.2f}"
                    ),
                    pattern_id=c.pattern_id,
                    original_text=c.original_text,
                    before=str(c.confidence),
                    after=str(raised),
                ))
                break
        out.append(corrected)
    return out, issues


def collapse_duplicates(candidates: Sequence[ViolationCandidate]) -> PassResult:
    """Pass 6: one survivor per (pattern ID, trimmed text), the most confident."""
    best: dict[tuple[str, str], ViolationCandidate] = {}
    order: list[tuple[str, str]] = []
    issues: list[AuditIssue] = []

    for c in candidates:
        key = c.dedupe_key()
        current = best.get(key)
        if current is None:
            best[key] = c
            order.append(key)
            continue
        survivor, dropped = (c, current) if c.confidence > current.confidence else (current, c)
        best[key] = survivor
        issues.append(AuditIssue(
            type=IssueType.DUPLICATE_VIOLATION,
            action=IssueAction.REMOVE,
            detail=(
                f"Duplicate of {key[0]} '{key[1]}' (confidence {dropped.confidence:.2f} "
                f"dropped, {survivor.confidence:.2f} kept)"
            ),
            pattern_id=c.pattern_id,
            original_text=dropped.original_text,
        ))

    return [best[k] for k in order], issues


# ============================================================
# ENGINE
# ============================================================

class ConsensusAuditor:
    """Runs the six passes in order and grades the survivors."""

    def __init__(
        self,
        rule_catalog: Optional[RuleCatalog] = None,
        matcher: Optional[RuleMatcher] = None,
        negative_list_slack: Optional[int] = None,
    ):
        self.catalog = rule_catalog or default_catalog
        self.matcher = matcher or RuleMatcher(self.catalog)
        self.negative_list_slack = (
            settings.NEGATIVE_LIST_SLACK if negative_list_slack is None else negative_list_slack
        )

    def audit(
        self,
        candidates: Sequence[ViolationCandidate],
        source_text: str,
        gray_zones: Iterable[GrayZone] = (),
        mandatory_items: Optional[MandatoryItems] = None,
        audit_id: Optional[str] = None,
    ) -> AuditResult:
        """
        Audit Proposer candidates against the source text.

        Args:
            candidates: Proposer output, untrusted.
            source_text: The advertisement text the candidates refer to.
            gray_zones: Evasion reports, passed through to the result.
            mandatory_items: Disclosure checklist, passed through.
            audit_id: Explicit ID; generated when omitted.

        Returns:
            An immutable AuditResult.
        """
        start = time.monotonic()
        original_count = len(candidates)
        issues: list[AuditIssue] = []

        current, found = validate_identifiers(candidates, self.catalog)
        issues.extend(found)
        current, found = suppress_negative_list(current, self.catalog, self.negative_list_slack)
        issues.extend(found)
        current, found = enforce_disclaimers(current, source_text, self.catalog)
        issues.extend(found)
        current, found = supplement_missed(
            current, source_text, self.matcher, self.negative_list_slack,
        )
        issues.extend(found)
        current, found = correct_confidence(current)
        issues.extend(found)
        current, found = collapse_duplicates(current)
        issues.extend(found)

        grade = calculate_grade(current)
        result = AuditResult(
            id=audit_id or generate_audit_id(),
            final_violations=tuple(current),
            grade=grade,
            audit_issues=tuple(issues),
            proposer_original_count=original_count,
            final_count=len(current),
            gray_zones=tuple(gray_zones),
            mandatory_items=mandatory_items or MandatoryItems(),
        )

        for issue in issues:
            logger.debug(
                issue.detail,
                extra={"analysis_id": result.id, "issue_type": issue.type.value,
                       "pattern_id": issue.pattern_id},
            )
        logger.info(
            "Audit complete",
            extra={
                "analysis_id": result.id,
                "original_count": original_count,
                "final_count": result.final_count,
                "issue_count": len(issues),
                "grade": grade.grade,
                "clean_score": grade.clean_score,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
            },
        )
        return result


def audit(candidates: Sequence[ViolationCandidate], source_text: str) -> AuditResult:
    """Audit with the default catalog and matcher."""
    return ConsensusAuditor().audit(candidates, source_text)
