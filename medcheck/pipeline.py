"""
Analysis Pipeline — Local and Full Modes

Two entry points:
    analyze_local() — Deterministic rule matching only. Fast, free,
                      reproducible. No LLM required.
    analyze_full()  — Proposer + consensus audit + optional performance
                      scaling + post-processing, with best-effort
                      archival and gray-zone collection.

The auditor is never run on a missing proposal: Proposer failures
propagate to the caller, who decides whether to fall back to local mode.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Sequence

from medcheck.archive import AuditArchive
from medcheck.auditor import ConsensusAuditor, suppress_negative_list
from medcheck.catalog import CATALOG_VERSION, RuleCatalog, catalog as default_catalog
from medcheck.config import settings
from medcheck.exceptions import PersistenceFailure
from medcheck.grading import calculate_grade
from medcheck.gray_zone import GrayZoneCollector
from medcheck.llm import ImagePart, LLMProvider
from medcheck.logging import get_logger
from medcheck.matcher import RuleMatch, RuleMatcher
from medcheck.models import AuditResult, Source, ViolationCandidate, generate_audit_id
from medcheck.performance import PerformanceTracker
from medcheck.postprocess import postprocess
from medcheck.proposer import ViolationProposer

logger = get_logger("pipeline")


@dataclass(frozen=True)
class AnalysisReport:
    mode: str
    result: AuditResult
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"mode": self.mode, **self.result.to_dict(), "meta": dict(self.meta)}


def match_to_candidate(match: RuleMatch) -> ViolationCandidate:
    """A rule-engine match as a local-mode violation."""
    return ViolationCandidate(
        pattern_id=match.pattern_id,
        category=match.category,
        severity=match.severity,
        original_text=match.matched_text,
        context=match.context,
        confidence=match.confidence,
        reasoning="Matched by rule engine",
        disclaimer_present=match.disclaimer_detected,
        source=Source.RULE_ENGINE,
        description=match.description,
    )


def without_suppressed(
    violations: Sequence[ViolationCandidate],
    suppressed: frozenset[str],
) -> tuple[list[ViolationCandidate], list[str]]:
    """Drop reviewer-suppressed patterns; returns (kept, dropped pattern IDs)."""
    kept = [v for v in violations if v.pattern_id not in suppressed]
    dropped = sorted({v.pattern_id for v in violations if v.pattern_id in suppressed})
    return kept, dropped


# ============================================================
# LOCAL MODE
# ============================================================

def analyze_local(
    text: str,
    subject_name: Optional[str] = None,
    matcher: Optional[RuleMatcher] = None,
    tracker: Optional[PerformanceTracker] = None,
) -> AnalysisReport:
    """
    Rule-engine-only analysis.

    Matches naming a negative-list term (a device, drug, specialty or
    official certification) are removed, exactly as the auditor would.

    Args:
        text: The advertisement text.
        subject_name: Registered clinic name, filtered out of matches.
        matcher: Matcher to use; pass one carrying learned exceptions.
        tracker: When given, suppressed patterns are dropped and the
            rest lose their false-positive penalty from confidence.

    Returns:
        AnalysisReport with mode "local".
    """
    start = time.monotonic()
    matcher = matcher or RuleMatcher()
    matched = [match_to_candidate(m) for m in matcher.match(text)]
    candidates, issues = suppress_negative_list(
        matched, matcher.catalog, settings.NEGATIVE_LIST_SLACK,
    )
    meta: dict[str, Any] = {"catalog_version": CATALOG_VERSION, "rule_matches": len(matched)}

    if tracker is not None:
        overrides = tracker.get_active_overrides()
        candidates, dropped = without_suppressed(candidates, overrides.suppressed)
        candidates = tracker.apply_fp_penalties(candidates, overrides)
        if dropped:
            meta["suppressed_patterns"] = dropped

    result = AuditResult(
        id=generate_audit_id(),
        final_violations=tuple(candidates),
        grade=calculate_grade(candidates),
        audit_issues=tuple(issues),
        proposer_original_count=len(matched),
        final_count=len(candidates),
    )
    result = postprocess(result, subject_name)

    duration_ms = round((time.monotonic() - start) * 1000, 2)
    logger.info(
        "Local analysis complete",
        extra={
            "analysis_id": result.id,
            "mode": "local",
            "final_count": result.final_count,
            "grade": result.grade.grade,
            "clean_score": result.grade.clean_score,
            "duration_ms": duration_ms,
        },
    )
    meta["duration_ms"] = duration_ms
    return AnalysisReport(mode="local", result=result, meta=meta)


# ============================================================
# FULL MODE
# ============================================================

async def analyze_full(
    text: str,
    llm: LLMProvider,
    images: Optional[Sequence[ImagePart]] = None,
    subject_name: Optional[str] = None,
    tracker: Optional[PerformanceTracker] = None,
    context_type: Optional[str] = None,
    department: Optional[str] = None,
    archive: Optional[AuditArchive] = None,
    gray_zone_collector: Optional[GrayZoneCollector] = None,
    matcher: Optional[RuleMatcher] = None,
    rule_catalog: Optional[RuleCatalog] = None,
) -> AnalysisReport:
    """
    Proposer-backed analysis audited against the rule catalog.

    Args:
        text: The advertisement text.
        llm: Provider the Proposer calls.
        images: Optional image parts sent with the text.
        subject_name: Registered clinic name, filtered out of matches.
        tracker: When given, confidences are scaled by pattern performance,
            suppressed patterns are dropped and patterns with frequent
            false positives are listed in the Proposer prompt.
        context_type: Context used for the tracker's context modifier.
        department: Department used for the tracker's department modifier.
        archive: When given, the result is archived (best effort).
        gray_zone_collector: When given, supplies prompt examples and
            collects the result's gray zones (best effort).
        matcher: Matcher for the supplement pass.
        rule_catalog: Catalog override.

    Raises:
        ProposerTimeout, MalformedProposerOutput, ProposerError: the
        Proposer produced no usable output.
    """
    start = time.monotonic()
    rule_catalog = rule_catalog or default_catalog
    meta: dict[str, Any] = {"catalog_version": CATALOG_VERSION}

    overrides = None
    cautions = None
    if tracker is not None:
        overrides = tracker.get_active_overrides()
        cautions = tracker.high_false_positive_patterns()

    examples = None
    if gray_zone_collector is not None:
        try:
            examples = gray_zone_collector.get_prompt_examples()
        except PersistenceFailure as e:
            logger.warning(
                "Gray zone examples unavailable, using defaults: %s", e.message,
                extra={"error_type": e.code},
            )

    proposer = ViolationProposer(llm, rule_catalog)
    output = await proposer.propose(
        text, images=images, gray_zone_examples=examples, false_positive_cautions=cautions,
    )

    auditor = ConsensusAuditor(rule_catalog, matcher)
    result = auditor.audit(
        output.candidates(),
        text,
        gray_zones=output.gray_zone_list(),
        mandatory_items=output.mandatory_items.to_items(),
    )

    if tracker is not None:
        kept, dropped = without_suppressed(result.final_violations, overrides.suppressed)
        scaled = tracker.apply_modifiers(kept, context_type, department)
        result = replace(
            result,
            final_violations=tuple(scaled),
            final_count=len(scaled),
            grade=calculate_grade(scaled),
        )
        meta["modifiers_applied"] = True
        if dropped:
            meta["suppressed_patterns"] = dropped

    result = postprocess(result, subject_name)

    if archive is not None:
        try:
            meta["archive_hash"] = archive.archive_result(result, mode="full")
        except PersistenceFailure as e:
            logger.error(
                "Archive write failed: %s", e.message,
                extra={"analysis_id": result.id, "error_type": e.code},
            )

    if gray_zone_collector is not None and result.gray_zones:
        try:
            meta["gray_zones"] = gray_zone_collector.collect(result.gray_zones, result.id)
        except PersistenceFailure as e:
            logger.error(
                "Gray zone collection failed: %s", e.message,
                extra={"analysis_id": result.id, "error_type": e.code},
            )

    duration_ms = round((time.monotonic() - start) * 1000, 2)
    meta.update({
        "summary": output.summary,
        "missing_mandatory_items": result.mandatory_items.missing(),
        "duration_ms": duration_ms,
    })
    logger.info(
        "Full analysis complete",
        extra={
            "analysis_id": result.id,
            "mode": "full",
            "original_count": result.proposer_original_count,
            "final_count": result.final_count,
            "grade": result.grade.grade,
            "clean_score": result.grade.clean_score,
            "duration_ms": duration_ms,
        },
    )
    return AnalysisReport(mode="full", result=result, meta=meta)
