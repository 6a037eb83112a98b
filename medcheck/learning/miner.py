"""
Learning Miner — Feedback → Candidate Rules

Mines the feedback log for four kinds of learning:

  1. Exception candidates   false positives of one pattern that share a
                            common context (keywords, negation, disclaimer)
  2. Pattern candidates     false negatives that keep naming the same
                            missed text or suggested pattern
  3. Confidence adjustments pattern confidence drifted toward observed accuracy
  4. Mapping rules          approved procedure-name mappings generalized
                            into wildcard rules

Nothing mined here changes detection by itself. Exception candidates go
through review in ExceptionCandidateStore; every other result is a
pending entry in the learning log, judged by the auto-apply gate.

Exception mining is a replay: a group's false positives are folded in
oldest first, one event at a time. Streaming (observe) and batch
(mine_exception_candidates) therefore reach the same candidate state,
and re-running either adds nothing.
"""

from __future__ import annotations

import difflib
import hashlib
import re
import string
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from medcheck.catalog import RuleCatalog, catalog as default_catalog
from medcheck.config import LearningSettings
from medcheck.feedback import FeedbackEvent, FeedbackLog, SettingsStore, Verdict
from medcheck.learning.auto_apply import AutoLearningLogStore, LearningType
from medcheck.learning.candidates import ExceptionCandidateStore, UpsertOutcome
from medcheck.logging import get_logger
from medcheck.matcher import (
    DISCLAIMER_CONTEXT,
    NEGATION_CONTEXT,
    has_disclaimer_marker,
    has_negation,
)

logger = get_logger("learning.miner")

MIN_GROUP_SIZE = 3
COMMON_TOKEN_RATIO = 0.7
MAX_COMMON_TOKENS = 3
MAX_CONTEXT_SAMPLES = 50

MIN_PATTERN_OCCURRENCES = 3
MAX_PATTERN_CANDIDATES = 20

MIN_ADJUSTMENT_SAMPLES = 10
ADJUSTMENT_KEEP_WEIGHT = 0.7
MIN_ADJUSTMENT_DELTA = 0.05

MAPPING_SIMILARITY = 0.7

STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "of", "to", "in", "on", "at", "by",
    "for", "with", "from", "as", "is", "are", "was", "were", "be", "been",
    "it", "its", "this", "that", "these", "those", "our", "your", "we",
    "you", "they", "their", "can", "will", "may", "if", "so", "than", "then",
    "into", "about", "more", "most", "all", "any", "each", "per",
})

_TRIM_CHARS = string.punctuation + "“”‘’«»…·"
_WORD_RE = re.compile(r"\w{2,}")


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class PatternCandidate:
    suggested_pattern: str
    pattern_type: str  # "keyword" | "regex"
    sample_texts: tuple[str, ...]
    source_count: int
    confidence: float


@dataclass(frozen=True)
class ConfidenceAdjustment:
    pattern_id: str
    previous_confidence: float
    new_confidence: float
    accuracy: float
    source_feedback_count: int
    reason: str


@dataclass(frozen=True)
class MappingApproval:
    """One reviewer-approved mapping of a raw procedure name to a known alias."""
    raw_name: str
    normalized_name: str
    procedure_id: str
    mapped_alias: str


@dataclass(frozen=True)
class MappingRule:
    raw_pattern: str
    normalized_pattern: str
    procedure_id: str
    pattern_type: str  # exact | prefix | suffix | contains | synonym
    confidence: float
    approval_count: int


@dataclass
class MiningResult:
    groups_examined: int = 0
    candidates_created: int = 0
    candidates_updated: int = 0
    candidates_promoted: int = 0
    outcomes: list[UpsertOutcome] = field(default_factory=list)

    def absorb(self, outcome: Optional[UpsertOutcome]) -> None:
        if outcome is None or not outcome.changed:
            return
        self.outcomes.append(outcome)
        if outcome.created:
            self.candidates_created += 1
        else:
            self.candidates_updated += 1
        if outcome.promoted:
            self.candidates_promoted += 1


# ============================================================
# TEXT HEURISTICS
# ============================================================

def tokenize(text: str) -> list[str]:
    """Lowercased, punctuation-trimmed tokens of length ≥ 2, stopwords removed."""
    tokens = []
    for raw in text.lower().split():
        token = raw.strip(_TRIM_CHARS)
        if len(token) >= 2 and token not in STOPWORDS:
            tokens.append(token)
    return tokens


def extract_common_context(texts: Sequence[str]) -> Optional[str]:
    """
    The context shared by most of the texts, or None.

    In order:
      - up to three tokens present in ≥70% of texts, most frequent chosen,
        joined in alphabetical order so the same evidence in any order
        yields the same context
      - NEGATION_CONTEXT when ≥70% of texts are negated
      - DISCLAIMER_CONTEXT when ≥70% carry a disclaimer / footnote marker
    """
    if len(texts) < MIN_GROUP_SIZE:
        return None

    threshold = len(texts) * COMMON_TOKEN_RATIO
    counts: Counter = Counter()
    for text in texts:
        counts.update(set(tokenize(text)))

    common = sorted(
        (t for t, n in counts.items() if n >= threshold),
        key=lambda t: (-counts[t], t),
    )
    if common:
        return " ".join(sorted(common[:MAX_COMMON_TOKENS]))

    if sum(1 for t in texts if has_negation(t)) >= threshold:
        return NEGATION_CONTEXT
    if sum(1 for t in texts if has_disclaimer_marker(t)) >= threshold:
        return DISCLAIMER_CONTEXT
    return None


def longest_token(text: str) -> Optional[str]:
    words = _WORD_RE.findall(text or "")
    if not words:
        return None
    return max(words, key=len)


def mapping_pattern_type(raw_name: str, mapped_name: str) -> Optional[str]:
    raw = re.sub(r"\s+", "", raw_name.lower())
    mapped = re.sub(r"\s+", "", mapped_name.lower())
    if not raw or not mapped:
        return None
    if raw == mapped:
        return "exact"
    if raw.startswith(mapped):
        return "prefix"
    if raw.endswith(mapped):
        return "suffix"
    if mapped in raw or raw in mapped:
        return "contains"
    if difflib.SequenceMatcher(None, raw, mapped).ratio() > MAPPING_SIMILARITY:
        return "synonym"
    return None


def mapping_pattern(raw_name: str, mapped_name: str, pattern_type: str) -> str:
    raw = re.sub(r"\s+", "", raw_name.lower())
    mapped = re.sub(r"\s+", "", mapped_name.lower())
    if pattern_type == "prefix":
        return f"{mapped}*"
    if pattern_type == "suffix":
        return f"*{mapped}"
    if pattern_type == "contains":
        return f"*{raw}*"
    return raw


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:12]


# ============================================================
# MINER
# ============================================================

class LearningMiner:
    """Runs the four mining passes over the feedback log."""

    def __init__(
        self,
        feedback_log: FeedbackLog,
        candidates: ExceptionCandidateStore,
        learning_log: AutoLearningLogStore,
        settings_store: Optional[SettingsStore] = None,
        rule_catalog: Optional[RuleCatalog] = None,
    ):
        self.feedback = feedback_log
        self.candidates = candidates
        self.learning_log = learning_log
        self.settings_store = settings_store
        self.catalog = rule_catalog or default_catalog

    def _settings(self) -> LearningSettings:
        return self.settings_store.load() if self.settings_store else LearningSettings()

    # --- 1. Exception candidates ---

    def _false_positive_groups(
        self,
        pattern_id: Optional[str] = None,
    ) -> dict[tuple[str, Optional[str]], list[FeedbackEvent]]:
        groups: dict[tuple[str, Optional[str]], list[FeedbackEvent]] = {}
        for e in self.feedback.events(pattern_id=pattern_id, verdict=Verdict.FALSE_POSITIVE):
            if not e.sample_text:
                continue
            groups.setdefault((e.pattern_id, e.context_type), []).append(e)
        return groups

    def _fold(
        self,
        pattern_id: str,
        context_type: Optional[str],
        events: Sequence[FeedbackEvent],
        settings: LearningSettings,
    ) -> Optional[UpsertOutcome]:
        """Fold one prefix of a group (oldest first) into the candidate store."""
        if len(events) < MIN_GROUP_SIZE:
            return None
        window = list(events)[-MAX_CONTEXT_SAMPLES:]
        exception_pattern = extract_common_context([e.sample_text for e in window])
        if exception_pattern is None:
            return None

        newest_first = list(reversed(window))
        outcome = self.candidates.upsert(
            pattern_id=pattern_id,
            exception_pattern=exception_pattern,
            feedback_ids=[e.id for e in window],
            sample_texts=[e.sample_text for e in newest_first],
            settings=settings,
            context_type=context_type,
        )
        if outcome.created:
            c = outcome.candidate
            self.learning_log.record(
                learning_type=LearningType.EXCEPTION_GENERATED,
                target_type="exception_candidate",
                target_id=c.id,
                input_data={
                    "pattern_id": pattern_id,
                    "context_type": context_type,
                    "sample_count": len(window),
                },
                output_data={
                    "exception_pattern": c.exception_pattern,
                    "exception_type": c.exception_type.value,
                },
                confidence_score=c.confidence,
                source_feedback_count=c.occurrence_count,
                settings=settings,
            )
        return outcome

    def observe(self, event: FeedbackEvent) -> Optional[UpsertOutcome]:
        """
        Streaming path: record one event and fold its group up to it.

        Non-false-positive events are recorded and otherwise ignored here.
        """
        self.feedback.record(event)
        if event.verdict != Verdict.FALSE_POSITIVE or not event.sample_text:
            return None

        group = self._false_positive_groups(event.pattern_id).get(
            (event.pattern_id, event.context_type), [],
        )
        ids = [e.id for e in group]
        if event.id not in ids:
            return None
        prefix = group[:ids.index(event.id) + 1]
        return self._fold(event.pattern_id, event.context_type, prefix, self._settings())

    def mine_exception_candidates(self, pattern_id: Optional[str] = None) -> MiningResult:
        """Batch path: replay every false-positive group, oldest event first."""
        settings = self._settings()
        result = MiningResult()
        for (pid, context_type), events in sorted(
            self._false_positive_groups(pattern_id).items(),
            key=lambda item: (item[0][0], item[0][1] or ""),
        ):
            result.groups_examined += 1
            for end in range(MIN_GROUP_SIZE, len(events) + 1):
                result.absorb(self._fold(pid, context_type, events[:end], settings))

        logger.info(
            "Exception mining: %d created, %d updated, %d ready for review",
            result.candidates_created, result.candidates_updated, result.candidates_promoted,
        )
        return result

    # --- 2. Pattern candidates ---

    def extract_pattern_candidates(self) -> list[PatternCandidate]:
        """False negatives naming the same suggestion or missed text ≥3 times."""
        settings = self._settings()
        groups: dict[str, list[FeedbackEvent]] = {}
        for e in self.feedback.events(verdict=Verdict.FALSE_NEGATIVE):
            key = e.suggested_pattern or e.sample_text
            if key:
                groups.setdefault(key, []).append(e)

        ranked = sorted(
            (item for item in groups.items() if len(item[1]) >= MIN_PATTERN_OCCURRENCES),
            key=lambda item: (-len(item[1]), item[0]),
        )[:MAX_PATTERN_CANDIDATES]

        candidates = []
        for key, events in ranked:
            suggested = events[0].suggested_pattern
            pattern = suggested or longest_token(events[0].sample_text or "")
            if not pattern:
                continue
            count = len(events)
            confidence = round(min(0.8, 0.4 + count * 0.1), 4)
            samples = tuple(dict.fromkeys(e.sample_text for e in events if e.sample_text))[:5]
            candidate = PatternCandidate(
                suggested_pattern=pattern,
                pattern_type="regex" if "\\" in pattern else "keyword",
                sample_texts=samples,
                source_count=count,
                confidence=confidence,
            )
            candidates.append(candidate)

            self.learning_log.record(
                learning_type=LearningType.PATTERN_SUGGESTED,
                target_type="pattern",
                target_id=f"NEW-{_short_hash(pattern)}",
                input_data={
                    "missed_texts": list(samples),
                    "pattern_ids": sorted({e.pattern_id for e in events}),
                },
                output_data={
                    "suggested_pattern": pattern,
                    "pattern_type": candidate.pattern_type,
                    "confidence": confidence,
                },
                confidence_score=confidence,
                source_feedback_count=count,
                settings=settings,
            )
        return candidates

    # --- 3. Confidence adjustment ---

    def adjust_pattern_confidence(self, pattern_id: str) -> Optional[ConfidenceAdjustment]:
        """
        Move a pattern's confidence 30% of the way toward its observed accuracy.

        Needs ≥10 TP+FP samples; changes under 0.05 are skipped.
        """
        events = self.feedback.events(pattern_id=pattern_id)
        tp = sum(1 for e in events if e.verdict == Verdict.TRUE_POSITIVE)
        fp = sum(1 for e in events if e.verdict == Verdict.FALSE_POSITIVE)
        total = tp + fp
        if total < MIN_ADJUSTMENT_SAMPLES:
            return None

        accuracy = tp / total
        pattern = self.catalog.get(pattern_id)
        default = pattern.default_confidence if pattern else 1.0
        previous = self.learning_log.current_confidence(pattern_id, default)
        new = round(previous * ADJUSTMENT_KEEP_WEIGHT + accuracy * (1 - ADJUSTMENT_KEEP_WEIGHT), 4)
        if abs(new - previous) < MIN_ADJUSTMENT_DELTA:
            return None

        direction = "lowered" if new < previous else "raised"
        adjustment = ConfidenceAdjustment(
            pattern_id=pattern_id,
            previous_confidence=previous,
            new_confidence=new,
            accuracy=round(accuracy, 4),
            source_feedback_count=total,
            reason=f"{direction} for observed accuracy {accuracy * 100:.1f}%",
        )
        self.learning_log.record(
            learning_type=LearningType.CONFIDENCE_ADJUSTED,
            target_type="pattern",
            target_id=pattern_id,
            input_data={
                "previous_confidence": previous,
                "accuracy": adjustment.accuracy,
                "feedback_count": total,
            },
            output_data={"new_confidence": new},
            confidence_score=adjustment.accuracy,
            source_feedback_count=total,
            settings=self._settings(),
        )
        return adjustment

    def adjust_all_confidences(self) -> list[ConfidenceAdjustment]:
        adjustments = []
        for pattern_id in self.feedback.pattern_ids():
            adjustment = self.adjust_pattern_confidence(pattern_id)
            if adjustment is not None:
                adjustments.append(adjustment)
        return adjustments

    # --- 4. Mapping rules ---

    def learn_mapping_rules(self, approvals: Iterable[MappingApproval]) -> list[MappingRule]:
        """Generalize approved name mappings into wildcard rules."""
        settings = self._settings()
        approvals = list(approvals)
        per_procedure = Counter(a.procedure_id for a in approvals)
        seen: set[tuple[str, str]] = set()
        rules = []

        for a in approvals:
            pattern_type = mapping_pattern_type(a.raw_name, a.mapped_alias)
            if pattern_type is None or (pattern_type, a.normalized_name) in seen:
                continue
            seen.add((pattern_type, a.normalized_name))

            approval_count = per_procedure[a.procedure_id]
            rule = MappingRule(
                raw_pattern=mapping_pattern(a.raw_name, a.mapped_alias, pattern_type),
                normalized_pattern=a.normalized_name,
                procedure_id=a.procedure_id,
                pattern_type=pattern_type,
                confidence=round(min(0.9, 0.6 + approval_count * 0.05), 4),
                approval_count=approval_count,
            )
            rules.append(rule)

            self.learning_log.record(
                learning_type=LearningType.MAPPING_LEARNED,
                target_type="mapping",
                target_id=f"MAP-{a.procedure_id}-{_short_hash(rule.raw_pattern)}",
                input_data={"raw_name": a.raw_name, "mapped_alias": a.mapped_alias},
                output_data={
                    "raw_pattern": rule.raw_pattern,
                    "normalized_pattern": rule.normalized_pattern,
                    "procedure_id": rule.procedure_id,
                    "pattern_type": rule.pattern_type,
                },
                confidence_score=rule.confidence,
                source_feedback_count=approval_count,
                settings=settings,
            )
        return rules

    # --- All ---

    def run(self) -> dict:
        """One full mining cycle (mappings excluded, they need explicit approvals)."""
        expired = self.learning_log.expire_stale(self._settings())
        exceptions = self.mine_exception_candidates()
        patterns = self.extract_pattern_candidates()
        adjustments = self.adjust_all_confidences()
        return {
            "expired": expired,
            "exception_candidates": {
                "groups_examined": exceptions.groups_examined,
                "created": exceptions.candidates_created,
                "updated": exceptions.candidates_updated,
                "ready_for_review": exceptions.candidates_promoted,
            },
            "pattern_candidates": [
                {
                    "suggested_pattern": p.suggested_pattern,
                    "pattern_type": p.pattern_type,
                    "source_count": p.source_count,
                    "confidence": p.confidence,
                }
                for p in patterns
            ],
            "confidence_adjustments": [
                {
                    "pattern_id": a.pattern_id,
                    "previous_confidence": a.previous_confidence,
                    "new_confidence": a.new_confidence,
                    "reason": a.reason,
                }
                for a in adjustments
            ],
        }
