"""
Performance Tracker — Feedback-Derived Pattern Statistics

Turns the append-only feedback log into per-pattern accuracy figures
and the confidence modifiers applied at analysis time.

Three views, all recomputed from the log for a trailing window:
  - pattern:     TP / FP / FN, accuracy (= precision), recall, F1, flag
  - context:     same counts per (pattern, context type)
  - department:  same counts per (pattern, department)

Every view is derived data. Aggregation overwrites rows with upserts and
can be re-run from scratch at any time. A failure while aggregating one
pattern is recorded and the run continues with the next pattern.

Modifiers are only trusted once a view has enough samples; below the
minimum the modifier is 1.0 (no effect).

Reviewer overrides are not derived: a pattern set to "suppress" is
dropped from every analysis until it is set back to "normal". The
false-positive rate (FP over all feedback) lowers rule-engine confidence
and lists the worst patterns in the Proposer prompt.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

from medcheck.catalog import DEPARTMENT_NAMES
from medcheck.config import LearningSettings
from medcheck.exceptions import AggregationFailure
from medcheck.feedback import FeedbackEvent, FeedbackLog, SettingsStore, Verdict
from medcheck.logging import get_logger
from medcheck.models import ViolationCandidate

logger = get_logger("performance")

CONTEXT_TYPES = ("negation", "question", "quotation", "disclaimer", "comparison", "normal")
DEFAULT_CONTEXT_TYPE = "normal"

FLAG_MIN_MATCHES = 5

# (accuracy below, multiply confidence by)
ACCURACY_PENALTIES: tuple[tuple[float, float], ...] = (
    (0.5, 0.5),
    (0.7, 0.8),
)

PATTERN_ACTIONS = ("normal", "suppress")

# Rule-engine confidence loses the false-positive rate, up to this much.
MAX_FP_PENALTY = 0.5

FP_CAUTION_MIN_RATE = 0.3
FP_CAUTION_MIN_FEEDBACK = 3
FP_CAUTION_LIMIT = 10


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class Metrics:
    true_positives: int
    false_positives: int
    false_negatives: int
    accuracy: Optional[float]
    precision: Optional[float]
    recall: Optional[float]
    f1: Optional[float]

    @property
    def total_matches(self) -> int:
        return self.true_positives + self.false_positives


@dataclass(frozen=True)
class PatternPerformance:
    pattern_id: str
    total_matches: int
    true_positives: int
    false_positives: int
    false_negatives: int
    accuracy: Optional[float]
    precision: Optional[float]
    recall: Optional[float]
    f1: Optional[float]
    is_flagged: bool
    flag_reason: Optional[str]
    period_start: str
    period_end: str
    updated_at: str

    def to_dict(self) -> dict:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


@dataclass
class AggregationResult:
    patterns_processed: int = 0
    patterns_updated: int = 0
    patterns_flagged: int = 0
    failures: list[AggregationFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "patterns_processed": self.patterns_processed,
            "patterns_updated": self.patterns_updated,
            "patterns_flagged": self.patterns_flagged,
            "failures": [
                {"pattern_id": f.pattern_id, "error": f.message} for f in self.failures
            ],
        }


@dataclass(frozen=True)
class ActiveOverrides:
    """Reviewer-suppressed patterns, and rule-engine penalties by false-positive rate."""
    suppressed: frozenset[str] = frozenset()
    fp_penalties: dict[str, float] = field(default_factory=dict)


def false_positive_penalty(fp_rate: float) -> float:
    return min(max(fp_rate, 0.0), MAX_FP_PENALTY)


def compute_metrics(tp: int, fp: int, fn: int) -> Metrics:
    """Accuracy = precision = TP/(TP+FP). None wherever a denominator is zero."""
    matched = tp + fp
    precision = tp / matched if matched > 0 else None
    recall = tp / (tp + fn) if (tp + fn) > 0 else None
    if precision is None or recall is None or (precision + recall) == 0:
        f1 = None
    else:
        f1 = 2 * precision * recall / (precision + recall)
    return Metrics(
        true_positives=tp,
        false_positives=fp,
        false_negatives=fn,
        accuracy=precision,
        precision=precision,
        recall=recall,
        f1=f1,
    )


def count_verdicts(events: Iterable[FeedbackEvent]) -> Metrics:
    tp = fp = fn = 0
    for e in events:
        if e.verdict == Verdict.TRUE_POSITIVE:
            tp += 1
        elif e.verdict == Verdict.FALSE_POSITIVE:
            fp += 1
        elif e.verdict == Verdict.FALSE_NEGATIVE:
            fn += 1
    return compute_metrics(tp, fp, fn)


def normalize_context_type(context_type: Optional[str]) -> str:
    value = (context_type or "").strip().lower()
    return value if value in CONTEXT_TYPES else DEFAULT_CONTEXT_TYPE


def confidence_modifier(metrics: Metrics, min_samples: int) -> float:
    """Accuracy once there are enough samples, otherwise 1.0."""
    if metrics.accuracy is None or metrics.total_matches < min_samples:
        return 1.0
    return metrics.accuracy


def accuracy_penalty(accuracy: Optional[float]) -> float:
    if accuracy is None:
        return 1.0
    for below, factor in ACCURACY_PENALTIES:
        if accuracy < below:
            return factor
    return 1.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# TRACKER
# ============================================================

class PerformanceTracker:
    """Aggregates feedback into performance views and serves modifiers."""

    def __init__(
        self,
        db_path: str = "medcheck.db",
        feedback_log: Optional[FeedbackLog] = None,
        settings_store: Optional[SettingsStore] = None,
    ):
        self.db_path = db_path
        self.feedback = feedback_log or FeedbackLog(db_path)
        self.settings_store = settings_store
        self._lock = threading.Lock()
        self._pending_learning_fn = None  # Wired to the learning log when available
        self._audit_fn = None
        self._init_db()

    def set_pending_learning_counter(self, fn):
        """Wire in fn() -> int, the number of pending learning logs, for reports."""
        self._pending_learning_fn = fn

    def set_audit_logger(self, audit_fn):
        """Wire in the audit logger function: fn(event_type, data) -> hash."""
        self._audit_fn = audit_fn

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pattern_performance (
                    pattern_id TEXT PRIMARY KEY,
                    total_matches INTEGER NOT NULL,
                    true_positives INTEGER NOT NULL,
                    false_positives INTEGER NOT NULL,
                    false_negatives INTEGER NOT NULL,
                    accuracy REAL,
                    precision_score REAL,
                    recall_score REAL,
                    f1_score REAL,
                    is_flagged INTEGER NOT NULL DEFAULT 0,
                    flag_reason TEXT,
                    flagged_at TEXT,
                    period_start TEXT NOT NULL,
                    period_end TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS context_performance (
                    pattern_id TEXT NOT NULL,
                    context_type TEXT NOT NULL,
                    total_matches INTEGER NOT NULL,
                    true_positives INTEGER NOT NULL,
                    false_positives INTEGER NOT NULL,
                    accuracy REAL,
                    confidence_modifier REAL NOT NULL DEFAULT 1.0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (pattern_id, context_type)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS department_performance (
                    pattern_id TEXT NOT NULL,
                    department TEXT NOT NULL,
                    total_matches INTEGER NOT NULL,
                    true_positives INTEGER NOT NULL,
                    false_positives INTEGER NOT NULL,
                    accuracy REAL,
                    confidence_modifier REAL NOT NULL DEFAULT 1.0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (pattern_id, department)
                )
            """)
            # Reviewer decisions live apart from the derived views so
            # re-aggregation never resets them.
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pattern_overrides (
                    pattern_id TEXT PRIMARY KEY,
                    action TEXT NOT NULL DEFAULT 'normal',
                    reason TEXT,
                    updated_by TEXT,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _settings(self) -> LearningSettings:
        return self.settings_store.load() if self.settings_store else LearningSettings()

    # --- Aggregation ---

    def aggregate(self, period_days: Optional[int] = None) -> AggregationResult:
        """
        Recompute all three views from the feedback in the trailing window.

        Idempotent: running it twice over the same log writes the same rows.
        """
        settings = self._settings()
        days = period_days if period_days is not None else settings.performance_aggregation_days
        period_end = _now()
        period_start = period_end - timedelta(days=days)

        grouped: dict[str, list[FeedbackEvent]] = {}
        for event in self.feedback.events(since=period_start.isoformat()):
            grouped.setdefault(event.pattern_id, []).append(event)

        result = AggregationResult()
        for pattern_id in sorted(grouped):
            result.patterns_processed += 1
            try:
                flagged = self._aggregate_pattern(
                    pattern_id, grouped[pattern_id], settings,
                    period_start.isoformat(), period_end.isoformat(),
                )
            except Exception as e:
                failure = AggregationFailure(
                    pattern_id, str(e), {"error_type": type(e).__name__},
                )
                result.failures.append(failure)
                logger.warning(
                    "Aggregation failed for %s: %s", pattern_id, e,
                    extra={"pattern_id": pattern_id, "error_type": type(e).__name__},
                )
                continue
            result.patterns_updated += 1
            if flagged:
                result.patterns_flagged += 1

        logger.info(
            "Performance aggregation complete: %d updated, %d flagged",
            result.patterns_updated, result.patterns_flagged,
            extra={
                "patterns_processed": result.patterns_processed,
                "failures": len(result.failures),
            },
        )
        return result

    def _aggregate_pattern(
        self,
        pattern_id: str,
        events: Sequence[FeedbackEvent],
        settings: LearningSettings,
        period_start: str,
        period_end: str,
    ) -> bool:
        """Upsert the pattern row and its context/department rows. Returns the flag."""
        metrics = count_verdicts(events)
        is_flagged = (
            metrics.accuracy is not None
            and metrics.accuracy < settings.accuracy_threshold
            and metrics.total_matches >= FLAG_MIN_MATCHES
        )
        flag_reason = (
            f"accuracy {metrics.accuracy * 100:.1f}% < {settings.accuracy_threshold * 100:.0f}%"
            if is_flagged else None
        )
        now = _now().isoformat()

        by_context: dict[str, list[FeedbackEvent]] = {}
        by_department: dict[str, list[FeedbackEvent]] = {}
        for e in events:
            if e.verdict == Verdict.FALSE_NEGATIVE:
                continue
            by_context.setdefault(normalize_context_type(e.context_type), []).append(e)
            if e.department:
                by_department.setdefault(e.department, []).append(e)

        with self._lock:
            with self._get_conn() as conn:
                conn.execute(
                    """INSERT INTO pattern_performance
                       (pattern_id, total_matches, true_positives, false_positives,
                        false_negatives, accuracy, precision_score, recall_score, f1_score,
                        is_flagged, flag_reason, flagged_at, period_start, period_end, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(pattern_id) DO UPDATE SET
                           total_matches = excluded.total_matches,
                           true_positives = excluded.true_positives,
                           false_positives = excluded.false_positives,
                           false_negatives = excluded.false_negatives,
                           accuracy = excluded.accuracy,
                           precision_score = excluded.precision_score,
                           recall_score = excluded.recall_score,
                           f1_score = excluded.f1_score,
                           is_flagged = excluded.is_flagged,
                           flag_reason = excluded.flag_reason,
                           flagged_at = CASE
                               WHEN excluded.is_flagged = 0 THEN NULL
                               ELSE COALESCE(pattern_performance.flagged_at, excluded.flagged_at)
                           END,
                           period_start = excluded.period_start,
                           period_end = excluded.period_end,
                           updated_at = excluded.updated_at""",
                    (
                        pattern_id, metrics.total_matches, metrics.true_positives,
                        metrics.false_positives, metrics.false_negatives,
                        metrics.accuracy, metrics.precision, metrics.recall, metrics.f1,
                        int(is_flagged), flag_reason, now if is_flagged else None,
                        period_start, period_end, now,
                    ),
                )

                for context_type, members in by_context.items():
                    m = count_verdicts(members)
                    conn.execute(
                        """INSERT INTO context_performance
                           (pattern_id, context_type, total_matches, true_positives,
                            false_positives, accuracy, confidence_modifier, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                           ON CONFLICT(pattern_id, context_type) DO UPDATE SET
                               total_matches = excluded.total_matches,
                               true_positives = excluded.true_positives,
                               false_positives = excluded.false_positives,
                               accuracy = excluded.accuracy,
                               confidence_modifier = excluded.confidence_modifier,
                               updated_at = excluded.updated_at""",
                        (
                            pattern_id, context_type, m.total_matches, m.true_positives,
                            m.false_positives, m.accuracy,
                            confidence_modifier(m, settings.context_modifier_min_samples), now,
                        ),
                    )

                for department, members in by_department.items():
                    m = count_verdicts(members)
                    conn.execute(
                        """INSERT INTO department_performance
                           (pattern_id, department, total_matches, true_positives,
                            false_positives, accuracy, confidence_modifier, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                           ON CONFLICT(pattern_id, department) DO UPDATE SET
                               total_matches = excluded.total_matches,
                               true_positives = excluded.true_positives,
                               false_positives = excluded.false_positives,
                               accuracy = excluded.accuracy,
                               confidence_modifier = excluded.confidence_modifier,
                               updated_at = excluded.updated_at""",
                        (
                            pattern_id, department, m.total_matches, m.true_positives,
                            m.false_positives, m.accuracy,
                            confidence_modifier(m, settings.context_modifier_min_samples), now,
                        ),
                    )
                conn.commit()
        return is_flagged

    # --- Reads ---

    _PATTERN_COLUMNS = (
        "pattern_id, total_matches, true_positives, false_positives, false_negatives, "
        "accuracy, precision_score, recall_score, f1_score, is_flagged, flag_reason, "
        "period_start, period_end, updated_at"
    )

    @staticmethod
    def _row_to_performance(r) -> PatternPerformance:
        return PatternPerformance(
            pattern_id=r[0], total_matches=r[1], true_positives=r[2],
            false_positives=r[3], false_negatives=r[4], accuracy=r[5],
            precision=r[6], recall=r[7], f1=r[8], is_flagged=bool(r[9]),
            flag_reason=r[10], period_start=r[11], period_end=r[12], updated_at=r[13],
        )

    def get_pattern_performance(self, pattern_id: str) -> Optional[PatternPerformance]:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {self._PATTERN_COLUMNS} FROM pattern_performance WHERE pattern_id = ?",
                (pattern_id,),
            ).fetchone()
        return self._row_to_performance(row) if row else None

    def get_all_performance(
        self,
        flagged_only: bool = False,
        limit: int = 100,
        ascending: bool = False,
    ) -> list[PatternPerformance]:
        where = " WHERE is_flagged = 1" if flagged_only else ""
        direction = "ASC" if ascending else "DESC"
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {self._PATTERN_COLUMNS} FROM pattern_performance{where} "
                f"ORDER BY accuracy IS NULL, accuracy {direction}, pattern_id LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_performance(r) for r in rows]

    def get_context_modifier(self, pattern_id: str, context_type: str) -> float:
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT confidence_modifier FROM context_performance
                   WHERE pattern_id = ? AND context_type = ?""",
                (pattern_id, normalize_context_type(context_type)),
            ).fetchone()
        return row[0] if row and row[0] is not None else 1.0

    def get_department_modifier(self, pattern_id: str, department: str) -> float:
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT confidence_modifier FROM department_performance
                   WHERE pattern_id = ? AND department = ?""",
                (pattern_id, department),
            ).fetchone()
        return row[0] if row and row[0] is not None else 1.0

    # --- Modifiers ---

    def calculate_adjusted_confidence(
        self,
        pattern_id: str,
        base_confidence: float,
        context_type: Optional[str] = None,
        department: Optional[str] = None,
        settings: Optional[LearningSettings] = None,
    ) -> float:
        """
        Scale a confidence by context modifier x department modifier x accuracy penalty.

        The accuracy penalty (x0.5 below 50%, x0.8 below 70%) only applies
        once the pattern has enough samples. Result is clamped to [0, 1].
        """
        settings = settings or self._settings()
        adjusted = base_confidence

        if context_type:
            adjusted *= self.get_context_modifier(pattern_id, context_type)
        if department:
            adjusted *= self.get_department_modifier(pattern_id, department)

        perf = self.get_pattern_performance(pattern_id)
        if (
            perf is not None
            and perf.accuracy is not None
            and perf.total_matches >= settings.context_modifier_min_samples
        ):
            adjusted *= accuracy_penalty(perf.accuracy)

        return max(0.0, min(1.0, adjusted))

    def apply_modifiers(
        self,
        violations: Sequence[ViolationCandidate],
        context_type: Optional[str] = None,
        department: Optional[str] = None,
    ) -> list[ViolationCandidate]:
        """Scale each violation's confidence. Returns new values."""
        settings = self._settings()
        out = []
        for v in violations:
            adjusted = self.calculate_adjusted_confidence(
                v.pattern_id, v.confidence, context_type, department, settings,
            )
            out.append(v if adjusted == v.confidence else replace(v, confidence=adjusted))
        return out

    # --- Overrides ---

    def set_pattern_action(
        self,
        pattern_id: str,
        action: str,
        reason: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> dict:
        """
        Suppress a pattern at analysis time, or return it to normal.

        Raises:
            ValueError: action is not one of PATTERN_ACTIONS.
        """
        if action not in PATTERN_ACTIONS:
            raise ValueError(f"Unknown pattern action: {action!r} (expected one of {PATTERN_ACTIONS})")
        now = _now().isoformat()
        with self._lock:
            with self._get_conn() as conn:
                conn.execute(
                    """INSERT INTO pattern_overrides (pattern_id, action, reason, updated_by, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(pattern_id) DO UPDATE SET
                           action = excluded.action,
                           reason = excluded.reason,
                           updated_by = excluded.updated_by,
                           updated_at = excluded.updated_at""",
                    (pattern_id, action, reason, updated_by, now),
                )
                conn.commit()

        entry = {
            "pattern_id": pattern_id,
            "action": action,
            "reason": reason,
            "updated_by": updated_by,
            "updated_at": now,
        }
        logger.info(
            "Pattern action set: %s", action,
            extra={"pattern_id": pattern_id, "status": action},
        )
        if self._audit_fn:
            self._audit_fn("pattern_action_set", entry)
        return entry

    def get_pattern_action(self, pattern_id: str) -> str:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT action FROM pattern_overrides WHERE pattern_id = ?", (pattern_id,),
            ).fetchone()
        return row[0] if row else "normal"

    def false_positive_rates(self) -> list[dict]:
        """Per-pattern FP / all feedback from the last aggregation, highest rate first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT pattern_id, false_positives,
                          true_positives + false_positives + false_negatives AS total
                   FROM pattern_performance
                   WHERE false_positives > 0
                   ORDER BY CAST(false_positives AS REAL)
                            / (true_positives + false_positives + false_negatives) DESC,
                            pattern_id"""
            ).fetchall()
        return [
            {
                "pattern_id": r[0],
                "false_positives": r[1],
                "total_feedback": r[2],
                "fp_rate": r[1] / r[2],
            }
            for r in rows
        ]

    def get_active_overrides(self) -> ActiveOverrides:
        """Suppressed pattern IDs and the false-positive penalty map."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT pattern_id FROM pattern_overrides WHERE action = 'suppress'"
            ).fetchall()
        return ActiveOverrides(
            suppressed=frozenset(r[0] for r in rows),
            fp_penalties={
                r["pattern_id"]: false_positive_penalty(r["fp_rate"])
                for r in self.false_positive_rates()
            },
        )

    def high_false_positive_patterns(
        self,
        min_rate: float = FP_CAUTION_MIN_RATE,
        min_feedback: int = FP_CAUTION_MIN_FEEDBACK,
        limit: int = FP_CAUTION_LIMIT,
    ) -> list[dict]:
        """Patterns the Proposer should treat with extra caution."""
        return [
            r for r in self.false_positive_rates()
            if r["fp_rate"] >= min_rate and r["total_feedback"] >= min_feedback
        ][:limit]

    def apply_fp_penalties(
        self,
        violations: Sequence[ViolationCandidate],
        overrides: Optional[ActiveOverrides] = None,
    ) -> list[ViolationCandidate]:
        """Subtract each pattern's false-positive penalty from rule-engine confidence."""
        overrides = overrides or self.get_active_overrides()
        out = []
        for v in violations:
            penalty = overrides.fp_penalties.get(v.pattern_id, 0.0)
            if penalty > 0:
                v = replace(v, confidence=max(0.0, round(v.confidence - penalty, 6)))
            out.append(v)
        return out

    # --- Flags ---

    def flag_low_performance_patterns(self, threshold: Optional[float] = None) -> list[dict]:
        """
        Re-flag every aggregated pattern against `threshold` (default from settings).

        Returns the flagged patterns, worst accuracy first.
        """
        threshold = self._settings().accuracy_threshold if threshold is None else threshold
        now = _now().isoformat()
        with self._lock:
            with self._get_conn() as conn:
                conn.execute(
                    """UPDATE pattern_performance SET
                           is_flagged = 1,
                           flag_reason = printf('accuracy %.1f%% < %d%%', accuracy * 100, ?),
                           flagged_at = COALESCE(flagged_at, ?)
                       WHERE accuracy IS NOT NULL AND accuracy < ? AND total_matches >= ?""",
                    (round(threshold * 100), now, threshold, FLAG_MIN_MATCHES),
                )
                conn.execute(
                    """UPDATE pattern_performance SET
                           is_flagged = 0, flag_reason = NULL, flagged_at = NULL
                       WHERE NOT (accuracy IS NOT NULL AND accuracy < ? AND total_matches >= ?)""",
                    (threshold, FLAG_MIN_MATCHES),
                )
                conn.commit()
        flagged = self.get_flagged_patterns()
        for p in flagged:
            logger.info(
                "Pattern flagged: %s", p["flag_reason"],
                extra={"pattern_id": p["pattern_id"]},
            )
        return flagged

    def get_flagged_patterns(self) -> list[dict]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT pattern_id, accuracy, total_matches, false_positives,
                          flag_reason, flagged_at
                   FROM pattern_performance WHERE is_flagged = 1
                   ORDER BY accuracy ASC, pattern_id"""
            ).fetchall()
        return [
            {
                "pattern_id": r[0], "accuracy": r[1], "total_matches": r[2],
                "false_positives": r[3], "flag_reason": r[4], "flagged_at": r[5],
            }
            for r in rows
        ]

    # --- Report ---

    def generate_performance_report(self, period_days: Optional[int] = None) -> dict:
        """Aggregate, then summarize: totals, best/worst patterns, weakest contexts and departments."""
        settings = self._settings()
        days = period_days if period_days is not None else settings.performance_aggregation_days
        aggregation = self.aggregate(days)

        with self._get_conn() as conn:
            summary = conn.execute(
                """SELECT COUNT(*), AVG(accuracy),
                          SUM(CASE WHEN is_flagged = 1 THEN 1 ELSE 0 END)
                   FROM pattern_performance"""
            ).fetchone()
            context_rows = conn.execute(
                """SELECT context_type, AVG(accuracy), COUNT(DISTINCT pattern_id)
                   FROM context_performance
                   GROUP BY context_type ORDER BY AVG(accuracy) ASC"""
            ).fetchall()
            department_rows = conn.execute(
                """SELECT department, AVG(accuracy), COUNT(DISTINCT pattern_id)
                   FROM department_performance
                   GROUP BY department ORDER BY AVG(accuracy) ASC"""
            ).fetchall()

        review_cutoff = (_now() - timedelta(days=settings.flag_review_period_days)).isoformat()
        flagged = self.get_flagged_patterns()
        overdue = [
            p["pattern_id"] for p in flagged
            if p["flagged_at"] is not None and p["flagged_at"] < review_cutoff
        ]

        return {
            "generated_at": _now().isoformat(),
            "period_days": days,
            "summary": {
                "total_patterns": summary[0] or 0,
                "total_feedbacks": self.feedback.get_count(),
                "avg_accuracy": summary[1],
                "flagged_patterns": summary[2] or 0,
                "pending_learning": self._pending_learning_fn() if self._pending_learning_fn else 0,
            },
            "top_performers": [p.to_dict() for p in self.get_all_performance(limit=10)],
            "low_performers": [
                p.to_dict() for p in self.get_all_performance(flagged_only=True, limit=10, ascending=True)
            ],
            "context_stats": [
                {"context_type": r[0], "avg_accuracy": r[1], "pattern_count": r[2]}
                for r in context_rows
            ],
            "department_stats": [
                {
                    "department": r[0],
                    "department_name": DEPARTMENT_NAMES.get(r[0], r[0]),
                    "avg_accuracy": r[1],
                    "pattern_count": r[2],
                }
                for r in department_rows
            ],
            "flagged_overdue_review": overdue,
            "aggregation": aggregation.to_dict(),
        }
