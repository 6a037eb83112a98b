"""
Performance Tracker Tests

Tests feedback-derived pattern statistics:
  1. Metrics math (accuracy = precision, undefined -> None)
  2. Aggregation, flagging and idempotence
  3. Per-pattern failure isolation
  4. Context / department modifiers and adjusted confidence
  5. Reviewer overrides and false-positive penalties
  6. Report
"""

from __future__ import annotations

import sqlite3

import pytest

from medcheck.feedback import FeedbackEvent, FeedbackLog, SettingsStore, Verdict
from medcheck.models import Severity, ViolationCandidate
from medcheck.performance import (
    ActiveOverrides,
    PerformanceTracker,
    accuracy_penalty,
    compute_metrics,
    normalize_context_type,
)

TP, FP, FN = Verdict.TRUE_POSITIVE, Verdict.FALSE_POSITIVE, Verdict.FALSE_NEGATIVE


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "medcheck.db")


@pytest.fixture
def feedback(db_path):
    return FeedbackLog(db_path)


@pytest.fixture
def tracker(db_path, feedback):
    return PerformanceTracker(db_path, feedback, SettingsStore(db_path))


def record(log, pattern_id, verdict, n, **kwargs):
    for _ in range(n):
        log.record(FeedbackEvent(pattern_id=pattern_id, verdict=verdict, **kwargs))


# ============================================================
# METRICS
# ============================================================

class TestMetrics:

    def test_accuracy_is_precision(self):
        m = compute_metrics(8, 2, 0)
        assert m.accuracy == m.precision == 0.8
        assert m.recall == 1.0
        assert m.f1 == pytest.approx(2 * 0.8 / 1.8)
        assert m.total_matches == 10

    def test_undefined_values_are_none(self):
        m = compute_metrics(0, 0, 3)
        assert m.accuracy is None
        assert m.recall == 0.0
        assert m.f1 is None

    def test_accuracy_penalty(self):
        assert accuracy_penalty(0.4) == 0.5
        assert accuracy_penalty(0.6) == 0.8
        assert accuracy_penalty(0.9) == 1.0
        assert accuracy_penalty(None) == 1.0

    def test_context_type_normalized(self):
        assert normalize_context_type("Negation") == "negation"
        assert normalize_context_type("sarcasm") == "normal"
        assert normalize_context_type(None) == "normal"


# ============================================================
# AGGREGATION
# ============================================================

class TestAggregation:

    def test_counts_and_accuracy(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 8)
        record(feedback, "P-56-02-003", FP, 2)
        record(feedback, "P-56-02-003", FN, 1)
        result = tracker.aggregate()
        assert result.patterns_updated == 1
        assert result.failures == []

        perf = tracker.get_pattern_performance("P-56-02-003")
        assert perf.total_matches == 10
        assert perf.false_negatives == 1
        assert perf.accuracy == 0.8
        assert perf.is_flagged is False

    def test_flagged_below_threshold(self, tracker, feedback):
        record(feedback, "P-56-01-003", TP, 3)
        record(feedback, "P-56-01-003", FP, 3)
        tracker.aggregate()
        perf = tracker.get_pattern_performance("P-56-01-003")
        assert perf.is_flagged is True
        assert "50.0%" in perf.flag_reason

    def test_not_flagged_with_few_matches(self, tracker, feedback):
        record(feedback, "P-56-01-003", TP, 2)
        record(feedback, "P-56-01-003", FP, 2)
        tracker.aggregate()
        assert tracker.get_pattern_performance("P-56-01-003").is_flagged is False

    def test_idempotent(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 4)
        record(feedback, "P-56-02-003", FP, 3, context_type="negation", department="DERM")
        tracker.aggregate()
        first = tracker.get_pattern_performance("P-56-02-003")
        tracker.aggregate()
        second = tracker.get_pattern_performance("P-56-02-003")
        assert (first.total_matches, first.true_positives, first.false_positives, first.accuracy) == (
            second.total_matches, second.true_positives, second.false_positives, second.accuracy
        )
        assert second.total_matches == 7

    def test_one_failing_pattern_does_not_abort(self, tracker, feedback, monkeypatch):
        record(feedback, "P-56-01-003", TP, 5)
        record(feedback, "P-56-02-003", TP, 5)
        record(feedback, "P-56-03-001", TP, 5)

        original = tracker._aggregate_pattern

        def flaky(pattern_id, *args):
            if pattern_id == "P-56-02-003":
                raise sqlite3.OperationalError("database is locked")
            return original(pattern_id, *args)

        monkeypatch.setattr(tracker, "_aggregate_pattern", flaky)
        result = tracker.aggregate()

        assert result.patterns_processed == 3
        assert result.patterns_updated == 2
        assert [f.pattern_id for f in result.failures] == ["P-56-02-003"]
        assert result.failures[0].code == "MC_AGGREGATION"
        assert tracker.get_pattern_performance("P-56-03-001") is not None
        assert tracker.get_pattern_performance("P-56-02-003") is None

    def test_reflag_with_new_threshold(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 8)
        record(feedback, "P-56-02-003", FP, 2)
        tracker.aggregate()
        assert tracker.get_flagged_patterns() == []

        flagged = tracker.flag_low_performance_patterns(threshold=0.9)
        assert [p["pattern_id"] for p in flagged] == ["P-56-02-003"]

        assert tracker.flag_low_performance_patterns(threshold=0.5) == []


# ============================================================
# MODIFIERS
# ============================================================

class TestModifiers:

    def test_context_modifier_needs_samples(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 6, context_type="negation")
        record(feedback, "P-56-02-003", FP, 4, context_type="negation")
        record(feedback, "P-56-02-003", FP, 3, context_type="question")
        tracker.aggregate()
        assert tracker.get_context_modifier("P-56-02-003", "negation") == pytest.approx(0.6)
        assert tracker.get_context_modifier("P-56-02-003", "question") == 1.0
        assert tracker.get_context_modifier("P-56-02-003", "quotation") == 1.0

    def test_false_negatives_excluded_from_context(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 6, context_type="negation")
        record(feedback, "P-56-02-003", FP, 4, context_type="negation")
        record(feedback, "P-56-02-003", FN, 10, context_type="negation")
        tracker.aggregate()
        assert tracker.get_context_modifier("P-56-02-003", "negation") == pytest.approx(0.6)

    def test_department_modifier(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 9, department="DENT")
        record(feedback, "P-56-02-003", FP, 1, department="DENT")
        tracker.aggregate()
        assert tracker.get_department_modifier("P-56-02-003", "DENT") == pytest.approx(0.9)
        assert tracker.get_department_modifier("P-56-02-003", "DERM") == 1.0

    def test_adjusted_confidence_combines_factors(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 6, context_type="negation")
        record(feedback, "P-56-02-003", FP, 4, context_type="negation")
        tracker.aggregate()
        # context 0.6, accuracy 0.6 -> penalty 0.8
        adjusted = tracker.calculate_adjusted_confidence("P-56-02-003", 0.9, "negation")
        assert adjusted == pytest.approx(0.9 * 0.6 * 0.8)

    def test_penalty_needs_samples(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 2)
        record(feedback, "P-56-02-003", FP, 3)
        tracker.aggregate()
        assert tracker.calculate_adjusted_confidence("P-56-02-003", 0.9) == 0.9

    def test_unknown_pattern_unchanged(self, tracker):
        assert tracker.calculate_adjusted_confidence("P-56-13-001", 0.7, "negation", "DERM") == 0.7

    def test_persisted_min_samples_applies(self, db_path, tracker, feedback):
        SettingsStore(db_path).set("context_modifier_min_samples", 3)
        record(feedback, "P-56-02-003", TP, 1, context_type="question")
        record(feedback, "P-56-02-003", FP, 3, context_type="question")
        tracker.aggregate()
        assert tracker.get_context_modifier("P-56-02-003", "question") == pytest.approx(0.25)

    def test_apply_modifiers_returns_new_values(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 6, context_type="negation")
        record(feedback, "P-56-02-003", FP, 4, context_type="negation")
        tracker.aggregate()
        scaled_v = ViolationCandidate("P-56-02-003", "safety_claims", Severity.MAJOR, "Painless", confidence=1.0)
        other_v = ViolationCandidate("P-56-08-002", "fear_appeal", Severity.MINOR, "Hurry", confidence=0.7)
        scaled, other = tracker.apply_modifiers([scaled_v, other_v], context_type="negation")
        assert scaled.confidence == pytest.approx(0.6 * 0.8)
        assert scaled_v.confidence == 1.0
        assert other is other_v


# ============================================================
# OVERRIDES
# ============================================================

class TestOverrides:

    def test_set_and_reset_action(self, tracker):
        assert tracker.get_pattern_action("P-56-02-003") == "normal"
        entry = tracker.set_pattern_action("P-56-02-003", "suppress", reason="noisy", updated_by="kim")
        assert entry["action"] == "suppress"
        assert entry["updated_by"] == "kim"
        assert tracker.get_pattern_action("P-56-02-003") == "suppress"
        assert tracker.get_active_overrides().suppressed == frozenset({"P-56-02-003"})

        tracker.set_pattern_action("P-56-02-003", "normal")
        assert tracker.get_active_overrides().suppressed == frozenset()

    def test_unknown_action_rejected(self, tracker):
        with pytest.raises(ValueError):
            tracker.set_pattern_action("P-56-02-003", "delete")
        assert tracker.get_pattern_action("P-56-02-003") == "normal"

    def test_suppression_survives_aggregation(self, tracker, feedback):
        tracker.set_pattern_action("P-56-02-003", "suppress")
        record(feedback, "P-56-02-003", TP, 5)
        tracker.aggregate()
        tracker.aggregate()
        assert tracker.get_pattern_action("P-56-02-003") == "suppress"

    def test_action_is_audited(self, tracker):
        events = []
        tracker.set_audit_logger(lambda event_type, data: events.append((event_type, data)))
        tracker.set_pattern_action("P-56-02-003", "suppress", reason="noisy")
        [(event_type, data)] = events
        assert event_type == "pattern_action_set"
        assert data["pattern_id"] == "P-56-02-003"
        assert data["reason"] == "noisy"

    def test_fp_penalty_is_rate_capped(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 1)
        record(feedback, "P-56-02-003", FP, 3)
        record(feedback, "P-56-01-003", TP, 3)
        record(feedback, "P-56-01-003", FP, 1)
        record(feedback, "P-56-05-004", TP, 4)
        tracker.aggregate()

        penalties = tracker.get_active_overrides().fp_penalties
        assert penalties == {"P-56-02-003": 0.5, "P-56-01-003": 0.25}

    def test_apply_fp_penalties(self, tracker):
        overrides = ActiveOverrides(fp_penalties={"P-56-02-003": 0.5})
        penalized = ViolationCandidate("P-56-02-003", "safety_claims", Severity.MAJOR, "Painless", confidence=0.9)
        floored = ViolationCandidate("P-56-02-003", "safety_claims", Severity.MAJOR, "No pain", confidence=0.3)
        other = ViolationCandidate("P-56-08-002", "fear_appeal", Severity.MINOR, "Hurry", confidence=0.7)

        a, b, c = tracker.apply_fp_penalties([penalized, floored, other], overrides)
        assert a.confidence == pytest.approx(0.4)
        assert b.confidence == 0.0
        assert c is other

    def test_high_false_positive_patterns(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 1)
        record(feedback, "P-56-02-003", FP, 3)
        # Rate is high but there is too little feedback.
        record(feedback, "P-56-01-003", TP, 1)
        record(feedback, "P-56-01-003", FP, 1)
        # Enough feedback, rate too low.
        record(feedback, "P-56-05-004", TP, 4)
        record(feedback, "P-56-05-004", FP, 1)
        record(feedback, "P-56-08-002", FP, 2)
        record(feedback, "P-56-08-002", FN, 1)
        tracker.aggregate()

        cautions = tracker.high_false_positive_patterns()
        assert [c["pattern_id"] for c in cautions] == ["P-56-02-003", "P-56-08-002"]
        assert cautions[0]["false_positives"] == 3
        assert cautions[0]["total_feedback"] == 4
        assert cautions[0]["fp_rate"] == pytest.approx(0.75)


# ============================================================
# REPORT
# ============================================================

class TestReport:

    def test_report_structure(self, tracker, feedback):
        record(feedback, "P-56-02-003", TP, 9, department="DERM")
        record(feedback, "P-56-02-003", FP, 1, department="DERM")
        record(feedback, "P-56-01-003", TP, 1)
        record(feedback, "P-56-01-003", FP, 5)
        tracker.set_pending_learning_counter(lambda: 3)

        report = tracker.generate_performance_report()
        assert report["summary"]["total_patterns"] == 2
        assert report["summary"]["total_feedbacks"] == 16
        assert report["summary"]["flagged_patterns"] == 1
        assert report["summary"]["pending_learning"] == 3
        assert report["top_performers"][0]["pattern_id"] == "P-56-02-003"
        assert [p["pattern_id"] for p in report["low_performers"]] == ["P-56-01-003"]
        assert report["department_stats"][0]["department_name"] == "Dermatology"
        assert report["flagged_overdue_review"] == []
        assert report["aggregation"]["patterns_updated"] == 2

    def test_empty_report(self, tracker):
        report = tracker.generate_performance_report()
        assert report["summary"]["total_patterns"] == 0
        assert report["summary"]["pending_learning"] == 0
        assert report["top_performers"] == []
