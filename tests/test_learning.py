"""
Learning Loop Tests

Tests the feedback flywheel:
  1. Common-context extraction
  2. Exception candidates: promotion, idempotent replay, streaming = batch
  3. Candidate and learning-log review transitions
  4. Auto-apply gate
  5. Pattern candidates, confidence adjustment, mapping rules
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from medcheck.config import LearningSettings
from medcheck.exceptions import InvalidTransition
from medcheck.feedback import FeedbackEvent, FeedbackLog, SettingsStore, Verdict
from medcheck.learning import (
    AutoLearningLogStore,
    CandidateStatus,
    ExceptionCandidateStore,
    LearningMiner,
    LearningStatus,
    LearningType,
    MappingApproval,
    extract_common_context,
    should_auto_apply,
)
from medcheck.learning.candidates import initial_confidence, repeat_confidence
from medcheck.learning.miner import mapping_pattern, mapping_pattern_type, tokenize
from medcheck.matcher import DISCLAIMER_CONTEXT, NEGATION_CONTEXT

SETTINGS = LearningSettings()

CONSULTATION_TEXTS = [
    "Free individual consultation today",
    "Book an individual consultation",
    "individual consultation with the director",
    "Our individual consultation room",
    "individual consultation, no pressure",
]


def fp_events(texts, pattern_id="P-56-05-002", context_type=None):
    return [
        FeedbackEvent(
            pattern_id=pattern_id,
            verdict=Verdict.FALSE_POSITIVE,
            context_type=context_type,
            sample_text=text,
        )
        for text in texts
    ]


def make_miner(db_path):
    feedback = FeedbackLog(db_path)
    candidates = ExceptionCandidateStore(db_path)
    learning_log = AutoLearningLogStore(db_path)
    miner = LearningMiner(feedback, candidates, learning_log, SettingsStore(db_path))
    return miner


@pytest.fixture
def miner(tmp_path):
    return make_miner(str(tmp_path / "medcheck.db"))


# ============================================================
# COMMON CONTEXT
# ============================================================

class TestCommonContext:

    def test_shared_tokens(self):
        assert extract_common_context(CONSULTATION_TEXTS) == "consultation individual"

    def test_order_of_evidence_does_not_matter(self):
        texts = [
            "laser toning package",
            "toning laser deal",
            "package toning laser",
        ]
        assert extract_common_context(texts) == "laser toning"
        assert extract_common_context(list(reversed(texts))) == "laser toning"
        assert extract_common_context(texts[1:] + texts[:1]) == "laser toning"

    def test_too_few_texts(self):
        assert extract_common_context(CONSULTATION_TEXTS[:2]) is None

    def test_negation_fallback(self):
        texts = ["It is not painful", "Never any scarring", "Without downtime"]
        assert extract_common_context(texts) == NEGATION_CONTEXT

    def test_disclaimer_fallback(self):
        texts = ["※ results differ", "* see terms", "Note: pricing varies"]
        assert extract_common_context(texts) == DISCLAIMER_CONTEXT

    def test_nothing_shared(self):
        assert extract_common_context(["laser toning", "filler package", "hair removal"]) is None

    def test_tokenize_drops_stopwords_and_punctuation(self):
        assert tokenize("The BEST, painless care!") == ["best", "painless", "care"]


# ============================================================
# EXCEPTION CANDIDATES
# ============================================================

class TestCandidateConfidence:

    def test_initial(self):
        assert initial_confidence(3) == 0.65
        assert initial_confidence(20) == 0.95

    def test_repeat_never_lowers(self):
        assert repeat_confidence(0.65, 4) == 0.8
        assert repeat_confidence(0.9, 4) == 0.9
        assert repeat_confidence(0.8, 5) == 0.85


class TestExceptionMining:

    def test_streaming_promotes_exactly_once(self, miner):
        outcomes = [miner.observe(e) for e in fp_events(CONSULTATION_TEXTS)]

        assert outcomes[0] is None and outcomes[1] is None
        assert outcomes[2].created is True
        assert [o.promoted for o in outcomes[2:]] == [False, False, True]

        candidate = outcomes[-1].candidate
        assert candidate.exception_pattern == "consultation individual"
        assert candidate.status == CandidateStatus.PENDING_REVIEW
        assert candidate.occurrence_count == 5
        assert candidate.confidence == 0.85
        assert candidate.meets_threshold is True

    def test_more_evidence_does_not_retrigger(self, miner):
        for e in fp_events(CONSULTATION_TEXTS):
            miner.observe(e)
        outcome = miner.observe(fp_events(["individual consultation again"])[0])

        assert outcome.promoted is False
        assert outcome.candidate.status == CandidateStatus.PENDING_REVIEW
        assert outcome.candidate.occurrence_count == 6
        ids = outcome.candidate.source_feedback_ids
        assert len(ids) == len(set(ids))

    def test_batch_rerun_adds_nothing(self, miner):
        for e in fp_events(CONSULTATION_TEXTS):
            miner.feedback.record(e)
        first = miner.mine_exception_candidates()
        assert first.candidates_created == 1
        assert first.candidates_updated == 2
        assert first.candidates_promoted == 1

        second = miner.mine_exception_candidates()
        assert second.groups_examined == 1
        assert second.candidates_created == 0
        assert second.candidates_updated == 0
        assert second.candidates_promoted == 0

        [candidate] = miner.candidates.list_candidates()
        assert candidate.occurrence_count == 5

    def test_streaming_and_batch_converge(self, tmp_path):
        events = fp_events(CONSULTATION_TEXTS + ["individual consultation again"])

        streaming = make_miner(str(tmp_path / "streaming.db"))
        for e in events:
            streaming.observe(e)

        batch = make_miner(str(tmp_path / "batch.db"))
        for e in events:
            batch.feedback.record(e)
        batch.mine_exception_candidates()

        [a] = streaming.candidates.list_candidates()
        [b] = batch.candidates.list_candidates()
        assert a.id == b.id
        assert a.exception_pattern == b.exception_pattern
        assert a.source_feedback_ids == b.source_feedback_ids
        assert a.occurrence_count == b.occurrence_count
        assert a.confidence == b.confidence
        assert a.status == b.status

    def test_groups_split_by_context_type(self, miner):
        for e in fp_events(CONSULTATION_TEXTS[:3], context_type="negation"):
            miner.feedback.record(e)
        for e in fp_events(CONSULTATION_TEXTS[3:] + ["individual consultation again"]):
            miner.feedback.record(e)
        result = miner.mine_exception_candidates()
        assert result.groups_examined == 2

    def test_true_positives_ignored(self, miner):
        event = FeedbackEvent(
            pattern_id="P-56-05-002", verdict=Verdict.TRUE_POSITIVE, sample_text="Free consultation",
        )
        assert miner.observe(event) is None
        assert miner.feedback.get_count() == 1

    def test_generation_logged_once(self, miner):
        for e in fp_events(CONSULTATION_TEXTS):
            miner.observe(e)
        [entry] = miner.learning_log.get_pending(LearningType.EXCEPTION_GENERATED)
        assert entry.target_type == "exception_candidate"
        assert entry.output_data["exception_pattern"] == "consultation individual"
        assert entry.auto_apply_eligible is False

    def test_persisted_settings_change_threshold(self, tmp_path):
        db_path = str(tmp_path / "medcheck.db")
        SettingsStore(db_path).set("exception_min_occurrences", 3)
        SettingsStore(db_path).set("exception_min_confidence", 0.6)
        miner = make_miner(db_path)
        outcomes = [miner.observe(e) for e in fp_events(CONSULTATION_TEXTS[:3])]
        assert outcomes[-1].promoted is True


# ============================================================
# REVIEW TRANSITIONS
# ============================================================

class TestCandidateReview:

    @pytest.fixture
    def store(self, tmp_path):
        return ExceptionCandidateStore(str(tmp_path / "medcheck.db"))

    def _candidate(self, store, n):
        ids = [f"fb_{i}" for i in range(n)]
        return store.upsert("P-56-05-002", "individual consultation", ids, ["sample"], SETTINGS).candidate

    def test_approve_pending(self, store):
        audited = []
        store.set_audit_logger(lambda event, data: audited.append((event, data)))
        candidate = self._candidate(store, 8)
        assert candidate.status == CandidateStatus.PENDING_REVIEW

        approved = store.approve(candidate.id, reviewed_by="reviewer", note="ok")
        assert approved.status == CandidateStatus.APPROVED
        assert approved.reviewed_by == "reviewer"
        assert store.approved_exceptions() == {"P-56-05-002": ["individual consultation"]}

        again = store.approve(candidate.id)
        assert again.status == CandidateStatus.APPROVED
        assert again.reviewed_by == "reviewer"
        assert len(audited) == 1
        assert audited[0][0] == "candidate_reviewed"

    def test_collecting_cannot_be_approved(self, store):
        candidate = self._candidate(store, 3)
        assert candidate.status == CandidateStatus.COLLECTING
        with pytest.raises(InvalidTransition):
            store.approve(candidate.id)

    def test_reject_is_terminal(self, store):
        candidate = self._candidate(store, 3)
        assert store.reject(candidate.id, note="too broad").status == CandidateStatus.REJECTED
        assert store.reject(candidate.id).status == CandidateStatus.REJECTED
        with pytest.raises(InvalidTransition) as exc_info:
            store.approve(candidate.id)
        assert exc_info.value.details["from"] == "rejected"

    def test_merge_does_not_reopen_reviewed(self, store):
        candidate = self._candidate(store, 3)
        store.reject(candidate.id)
        outcome = store.upsert(
            "P-56-05-002", "individual consultation",
            [f"fb_{i}" for i in range(10)], ["sample"], SETTINGS,
        )
        assert outcome.candidate.status == CandidateStatus.REJECTED
        assert store.get(candidate.id).status == CandidateStatus.REJECTED

    def test_two_stores_on_one_file_keep_every_merge(self, tmp_path):
        db_path = str(tmp_path / "medcheck.db")
        first = ExceptionCandidateStore(db_path)
        second = ExceptionCandidateStore(db_path)
        first.upsert("P-56-05-002", "individual consultation", ["f1", "f2", "f3"], ["sample"], SETTINGS)

        errors = []
        workers = []

        def second_upsert():
            try:
                second.upsert("P-56-05-002", "individual consultation", ["f4"], ["sample"], SETTINGS)
            except Exception as e:
                errors.append(e)

        original_merge = first._merge

        def merge_while_second_writes(*args, **kwargs):
            worker = threading.Thread(target=second_upsert)
            worker.start()
            workers.append(worker)
            # The second store blocks on the database write lock meanwhile.
            worker.join(timeout=0.2)
            return original_merge(*args, **kwargs)

        first._merge = merge_while_second_writes
        first.upsert("P-56-05-002", "individual consultation", ["f5"], ["sample"], SETTINGS)
        for worker in workers:
            worker.join(timeout=10)

        assert errors == []
        merged = first.find("P-56-05-002", "individual consultation")
        assert set(merged.source_feedback_ids) == {"f1", "f2", "f3", "f4", "f5"}
        assert merged.occurrence_count == 5

    def test_unknown_id(self, store):
        with pytest.raises(KeyError):
            store.approve("EC-doesnotexist")


class TestLearningLogReview:

    @pytest.fixture
    def log(self, tmp_path):
        return AutoLearningLogStore(str(tmp_path / "medcheck.db"))

    def _record(self, log, **overrides):
        kwargs = dict(
            learning_type=LearningType.PATTERN_SUGGESTED,
            target_type="pattern",
            target_id="NEW-abc",
            input_data={"missed_texts": ["guaranteed results"]},
            output_data={"suggested_pattern": "guaranteed results"},
            confidence_score=0.7,
            source_feedback_count=3,
            settings=SETTINGS,
        )
        kwargs.update(overrides)
        return log.record(**kwargs)

    def test_fingerprint_dedupe(self, log):
        first, created = self._record(log)
        second, created_again = self._record(log)
        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert first.id.startswith("AL-")
        assert log.count_pending() == 1

    def test_different_content_different_id(self, log):
        a, _ = self._record(log)
        b, _ = self._record(log, target_id="NEW-def")
        assert a.id != b.id

    def test_approve_then_repeat(self, log):
        entry, _ = self._record(log)
        assert log.approve(entry.id, reviewed_by="reviewer").status == LearningStatus.APPROVED
        assert log.approve(entry.id).status == LearningStatus.APPROVED
        with pytest.raises(InvalidTransition):
            log.reject(entry.id, reason="changed my mind")
        assert log.count_pending() == 0

    def test_reject_keeps_reason(self, log):
        entry, _ = self._record(log)
        rejected = log.reject(entry.id, reason="too generic")
        assert rejected.status == LearningStatus.REJECTED
        assert rejected.review_reason == "too generic"

    def test_unknown_id(self, log):
        with pytest.raises(KeyError):
            log.approve("AL-missing")

    def test_expire_stale(self, log):
        entry, _ = self._record(log)
        later = datetime.now(timezone.utc) + timedelta(days=SETTINGS.learning_expiry_days + 10)
        assert log.expire_stale(SETTINGS, now=later) == 1
        expired = log.get(entry.id)
        assert expired.status == LearningStatus.REJECTED
        assert expired.review_reason == "expired"
        assert log.expire_stale(SETTINGS, now=later) == 0

    def test_recent_entries_not_expired(self, log):
        self._record(log)
        assert log.expire_stale(SETTINGS) == 0

    def test_current_confidence_follows_approval(self, log):
        assert log.current_confidence("P-56-02-003", 1.0) == 1.0
        entry, _ = self._record(
            log,
            learning_type=LearningType.CONFIDENCE_ADJUSTED,
            target_id="P-56-02-003",
            input_data={"previous_confidence": 1.0},
            output_data={"new_confidence": 0.85},
        )
        assert log.current_confidence("P-56-02-003", 1.0) == 1.0
        log.approve(entry.id)
        assert log.current_confidence("P-56-02-003", 1.0) == 0.85


# ============================================================
# AUTO-APPLY GATE
# ============================================================

class TestAutoApplyGate:

    def _decide(self, learning_type, confidence=0.97, count=20, input_data=None, output_data=None):
        return should_auto_apply(
            learning_type, confidence, count, input_data or {}, output_data or {}, SETTINGS,
        )

    def test_low_confidence_blocks(self):
        decision = self._decide(LearningType.EXCEPTION_GENERATED, confidence=0.9)
        assert decision.eligible is False
        assert decision.reason.startswith("confidence")

    def test_low_feedback_blocks(self):
        decision = self._decide(LearningType.EXCEPTION_GENERATED, count=9)
        assert decision.eligible is False
        assert decision.reason.startswith("feedback count")

    def test_exception_eligible(self):
        assert self._decide(LearningType.EXCEPTION_GENERATED).eligible is True

    def test_small_adjustment_eligible(self):
        decision = self._decide(
            LearningType.CONFIDENCE_ADJUSTED,
            input_data={"previous_confidence": 0.8},
            output_data={"new_confidence": 0.9},
        )
        assert decision.eligible is True

    def test_large_adjustment_needs_review(self):
        decision = self._decide(
            LearningType.CONFIDENCE_ADJUSTED,
            input_data={"previous_confidence": 0.8},
            output_data={"new_confidence": 0.95},
        )
        assert decision.eligible is False
        assert "0.15" in decision.reason

    def test_adjustment_missing_values(self):
        assert self._decide(LearningType.CONFIDENCE_ADJUSTED).eligible is False

    def test_mapping_eligible(self):
        assert self._decide(LearningType.MAPPING_LEARNED).eligible is True

    def test_pattern_suggestion_never_eligible(self):
        decision = self._decide(LearningType.PATTERN_SUGGESTED, confidence=1.0, count=1000)
        assert decision.eligible is False

    def test_gate_uses_persisted_threshold(self):
        settings = LearningSettings.from_mapping({"auto_apply_confidence": "0.9"})
        decision = should_auto_apply(
            LearningType.EXCEPTION_GENERATED, 0.92, 20, {}, {}, settings,
        )
        # passes the global gate but still fails the 95% exception clause
        assert decision.eligible is False
        assert "95%" in decision.reason


# ============================================================
# OTHER MINING PASSES
# ============================================================

class TestPatternCandidates:

    def test_repeated_misses_suggested(self, miner):
        for text in ("Results guaranteed in one visit", "Guaranteed results!", "results guaranteed"):
            miner.feedback.record(FeedbackEvent(
                pattern_id="P-56-01-002", verdict=Verdict.FALSE_NEGATIVE,
                sample_text=text, suggested_pattern="guaranteed",
            ))
        miner.feedback.record(FeedbackEvent(
            pattern_id="P-56-01-002", verdict=Verdict.FALSE_NEGATIVE, sample_text="once only",
        ))

        [candidate] = miner.extract_pattern_candidates()
        assert candidate.suggested_pattern == "guaranteed"
        assert candidate.pattern_type == "keyword"
        assert candidate.source_count == 3
        assert candidate.confidence == 0.7

        [entry] = miner.learning_log.get_pending(LearningType.PATTERN_SUGGESTED)
        assert entry.target_id.startswith("NEW-")
        assert entry.auto_apply_eligible is False


class TestConfidenceAdjustment:

    def _feedback(self, miner, tp, fp, pattern_id="P-56-02-003"):
        for verdict, n in ((Verdict.TRUE_POSITIVE, tp), (Verdict.FALSE_POSITIVE, fp)):
            for _ in range(n):
                miner.feedback.record(FeedbackEvent(pattern_id=pattern_id, verdict=verdict))

    def test_moves_toward_accuracy(self, miner):
        self._feedback(miner, 5, 5)
        adjustment = miner.adjust_pattern_confidence("P-56-02-003")
        assert adjustment.previous_confidence == 1.0
        assert adjustment.new_confidence == 0.85
        assert adjustment.accuracy == 0.5
        assert "lowered" in adjustment.reason

        [entry] = miner.learning_log.get_pending(LearningType.CONFIDENCE_ADJUSTED)
        assert entry.auto_apply_eligible is False

    def test_needs_samples(self, miner):
        self._feedback(miner, 3, 3)
        assert miner.adjust_pattern_confidence("P-56-02-003") is None

    def test_small_change_skipped(self, miner):
        self._feedback(miner, 10, 0)
        assert miner.adjust_pattern_confidence("P-56-02-003") is None

    def test_starts_from_approved_value(self, miner):
        self._feedback(miner, 5, 5)
        first = miner.adjust_pattern_confidence("P-56-02-003")
        [entry] = miner.learning_log.get_pending(LearningType.CONFIDENCE_ADJUSTED)
        miner.learning_log.approve(entry.id)

        second = miner.adjust_pattern_confidence("P-56-02-003")
        assert second.previous_confidence == first.new_confidence
        assert second.new_confidence == pytest.approx(0.85 * 0.7 + 0.5 * 0.3, abs=1e-4)


class TestMappingRules:

    def test_pattern_types(self):
        assert mapping_pattern_type("Ulthera", "ulthera") == "exact"
        assert mapping_pattern_type("Ulthera full face", "ulthera") == "prefix"
        assert mapping_pattern_type("premium botox", "botox") == "suffix"
        assert mapping_pattern_type("Thermage", "thermage flx") == "contains"
        assert mapping_pattern_type("shurink", "shrink") == "synonym"
        assert mapping_pattern_type("laser toning", "filler") is None

    def test_wildcards_use_alias(self):
        assert mapping_pattern("Ulthera full face", "ulthera", "prefix") == "ulthera*"
        assert mapping_pattern("premium botox", "botox", "suffix") == "*botox"
        assert mapping_pattern("Thermage", "thermage flx", "contains") == "*thermage*"

    def test_learn_rules(self, miner):
        approvals = [
            MappingApproval("Ulthera full face", "ulthera", "PROC-001", "ulthera"),
            MappingApproval("Ulthera eyes", "ulthera", "PROC-001", "ulthera"),
            MappingApproval("laser toning", "toning", "PROC-002", "filler"),
        ]
        rules = miner.learn_mapping_rules(approvals)
        assert len(rules) == 1
        rule = rules[0]
        assert rule.raw_pattern == "ulthera*"
        assert rule.pattern_type == "prefix"
        assert rule.approval_count == 2
        assert rule.confidence == 0.7

        [entry] = miner.learning_log.get_pending(LearningType.MAPPING_LEARNED)
        assert entry.target_id.startswith("MAP-PROC-001-")


class TestMiningCycle:

    def test_run_twice_is_stable(self, miner):
        for e in fp_events(CONSULTATION_TEXTS):
            miner.feedback.record(e)
        for _ in range(10):
            miner.feedback.record(FeedbackEvent(pattern_id="P-56-08-002", verdict=Verdict.FALSE_POSITIVE))

        first = miner.run()
        assert first["exception_candidates"]["created"] == 1
        assert first["exception_candidates"]["ready_for_review"] == 1
        assert first["confidence_adjustments"][0]["pattern_id"] == "P-56-08-002"
        pending = miner.learning_log.count_pending()

        second = miner.run()
        assert second["exception_candidates"]["created"] == 0
        assert second["exception_candidates"]["updated"] == 0
        assert miner.learning_log.count_pending() == pending
