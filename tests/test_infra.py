"""
Tests for structured logging, learning settings and error codes.
"""

import json
import logging

import pytest

from medcheck.config import LearningSettings
from medcheck.exceptions import (
    AggregationFailure,
    ConfigError,
    MalformedProposerOutput,
    MedCheckError,
    ProposerError,
    ProposerTimeout,
)
from medcheck.feedback import SettingsStore


class TestLogging:
    """Structured logging tests."""

    def _record(self, msg="Audit complete"):
        return logging.LogRecord(
            name="medcheck.test",
            level=logging.INFO,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=None,
        )

    def test_json_formatter(self):
        from medcheck.logging import JSONFormatter

        parsed = json.loads(JSONFormatter().format(self._record()))
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "Audit complete"
        assert "timestamp" in parsed

    def test_json_formatter_extra_fields(self):
        from medcheck.logging import JSONFormatter

        record = self._record()
        record.grade = "B"
        record.final_count = 4
        record.unrelated = "dropped"
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["grade"] == "B"
        assert parsed["final_count"] == 4
        assert "unrelated" not in parsed

    def test_get_logger(self):
        from medcheck.logging import get_logger
        assert get_logger("auditor").name == "medcheck.auditor"

    def test_setup_logging_text(self):
        from medcheck.logging import TextFormatter, setup_logging

        root = setup_logging(level="debug", fmt="text")
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, TextFormatter)
        root.handlers.clear()
        root.setLevel(logging.NOTSET)


class TestLearningSettings:

    def test_defaults(self):
        s = LearningSettings()
        assert s.exception_min_occurrences == 5
        assert s.exception_min_confidence == 0.85
        assert s.auto_apply_confidence == 0.95
        assert s.accuracy_threshold == 0.8
        assert s.context_modifier_min_samples == 10
        assert s.learning_expiry_days == 90

    def test_from_mapping_coerces(self):
        s = LearningSettings.from_mapping({"accuracy_threshold": "0.7", "learning_expiry_days": "30"})
        assert s.accuracy_threshold == 0.7
        assert s.learning_expiry_days == 30
        assert s.context_modifier_min_samples == 10

    def test_from_mapping_ignores_unknown(self):
        assert LearningSettings.from_mapping({"color": "blue"}) == LearningSettings()

    def test_bad_value(self):
        with pytest.raises(ConfigError) as exc_info:
            LearningSettings.from_mapping({"learning_expiry_days": "soon"})
        assert exc_info.value.code == "MC_CONFIG"

    def test_out_of_range(self):
        for key, raw in [
            ("exception_min_confidence", "1.5"),
            ("accuracy_threshold", "-0.1"),
            ("auto_apply_confidence", "nan"),
            ("exception_min_occurrences", "0"),
            ("context_modifier_min_samples", "-3"),
            ("flag_review_period_days", "-1"),
        ]:
            with pytest.raises(ConfigError) as exc_info:
                LearningSettings.from_mapping({key: raw})
            assert exc_info.value.details["key"] == key

    def test_bounds_inclusive(self):
        s = LearningSettings.from_mapping({
            "accuracy_threshold": "1.0",
            "exception_min_confidence": "0",
            "exception_min_occurrences": "1",
            "flag_review_period_days": "0",
        })
        assert s.accuracy_threshold == 1.0
        assert s.flag_review_period_days == 0


class TestSettingsStore:

    @pytest.fixture
    def store(self, tmp_path):
        return SettingsStore(str(tmp_path / "medcheck.db"))

    def test_override_persists(self, store, tmp_path):
        store.set("accuracy_threshold", 0.75)
        assert store.get("accuracy_threshold") == "0.75"
        reopened = SettingsStore(str(tmp_path / "medcheck.db"))
        assert reopened.load().accuracy_threshold == 0.75

    def test_overwrite(self, store):
        store.set("learning_expiry_days", 30)
        store.set("learning_expiry_days", 60)
        assert store.load().learning_expiry_days == 60
        assert store.all() == {"learning_expiry_days": "60"}

    def test_unknown_key(self, store):
        with pytest.raises(ConfigError):
            store.set("max_retries", 3)
        assert store.all() == {}

    def test_bad_value_not_persisted(self, store):
        with pytest.raises(ConfigError):
            store.set("context_modifier_min_samples", "many")
        assert store.get("context_modifier_min_samples") is None

    def test_out_of_range_not_persisted(self, store):
        with pytest.raises(ConfigError):
            store.set("auto_apply_confidence", 1.5)
        with pytest.raises(ConfigError):
            store.set("learning_expiry_days", -7)
        assert store.all() == {}


class TestErrors:

    def test_codes(self):
        assert ProposerTimeout("t").code == "MC_PROPOSER_TIMEOUT"
        assert MalformedProposerOutput("m").code == "MC_PROPOSER_MALFORMED"
        assert isinstance(ProposerTimeout("t"), ProposerError)
        assert isinstance(ProposerError("p"), MedCheckError)

    def test_to_dict(self):
        err = AggregationFailure("P-56-02-003", "locked", {"error_type": "OperationalError"})
        assert err.pattern_id == "P-56-02-003"
        assert err.to_dict() == {
            "code": "MC_AGGREGATION",
            "message": "locked",
            "details": {"error_type": "OperationalError"},
        }
