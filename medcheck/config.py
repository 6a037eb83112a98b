"""
MedCheck Configuration

Process settings are loaded from environment variables.
Learning thresholds have code defaults and can be overridden at
runtime through the persisted settings table (see feedback.SettingsStore),
which is re-read on every learning operation.
"""

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

from dotenv import load_dotenv

from medcheck.exceptions import ConfigError

load_dotenv()


@dataclass(frozen=True)
class Settings:
    """Immutable application settings."""

    # --- Versioning ---
    CATALOG_VERSION: str = "2.3.0"

    # --- LLM Provider ---
    LLM_PROVIDER: str = os.getenv("MEDCHECK_LLM_PROVIDER", "gemini")
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    GEMINI_FALLBACK_MODEL: str = os.getenv("GEMINI_FALLBACK_MODEL", "gemini-2.5-flash-lite")
    # Consecutive failed calls before the provider stops calling out,
    # and how long it stays that way.
    LLM_CIRCUIT_FAILURES: int = int(os.getenv("MEDCHECK_LLM_CIRCUIT_FAILURES", "3"))
    LLM_CIRCUIT_RECOVERY_SECONDS: float = float(os.getenv("MEDCHECK_LLM_CIRCUIT_RECOVERY", "60"))

    # --- Proposer ---
    PROPOSER_TIMEOUT_SECONDS: float = float(os.getenv("MEDCHECK_PROPOSER_TIMEOUT", "45"))
    PROPOSER_MAX_RETRIES: int = int(os.getenv("MEDCHECK_PROPOSER_RETRIES", "1"))
    PROPOSER_MAX_OUTPUT_TOKENS: int = int(os.getenv("MEDCHECK_PROPOSER_MAX_TOKENS", "8192"))

    # --- Audit ---
    # Extra characters a matched text may carry and still count as a
    # negative-list term ("FDA approved laser" vs "FDA approved").
    NEGATIVE_LIST_SLACK: int = int(os.getenv("MEDCHECK_NEGATIVE_LIST_SLACK", "5"))

    # --- Storage ---
    DB_PATH: str = os.getenv("MEDCHECK_DB_PATH", "medcheck.db")


settings = Settings()


# Inclusive bounds per learning setting; None means unbounded.
LEARNING_SETTING_RANGES: dict[str, tuple[float, Optional[float]]] = {
    "exception_min_occurrences": (1, None),
    "exception_min_confidence": (0.0, 1.0),
    "auto_apply_confidence": (0.0, 1.0),
    "accuracy_threshold": (0.0, 1.0),
    "context_modifier_min_samples": (1, None),
    "learning_expiry_days": (1, None),
    "performance_aggregation_days": (1, None),
    "flag_review_period_days": (0, None),
}


@dataclass(frozen=True)
class LearningSettings:
    """Thresholds for performance tracking and the learning loop."""

    exception_min_occurrences: int = 5
    exception_min_confidence: float = 0.85
    auto_apply_confidence: float = 0.95
    accuracy_threshold: float = 0.8
    context_modifier_min_samples: int = 10
    learning_expiry_days: int = 90
    performance_aggregation_days: int = 30
    flag_review_period_days: int = 7

    @classmethod
    def from_mapping(cls, values: Optional[Mapping[str, str]] = None) -> "LearningSettings":
        """
        Build settings from a key-value mapping (values as stored strings).

        Unknown keys are ignored. Known keys must coerce to the field type
        and fall inside LEARNING_SETTING_RANGES.
        """
        if not values:
            return cls()
        kwargs = {}
        for f in fields(cls):
            if f.name not in values:
                continue
            raw = values[f.name]
            try:
                kwargs[f.name] = int(raw) if f.type in (int, "int") else float(raw)
            except (TypeError, ValueError) as e:
                raise ConfigError(
                    f"Invalid value for {f.name}: {raw!r}",
                    {"key": f.name, "value": raw},
                ) from e
            low, high = LEARNING_SETTING_RANGES[f.name]
            value = kwargs[f.name]
            if not low <= value or (high is not None and not value <= high):
                bounds = f"[{low}, {high}]" if high is not None else f">= {low}"
                raise ConfigError(
                    f"Out of range value for {f.name}: {raw!r} (expected {bounds})",
                    {"key": f.name, "value": raw, "min": low, "max": high},
                )
        return cls(**kwargs)

    @classmethod
    def keys(cls) -> list[str]:
        return [f.name for f in fields(cls)]
