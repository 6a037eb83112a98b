"""
MedCheck Errors

Every failure that crosses a module boundary carries a stable code.
Audit corrections (fabricated IDs, negative-list hits, missing
disclaimer downgrades) are NOT errors: they are AuditIssues.

Codes:
  - MC_PROPOSER_TIMEOUT:   Proposer call exceeded its time budget
  - MC_PROPOSER_MALFORMED: Proposer output could not be parsed or validated
  - MC_PROPOSER_FAILED:    Proposer call failed for another reason
  - MC_PROVIDER_UNAVAILABLE: LLM provider not configured or circuit open
  - MC_PERSISTENCE:        Archive / learning store write failed
  - MC_AGGREGATION:        Aggregation failed for one pattern
  - MC_INVALID_TRANSITION: Review transition not allowed from current status
  - MC_CONFIG:             Invalid configuration value
"""

from __future__ import annotations

from typing import Any, Optional


class MedCheckError(Exception):
    """Base error with a deterministic code and a details dict."""

    code: str = "MC_INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details if details is not None else {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ProposerError(MedCheckError):
    code = "MC_PROPOSER_FAILED"


class ProposerTimeout(ProposerError):
    code = "MC_PROPOSER_TIMEOUT"


class MalformedProposerOutput(ProposerError):
    code = "MC_PROPOSER_MALFORMED"


class ProviderUnavailable(ProposerError):
    """The provider cannot be called right now; retrying will not help."""
    code = "MC_PROVIDER_UNAVAILABLE"


class PersistenceFailure(MedCheckError):
    code = "MC_PERSISTENCE"


class AggregationFailure(MedCheckError):
    """Raised for a single pattern. Callers collect these, they never abort a run."""

    code = "MC_AGGREGATION"

    def __init__(self, pattern_id: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)
        self.pattern_id = pattern_id


class InvalidTransition(MedCheckError):
    code = "MC_INVALID_TRANSITION"


class ConfigError(MedCheckError):
    code = "MC_CONFIG"
