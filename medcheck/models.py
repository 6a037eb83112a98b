"""
Core Data Model

Per-request values produced and consumed by the auditor, grader and
post-processor. Everything here is frozen: an audit pass that changes
a candidate builds a new value with dataclasses.replace().
"""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def downgrade(self) -> "Severity":
        """One step down the order. LOW is the floor."""
        return _DOWNGRADE[self]

    @classmethod
    def parse(cls, value: Any, default: Optional["Severity"] = None) -> "Severity":
        try:
            return cls(str(value).lower())
        except ValueError:
            if default is None:
                raise
            return default


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.MAJOR: 3,
    Severity.MINOR: 2,
    Severity.LOW: 1,
}

_DOWNGRADE = {
    Severity.CRITICAL: Severity.MAJOR,
    Severity.MAJOR: Severity.MINOR,
    Severity.MINOR: Severity.LOW,
    Severity.LOW: Severity.LOW,
}


class SectionType(str, Enum):
    TREATMENT = "treatment"
    EVENT = "event"
    FAQ = "faq"
    REVIEW = "review"
    DOCTOR = "doctor"
    DEFAULT = "default"


class Source(str, Enum):
    PROPOSER = "proposer"
    RULE_ENGINE_SUPPLEMENT = "rule_engine_supplement"
    RULE_ENGINE = "rule_engine"  # local mode, no Proposer involved


class IssueType(str, Enum):
    FABRICATED_PATTERN_ID = "FABRICATED_PATTERN_ID"
    NEGATIVE_LIST_VIOLATION = "NEGATIVE_LIST_VIOLATION"
    CERTIFICATION_FALSE_POSITIVE = "CERTIFICATION_FALSE_POSITIVE"
    DISCLAIMER_NOT_APPLIED = "DISCLAIMER_NOT_APPLIED"
    GEMINI_MISSED = "GEMINI_MISSED"
    CONFIDENCE_ADJUSTED = "CONFIDENCE_ADJUSTED"
    DUPLICATE_VIOLATION = "DUPLICATE_VIOLATION"


class IssueAction(str, Enum):
    REMOVE = "REMOVE"
    DOWNGRADE = "DOWNGRADE"
    ADD = "ADD"
    ADJUST = "ADJUST"


# ============================================================
# VIOLATIONS
# ============================================================

@dataclass(frozen=True)
class ViolationCandidate:
    """A single suspected violation, from the Proposer or the rule engine."""
    pattern_id: str
    category: str
    severity: Severity
    original_text: str
    context: str = ""
    section_type: SectionType = SectionType.DEFAULT
    confidence: float = 0.7
    reasoning: str = ""
    from_image: bool = False
    disclaimer_present: bool = False
    adjusted_severity: Optional[Severity] = None
    source: Source = Source.PROPOSER
    description: str = ""
    evasion_type: Optional[str] = None

    @property
    def effective_severity(self) -> Severity:
        return self.adjusted_severity or self.severity

    @property
    def is_downgraded(self) -> bool:
        return (
            self.disclaimer_present
            and self.adjusted_severity is not None
            and self.adjusted_severity != self.severity
        )

    def dedupe_key(self) -> tuple[str, str]:
        return (self.pattern_id, self.original_text.strip())

    def to_dict(self) -> dict:
        return {
            "pattern_id": self.pattern_id,
            "category": self.category,
            "severity": self.severity.value,
            "adjusted_severity": self.effective_severity.value,
            "original_text": self.original_text,
            "context": self.context,
            "section_type": self.section_type.value,
            "confidence": round(self.confidence, 4),
            "reasoning": self.reasoning,
            "from_image": self.from_image,
            "disclaimer_present": self.disclaimer_present,
            "source": self.source.value,
            "description": self.description,
            "evasion_type": self.evasion_type,
        }


@dataclass(frozen=True)
class AuditIssue:
    """One correction applied by the auditor."""
    type: IssueType
    action: IssueAction
    detail: str
    pattern_id: str
    original_text: str = ""
    before: Optional[str] = None
    after: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "action": self.action.value,
            "detail": self.detail,
            "pattern_id": self.pattern_id,
            "original_text": self.original_text,
            "before": self.before,
            "after": self.after,
        }


@dataclass(frozen=True)
class GradeResult:
    clean_score: int
    grade: str
    violation_count: int
    severity_counts: dict[str, int] = field(default_factory=dict)
    breakdown: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "clean_score": self.clean_score,
            "grade": self.grade,
            "violation_count": self.violation_count,
            "severity_counts": dict(self.severity_counts),
            "breakdown": list(self.breakdown),
        }


@dataclass(frozen=True)
class GrayZone:
    """A suspected evasion that is not a clear-cut catalog violation."""
    evasion_type: str
    original_text: str
    evasion_category: str = "other"
    target_law: str = ""
    target_violation: str = ""
    description: str = ""
    confidence: float = 0.5
    section_type: SectionType = SectionType.DEFAULT

    def to_dict(self) -> dict:
        return {
            "evasion_type": self.evasion_type,
            "evasion_category": self.evasion_category,
            "target_violation": self.target_violation,
            "original_text": self.original_text,
            "target_law": self.target_law,
            "description": self.description,
            "confidence": self.confidence,
            "section_type": self.section_type.value,
        }


MANDATORY_ITEM_KEYS = (
    "hospital_name", "address", "phone", "department", "doctor_info",
    "price_disclosure",
)


@dataclass(frozen=True)
class MandatoryItem:
    found: bool = False
    value: Optional[str] = None
    applicable: bool = True


@dataclass(frozen=True)
class MandatoryItems:
    """The six-item disclosure checklist every clinic ad should carry."""
    hospital_name: MandatoryItem = field(default_factory=MandatoryItem)
    address: MandatoryItem = field(default_factory=MandatoryItem)
    phone: MandatoryItem = field(default_factory=MandatoryItem)
    department: MandatoryItem = field(default_factory=MandatoryItem)
    doctor_info: MandatoryItem = field(default_factory=MandatoryItem)
    price_disclosure: MandatoryItem = field(
        default_factory=lambda: MandatoryItem(applicable=False)
    )

    def missing(self) -> list[str]:
        return [
            key for key in MANDATORY_ITEM_KEYS
            if getattr(self, key).applicable and not getattr(self, key).found
        ]

    def to_dict(self) -> dict:
        return {
            key: {
                "found": getattr(self, key).found,
                "value": getattr(self, key).value,
                "applicable": getattr(self, key).applicable,
            }
            for key in MANDATORY_ITEM_KEYS
        }


# ============================================================
# AUDIT RESULT
# ============================================================

def generate_audit_id() -> str:
    """audit_<base36 epoch ms>_<6 random chars>"""
    millis = int(time.time() * 1000)
    digits = string.digits + string.ascii_lowercase
    encoded = ""
    while millis:
        millis, rem = divmod(millis, 36)
        encoded = digits[rem] + encoded
    suffix = "".join(random.choices(digits, k=6))
    return f"audit_{encoded or '0'}_{suffix}"


@dataclass(frozen=True)
class AuditResult:
    id: str
    final_violations: tuple[ViolationCandidate, ...]
    grade: GradeResult
    audit_issues: tuple[AuditIssue, ...]
    proposer_original_count: int
    final_count: int
    gray_zones: tuple[GrayZone, ...] = ()
    mandatory_items: MandatoryItems = field(default_factory=MandatoryItems)
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def __post_init__(self):
        if self.final_count != len(self.final_violations):
            raise ValueError(
                f"final_count {self.final_count} does not match "
                f"{len(self.final_violations)} final violations"
            )

    @property
    def delta(self) -> int:
        return self.final_count - self.proposer_original_count

    def issues_of(self, issue_type: IssueType) -> list[AuditIssue]:
        return [i for i in self.audit_issues if i.type == issue_type]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "final_violations": [v.to_dict() for v in self.final_violations],
            "gray_zones": [g.to_dict() for g in self.gray_zones],
            "mandatory_items": self.mandatory_items.to_dict(),
            "grade": self.grade.to_dict(),
            "audit_issues": [i.to_dict() for i in self.audit_issues],
            "proposer_original_count": self.proposer_original_count,
            "final_count": self.final_count,
            "delta": self.delta,
            "created_at": self.created_at,
        }
