"""
Proposer Output Schema

Pydantic models for the JSON the Proposer returns. Structure is
validated and defaults are filled here; meaning is NOT trusted here.
Pattern IDs, severities and confidences are checked by the auditor.

Accepts the camelCase keys the prompt asks for (patternId, originalText)
and snake_case equivalents.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from medcheck.models import (
    GrayZone,
    MandatoryItem,
    MandatoryItems,
    SectionType,
    Severity,
    Source,
    ViolationCandidate,
)

EVASION_TYPES = (
    "structure_login_wall", "structure_price_hide", "structure_subdomain_split",
    "wording_disclaimer", "wording_hedge", "wording_academic_packaging",
    "visual_illustration", "visual_process_photo", "visual_blur_result",
    "platform_sns_redirect", "platform_fake_review",
    "platform_influencer_undisclosed", "other",
)

_EVASION_CATEGORY_PREFIX = {
    "structure": "structural",
    "wording": "wording",
    "visual": "visual",
    "platform": "platform",
}


def evasion_category(evasion_type: str) -> str:
    prefix = evasion_type.split("_", 1)[0]
    return _EVASION_CATEGORY_PREFIX.get(prefix, "other")


def _text_or_empty(value: Any) -> str:
    return "" if value is None else str(value)


# ============================================================
# VIOLATIONS
# ============================================================

class ProposedViolation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pattern_id: str = Field(..., alias="patternId", min_length=1)
    category: str = ""
    severity: Severity = Severity.MINOR
    original_text: str = Field("", alias="originalText")
    context: Optional[str] = None
    section_type: SectionType = Field(SectionType.DEFAULT, alias="sectionType")
    confidence: float = 0.7
    reasoning: str = ""
    from_image: bool = Field(False, alias="fromImage")
    disclaimer_present: bool = Field(False, alias="disclaimerPresent")
    adjusted_severity: Optional[Severity] = Field(None, alias="adjustedSeverity")
    evasion_type: Optional[str] = Field(None, alias="evasionType")

    @field_validator("pattern_id", mode="before")
    @classmethod
    def _strip_id(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("category", "original_text", "reasoning", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return _text_or_empty(v)

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v):
        return Severity.parse(v, default=Severity.MINOR) if v is not None else Severity.MINOR

    @field_validator("adjusted_severity", mode="before")
    @classmethod
    def _adjusted_severity(cls, v):
        if v is None or v == "":
            return None
        try:
            return Severity.parse(v)
        except ValueError:
            return None

    @field_validator("section_type", mode="before")
    @classmethod
    def _section(cls, v):
        try:
            return SectionType(str(v).lower())
        except ValueError:
            return SectionType.DEFAULT

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.7
        return max(0.0, min(1.0, value))

    @field_validator("from_image", "disclaimer_present", mode="before")
    @classmethod
    def _flag(cls, v):
        return bool(v) if v is not None else False

    @model_validator(mode="after")
    def _fill_defaults(self):
        if not self.context:
            self.context = self.original_text
        if self.adjusted_severity is None:
            self.adjusted_severity = self.severity
        return self

    def to_candidate(self) -> ViolationCandidate:
        return ViolationCandidate(
            pattern_id=self.pattern_id,
            category=self.category,
            severity=self.severity,
            original_text=self.original_text,
            context=self.context or self.original_text,
            section_type=self.section_type,
            confidence=self.confidence,
            reasoning=self.reasoning,
            from_image=self.from_image,
            disclaimer_present=self.disclaimer_present,
            adjusted_severity=self.adjusted_severity,
            source=Source.PROPOSER,
            evasion_type=self.evasion_type,
        )


# ============================================================
# GRAY ZONES
# ============================================================

class ProposedGrayZone(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    evasion_type: str = Field("other", alias="evasionType")
    evasion_category: Optional[str] = Field(None, alias="evasionCategory")
    evasion_description: str = Field("", alias="evasionDescription")
    legal_target: str = Field("", alias="legalTarget")
    target_violation_type: str = Field("", alias="targetViolationType")
    evidence: str = ""
    confidence: float = 0.5

    @field_validator(
        "evasion_description", "legal_target", "target_violation_type", "evidence",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, v):
        return _text_or_empty(v)

    @field_validator("evasion_type", mode="before")
    @classmethod
    def _evasion_type(cls, v):
        return str(v) if v else "other"

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        try:
            return max(0.0, min(1.0, float(v)))
        except (TypeError, ValueError):
            return 0.5

    def to_gray_zone(self) -> GrayZone:
        return GrayZone(
            evasion_type=self.evasion_type,
            original_text=self.evidence,
            evasion_category=self.evasion_category or evasion_category(self.evasion_type),
            target_law=self.legal_target,
            target_violation=self.target_violation_type,
            description=self.evasion_description,
            confidence=self.confidence,
        )


# ============================================================
# MANDATORY ITEMS
# ============================================================

class ProposedMandatoryItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    found: bool = False
    value: Optional[str] = None
    applicable: bool = True

    @field_validator("value", mode="before")
    @classmethod
    def _value(cls, v):
        return None if v is None else str(v)


class ProposedMandatoryItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    hospital_name: ProposedMandatoryItem = Field(default_factory=ProposedMandatoryItem)
    address: ProposedMandatoryItem = Field(default_factory=ProposedMandatoryItem)
    phone: ProposedMandatoryItem = Field(default_factory=ProposedMandatoryItem)
    department: ProposedMandatoryItem = Field(default_factory=ProposedMandatoryItem)
    doctor_info: ProposedMandatoryItem = Field(default_factory=ProposedMandatoryItem)
    price_disclosure: ProposedMandatoryItem = Field(
        default_factory=lambda: ProposedMandatoryItem(applicable=False)
    )

    def to_items(self) -> MandatoryItems:
        def convert(item: ProposedMandatoryItem) -> MandatoryItem:
            return MandatoryItem(found=item.found, value=item.value, applicable=item.applicable)

        return MandatoryItems(
            hospital_name=convert(self.hospital_name),
            address=convert(self.address),
            phone=convert(self.phone),
            department=convert(self.department),
            doctor_info=convert(self.doctor_info),
            price_disclosure=convert(self.price_disclosure),
        )


# ============================================================
# TOP LEVEL
# ============================================================

class ProposedSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: SectionType = SectionType.DEFAULT
    start_index: int = Field(0, alias="startIndex")
    end_index: int = Field(0, alias="endIndex")

    @field_validator("type", mode="before")
    @classmethod
    def _section(cls, v):
        try:
            return SectionType(str(v).lower())
        except ValueError:
            return SectionType.DEFAULT


class ProposerOutput(BaseModel):
    """The whole Proposer response, with empty defaults for missing blocks."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sections: list[ProposedSection] = Field(default_factory=list)
    violations: list[ProposedViolation] = Field(default_factory=list)
    gray_zones: list[ProposedGrayZone] = Field(default_factory=list, alias="grayZones")
    mandatory_items: ProposedMandatoryItems = Field(
        default_factory=ProposedMandatoryItems, alias="mandatoryItems",
    )
    summary: dict[str, Any] = Field(default_factory=dict)
    checklist_verification: dict[str, Any] = Field(
        default_factory=dict, alias="checklistVerification",
    )

    @field_validator("sections", "violations", "gray_zones", mode="before")
    @classmethod
    def _list_or_empty(cls, v):
        return v if isinstance(v, list) else []

    @field_validator("mandatory_items", mode="before")
    @classmethod
    def _items_or_empty(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("summary", "checklist_verification", mode="before")
    @classmethod
    def _dict_or_empty(cls, v):
        return v if isinstance(v, dict) else {}

    def candidates(self) -> list[ViolationCandidate]:
        return [v.to_candidate() for v in self.violations]

    def gray_zone_list(self) -> list[GrayZone]:
        return [g.to_gray_zone() for g in self.gray_zones]
