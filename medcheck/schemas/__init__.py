from medcheck.schemas.proposal import (
    ProposedGrayZone,
    ProposedMandatoryItems,
    ProposedViolation,
    ProposerOutput,
)

__all__ = [
    "ProposedGrayZone",
    "ProposedMandatoryItems",
    "ProposedViolation",
    "ProposerOutput",
]
