"""
Learning — the feedback flywheel.

feedback → miner → exception candidates / learning log → review → matcher
"""

from medcheck.learning.auto_apply import (
    AutoApplyDecision,
    AutoLearningLog,
    AutoLearningLogStore,
    LearningStatus,
    LearningType,
    should_auto_apply,
)
from medcheck.learning.candidates import (
    CandidateStatus,
    ExceptionCandidate,
    ExceptionCandidateStore,
    ExceptionType,
)
from medcheck.learning.miner import (
    ConfidenceAdjustment,
    LearningMiner,
    MappingApproval,
    MappingRule,
    PatternCandidate,
    extract_common_context,
)

__all__ = [
    "AutoApplyDecision",
    "AutoLearningLog",
    "AutoLearningLogStore",
    "CandidateStatus",
    "ConfidenceAdjustment",
    "ExceptionCandidate",
    "ExceptionCandidateStore",
    "ExceptionType",
    "LearningMiner",
    "LearningStatus",
    "LearningType",
    "MappingApproval",
    "MappingRule",
    "PatternCandidate",
    "extract_common_context",
    "should_auto_apply",
]
