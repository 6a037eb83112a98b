"""
MedCheck — Medical Advertising Compliance Engine

An untrusted generative Proposer audited against a deterministic rule
catalog, plus a feedback-driven learning loop that never promotes a rule
without meeting its thresholds.

Public API:
  - catalog:         Immutable rule catalog (patterns, negative list, disclaimers)
  - RuleMatcher:     Deterministic ground-truth matcher
  - audit:           Six-pass consensus audit of Proposer candidates
  - calculate_grade: Clean score and letter grade
  - postprocess:     Page-level filters and regrade
  - analyze_local:   Rule-engine-only analysis (zero API cost)
  - analyze_full:    Proposer + audit + post-processing (the real product)
  - PerformanceTracker: Per-pattern accuracy from reviewer feedback
  - LearningMiner:   Exception / pattern / confidence mining
  - AuditArchive:    SHA-256 hash-chained analysis record
  - LLMProvider:     Abstract LLM interface for provider swapping

Usage:
    from medcheck import analyze_local, analyze_full
    from medcheck import PerformanceTracker, LearningMiner
    from medcheck import LLMProvider
"""

__version__ = "2.3.0"

from medcheck.catalog import catalog, RuleCatalog, Pattern, CATALOG_VERSION
from medcheck.matcher import RuleMatcher, RuleMatch, rule_matcher
from medcheck.models import (
    AuditIssue,
    AuditResult,
    GradeResult,
    GrayZone,
    Severity,
    Source,
    ViolationCandidate,
)
from medcheck.auditor import ConsensusAuditor, audit
from medcheck.grading import calculate_grade
from medcheck.postprocess import postprocess
from medcheck.pipeline import AnalysisReport, analyze_local, analyze_full
from medcheck.feedback import FeedbackEvent, FeedbackLog, SettingsStore, Verdict
from medcheck.performance import PerformanceTracker
from medcheck.learning import (
    AutoLearningLogStore,
    ExceptionCandidateStore,
    LearningMiner,
    should_auto_apply,
)
from medcheck.gray_zone import GrayZoneCollector
from medcheck.archive import AuditArchive
from medcheck.llm import LLMProvider
from medcheck.llm.factory import get_provider

__all__ = [
    "catalog",
    "RuleCatalog",
    "Pattern",
    "CATALOG_VERSION",
    "RuleMatcher",
    "RuleMatch",
    "rule_matcher",
    "AuditIssue",
    "AuditResult",
    "GradeResult",
    "GrayZone",
    "Severity",
    "Source",
    "ViolationCandidate",
    "ConsensusAuditor",
    "audit",
    "calculate_grade",
    "postprocess",
    "AnalysisReport",
    "analyze_local",
    "analyze_full",
    "FeedbackEvent",
    "FeedbackLog",
    "SettingsStore",
    "Verdict",
    "PerformanceTracker",
    "AutoLearningLogStore",
    "ExceptionCandidateStore",
    "LearningMiner",
    "should_auto_apply",
    "GrayZoneCollector",
    "AuditArchive",
    "LLMProvider",
    "get_provider",
]
