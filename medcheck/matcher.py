"""
Rule Matcher — Deterministic Ground Truth

Runs every catalog pattern's regex against the text. Pure function of
(catalog, learned exceptions, text, options). Zero API cost.

Used two ways:
  - standalone, as the detector for local (rule-only) analysis
  - from inside the auditor, to supplement violations the Proposer missed

Suppression:
  - a pattern's own exception regexes are checked in a ±20 char window
    around each match (negation, question, legal notice)
  - approved learned exceptions are checked in the match's context window
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from medcheck.catalog import RuleCatalog, catalog as default_catalog
from medcheck.models import Severity

EXCEPTION_WINDOW = 20
DEFAULT_CONTEXT_LENGTH = 50
DEFAULT_MAX_MATCHES = 100

NEGATION_CONTEXT = "NEGATION_CONTEXT"
DISCLAIMER_CONTEXT = "DISCLAIMER_CONTEXT"

NEGATION_MARKERS = (
    "not", "never", "no", "cannot", "can't", "don't", "doesn't", "won't",
    "isn't", "without",
)
DISCLAIMER_MARKERS = ("※", "*", "note:", "caution", "however,", "disclaimer")

_NEGATION_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(m) for m in NEGATION_MARKERS) + r")\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RuleMatch:
    pattern_id: str
    category: str
    severity: Severity
    matched_text: str
    context: str
    position: int
    confidence: float
    disclaimer_detected: bool
    description: str = ""


def has_negation(text: str) -> bool:
    return bool(_NEGATION_RE.search(text))


def has_disclaimer_marker(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in DISCLAIMER_MARKERS)


def match_confidence(severity: Severity, matched_text: str) -> float:
    """Base 0.7, boosted by severity and match length, capped at 0.95."""
    confidence = 0.7
    if severity == Severity.CRITICAL:
        confidence += 0.15
    elif severity == Severity.MAJOR:
        confidence += 0.1
    if len(matched_text) > 10:
        confidence += 0.05
    if len(matched_text) > 20:
        confidence += 0.05
    return round(min(confidence, 0.95), 4)


class RuleMatcher:
    """
    Deterministic matcher over a RuleCatalog.

    `learned_exceptions` maps pattern_id to approved exception patterns
    (space-joined keywords, or the NEGATION_CONTEXT / DISCLAIMER_CONTEXT
    sentinels). These only ever suppress matches.
    """

    def __init__(
        self,
        rule_catalog: Optional[RuleCatalog] = None,
        learned_exceptions: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.catalog = rule_catalog or default_catalog
        self._compiled = [
            (
                pattern,
                re.compile(pattern.regex, re.IGNORECASE),
                [re.compile(e, re.IGNORECASE) for e in pattern.exceptions],
            )
            for pattern in self.catalog.patterns
        ]
        self._learned = {
            pid: tuple(values) for pid, values in (learned_exceptions or {}).items()
        }

    def match(
        self,
        text: str,
        min_severity: Optional[Severity] = None,
        min_confidence: float = 0.0,
        categories: Optional[Iterable[str]] = None,
        context_length: int = DEFAULT_CONTEXT_LENGTH,
        max_matches: int = DEFAULT_MAX_MATCHES,
    ) -> list[RuleMatch]:
        """
        Match text against the catalog.

        Args:
            text: The text to scan.
            min_severity: Skip patterns below this severity.
            min_confidence: Drop matches whose confidence is below this.
            categories: Restrict to these pattern categories.
            context_length: Characters of context on each side of a match.
            max_matches: Stop after this many matches.

        Returns:
            Matches sorted by position.
        """
        if not text:
            return []

        wanted = set(categories) if categories else None
        disclaimer_detected = self.catalog.find_disclaimer(text) is not None
        seen: set[tuple[str, int]] = set()
        results: list[RuleMatch] = []

        for pattern, regex, exception_regexes in self._compiled:
            if wanted is not None and pattern.category not in wanted:
                continue
            if min_severity is not None and pattern.severity.rank < min_severity.rank:
                continue

            for m in regex.finditer(text):
                if len(results) >= max_matches:
                    break
                matched = m.group(0)
                if not matched.strip():
                    continue
                key = (pattern.id, m.start())
                if key in seen:
                    continue

                if self._excepted(text, m.start(), m.end(), exception_regexes):
                    continue

                context = self._context(text, m.start(), m.end(), context_length)
                if self._learned_exception_applies(pattern.id, context):
                    continue

                confidence = match_confidence(pattern.severity, matched)
                if confidence < min_confidence:
                    continue

                seen.add(key)
                results.append(RuleMatch(
                    pattern_id=pattern.id,
                    category=pattern.category,
                    severity=pattern.severity,
                    matched_text=matched,
                    context=context,
                    position=m.start(),
                    confidence=confidence,
                    disclaimer_detected=disclaimer_detected,
                    description=pattern.description,
                ))

        results.sort(key=lambda r: (r.position, r.pattern_id))
        return results

    @staticmethod
    def _excepted(text: str, start: int, end: int, exception_regexes: list) -> bool:
        window = text[max(0, start - EXCEPTION_WINDOW):min(len(text), end + EXCEPTION_WINDOW)]
        return any(r.search(window) for r in exception_regexes)

    @staticmethod
    def _context(text: str, start: int, end: int, length: int) -> str:
        ctx_start = max(0, start - length)
        ctx_end = min(len(text), end + length)
        prefix = "..." if ctx_start > 0 else ""
        suffix = "..." if ctx_end < len(text) else ""
        return f"{prefix}{text[ctx_start:ctx_end]}{suffix}"

    def _learned_exception_applies(self, pattern_id: str, context: str) -> bool:
        exceptions = self._learned.get(pattern_id)
        if not exceptions:
            return False
        lowered = context.lower()
        for exception in exceptions:
            if exception == NEGATION_CONTEXT:
                if has_negation(context):
                    return True
            elif exception == DISCLAIMER_CONTEXT:
                if has_disclaimer_marker(context):
                    return True
            else:
                words = exception.lower().split()
                if words and all(w in lowered for w in words):
                    return True
        return False


rule_matcher = RuleMatcher()
