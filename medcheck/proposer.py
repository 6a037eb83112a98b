"""
Violation Proposer — Generative Co-Detector

Serializes the rule catalog into instructions, sends the advertisement
(text and optional images) to the LLM, and validates the JSON it returns
into a ProposerOutput.

The Proposer is untrusted. Nothing it returns is used until the auditor
has checked it. This module only bounds the call:
  - a fixed timeout per attempt (default 45s)
  - at most one retry, with a stricter JSON-only instruction appended
  - fence stripping and bracket-balancing repair before parse failure
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Sequence

from pydantic import ValidationError

from medcheck.catalog import (
    CONTEXT_EXCEPTIONS,
    DEPARTMENT_NAMES,
    DEPARTMENT_RULES,
    DISCLAIMER_RULES,
    NEGATIVE_LIST,
    SECTION_WEIGHTS,
    RuleCatalog,
    catalog as default_catalog,
)
from medcheck.config import settings
from medcheck.exceptions import (
    MalformedProposerOutput,
    ProposerError,
    ProposerTimeout,
    ProviderUnavailable,
)
from medcheck.llm import ImagePart, LLMProvider, parse_json_response
from medcheck.logging import get_logger
from medcheck.schemas.proposal import EVASION_TYPES, ProposerOutput

logger = get_logger("proposer")

PROPOSER_TEMPERATURE = 0.1

STRICT_JSON_INSTRUCTION = (
    "\n\n[IMPORTANT] Your previous response could not be used. Respond with "
    "valid JSON only. Do not wrap it in markdown code blocks. Do not add any "
    "text before or after the JSON object."
)


# ============================================================
# PROMPT
# ============================================================

SYSTEM_ROLE = """You are a medical advertising compliance analyst.
You review clinic and hospital advertisements against the Medical Service Act
Article 56 violation catalog below. You only report violations using the
pattern IDs in the catalog. You never invent pattern IDs."""

INSTRUCTIONS = """[INSTRUCTION 1: ANALYZE]
Find every violation in the input using the pattern dictionary.
Every violation MUST use a patternId from the dictionary. Never create new IDs.
Text that is only a negative-list term is never a violation.

[INSTRUCTION 2: IMAGES]
When images are attached: check for before/after photos, read text inside
images and check it against the dictionary, and set fromImage to true.

[INSTRUCTION 3: SECTIONS]
Classify each section first: treatment, event, faq, review, doctor, default.

[INSTRUCTION 4: MANDATORY ITEMS]
Check whether the page shows: hospital_name, address, phone, department,
doctor_info, price_disclosure (applicable only when non-covered procedures
are advertised).

[INSTRUCTION 5: CONFIDENCE]
0.9-1.0 clear violation; 0.7-0.89 likely; 0.5-0.69 context dependent;
below 0.5 do not report.

[INSTRUCTION 6: GRAY ZONES]
Report evasion techniques that are not clear-cut violations in gray_zones,
separately from violations.
evasion_type values: {evasion_types}"""

OUTPUT_SCHEMA = """[OUTPUT FORMAT]
Respond with this JSON object only.
{
  "sections": [{"type": "treatment|event|faq|review|doctor|default", "startIndex": 0, "endIndex": 500}],
  "violations": [{
    "patternId": "P-56-XX-XXX", "category": "string",
    "severity": "critical|major|minor", "originalText": "exact text",
    "context": "50 characters around the text",
    "sectionType": "treatment|event|faq|review|doctor|default",
    "confidence": 0.0, "reasoning": "one line", "fromImage": false,
    "disclaimerPresent": false, "adjustedSeverity": "critical|major|minor|low"
  }],
  "gray_zones": [{
    "evasion_type": "string", "evasion_category": "structural|wording|visual|platform",
    "evasion_description": "string", "legal_target": "string",
    "target_violation_type": "string", "evidence": "string", "confidence": 0.0
  }],
  "mandatory_items": {
    "hospital_name": {"found": true, "value": "string"}, "address": {"found": false},
    "phone": {"found": true, "value": "string"}, "department": {"found": true, "value": "string"},
    "doctor_info": {"found": false}, "price_disclosure": {"found": false, "applicable": true}
  },
  "summary": {"total_violations": 0, "overall_risk": "low|medium|high|critical"},
  "checklist_verification": {"used_only_provided_pattern_ids": true, "checked_negative_list": true}
}"""

DEFAULT_GRAY_ZONE_EXAMPLES: tuple[dict, ...] = (
    {
        "evasion_type": "wording_disclaimer",
        "evasion_category": "wording",
        "evasion_description": "Guarantees results right after printing an 'individual results may vary' notice",
    },
    {
        "evasion_type": "structure_login_wall",
        "evasion_category": "structural",
        "evasion_description": "Before/after photos visible only after member login",
    },
    {
        "evasion_type": "visual_process_photo",
        "evasion_category": "visual",
        "evasion_description": "Before/after photos relabeled as 'procedure process photos'",
    },
)


def _pattern_dictionary(rule_catalog: RuleCatalog) -> str:
    lines = ["[DICTIONARY 1: VIOLATION PATTERNS]", "id|severity|description|example|exceptions"]
    for category, patterns in rule_catalog.by_category().items():
        lines.append(f"# {category}")
        for p in patterns:
            exceptions = "negation/question/legal notice" if p.exceptions else "-"
            lines.append(f"{p.id}|{p.severity.value}|{p.description}|{p.example}|{exceptions}")
    return "\n".join(lines)


def _negative_list(
    confirmed_devices: Sequence[str] = (),
    confirmed_treatments: Sequence[str] = (),
) -> str:
    lines = ["[DICTIONARY 2: NEGATIVE LIST — never a violation on its own]"]
    for category, terms in NEGATIVE_LIST.items():
        lines.append(f"{category}: {', '.join(terms)}")
    if confirmed_devices:
        lines.append(f"confirmed devices: {', '.join(confirmed_devices)}")
    if confirmed_treatments:
        lines.append(f"confirmed treatments: {', '.join(confirmed_treatments)}")
    return "\n".join(lines)


def _disclaimer_rules(rule_catalog: RuleCatalog) -> str:
    lines = [
        "[DICTIONARY 3: DISCLAIMERS]",
        "When one of these phrases appears, lower severity one step "
        "(critical->major->minor->low) and set disclaimerPresent to true:",
    ]
    lines.extend(f"- \"{r.phrase}\" ({r.description})" for r in DISCLAIMER_RULES)
    lines.append(
        "Never lower these absolute violations: "
        + ", ".join(sorted(rule_catalog.absolute_ids))
    )
    return "\n".join(lines)


def _department_rules() -> str:
    lines = ["[DICTIONARY 4: DEPARTMENT RULES]"]
    for rule in DEPARTMENT_RULES:
        department = DEPARTMENT_NAMES.get(rule.department, rule.department)
        lines.append(f"{rule.id}|{department}|{rule.severity.value}|{rule.description}")
    return "\n".join(lines)


def _section_weights() -> str:
    lines = ["[DICTIONARY 5: SECTION WEIGHTS]"]
    lines.extend(f"{w.section.value}: x{w.weight} ({w.label})" for w in SECTION_WEIGHTS.values())
    return "\n".join(lines)


def _context_exceptions() -> str:
    lines = ["[DICTIONARY 6: CONTEXT EXCEPTIONS]"]
    for exc in CONTEXT_EXCEPTIONS:
        examples = "; ".join(exc.examples)
        lines.append(f"{exc.type}: {exc.description}" + (f" (e.g. {examples})" if examples else ""))
    return "\n".join(lines)


def _gray_zone_examples(examples: Sequence[dict]) -> str:
    lines = ["[REFERENCE: KNOWN GRAY ZONE CASES]"]
    for i, case in enumerate(examples, 1):
        lines.append(
            f"Case {i}: [{case.get('evasion_category', 'other')}] {case.get('evasion_type', 'other')}"
        )
        lines.append(f"- technique: {case.get('evasion_description', '')}")
        evidence = case.get("evidence_text")
        if evidence:
            lines.append(f"- evidence: \"{str(evidence)[:200]}\"")
    lines.append("Report similar or new evasion techniques in gray_zones.")
    return "\n".join(lines)


def _false_positive_cautions(cautions: Sequence[dict]) -> str:
    lines = [
        "[CAUTION: PATTERNS WITH FREQUENT FALSE POSITIVES]",
        "Reviewers often rejected these patterns. Check the context strictly and "
        "give high confidence only when the violation is certain:",
    ]
    for c in cautions:
        lines.append(
            f"- {c['pattern_id']}: false positive rate {round(c['fp_rate'] * 100)}% "
            f"({c['false_positives']}/{c['total_feedback']})"
        )
    return "\n".join(lines)


def build_prompt(
    rule_catalog: Optional[RuleCatalog] = None,
    gray_zone_examples: Optional[Sequence[dict]] = None,
    false_positive_cautions: Optional[Sequence[dict]] = None,
    confirmed_devices: Sequence[str] = (),
    confirmed_treatments: Sequence[str] = (),
) -> str:
    """Serialize the catalog and optional prior gray-zone cases into instructions."""
    rule_catalog = rule_catalog or default_catalog
    examples = list(gray_zone_examples) if gray_zone_examples else list(DEFAULT_GRAY_ZONE_EXAMPLES)
    parts = [
        SYSTEM_ROLE,
        _pattern_dictionary(rule_catalog),
        _negative_list(confirmed_devices, confirmed_treatments),
        _disclaimer_rules(rule_catalog),
        _department_rules(),
        _section_weights(),
        _context_exceptions(),
    ]
    if false_positive_cautions:
        parts.append(_false_positive_cautions(false_positive_cautions))
    parts += [
        _gray_zone_examples(examples),
        INSTRUCTIONS.format(evasion_types=", ".join(EVASION_TYPES)),
        OUTPUT_SCHEMA,
    ]
    return "\n\n".join(parts)


def build_user_prompt(text: str, image_count: int = 0) -> str:
    header = "[INPUT ADVERTISEMENT]"
    if image_count:
        header += f" ({image_count} image(s) attached)"
    return f"{header}\n{text}"


# ============================================================
# PARSE
# ============================================================

def parse_proposal(raw: str) -> ProposerOutput:
    """
    Parse and validate raw Proposer output.

    Raises:
        MalformedProposerOutput: unparseable JSON (after repair) or a
            structurally invalid document (e.g. a violation without patternId).
    """
    try:
        data = parse_json_response(raw, repair=True)
    except ValueError as e:
        raise MalformedProposerOutput(str(e), {"raw": raw[:300]}) from e
    try:
        return ProposerOutput.model_validate(data)
    except ValidationError as e:
        raise MalformedProposerOutput(
            f"Proposer output failed validation: {e.error_count()} error(s)",
            {"errors": e.errors(include_url=False)[:5]},
        ) from e


# ============================================================
# PROPOSER
# ============================================================

class ViolationProposer:
    """Bounded, retried calls to the generative co-detector."""

    def __init__(
        self,
        llm: LLMProvider,
        rule_catalog: Optional[RuleCatalog] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        max_output_tokens: Optional[int] = None,
    ):
        self.llm = llm
        self.catalog = rule_catalog or default_catalog
        self.timeout = settings.PROPOSER_TIMEOUT_SECONDS if timeout is None else timeout
        self.max_retries = settings.PROPOSER_MAX_RETRIES if max_retries is None else max_retries
        self.max_output_tokens = max_output_tokens or settings.PROPOSER_MAX_OUTPUT_TOKENS

    async def propose(
        self,
        text: str,
        images: Optional[Sequence[ImagePart]] = None,
        gray_zone_examples: Optional[Sequence[dict]] = None,
        false_positive_cautions: Optional[Sequence[dict]] = None,
    ) -> ProposerOutput:
        """
        Ask the Proposer for candidate violations.

        Raises:
            ProposerTimeout: every attempt exceeded the timeout, or the last one did.
            MalformedProposerOutput: the last attempt returned unusable output.
            ProviderUnavailable: the provider refused the call; not retried.
            ProposerError: the last attempt failed for another reason.
        """
        system_instruction = build_prompt(
            self.catalog, gray_zone_examples, false_positive_cautions,
        )
        base_prompt = build_user_prompt(text, len(images or ()))
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            prompt = base_prompt if attempt == 0 else base_prompt + STRICT_JSON_INSTRUCTION
            start = time.monotonic()
            try:
                raw = await asyncio.wait_for(
                    self.llm.generate(
                        prompt=prompt,
                        system_instruction=system_instruction,
                        temperature=PROPOSER_TEMPERATURE,
                        json_mode=True,
                        images=images,
                        max_output_tokens=self.max_output_tokens,
                    ),
                    timeout=self.timeout,
                )
                output = parse_proposal(raw)
                logger.info(
                    "Proposer returned %d violations, %d gray zones",
                    len(output.violations), len(output.gray_zones),
                    extra={
                        "attempt": attempt + 1,
                        "duration_ms": round((time.monotonic() - start) * 1000, 2),
                    },
                )
                return output
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    "Proposer timed out after %.1fs", self.timeout,
                    extra={"attempt": attempt + 1, "error_type": "timeout"},
                )
            except ProviderUnavailable as e:
                logger.warning(
                    "LLM provider unavailable: %s", e.message,
                    extra={"attempt": attempt + 1, "error_type": e.code},
                )
                raise
            except MalformedProposerOutput as e:
                last_error = e
                logger.warning(
                    "Proposer returned malformed output: %s", e.message,
                    extra={"attempt": attempt + 1, "error_type": e.code},
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "Proposer call failed: %s", e,
                    extra={"attempt": attempt + 1, "error_type": type(e).__name__},
                )

        attempts = self.max_retries + 1
        if isinstance(last_error, asyncio.TimeoutError):
            raise ProposerTimeout(
                f"Proposer exceeded {self.timeout}s on {attempts} attempt(s)",
                {"timeout": self.timeout, "attempts": attempts},
            ) from last_error
        if isinstance(last_error, MalformedProposerOutput):
            raise last_error
        raise ProposerError(
            f"Proposer failed after {attempts} attempt(s): {last_error}",
            {"attempts": attempts, "error_type": type(last_error).__name__},
        ) from last_error
