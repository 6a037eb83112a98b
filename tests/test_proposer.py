"""
Proposer Tests

Tests the generative co-detector adapter:
  1. JSON cleanup (fences, truncation repair)
  2. Output validation into pydantic models
  3. Prompt construction from the catalog
  4. Timeout, retry and error mapping (mocked LLM)
"""

from __future__ import annotations

import asyncio
import json

import pytest

from medcheck.config import settings
from medcheck.exceptions import (
    MalformedProposerOutput,
    ProposerError,
    ProposerTimeout,
    ProviderUnavailable,
)
from medcheck.llm import LLMProvider, parse_json_response, repair_json, strip_code_fences
from medcheck.models import Severity, Source
from medcheck.proposer import (
    PROPOSER_TEMPERATURE,
    STRICT_JSON_INSTRUCTION,
    ViolationProposer,
    build_prompt,
    build_user_prompt,
    parse_proposal,
)
from medcheck.schemas.proposal import evasion_category


VALID_OUTPUT = {
    "violations": [{
        "patternId": "P-56-02-003",
        "category": "safety_claims",
        "severity": "major",
        "originalText": "Painless",
        "confidence": 0.9,
        "sectionType": "treatment",
    }],
    "gray_zones": [{
        "evasion_type": "wording_disclaimer",
        "evasion_description": "Guarantee after a variation notice",
        "legal_target": "Art. 56(2)(3)",
        "evidence": "Results may vary, but you WILL love them",
        "confidence": 0.6,
    }],
    "mandatory_items": {"hospital_name": {"found": True, "value": "Seoul Clinic"}},
    "summary": {"total_violations": 1, "overall_risk": "medium"},
}


# ============================================================
# MOCK LLM
# ============================================================

class MockLLM(LLMProvider):
    """Returns queued responses in order. Exceptions in the queue are raised."""

    def __init__(self, responses, delay: float = 0.0):
        self._responses = list(responses)
        self._delay = delay
        self.calls = []

    async def generate(self, prompt, system_instruction=None, temperature=0.7,
                       json_mode=False, images=None, max_output_tokens=None):
        self.calls.append({
            "prompt": prompt,
            "system_instruction": system_instruction,
            "temperature": temperature,
            "json_mode": json_mode,
            "images": images,
        })
        if self._delay:
            await asyncio.sleep(self._delay)
        response = self._responses[min(len(self.calls), len(self._responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response


# ============================================================
# JSON CLEANUP
# ============================================================

class TestJsonCleanup:

    def test_strip_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_repair_closes_containers(self):
        assert repair_json('{"a": [1, 2,') == '{"a": [1, 2]}'

    def test_repair_closes_string(self):
        assert json.loads(repair_json('{"a": "abc')) == {"a": "abc"}

    def test_repair_ignores_brackets_in_strings(self):
        assert json.loads(repair_json('{"a": "[not a list", "b": {"c": 1')) == {
            "a": "[not a list", "b": {"c": 1},
        }

    def test_parse_rejects_non_object(self):
        with pytest.raises(ValueError):
            parse_json_response("[1, 2]")


# ============================================================
# PARSE
# ============================================================

class TestParseProposal:

    def test_valid_output(self):
        output = parse_proposal(json.dumps(VALID_OUTPUT))
        candidates = output.candidates()
        assert len(candidates) == 1
        c = candidates[0]
        assert c.pattern_id == "P-56-02-003"
        assert c.severity == Severity.MAJOR
        assert c.effective_severity == Severity.MAJOR
        assert c.source == Source.PROPOSER
        assert c.context == "Painless"

    def test_gray_zones_and_mandatory_items(self):
        output = parse_proposal(json.dumps(VALID_OUTPUT))
        gz = output.gray_zone_list()[0]
        assert gz.evasion_type == "wording_disclaimer"
        assert gz.evasion_category == "wording"
        assert gz.target_law == "Art. 56(2)(3)"
        items = output.mandatory_items.to_items()
        assert items.hospital_name.found is True
        assert "address" in items.missing()
        assert "price_disclosure" not in items.missing()

    def test_truncated_output_repaired(self):
        raw = '{"violations": [{"patternId": "P-56-02-003", "originalText": "Painl'
        output = parse_proposal(raw)
        assert output.violations[0].original_text == "Painl"
        assert output.violations[0].pattern_id == "P-56-02-003"

    def test_fenced_output(self):
        output = parse_proposal("```json\n" + json.dumps(VALID_OUTPUT) + "\n```")
        assert len(output.violations) == 1

    def test_lenient_fields(self):
        output = parse_proposal(json.dumps({"violations": [{
            "patternId": " P-56-02-003 ",
            "severity": "SEVERE",
            "confidence": "7",
            "sectionType": "homepage",
            "originalText": None,
        }]}))
        v = output.violations[0]
        assert v.pattern_id == "P-56-02-003"
        assert v.severity == Severity.MINOR
        assert v.confidence == 1.0
        assert v.original_text == ""

    def test_missing_blocks_default_empty(self):
        output = parse_proposal('{"violations": null}')
        assert output.candidates() == []
        assert output.gray_zone_list() == []

    def test_missing_pattern_id_is_malformed(self):
        with pytest.raises(MalformedProposerOutput):
            parse_proposal('{"violations": [{"originalText": "Painless"}]}')

    def test_prose_is_malformed(self):
        with pytest.raises(MalformedProposerOutput):
            parse_proposal("Sorry, I cannot help with that.")

    def test_evasion_category(self):
        assert evasion_category("structure_login_wall") == "structural"
        assert evasion_category("platform_fake_review") == "platform"
        assert evasion_category("other") == "other"


# ============================================================
# PROMPT
# ============================================================

class TestPrompt:

    def test_catalog_serialized(self):
        prompt = build_prompt()
        assert "P-56-01-001" in prompt
        assert "P-56-13-003" in prompt
        assert "Ulthera" in prompt
        assert "individual results may vary" in prompt
        assert "structure_login_wall" in prompt
        assert "[OUTPUT FORMAT]" in prompt

    def test_gray_zone_examples(self):
        prompt = build_prompt(gray_zone_examples=[{
            "evasion_type": "platform_sns_redirect",
            "evasion_category": "platform",
            "evasion_description": "Prices only in a linked chat channel",
            "evidence_text": "DM us for prices",
        }])
        assert "Prices only in a linked chat channel" in prompt
        assert "DM us for prices" in prompt

    def test_false_positive_cautions(self):
        prompt = build_prompt(false_positive_cautions=[{
            "pattern_id": "P-56-02-003",
            "false_positives": 3,
            "total_feedback": 4,
            "fp_rate": 0.75,
        }])
        assert "FREQUENT FALSE POSITIVES" in prompt
        assert "- P-56-02-003: false positive rate 75% (3/4)" in prompt
        assert prompt.index("FREQUENT FALSE POSITIVES") < prompt.index("KNOWN GRAY ZONE CASES")

    def test_no_caution_section_without_cautions(self):
        assert "FREQUENT FALSE POSITIVES" not in build_prompt()
        assert "FREQUENT FALSE POSITIVES" not in build_prompt(false_positive_cautions=[])

    def test_confirmed_devices(self):
        assert "Morpheus8" in build_prompt(confirmed_devices=["Morpheus8"])

    def test_user_prompt_mentions_images(self):
        assert "2 image(s)" in build_user_prompt("text", image_count=2)
        assert "image" not in build_user_prompt("text")


# ============================================================
# CALL: TIMEOUT + RETRY
# ============================================================

class TestPropose:

    def test_defaults_from_settings(self):
        proposer = ViolationProposer(MockLLM([]))
        assert proposer.timeout == settings.PROPOSER_TIMEOUT_SECONDS
        assert proposer.max_retries == settings.PROPOSER_MAX_RETRIES
        assert proposer.max_output_tokens == settings.PROPOSER_MAX_OUTPUT_TOKENS

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        llm = MockLLM([json.dumps(VALID_OUTPUT)])
        output = await ViolationProposer(llm, timeout=5, max_retries=1).propose("Painless surgery")
        assert len(output.violations) == 1
        assert len(llm.calls) == 1
        assert llm.calls[0]["temperature"] == PROPOSER_TEMPERATURE
        assert llm.calls[0]["json_mode"] is True
        assert "Painless surgery" in llm.calls[0]["prompt"]
        assert "P-56-01-001" in llm.calls[0]["system_instruction"]

    @pytest.mark.asyncio
    async def test_malformed_then_valid_retries_with_strict_instruction(self):
        llm = MockLLM(["not json at all", json.dumps(VALID_OUTPUT)])
        output = await ViolationProposer(llm, timeout=5, max_retries=1).propose("Painless")
        assert len(output.violations) == 1
        assert len(llm.calls) == 2
        assert STRICT_JSON_INSTRUCTION not in llm.calls[0]["prompt"]
        assert STRICT_JSON_INSTRUCTION in llm.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_timeout_retried_once_then_raises(self):
        llm = MockLLM([json.dumps(VALID_OUTPUT)], delay=1.0)
        proposer = ViolationProposer(llm, timeout=0.01, max_retries=1)
        with pytest.raises(ProposerTimeout) as exc_info:
            await proposer.propose("Painless")
        assert len(llm.calls) == 2
        assert exc_info.value.code == "MC_PROPOSER_TIMEOUT"

    @pytest.mark.asyncio
    async def test_malformed_twice_raises(self):
        llm = MockLLM(["nope", "still nope"])
        with pytest.raises(MalformedProposerOutput):
            await ViolationProposer(llm, timeout=5, max_retries=1).propose("Painless")
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_provider_error_mapped(self):
        llm = MockLLM([RuntimeError("quota exceeded")])
        with pytest.raises(ProposerError) as exc_info:
            await ViolationProposer(llm, timeout=5, max_retries=0).propose("Painless")
        assert not isinstance(exc_info.value, ProposerTimeout)
        assert exc_info.value.details["error_type"] == "RuntimeError"
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_provider_unavailable_not_retried(self):
        llm = MockLLM([ProviderUnavailable("circuit open"), json.dumps(VALID_OUTPUT)])
        with pytest.raises(ProviderUnavailable):
            await ViolationProposer(llm, timeout=5, max_retries=1).propose("Painless")
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_gray_zone_examples_reach_prompt(self):
        llm = MockLLM([json.dumps(VALID_OUTPUT)])
        await ViolationProposer(llm, timeout=5).propose(
            "Painless",
            gray_zone_examples=[{"evasion_type": "other", "evasion_description": "Unique example 42"}],
        )
        assert "Unique example 42" in llm.calls[0]["system_instruction"]
