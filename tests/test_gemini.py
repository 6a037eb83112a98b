"""
Gemini provider tests. No network: model calls are patched out.
"""

from __future__ import annotations

import pytest

from medcheck.exceptions import ProviderUnavailable
from medcheck.llm import ImagePart
from medcheck.llm.gemini import CircuitBreaker, GeminiProvider, build_contents, is_transient


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def patched_provider(outcomes, **kwargs):
    """Provider whose model calls return or raise per model name."""
    provider = GeminiProvider(api_key="test-key", model="primary", **kwargs)
    provider.calls = []

    async def fake_call(model, contents, config, attempts):
        provider.calls.append(model)
        outcome = outcomes[model]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    provider._call_model = fake_call
    return provider


class TestCircuitBreaker:

    def test_opens_at_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3, recovery_seconds=60, clock=FakeClock())
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == "closed"
        breaker.record_failure()
        assert breaker.state == "open"
        with pytest.raises(ProviderUnavailable) as exc_info:
            breaker.check()
        assert exc_info.value.code == "MC_PROVIDER_UNAVAILABLE"
        assert exc_info.value.details["failures"] == 3

    def test_half_open_after_recovery(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, recovery_seconds=60, clock=clock)
        breaker.record_failure()
        clock.now += 60
        assert breaker.state == "half-open"
        breaker.check()

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=2, recovery_seconds=60, clock=clock)
        breaker.record_failure()
        breaker.record_failure()
        clock.now += 61
        breaker.record_failure()
        assert breaker.state == "open"

    def test_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, recovery_seconds=60, clock=clock)
        breaker.record_failure()
        clock.now += 60
        breaker.record_success()
        assert breaker.state == "closed"
        assert breaker.failures == 0


class TestHelpers:

    def test_is_transient(self):
        assert is_transient(RuntimeError("429 RESOURCE_EXHAUSTED"))
        assert is_transient(RuntimeError("503 Service Unavailable"))
        assert not is_transient(ValueError("400 invalid argument"))

    def test_build_contents_with_images(self):
        contents = build_contents("ad text", [ImagePart(data=b"\x89PNG", mime_type="image/png")])
        assert contents[0] == "ad text"
        assert len(contents) == 2

    def test_build_contents_text_only(self):
        assert build_contents("ad text") == ["ad text"]


class TestGeminiProvider:

    @pytest.mark.asyncio
    async def test_missing_key_is_unavailable(self):
        provider = GeminiProvider(api_key="", model="primary", fallback_model="")
        with pytest.raises(ProviderUnavailable):
            await provider.generate("ad text")
        assert provider.circuit_breaker.failures == 0

    @pytest.mark.asyncio
    async def test_primary_success(self):
        provider = patched_provider({"primary": '{"violations": []}'}, fallback_model="backup")
        assert await provider.generate("ad text", json_mode=True) == '{"violations": []}'
        assert provider.calls == ["primary"]

    @pytest.mark.asyncio
    async def test_falls_back_once(self):
        provider = patched_provider(
            {"primary": RuntimeError("400 bad model"), "backup": "{}"}, fallback_model="backup",
        )
        assert await provider.generate("ad text") == "{}"
        assert provider.calls == ["primary", "backup"]
        assert provider.circuit_breaker.failures == 0

    @pytest.mark.asyncio
    async def test_fallback_same_as_primary_is_skipped(self):
        provider = patched_provider({"primary": RuntimeError("boom")}, fallback_model="primary")
        assert provider.fallback_model is None
        with pytest.raises(RuntimeError):
            await provider.generate("ad text")
        assert provider.calls == ["primary"]

    @pytest.mark.asyncio
    async def test_circuit_refuses_after_failures(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_seconds=60, clock=FakeClock())
        provider = patched_provider(
            {"primary": RuntimeError("boom")}, fallback_model="", circuit_breaker=breaker,
        )
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await provider.generate("ad text")
        with pytest.raises(ProviderUnavailable):
            await provider.generate("ad text")
        assert provider.calls == ["primary", "primary"]
