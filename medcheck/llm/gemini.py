"""
Gemini Provider — Proposer calls through the google.genai SDK.

The client is created on first use, so the package imports and the
rule engine runs without GEMINI_API_KEY.

Call path for one generate():
  1. Refuse immediately (ProviderUnavailable) while the circuit is open
  2. Primary model, with backoff on transient errors (429, 5xx, quota)
  3. Configured fallback model, once
  4. Count the failure toward opening the circuit

Images (screenshots of image-only ads) go inline as bytes parts.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Sequence

from google import genai
from google.genai import types

from medcheck.config import settings
from medcheck.exceptions import ProviderUnavailable
from medcheck.llm import ImagePart, LLMProvider
from medcheck.logging import get_logger

logger = get_logger("llm.gemini")

_TRANSIENT_MARKERS = (
    "429", "500", "503", "rate", "quota", "timeout",
    "connection", "unavailable", "overloaded", "resource_exhausted",
)


def is_transient(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class CircuitBreaker:
    """
    Counts consecutive failed generate() calls.

    closed: calls go through. open: calls are refused until
    recovery_seconds pass. half-open: one call goes through, its outcome
    closes or reopens the circuit.
    """

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        recovery_seconds: Optional[float] = None,
        clock=time.monotonic,
    ):
        self.failure_threshold = failure_threshold or settings.LLM_CIRCUIT_FAILURES
        self.recovery_seconds = (
            settings.LLM_CIRCUIT_RECOVERY_SECONDS if recovery_seconds is None else recovery_seconds
        )
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.recovery_seconds:
            return "half-open"
        return "open"

    @property
    def failures(self) -> int:
        return self._failures

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("LLM circuit closed", extra={"status": "closed"})
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self.state == "half-open" or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning(
                "LLM circuit open after %d consecutive failures; "
                "Proposer calls refused for %.0fs",
                self._failures, self.recovery_seconds,
                extra={"status": "open", "failures": self._failures},
            )

    def check(self) -> None:
        """Raise ProviderUnavailable while the circuit is open."""
        if self.state == "open":
            raise ProviderUnavailable(
                "LLM circuit is open after repeated failures",
                {"failures": self._failures, "recovery_seconds": self.recovery_seconds},
            )


def build_contents(prompt: str, images: Optional[Sequence[ImagePart]] = None) -> list:
    contents: list = [prompt]
    for image in images or ():
        contents.append(types.Part.from_bytes(data=image.data, mime_type=image.mime_type))
    return contents


class GeminiProvider(LLMProvider):
    """Gemini provider with one fallback model and a circuit breaker."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        fallback_model: Optional[str] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self._api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        fallback = settings.GEMINI_FALLBACK_MODEL if fallback_model is None else fallback_model
        self.fallback_model = fallback if fallback and fallback != self.model else None
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._client: Optional[genai.Client] = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self._api_key:
                raise ProviderUnavailable(
                    "GEMINI_API_KEY is not set; use local mode or configure a key",
                    {"provider": "gemini"},
                )
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def _call_model(
        self,
        model: str,
        contents: list,
        config: types.GenerateContentConfig,
        attempts: int,
    ) -> str:
        client = self._get_client()
        for attempt in range(attempts):
            try:
                response = await client.aio.models.generate_content(
                    model=model, contents=contents, config=config,
                )
                return response.text or ""
            except Exception as e:
                if attempt + 1 < attempts and is_transient(e):
                    logger.warning(
                        "Transient error from %s, retrying: %s", model, e,
                        extra={"attempt": attempt + 1, "error_type": type(e).__name__},
                    )
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise
        raise AssertionError("unreachable")

    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        json_mode: bool = False,
        images: Optional[Sequence[ImagePart]] = None,
        max_output_tokens: Optional[int] = None,
    ) -> str:
        self.circuit_breaker.check()

        config = types.GenerateContentConfig(
            temperature=temperature,
            system_instruction=system_instruction,
            max_output_tokens=max_output_tokens,
            response_mime_type="application/json" if json_mode else None,
        )
        contents = build_contents(prompt, images)

        try:
            text = await self._call_model(self.model, contents, config, attempts=2)
        except ProviderUnavailable:
            raise
        except Exception as primary_err:
            if self.fallback_model is None:
                self.circuit_breaker.record_failure()
                raise
            logger.warning(
                "Model %s failed, trying %s: %s", self.model, self.fallback_model, primary_err,
                extra={"error_type": type(primary_err).__name__},
            )
            try:
                text = await self._call_model(self.fallback_model, contents, config, attempts=1)
            except Exception as fallback_err:
                self.circuit_breaker.record_failure()
                raise fallback_err from primary_err

        self.circuit_breaker.record_success()
        return text
