"""
LLM Provider — Abstract Interface

All LLM calls go through this interface. Swap providers
by changing MEDCHECK_LLM_PROVIDER in env.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass(frozen=True)
class ImagePart:
    """An inline image sent alongside the prompt."""
    data: bytes
    mime_type: str = "image/png"


class LLMProvider(ABC):
    """Abstract base for LLM providers."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        json_mode: bool = False,
        images: Optional[Sequence[ImagePart]] = None,
        max_output_tokens: Optional[int] = None,
    ) -> str:
        """Generate a text response from the LLM."""
        ...

    async def generate_json(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.3,
        images: Optional[Sequence[ImagePart]] = None,
    ) -> dict:
        """Generate and parse a JSON response."""
        text = await self.generate(
            prompt=prompt,
            system_instruction=system_instruction,
            temperature=temperature,
            json_mode=True,
            images=images,
        )
        return parse_json_response(text)


def strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` wrapper if the model added one."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[-1] if "\n" in cleaned else cleaned[3:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def repair_json(text: str) -> str:
    """
    Close a truncated JSON document.

    Tracks open objects/arrays outside of strings (honoring escapes),
    closes an unterminated string, drops a dangling comma, then appends
    the missing closers innermost first.
    """
    stack: list[str] = []
    in_string = False
    escaped = False

    for ch in text:
        if escaped:
            escaped = False
            continue
        if ch == "\\" and in_string:
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()

    repaired = text
    if in_string:
        repaired += '"'
    repaired = repaired.rstrip()
    while repaired.endswith(","):
        repaired = repaired[:-1].rstrip()
    for opener in reversed(stack):
        repaired += "]" if opener == "[" else "}"
    return repaired


def parse_json_response(text: str, repair: bool = True) -> dict:
    """
    Parse a model response as a JSON object.

    Raises:
        ValueError: if the response is not (and cannot be repaired into)
            a JSON object.
    """
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        if not repair:
            raise ValueError(
                f"LLM returned invalid JSON: {e}. Raw response: {text[:300]}"
            ) from e
        try:
            parsed = json.loads(repair_json(cleaned))
        except json.JSONDecodeError as e2:
            raise ValueError(
                f"LLM returned invalid JSON (repair failed): {e2}. Raw response: {text[:300]}"
            ) from e2
    if not isinstance(parsed, dict):
        raise ValueError(f"LLM returned JSON {type(parsed).__name__}, expected an object")
    return parsed
