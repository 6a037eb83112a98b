"""
LLM provider factory.
"""

from typing import Optional

from medcheck.config import settings
from medcheck.llm import LLMProvider


def get_provider(provider_name: Optional[str] = None) -> LLMProvider:
    """Return the provider named by MEDCHECK_LLM_PROVIDER."""
    name = (provider_name or settings.LLM_PROVIDER).lower()
    if name == "gemini":
        from medcheck.llm.gemini import GeminiProvider
        return GeminiProvider()
    raise ValueError(f"Unknown LLM provider: {name}")
