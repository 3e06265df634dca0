"""
LLM provider layer used by result analysis.

Sentiment, category and summary extraction go through LLMProvider, so the
backing service (OpenAI or Google) is a config switch.
"""

from .base import LLMProvider, LLMResponse
from .openai_client import OpenAIProvider
from .google_client import GoogleProvider
from .factory import create_llm_provider, create_llm_provider_from_config

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "OpenAIProvider",
    "GoogleProvider",
    "create_llm_provider",
    "create_llm_provider_from_config",
]
