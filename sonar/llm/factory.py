"""
LLM Provider Factory.

Builds the provider selected in config.yaml (llm.provider).
"""

import logging
from typing import TYPE_CHECKING, Literal

from .base import LLMProvider
from .openai_client import OpenAIProvider
from .google_client import GoogleProvider

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger("sonar.llm.factory")


def create_llm_provider(
    provider: Literal["openai", "google"],
    api_key: str,
    model: str | None = None,
) -> LLMProvider:
    """
    Create an LLM provider.

    Args:
        provider: Which provider to use ("openai" or "google").
        api_key: API key for that provider.
        model: Model override; each provider has its own default.

    Returns:
        Configured LLMProvider instance.

    Raises:
        ValueError: If provider is not supported or the key is missing.
    """
    logger.info(f"Creating LLM provider: {provider}")

    if not api_key:
        raise ValueError(f"An API key is required for the {provider} provider")

    if provider == "openai":
        return OpenAIProvider(api_key=api_key, model=model or "gpt-4o-mini")
    if provider == "google":
        return GoogleProvider(api_key=api_key, model=model or "gemini-2.0-flash")
    raise ValueError(f"Unsupported LLM provider: {provider}")


def create_llm_provider_from_config(cfg: "Config") -> LLMProvider | None:
    """Provider for the configured backend, or None when AI analysis is disabled."""
    if not cfg.app.ai_enabled:
        logger.info("AI analysis disabled in config")
        return None
    if cfg.app.llm_provider == "google":
        return create_llm_provider("google", cfg.google.api_key, cfg.google.model)
    return create_llm_provider("openai", cfg.openai.api_key, cfg.openai.model)
