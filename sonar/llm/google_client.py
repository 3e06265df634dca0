"""
Google Generative AI (Gemini) LLM Provider Implementation.

Provides integration with Google's Generative AI API for result analysis.
"""

import logging

import google.generativeai as genai
from google.generativeai.types import GenerateContentResponse

from .base import LLMProvider, LLMResponse, usage_dict

logger = logging.getLogger("sonar.llm.google")


class GoogleProvider(LLMProvider):
    """Google Generative AI provider implementation."""

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        """
        Initialize the Google Generative AI provider.

        Args:
            api_key: Google API key.
            model: Model to use (default: gemini-2.0-flash).
        """
        self._api_key = api_key
        self._model = model
        self._configured = False

        if api_key:
            genai.configure(api_key=api_key)
            self._configured = True

    @property
    def provider_name(self) -> str:
        return "Google"

    @property
    def model_name(self) -> str:
        return self._model

    def is_configured(self) -> bool:
        return self._configured and bool(self._api_key)

    async def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate a response using Google's Generative AI API.

        Gemini takes a single prompt, so the system prompt is prepended to it.
        """
        logger.debug(f"Sending request to Google ({self._model})")

        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt

        try:
            model = genai.GenerativeModel(
                model_name=self._model,
                generation_config=genai.types.GenerationConfig(
                    temperature=temperature,
                    max_output_tokens=max_tokens,
                    response_mime_type="application/json" if json_mode else None,
                ),
            )

            response: GenerateContentResponse = await model.generate_content_async(full_prompt)

            content = response.text if response.text else ""

            usage = None
            metadata = getattr(response, "usage_metadata", None)
            if metadata:
                usage = usage_dict(
                    metadata.prompt_token_count,
                    metadata.candidates_token_count,
                    metadata.total_token_count,
                )

            logger.debug(f"Google response received, tokens used: {usage}")

            return LLMResponse(
                content=content,
                model=self._model,
                usage=usage,
                raw_response=response,
            )

        except Exception as e:
            logger.error(f"Google API error: {e}")
            raise
