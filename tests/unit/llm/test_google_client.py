"""
Unit tests for sonar/llm/google_client.py

Tests the Gemini provider with a mocked google.generativeai module.
"""

from unittest.mock import AsyncMock

import pytest

from sonar.llm.base import LLMResponse
from sonar.llm.google_client import GoogleProvider


class TestGoogleProvider:
    """Tests for GoogleProvider class."""

    def test_init_configures_sdk(self, mock_google_genai):
        """Test provider initialization."""
        provider = GoogleProvider(api_key="test-key", model="gemini-2.0-flash")

        mock_google_genai.configure.assert_called_once_with(api_key="test-key")
        assert provider.is_configured() is True
        assert provider.provider_name == "Google"
        assert provider.model_name == "gemini-2.0-flash"

    def test_init_no_key(self, mock_google_genai):
        provider = GoogleProvider(api_key="")

        mock_google_genai.configure.assert_not_called()
        assert provider.is_configured() is False

    @pytest.mark.asyncio
    async def test_generate(self, mock_google_genai):
        """Test a prompt is sent and usage metadata extracted."""
        provider = GoogleProvider(api_key="test-key")

        response = await provider.generate(prompt="Classify this post.", temperature=0.2, max_tokens=300)

        assert isinstance(response, LLMResponse)
        assert response.content == "This is a test response from Gemini."
        assert response.model == "gemini-2.0-flash"
        assert response.usage == {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150}

        mock_google_genai.types.GenerationConfig.assert_called_once_with(
            temperature=0.2,
            max_output_tokens=300,
            response_mime_type=None,
        )
        model = mock_google_genai.GenerativeModel.return_value
        model.generate_content_async.assert_awaited_once_with("Classify this post.")

    @pytest.mark.asyncio
    async def test_json_mode(self, mock_google_genai):
        await GoogleProvider(api_key="test-key").generate(prompt="Return JSON.", json_mode=True)

        config_kwargs = mock_google_genai.types.GenerationConfig.call_args.kwargs
        assert config_kwargs["response_mime_type"] == "application/json"

    @pytest.mark.asyncio
    async def test_prompt_flattening(self, mock_google_genai):
        """Test the system prompt is folded into the single Gemini prompt."""
        await GoogleProvider(api_key="test-key").generate(
            prompt="Now classify.",
            system_prompt="You analyze posts.",
        )

        model = mock_google_genai.GenerativeModel.return_value
        sent = model.generate_content_async.call_args.args[0]
        assert sent == "You analyze posts.\n\nNow classify."

    @pytest.mark.asyncio
    async def test_empty_text(self, mock_google_genai):
        model = mock_google_genai.GenerativeModel.return_value
        model.generate_content_async.return_value.text = ""

        response = await GoogleProvider(api_key="test-key").generate(prompt="Test")
        assert response.content == ""

    @pytest.mark.asyncio
    async def test_api_error_propagates(self, mock_google_genai):
        model = mock_google_genai.GenerativeModel.return_value
        model.generate_content_async = AsyncMock(side_effect=RuntimeError("quota exceeded"))

        with pytest.raises(RuntimeError, match="quota exceeded"):
            await GoogleProvider(api_key="test-key").generate(prompt="Test")
