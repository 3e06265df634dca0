"""
Shared pytest fixtures for Sonar tests.

This module provides:
- Temporary SQLite stores
- A frozen clock shared by every time-dependent component
- Plan providers, counters, rate limiter and query cache
- Mock external services (LLM providers, twscrape)
- Sample data fixtures
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sonar.cache import QueryCache
from sonar.models import RawPost
from sonar.plans import PlanTier, StaticPlanProvider
from sonar.rate_limit import MemoryCounters, RateLimiter
from sonar.store import ResultStore
from tests.fixtures import FrozenClock, make_sample_post, make_sample_posts


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path(tmp_path) -> str:
    """Provide a temporary SQLite database path."""
    return str(tmp_path / "test_sonar.db")


@pytest.fixture
def store(temp_db_path) -> ResultStore:
    """Provide an empty ResultStore."""
    return ResultStore(temp_db_path)


@pytest.fixture
def clock() -> FrozenClock:
    """Provide a frozen clock at 2025-03-12 15:00 UTC (a Wednesday)."""
    return FrozenClock()


@pytest.fixture
def plans() -> StaticPlanProvider:
    """Free by default; pro-user is Pro and team-user is Enterprise."""
    return StaticPlanProvider({"pro-user": PlanTier.PRO, "team-user": PlanTier.ENTERPRISE})


@pytest.fixture
def counters(clock) -> MemoryCounters:
    """In-process counters that expire on the frozen clock."""
    return MemoryCounters(clock=lambda: clock().timestamp())


@pytest.fixture
def rate_limiter(counters, clock) -> RateLimiter:
    return RateLimiter(counters, clock=lambda: clock().timestamp())


@pytest.fixture
def cache() -> QueryCache:
    return QueryCache(max_entries=100, sweep_interval=60)


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def sample_post() -> RawPost:
    """Provide a single sample post."""
    return make_sample_post()


@pytest.fixture
def sample_posts() -> list[RawPost]:
    """Provide a list of sample posts mentioning acme."""
    return make_sample_posts(count=5)


@pytest.fixture
def sample_config_yaml(tmp_path) -> Path:
    """Create a sample config.yaml file."""
    config_path = tmp_path / "config.yaml"
    config_content = """
database:
  path: /tmp/sonar-test.db

llm:
  provider: google
  openai_model: gpt-4o
  google_model: gemini-2.5-flash

scan:
  worker_count: 2
  fetch_timeout: 12
  cron_intervals:
    hackernews: 15

cache:
  max_entries: 500

rate_limits:
  write: 10

budget:
  reference_timezone: America/New_York
  suppression_hours: 2

smtp:
  host: smtp.example.com
  port: 587
  use_tls: true

email:
  from: alerts@example.com

logging:
  level: DEBUG
"""
    config_path.write_text(config_content)
    return config_path


# =============================================================================
# Mock External Services
# =============================================================================


@pytest.fixture
def mock_google_genai():
    """Mock google.generativeai for Gemini API tests."""
    with patch("sonar.llm.google_client.genai") as mock_genai:
        mock_response = MagicMock()
        mock_response.text = "This is a test response from Gemini."
        mock_response.usage_metadata = MagicMock(
            prompt_token_count=100,
            candidates_token_count=50,
            total_token_count=150,
        )

        mock_model = MagicMock()
        mock_model.generate_content_async = AsyncMock(return_value=mock_response)
        mock_genai.GenerativeModel.return_value = mock_model
        yield mock_genai


@pytest.fixture
def mock_openai():
    """Mock AsyncOpenAI for OpenAI API tests."""
    # Patch at the module where it's imported, not where it's defined
    with patch("sonar.llm.openai_client.AsyncOpenAI") as mock_client_class:
        mock_client = MagicMock()

        mock_message = MagicMock()
        mock_message.content = "This is a test response from OpenAI."

        mock_choice = MagicMock()
        mock_choice.message = mock_message

        mock_response = MagicMock()
        mock_response.choices = [mock_choice]
        mock_response.model = "gpt-4o-mini"
        mock_response.usage = MagicMock(
            prompt_tokens=100,
            completion_tokens=50,
            total_tokens=150,
        )

        mock_client.chat.completions.create = AsyncMock(return_value=mock_response)
        mock_client_class.return_value = mock_client
        yield mock_client_class


@pytest.fixture
def mock_twscrape_api():
    """Mock twscrape.API for Twitter fetcher tests."""
    with patch("sonar.platforms.twitter.API") as mock_api_class:
        mock_api = MagicMock()
        mock_api.pool.delete_accounts = AsyncMock()
        mock_api.pool.add_account = AsyncMock()
        mock_api_class.return_value = mock_api
        yield mock_api_class


# =============================================================================
# Config Fixtures
# =============================================================================


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set mock environment variables for testing."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("GOOGLE_API_KEY", "test-google-key")
    monkeypatch.setenv("SMTP_USERNAME", "test@example.com")
    monkeypatch.setenv("SMTP_PASSWORD", "test-password")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
