"""
Test fixtures and sample data for Sonar tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from sonar.llm.base import LLMProvider, LLMResponse
from sonar.models import Monitor, RawPost, Result
from sonar.platforms.base import FetchQuery, PlatformFetcher

NOW = datetime(2025, 3, 12, 15, 0, tzinfo=timezone.utc)


def make_sample_post(
    source_url: str = "https://reddit.com/r/startups/comments/abc123/",
    title: str = "Looking for a tool like acme for our team",
    body: str = "We are tired of spreadsheets. Any suggestions?",
    author: str | None = "founder42",
    platform: str = "reddit",
    posted_at: datetime = None,
    upvotes: int = 12,
    comments: int = 4,
    author_karma: int | None = None,
    author_account_age_days: int | None = None,
    metadata: dict[str, Any] = None,
) -> RawPost:
    """Create a sample RawPost for testing."""
    return RawPost(
        source_url=source_url,
        title=title,
        body=body,
        author=author,
        platform=platform,
        posted_at=posted_at or NOW - timedelta(hours=2),
        upvotes=upvotes,
        comments=comments,
        author_karma=author_karma,
        author_account_age_days=author_account_age_days,
        metadata=metadata if metadata is not None else {"subreddit": "startups"},
    )


def make_sample_posts(count: int = 5, platform: str = "reddit", text: str = "acme") -> list[RawPost]:
    """Create posts with distinct URLs, all mentioning text."""
    return [
        make_sample_post(
            source_url=f"https://example.com/{platform}/{i}",
            title=f"Post #{i} about {text}",
            body="",
            platform=platform,
            upvotes=i * 3,
        )
        for i in range(count)
    ]


def make_monitor(
    id: int = 1,
    user_id: str = "user-1",
    name: str = "Acme watch",
    keywords: list[str] = None,
    platforms: list[str] = None,
    company_name: str | None = None,
    search_query: str | None = None,
    **kwargs,
) -> Monitor:
    """Create an in-memory Monitor (not persisted)."""
    return Monitor(
        id=id,
        user_id=user_id,
        name=name,
        keywords=keywords if keywords is not None else ["acme"],
        platforms=platforms if platforms is not None else ["reddit"],
        company_name=company_name,
        search_query=search_query,
        **kwargs,
    )


def make_result(
    monitor_id: int = 1,
    source_url: str = "https://example.com/post/1",
    platform: str = "reddit",
    title: str = "Looking for a tool like acme",
    content: str = "Our current setup is painful.",
    **kwargs,
) -> Result:
    """Create a Result ready for insert_results()."""
    kwargs.setdefault("author", "founder42")
    kwargs.setdefault("posted_at", NOW - timedelta(hours=1))
    kwargs.setdefault("matched_terms", ["acme"])
    kwargs.setdefault(
        "lead_score_factors",
        {"intent": 15, "engagement": 5, "recency": 15, "author_quality": 7, "category": 2, "total": 44},
    )
    kwargs.setdefault("lead_score", 44)
    return Result(
        monitor_id=monitor_id,
        source_url=source_url,
        platform=platform,
        title=title,
        content=content,
        **kwargs,
    )


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeFetcher(PlatformFetcher):
    """Fetcher returning canned posts, or raising a canned error."""

    def __init__(
        self,
        platform: str = "reddit",
        posts: list[RawPost] = None,
        error: Exception | None = None,
        delay: float = 0.0,
        cron_interval_minutes: int = 60,
    ):
        self.platform = platform
        self.posts = posts or []
        self.error = error
        self.delay = delay
        self.cron_interval_minutes = cron_interval_minutes
        self.calls: list[FetchQuery] = []
        self.closed = False

    async def fetch(self, query: FetchQuery) -> list[RawPost]:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.posts)

    async def close(self) -> None:
        self.closed = True


ANALYSIS_JSON = (
    '{"sentiment": "negative", "sentiment_score": -0.6, '
    '"category": "solution_request", "summary": "Team wants an acme alternative."}'
)


class FakeLLM(LLMProvider):
    """LLM returning a fixed reply with fixed usage."""

    def __init__(
        self,
        content: str = ANALYSIS_JSON,
        model: str = "gpt-4o-mini",
        prompt_tokens: int = 200,
        completion_tokens: int = 50,
        error: Exception | None = None,
    ):
        self.content = content
        self.model = model
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.error = error
        self.calls: list[dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        return "Fake"

    @property
    def model_name(self) -> str:
        return self.model

    def is_configured(self) -> bool:
        return True

    async def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> LLMResponse:
        self.calls.append({"prompt": prompt, "json_mode": json_mode, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return LLMResponse(
            content=self.content,
            model=self.model,
            usage={
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": self.completion_tokens,
                "total_tokens": self.prompt_tokens + self.completion_tokens,
            },
        )
