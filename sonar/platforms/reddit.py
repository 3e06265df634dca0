"""
Reddit fetcher using the public JSON listings.

Pulls the newest posts of a set of subreddits. Keywords are not sent
upstream: the listing is the same for every monitor, so the cache entry is
shared across all monitors watching those subreddits and the content
matcher does the filtering.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ..cache import reddit_cache_ttl
from ..models import RawPost, utcnow
from .base import FetchQuery, PlatformFetcher

logger = logging.getLogger("sonar.platforms.reddit")

REDDIT_BASE = "https://www.reddit.com"
DEFAULT_SUBREDDITS = ["technology", "programming", "webdev", "startups", "SaaS"]


class RedditFetcher(PlatformFetcher):
    """Reads /r/<sub>/new.json for each configured subreddit."""

    platform = "reddit"

    def __init__(
        self,
        subreddits: list[str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        user_agent: str = "sonar/0.1",
        cron_interval_minutes: int = 60,
    ):
        self.subreddits = subreddits or list(DEFAULT_SUBREDDITS)
        self._client = client
        self._timeout = timeout
        self._user_agent = user_agent
        self.cron_interval_minutes = cron_interval_minutes

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=REDDIT_BASE,
                timeout=self._timeout,
                headers={"User-Agent": self._user_agent},
            )
        return self._client

    def _subreddits_for(self, query: FetchQuery) -> list[str]:
        return sorted({s.lower() for s in query.options.get("subreddits") or self.subreddits})

    def cache_params(self, query: FetchQuery) -> dict[str, Any]:
        return {
            "subreddits": self._subreddits_for(query),
            "lookback_hours": query.lookback_hours,
            "limit": query.limit,
        }

    def cache_ttl(self, query: FetchQuery) -> float:
        # The busiest subreddit decides how fresh the listing must be
        return min(reddit_cache_ttl(s) for s in self._subreddits_for(query))

    async def _fetch_subreddit(self, subreddit: str, limit: int) -> list[dict]:
        response = await self._get_client().get(
            f"/r/{subreddit}/new.json", params={"limit": min(limit, 100)}
        )
        response.raise_for_status()
        return response.json().get("data", {}).get("children", [])

    async def fetch(self, query: FetchQuery) -> list[RawPost]:
        subreddits = self._subreddits_for(query)
        since = utcnow() - timedelta(hours=query.lookback_hours)

        tasks = [self._fetch_subreddit(s, query.limit) for s in subreddits]
        listings = await asyncio.gather(*tasks, return_exceptions=True)

        posts: list[RawPost] = []
        failures = 0
        for subreddit, listing in zip(subreddits, listings):
            if isinstance(listing, Exception):
                failures += 1
                logger.warning(f"Failed to fetch r/{subreddit}: {listing}")
                continue
            for child in listing:
                data = child.get("data", {})
                try:
                    post = self._to_post(data)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Failed to parse Reddit post {data.get('id')}: {e}")
                    continue
                if post.posted_at is None or post.posted_at >= since:
                    posts.append(post)

        if subreddits and failures == len(subreddits):
            raise RuntimeError(f"All {failures} subreddit listings failed")

        logger.info(f"Retrieved {len(posts)} Reddit posts from {len(subreddits) - failures} subreddits")
        return posts

    @staticmethod
    def _to_post(data: dict) -> RawPost:
        posted_at = None
        if data.get("created_utc") is not None:
            posted_at = datetime.fromtimestamp(float(data["created_utc"]), tz=timezone.utc)
        return RawPost(
            source_url=f"https://reddit.com{data['permalink']}",
            title=data.get("title") or "",
            body=data.get("selftext") or "",
            author=data.get("author"),
            platform="reddit",
            posted_at=posted_at,
            upvotes=data.get("score") or 0,
            comments=data.get("num_comments") or 0,
            metadata={"subreddit": data.get("subreddit"), "reddit_id": data.get("id")},
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
