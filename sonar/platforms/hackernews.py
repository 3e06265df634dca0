"""
Hacker News fetcher using the Algolia search API.

API Docs: https://hn.algolia.com/api
"""

import logging
from datetime import datetime, timedelta, timezone

import httpx

from ..models import RawPost, utcnow
from .base import FetchQuery, PlatformFetcher, or_query

logger = logging.getLogger("sonar.platforms.hackernews")

HN_ALGOLIA_BASE = "https://hn.algolia.com/api/v1"
HN_ITEM_URL = "https://news.ycombinator.com/item?id={id}"


class HackerNewsFetcher(PlatformFetcher):
    """Searches HN stories newest-first."""

    platform = "hackernews"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        cron_interval_minutes: int = 30,
    ):
        self._client = client
        self._timeout = timeout
        self.cron_interval_minutes = cron_interval_minutes

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=HN_ALGOLIA_BASE, timeout=self._timeout)
        return self._client

    async def fetch(self, query: FetchQuery) -> list[RawPost]:
        terms = query.normalized_terms
        if not terms:
            return []

        since = utcnow() - timedelta(hours=query.lookback_hours)
        params = {
            "query": or_query(terms),
            "tags": "story",
            "hitsPerPage": min(query.limit, 100),
            "numericFilters": f"created_at_i>{int(since.timestamp())}",
        }

        logger.debug(f"Searching HN for: {params['query']}")
        response = await self._get_client().get("/search_by_date", params=params)
        response.raise_for_status()
        hits = response.json().get("hits", [])

        posts = []
        for hit in hits:
            try:
                posts.append(self._to_post(hit))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse HN hit {hit.get('objectID')}: {e}")
        logger.info(f"Retrieved {len(posts)} HN stories for {len(terms)} terms")
        return posts

    @staticmethod
    def _to_post(hit: dict) -> RawPost:
        posted_at = None
        if hit.get("created_at_i") is not None:
            posted_at = datetime.fromtimestamp(int(hit["created_at_i"]), tz=timezone.utc)
        return RawPost(
            source_url=HN_ITEM_URL.format(id=hit["objectID"]),
            title=hit.get("title") or "",
            body=hit.get("story_text") or "",
            author=hit.get("author"),
            platform="hackernews",
            posted_at=posted_at,
            upvotes=hit.get("points") or 0,
            comments=hit.get("num_comments") or 0,
            metadata={"hn_id": hit["objectID"], "external_url": hit.get("url")},
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
