"""
Platform Fetcher Module.

One adapter per external source, all returning normalized RawPost lists.
"""

import logging

from .base import FetchQuery, PlatformFetcher, or_query
from .hackernews import HackerNewsFetcher
from .reddit import RedditFetcher
from .twitter import TwitterFetcher

logger = logging.getLogger("sonar.platforms")


def create_fetchers(
    cron_intervals: dict[str, int] | None = None,
    timeout: float = 15.0,
    reddit_subreddits: list[str] | None = None,
    reddit_user_agent: str = "sonar/0.1",
    twitter_enabled: bool = False,
    twitter_db_path: str = "accounts.db",
) -> dict[str, PlatformFetcher]:
    """
    Build the fetcher registry keyed by platform name.

    Args:
        cron_intervals: Minutes between cron scans per platform.
        timeout: HTTP timeout for API-based fetchers.
        reddit_subreddits: Subreddits to watch (defaults to a tech/startup set).
        twitter_enabled: Whether a twscrape account pool is available.
        twitter_db_path: twscrape accounts database.
    """
    intervals = cron_intervals or {}
    fetchers: dict[str, PlatformFetcher] = {
        "hackernews": HackerNewsFetcher(
            timeout=timeout,
            cron_interval_minutes=intervals.get("hackernews", 30),
        ),
        "reddit": RedditFetcher(
            subreddits=reddit_subreddits,
            user_agent=reddit_user_agent,
            timeout=timeout,
            cron_interval_minutes=intervals.get("reddit", 60),
        ),
    }
    if twitter_enabled:
        fetchers["twitter"] = TwitterFetcher(
            db_path=twitter_db_path,
            cron_interval_minutes=intervals.get("twitter", 60),
        )
    logger.info(f"Platform fetchers ready: {', '.join(sorted(fetchers))}")
    return fetchers


__all__ = [
    "FetchQuery",
    "PlatformFetcher",
    "HackerNewsFetcher",
    "RedditFetcher",
    "TwitterFetcher",
    "create_fetchers",
    "or_query",
]
