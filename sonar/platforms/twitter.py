"""
Twitter/X fetcher using twscrape.

IMPORTANT: twscrape needs logged-in accounts before this fetcher returns anything.

1. Create a file called `accounts.txt` with your Twitter credentials:
   username:password:email:email_password

2. Add and log in the accounts:
   twscrape add_accounts accounts.txt username:password:email:email_password
   twscrape login_accounts

3. Check account status:
   twscrape accounts

This populates the accounts.db SQLite database that twscrape uses for authentication.
Accounts exported from a logged-in browser session can be added instead with:

   sonar add-twitter-account <username> <cookies.json>
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any

from twscrape import API
from twscrape.models import Tweet

from ..models import RawPost, utcnow
from .base import FetchQuery, PlatformFetcher, or_query

logger = logging.getLogger("sonar.platforms.twitter")


def tweet_to_post(tweet: Tweet) -> RawPost:
    """Normalize a twscrape Tweet."""
    user = tweet.user
    username = user.username if user else "unknown"
    account_age_days = None
    if user and user.created:
        account_age_days = (utcnow() - user.created).days
    return RawPost(
        source_url=f"https://x.com/{username}/status/{tweet.id}",
        title=tweet.rawContent or "",
        body="",
        author=username,
        platform="twitter",
        posted_at=tweet.date,
        upvotes=(tweet.likeCount or 0) + (tweet.retweetCount or 0),
        comments=tweet.replyCount or 0,
        author_karma=user.followersCount if user else None,
        author_account_age_days=account_age_days,
        metadata={
            "tweet_id": tweet.id,
            "views": tweet.viewCount,
            "language": tweet.lang,
            "hashtags": list(tweet.hashtags or []),
        },
    )


class TwitterFetcher(PlatformFetcher):
    """
    Searches recent tweets through the twscrape account pool.

    Searches are serialized with a minimum delay between them; twscrape
    handles account rotation and rate-limit waits itself.
    """

    platform = "twitter"

    def __init__(
        self,
        db_path: str = "accounts.db",
        lang: str = "en",
        min_api_delay: float = 5.0,
        cron_interval_minutes: int = 60,
    ):
        self.db_path = db_path
        self.lang = lang
        self.cron_interval_minutes = cron_interval_minutes
        self._api: API | None = None
        # Only one search against the account pool at a time
        self._api_semaphore = asyncio.Semaphore(1)
        self._min_api_delay = min_api_delay
        self._last_api_call: float = 0.0
        logger.info(f"TwitterFetcher initialized with database: {db_path}")

    def _get_api(self) -> API:
        """Get or create the twscrape API instance."""
        if self._api is None:
            self._api = API(self.db_path)
        return self._api

    async def fetch(self, query: FetchQuery) -> list[RawPost]:
        terms = query.normalized_terms
        if not terms:
            return []

        since = utcnow() - timedelta(hours=query.lookback_hours)
        search_query = f"({or_query(terms)}) lang:{self.lang} since:{since.strftime('%Y-%m-%d')}"
        api = self._get_api()

        raw_tweets: list[Tweet] = []
        async with self._api_semaphore:
            time_since_last = time.time() - self._last_api_call
            if time_since_last < self._min_api_delay:
                await asyncio.sleep(self._min_api_delay - time_since_last)

            logger.info(f"Searching for: '{search_query}' (limit: {query.limit})")
            try:
                async for tweet in api.search(search_query, limit=query.limit):
                    raw_tweets.append(tweet)
            finally:
                self._last_api_call = time.time()

        posts = []
        for tweet in raw_tweets:
            try:
                post = tweet_to_post(tweet)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse tweet {tweet.id}: {e}")
                continue
            if post.posted_at is None or post.posted_at >= since:
                posts.append(post)

        logger.info(f"Retrieved {len(posts)} tweets for {len(terms)} terms")
        return posts


REQUIRED_COOKIES = ("auth_token", "ct0")


def parse_cookies(data: Any) -> dict[str, str]:
    """
    Extract cookies from a browser export.

    Accepts a list of {"name", "value"} objects, {"cookies": [...]}, or a
    plain name-to-value mapping.
    """
    entries = data.get("cookies") if isinstance(data, dict) and "cookies" in data else data
    if isinstance(entries, dict):
        return {str(k): str(v) for k, v in entries.items()}

    cookies = {}
    for cookie in entries or []:
        name = cookie.get("name") or cookie.get("Name")
        value = cookie.get("value") or cookie.get("Value")
        if name and value:
            cookies[name] = value
    return cookies


async def add_cookie_account(username: str, cookies: dict[str, str], db_path: str = "accounts.db") -> None:
    """
    Register a cookie-authenticated account in the twscrape pool, replacing any with the same name.

    Raises:
        ValueError: If the session cookies twscrape needs are missing.
    """
    missing = [name for name in REQUIRED_COOKIES if name not in cookies]
    if missing:
        raise ValueError(f"Missing required cookies: {missing}")

    api = API(db_path)
    await api.pool.delete_accounts([username])
    await api.pool.add_account(
        username=username,
        password="cookie_based_auth",
        email=f"{username}@cookie.local",
        email_password="",
        cookies="; ".join(f"{k}={v}" for k, v in cookies.items()),
    )
    logger.info(f"Added twscrape account '{username}' to {db_path}")
