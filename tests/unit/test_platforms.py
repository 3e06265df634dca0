"""
Unit tests for sonar/platforms/

Tests the Hacker News, Reddit and Twitter adapters against mocked upstreams,
plus cookie account registration for the twscrape pool.
"""

import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from sonar.cache import CACHE_TTL
from sonar.models import utcnow
from sonar.platforms import FetchQuery, create_fetchers, or_query
from sonar.platforms.hackernews import HN_ALGOLIA_BASE, HackerNewsFetcher
from sonar.platforms.reddit import REDDIT_BASE, RedditFetcher
from sonar.platforms.twitter import TwitterFetcher, add_cookie_account, parse_cookies, tweet_to_post


def _client(handler, base_url):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


class TestFetchQuery:
    def test_normalized_terms(self):
        query = FetchQuery(terms=["Acme", " acme ", "Invoice Tool", ""])
        assert query.normalized_terms == ["acme", "invoice tool"]

    def test_or_query_quotes_phrases(self):
        assert or_query(["acme", "invoice tool"]) == 'acme OR "invoice tool"'


class TestHackerNewsFetcher:
    """Tests for HackerNewsFetcher."""

    @pytest.mark.asyncio
    async def test_fetch(self):
        """Test hits are normalized to posts and the query is OR-joined."""
        requests = []
        created = int(time.time()) - 600

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={
                "hits": [
                    {
                        "objectID": "4242",
                        "title": "Ask HN: Alternatives to Acme?",
                        "story_text": "We outgrew it.",
                        "author": "pg_fan",
                        "points": 31,
                        "num_comments": 12,
                        "created_at_i": created,
                        "url": None,
                    },
                    {"title": "missing id"},
                ]
            })

        fetcher = HackerNewsFetcher(client=_client(handler, HN_ALGOLIA_BASE))
        posts = await fetcher.fetch(FetchQuery(terms=["Acme", "invoice tool"], limit=500))
        await fetcher.close()

        [request] = requests
        assert request.url.path == "/api/v1/search_by_date"
        params = parse_qs(urlparse(str(request.url)).query)
        assert params["query"] == ['acme OR "invoice tool"']
        assert params["tags"] == ["story"]
        assert params["hitsPerPage"] == ["100"]

        [post] = posts
        assert post.source_url == "https://news.ycombinator.com/item?id=4242"
        assert post.platform == "hackernews"
        assert post.upvotes == 31
        assert post.comments == 12
        assert post.posted_at == datetime.fromtimestamp(created, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_no_terms_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        fetcher = HackerNewsFetcher(client=_client(handler, HN_ALGOLIA_BASE))
        assert await fetcher.fetch(FetchQuery(terms=[])) == []

    @pytest.mark.asyncio
    async def test_upstream_error_raises(self):
        fetcher = HackerNewsFetcher(client=_client(lambda r: httpx.Response(503), HN_ALGOLIA_BASE))
        with pytest.raises(httpx.HTTPStatusError):
            await fetcher.fetch(FetchQuery(terms=["acme"]))

    def test_cache_defaults(self):
        fetcher = HackerNewsFetcher()
        query = FetchQuery(terms=["B", "a"])
        assert fetcher.cache_ttl(query) == CACHE_TTL["hackernews"]
        assert fetcher.cache_params(query)["terms"] == ["a", "b"]


def _listing(*children):
    return {"data": {"children": [{"data": c} for c in children]}}


def _reddit_post(post_id: str, hours_ago: float = 1, **overrides):
    data = {
        "id": post_id,
        "permalink": f"/r/startups/comments/{post_id}/",
        "title": f"Post {post_id}",
        "selftext": "",
        "author": "someone",
        "subreddit": "startups",
        "score": 5,
        "num_comments": 2,
        "created_utc": time.time() - hours_ago * 3600,
    }
    data.update(overrides)
    return data


class TestRedditFetcher:
    """Tests for RedditFetcher."""

    @pytest.mark.asyncio
    async def test_fetch_merges_subreddits(self):
        """Test every subreddit is read and old posts are dropped."""
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if "startups" in request.url.path:
                return httpx.Response(200, json=_listing(_reddit_post("a1"), _reddit_post("a2", hours_ago=48)))
            return httpx.Response(200, json=_listing(_reddit_post("b1", subreddit="SaaS")))

        fetcher = RedditFetcher(["startups", "SaaS"], client=_client(handler, REDDIT_BASE))
        posts = await fetcher.fetch(FetchQuery(terms=["acme"], lookback_hours=24))

        assert sorted(paths) == ["/r/saas/new.json", "/r/startups/new.json"]
        assert sorted(p.source_url for p in posts) == [
            "https://reddit.com/r/startups/comments/a1/",
            "https://reddit.com/r/startups/comments/b1/",
        ]
        assert posts[0].metadata["reddit_id"] in ("a1", "b1")

    @pytest.mark.asyncio
    async def test_partial_failure_tolerated(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "startups" in request.url.path:
                return httpx.Response(429)
            return httpx.Response(200, json=_listing(_reddit_post("b1")))

        fetcher = RedditFetcher(["startups", "SaaS"], client=_client(handler, REDDIT_BASE))
        posts = await fetcher.fetch(FetchQuery(terms=["acme"]))
        assert len(posts) == 1

    @pytest.mark.asyncio
    async def test_all_subreddits_failing_raises(self):
        """Test a total outage is reported as a platform failure."""
        fetcher = RedditFetcher(["startups", "SaaS"], client=_client(lambda r: httpx.Response(500), REDDIT_BASE))
        with pytest.raises(RuntimeError, match="All 2 subreddit listings failed"):
            await fetcher.fetch(FetchQuery(terms=["acme"]))

    def test_cache_params_ignore_keywords(self):
        """Test monitors with different keywords share one listing."""
        fetcher = RedditFetcher(["startups", "SaaS"])
        first = fetcher.cache_params(FetchQuery(terms=["acme"]))
        second = fetcher.cache_params(FetchQuery(terms=["globex", "initech"]))
        assert first == second
        assert first["subreddits"] == ["saas", "startups"]

    def test_cache_ttl_follows_busiest_subreddit(self):
        query = FetchQuery(terms=["acme"])
        assert RedditFetcher(["startups", "obscure_sub"]).cache_ttl(query) == CACHE_TTL["reddit_hot"]
        assert RedditFetcher(["obscure_sub"]).cache_ttl(query) == CACHE_TTL["reddit_search"]

    def test_query_option_overrides_subreddits(self):
        fetcher = RedditFetcher(["startups"])
        params = fetcher.cache_params(FetchQuery(terms=["acme"], options={"subreddits": ["Python"]}))
        assert params["subreddits"] == ["python"]


def _tweet(tweet_id: int = 1, date: datetime | None = None, user=True):
    tweet = MagicMock()
    tweet.id = tweet_id
    tweet.rawContent = "Anyone know a good acme alternative?"
    tweet.date = date or utcnow() - timedelta(hours=1)
    tweet.likeCount = 10
    tweet.retweetCount = 2
    tweet.replyCount = 3
    tweet.viewCount = 900
    tweet.lang = "en"
    tweet.hashtags = ["saas"]
    if user:
        tweet.user.username = "buyer"
        tweet.user.followersCount = 1500
        tweet.user.created = utcnow() - timedelta(days=400)
    else:
        tweet.user = None
    return tweet


class TestTwitter:
    """Tests for the twscrape-backed fetcher."""

    def test_tweet_to_post(self):
        post = tweet_to_post(_tweet(99))

        assert post.source_url == "https://x.com/buyer/status/99"
        assert post.title == "Anyone know a good acme alternative?"
        assert post.upvotes == 12
        assert post.comments == 3
        assert post.author_karma == 1500
        assert post.author_account_age_days == 400
        assert post.metadata["hashtags"] == ["saas"]

    def test_tweet_without_user(self):
        post = tweet_to_post(_tweet(user=False))
        assert post.author == "unknown"
        assert post.author_karma is None

    @pytest.mark.asyncio
    async def test_fetch(self):
        """Test the search query and lookback filtering."""
        fetcher = TwitterFetcher(min_api_delay=0)
        tweets = [_tweet(1), _tweet(2, date=utcnow() - timedelta(days=3))]
        searches = []

        async def search(query, limit):
            searches.append((query, limit))
            for tweet in tweets:
                yield tweet

        fetcher._api = MagicMock()
        fetcher._api.search = search

        posts = await fetcher.fetch(FetchQuery(terms=["acme", "invoice tool"], limit=50))

        [(query, limit)] = searches
        assert query.startswith('(acme OR "invoice tool") lang:en since:')
        assert limit == 50
        assert [p.metadata["tweet_id"] for p in posts] == [1]

    @pytest.mark.asyncio
    async def test_fetch_without_terms(self, mock_twscrape_api):
        assert await TwitterFetcher(min_api_delay=0).fetch(FetchQuery(terms=[])) == []
        mock_twscrape_api.assert_not_called()


class TestCookieAccounts:
    """Tests for parse_cookies() and add_cookie_account()."""

    def test_parse_cookie_list(self):
        data = [{"name": "auth_token", "value": "abc"}, {"name": "ct0", "value": "def"}, {"name": "empty"}]
        assert parse_cookies(data) == {"auth_token": "abc", "ct0": "def"}

    def test_parse_wrapped_list(self):
        assert parse_cookies({"cookies": [{"Name": "ct0", "Value": "x"}]}) == {"ct0": "x"}

    def test_parse_mapping(self):
        assert parse_cookies({"auth_token": "abc", "ct0": 1}) == {"auth_token": "abc", "ct0": "1"}

    @pytest.mark.asyncio
    async def test_add_account_replaces_existing(self, mock_twscrape_api):
        await add_cookie_account("buyer", {"auth_token": "abc", "ct0": "def"}, db_path="test.db")

        mock_twscrape_api.assert_called_once_with("test.db")
        api = mock_twscrape_api.return_value
        api.pool.delete_accounts.assert_awaited_once_with(["buyer"])
        kwargs = api.pool.add_account.call_args.kwargs
        assert kwargs["username"] == "buyer"
        assert kwargs["cookies"] == "auth_token=abc; ct0=def"

    @pytest.mark.asyncio
    async def test_add_account_requires_session_cookies(self, mock_twscrape_api):
        with pytest.raises(ValueError, match="ct0"):
            await add_cookie_account("buyer", {"auth_token": "abc"})
        mock_twscrape_api.assert_not_called()


class TestCreateFetchers:
    def test_default_registry(self):
        fetchers = create_fetchers(cron_intervals={"hackernews": 15})
        assert set(fetchers) == {"hackernews", "reddit"}
        assert fetchers["hackernews"].cron_interval_minutes == 15
        assert fetchers["reddit"].cron_interval_minutes == 60

    def test_twitter_enabled(self):
        fetchers = create_fetchers(twitter_enabled=True, twitter_db_path="pool.db")
        assert fetchers["twitter"].db_path == "pool.db"
