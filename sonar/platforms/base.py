"""
Abstract base class for platform fetchers.

A fetcher turns a FetchQuery into a list of normalized RawPosts for one
platform. The scheduler wraps every fetch in the query cache and a timeout,
so implementations only deal with the upstream API itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..cache import platform_cache_ttl
from ..models import RawPost


@dataclass
class FetchQuery:
    """What a monitor asks a platform for."""
    terms: list[str]
    lookback_hours: int = 24
    limit: int = 100
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def normalized_terms(self) -> list[str]:
        """Lower-cased, de-duplicated and sorted, so equivalent monitors share cache entries."""
        return sorted({t.strip().lower() for t in self.terms if t and t.strip()})


def or_query(terms: list[str]) -> str:
    """Join terms with OR, quoting multi-word phrases."""
    return " OR ".join(f'"{t}"' if " " in t else t for t in terms)


class PlatformFetcher(ABC):
    """
    Abstract base class for platform adapters.

    Implement this interface to add a new source.
    """

    # Platform identifier, as stored on monitors
    platform: str = ""
    # How often cron scans this platform
    cron_interval_minutes: int = 60

    def cache_ttl(self, query: FetchQuery) -> float:
        """Seconds a fetched result stays in the query cache."""
        return platform_cache_ttl(self.platform)

    def cache_params(self, query: FetchQuery) -> dict[str, Any]:
        """Parameters identifying this fetch in the query cache."""
        return {
            "terms": query.normalized_terms,
            "lookback_hours": query.lookback_hours,
            "limit": query.limit,
        }

    @abstractmethod
    async def fetch(self, query: FetchQuery) -> list[RawPost]:
        """
        Fetch candidate posts for a query.

        Raises:
            Any exception on upstream failure; the scheduler records it as a
            per-platform failure.
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
