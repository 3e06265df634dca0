"""
Domain records shared across the scan pipeline.

Monitors and budget alerts are user-owned aggregates persisted by the store.
RawPost is the normalized shape every platform fetcher returns; Result is
what survives matching and scoring and gets written to the database.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class ScanTrigger(str, Enum):
    """What caused a scan to be requested."""
    CRON = "cron"
    MANUAL = "manual"


class BudgetPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AlertLevel(str, Enum):
    WARNING = "warning"
    EXCEEDED = "exceeded"


@dataclass
class ScheduleWindow:
    """Active hours for a monitor, evaluated in the monitor's own timezone."""
    enabled: bool = False
    start_hour: int = 9
    end_hour: int = 17
    # 0=Sunday .. 6=Saturday, empty means every day
    days: list[int] = field(default_factory=list)
    timezone: str = "America/New_York"


@dataclass
class Monitor:
    """A user's configured watch over a set of platforms."""
    id: int
    user_id: str
    name: str
    keywords: list[str]
    platforms: list[str]
    company_name: str | None = None
    search_query: str | None = None
    is_active: bool = True
    schedule: ScheduleWindow = field(default_factory=ScheduleWindow)
    is_scanning: bool = False
    scan_started_at: datetime | None = None
    last_manual_scan_at: datetime | None = None
    last_checked_at: datetime | None = None
    new_match_count: int = 0
    created_at: datetime | None = None


@dataclass
class RawPost:
    """Normalized post returned by a platform fetcher. Never persisted as-is."""
    source_url: str
    title: str
    body: str
    author: str | None
    platform: str
    posted_at: datetime | None = None
    upvotes: int = 0
    comments: int = 0
    author_karma: int | None = None
    author_account_age_days: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def engagement_score(self) -> int:
        """Raw engagement used for ranking and lead scoring."""
        return max(self.upvotes, 0) + max(self.comments, 0)

    @property
    def text(self) -> str:
        """Title and body joined for matching."""
        return f"{self.title}\n{self.body}" if self.body else self.title


@dataclass
class Result:
    """A persisted match between a monitor and an external post."""
    monitor_id: int
    source_url: str
    platform: str
    title: str
    content: str
    author: str | None
    posted_at: datetime | None
    matched_terms: list[str] = field(default_factory=list)
    engagement_score: int = 0
    lead_score: int = 0
    lead_score_factors: dict[str, int] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    sentiment: str | None = None
    sentiment_score: float | None = None
    conversation_category: str | None = None
    ai_summary: str | None = None
    ai_analyzed_at: datetime | None = None
    is_viewed: bool = False
    is_hidden: bool = False
    is_clicked: bool = False
    is_saved: bool = False
    created_at: datetime | None = None


@dataclass
class BudgetAlert:
    """Spend threshold on AI usage. user_id None means organisation-wide."""
    id: int
    name: str
    period: BudgetPeriod
    threshold_usd: float
    warning_percent: float = 80.0
    user_id: str | None = None
    current_period_spend: float = 0.0
    last_triggered_at: datetime | None = None
    notify_email: str | None = None
    notify_webhook: str | None = None
    is_active: bool = True


@dataclass
class BudgetAlertRecord:
    """Immutable history row written each time an alert fires."""
    alert_id: int
    period_start: datetime
    period_end: datetime
    spend_usd: float
    threshold_usd: float
    percent: float
    level: AlertLevel
    notification_sent: bool = False
    id: int | None = None
    created_at: datetime | None = None
