"""
Plan catalog.

Every subscription tier maps to one immutable PlanLimits record. The tier
itself is owned by the billing system; Sonar only reads it through a
PlanProvider.
"""

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

logger = logging.getLogger("sonar.plans")

ALL_PLATFORMS = (
    "reddit",
    "hackernews",
    "twitter",
    "producthunt",
    "devto",
    "googlereviews",
    "trustpilot",
    "appstore",
    "playstore",
    "quora",
)


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: str | None) -> "PlanTier":
        """Map a stored plan string to a tier, defaulting to FREE."""
        try:
            return cls((value or "").lower())
        except ValueError:
            logger.warning(f"Unknown plan '{value}', treating as free")
            return cls.FREE


@dataclass(frozen=True)
class AIFeatures:
    sentiment: bool
    pain_point_categories: bool
    # False means only the user's first result is analysed
    unlimited_analysis: bool


@dataclass(frozen=True)
class AIRequestLimits:
    per_minute: int
    per_hour: int
    per_day: int
    daily_token_budget: int


@dataclass(frozen=True)
class PlanLimits:
    """Limits for a single tier."""
    display_name: str
    monitors: int
    keywords_per_monitor: int
    platforms: tuple[str, ...]
    cooldown_hours: float
    refresh_delay_hours: float
    ai_features: AIFeatures
    ai_limits: AIRequestLimits

    def can_access_platform(self, platform: str) -> bool:
        return platform in self.platforms


PLAN_LIMITS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        display_name="Free",
        monitors=1,
        keywords_per_monitor=3,
        platforms=("reddit",),
        cooldown_hours=24,
        refresh_delay_hours=24,
        ai_features=AIFeatures(sentiment=True, pain_point_categories=False, unlimited_analysis=False),
        ai_limits=AIRequestLimits(per_minute=1, per_hour=3, per_day=5, daily_token_budget=5_000),
    ),
    PlanTier.PRO: PlanLimits(
        display_name="Pro",
        monitors=10,
        keywords_per_monitor=20,
        platforms=ALL_PLATFORMS,
        cooldown_hours=4,
        refresh_delay_hours=4,
        ai_features=AIFeatures(sentiment=True, pain_point_categories=True, unlimited_analysis=True),
        ai_limits=AIRequestLimits(per_minute=5, per_hour=30, per_day=100, daily_token_budget=50_000),
    ),
    PlanTier.ENTERPRISE: PlanLimits(
        display_name="Team",
        monitors=30,
        keywords_per_monitor=35,
        platforms=ALL_PLATFORMS,
        cooldown_hours=1,
        refresh_delay_hours=2,
        ai_features=AIFeatures(sentiment=True, pain_point_categories=True, unlimited_analysis=True),
        ai_limits=AIRequestLimits(per_minute=10, per_hour=100, per_day=500, daily_token_budget=200_000),
    ),
}


def get_plan_limits(tier: PlanTier) -> PlanLimits:
    """Look up limits for a tier. Every PlanTier member has an entry."""
    return PLAN_LIMITS[tier]


class PlanProvider(Protocol):
    """Source of truth for a user's subscription tier."""

    def get_user_plan(self, user_id: str) -> PlanTier: ...


class StorePlanProvider:
    """Reads the plan column written by the billing system into the users table."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_user_plan(self, user_id: str) -> PlanTier:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT plan FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return PlanTier.FREE
        return PlanTier.parse(row[0])


class StaticPlanProvider:
    """Fixed mapping, handy for tests and single-tenant deployments."""

    def __init__(self, plans: dict[str, PlanTier] | None = None, default: PlanTier = PlanTier.FREE):
        self.plans = dict(plans or {})
        self.default = default

    def get_user_plan(self, user_id: str) -> PlanTier:
        return self.plans.get(user_id, self.default)
