"""
AI Budget Gate.

Every AI call is admitted here before dispatch. Two limits apply per user:
- a daily token allowance by plan tier, measured from the AI usage ledger and
  reset at midnight in the reference timezone;
- per-minute, per-hour and per-day request caps, counted in the shared
  counter backend (Redis with in-process fallback).

The gate fails closed: when the allowance cannot cover the estimated cost of
the next call, BudgetExceeded is raised and nothing is spent.
"""

import asyncio
import logging
import math
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable
from zoneinfo import ZoneInfo

from .errors import BudgetExceeded
from .plans import PlanProvider, get_plan_limits
from .rate_limit import CounterBackend, window_bounds
from .models import utcnow
from .store import ResultStore

logger = logging.getLogger("sonar.ai_budget")


@dataclass
class BudgetStatus:
    user_id: str
    daily_budget: int
    tokens_used: int
    tokens_reserved: int

    @property
    def remaining(self) -> int:
        return self.daily_budget - self.tokens_used - self.tokens_reserved


def day_bounds(now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Midnight-to-midnight day containing now, in tz."""
    local = now.astimezone(tz)
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    end = (start + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, end


class AIBudgetGate:
    """Admission control for AI calls."""

    def __init__(
        self,
        store: ResultStore,
        counters: CounterBackend,
        plans: PlanProvider,
        reference_timezone: str = "UTC",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.counters = counters
        self.plans = plans
        self.tz = ZoneInfo(reference_timezone)
        self._clock = clock
        self._lock = asyncio.Lock()
        # Tokens promised to calls that have not been recorded yet
        self._reserved: dict[str, int] = defaultdict(int)

    def status(self, user_id: str) -> BudgetStatus:
        limits = get_plan_limits(self.plans.get_user_plan(user_id)).ai_limits
        start, end = day_bounds(self._clock(), self.tz)
        used = self.store.sum_ai_tokens(user_id, start, end)
        return BudgetStatus(user_id, limits.daily_token_budget, used, self._reserved.get(user_id, 0))

    async def _check_request_rate(self, user_id: str, now: datetime) -> None:
        limits = get_plan_limits(self.plans.get_user_plan(user_id)).ai_limits
        _, day_end = day_bounds(now, self.tz)
        ts = now.timestamp()

        windows = []
        for name, seconds, limit in (("minute", 60, limits.per_minute), ("hour", 3600, limits.per_hour)):
            start, reset_at = window_bounds(ts, seconds)
            windows.append((name, f"ai:requests:{name}:{user_id}:{start}", reset_at, limit))
        windows.append(
            ("day", f"ai:requests:day:{user_id}:{day_end.date().isoformat()}", day_end.timestamp(), limits.per_day)
        )

        for name, key, reset_at, limit in windows:
            count = await self.counters.incr(key, 1, reset_at)
            if count > limit:
                retry_after = max(1, math.ceil(reset_at - ts))
                raise BudgetExceeded(user_id, f"AI request limit per {name} reached ({limit})", retry_after)

    async def admit(self, user_id: str, estimated_tokens: int) -> BudgetStatus:
        """
        Check that a call estimated at estimated_tokens fits the user's budget.

        Raises:
            BudgetExceeded: If the daily allowance or a request cap would be exceeded.
        """
        now = self._clock()
        status = self.status(user_id)
        if status.daily_budget <= 0:
            raise BudgetExceeded(user_id, "plan has no AI allowance")
        if status.remaining <= 0 or estimated_tokens > status.remaining:
            _, day_end = day_bounds(now, self.tz)
            retry_after = max(1, math.ceil((day_end - now).total_seconds()))
            raise BudgetExceeded(
                user_id,
                f"daily token budget exhausted ({status.tokens_used}/{status.daily_budget} used)",
                retry_after,
            )
        await self._check_request_rate(user_id, now)
        return status

    @asynccontextmanager
    async def reserve(self, user_id: str, estimated_tokens: int) -> AsyncIterator[BudgetStatus]:
        """
        Admit a call and hold its estimated tokens until the block exits.

        Record the real usage in the ledger inside the block.
        """
        async with self._lock:
            status = await self.admit(user_id, estimated_tokens)
            self._reserved[user_id] += estimated_tokens
        try:
            yield status
        finally:
            self._reserved[user_id] -= estimated_tokens
            if self._reserved[user_id] <= 0:
                del self._reserved[user_id]
