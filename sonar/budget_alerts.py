"""
Budget Alert Evaluator.

On a fixed cadence, recomputes each active alert's spend for its current
period from the AI usage ledger and classifies it:

    percent >= 100                 -> exceeded
    warning_percent <= percent     -> warning
    otherwise                      -> nothing

A triggered alert writes a history row and notifies its channels, at most
once per suppression window (4 hours by default) per alert.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from .models import AlertLevel, BudgetAlert, BudgetAlertRecord, BudgetPeriod, utcnow
from .notifications import NotificationDispatcher
from .store import ResultStore

logger = logging.getLogger("sonar.budget_alerts")


def period_bounds(period: BudgetPeriod, now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """
    Start and end of the period containing now, in tz.

    Days start at 00:00, weeks on Sunday 00:00, months on the 1st 00:00.
    """
    local = now.astimezone(tz)
    midnight = datetime(local.year, local.month, local.day, tzinfo=tz)

    if period == BudgetPeriod.DAILY:
        start = midnight
        end_day = (start + timedelta(days=1)).date()
        return start, datetime(end_day.year, end_day.month, end_day.day, tzinfo=tz)

    if period == BudgetPeriod.WEEKLY:
        # weekday() is Monday=0, so Sunday is 6
        days_since_sunday = (local.weekday() + 1) % 7
        start_day = (midnight - timedelta(days=days_since_sunday)).date()
        end_day = start_day + timedelta(days=7)
        return (
            datetime(start_day.year, start_day.month, start_day.day, tzinfo=tz),
            datetime(end_day.year, end_day.month, end_day.day, tzinfo=tz),
        )

    start = datetime(local.year, local.month, 1, tzinfo=tz)
    if local.month == 12:
        end = datetime(local.year + 1, 1, 1, tzinfo=tz)
    else:
        end = datetime(local.year, local.month + 1, 1, tzinfo=tz)
    return start, end


def classify(spend: float, threshold: float, warning_percent: float) -> tuple[float, AlertLevel | None]:
    """Return (percent of threshold spent, alert level or None)."""
    percent = spend / threshold * 100 if threshold > 0 else 0.0
    if percent >= 100:
        return percent, AlertLevel.EXCEEDED
    if percent >= warning_percent:
        return percent, AlertLevel.WARNING
    return percent, None


@dataclass
class AlertEvaluation:
    """Result of evaluating one alert."""
    alert_id: int
    spend: float
    percent: float
    level: AlertLevel | None = None
    suppressed: bool = False
    record: BudgetAlertRecord | None = None
    notified: bool = False

    @property
    def triggered(self) -> bool:
        return self.record is not None


class BudgetAlertEvaluator:
    """Periodic spend check for all active budget alerts."""

    def __init__(
        self,
        store: ResultStore,
        notifier: NotificationDispatcher | None = None,
        reference_timezone: str = "UTC",
        suppression_hours: float = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.tz = ZoneInfo(reference_timezone)
        self.suppression = timedelta(hours=suppression_hours)
        self._clock = clock

    def evaluate_alert(self, alert: BudgetAlert, now: datetime) -> AlertEvaluation:
        """Recompute spend, classify, and record a trigger unless suppressed."""
        start, end = period_bounds(alert.period, now, self.tz)
        spend = self.store.sum_ai_cost(start, end, alert.user_id)
        self.store.update_alert_spend(alert.id, spend)
        alert.current_period_spend = spend

        percent, level = classify(spend, alert.threshold_usd, alert.warning_percent)
        evaluation = AlertEvaluation(alert.id, spend, percent, level)
        if level is None:
            return evaluation

        if alert.last_triggered_at is not None and now - alert.last_triggered_at < self.suppression:
            logger.debug(f"Budget alert {alert.id} {level.value} suppressed (last sent {alert.last_triggered_at})")
            evaluation.suppressed = True
            return evaluation

        record = BudgetAlertRecord(
            alert_id=alert.id,
            period_start=start,
            period_end=end,
            spend_usd=spend,
            threshold_usd=alert.threshold_usd,
            percent=percent,
            level=level,
        )
        self.store.record_alert_trigger(record, now)
        alert.last_triggered_at = now
        evaluation.record = record
        logger.warning(
            f"Budget alert '{alert.name}' {level.value}: ${spend:.2f} of ${alert.threshold_usd:.2f} ({percent:.1f}%)"
        )
        return evaluation

    async def _notify(self, alert: BudgetAlert, evaluation: AlertEvaluation) -> None:
        if self.notifier is None:
            return
        delivered = await self.notifier.notify(alert, evaluation.record)
        if delivered:
            self.store.mark_history_notified(evaluation.record.id)
            evaluation.notified = True

    async def evaluate_all(self, now: datetime | None = None) -> list[AlertEvaluation]:
        """
        Evaluate every active alert, then deliver notifications concurrently.

        A failing alert or channel is logged and does not affect the others.
        """
        now = now or self._clock()
        evaluations = []
        pending = []
        for alert in self.store.list_active_budget_alerts():
            try:
                evaluation = self.evaluate_alert(alert, now)
            except sqlite3.Error as e:
                logger.error(f"Evaluating budget alert {alert.id} failed: {e}")
                continue
            evaluations.append(evaluation)
            if evaluation.triggered:
                pending.append((alert, evaluation))

        results = await asyncio.gather(
            *(self._notify(alert, evaluation) for alert, evaluation in pending),
            return_exceptions=True,
        )
        for (alert, _), result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error(f"Notifying budget alert {alert.id} failed: {result}")

        triggered = sum(1 for e in evaluations if e.triggered)
        logger.info(f"Evaluated {len(evaluations)} budget alerts, {triggered} triggered")
        return evaluations
