"""
Scan Scheduler.

Decides whether a monitor may be scanned now and runs the scan pipeline:

    eligibility -> claim is_scanning -> job queue -> worker
        -> per platform: query cache / fetch -> match -> lead score
        -> one insert of all new results -> release flag -> AI dispatch

Manual scans come from the API. Cron ticks run at each platform's cadence and
queue one scan per monitor covering every platform it is due on. Workers
drain the durable job queue in the store.
"""

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .analysis import AIDispatcher
from .cache import QueryCache
from .config import worker_context
from .diagnostics import ScanReport
from .errors import (
    CooldownActive,
    InactiveMonitor,
    MonitorNotFound,
    OutsideScheduleWindow,
    PersistenceFailed,
    RateLimited,
    ScanInProgress,
    ScanRejected,
    UpstreamFetchFailed,
)
from .lead_scorer import score_lead
from .matcher import match_post, search_terms
from .models import Monitor, RawPost, Result, ScanTrigger, utcnow
from .plans import PlanLimits, PlanProvider, get_plan_limits
from .platforms import FetchQuery, PlatformFetcher
from .rate_limit import RateLimiter
from .schedule import is_schedule_active
from .store import ResultStore, ScanJob

logger = logging.getLogger("sonar.scheduler")


@dataclass
class ScanOutcome:
    """
    What happened to a scan request.

    status is one of:
        accepted   queued for a worker
        completed  ran inline (wait=True); report is set
        skipped    cron scan not due (outside schedule window)
        rejected   failed eligibility; error is set
    """
    monitor_id: int
    trigger: ScanTrigger
    status: str
    error: ScanRejected | None = None
    report: ScanReport | None = None
    job_id: int | None = None
    reason: str | None = None

    @property
    def started(self) -> bool:
        return self.status in ("accepted", "completed")

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return self.error.to_dict()
        if self.status == "skipped":
            return {"started": False, "skipped": self.reason}
        data: dict[str, Any] = {"started": True}
        if self.job_id is not None:
            data["jobId"] = self.job_id
        if self.report is not None:
            data["report"] = self.report.to_dict()
        return data


def cooldown_remaining(
    monitor: Monitor,
    limits: PlanLimits,
    now: datetime,
) -> tuple[timedelta, datetime | None]:
    """
    Time left before the next manual scan, and when that is.

    A scan exactly at last_manual_scan_at + cooldown is allowed.
    """
    if monitor.last_manual_scan_at is None:
        return timedelta(0), None
    next_scan_at = monitor.last_manual_scan_at + timedelta(hours=limits.cooldown_hours)
    remaining = next_scan_at - now
    if remaining <= timedelta(0):
        return timedelta(0), next_scan_at
    return remaining, next_scan_at


class ScanScheduler:
    """Eligibility checks, the scan pipeline and the worker pool."""

    def __init__(
        self,
        store: ResultStore,
        cache: QueryCache,
        fetchers: dict[str, PlatformFetcher],
        rate_limiter: RateLimiter,
        plans: PlanProvider,
        dispatcher: AIDispatcher | None = None,
        platform_concurrency: int = 5,
        fetch_timeout: float = 30.0,
        fetch_limit: int = 100,
        lookback_hours: int = 24,
        stuck_scan_minutes: int = 10,
        poll_interval: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.fetchers = fetchers
        self.rate_limiter = rate_limiter
        self.plans = plans
        self.dispatcher = dispatcher
        self.fetch_timeout = fetch_timeout
        self.fetch_limit = fetch_limit
        self.lookback_hours = lookback_hours
        self.stuck_scan_minutes = stuck_scan_minutes
        self.poll_interval = poll_interval
        self._clock = clock
        # Bounds concurrent upstream fetches across all running scans
        self._fetch_semaphore = asyncio.Semaphore(platform_concurrency)
        self._workers: list[asyncio.Task] = []

    def _limits_for(self, monitor: Monitor) -> PlanLimits:
        return get_plan_limits(self.plans.get_user_plan(monitor.user_id))

    def _load_monitor(self, monitor_id: int, user_id: str | None) -> Monitor:
        monitor = self.store.get_monitor(monitor_id)
        if monitor is None or (user_id is not None and monitor.user_id != user_id):
            raise MonitorNotFound(monitor_id, f"Monitor {monitor_id} not found")
        return monitor

    # =========================================================================
    # Eligibility
    # =========================================================================

    async def check_eligibility(
        self,
        monitor: Monitor,
        trigger: ScanTrigger,
        now: datetime,
    ) -> str | None:
        """
        Run the eligibility checks in order, stopping at the first failure.

        Returns:
            A skip reason for cron scans that should quietly not run, else None.

        Raises:
            ScanRejected: The request is not eligible.
        """
        if not monitor.is_active:
            raise InactiveMonitor(monitor.id, f"Monitor {monitor.id} is inactive")

        if monitor.is_scanning:
            raise ScanInProgress(monitor.id, f"Monitor {monitor.id} is already being scanned")

        if not is_schedule_active(monitor.schedule, now):
            if trigger == ScanTrigger.CRON:
                return "outside schedule window"
            raise OutsideScheduleWindow(
                monitor.id,
                f"Monitor {monitor.id} only scans {monitor.schedule.start_hour:02d}:00-"
                f"{monitor.schedule.end_hour:02d}:00 ({monitor.schedule.timezone})",
            )

        if trigger == ScanTrigger.MANUAL:
            limits = self._limits_for(monitor)
            remaining, next_scan_at = cooldown_remaining(monitor, limits, now)
            if remaining > timedelta(0):
                raise CooldownActive(monitor.id, remaining, next_scan_at, limits.cooldown_hours)

            result = await self.rate_limiter.check(monitor.user_id, "write")
            if not result.allowed:
                raise RateLimited(monitor.id, result.retry_after)

        return None

    async def request_scan(
        self,
        monitor_id: int,
        trigger: ScanTrigger | str = ScanTrigger.MANUAL,
        user_id: str | None = None,
        wait: bool = False,
        platforms: list[str] | None = None,
    ) -> ScanOutcome:
        """
        Ask for a scan of one monitor.

        Args:
            monitor_id: Monitor to scan.
            trigger: cron or manual. Only manual scans are subject to cooldown
                and the write rate limit.
            user_id: Owner check; a monitor owned by someone else is reported
                as not found.
            wait: Run the pipeline inline instead of queueing a job.
            platforms: Restrict the scan to these platforms.

        Returns:
            ScanOutcome. Eligibility failures are returned, not raised.
        """
        trigger = ScanTrigger(trigger)
        now = self._clock()

        try:
            monitor = self._load_monitor(monitor_id, user_id)
            skip_reason = await self.check_eligibility(monitor, trigger, now)
        except ScanRejected as e:
            log = logger.debug if isinstance(e, ScanInProgress) else logger.info
            log(f"Scan of monitor {monitor_id} ({trigger.value}) rejected: {e}")
            return ScanOutcome(monitor_id, trigger, "rejected", error=e)

        if skip_reason:
            logger.debug(f"Skipping cron scan of monitor {monitor_id}: {skip_reason}")
            return ScanOutcome(monitor_id, trigger, "skipped", reason=skip_reason)

        if not self.store.try_claim_scan(monitor_id, now):
            error = ScanInProgress(monitor_id, f"Monitor {monitor_id} is already being scanned")
            return ScanOutcome(monitor_id, trigger, "rejected", error=error)

        if wait:
            report = await self.execute_scan(monitor, trigger, platforms)
            return ScanOutcome(monitor_id, trigger, "completed", report=report)

        try:
            job_id = self.store.enqueue_job(monitor_id, trigger, platforms)
        except sqlite3.Error:
            self.store.release_scan(monitor_id)
            raise
        logger.info(f"Queued {trigger.value} scan of monitor {monitor_id} (job {job_id})")
        return ScanOutcome(monitor_id, trigger, "accepted", job_id=job_id)

    def scan_status(self, monitor_id: int, user_id: str | None = None) -> dict[str, Any]:
        """
        Scan state of a monitor for display.

        Raises:
            MonitorNotFound: Unknown monitor or not owned by user_id.
        """
        monitor = self._load_monitor(monitor_id, user_id)
        now = self._clock()
        limits = self._limits_for(monitor)
        remaining, next_scan_at = cooldown_remaining(monitor, limits, now)
        can_scan = (
            monitor.is_active
            and not monitor.is_scanning
            and remaining <= timedelta(0)
            and is_schedule_active(monitor.schedule, now)
        )
        return {
            "monitorId": monitor.id,
            "isScanning": monitor.is_scanning,
            "lastCheckedAt": monitor.last_checked_at.isoformat() if monitor.last_checked_at else None,
            "lastManualScanAt": monitor.last_manual_scan_at.isoformat() if monitor.last_manual_scan_at else None,
            "newMatchCount": monitor.new_match_count,
            "canScan": can_scan,
            "cooldownRemaining": int(remaining.total_seconds() * 1000),
            "nextScanAt": next_scan_at.isoformat() if remaining > timedelta(0) else None,
            "cooldownHours": limits.cooldown_hours,
        }

    # =========================================================================
    # Pipeline
    # =========================================================================

    def _target_platforms(
        self,
        monitor: Monitor,
        limits: PlanLimits,
        restrict: list[str] | None,
        report: ScanReport,
    ) -> list[str]:
        targets = []
        for platform in monitor.platforms:
            if restrict and platform not in restrict:
                continue
            if not limits.can_access_platform(platform):
                report.add_warning(f"{platform} is not included in the {limits.display_name} plan")
                continue
            if platform not in self.fetchers:
                report.add_warning(f"No fetcher configured for {platform}")
                continue
            targets.append(platform)
        return targets

    def _to_result(self, monitor: Monitor, post: RawPost, matched_terms: list[str], now: datetime) -> Result:
        factors = score_lead(post, now=now)
        return Result(
            monitor_id=monitor.id,
            source_url=post.source_url,
            platform=post.platform,
            title=post.title,
            content=post.body,
            author=post.author,
            posted_at=post.posted_at,
            matched_terms=matched_terms,
            engagement_score=post.engagement_score,
            lead_score=factors.total,
            lead_score_factors=factors.to_dict(),
            metadata=dict(post.metadata),
        )

    async def _scan_platform(
        self,
        monitor: Monitor,
        fetcher: PlatformFetcher,
        query: FetchQuery,
        report: ScanReport,
        now: datetime,
    ) -> list[Result]:
        """Fetch (or serve from cache), match and score one platform. Failures yield []."""
        stats = report.platform(fetcher.platform)
        started = time.monotonic()

        async def fetch() -> list[RawPost]:
            return await asyncio.wait_for(fetcher.fetch(query), timeout=self.fetch_timeout)

        try:
            async with self._fetch_semaphore:
                posts, stats.cache_hit = await self.cache.cached_query(
                    f"{fetcher.platform}:search",
                    fetcher.cache_params(query),
                    fetch,
                    ttl=fetcher.cache_ttl(query),
                )
        except Exception as e:
            cause = f"timed out after {self.fetch_timeout}s" if isinstance(e, asyncio.TimeoutError) else e
            failure = UpstreamFetchFailed(fetcher.platform, cause)
            stats.failed = True
            stats.error = str(failure)
            report.add_error(f"Monitor {monitor.id}: {failure}")
            return []
        finally:
            stats.seconds = time.monotonic() - started

        stats.fetched = len(posts)
        results = []
        for post in posts:
            match = match_post(post, monitor)
            if match.matches:
                results.append(self._to_result(monitor, post, match.matched_terms, now))
        stats.matched = len(results)
        return results

    async def execute_scan(
        self,
        monitor: Monitor,
        trigger: ScanTrigger,
        platforms: list[str] | None = None,
    ) -> ScanReport:
        """
        Run the scan pipeline for a monitor whose scan flag is already claimed.

        The flag is always released and scan statistics recorded, whatever
        happens. Platform failures are reported and skipped; a persistence
        failure aborts the scan with nothing inserted.
        """
        report = ScanReport(monitor_id=monitor.id, trigger=ScanTrigger(trigger).value)
        new_results: list[Result] = []
        covered: list[str] = []
        now = self._clock()

        try:
            limits = self._limits_for(monitor)
            targets = self._target_platforms(monitor, limits, platforms, report)
            covered = list(targets)
            query = FetchQuery(
                terms=search_terms(monitor),
                lookback_hours=self.lookback_hours,
                limit=self.fetch_limit,
            )
            if not query.terms:
                report.add_warning("Monitor has no keywords, company name or query terms")
                targets = []

            batches = await asyncio.gather(
                *(self._scan_platform(monitor, self.fetchers[p], query, report, now) for p in targets)
            )
            candidates = [result for batch in batches for result in batch]

            try:
                new_results = self.store.insert_results(candidates)
            except PersistenceFailed as e:
                report.aborted = True
                report.add_error(f"Monitor {monitor.id}: {e}")
            report.inserted = len(new_results)
        finally:
            self.store.finish_scan(
                monitor.id, ScanTrigger(trigger), len(new_results), self._clock(), platforms=covered
            )
            report.finish()

        if new_results and self.dispatcher is not None:
            try:
                dispatch = await self.dispatcher.dispatch(monitor.user_id, new_results)
                report.analyzed = dispatch.analyzed
                report.ai_cost_usd = dispatch.cost_usd
            except Exception as e:
                report.add_warning(f"AI dispatch failed: {e}")

        logger.info(report.format_summary())
        return report

    # =========================================================================
    # Worker pool
    # =========================================================================

    async def run_job(self, job: ScanJob) -> ScanReport | None:
        """Execute one queued scan job and record its outcome."""
        monitor = self.store.get_monitor(job.monitor_id)
        if monitor is None:
            logger.info(f"Job {job.id}: monitor {job.monitor_id} was deleted, dropping scan")
            self.store.complete_job(job.id, error="monitor deleted")
            return None

        self.store.mark_scan_started(monitor.id, self._clock())
        try:
            report = await self.execute_scan(monitor, job.trigger, job.platforms)
        except Exception as e:
            logger.exception(f"Job {job.id}: scan of monitor {monitor.id} crashed")
            self.store.complete_job(job.id, error=str(e))
            return None

        self.store.complete_job(job.id, error="persistence failed" if report.aborted else None)
        return report

    async def _worker(self, worker_id: int) -> None:
        worker_context.set(worker_id)
        logger.debug(f"Scan worker {worker_id} started")
        while True:
            job = self.store.claim_next_job()
            if job is None:
                await asyncio.sleep(self.poll_interval)
                continue
            logger.info(f"Picked up job {job.id} ({job.trigger.value} scan of monitor {job.monitor_id})")
            await self.run_job(job)

    def start(self, worker_count: int = 4) -> None:
        """Re-queue jobs interrupted by a previous shutdown and start the workers."""
        if self._workers:
            return
        self.store.requeue_running_jobs()
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(worker_count)]
        logger.info(f"Started {worker_count} scan workers")

    async def stop(self) -> None:
        """Cancel the workers. Jobs they were running are re-queued on next start."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Scan workers stopped")

    async def drain(self) -> int:
        """Run queued jobs in this task until the queue is empty. Returns how many ran."""
        count = 0
        while True:
            job = self.store.claim_next_job()
            if job is None:
                return count
            await self.run_job(job)
            count += 1

    # =========================================================================
    # Cron
    # =========================================================================

    def due_platforms(self, monitor: Monitor, now: datetime) -> list[str]:
        """
        Platforms of monitor that a cron scan should cover now.

        A platform is due once it has not been scanned for the longer of the
        plan's refresh delay and the platform's own cron interval.
        """
        limits = self._limits_for(monitor)
        checks = self.store.get_platform_checks(monitor.id)
        due = []
        for platform in monitor.platforms:
            fetcher = self.fetchers.get(platform)
            if fetcher is None or not limits.can_access_platform(platform):
                continue
            interval = max(
                timedelta(hours=limits.refresh_delay_hours),
                timedelta(minutes=fetcher.cron_interval_minutes),
            )
            checked_at = checks.get(platform)
            if checked_at is None or now - checked_at >= interval:
                due.append(platform)
        return due

    async def run_cron_tick(self, platform: str | None = None) -> list[ScanOutcome]:
        """
        Queue one cron scan for every monitor that has a due platform.

        The scan covers all of the monitor's due platforms, so a platform whose
        tick finds the monitor busy is picked up by the next tick of any
        platform. platform limits the tick to monitors watching it.
        """
        now = self._clock()
        outcomes = []
        for monitor in self.store.list_active_monitors(platform):
            due = self.due_platforms(monitor, now)
            if due:
                outcomes.append(await self.request_scan(monitor.id, ScanTrigger.CRON, platforms=due))

        accepted = sum(1 for o in outcomes if o.started)
        logger.info(f"Cron tick for {platform or 'all platforms'}: {accepted}/{len(outcomes)} scans queued")
        return outcomes

    def reset_stuck_scans(self, now: datetime | None = None) -> int:
        cutoff = (now or self._clock()) - timedelta(minutes=self.stuck_scan_minutes)
        return self.store.reset_stuck_scans(cutoff)
