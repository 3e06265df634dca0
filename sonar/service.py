"""
Service composition.

Wires the store, cache, counters, fetchers, scheduler, AI dispatch and
budget alerts together from Config, and owns their lifecycle. start()
launches the workers and the APScheduler jobs for cron ticks, stuck-scan
reaping and budget alerts. shutdown() stops them and closes network clients.
clear() drops cached and counted state.
"""

import logging
from datetime import datetime, timezone

from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .ai_budget import AIBudgetGate
from .analysis import AIDispatcher, ContentAnalyzer
from .budget_alerts import BudgetAlertEvaluator
from .cache import QueryCache
from .config import Config
from .llm import create_llm_provider_from_config
from .notifications import EmailConfig, EmailNotifier, NotificationDispatcher, WebhookNotifier
from .plans import PlanProvider, StorePlanProvider
from .platforms import PlatformFetcher, create_fetchers
from .rate_limit import CounterBackend, FallbackCounters, MemoryCounters, RateLimiter, create_counter_backend
from .scheduler import ScanScheduler
from .store import ResultStore

logger = logging.getLogger("sonar.service")


class SonarService:
    """All long-lived components of one Sonar process."""

    def __init__(
        self,
        store: ResultStore,
        cache: QueryCache,
        counters: CounterBackend,
        rate_limiter: RateLimiter,
        plans: PlanProvider,
        fetchers: dict[str, PlatformFetcher],
        scheduler: ScanScheduler,
        evaluator: BudgetAlertEvaluator,
        notifier: NotificationDispatcher | None = None,
        worker_count: int = 4,
        evaluation_interval_minutes: float = 60,
        reap_interval_minutes: float = 1,
    ):
        self.store = store
        self.cache = cache
        self.counters = counters
        self.rate_limiter = rate_limiter
        self.plans = plans
        self.fetchers = fetchers
        self.scheduler = scheduler
        self.evaluator = evaluator
        self.notifier = notifier
        self.worker_count = worker_count
        self.evaluation_interval_minutes = evaluation_interval_minutes
        self.reap_interval_minutes = reap_interval_minutes
        self.jobs: AsyncIOScheduler | None = None
        self._started = False

    @classmethod
    def from_config(cls, cfg: Config) -> "SonarService":
        """Build every component from configuration."""
        store = ResultStore(cfg.database.path)
        plans = StorePlanProvider(cfg.database.path)
        cache = QueryCache(
            max_entries=cfg.cache.max_entries,
            sweep_interval=cfg.cache.sweep_interval,
            eviction_batch=cfg.cache.eviction_batch,
        )
        counters = create_counter_backend(cfg.redis.url, cfg.redis.key_prefix)
        rate_limiter = RateLimiter(
            counters,
            limits=cfg.rate_limits.as_limits(),
            window_seconds=cfg.rate_limits.window_seconds,
        )
        fetchers = create_fetchers(
            cron_intervals=cfg.scan.cron_intervals,
            timeout=cfg.scan.fetch_timeout,
            reddit_subreddits=cfg.reddit.subreddits,
            reddit_user_agent=cfg.reddit.user_agent,
            twitter_enabled=cfg.twitter.enabled,
            twitter_db_path=cfg.twitter.db_path,
        )

        dispatcher = None
        try:
            llm = create_llm_provider_from_config(cfg)
        except ValueError as e:
            logger.warning(f"AI analysis disabled: {e}")
            llm = None
        if llm is not None:
            gate = AIBudgetGate(store, counters, plans, reference_timezone=cfg.budget.reference_timezone)
            dispatcher = AIDispatcher(ContentAnalyzer(llm), gate, store, plans)
            logger.info(f"AI analysis enabled via {llm.provider_name} ({llm.model_name})")

        email = None
        if cfg.smtp.email_from:
            email = EmailNotifier(
                EmailConfig(
                    host=cfg.smtp.host,
                    port=cfg.smtp.port,
                    username=cfg.smtp.username,
                    password=cfg.smtp.password,
                    use_tls=cfg.smtp.use_tls,
                    email_from=cfg.smtp.email_from,
                )
            )
        notifier = NotificationDispatcher(email=email, webhook=WebhookNotifier(timeout=cfg.api.webhook_timeout))

        scheduler = ScanScheduler(
            store,
            cache,
            fetchers,
            rate_limiter,
            plans,
            dispatcher=dispatcher,
            platform_concurrency=cfg.scan.platform_concurrency,
            fetch_timeout=cfg.scan.fetch_timeout,
            fetch_limit=cfg.scan.fetch_limit,
            lookback_hours=cfg.scan.lookback_hours,
            stuck_scan_minutes=cfg.scan.stuck_scan_minutes,
            poll_interval=cfg.scan.poll_interval,
        )
        evaluator = BudgetAlertEvaluator(
            store,
            notifier,
            reference_timezone=cfg.budget.reference_timezone,
            suppression_hours=cfg.budget.suppression_hours,
        )
        return cls(
            store=store,
            cache=cache,
            counters=counters,
            rate_limiter=rate_limiter,
            plans=plans,
            fetchers=fetchers,
            scheduler=scheduler,
            evaluator=evaluator,
            notifier=notifier,
            worker_count=cfg.scan.worker_count,
            evaluation_interval_minutes=cfg.budget.evaluation_interval_minutes,
        )

    @property
    def running(self) -> bool:
        return self._started

    def _job_failed(self, event: JobExecutionEvent) -> None:
        logger.error(f"Scheduled job {event.job_id} failed: {event.exception}")

    def build_jobs(self, cron: bool = True, budgets: bool = True) -> AsyncIOScheduler:
        """
        Periodic jobs: one cron tick per platform at its own interval, the
        stuck-scan reaper, and budget alert evaluation.

        Cron and budget jobs first fire at startup. Missed runs are coalesced
        and a job never overlaps itself.
        """
        jobs = AsyncIOScheduler(
            timezone=timezone.utc,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        now = datetime.now(timezone.utc)

        jobs.add_job(
            self.scheduler.reset_stuck_scans,
            trigger=IntervalTrigger(minutes=self.reap_interval_minutes),
            id="reap_stuck_scans",
            replace_existing=True,
        )
        if cron:
            for platform, fetcher in self.fetchers.items():
                jobs.add_job(
                    self.scheduler.run_cron_tick,
                    trigger=IntervalTrigger(minutes=fetcher.cron_interval_minutes),
                    args=[platform],
                    id=f"cron_{platform}",
                    replace_existing=True,
                    next_run_time=now,
                )
        if budgets:
            jobs.add_job(
                self.evaluator.evaluate_all,
                trigger=IntervalTrigger(minutes=self.evaluation_interval_minutes),
                id="budget_alerts",
                replace_existing=True,
                next_run_time=now,
            )
        jobs.add_listener(self._job_failed, EVENT_JOB_ERROR)
        return jobs

    async def start(self, cron: bool = True, budgets: bool = True) -> None:
        """Start the cache sweep, scan workers and periodic jobs."""
        if self.running:
            return
        self.cache.start()
        self.scheduler.start(self.worker_count)
        self.jobs = self.build_jobs(cron=cron, budgets=budgets)
        self.jobs.start()
        self._started = True
        logger.info(f"Sonar service started with jobs: {', '.join(j.id for j in self.jobs.get_jobs())}")

    async def shutdown(self) -> None:
        """Stop background work and close network clients."""
        if self.jobs is not None and self.jobs.running:
            self.jobs.shutdown(wait=False)
        self.jobs = None
        self._started = False

        await self.scheduler.stop()
        await self.cache.shutdown()
        for fetcher in self.fetchers.values():
            await fetcher.close()
        if self.notifier is not None:
            await self.notifier.close()
        await self.counters.close()
        logger.info("Sonar service stopped")

    def clear(self) -> None:
        """Drop cached queries and in-process counters."""
        self.cache.clear()
        local = self.counters.fallback if isinstance(self.counters, FallbackCounters) else self.counters
        if isinstance(local, MemoryCounters):
            local.clear()
        logger.info("Cache and local counters cleared")
