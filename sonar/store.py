"""
Result Store.

SQLite persistence for monitors, results, AI usage, budget alerts and the
durable scan job queue. Results are unique per (monitor_id, source_url) and
inserted with INSERT OR IGNORE, so re-scanning the same post is a no-op.

The per-monitor scan mutex is the conditional update in try_claim_scan():
only one caller can flip is_scanning from 0 to 1.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .errors import PersistenceFailed
from .models import (
    AlertLevel,
    BudgetAlert,
    BudgetAlertRecord,
    BudgetPeriod,
    Monitor,
    Result,
    ScanTrigger,
    ScheduleWindow,
    utcnow,
)

logger = logging.getLogger("sonar.store")

RESULT_FLAGS = ("is_viewed", "is_hidden", "is_clicked", "is_saved")


def _ts(value: datetime | None) -> str | None:
    """Serialize an aware datetime as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ScanJob:
    """A queued scan request."""
    id: int
    monitor_id: int
    trigger: ScanTrigger
    status: str
    platforms: list[str] | None = None
    attempts: int = 0
    error: str | None = None
    created_at: datetime | None = None


class ResultStore:
    """SQLite-backed storage for the scan pipeline."""

    def __init__(self, db_path: str = "sonar.db"):
        self.db_path = db_path
        self._init_db()
        logger.info(f"ResultStore initialized with database: {db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    plan TEXT NOT NULL DEFAULT 'free',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS monitors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    keywords TEXT NOT NULL,
                    platforms TEXT NOT NULL,
                    company_name TEXT,
                    search_query TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    schedule_enabled INTEGER NOT NULL DEFAULT 0,
                    schedule_start_hour INTEGER NOT NULL DEFAULT 9,
                    schedule_end_hour INTEGER NOT NULL DEFAULT 17,
                    schedule_days TEXT NOT NULL DEFAULT '[]',
                    schedule_timezone TEXT NOT NULL DEFAULT 'America/New_York',
                    is_scanning INTEGER NOT NULL DEFAULT 0,
                    scan_started_at TEXT,
                    last_manual_scan_at TEXT,
                    last_checked_at TEXT,
                    new_match_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_monitors_user
                ON monitors(user_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS platform_checks (
                    monitor_id INTEGER NOT NULL REFERENCES monitors(id) ON DELETE CASCADE,
                    platform TEXT NOT NULL,
                    checked_at TEXT NOT NULL,
                    PRIMARY KEY (monitor_id, platform)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    monitor_id INTEGER NOT NULL REFERENCES monitors(id) ON DELETE CASCADE,
                    source_url TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT,
                    author TEXT,
                    posted_at TEXT,
                    matched_terms TEXT NOT NULL DEFAULT '[]',
                    engagement_score INTEGER NOT NULL DEFAULT 0,
                    lead_score INTEGER NOT NULL DEFAULT 0,
                    lead_score_factors TEXT NOT NULL DEFAULT '{}',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    sentiment TEXT,
                    sentiment_score REAL,
                    conversation_category TEXT,
                    ai_summary TEXT,
                    ai_analyzed_at TEXT,
                    is_viewed INTEGER NOT NULL DEFAULT 0,
                    is_hidden INTEGER NOT NULL DEFAULT 0,
                    is_clicked INTEGER NOT NULL DEFAULT 0,
                    is_saved INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    UNIQUE(monitor_id, source_url)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS ai_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    model TEXT NOT NULL,
                    prompt_tokens INTEGER NOT NULL DEFAULT 0,
                    completion_tokens INTEGER NOT NULL DEFAULT 0,
                    total_tokens INTEGER NOT NULL DEFAULT 0,
                    cost_usd REAL NOT NULL DEFAULT 0,
                    latency_ms INTEGER NOT NULL DEFAULT 0,
                    result_id INTEGER,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_ai_usage_created
                ON ai_usage(created_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS budget_alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    name TEXT NOT NULL,
                    period TEXT NOT NULL,
                    threshold_usd REAL NOT NULL,
                    warning_percent REAL NOT NULL DEFAULT 80,
                    current_period_spend REAL NOT NULL DEFAULT 0,
                    last_triggered_at TEXT,
                    notify_email TEXT,
                    notify_webhook TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS budget_alert_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    alert_id INTEGER NOT NULL REFERENCES budget_alerts(id) ON DELETE CASCADE,
                    period_start TEXT NOT NULL,
                    period_end TEXT NOT NULL,
                    spend_usd REAL NOT NULL,
                    threshold_usd REAL NOT NULL,
                    percent REAL NOT NULL,
                    level TEXT NOT NULL,
                    notification_sent INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS scan_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    monitor_id INTEGER NOT NULL,
                    trigger TEXT NOT NULL,
                    platforms TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_scan_jobs_status
                ON scan_jobs(status, id)
            """)

            conn.commit()

    # =========================================================================
    # Users
    # =========================================================================

    def upsert_user(self, user_id: str, plan: str = "free", email: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, plan) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET plan = excluded.plan, email = COALESCE(excluded.email, users.email)
                """,
                (user_id, email, plan),
            )

    def get_user_email(self, user_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT email FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["email"] if row else None

    # =========================================================================
    # Monitors
    # =========================================================================

    def _row_to_monitor(self, row: sqlite3.Row) -> Monitor:
        return Monitor(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            keywords=json.loads(row["keywords"]),
            platforms=json.loads(row["platforms"]),
            company_name=row["company_name"],
            search_query=row["search_query"],
            is_active=bool(row["is_active"]),
            schedule=ScheduleWindow(
                enabled=bool(row["schedule_enabled"]),
                start_hour=row["schedule_start_hour"],
                end_hour=row["schedule_end_hour"],
                days=json.loads(row["schedule_days"]),
                timezone=row["schedule_timezone"],
            ),
            is_scanning=bool(row["is_scanning"]),
            scan_started_at=_dt(row["scan_started_at"]),
            last_manual_scan_at=_dt(row["last_manual_scan_at"]),
            last_checked_at=_dt(row["last_checked_at"]),
            new_match_count=row["new_match_count"],
            created_at=_dt(row["created_at"]),
        )

    def create_monitor(
        self,
        user_id: str,
        name: str,
        keywords: list[str],
        platforms: list[str],
        company_name: str | None = None,
        search_query: str | None = None,
        schedule: ScheduleWindow | None = None,
        is_active: bool = True,
    ) -> Monitor:
        schedule = schedule or ScheduleWindow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO monitors
                (user_id, name, keywords, platforms, company_name, search_query, is_active,
                 schedule_enabled, schedule_start_hour, schedule_end_hour, schedule_days,
                 schedule_timezone, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    name,
                    json.dumps(keywords),
                    json.dumps(platforms),
                    company_name,
                    search_query,
                    1 if is_active else 0,
                    1 if schedule.enabled else 0,
                    schedule.start_hour,
                    schedule.end_hour,
                    json.dumps(schedule.days),
                    schedule.timezone,
                    _ts(utcnow()),
                ),
            )
            monitor_id = cursor.lastrowid
        logger.info(f"Created monitor {monitor_id} '{name}' for user {user_id}")
        return self.get_monitor(monitor_id)

    def get_monitor(self, monitor_id: int) -> Monitor | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM monitors WHERE id = ?", (monitor_id,)).fetchone()
        return self._row_to_monitor(row) if row else None

    def list_active_monitors(self, platform: str | None = None) -> list[Monitor]:
        """Active monitors, optionally only those targeting a platform."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM monitors WHERE is_active = 1 ORDER BY id").fetchall()
        monitors = [self._row_to_monitor(row) for row in rows]
        if platform is not None:
            monitors = [m for m in monitors if platform in m.platforms]
        return monitors

    def set_monitor_active(self, monitor_id: int, active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE monitors SET is_active = ? WHERE id = ?",
                (1 if active else 0, monitor_id),
            )

    def delete_monitor(self, monitor_id: int) -> None:
        """Delete a monitor. Its results go with it."""
        with self._connect() as conn:
            conn.execute("DELETE FROM monitors WHERE id = ?", (monitor_id,))
        logger.info(f"Deleted monitor {monitor_id}")

    def try_claim_scan(self, monitor_id: int, now: datetime | None = None) -> bool:
        """Atomically mark a monitor as scanning. False if it already was, or is inactive."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE monitors SET is_scanning = 1, scan_started_at = ?
                WHERE id = ? AND is_scanning = 0 AND is_active = 1
                """,
                (_ts(now or utcnow()), monitor_id),
            )
            return cursor.rowcount == 1

    def finish_scan(
        self,
        monitor_id: int,
        trigger: ScanTrigger,
        new_matches: int,
        now: datetime | None = None,
        platforms: list[str] | None = None,
    ) -> None:
        """
        Release the scan flag and record scan statistics.

        platforms are the ones the scan covered; each gets its own
        last-checked time for cron scheduling.
        """
        now_ts = _ts(now or utcnow())
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO platform_checks (monitor_id, platform, checked_at) VALUES (?, ?, ?)
                ON CONFLICT(monitor_id, platform) DO UPDATE SET checked_at = excluded.checked_at
                """,
                [(monitor_id, platform, now_ts) for platform in platforms or []],
            )
            if trigger == ScanTrigger.MANUAL:
                conn.execute(
                    """
                    UPDATE monitors
                    SET is_scanning = 0, scan_started_at = NULL, last_checked_at = ?,
                        last_manual_scan_at = ?, new_match_count = ?
                    WHERE id = ?
                    """,
                    (now_ts, now_ts, new_matches, monitor_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE monitors
                    SET is_scanning = 0, scan_started_at = NULL, last_checked_at = ?,
                        new_match_count = ?
                    WHERE id = ?
                    """,
                    (now_ts, new_matches, monitor_id),
                )

    def get_platform_checks(self, monitor_id: int) -> dict[str, datetime]:
        """When each platform of a monitor was last scanned."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT platform, checked_at FROM platform_checks WHERE monitor_id = ?",
                (monitor_id,),
            ).fetchall()
        return {row["platform"]: _dt(row["checked_at"]) for row in rows}

    def release_scan(self, monitor_id: int) -> None:
        """Clear the scan flag without touching statistics."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE monitors SET is_scanning = 0, scan_started_at = NULL WHERE id = ?",
                (monitor_id,),
            )

    def mark_scan_started(self, monitor_id: int, now: datetime | None = None) -> None:
        """Restart the stuck-scan clock when a worker picks the scan up."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE monitors SET scan_started_at = ? WHERE id = ? AND is_scanning = 1",
                (_ts(now or utcnow()), monitor_id),
            )

    def reset_stuck_scans(self, started_before: datetime) -> int:
        """
        Clear scan flags held since before the cutoff. Returns how many were reset.

        Monitors whose scan is still waiting in the job queue keep their flag.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE monitors SET is_scanning = 0, scan_started_at = NULL
                WHERE is_scanning = 1
                  AND (scan_started_at IS NULL OR scan_started_at < ?)
                  AND id NOT IN (SELECT monitor_id FROM scan_jobs WHERE status = 'pending')
                """,
                (_ts(started_before),),
            )
            count = cursor.rowcount
        if count:
            logger.warning(f"Reset {count} stuck scans started before {started_before.isoformat()}")
        return count

    # =========================================================================
    # Results
    # =========================================================================

    def _row_to_result(self, row: sqlite3.Row) -> Result:
        return Result(
            id=row["id"],
            monitor_id=row["monitor_id"],
            source_url=row["source_url"],
            platform=row["platform"],
            title=row["title"],
            content=row["content"] or "",
            author=row["author"],
            posted_at=_dt(row["posted_at"]),
            matched_terms=json.loads(row["matched_terms"]),
            engagement_score=row["engagement_score"],
            lead_score=row["lead_score"],
            lead_score_factors=json.loads(row["lead_score_factors"]),
            metadata=json.loads(row["metadata"]),
            sentiment=row["sentiment"],
            sentiment_score=row["sentiment_score"],
            conversation_category=row["conversation_category"],
            ai_summary=row["ai_summary"],
            ai_analyzed_at=_dt(row["ai_analyzed_at"]),
            is_viewed=bool(row["is_viewed"]),
            is_hidden=bool(row["is_hidden"]),
            is_clicked=bool(row["is_clicked"]),
            is_saved=bool(row["is_saved"]),
            created_at=_dt(row["created_at"]),
        )

    def insert_results(self, results: list[Result]) -> list[Result]:
        """
        Insert results, skipping any (monitor_id, source_url) already stored.

        Returns:
            The results that were new, with id and created_at filled in.

        Raises:
            PersistenceFailed: On any database error. Nothing is written then.
        """
        inserted: list[Result] = []
        now = utcnow()
        try:
            with self._connect() as conn:
                for result in results:
                    cursor = conn.execute(
                        """
                        INSERT OR IGNORE INTO results
                        (monitor_id, source_url, platform, title, content, author, posted_at,
                         matched_terms, engagement_score, lead_score, lead_score_factors,
                         metadata, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            result.monitor_id,
                            result.source_url,
                            result.platform,
                            result.title,
                            result.content,
                            result.author,
                            _ts(result.posted_at),
                            json.dumps(result.matched_terms),
                            result.engagement_score,
                            result.lead_score,
                            json.dumps(result.lead_score_factors),
                            json.dumps(result.metadata, default=str),
                            _ts(now),
                        ),
                    )
                    if cursor.rowcount == 1:
                        result.id = cursor.lastrowid
                        result.created_at = now
                        inserted.append(result)
        except sqlite3.Error as e:
            raise PersistenceFailed(f"Failed to insert {len(results)} results: {e}") from e

        logger.debug(f"Inserted {len(inserted)}/{len(results)} results")
        return inserted

    def get_result(self, result_id: int) -> Result | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM results WHERE id = ?", (result_id,)).fetchone()
        return self._row_to_result(row) if row else None

    def get_results(self, monitor_id: int, limit: int = 100) -> list[Result]:
        """Newest results for a monitor."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM results WHERE monitor_id = ? ORDER BY id DESC LIMIT ?",
                (monitor_id, limit),
            ).fetchall()
        return [self._row_to_result(row) for row in rows]

    def count_results(self, monitor_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM results WHERE monitor_id = ?", (monitor_id,)
            ).fetchone()
        return row[0]

    def count_analyzed_results_for_user(self, user_id: str) -> int:
        """Results across all of a user's monitors that already carry AI enrichment."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM results r JOIN monitors m ON m.id = r.monitor_id
                WHERE m.user_id = ? AND r.ai_analyzed_at IS NOT NULL
                """,
                (user_id,),
            ).fetchone()
        return row[0]

    def set_result_flags(self, result_id: int, **flags: bool) -> None:
        """Update user-interaction flags (is_viewed, is_hidden, is_clicked, is_saved)."""
        unknown = set(flags) - set(RESULT_FLAGS)
        if unknown:
            raise ValueError(f"Unknown result flags: {sorted(unknown)}")
        if not flags:
            return
        assignments = ", ".join(f"{name} = ?" for name in flags)
        values = [1 if value else 0 for value in flags.values()]
        with self._connect() as conn:
            conn.execute(f"UPDATE results SET {assignments} WHERE id = ?", (*values, result_id))

    def write_enrichment(
        self,
        result_id: int,
        sentiment: str | None,
        sentiment_score: float | None,
        category: str | None,
        summary: str | None,
        lead_score: int,
        lead_score_factors: dict[str, int],
        now: datetime | None = None,
    ) -> bool:
        """Write AI enrichment once. Returns False if the result was already enriched."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE results
                SET sentiment = ?, sentiment_score = ?, conversation_category = ?,
                    ai_summary = ?, lead_score = ?, lead_score_factors = ?, ai_analyzed_at = ?
                WHERE id = ? AND ai_analyzed_at IS NULL
                """,
                (
                    sentiment,
                    sentiment_score,
                    category,
                    summary,
                    lead_score,
                    json.dumps(lead_score_factors),
                    _ts(now or utcnow()),
                    result_id,
                ),
            )
            return cursor.rowcount == 1

    # =========================================================================
    # AI usage ledger
    # =========================================================================

    def record_ai_usage(
        self,
        user_id: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        cost_usd: float,
        latency_ms: int,
        result_id: int | None = None,
        at: datetime | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ai_usage
                (user_id, model, prompt_tokens, completion_tokens, total_tokens, cost_usd,
                 latency_ms, result_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    model,
                    prompt_tokens,
                    completion_tokens,
                    prompt_tokens + completion_tokens,
                    cost_usd,
                    latency_ms,
                    result_id,
                    _ts(at or utcnow()),
                ),
            )

    def sum_ai_cost(self, start: datetime, end: datetime, user_id: str | None = None) -> float:
        """Total AI spend in [start, end), for one user or everyone."""
        query = "SELECT COALESCE(SUM(cost_usd), 0) FROM ai_usage WHERE created_at >= ? AND created_at < ?"
        params: list[Any] = [_ts(start), _ts(end)]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return float(row[0])

    def sum_ai_tokens(self, user_id: str, start: datetime, end: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(total_tokens), 0) FROM ai_usage
                WHERE user_id = ? AND created_at >= ? AND created_at < ?
                """,
                (user_id, _ts(start), _ts(end)),
            ).fetchone()
        return int(row[0])

    # =========================================================================
    # Budget alerts
    # =========================================================================

    def _row_to_alert(self, row: sqlite3.Row) -> BudgetAlert:
        return BudgetAlert(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            period=BudgetPeriod(row["period"]),
            threshold_usd=row["threshold_usd"],
            warning_percent=row["warning_percent"],
            current_period_spend=row["current_period_spend"],
            last_triggered_at=_dt(row["last_triggered_at"]),
            notify_email=row["notify_email"],
            notify_webhook=row["notify_webhook"],
            is_active=bool(row["is_active"]),
        )

    def create_budget_alert(
        self,
        name: str,
        period: BudgetPeriod,
        threshold_usd: float,
        warning_percent: float = 80.0,
        user_id: str | None = None,
        notify_email: str | None = None,
        notify_webhook: str | None = None,
    ) -> BudgetAlert:
        if threshold_usd <= 0:
            raise ValueError("threshold_usd must be positive")
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO budget_alerts
                (user_id, name, period, threshold_usd, warning_percent, notify_email,
                 notify_webhook, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    name,
                    BudgetPeriod(period).value,
                    threshold_usd,
                    warning_percent,
                    notify_email,
                    notify_webhook,
                    _ts(utcnow()),
                ),
            )
            alert_id = cursor.lastrowid
        return self.get_budget_alert(alert_id)

    def get_budget_alert(self, alert_id: int) -> BudgetAlert | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM budget_alerts WHERE id = ?", (alert_id,)).fetchone()
        return self._row_to_alert(row) if row else None

    def list_active_budget_alerts(self) -> list[BudgetAlert]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM budget_alerts WHERE is_active = 1 ORDER BY id"
            ).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def update_alert_spend(self, alert_id: int, spend: float) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE budget_alerts SET current_period_spend = ? WHERE id = ?",
                (spend, alert_id),
            )

    def record_alert_trigger(self, record: BudgetAlertRecord, triggered_at: datetime) -> int:
        """Append a history row and stamp last_triggered_at in one transaction."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO budget_alert_history
                (alert_id, period_start, period_end, spend_usd, threshold_usd, percent, level,
                 notification_sent, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.alert_id,
                    _ts(record.period_start),
                    _ts(record.period_end),
                    record.spend_usd,
                    record.threshold_usd,
                    record.percent,
                    record.level.value,
                    1 if record.notification_sent else 0,
                    _ts(triggered_at),
                ),
            )
            conn.execute(
                "UPDATE budget_alerts SET last_triggered_at = ? WHERE id = ?",
                (_ts(triggered_at), record.alert_id),
            )
            record.id = cursor.lastrowid
            record.created_at = triggered_at
            return record.id

    def mark_history_notified(self, history_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE budget_alert_history SET notification_sent = 1 WHERE id = ?",
                (history_id,),
            )

    def get_alert_history(self, alert_id: int) -> list[BudgetAlertRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM budget_alert_history WHERE alert_id = ? ORDER BY id",
                (alert_id,),
            ).fetchall()
        return [
            BudgetAlertRecord(
                id=row["id"],
                alert_id=row["alert_id"],
                period_start=_dt(row["period_start"]),
                period_end=_dt(row["period_end"]),
                spend_usd=row["spend_usd"],
                threshold_usd=row["threshold_usd"],
                percent=row["percent"],
                level=AlertLevel(row["level"]),
                notification_sent=bool(row["notification_sent"]),
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]

    # =========================================================================
    # Scan job queue
    # =========================================================================

    def _row_to_job(self, row: sqlite3.Row) -> ScanJob:
        return ScanJob(
            id=row["id"],
            monitor_id=row["monitor_id"],
            trigger=ScanTrigger(row["trigger"]),
            status=row["status"],
            platforms=json.loads(row["platforms"]) if row["platforms"] else None,
            attempts=row["attempts"],
            error=row["error"],
            created_at=_dt(row["created_at"]),
        )

    def enqueue_job(
        self,
        monitor_id: int,
        trigger: ScanTrigger,
        platforms: list[str] | None = None,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scan_jobs (monitor_id, trigger, platforms, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    monitor_id,
                    ScanTrigger(trigger).value,
                    json.dumps(platforms) if platforms else None,
                    _ts(utcnow()),
                ),
            )
            return cursor.lastrowid

    def claim_next_job(self) -> ScanJob | None:
        """Move the oldest pending job to running and return it."""
        with self._connect() as conn:
            while True:
                row = conn.execute(
                    "SELECT * FROM scan_jobs WHERE status = 'pending' ORDER BY id LIMIT 1"
                ).fetchone()
                if row is None:
                    return None
                cursor = conn.execute(
                    """
                    UPDATE scan_jobs SET status = 'running', attempts = attempts + 1, started_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (_ts(utcnow()), row["id"]),
                )
                if cursor.rowcount == 1:
                    conn.commit()
                    job = self._row_to_job(row)
                    job.status = "running"
                    job.attempts += 1
                    return job

    def complete_job(self, job_id: int, error: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE scan_jobs SET status = ?, error = ?, finished_at = ? WHERE id = ?",
                ("failed" if error else "done", error, _ts(utcnow()), job_id),
            )

    def get_job(self, job_id: int) -> ScanJob | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scan_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def requeue_running_jobs(self) -> int:
        """Put jobs orphaned by a crash back in the queue."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE scan_jobs SET status = 'pending', started_at = NULL WHERE status = 'running'"
            )
            count = cursor.rowcount
        if count:
            logger.info(f"Re-queued {count} interrupted scan jobs")
        return count

    def pending_job_count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM scan_jobs WHERE status = 'pending'").fetchone()
        return row[0]
