"""
Exception taxonomy for the scan pipeline.

Eligibility rejections (ScanRejected subclasses) are returned to callers with
enough structured detail to render a countdown or upgrade prompt. Upstream and
persistence failures are raised inside a scan and handled there.
"""

from datetime import datetime, timedelta
from typing import Any


class SonarError(Exception):
    """Base class for all Sonar errors."""


class ScanRejected(SonarError):
    """A scan request did not pass eligibility checks."""

    reason = "rejected"

    def __init__(self, monitor_id: int, message: str = ""):
        self.monitor_id = monitor_id
        super().__init__(message or f"Scan rejected for monitor {monitor_id}: {self.reason}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.reason, "message": str(self)}


class MonitorNotFound(ScanRejected):
    reason = "monitor_not_found"


class InactiveMonitor(ScanRejected):
    reason = "inactive_monitor"


class ScanInProgress(ScanRejected):
    """Benign: another scan already holds the monitor."""

    reason = "scan_in_progress"

    def to_dict(self) -> dict[str, Any]:
        return {"scanInProgress": True, "message": str(self)}


class OutsideScheduleWindow(ScanRejected):
    reason = "outside_schedule_window"


class CooldownActive(ScanRejected):
    """Manual scan attempted before the plan cooldown elapsed."""

    reason = "cooldown_active"

    def __init__(self, monitor_id: int, remaining: timedelta, next_scan_at: datetime, cooldown_hours: float):
        self.remaining = remaining
        self.next_scan_at = next_scan_at
        self.cooldown_hours = cooldown_hours
        super().__init__(
            monitor_id,
            f"Monitor {monitor_id} is cooling down, next scan in {format_remaining(remaining)}",
        )

    @property
    def cooldown_remaining_ms(self) -> int:
        return int(self.remaining.total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.reason,
            "message": str(self),
            "cooldownRemaining": self.cooldown_remaining_ms,
            "nextScanAt": self.next_scan_at.isoformat(),
            "cooldownHours": self.cooldown_hours,
        }


class RateLimited(ScanRejected):
    reason = "rate_limited"

    def __init__(self, monitor_id: int, retry_after: int):
        self.retry_after = retry_after
        super().__init__(monitor_id, f"Too many requests, retry in {retry_after}s")

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.reason, "message": str(self), "retryAfter": self.retry_after}


class BudgetExceeded(SonarError):
    """AI call refused before dispatch. No partial spend happens."""

    def __init__(self, user_id: str, reason: str, retry_after: int | None = None):
        self.user_id = user_id
        self.reason = reason
        self.retry_after = retry_after
        super().__init__(f"AI budget exceeded for user {user_id}: {reason}")


class UpstreamFetchFailed(SonarError):
    """A single platform fetch failed or timed out."""

    def __init__(self, platform: str, cause: BaseException | str):
        self.platform = platform
        self.cause = cause
        super().__init__(f"Fetch from {platform} failed: {cause}")


class PersistenceFailed(SonarError):
    """Writing scan results failed. Aborts the current monitor's scan."""


def format_remaining(remaining: timedelta) -> str:
    """Render a duration as 'Xh Ym' or 'Ym'."""
    total_minutes = max(int(remaining.total_seconds() // 60), 0)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
