"""
Scan Diagnostics.

Tracks per-platform statistics for a single scan so the scheduler can log a
summary and the status endpoint can report what happened.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import utcnow

logger = logging.getLogger("sonar.diagnostics")


@dataclass
class PlatformStats:
    fetched: int = 0
    matched: int = 0
    cache_hit: bool = False
    failed: bool = False
    error: str | None = None
    seconds: float = 0.0


@dataclass
class ScanReport:
    """Diagnostic information for one monitor scan."""

    monitor_id: int
    trigger: str
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None

    platforms: dict[str, PlatformStats] = field(default_factory=dict)
    inserted: int = 0
    # Set when persistence failed and nothing was written
    aborted: bool = False
    analyzed: int = 0
    ai_cost_usd: float = 0.0

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def platform(self, name: str) -> PlatformStats:
        if name not in self.platforms:
            self.platforms[name] = PlatformStats()
        return self.platforms[name]

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or utcnow()
        return (end - self.start_time).total_seconds()

    @property
    def duration_formatted(self) -> str:
        seconds = self.duration_seconds
        if seconds < 60:
            return f"{seconds:.1f}s"
        return f"{seconds / 60:.1f}m"

    @property
    def total_fetched(self) -> int:
        return sum(s.fetched for s in self.platforms.values())

    @property
    def total_matched(self) -> int:
        return sum(s.matched for s in self.platforms.values())

    @property
    def failed_platforms(self) -> list[str]:
        return [name for name, s in self.platforms.items() if s.failed]

    @property
    def cache_hits(self) -> int:
        return sum(1 for s in self.platforms.values() if s.cache_hit)

    def add_error(self, error: str) -> None:
        self.errors.append(f"[{utcnow().strftime('%H:%M:%S')}] {error}")
        logger.error(f"Scan {self.monitor_id} error recorded: {error}")

    def add_warning(self, warning: str) -> None:
        self.warnings.append(f"[{utcnow().strftime('%H:%M:%S')}] {warning}")
        logger.warning(f"Scan {self.monitor_id} warning recorded: {warning}")

    def finish(self) -> None:
        self.end_time = utcnow()

    def format_summary(self) -> str:
        """Generate a text summary for logging."""
        lines = [
            "=" * 60,
            f"SCAN SUMMARY: monitor {self.monitor_id} ({self.trigger})",
            "=" * 60,
            f"Duration: {self.duration_formatted}",
            f"Fetched: {self.total_fetched}  Matched: {self.total_matched}  New: {self.inserted}",
            f"Cache hits: {self.cache_hits}/{len(self.platforms)}",
            f"AI analyzed: {self.analyzed} (${self.ai_cost_usd:.4f})",
            "",
            "PLATFORMS:",
        ]
        for name, stats in sorted(self.platforms.items()):
            status = "FAILED" if stats.failed else ("cached" if stats.cache_hit else "fetched")
            lines.append(f"  {name}: {stats.matched}/{stats.fetched} matched [{status}] {stats.seconds:.1f}s")

        if self.errors:
            lines.append("")
            lines.append(f"ERRORS ({len(self.errors)}):")
            for err in self.errors[:10]:
                lines.append(f"  - {err}")

        if self.warnings:
            lines.append("")
            lines.append(f"WARNINGS ({len(self.warnings)}):")
            for warn in self.warnings[:10]:
                lines.append(f"  - {warn}")

        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "monitorId": self.monitor_id,
            "trigger": self.trigger,
            "durationSeconds": round(self.duration_seconds, 3),
            "fetched": self.total_fetched,
            "matched": self.total_matched,
            "inserted": self.inserted,
            "analyzed": self.analyzed,
            "failedPlatforms": self.failed_platforms,
            "cacheHits": self.cache_hits,
            "errors": list(self.errors),
        }
