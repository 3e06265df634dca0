"""
Unit tests for sonar/diagnostics.py

Tests per-platform scan statistics and report formatting.
"""

from datetime import timedelta

from sonar.diagnostics import PlatformStats, ScanReport
from tests.fixtures import NOW


def _report(**kwargs) -> ScanReport:
    kwargs.setdefault("start_time", NOW)
    return ScanReport(monitor_id=42, trigger="manual", **kwargs)


class TestScanReport:
    """Tests for ScanReport dataclass."""

    def test_default_values(self):
        """Test ScanReport default values."""
        report = _report()

        assert report.platforms == {}
        assert report.inserted == 0
        assert report.aborted is False
        assert report.errors == []
        assert report.warnings == []

    def test_duration_seconds(self):
        """Test duration calculation."""
        report = _report(end_time=NOW + timedelta(seconds=120))

        assert report.duration_seconds == 120.0
        assert report.duration_formatted == "2.0m"

    def test_short_duration(self):
        report = _report(end_time=NOW + timedelta(seconds=4.5))
        assert report.duration_formatted == "4.5s"

    def test_platform_creates_stats_once(self):
        report = _report()
        stats = report.platform("reddit")
        stats.fetched = 10

        assert report.platform("reddit") is stats
        assert report.platforms == {"reddit": PlatformStats(fetched=10)}

    def test_totals(self):
        """Test totals aggregate across platforms."""
        report = _report()
        report.platforms = {
            "reddit": PlatformStats(fetched=30, matched=3, cache_hit=True),
            "hackernews": PlatformStats(fetched=20, matched=1),
            "twitter": PlatformStats(failed=True, error="Fetch from twitter failed: no accounts"),
        }

        assert report.total_fetched == 50
        assert report.total_matched == 4
        assert report.cache_hits == 1
        assert report.failed_platforms == ["twitter"]

    def test_add_error_and_warning(self):
        report = _report()
        report.add_error("Fetch from reddit failed: 503")
        report.add_warning("twitter is not included in the Free plan")

        assert len(report.errors) == 1
        assert report.errors[0].endswith("Fetch from reddit failed: 503")
        assert report.warnings[0].endswith("twitter is not included in the Free plan")

    def test_finish(self):
        report = _report()
        assert report.end_time is None
        report.finish()
        assert report.end_time is not None


class TestFormatSummary:
    """Tests for ScanReport.format_summary()."""

    def test_summary_contents(self):
        report = _report(end_time=NOW + timedelta(seconds=3), inserted=2)
        report.platforms = {
            "reddit": PlatformStats(fetched=10, matched=2, seconds=1.2),
            "hackernews": PlatformStats(failed=True, error="timed out"),
        }
        report.add_error("Fetch from hackernews failed: timed out")

        summary = report.format_summary()

        assert "SCAN SUMMARY: monitor 42 (manual)" in summary
        assert "New: 2" in summary
        assert "reddit: 2/10 matched [fetched]" in summary
        assert "hackernews: 0/0 matched [FAILED]" in summary
        assert "ERRORS (1):" in summary

    def test_summary_caps_listed_errors(self):
        report = _report()
        for i in range(15):
            report.add_error(f"error {i}")

        summary = report.format_summary()

        assert "ERRORS (15):" in summary
        assert "error 9" in summary
        assert "error 10" not in summary


class TestToDict:
    def test_to_dict(self):
        report = _report(end_time=NOW + timedelta(seconds=1), inserted=1, analyzed=1)
        report.platforms = {"reddit": PlatformStats(fetched=5, matched=1, cache_hit=True)}

        data = report.to_dict()

        assert data == {
            "monitorId": 42,
            "trigger": "manual",
            "durationSeconds": 1.0,
            "fetched": 5,
            "matched": 1,
            "inserted": 1,
            "analyzed": 1,
            "failedPlatforms": [],
            "cacheHits": 1,
            "errors": [],
        }
