"""
Configuration module for Sonar.

Loads application settings from config.yaml and secrets from environment variables.
"""

import logging
import os
import contextvars
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Context variable for worker ID logging
worker_context = contextvars.ContextVar("worker_id", default=None)


class WorkerLogFilter(logging.Filter):
    """Filter to inject worker ID into log records."""
    def filter(self, record):
        worker_id = worker_context.get()
        if worker_id is not None:
            record.worker_info = f" [Worker {worker_id}]"
        else:
            record.worker_info = ""
        return True


# Default config file path
CONFIG_FILE = Path(__file__).parent.parent / "config.yaml"


def _load_yaml_config() -> dict:
    """Load configuration from YAML file."""
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            return yaml.safe_load(f) or {}
    return {}


# Load YAML config once at module import
_yaml_config = _load_yaml_config()


def _get_yaml(section: str, key: str, default=None):
    """Get a value from the YAML config."""
    return _yaml_config.get(section, {}).get(key, default)


def _get_yaml_section(section: str, default=None):
    """Get an entire section from the YAML config."""
    return _yaml_config.get(section, default or {})


@dataclass
class DatabaseConfig:
    """SQLite result store settings."""
    path: str = field(default_factory=lambda: _get_yaml("database", "path", "sonar.db"))


@dataclass
class RedisConfig:
    """Shared counter backend. An empty URL keeps all counters in-process."""
    # Secret from .env (may contain credentials)
    url: str = field(default_factory=lambda: os.getenv("REDIS_URL", ""))
    key_prefix: str = field(default_factory=lambda: _get_yaml("redis", "key_prefix", "sonar:"))


DEFAULT_CRON_INTERVALS = {
    "hackernews": 30,
    "reddit": 60,
    "twitter": 60,
}


def _get_cron_intervals() -> dict[str, int]:
    """Per-platform cron cadence in minutes, YAML values override the defaults."""
    intervals = dict(DEFAULT_CRON_INTERVALS)
    intervals.update(_get_yaml_section("scan").get("cron_intervals", {}) or {})
    return intervals


@dataclass
class ScanConfig:
    """Scan scheduler and worker pool settings."""
    worker_count: int = field(default_factory=lambda: _get_yaml("scan", "worker_count", 4))
    # Concurrent platform fetches inside one monitor scan
    platform_concurrency: int = field(
        default_factory=lambda: _get_yaml("scan", "platform_concurrency", 5)
    )
    fetch_timeout: float = field(default_factory=lambda: _get_yaml("scan", "fetch_timeout", 30.0))
    fetch_limit: int = field(default_factory=lambda: _get_yaml("scan", "fetch_limit", 100))
    lookback_hours: int = field(default_factory=lambda: _get_yaml("scan", "lookback_hours", 24))
    stuck_scan_minutes: int = field(
        default_factory=lambda: _get_yaml("scan", "stuck_scan_minutes", 10)
    )
    # Seconds an idle worker waits before polling the job queue again
    poll_interval: float = field(default_factory=lambda: _get_yaml("scan", "poll_interval", 2.0))
    cron_intervals: dict[str, int] = field(default_factory=_get_cron_intervals)


@dataclass
class CacheConfig:
    """Query cache settings."""
    max_entries: int = field(default_factory=lambda: _get_yaml("cache", "max_entries", 10000))
    eviction_batch: int = field(default_factory=lambda: _get_yaml("cache", "eviction_batch", 100))
    sweep_interval: float = field(
        default_factory=lambda: _get_yaml("cache", "sweep_interval_seconds", 300)
    )


@dataclass
class RateLimitConfig:
    """Per-user request limits for each operation class."""
    window_seconds: int = field(
        default_factory=lambda: _get_yaml("rate_limits", "window_seconds", 60)
    )
    read: int = field(default_factory=lambda: _get_yaml("rate_limits", "read", 60))
    write: int = field(default_factory=lambda: _get_yaml("rate_limits", "write", 20))
    export: int = field(default_factory=lambda: _get_yaml("rate_limits", "export", 5))

    def as_limits(self) -> dict[str, int]:
        return {"read": self.read, "write": self.write, "export": self.export}


@dataclass
class BudgetConfig:
    """AI budget and spend alert settings."""
    # Daily token budgets and spend periods are computed in this timezone
    reference_timezone: str = field(
        default_factory=lambda: _get_yaml("budget", "reference_timezone", "UTC")
    )
    evaluation_interval_minutes: int = field(
        default_factory=lambda: _get_yaml("budget", "evaluation_interval_minutes", 60)
    )
    suppression_hours: float = field(
        default_factory=lambda: _get_yaml("budget", "suppression_hours", 4)
    )


@dataclass
class RedditConfig:
    """Reddit fetcher settings."""
    subreddits: list[str] = field(
        default_factory=lambda: _get_yaml("reddit", "subreddits", None)
        or ["technology", "programming", "webdev", "startups", "SaaS"]
    )
    user_agent: str = field(default_factory=lambda: _get_yaml("reddit", "user_agent", "sonar/0.1"))


@dataclass
class TwitterConfig:
    """Twitter/X fetcher settings."""
    db_path: str = field(default_factory=lambda: _get_yaml("twitter", "db_path", "accounts.db"))
    enabled: bool = field(default_factory=lambda: _get_yaml("twitter", "enabled", False))


@dataclass
class OpenAIConfig:
    """OpenAI API configuration."""
    # Secret from .env
    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    # Setting from YAML
    model: str = field(default_factory=lambda: _get_yaml("llm", "openai_model", "gpt-4o-mini"))


@dataclass
class GoogleConfig:
    """Google Generative AI configuration."""
    # Secret from .env
    api_key: str = field(default_factory=lambda: os.getenv("GOOGLE_API_KEY", ""))
    # Setting from YAML
    model: str = field(default_factory=lambda: _get_yaml("llm", "google_model", "gemini-2.0-flash"))


@dataclass
class SMTPConfig:
    """SMTP email configuration for budget alert notifications."""
    # Settings from YAML
    host: str = field(default_factory=lambda: _get_yaml("smtp", "host", "smtp.gmail.com"))
    port: int = field(default_factory=lambda: _get_yaml("smtp", "port", 587))
    use_tls: bool = field(default_factory=lambda: _get_yaml("smtp", "use_tls", True))

    # Secrets from .env
    username: str = field(default_factory=lambda: os.getenv("SMTP_USERNAME", ""))
    password: str = field(default_factory=lambda: os.getenv("SMTP_PASSWORD", ""))

    email_from: str = field(default_factory=lambda: _get_yaml("email", "from", ""))


@dataclass
class APIConfig:
    """HTTP surface settings."""
    host: str = field(default_factory=lambda: _get_yaml("api", "host", "127.0.0.1"))
    port: int = field(default_factory=lambda: _get_yaml("api", "port", 8000))
    webhook_timeout: float = field(default_factory=lambda: _get_yaml("api", "webhook_timeout", 10.0))


@dataclass
class AppConfig:
    """Application settings from YAML."""
    # LLM provider
    llm_provider: Literal["openai", "google"] = field(
        default_factory=lambda: _get_yaml("llm", "provider", "openai")
    )
    ai_enabled: bool = field(default_factory=lambda: _get_yaml("llm", "enabled", True))

    # Logging
    log_level: str = field(
        default_factory=lambda: _get_yaml("logging", "level", "INFO")
    )


@dataclass
class Config:
    """Main configuration container."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    reddit: RedditConfig = field(default_factory=RedditConfig)
    twitter: TwitterConfig = field(default_factory=TwitterConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    smtp: SMTPConfig = field(default_factory=SMTPConfig)
    api: APIConfig = field(default_factory=APIConfig)
    app: AppConfig = field(default_factory=AppConfig)

    def setup_logging(self) -> logging.Logger:
        """Configure and return the application logger."""
        # Reset existing handlers to ensure clean configuration
        root = logging.getLogger()
        if root.handlers:
            for handler in root.handlers:
                root.removeHandler(handler)

        logging.basicConfig(
            level=getattr(logging, self.app.log_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s%(worker_info)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        # Add filter to the handler created by basicConfig
        for handler in logging.getLogger().handlers:
            handler.addFilter(WorkerLogFilter())

        return logging.getLogger("sonar")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of missing/invalid settings.

        Returns:
            List of validation error messages, empty if all valid.
        """
        errors = []

        # Check if config.yaml exists
        if not CONFIG_FILE.exists():
            errors.append(f"Config file not found: {CONFIG_FILE} (copy config.yaml.example to config.yaml)")

        # Check LLM provider configuration
        if self.app.ai_enabled:
            if self.app.llm_provider == "openai" and not self.openai.api_key:
                errors.append("OPENAI_API_KEY is required when using OpenAI provider")
            elif self.app.llm_provider == "google" and not self.google.api_key:
                errors.append("GOOGLE_API_KEY is required when using Google provider")

        if self.scan.worker_count < 1:
            errors.append("scan.worker_count must be at least 1")
        if self.scan.fetch_timeout <= 0:
            errors.append("scan.fetch_timeout must be positive")
        if self.cache.max_entries < 1:
            errors.append("cache.max_entries must be at least 1")

        # SMTP is only needed for email budget alerts
        if self.smtp.username and not self.smtp.password:
            errors.append("SMTP_PASSWORD is required when SMTP_USERNAME is set")

        return errors


# Global configuration instance
config = Config()
