# Core Module - Configuration
#
# Feed settings are read once from environment variables (prefix
# THREATFEED_) after loading an optional .env file with python-dotenv.
# Every value has a module-level default so the service runs with no
# configuration at all (in-memory store, no schedulers started).

import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "THREATFEED_"

DEFAULT_DB_PATH = ":memory:"
DEFAULT_AUDIT_DIR = "./audit_logs"

# Aging: days an unrefreshed record stays active, per severity
DEFAULT_SEVERITY_TTL_DAYS: Dict[str, int] = {
    "critical": 90,
    "high": 60,
    "medium": 30,
    "low": 14,
    "info": 7,
}

DEFAULT_AGING_CRON = "0 */6 * * *"  # every 6 hours
DEFAULT_STATS_CRON = "5 * * * *"  # hourly, five past


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s%s=%r", ENV_PREFIX, name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s%s=%r", ENV_PREFIX, name, raw)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class FeedSettings:
    """Runtime configuration for the threat feed."""

    db_path: str = DEFAULT_DB_PATH
    audit_dir: str = DEFAULT_AUDIT_DIR

    # Ingestion
    merge_retry_attempts: int = 3

    # Correlation
    correlation_min_confidence: int = 60
    correlation_window_hours: int = 72
    correlation_max_edges: int = 50
    correlation_workers: int = 4
    correlation_inline: bool = False  # run correlation in the ingest call
    correlation_batch_deadline_seconds: float = 30.0

    # Aging
    severity_ttl_days: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_SEVERITY_TTL_DAYS)
    )
    stale_after_days: int = 7
    stale_confidence_floor: int = 50
    aging_cron: str = DEFAULT_AGING_CRON
    stats_cron: str = DEFAULT_STATS_CRON

    # Subscriptions
    max_subscriptions_per_user: int = 10
    rate_limit_per_hour: int = 1000
    rate_limit_cache_size: int = 10_000
    delivery_timeout_seconds: float = 10.0
    delivery_workers: int = 8

    # Adapters
    adapter_max_failures: int = 3
    adapter_default_timeout_seconds: float = 30.0
    adapter_default_backoff_seconds: float = 60.0

    # Scheduling
    start_schedulers: bool = False

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "FeedSettings":
        """Build settings from the process environment (and .env file)."""
        load_dotenv(env_file)
        defaults = cls()
        ttl = dict(DEFAULT_SEVERITY_TTL_DAYS)
        for severity in ttl:
            ttl[severity] = _env_int(f"TTL_{severity.upper()}_DAYS", ttl[severity])
        return cls(
            db_path=_env("DB_PATH", defaults.db_path),
            audit_dir=_env("AUDIT_DIR", defaults.audit_dir),
            merge_retry_attempts=_env_int(
                "MERGE_RETRY_ATTEMPTS", defaults.merge_retry_attempts
            ),
            correlation_min_confidence=_env_int(
                "CORRELATION_MIN_CONFIDENCE", defaults.correlation_min_confidence
            ),
            correlation_window_hours=_env_int(
                "CORRELATION_WINDOW_HOURS", defaults.correlation_window_hours
            ),
            correlation_max_edges=_env_int(
                "CORRELATION_MAX_EDGES", defaults.correlation_max_edges
            ),
            correlation_workers=_env_int(
                "CORRELATION_WORKERS", defaults.correlation_workers
            ),
            correlation_inline=_env_bool(
                "CORRELATION_INLINE", defaults.correlation_inline
            ),
            correlation_batch_deadline_seconds=_env_float(
                "CORRELATION_BATCH_DEADLINE_SECONDS",
                defaults.correlation_batch_deadline_seconds,
            ),
            severity_ttl_days=ttl,
            stale_after_days=_env_int("STALE_AFTER_DAYS", defaults.stale_after_days),
            stale_confidence_floor=_env_int(
                "STALE_CONFIDENCE_FLOOR", defaults.stale_confidence_floor
            ),
            aging_cron=_env("AGING_CRON", defaults.aging_cron),
            stats_cron=_env("STATS_CRON", defaults.stats_cron),
            max_subscriptions_per_user=_env_int(
                "MAX_SUBSCRIPTIONS_PER_USER", defaults.max_subscriptions_per_user
            ),
            rate_limit_per_hour=_env_int(
                "RATE_LIMIT_PER_HOUR", defaults.rate_limit_per_hour
            ),
            rate_limit_cache_size=_env_int(
                "RATE_LIMIT_CACHE_SIZE", defaults.rate_limit_cache_size
            ),
            delivery_timeout_seconds=_env_float(
                "DELIVERY_TIMEOUT_SECONDS", defaults.delivery_timeout_seconds
            ),
            delivery_workers=_env_int("DELIVERY_WORKERS", defaults.delivery_workers),
            adapter_max_failures=_env_int(
                "ADAPTER_MAX_FAILURES", defaults.adapter_max_failures
            ),
            adapter_default_timeout_seconds=_env_float(
                "ADAPTER_TIMEOUT_SECONDS", defaults.adapter_default_timeout_seconds
            ),
            adapter_default_backoff_seconds=_env_float(
                "ADAPTER_BACKOFF_SECONDS", defaults.adapter_default_backoff_seconds
            ),
            start_schedulers=_env_bool("START_SCHEDULERS", defaults.start_schedulers),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Global settings instance
_settings: Optional[FeedSettings] = None


def get_settings() -> FeedSettings:
    """Get global feed settings (singleton, loaded from the environment)."""
    global _settings
    if _settings is None:
        _settings = FeedSettings.from_env()
    return _settings


def reset_settings(settings: Optional[FeedSettings] = None) -> None:
    """Replace (or clear) the global settings. Used by tests and the CLI."""
    global _settings
    _settings = settings
