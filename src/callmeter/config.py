"""
Runtime configuration.

Read once from the environment at startup. Anything missing or malformed
raises ConfigurationError so the process refuses to start rather than bill
with a wrong rate or cadence.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional


class ConfigurationError(Exception):
    """Raised when startup configuration is missing or invalid."""
    pass


TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


def _int_setting(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _bool_setting(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class BillingConfig:
    """
    Configuration for the metering worker and its HTTP surface.

    ``poll_interval_ms`` is both the scheduler cadence and the billing
    granularity: one "second" of billing is one poll interval.
    """
    rate_micros_per_second: int = 2100  # default charge per unit for new calls
    poll_interval_ms: int = 1000
    batch_size: int = 100
    database_url: str = "sqlite:///callmeter.db"
    max_concurrency: int = 8
    free_window_seconds: int = 10
    query_backoff_ms: int = 1000
    max_backoff_ms: int = 30000
    port: int = 4000
    api_key: str = "dev-key-change-in-production"
    run_scheduler: bool = False

    def __post_init__(self):
        for name in ("rate_micros_per_second", "poll_interval_ms", "batch_size",
                     "max_concurrency", "query_backoff_ms", "max_backoff_ms", "port"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if self.free_window_seconds < 0:
            raise ConfigurationError("free_window_seconds must be >= 0")
        if self.max_backoff_ms < self.query_backoff_ms:
            raise ConfigurationError("max_backoff_ms must be >= query_backoff_ms")
        if not self.database_url:
            raise ConfigurationError("database_url is required")
        if not self.api_key:
            raise ConfigurationError("api_key must not be empty")

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(milliseconds=self.poll_interval_ms)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "BillingConfig":
        """Build the config from environment variables."""
        env = os.environ if env is None else env
        return cls(
            rate_micros_per_second=_int_setting(env, "RATE_MICROS", cls.rate_micros_per_second),
            poll_interval_ms=_int_setting(env, "POLL_INTERVAL_MS", cls.poll_interval_ms),
            batch_size=_int_setting(env, "BATCH_SIZE", cls.batch_size),
            database_url=env.get("DATABASE_URL", cls.database_url).strip(),
            max_concurrency=_int_setting(env, "BILLING_CONCURRENCY", cls.max_concurrency),
            free_window_seconds=_int_setting(env, "FREE_WINDOW_SECONDS", cls.free_window_seconds, minimum=0),
            query_backoff_ms=_int_setting(env, "QUERY_BACKOFF_MS", cls.query_backoff_ms),
            max_backoff_ms=_int_setting(env, "MAX_BACKOFF_MS", cls.max_backoff_ms),
            port=_int_setting(env, "PORT", cls.port),
            api_key=env.get("API_KEY", cls.api_key),
            run_scheduler=_bool_setting(env, "RUN_SCHEDULER", cls.run_scheduler),
        )
