"""Environment-driven configuration for the feed sync function."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from processor.reconciler import STRATEGIES


class ConfigError(ValueError):
    """Raised when an environment variable holds an invalid value."""


@dataclass(frozen=True)
class Settings:
    """Runtime settings read from environment variables."""
    events_table_name: str = 'calendar-events'
    metadata_table_name: str = 'external-calendar-sync'
    region_name: Optional[str] = None
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    max_retries: int = 3
    default_sync_interval_minutes: int = 60
    default_timezone: str = 'UTC'
    reconcile_strategy: str = 'replace_all'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Raises:
            ConfigError: If a numeric value is not a positive integer or the
                reconcile strategy is unknown
        """
        env = os.environ if environ is None else environ

        strategy = env.get('RECONCILE_STRATEGY', cls.reconcile_strategy)
        if strategy not in STRATEGIES:
            raise ConfigError(
                f"RECONCILE_STRATEGY must be one of {sorted(STRATEGIES)}, got {strategy!r}"
            )

        return cls(
            events_table_name=env.get('EVENTS_TABLE_NAME', cls.events_table_name),
            metadata_table_name=env.get(
                'SYNC_METADATA_TABLE_NAME', cls.metadata_table_name
            ),
            region_name=env.get('AWS_REGION') or None,
            log_level=env.get('LOG_LEVEL', cls.log_level),
            timeout_seconds=_positive_int(env, 'TIMEOUT_SECONDS', cls.timeout_seconds),
            max_retries=_positive_int(env, 'MAX_RETRIES', cls.max_retries),
            default_sync_interval_minutes=_positive_int(
                env, 'DEFAULT_SYNC_INTERVAL_MINUTES', cls.default_sync_interval_minutes
            ),
            default_timezone=env.get('DEFAULT_TIMEZONE', cls.default_timezone),
            reconcile_strategy=strategy
        )


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value
