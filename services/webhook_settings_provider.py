"""
Webhook Settings Provider
Reads admin-configurable retry settings from system_config with a TTL cache

The provider owns its cache and clock; components that need settings receive a
provider instance at construction time.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from caching.simple_cache import SimpleCache
from config import Config
from models import SystemConfig

logger = logging.getLogger(__name__)

RETRY_INTERVALS_KEY = "webhook_retry_intervals_minutes"
MAX_ATTEMPTS_KEY = "webhook_retry_max_attempts"
EXPIRY_HOURS_KEY = "webhook_expiry_hours"

DEFAULT_RETRY_INTERVALS_MINUTES = [1, 5, 15, 30, 60]
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_EXPIRY_HOURS = 24

_SETTINGS_CACHE_KEY = "webhook_retry_settings"


@dataclass(frozen=True)
class WebhookRetrySettings:
    """Snapshot of the retry policy"""
    retry_intervals_minutes: List[int]
    max_attempts: int
    expiry_hours: int

    def backoff_minutes(self, attempt: int) -> int:
        """Delay before the retry that follows attempt number `attempt` (1-based)"""
        intervals = self.retry_intervals_minutes
        if attempt < 1:
            return intervals[0]
        if attempt > len(intervals):
            return intervals[-1]
        return intervals[attempt - 1]


DEFAULT_SETTINGS = WebhookRetrySettings(
    retry_intervals_minutes=list(DEFAULT_RETRY_INTERVALS_MINUTES),
    max_attempts=DEFAULT_MAX_ATTEMPTS,
    expiry_hours=DEFAULT_EXPIRY_HOURS,
)


class WebhookSettingsProvider:
    """Cached view of the webhook retry settings"""

    def __init__(
        self,
        session_factory: sessionmaker,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._session_factory = session_factory
        ttl = Config.SETTINGS_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._cache = SimpleCache(default_ttl=ttl, clock=clock)

    def get_settings(self) -> WebhookRetrySettings:
        return self._cache.get_or_load(_SETTINGS_CACHE_KEY, self._load)

    def invalidate(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict:
        return self._cache.get_stats()

    def set_value(self, key: str, value, value_type: str, description: Optional[str] = None) -> None:
        """Persist a setting (admin use) and drop the cached snapshot"""
        stored = json.dumps(value) if value_type == "json" else str(value)
        session = self._session_factory()
        try:
            row = session.get(SystemConfig, key)
            if row is None:
                row = SystemConfig(key=key, value=stored, value_type=value_type, description=description)
                session.add(row)
            else:
                row.value = stored
                row.value_type = value_type
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        self.invalidate()
        logger.info(f"⚙️ WEBHOOK_SETTINGS: {key} updated to {stored}")

    def _load(self) -> WebhookRetrySettings:
        session = self._session_factory()
        try:
            rows = {
                row.key: row.value
                for row in session.query(SystemConfig).filter(
                    SystemConfig.key.in_([RETRY_INTERVALS_KEY, MAX_ATTEMPTS_KEY, EXPIRY_HOURS_KEY])
                )
            }
        except Exception as e:
            logger.warning(f"⚠️ WEBHOOK_SETTINGS: Could not read system_config, using defaults: {e}")
            return DEFAULT_SETTINGS
        finally:
            session.close()

        return WebhookRetrySettings(
            retry_intervals_minutes=_parse_intervals(rows.get(RETRY_INTERVALS_KEY)),
            max_attempts=_parse_positive_int(rows.get(MAX_ATTEMPTS_KEY), MAX_ATTEMPTS_KEY, DEFAULT_MAX_ATTEMPTS),
            expiry_hours=_parse_positive_int(rows.get(EXPIRY_HOURS_KEY), EXPIRY_HOURS_KEY, DEFAULT_EXPIRY_HOURS),
        )


def _parse_intervals(raw: Optional[str]) -> List[int]:
    if raw is None:
        return list(DEFAULT_RETRY_INTERVALS_MINUTES)
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        value = None
    if (
        isinstance(value, list)
        and value
        and all(isinstance(v, (int, float)) and not isinstance(v, bool) and v > 0 for v in value)
    ):
        # Fractional minutes round up so a retry never fires with zero delay
        return [math.ceil(v) for v in value]
    logger.warning(f"⚠️ WEBHOOK_SETTINGS: Invalid {RETRY_INTERVALS_KEY}={raw!r}, using defaults")
    return list(DEFAULT_RETRY_INTERVALS_MINUTES)


def _parse_positive_int(raw: Optional[str], key: str, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = 0
    if value > 0:
        return value
    logger.warning(f"⚠️ WEBHOOK_SETTINGS: Invalid {key}={raw!r}, using default {default}")
    return default
