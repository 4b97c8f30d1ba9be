"""
Tests for the cached webhook retry settings
"""

import pytest

from database import managed_session
from models import SystemConfig
from services.webhook_settings_provider import (
    DEFAULT_EXPIRY_HOURS, DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_INTERVALS_MINUTES, DEFAULT_SETTINGS,
    EXPIRY_HOURS_KEY, MAX_ATTEMPTS_KEY, RETRY_INTERVALS_KEY
)


def _store(session_factory, key, value, value_type="string"):
    with managed_session(session_factory) as session:
        row = session.get(SystemConfig, key)
        if row is None:
            session.add(SystemConfig(key=key, value=value, value_type=value_type))
        else:
            row.value = value


class TestWebhookSettingsProvider:

    def test_defaults_when_nothing_stored(self, settings_provider):
        settings = settings_provider.get_settings()
        assert settings.retry_intervals_minutes == DEFAULT_RETRY_INTERVALS_MINUTES
        assert settings.max_attempts == DEFAULT_MAX_ATTEMPTS
        assert settings.expiry_hours == DEFAULT_EXPIRY_HOURS

    def test_cached_until_ttl_elapses(self, session_factory, settings_provider, fake_clock):
        assert settings_provider.get_settings().max_attempts == 5

        _store(session_factory, MAX_ATTEMPTS_KEY, "8", "int")
        fake_clock.advance(30)
        assert settings_provider.get_settings().max_attempts == 5

        fake_clock.advance(31)
        assert settings_provider.get_settings().max_attempts == 8

    def test_set_value_invalidates_cache(self, settings_provider):
        settings_provider.get_settings()
        settings_provider.set_value(RETRY_INTERVALS_KEY, [2, 4, 8], "json")

        assert settings_provider.get_settings().retry_intervals_minutes == [2, 4, 8]

    @pytest.mark.parametrize("key,raw", [
        (RETRY_INTERVALS_KEY, "not json"),
        (RETRY_INTERVALS_KEY, "[]"),
        (RETRY_INTERVALS_KEY, "[5, -1]"),
        (MAX_ATTEMPTS_KEY, "zero"),
        (EXPIRY_HOURS_KEY, "-3"),
    ])
    def test_invalid_values_fall_back_to_defaults(self, session_factory, settings_provider, key, raw):
        _store(session_factory, key, raw)
        assert settings_provider.get_settings() == DEFAULT_SETTINGS

    def test_backoff_repeats_last_interval(self, settings_provider):
        settings = settings_provider.get_settings()
        assert settings.backoff_minutes(1) == 1
        assert settings.backoff_minutes(2) == 5
        assert settings.backoff_minutes(5) == 60
        assert settings.backoff_minutes(7) == 60

    def test_fractional_intervals_round_up(self, session_factory, settings_provider):
        _store(session_factory, RETRY_INTERVALS_KEY, "[0.5, 2.2, 10]", "json")

        settings = settings_provider.get_settings()

        assert settings.retry_intervals_minutes == [1, 3, 10]
        assert settings.backoff_minutes(1) == 1

    def test_cache_stats_track_hits(self, settings_provider):
        settings_provider.get_settings()
        settings_provider.get_settings()

        stats = settings_provider.cache_stats()
        assert stats["misses"] == 1
        assert stats["hits"] == 1
        assert stats["cache_size"] == 1
