"""
Unit Tests — UploadQuota (Redis counters)
══════════════════════════════════════════
Counters run over the dict-backed memory_redis fixture; outage behaviour
uses an AsyncMock client whose calls raise redis ConnectionError.

Coverage:
  ✅ daily + per-IP hourly keys, IPv6 addresses included
  ✅ check refuses at the limit, record increments both windows
  ✅ limit 0 disables the counter
  ✅ Redis down → check/record allow (fail open), stats raise
  ✅ stats report limits, today's count and the oldest window
  ✅ cleanup deletes windows older than the retention period only
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from catalog_pipeline.core.errors import ExternalServiceError, QuotaExceededError
from catalog_pipeline.services.quota import UploadQuota

NOW = datetime(2025, 11, 20, 14, 30, tzinfo=timezone.utc)


def _down_redis() -> AsyncMock:
    client = AsyncMock()
    client.get = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    client.incr = AsyncMock(side_effect=RedisConnectionError("connection refused"))

    async def _scan(**_):
        raise RedisConnectionError("connection refused")
        yield  # pragma: no cover

    client.scan_iter = _scan
    return client


# ─────────────────────────────────────────────────────────────────────────────
# Keys
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.quota
class TestQuotaKeys:

    def test_daily_key_is_per_utc_day(self, memory_redis):
        quota = UploadQuota(memory_redis)

        assert quota.daily_key(NOW) == "upload-quota:daily:2025-11-20"

    def test_ip_key_is_per_utc_hour(self, memory_redis):
        quota = UploadQuota(memory_redis)

        assert quota.ip_key("203.0.113.7", NOW) == "upload-quota:ip:2025-11-20-14:203.0.113.7"

    def test_ipv6_address_keeps_its_colons(self, memory_redis):
        quota = UploadQuota(memory_redis)

        key = quota.ip_key("2001:db8::1", NOW)

        assert key == "upload-quota:ip:2025-11-20-14:2001:db8::1"
        assert quota._window_date(key) == date(2025, 11, 20)

    def test_missing_ip_is_grouped_as_unknown(self, memory_redis):
        quota = UploadQuota(memory_redis)

        assert quota.ip_key(None, NOW).endswith(":unknown")


# ─────────────────────────────────────────────────────────────────────────────
# check / record
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.quota
class TestQuotaGate:

    async def test_record_counts_both_windows(self, memory_redis):
        quota = UploadQuota(memory_redis, max_daily_uploads=10, max_uploads_per_ip_per_hour=5)

        await quota.record("203.0.113.7", NOW)
        await quota.record("203.0.113.7", NOW)

        assert memory_redis.data == {
            "upload-quota:daily:2025-11-20": 2,
            "upload-quota:ip:2025-11-20-14:203.0.113.7": 2,
        }

    async def test_daily_limit_refuses_at_limit(self, memory_redis):
        quota = UploadQuota(memory_redis, max_daily_uploads=2)
        await quota.record("203.0.113.7", NOW)
        await quota.record("198.51.100.9", NOW)

        with pytest.raises(QuotaExceededError) as exc_info:
            await quota.check("192.0.2.1", NOW)

        assert exc_info.value.scope == "daily"
        assert exc_info.value.limit == 2
        assert exc_info.value.current == 2

    async def test_hourly_limit_applies_per_address(self, memory_redis):
        quota = UploadQuota(memory_redis, max_uploads_per_ip_per_hour=1)
        await quota.record("203.0.113.7", NOW)

        with pytest.raises(QuotaExceededError) as exc_info:
            await quota.check("203.0.113.7", NOW)
        await quota.check("198.51.100.9", NOW)

        assert exc_info.value.scope == "ip"

    async def test_hourly_window_rolls_over(self, memory_redis):
        quota = UploadQuota(memory_redis, max_uploads_per_ip_per_hour=1)
        await quota.record("203.0.113.7", NOW)

        await quota.check("203.0.113.7", NOW.replace(hour=15))

    async def test_zero_limits_disable_quota(self):
        client = AsyncMock()
        quota = UploadQuota(client)

        await quota.check("203.0.113.7", NOW)
        await quota.record("203.0.113.7", NOW)

        assert quota.enabled is False
        client.get.assert_not_awaited()
        client.incr.assert_not_awaited()

    async def test_redis_down_allows_upload(self):
        quota = UploadQuota(_down_redis(), max_daily_uploads=1, max_uploads_per_ip_per_hour=1)

        await quota.check("203.0.113.7", NOW)
        await quota.record("203.0.113.7", NOW)


# ─────────────────────────────────────────────────────────────────────────────
# stats / cleanup
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.quota
class TestQuotaReporting:

    async def test_stats_report_limits_and_history(self, memory_redis):
        quota = UploadQuota(memory_redis, max_daily_uploads=100, max_uploads_per_ip_per_hour=10)
        await quota.record("203.0.113.7", NOW.replace(day=18))
        await quota.record("203.0.113.7", NOW)
        await quota.record("198.51.100.9", NOW)

        stats = await quota.stats(NOW)

        assert stats.daily_limit == 100
        assert stats.ip_hourly_limit == 10
        assert stats.today_uploads == 2
        assert stats.total_daily_records == 2
        assert stats.total_ip_records == 3
        assert stats.oldest_record == date(2025, 11, 18)

    async def test_stats_on_empty_store(self, memory_redis):
        stats = await UploadQuota(memory_redis).stats(NOW)

        assert stats.today_uploads == 0
        assert stats.oldest_record is None

    async def test_stats_raise_when_redis_down(self):
        with pytest.raises(ExternalServiceError) as exc_info:
            await UploadQuota(_down_redis()).stats(NOW)

        assert exc_info.value.service == "quota"

    async def test_cleanup_deletes_only_expired_windows(self, memory_redis):
        quota = UploadQuota(memory_redis, max_daily_uploads=100, max_uploads_per_ip_per_hour=10)
        old = datetime(2025, 10, 1, 9, tzinfo=timezone.utc)
        await quota.record("2001:db8::1", old)
        await quota.record("203.0.113.7", NOW)

        result = await quota.cleanup(retention_days=30, now=NOW)

        assert result.daily_deleted == 1
        assert result.ip_deleted == 1
        assert result.total_deleted == 2
        assert result.cutoff == date(2025, 10, 21)
        assert sorted(memory_redis.data) == [
            "upload-quota:daily:2025-11-20",
            "upload-quota:ip:2025-11-20-14:203.0.113.7",
        ]

    async def test_cleanup_keeps_window_on_cutoff_day(self, memory_redis):
        quota = UploadQuota(memory_redis, max_daily_uploads=100)
        await quota.record("203.0.113.7", datetime(2025, 10, 21, tzinfo=timezone.utc))

        result = await quota.cleanup(retention_days=30, now=NOW)

        assert result.total_deleted == 0

    async def test_cleanup_ignores_foreign_keys(self, memory_redis):
        memory_redis.data["upload-quota:daily:not-a-date"] = 4
        quota = UploadQuota(memory_redis)

        result = await quota.cleanup(retention_days=0, now=NOW)

        assert result.total_deleted == 0
        assert "upload-quota:daily:not-a-date" in memory_redis.data
