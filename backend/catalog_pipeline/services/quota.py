"""
Upload Quotas — daily + per-IP hourly counters in Redis

Two counters gate submit_upload:

    upload-quota:daily:<YYYY-MM-DD>             uploads accepted that UTC day
    upload-quota:ip:<YYYY-MM-DD-HH>:<client ip> uploads accepted from one
                                                address in that UTC hour

A limit of 0 disables that counter entirely (no Redis round-trip).

Flow:
  check(ip)   before anything is written: raises QuotaExceededError when a
              counter is already at its limit
  record(ip)  after the attempt is durable: INCR both counters

Redis is advisory here. If it is unreachable the upload is allowed and the
error is logged (fail open); the attempt record in Postgres stays the source
of truth. Counters have no TTL: cleanup(retention_days), run daily by the
beat task, deletes keys whose window is older than the retention period, so
stats() can report history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from catalog_pipeline.core.config import Settings
from catalog_pipeline.core.errors import ExternalServiceError, QuotaExceededError

logger = logging.getLogger(__name__)

KEY_PREFIX = "upload-quota"
UNKNOWN_IP = "unknown"

_DAY_FMT = "%Y-%m-%d"
_HOUR_FMT = "%Y-%m-%d-%H"


@dataclass(frozen=True)
class UsageStats:
    daily_limit:        int
    ip_hourly_limit:    int
    today_uploads:      int
    total_daily_records: int
    total_ip_records:   int
    oldest_record:      Optional[date]


@dataclass(frozen=True)
class CleanupResult:
    daily_deleted: int
    ip_deleted:    int
    cutoff:        date

    @property
    def total_deleted(self) -> int:
        return self.daily_deleted + self.ip_deleted


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadQuota:
    def __init__(
        self,
        redis_client: aioredis.Redis,
        max_daily_uploads: int = 0,
        max_uploads_per_ip_per_hour: int = 0,
        key_prefix: str = KEY_PREFIX,
    ) -> None:
        self._redis = redis_client
        self.max_daily_uploads = max(0, max_daily_uploads)
        self.max_uploads_per_ip_per_hour = max(0, max_uploads_per_ip_per_hour)
        self._prefix = key_prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadQuota":
        return cls(
            aioredis.from_url(settings.quota_redis_url, decode_responses=True),
            max_daily_uploads=settings.max_daily_uploads,
            max_uploads_per_ip_per_hour=settings.max_uploads_per_ip_per_hour,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.max_daily_uploads or self.max_uploads_per_ip_per_hour)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def daily_key(self, now: datetime) -> str:
        return f"{self._prefix}:daily:{now.strftime(_DAY_FMT)}"

    def ip_key(self, client_ip: Optional[str], now: datetime) -> str:
        return f"{self._prefix}:ip:{now.strftime(_HOUR_FMT)}:{client_ip or UNKNOWN_IP}"

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    async def check(self, client_ip: Optional[str], now: Optional[datetime] = None) -> None:
        """Raise QuotaExceededError when either counter is at its limit."""
        if not self.enabled:
            return
        now = now or _utcnow()
        try:
            if self.max_daily_uploads:
                used = int(await self._redis.get(self.daily_key(now)) or 0)
                if used >= self.max_daily_uploads:
                    logger.warning("Daily upload quota reached | used=%d limit=%d", used, self.max_daily_uploads)
                    raise QuotaExceededError("daily", self.max_daily_uploads, used)

            if self.max_uploads_per_ip_per_hour:
                used = int(await self._redis.get(self.ip_key(client_ip, now)) or 0)
                if used >= self.max_uploads_per_ip_per_hour:
                    logger.warning(
                        "Hourly IP upload quota reached | ip=%s used=%d limit=%d",
                        client_ip, used, self.max_uploads_per_ip_per_hour,
                    )
                    raise QuotaExceededError("ip", self.max_uploads_per_ip_per_hour, used)
        except RedisError as exc:
            logger.error("Quota check skipped, Redis unavailable | ip=%s error=%s", client_ip, exc)

    async def record(self, client_ip: Optional[str], now: Optional[datetime] = None) -> None:
        """Count one accepted upload against both windows."""
        if not self.enabled:
            return
        now = now or _utcnow()
        try:
            daily = await self._redis.incr(self.daily_key(now))
            hourly = await self._redis.incr(self.ip_key(client_ip, now))
        except RedisError as exc:
            logger.error("Quota record skipped, Redis unavailable | ip=%s error=%s", client_ip, exc)
            return
        logger.info("Upload counted | ip=%s daily=%s hourly=%s", client_ip, daily, hourly)

    # ------------------------------------------------------------------
    # Reporting + retention
    # ------------------------------------------------------------------

    async def stats(self, now: Optional[datetime] = None) -> UsageStats:
        now = now or _utcnow()
        try:
            daily_keys = [k async for k in self._redis.scan_iter(match=f"{self._prefix}:daily:*")]
            ip_keys = [k async for k in self._redis.scan_iter(match=f"{self._prefix}:ip:*")]
            today = int(await self._redis.get(self.daily_key(now)) or 0)
        except RedisError as exc:
            logger.error("Usage stats unavailable | error=%s", exc)
            raise ExternalServiceError("quota", f"usage stats unavailable: {exc}") from exc

        days = [d for d in (self._window_date(k) for k in daily_keys) if d is not None]
        return UsageStats(
            daily_limit=self.max_daily_uploads,
            ip_hourly_limit=self.max_uploads_per_ip_per_hour,
            today_uploads=today,
            total_daily_records=len(daily_keys),
            total_ip_records=len(ip_keys),
            oldest_record=min(days) if days else None,
        )

    async def cleanup(self, retention_days: int, now: Optional[datetime] = None) -> CleanupResult:
        """Delete counters whose window started before today minus ``retention_days``."""
        now = now or _utcnow()
        cutoff = (now - timedelta(days=retention_days)).date()
        deleted = {"daily": 0, "ip": 0}

        try:
            for kind in deleted:
                expired = []
                async for key in self._redis.scan_iter(match=f"{self._prefix}:{kind}:*"):
                    window = self._window_date(key)
                    if window is not None and window < cutoff:
                        expired.append(key)
                if expired:
                    deleted[kind] = await self._redis.delete(*expired)
        except RedisError as exc:
            logger.error("Usage cleanup failed | error=%s", exc)
            raise ExternalServiceError("quota", f"usage cleanup failed: {exc}") from exc

        logger.info(
            "Usage records cleaned | daily=%d ip=%d cutoff=%s",
            deleted["daily"], deleted["ip"], cutoff,
        )
        return CleanupResult(daily_deleted=deleted["daily"], ip_deleted=deleted["ip"], cutoff=cutoff)

    async def close(self) -> None:
        await self._redis.aclose()

    def _window_date(self, key: str) -> Optional[date]:
        # <prefix>:daily:YYYY-MM-DD  |  <prefix>:ip:YYYY-MM-DD-HH:<ip>
        parts = key[len(self._prefix) + 1:].split(":", 2)
        if len(parts) < 2:
            return None
        try:
            return datetime.strptime(parts[1][:10], _DAY_FMT).date()
        except ValueError:
            return None
