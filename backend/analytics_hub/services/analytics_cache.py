"""
Analytics result cache: the daily snapshot tier and the on-demand tier.

Both tiers live in the ``analytics_cache`` table. A daily snapshot covers the
trailing reporting window and is rebuilt once a day by the snapshot job; an
on-demand ("all") entry covers one exact date range and is written after a
live fetch. Entries created on a previous calendar day are never served.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_hub.models import AnalyticsCache, CacheDataType, Platform
from analytics_hub.services.date_ranges import DateRange, as_utc, utcnow

logger = logging.getLogger(__name__)

PLATFORM_PREFIX: dict[Platform, str] = {
    Platform.ga: "ga",
    Platform.gsc: "gsc",
    Platform.youtube: "yt",
    Platform.linkedin: "li",
}

# Per-platform keys describing the outcome of a request rather than the data itself.
STATUS_SUFFIXES = ("Error", "ErrorType", "RateLimited", "DataSource")


def metrics_key(platform: Platform) -> str:
    return f"{PLATFORM_PREFIX[platform]}Metrics"


def _is_platform_key(key: str, prefix: str) -> bool:
    rest = key[len(prefix):]
    return key.startswith(prefix) and rest[:1].isupper()


def has_platform_data(payload: dict[str, Any] | None, platform: Platform) -> bool:
    return bool(payload) and payload.get(metrics_key(platform)) is not None


def extract_platform(payload: dict[str, Any], platform: Platform) -> dict[str, Any]:
    """Data keys of one platform, without its request-status tags."""
    prefix = PLATFORM_PREFIX[platform]
    status_keys = {prefix + suffix for suffix in STATUS_SUFFIXES}
    return {
        key: value
        for key, value in payload.items()
        if _is_platform_key(key, prefix) and key not in status_keys
    }


@dataclass(frozen=True)
class CacheEntry:
    id: int
    company_id: str
    data_type: CacheDataType
    date_range_start: date | None
    date_range_end: date | None
    data: dict[str, Any]
    created_at: datetime
    expires_at: datetime


def _to_entry(row: AnalyticsCache) -> CacheEntry:
    return CacheEntry(
        id=row.id,
        company_id=row.company_id,
        data_type=CacheDataType(row.data_type),
        date_range_start=row.date_range_start,
        date_range_end=row.date_range_end,
        data=row.data or {},
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
    )


class AnalyticsCacheStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        stale_after_sec: int = 1800,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._stale_after = timedelta(seconds=stale_after_sec)
        self._clock = clock

    def is_stale(self, entry: CacheEntry, now: datetime | None = None) -> bool:
        now = now or self._clock()
        if entry.created_at.date() != now.date():
            return True
        if now >= entry.expires_at:
            return True
        if entry.data_type is CacheDataType.all and now - entry.created_at > self._stale_after:
            return True
        return False

    async def get(
        self,
        company_id: str,
        data_type: CacheDataType,
        date_range: DateRange | None = None,
    ) -> CacheEntry | None:
        """Return the newest usable entry; stale entries found on the way are deleted."""
        stmt = select(AnalyticsCache).where(
            AnalyticsCache.company_id == company_id,
            AnalyticsCache.data_type == data_type.value,
        )
        if data_type is CacheDataType.all:
            if date_range is None:
                raise ValueError("on-demand cache lookups need a date range")
            stmt = stmt.where(
                AnalyticsCache.date_range_start == date_range.start,
                AnalyticsCache.date_range_end == date_range.end,
            )
        stmt = stmt.order_by(AnalyticsCache.created_at.desc(), AnalyticsCache.id.desc())

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        now = self._clock()
        fresh: CacheEntry | None = None
        stale_ids: list[int] = []
        for row in rows:
            entry = _to_entry(row)
            if self.is_stale(entry, now):
                stale_ids.append(entry.id)
            elif fresh is None:
                fresh = entry

        if stale_ids:
            await self._delete_ids(stale_ids)
            logger.info("[cache] Dropped %d stale %s entries for company %s", len(stale_ids), data_type.value, company_id)
        return fresh

    async def put(
        self,
        company_id: str,
        data_type: CacheDataType,
        date_range: DateRange | None,
        payload: dict[str, Any],
        *,
        ttl_sec: int | None = None,
        expires_at: datetime | None = None,
    ) -> int:
        """Replace the entry for (company, type[, range]) and return the new id."""
        now = self._clock()
        if expires_at is None:
            if ttl_sec is None:
                raise ValueError("either ttl_sec or expires_at is required")
            expires_at = now + timedelta(seconds=ttl_sec)

        replace = delete(AnalyticsCache).where(
            AnalyticsCache.company_id == company_id,
            AnalyticsCache.data_type == data_type.value,
        )
        if data_type is CacheDataType.all and date_range is not None:
            replace = replace.where(
                AnalyticsCache.date_range_start == date_range.start,
                AnalyticsCache.date_range_end == date_range.end,
            )

        row = AnalyticsCache(
            company_id=company_id,
            data_type=data_type.value,
            date_range_start=date_range.start if date_range else None,
            date_range_end=date_range.end if date_range else None,
            data=payload,
            created_at=now,
            expires_at=expires_at,
        )
        async with self._session_factory() as session:
            await session.execute(replace)
            session.add(row)
            await session.commit()
            return row.id

    async def delete(self, entry_id: int) -> None:
        await self._delete_ids([entry_id])

    async def _delete_ids(self, ids: list[int]) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(AnalyticsCache).where(AnalyticsCache.id.in_(ids)))
            await session.commit()

    async def clear(self, company_id: str | None = None, data_type: CacheDataType | None = None) -> int:
        stmt = delete(AnalyticsCache)
        if company_id is not None:
            stmt = stmt.where(AnalyticsCache.company_id == company_id)
        if data_type is not None:
            stmt = stmt.where(AnalyticsCache.data_type == data_type.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def latest_containing(
        self,
        company_id: str,
        platform: Platform,
        lookback_days: int = 30,
    ) -> tuple[dict[str, Any], datetime] | None:
        """Newest on-demand payload holding data for ``platform``, whatever its age within the lookback.

        Used only as a fallback for a single failed platform, so freshness
        rules of the regular tiers do not apply here.
        """
        since = self._clock() - timedelta(days=lookback_days)
        async with self._session_factory() as session:
            result = await session.execute(
                select(AnalyticsCache)
                .where(
                    AnalyticsCache.company_id == company_id,
                    AnalyticsCache.data_type == CacheDataType.all.value,
                    AnalyticsCache.created_at >= since,
                )
                .order_by(AnalyticsCache.created_at.desc(), AnalyticsCache.id.desc())
            )
            rows = result.scalars().all()
        for row in rows:
            if has_platform_data(row.data, platform):
                return extract_platform(row.data, platform), as_utc(row.created_at)
        return None

    async def purge_expired(self, *, lookback_days: int = 30) -> int:
        """Delete snapshots that can no longer be served and on-demand rows past the fallback window.

        Expired on-demand rows younger than the window are kept so a failing
        platform can still be backfilled from them.
        """
        now = self._clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        stmt = delete(AnalyticsCache).where(
            or_(
                (AnalyticsCache.data_type == CacheDataType.daily_snapshot.value)
                & or_(AnalyticsCache.expires_at <= now, AnalyticsCache.created_at < start_of_day),
                (AnalyticsCache.data_type == CacheDataType.all.value)
                & (AnalyticsCache.created_at < now - timedelta(days=lookback_days)),
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("[cache] Purged %d cache rows", purged)
        return purged
