"""
Precomputed tier: per-day metric tables filled by the sync jobs, aggregated
on read into the same block shapes the live provider clients return.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import date, timedelta
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_hub.models import (
    GADailyMetrics,
    GSCDailyMetrics,
    LIDailyMetrics,
    Platform,
    PlatformPeriodSnapshot,
    YTDailyMetrics,
)
from analytics_hub.services.analytics_cache import PLATFORM_PREFIX, metrics_key
from analytics_hub.services.date_ranges import DateRange

logger = logging.getLogger(__name__)

DAILY_TABLES = {
    Platform.ga: GADailyMetrics,
    Platform.gsc: GSCDailyMetrics,
    Platform.youtube: YTDailyMetrics,
    Platform.linkedin: LIDailyMetrics,
}


def _sum(rows: Sequence[Any], field: str) -> float:
    return sum(getattr(row, field, 0) or 0 for row in rows)


def _avg(rows: Sequence[Any], field: str) -> float:
    return _sum(rows, field) / len(rows) if rows else 0


def _ga_block(rows: Sequence[Any]) -> dict[str, Any]:
    return {
        "totalUsers": int(_sum(rows, "total_users")),
        "newUsers": int(_sum(rows, "new_users")),
        "sessions": int(_sum(rows, "sessions")),
        "views": int(_sum(rows, "page_views")),
        "avgSessionDuration": _avg(rows, "avg_session_duration"),
        "bounceRate": _avg(rows, "bounce_rate"),
        "keyEvents": int(_sum(rows, "key_events")),
        "userKeyEventRate": _avg(rows, "user_key_event_rate"),
    }


def _gsc_block(rows: Sequence[Any]) -> dict[str, Any]:
    impressions = int(_sum(rows, "impressions"))
    clicks = int(_sum(rows, "clicks"))
    return {
        "impressions": impressions,
        "clicks": clicks,
        "ctr": clicks / impressions if impressions > 0 else 0,
        "avgPosition": _avg(rows, "avg_position"),
    }


def _yt_block(rows: Sequence[Any]) -> dict[str, Any]:
    return {
        "views": int(_sum(rows, "views")),
        "totalWatchTime": int(_sum(rows, "watch_time_seconds")),
        "shares": int(_sum(rows, "shares")),
        "likes": int(_sum(rows, "likes")),
        "dislikes": int(_sum(rows, "dislikes")),
        "comments": int(_sum(rows, "comments")),
        "subscriptions": int(_sum(rows, "subscribers_gained") - _sum(rows, "subscribers_lost")),
        "avgViewDuration": _avg(rows, "avg_view_duration"),
    }


def _li_block(rows: Sequence[Any]) -> dict[str, Any]:
    impressions = int(_sum(rows, "impressions"))
    clicks = int(_sum(rows, "clicks"))
    reactions = int(_sum(rows, "reactions"))
    comments = int(_sum(rows, "comments"))
    reposts = int(_sum(rows, "reposts"))
    return {
        "pageViews": int(_sum(rows, "page_views")),
        "uniqueVisitors": int(_sum(rows, "unique_visitors")),
        "newFollowers": int(_sum(rows, "organic_follower_gain") + _sum(rows, "paid_follower_gain")),
        "impressions": impressions,
        "clicks": clicks,
        "reactions": reactions,
        "comments": comments,
        "reposts": reposts,
        "engagementRate": (clicks + reactions + comments + reposts) / impressions if impressions > 0 else 0,
    }


BLOCK_BUILDERS = {
    Platform.ga: _ga_block,
    Platform.gsc: _gsc_block,
    Platform.youtube: _yt_block,
    Platform.linkedin: _li_block,
}


def aggregate_metrics(platform: Platform, current: Sequence[Any], previous: Sequence[Any]) -> dict[str, Any]:
    """Sum/average daily rows into a metric block; empty input yields zeros."""
    build = BLOCK_BUILDERS[platform]
    block = build(current)
    block["previousPeriod"] = build(previous) if previous else None
    return block


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def build_weekly_data(rows: Iterable[Any], platform: Platform) -> list[dict[str, Any]]:
    """Monday-based weekly buckets for GA (views/sessions) and GSC (impressions/clicks)."""
    weeks: OrderedDict[date, dict[str, Any]] = OrderedDict()
    for row in sorted(rows, key=lambda r: r.date):
        bucket = weeks.setdefault(
            week_start(row.date),
            {"last": row.date, "views": 0, "sessions": 0, "impressions": 0, "clicks": 0},
        )
        bucket["last"] = row.date
        if platform is Platform.ga:
            bucket["views"] += row.page_views or 0
            bucket["sessions"] += row.sessions or 0
        else:
            bucket["impressions"] += row.impressions or 0
            bucket["clicks"] += row.clicks or 0

    out = []
    for start, bucket in weeks.items():
        label = f"{start.strftime('%b')} {start.day}-{bucket['last'].day}"
        if platform is Platform.ga:
            out.append(
                {
                    "weekLabel": label,
                    "weekNumber": start.isocalendar()[1],
                    "startDate": start.isoformat(),
                    "endDate": bucket["last"].isoformat(),
                    "views": bucket["views"],
                    "sessions": bucket["sessions"],
                }
            )
        else:
            impressions, clicks = bucket["impressions"], bucket["clicks"]
            out.append(
                {
                    "weekLabel": label,
                    "date": start.isoformat(),
                    "impressions": impressions,
                    "clicks": clicks,
                    "ctr": clicks / impressions if impressions > 0 else 0,
                }
            )
    return out


def _series(rows: Sequence[Any], platform: Platform) -> dict[str, Any]:
    prefix = PLATFORM_PREFIX[platform]
    if platform in (Platform.ga, Platform.gsc):
        return {f"{prefix}WeeklyData": build_weekly_data(rows, platform)}
    if platform is Platform.youtube:
        return {"ytViewsSparkline": [row.views or 0 for row in rows]}
    return {
        "liFollowerDaily": [
            {
                "date": row.date.isoformat(),
                "organic": row.organic_follower_gain or 0,
                "sponsored": row.paid_follower_gain or 0,
            }
            for row in rows
        ]
    }


def assemble_platform(
    platform: Platform,
    current: Sequence[Any],
    previous: Sequence[Any],
    snapshot: dict[str, Any] | None,
) -> dict[str, Any]:
    prefix = PLATFORM_PREFIX[platform]
    block = {metrics_key(platform): aggregate_metrics(platform, current, previous)}
    block.update(_series(current, platform))
    block[f"{prefix}TopContent"] = (snapshot or {}).get("top_content") or []
    return block


class NormalizedMetricsReader:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _rows(self, platform: Platform, company_id: str, start: date, end: date) -> list[Any]:
        table = DAILY_TABLES[platform]
        async with self._session_factory() as session:
            result = await session.execute(
                select(table)
                .where(table.company_id == company_id, table.date >= start, table.date <= end)
                .order_by(table.date)
            )
            return list(result.scalars().all())

    async def closest_snapshot(
        self, platform: Platform, company_id: str, start: date, end: date
    ) -> dict[str, Any] | None:
        """Exact-period snapshot if there is one, else the most recent one."""
        async with self._session_factory() as session:
            base = select(PlatformPeriodSnapshot).where(
                PlatformPeriodSnapshot.company_id == company_id,
                PlatformPeriodSnapshot.platform == platform.value,
            )
            row = await session.scalar(
                base.where(PlatformPeriodSnapshot.period_start == start, PlatformPeriodSnapshot.period_end == end)
                .order_by(PlatformPeriodSnapshot.snapshot_date.desc())
                .limit(1)
            )
            if row is None:
                row = await session.scalar(base.order_by(PlatformPeriodSnapshot.snapshot_date.desc()).limit(1))
        return row.payload if row else None

    async def read_platform(
        self,
        company_id: str,
        platform: Platform,
        date_range: DateRange,
        *,
        allow_empty: bool = False,
    ) -> dict[str, Any] | None:
        """Aggregated block for one platform, or None when the store has no rows.

        With ``allow_empty`` a platform without rows yields an all-zero block;
        callers pass it for platforms that have synced successfully before.
        """
        current, previous, snapshot = await asyncio.gather(
            self._rows(platform, company_id, date_range.start, date_range.end),
            self._rows(platform, company_id, date_range.previous_start, date_range.previous_end),
            self.closest_snapshot(platform, company_id, date_range.start, date_range.end),
        )
        if not current and not allow_empty:
            return None
        return assemble_platform(platform, current, previous, snapshot)

    async def read(
        self,
        company_id: str,
        date_range: DateRange,
        platforms: Iterable[Platform],
    ) -> dict[Platform, dict[str, Any]]:
        platforms = list(platforms)
        blocks = await asyncio.gather(
            *(self.read_platform(company_id, platform, date_range) for platform in platforms)
        )
        return {platform: block for platform, block in zip(platforms, blocks) if block is not None}


def _coerce_day(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class NormalizedMetricsWriter:
    """Write side used by the out-of-band ingestion of daily provider data."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert_daily(self, platform: Platform, company_id: str, rows: Iterable[dict[str, Any]]) -> int:
        """Insert or overwrite one row per (company, date); unknown fields are ignored."""
        table = DAILY_TABLES[platform]
        columns = set(table.__table__.columns.keys()) - {"id", "company_id", "date"}
        by_day: dict[date, dict[str, Any]] = {}
        for row in rows:
            day = _coerce_day(row["date"])
            by_day[day] = {key: value for key, value in row.items() if key in columns}
        if not by_day:
            return 0

        async with self._session_factory() as session:
            result = await session.execute(
                select(table).where(table.company_id == company_id, table.date.in_(list(by_day)))
            )
            existing = {row.date: row for row in result.scalars().all()}
            for day, values in by_day.items():
                row = existing.get(day)
                if row is None:
                    session.add(table(company_id=company_id, date=day, **values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
            await session.commit()
        return len(by_day)

    async def save_period_snapshot(
        self,
        platform: Platform,
        company_id: str,
        period_start: date,
        period_end: date,
        snapshot_date: date,
        payload: dict[str, Any],
    ) -> None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(PlatformPeriodSnapshot).where(
                    PlatformPeriodSnapshot.company_id == company_id,
                    PlatformPeriodSnapshot.platform == platform.value,
                    PlatformPeriodSnapshot.period_start == period_start,
                    PlatformPeriodSnapshot.period_end == period_end,
                )
            )
            if row is None:
                row = PlatformPeriodSnapshot(
                    company_id=company_id,
                    platform=platform.value,
                    period_start=period_start,
                    period_end=period_end,
                )
                session.add(row)
            row.snapshot_date = snapshot_date
            row.payload = payload
            await session.commit()
