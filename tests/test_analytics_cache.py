"""Tests for the analytics cache tiers and their staleness rules."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from analytics_hub.models import AnalyticsCache, CacheDataType, Platform
from analytics_hub.services.analytics_cache import AnalyticsCacheStore, extract_platform
from analytics_hub.services.date_ranges import normalize_date_range

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
RANGE = normalize_date_range("2026-09-19", "2026-10-19", today=NOW.date(), floor=date(2020, 1, 1))
OTHER_RANGE = normalize_date_range("2026-08-01", "2026-08-31", today=NOW.date(), floor=date(2020, 1, 1))
OLD_RANGE = normalize_date_range("2026-07-01", "2026-07-31", today=NOW.date(), floor=date(2020, 1, 1))


def _store(session_factory, now: datetime = NOW) -> AnalyticsCacheStore:
    return AnalyticsCacheStore(session_factory, stale_after_sec=1800, clock=lambda: now)


async def _count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(AnalyticsCache))


async def test_fresh_on_demand_entry_is_served(session_factory) -> None:
    store = _store(session_factory)
    await store.put("acme", CacheDataType.all, RANGE, {"gaMetrics": {"views": 1}}, ttl_sec=3600)

    entry = await store.get("acme", CacheDataType.all, RANGE)

    assert entry is not None
    assert entry.data == {"gaMetrics": {"views": 1}}
    assert entry.created_at == NOW
    assert await store.get("acme", CacheDataType.all, OTHER_RANGE) is None


async def test_on_demand_entry_past_staleness_threshold_is_deleted(session_factory) -> None:
    await _store(session_factory, NOW - timedelta(minutes=40)).put(
        "acme", CacheDataType.all, RANGE, {"gaMetrics": {}}, ttl_sec=3600
    )

    assert await _store(session_factory).get("acme", CacheDataType.all, RANGE) is None
    assert await _count(session_factory) == 0


async def test_daily_snapshot_has_no_staleness_threshold(session_factory) -> None:
    await _store(session_factory, NOW - timedelta(hours=3)).put(
        "acme", CacheDataType.daily_snapshot, RANGE, {"gaMetrics": {}}, expires_at=NOW + timedelta(hours=20)
    )

    entry = await _store(session_factory).get("acme", CacheDataType.daily_snapshot)

    assert entry is not None
    assert entry.date_range_start == RANGE.start


async def test_entry_from_previous_day_is_never_served(session_factory) -> None:
    await _store(session_factory, NOW - timedelta(hours=13)).put(
        "acme", CacheDataType.daily_snapshot, RANGE, {"gaMetrics": {}}, expires_at=NOW + timedelta(days=1)
    )

    assert await _store(session_factory).get("acme", CacheDataType.daily_snapshot) is None
    assert await _count(session_factory) == 0


async def test_expired_entry_is_not_served(session_factory) -> None:
    await _store(session_factory, NOW - timedelta(minutes=5)).put(
        "acme", CacheDataType.all, RANGE, {"gaMetrics": {}}, ttl_sec=60
    )

    assert await _store(session_factory).get("acme", CacheDataType.all, RANGE) is None


async def test_put_replaces_only_the_same_range(session_factory) -> None:
    store = _store(session_factory)
    await store.put("acme", CacheDataType.all, RANGE, {"v": 1}, ttl_sec=3600)
    await store.put("acme", CacheDataType.all, OTHER_RANGE, {"v": 2}, ttl_sec=3600)
    await store.put("acme", CacheDataType.all, RANGE, {"v": 3}, ttl_sec=3600)

    assert (await store.get("acme", CacheDataType.all, RANGE)).data == {"v": 3}
    assert (await store.get("acme", CacheDataType.all, OTHER_RANGE)).data == {"v": 2}
    assert await _count(session_factory) == 2


async def test_on_demand_lookup_requires_range(session_factory) -> None:
    with pytest.raises(ValueError):
        await _store(session_factory).get("acme", CacheDataType.all)


async def test_latest_containing_skips_entries_without_the_platform(session_factory) -> None:
    two_days_ago = NOW - timedelta(days=2)
    await _store(session_factory, NOW - timedelta(days=45)).put(
        "acme", CacheDataType.all, OLD_RANGE, {"liMetrics": {"clicks": 1}}, ttl_sec=3600
    )
    await _store(session_factory, two_days_ago).put(
        "acme",
        CacheDataType.all,
        OTHER_RANGE,
        {"liMetrics": {"clicks": 7}, "liFollowerDaily": [], "liDataSource": "api", "gaMetrics": {"views": 2}},
        ttl_sec=3600,
    )
    await _store(session_factory, NOW - timedelta(hours=1)).put(
        "acme", CacheDataType.all, RANGE, {"liError": "boom", "liErrorType": "api_error"}, ttl_sec=3600
    )

    hit = await _store(session_factory).latest_containing("acme", Platform.linkedin, 30)

    assert hit is not None
    data, created_at = hit
    assert data == {"liMetrics": {"clicks": 7}, "liFollowerDaily": []}
    assert created_at == two_days_ago
    assert await _store(session_factory).latest_containing("acme", Platform.youtube, 30) is None


async def test_purge_keeps_recent_on_demand_rows_for_fallback(session_factory) -> None:
    yesterday = NOW - timedelta(days=1)
    await _store(session_factory, yesterday).put(
        "acme", CacheDataType.daily_snapshot, RANGE, {}, expires_at=NOW + timedelta(hours=1)
    )
    await _store(session_factory, yesterday).put("acme", CacheDataType.all, RANGE, {"gaMetrics": {}}, ttl_sec=60)
    await _store(session_factory, NOW - timedelta(days=40)).put(
        "acme", CacheDataType.all, OTHER_RANGE, {"gaMetrics": {}}, ttl_sec=60
    )
    await _store(session_factory).put(
        "beta", CacheDataType.daily_snapshot, RANGE, {}, expires_at=NOW + timedelta(hours=20)
    )

    purged = await _store(session_factory).purge_expired(lookback_days=30)

    assert purged == 2
    async with session_factory() as session:
        rows = (await session.execute(select(AnalyticsCache.company_id, AnalyticsCache.data_type))).all()
    assert sorted(tuple(row) for row in rows) == [("acme", "all"), ("beta", "daily_snapshot")]


async def test_clear_by_company_and_type(session_factory) -> None:
    store = _store(session_factory)
    await store.put("acme", CacheDataType.all, RANGE, {}, ttl_sec=60)
    await store.put("acme", CacheDataType.daily_snapshot, RANGE, {}, ttl_sec=60)
    await store.put("beta", CacheDataType.all, RANGE, {}, ttl_sec=60)

    assert await store.clear("acme", CacheDataType.daily_snapshot) == 1
    assert await store.clear("acme") == 1
    assert await _count(session_factory) == 1


def test_extract_platform_drops_status_tags_and_other_platforms() -> None:
    payload = {
        "gaMetrics": {"views": 1},
        "gaWeeklyData": [],
        "gaError": "x",
        "gaDataSource": "api",
        "gscMetrics": {"clicks": 1},
        "dataFreshness": {},
    }
    assert extract_platform(payload, Platform.ga) == {"gaMetrics": {"views": 1}, "gaWeeklyData": []}
