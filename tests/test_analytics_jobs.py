"""Tests for the snapshot, purge and ingestion jobs."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from conftest import seed_company

from analytics_hub.integrations.base import ProviderAPIError
from analytics_hub.models import CacheDataType, Company, Platform
from analytics_hub.services.analytics_jobs import (
    build_daily_snapshots,
    chunked,
    ingest_daily_metrics,
    purge_expired_cache,
    snapshot_expiry,
)
from analytics_hub.services.date_ranges import utcnow


def test_snapshot_expiry_is_tomorrow_at_configured_time() -> None:
    now = datetime(2026, 10, 19, 22, 15, 7, tzinfo=timezone.utc)
    assert snapshot_expiry(now, 8, 33) == datetime(2026, 10, 20, 8, 33, tzinfo=timezone.utc)


def test_chunked() -> None:
    assert list(chunked([1, 2, 3, 4, 5, 6, 7], 3)) == [[1, 2, 3], [4, 5, 6], [7]]
    assert list(chunked([1, 2], 0)) == [[1], [2]]


async def test_build_daily_snapshots_for_mapped_companies(container, fake_clients, date_range) -> None:
    await seed_company(container.session_factory, "acme")
    await seed_company(container.session_factory, "beta", platforms=(Platform.ga,))
    async with container.session_factory() as session:
        session.add(Company(id="gamma", name="Gamma"))
        await session.commit()
    fake_clients[Platform.linkedin].error = ProviderAPIError(Platform.linkedin, "LinkedIn API Error: 500 - boom", 500)
    now = utcnow()

    summary = await build_daily_snapshots(
        container.orchestrator, container.cache, container.mappings, container.settings, now=now
    )

    assert summary["built"] == 2
    assert summary["total"] == 2
    by_company = {r["company"]: r for r in summary["results"]}
    assert by_company["acme"]["platformErrors"] == ["li"]
    assert by_company["beta"]["platformErrors"] == []

    entry = await container.cache.get("acme", CacheDataType.daily_snapshot)
    assert entry.expires_at == snapshot_expiry(now, 8, 33)
    assert (entry.date_range_start, entry.date_range_end) == (date_range.start, date_range.end)
    assert "dataFreshness" not in entry.data

    calls = fake_clients[Platform.ga].calls
    result = await container.orchestrator.get_company_analytics("acme", date_range)
    assert result["dataFreshness"]["source"] == "cache"
    assert result["gaDataSource"] == "cache"
    assert fake_clients[Platform.ga].calls == calls


async def test_rebuilding_replaces_the_previous_snapshot(container, fake_clients) -> None:
    await seed_company(container.session_factory)
    settings = container.settings

    await build_daily_snapshots(container.orchestrator, container.cache, container.mappings, settings)
    fake_clients[Platform.ga].metrics = {"views": 1}
    await build_daily_snapshots(container.orchestrator, container.cache, container.mappings, settings)

    entry = await container.cache.get("acme", CacheDataType.daily_snapshot)
    assert entry.data["gaMetrics"] == {"views": 1}
    assert await container.cache.clear("acme", CacheDataType.daily_snapshot) == 1


async def test_purge_expired_cache_job(container, date_range) -> None:
    await seed_company(container.session_factory)
    await container.cache.put(
        "acme", CacheDataType.daily_snapshot, date_range, {}, expires_at=utcnow() - timedelta(seconds=1)
    )

    assert await purge_expired_cache(container.cache, container.settings) == {"purged": 1}


async def test_ingest_stores_rows_and_records_success(container, date_range) -> None:
    await seed_company(container.session_factory)
    day = date_range.end
    top = [{"title": "Pricing page", "views": 44}]

    result = await ingest_daily_metrics(
        container.normalized_writer,
        container.sync_status,
        "acme",
        Platform.ga,
        [
            {"date": (day - timedelta(days=1)).isoformat(), "sessions": 5, "page_views": 9},
            {"date": day.isoformat(), "sessions": 7, "page_views": 11, "unknown_field": 1},
        ],
        period=(date_range.start, date_range.end),
        top_content=top,
    )

    assert result == {"stored": 2, "state": "success"}
    [record] = await container.sync_status.get_sync_status("acme")
    assert record.has_synced
    assert record.state == "success"
    assert record.data_end_date == date_range.end
    assert record.consecutive_failures == 0

    block = await container.normalized.read_platform("acme", Platform.ga, date_range)
    assert block["gaMetrics"]["sessions"] == 12
    assert block["gaTopContent"] == top


async def test_ingest_overwrites_the_same_day(container, date_range) -> None:
    await seed_company(container.session_factory)
    day = date_range.end.isoformat()
    writer, sync_status = container.normalized_writer, container.sync_status

    await ingest_daily_metrics(writer, sync_status, "acme", Platform.gsc, [{"date": day, "clicks": 3, "impressions": 10}])
    await ingest_daily_metrics(writer, sync_status, "acme", Platform.gsc, [{"date": day, "clicks": 4, "impressions": 40}])

    block = await container.normalized.read_platform("acme", Platform.gsc, date_range)
    assert block["gscMetrics"]["clicks"] == 4
    assert block["gscMetrics"]["ctr"] == 0.1


async def test_ingest_error_counts_consecutive_failures(container) -> None:
    await seed_company(container.session_factory)
    writer, sync_status = container.normalized_writer, container.sync_status

    await ingest_daily_metrics(writer, sync_status, "acme", Platform.youtube, [], error="quota exceeded")
    result = await ingest_daily_metrics(writer, sync_status, "acme", Platform.youtube, [], error="x" * 2000)

    assert result == {"stored": 0, "state": "error"}
    [record] = await sync_status.get_sync_status("acme")
    assert record.state == "error"
    assert record.consecutive_failures == 2
    assert not record.has_synced

    await ingest_daily_metrics(writer, sync_status, "acme", Platform.youtube, [{"date": date(2026, 1, 1).isoformat()}])
    [record] = await sync_status.get_sync_status("acme")
    assert record.consecutive_failures == 0
    assert record.has_synced
