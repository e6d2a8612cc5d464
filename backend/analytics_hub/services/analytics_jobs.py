"""
Out-of-band analytics jobs.

- build_daily_snapshots: prebuild the trailing-window result for every mapped
  company, processed in small concurrent batches
- build_portfolio_snapshots: rebuild every member's default portfolio for today
  and drop portfolio rows older than the retention window
- purge_expired_cache: drop cache rows that can no longer be served
- ingest_daily_metrics: store daily rows pushed by the provider sync and
  record the outcome on the sync-status record
"""
from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from analytics_hub.models import CacheDataType, Platform
from analytics_hub.services.account_mappings import AccountMappingRepository, CompanyAccessRepository
from analytics_hub.services.analytics_cache import AnalyticsCacheStore
from analytics_hub.services.analytics_orchestrator import AnalyticsOrchestrator
from analytics_hub.services.date_ranges import DateRange, trailing_range, utcnow
from analytics_hub.services.normalized_metrics import NormalizedMetricsWriter
from analytics_hub.services.portfolio import PortfolioService
from analytics_hub.services.sync_status import SyncStatusRepository
from analytics_hub.settings import Settings

logger = logging.getLogger(__name__)


def snapshot_expiry(now: datetime, hour: int, minute: int) -> datetime:
    """Tomorrow at the configured UTC wall-clock time."""
    return (now + timedelta(days=1)).replace(hour=hour, minute=minute, second=0, microsecond=0)


def chunked(items: list[Any], size: int) -> Iterable[list[Any]]:
    size = max(1, size)
    for i in range(0, len(items), size):
        yield items[i : i + size]


async def build_company_snapshot(
    orchestrator: AnalyticsOrchestrator,
    cache: AnalyticsCacheStore,
    company_id: str,
    date_range: DateRange,
    expires_at: datetime,
) -> dict[str, Any]:
    # Drop the old snapshot first so a failed rebuild never leaves yesterday's data in place.
    await cache.clear(company_id, CacheDataType.daily_snapshot)
    payload = await orchestrator.fetch_live(company_id, date_range)
    if not payload:
        return {"company": company_id, "status": "skipped", "error": "no mappings"}
    await cache.put(company_id, CacheDataType.daily_snapshot, date_range, payload, expires_at=expires_at)
    errors = sorted(key[: -len("Error")] for key in payload if key.endswith("Error"))
    return {"company": company_id, "status": "ok", "platformErrors": errors}


async def build_daily_snapshots(
    orchestrator: AnalyticsOrchestrator,
    cache: AnalyticsCacheStore,
    mappings: AccountMappingRepository,
    settings: Settings,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    date_range = trailing_range(now.date(), settings.default_range_days, settings.date_floor)
    expires_at = snapshot_expiry(now, settings.snapshot_expiry_hour_utc, settings.snapshot_expiry_minute_utc)

    companies = await mappings.companies_with_mappings()
    batches = list(chunked(companies, settings.snapshot_batch_size))
    logger.info(
        "[snapshots] Building %d company snapshots for %s in %d batches",
        len(companies),
        date_range.key,
        len(batches),
    )

    results: list[dict[str, Any]] = []
    for index, batch in enumerate(batches, start=1):
        logger.info("[snapshots] Batch %d/%d (%d companies)", index, len(batches), len(batch))
        outcomes = await asyncio.gather(
            *(build_company_snapshot(orchestrator, cache, company_id, date_range, expires_at) for company_id in batch),
            return_exceptions=True,
        )
        for company_id, outcome in zip(batch, outcomes):
            if isinstance(outcome, Exception):
                logger.error("[snapshots] Company %s failed: %s", company_id, outcome)
                results.append({"company": company_id, "status": "error", "error": str(outcome)})
            else:
                results.append(outcome)

    built = sum(1 for r in results if r["status"] == "ok")
    logger.info("[snapshots] Completed: %d built, %d failed", built, len(results) - built)
    return {"built": built, "total": len(companies), "results": results}


async def build_portfolio_snapshots(
    portfolio: PortfolioService,
    access: CompanyAccessRepository,
    settings: Settings,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    today = now.date()
    date_range = portfolio.default_range(today)
    users = await access.memberships_by_user()
    logger.info("[portfolio] Building portfolios for %d users for %s", len(users), date_range.key)

    processed = 0
    errors: list[dict[str, str]] = []
    for batch in chunked(sorted(users), settings.snapshot_batch_size):
        outcomes = await asyncio.gather(
            *(portfolio.build(users[user_id], date_range) for user_id in batch),
            return_exceptions=True,
        )
        for user_id, outcome in zip(batch, outcomes):
            if isinstance(outcome, Exception):
                logger.error("[portfolio] User %s failed: %s", user_id, outcome)
                errors.append({"userId": user_id, "error": str(outcome)})
                continue
            await portfolio.store.put(user_id, today, outcome["companies"], outcome["aggregateMetrics"], now=now)
            processed += 1

    purged = await portfolio.store.purge_before(today - timedelta(days=settings.portfolio_cache_retention_days))
    logger.info("[portfolio] Completed: %d/%d built, %d old rows purged", processed, len(users), purged)
    return {
        "processed": processed,
        "total": len(users),
        "errors": errors,
        "purged": purged,
        "cacheDate": today.isoformat(),
    }


async def purge_expired_cache(cache: AnalyticsCacheStore, settings: Settings) -> dict[str, int]:
    purged = await cache.purge_expired(lookback_days=settings.cache_fallback_lookback_days)
    return {"purged": purged}


async def ingest_daily_metrics(
    writer: NormalizedMetricsWriter,
    sync_status: SyncStatusRepository,
    company_id: str,
    platform: Platform,
    rows: list[dict[str, Any]],
    *,
    period: tuple[date, date] | None = None,
    top_content: list[dict[str, Any]] | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    """Record one provider sync run for a company/platform.

    A run reported with ``error`` only bumps the failure counter; existing
    rows are left untouched.
    """
    if error:
        await sync_status.record_failure(company_id, platform, error)
        return {"stored": 0, "state": "error"}

    try:
        stored = await writer.upsert_daily(platform, company_id, rows)
        days = sorted(date.fromisoformat(str(row["date"])[:10]) for row in rows)
        if period is None and days:
            period = (days[0], days[-1])
        if period is not None and top_content is not None:
            await writer.save_period_snapshot(
                platform, company_id, period[0], period[1], utcnow().date(), {"top_content": top_content}
            )
    except Exception as exc:
        logger.error("[ingest] %s/%s failed: %s", company_id, platform.value, exc)
        await sync_status.record_failure(company_id, platform, f"ingest failed: {exc}")
        raise

    today = utcnow().date()
    start, end = period or (today, today)
    await sync_status.record_success(company_id, platform, start, end)
    logger.info("[ingest] %s/%s stored %d daily rows", company_id, platform.value, stored)
    return {"stored": stored, "state": "success"}
