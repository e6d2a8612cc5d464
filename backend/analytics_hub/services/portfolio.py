"""
Cross-company reads built on the analytics orchestrator.

- Portfolio: every company a user belongs to, with headline GA totals summed
  across them. The default trailing window is kept per user per day in
  ``portfolio_cache`` and rebuilt by the portfolio snapshot job.
- Comparison: selected metrics side by side for a set of companies, each with
  its previous-period value and relative change.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_hub.models import Platform, PortfolioCache
from analytics_hub.services.account_mappings import CompanyAccessRepository, CompanyMembership
from analytics_hub.services.analytics_cache import metrics_key
from analytics_hub.services.analytics_orchestrator import AnalyticsOrchestrator
from analytics_hub.services.date_ranges import DateRange, as_utc, trailing_range, utcnow
from analytics_hub.settings import Settings

logger = logging.getLogger(__name__)

PORTFOLIO_CACHE_MAX_AGE = timedelta(hours=24)
COMPANY_FETCH_FAILED = "Failed to fetch data"

# Comparison metric name -> (platform, key inside that platform's metric block)
COMPARISON_METRICS: dict[str, tuple[Platform, str]] = {
    "traffic": (Platform.ga, "totalUsers"),
    "conversions": (Platform.ga, "keyEvents"),
    "conversionRate": (Platform.ga, "userKeyEventRate"),
    "sessions": (Platform.ga, "sessions"),
    "bounceRate": (Platform.ga, "bounceRate"),
    "impressions": (Platform.gsc, "impressions"),
    "clicks": (Platform.gsc, "clicks"),
    "ctr": (Platform.gsc, "ctr"),
    "avgPosition": (Platform.gsc, "avgPosition"),
    "youtubeViews": (Platform.youtube, "views"),
    "youtubeWatchTime": (Platform.youtube, "totalWatchTime"),
    "linkedinPageViews": (Platform.linkedin, "pageViews"),
    "linkedinFollowers": (Platform.linkedin, "newFollowers"),
}


def calculate_change(current: float, previous: float) -> float | None:
    """Relative change; None when there is nothing to compare against."""
    if not previous:
        return None
    return (current - previous) / previous


def _ga_totals(blocks: list[dict[str, Any]]) -> dict[str, Any]:
    rates = [b.get("userKeyEventRate") or 0 for b in blocks]
    rates = [r for r in rates if r]
    return {
        "totalTraffic": sum(b.get("totalUsers") or 0 for b in blocks),
        "totalConversions": sum(b.get("keyEvents") or 0 for b in blocks),
        "avgConversionRate": sum(rates) / len(rates) if rates else 0,
        "totalRevenue": 0,
    }


def aggregate_portfolio(companies: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Sum GA headline metrics across companies; companies without GA data add nothing."""
    current = [c["gaMetrics"] for c in companies if c.get("gaMetrics")]
    previous = [m["previousPeriod"] for m in current if m.get("previousPeriod")]
    return {**_ga_totals(current), "previousPeriod": _ga_totals(previous)}


def company_entry(membership: CompanyMembership, payload: dict[str, Any] | None) -> dict[str, Any]:
    entry: dict[str, Any] = {"id": membership.company_id, "name": membership.name, "role": membership.role}
    if payload is None:
        entry.update({metrics_key(p): None for p in Platform})
        entry["error"] = COMPANY_FETCH_FAILED
        return entry
    entry.update({metrics_key(p): payload.get(metrics_key(p)) for p in Platform})
    entry.update({k: v for k, v in payload.items() if k != "dataFreshness" and k not in entry})
    return entry


@dataclass(frozen=True)
class PortfolioSnapshot:
    user_id: str
    cache_date: date
    companies: list[dict[str, Any]]
    aggregate_metrics: dict[str, Any]
    updated_at: datetime


class PortfolioCacheStore:
    """One portfolio row per user per calendar day."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(
        self, user_id: str, cache_date: date, *, now: datetime, max_age: timedelta = PORTFOLIO_CACHE_MAX_AGE
    ) -> PortfolioSnapshot | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(PortfolioCache).where(PortfolioCache.user_id == user_id, PortfolioCache.cache_date == cache_date)
            )
        if row is None:
            return None
        updated_at = as_utc(row.updated_at)
        if now - updated_at >= max_age:
            return None
        return PortfolioSnapshot(row.user_id, row.cache_date, row.companies_data, row.aggregate_metrics, updated_at)

    async def put(
        self,
        user_id: str,
        cache_date: date,
        companies: list[dict[str, Any]],
        aggregate_metrics: dict[str, Any],
        *,
        now: datetime,
    ) -> None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(PortfolioCache).where(PortfolioCache.user_id == user_id, PortfolioCache.cache_date == cache_date)
            )
            if row is None:
                row = PortfolioCache(user_id=user_id, cache_date=cache_date)
                session.add(row)
            row.companies_data = companies
            row.aggregate_metrics = aggregate_metrics
            row.updated_at = now
            await session.commit()

    async def purge_before(self, cutoff: date) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(PortfolioCache).where(PortfolioCache.cache_date < cutoff))
            await session.commit()
        return result.rowcount or 0


class PortfolioService:
    def __init__(
        self,
        orchestrator: AnalyticsOrchestrator,
        access: CompanyAccessRepository,
        store: PortfolioCacheStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._orchestrator = orchestrator
        self._access = access
        self._store = store
        self._settings = settings
        self._clock = clock

    @property
    def store(self) -> PortfolioCacheStore:
        return self._store

    def default_range(self, today: date) -> DateRange:
        return trailing_range(today, self._settings.default_range_days, self._settings.date_floor)

    async def build(
        self,
        memberships: list[CompanyMembership],
        date_range: DateRange,
        *,
        bypass_cache: bool = False,
    ) -> dict[str, Any]:
        """Fetch every company concurrently; a failed company keeps its place with null metrics."""
        payloads = await asyncio.gather(
            *(
                self._orchestrator.get_company_analytics(m.company_id, date_range, bypass_cache=bypass_cache)
                for m in memberships
            ),
            return_exceptions=True,
        )
        companies = []
        for membership, payload in zip(memberships, payloads):
            if isinstance(payload, Exception):
                logger.error("[portfolio] Company %s failed: %s", membership.company_id, payload)
                payload = None
            companies.append(company_entry(membership, payload))
        return {"companies": companies, "aggregateMetrics": aggregate_portfolio(companies)}

    async def get_portfolio(self, user_id: str, date_range: DateRange, *, refresh: bool = False) -> dict[str, Any]:
        now = self._clock()
        today = now.date()
        cacheable = date_range == self.default_range(today) and not refresh

        if cacheable:
            cached = await self._store.get(user_id, today, now=now)
            if cached is not None:
                logger.info("[portfolio] Serving cached portfolio for %s", user_id)
                return {
                    "companies": cached.companies,
                    "aggregateMetrics": cached.aggregate_metrics,
                    "cached": True,
                    "cacheDate": today.isoformat(),
                }

        memberships = await self._access.memberships_for_user(user_id)
        result = await self.build(memberships, date_range, bypass_cache=refresh)
        if cacheable:
            await self._store.put(user_id, today, result["companies"], result["aggregateMetrics"], now=now)
        return {**result, "cached": False}

    async def compare(
        self, memberships: list[CompanyMembership], date_range: DateRange, metrics: list[str]
    ) -> dict[str, Any]:
        """Side-by-side metrics for the given companies; unknown metric names are ignored."""
        metrics = [m for m in metrics if m in COMPARISON_METRICS]
        payloads = await asyncio.gather(
            *(self._orchestrator.get_company_analytics(m.company_id, date_range) for m in memberships),
            return_exceptions=True,
        )

        companies = []
        for membership, payload in zip(memberships, payloads):
            entry: dict[str, Any] = {
                "companyId": membership.company_id,
                "companyName": membership.name,
                "current": {},
                "previous": {},
                "change": {},
            }
            if isinstance(payload, Exception):
                logger.error("[comparison] Company %s failed: %s", membership.company_id, payload)
                entry["error"] = COMPANY_FETCH_FAILED
                companies.append(entry)
                continue
            for metric in metrics:
                platform, key = COMPARISON_METRICS[metric]
                block = payload.get(metrics_key(platform)) or {}
                current = block.get(key) or 0
                previous = (block.get("previousPeriod") or {}).get(key) or 0
                entry["current"][metric] = current
                entry["previous"][metric] = previous
                entry["change"][metric] = calculate_change(current, previous)
            weekly = payload.get("gaWeeklyData")
            if weekly:
                entry["weeklyTrends"] = {
                    "traffic": [{"date": week.get("date"), "value": week.get("sessions") or 0} for week in weekly]
                }
            companies.append(entry)

        totals: dict[str, dict[str, Any]] = {"current": {}, "previous": {}, "change": {}}
        for metric in metrics:
            current = sum(c["current"].get(metric) or 0 for c in companies)
            previous = sum(c["previous"].get(metric) or 0 for c in companies)
            totals["current"][metric] = current
            totals["previous"][metric] = previous
            totals["change"][metric] = calculate_change(current, previous)

        start, end, previous_start, previous_end = date_range.as_strings()
        return {
            "companies": companies,
            "portfolio": totals,
            "dateRange": {
                "current": {"startDate": start, "endDate": end},
                "previous": {"startDate": previous_start, "endDate": previous_end},
            },
        }
