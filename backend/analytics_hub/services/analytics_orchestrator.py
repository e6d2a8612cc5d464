"""
Analytics Orchestrator

Builds the unified analytics response for one company and date range:
- Precomputed tier: normalized daily tables, authoritative per platform
- Cache tier: daily snapshot first, then the on-demand entry for the exact range
- Live tier: concurrent provider fetches, isolated per platform

A failing platform never fails the request. It is reported as a typed
error, backfilled from the newest cached value for that platform when one
exists.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from analytics_hub.integrations.base import ProviderFetchClient
from analytics_hub.models import PLATFORM_PROVIDER, CacheDataType, Platform
from analytics_hub.services.account_mappings import AccountMapping, AccountMappingRepository
from analytics_hub.services.analytics_cache import (
    PLATFORM_PREFIX,
    AnalyticsCacheStore,
    CacheEntry,
    metrics_key,
)
from analytics_hub.services.date_ranges import DateRange, utcnow
from analytics_hub.services.error_kinds import PlatformErrorKind, TokenFailureKind, classify_error
from analytics_hub.services.fetch_lock import RedisFetchLock, SingleFlight
from analytics_hub.services.normalized_metrics import NormalizedMetricsReader
from analytics_hub.services.oauth_tokens import OAuthTokenManager
from analytics_hub.services.sync_status import SyncStatusRecord, SyncStatusRepository
from analytics_hub.settings import Settings

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "timed out"
TOP_CONTENT_LIMIT = 10

SOURCE_API = "api"
SOURCE_CACHE = "cache"
SOURCE_CACHED = "cached"


@dataclass
class PlatformOutcome:
    """Terminal state of one platform: data, or an error, never both without data."""

    platform: Platform
    data: dict[str, Any] | None = None
    source: str | None = None
    error: str | None = None
    error_kind: PlatformErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.data is not None

    @classmethod
    def failed(
        cls, platform: Platform, message: str, kind: PlatformErrorKind | None = None
    ) -> "PlatformOutcome":
        return cls(platform, error=message, error_kind=kind or classify_error(message))


def render(outcomes: Mapping[Platform, PlatformOutcome], platforms: Iterable[Platform]) -> dict[str, Any]:
    """Flatten per-platform outcomes into the response payload, in platform order."""
    payload: dict[str, Any] = {}
    for platform in platforms:
        outcome = outcomes.get(platform)
        if outcome is None:
            continue
        prefix = PLATFORM_PREFIX[platform]
        if outcome.ok:
            payload.update(outcome.data)
            if outcome.source:
                payload[f"{prefix}DataSource"] = outcome.source
        else:
            payload[f"{prefix}Error"] = outcome.error
        if outcome.error_kind is not None:
            payload[f"{prefix}ErrorType"] = outcome.error_kind.wire_value
            if outcome.error_kind is PlatformErrorKind.rate_limited:
                payload[f"{prefix}RateLimited"] = True
    return payload


def _mark_cache_served(payload: dict[str, Any]) -> dict[str, Any]:
    """Retag live-sourced platforms of a cached payload as cache-sourced."""
    served = dict(payload)
    for prefix in PLATFORM_PREFIX.values():
        key = f"{prefix}DataSource"
        if served.get(key) == SOURCE_API:
            served[key] = SOURCE_CACHE
    return served


class AnalyticsOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        mappings: AccountMappingRepository,
        sync_status: SyncStatusRepository,
        cache: AnalyticsCacheStore,
        normalized: NormalizedMetricsReader,
        token_manager: OAuthTokenManager,
        clients: Mapping[Platform, ProviderFetchClient],
        fetch_lock: RedisFetchLock | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._mappings = mappings
        self._sync_status = sync_status
        self._cache = cache
        self._normalized = normalized
        self._tokens = token_manager
        self._clients = dict(clients)
        self._fetch_lock = fetch_lock
        self._clock = clock
        self._single_flight = SingleFlight() if settings.single_flight_enabled else None

    # ── Entry point ──────────────────────────────────────────

    async def get_company_analytics(
        self,
        company_id: str,
        date_range: DateRange,
        platforms: Iterable[Platform] | None = None,
        *,
        bypass_cache: bool = False,
    ) -> dict[str, Any]:
        wanted = set(Platform) if platforms is None else set(platforms)
        requested = [p for p in Platform if p in wanted]
        platform_scoped = len(requested) < len(Platform)

        if not bypass_cache:
            result = await self._precomputed_tier(company_id, date_range, requested)
            if result is not None:
                return result

            if not platform_scoped:
                result = await self._cache_tier(company_id, date_range)
                if result is not None:
                    return result

        # A partial or forced result must never overwrite the shared cached entry.
        write_cache = not platform_scoped and not bypass_cache

        async def run_live() -> dict[str, Any]:
            return await self._locked_live_tier(
                company_id, date_range, requested, write_cache=write_cache, bypass_cache=bypass_cache
            )

        if self._single_flight is None:
            return await run_live()
        key = f"{company_id}:{date_range.key}:{','.join(p.value for p in requested)}:{int(bypass_cache)}"
        return await self._single_flight.run(key, run_live)

    # ── Tier 1 + 2: precomputed ──────────────────────────────

    async def _precomputed_tier(
        self, company_id: str, date_range: DateRange, requested: list[Platform]
    ) -> dict[str, Any] | None:
        blocks = await self._normalized.read(company_id, date_range, requested)
        if not blocks:
            return None

        statuses = {record.platform: record for record in await self._sync_status.get_sync_status(company_id)}
        outcomes: dict[Platform, PlatformOutcome] = {
            platform: PlatformOutcome(platform, data=block) for platform, block in blocks.items()
        }

        missing = [p for p in requested if p not in blocks]
        if missing:
            supplemented = await asyncio.gather(
                *(self._supplement(company_id, p, date_range, statuses.get(p)) for p in missing)
            )
            for platform, outcome in zip(missing, supplemented):
                if outcome is not None:
                    outcomes[platform] = outcome

        logger.info(
            "[orchestrator] company=%s range=%s served from normalized tables (%d/%d platforms)",
            company_id,
            date_range.key,
            sum(1 for o in outcomes.values() if o.ok),
            len(requested),
        )
        payload = render(outcomes, requested)
        payload["dataFreshness"] = {
            "source": "normalized",
            "timestamp": self._clock().isoformat(),
            "platforms": {p.value: statuses[p].freshness() for p in requested if p in statuses},
        }
        return payload

    async def _supplement(
        self,
        company_id: str,
        platform: Platform,
        date_range: DateRange,
        status: SyncStatusRecord | None,
    ) -> PlatformOutcome | None:
        # A platform that has synced before has real (possibly all-zero) data.
        if status is not None and status.has_synced:
            block = await self._normalized.read_platform(company_id, platform, date_range, allow_empty=True)
            return PlatformOutcome(platform, data=block)

        mapping = await self._mappings.get_mapping(company_id, platform)
        if mapping is None:
            return None

        hit = await self._cache.latest_containing(company_id, platform, self._settings.cache_fallback_lookback_days)
        if hit is not None:
            data, created_at = hit
            logger.info("[orchestrator] %s/%s backfilled from cache of %s", company_id, platform.value, created_at.isoformat())
            return PlatformOutcome(platform, data=data, source=SOURCE_CACHE)

        provider = PLATFORM_PROVIDER[platform]
        if not await self._tokens.has_valid_credentials(
            mapping.owner_user_id, provider, linked_account_id=mapping.account_id
        ):
            return PlatformOutcome.failed(
                platform, f"{TokenFailureKind.no_tokens.value}: {provider.value} account is not connected"
            )

        outcomes = await self._fan_out({platform: mapping}, date_range)
        return outcomes[platform]

    # ── Tier 3: cache ────────────────────────────────────────

    async def _cache_tier(self, company_id: str, date_range: DateRange) -> dict[str, Any] | None:
        entry = await self._cache.get(company_id, CacheDataType.daily_snapshot)
        if entry is not None and not self._covers(entry, date_range):
            entry = None
        if entry is None:
            entry = await self._cache.get(company_id, CacheDataType.all, date_range)
        if entry is None:
            return None

        logger.info("[orchestrator] company=%s range=%s served from %s cache", company_id, date_range.key, entry.data_type.value)
        payload = _mark_cache_served(entry.data)
        payload["dataFreshness"] = {"source": "cache", "timestamp": entry.created_at.isoformat()}
        return payload

    @staticmethod
    def _covers(entry: CacheEntry, date_range: DateRange) -> bool:
        return entry.date_range_start == date_range.start and entry.date_range_end == date_range.end

    # ── Tier 4: live ─────────────────────────────────────────

    async def _locked_live_tier(
        self,
        company_id: str,
        date_range: DateRange,
        requested: list[Platform],
        *,
        write_cache: bool,
        bypass_cache: bool = False,
    ) -> dict[str, Any]:
        if self._fetch_lock is None:
            return await self._live_tier(company_id, date_range, requested, write_cache=write_cache)

        async with self._fetch_lock.hold(f"{company_id}:{date_range.key}") as held:
            if held and write_cache and not bypass_cache:
                # Another process may have filled the cache while we waited.
                cached = await self._cache_tier(company_id, date_range)
                if cached is not None:
                    return cached
            return await self._live_tier(company_id, date_range, requested, write_cache=write_cache)

    async def _live_tier(
        self,
        company_id: str,
        date_range: DateRange,
        requested: list[Platform],
        *,
        write_cache: bool,
    ) -> dict[str, Any]:
        payload = await self.fetch_live(company_id, date_range, requested)
        if write_cache and any(payload.get(f"{PLATFORM_PREFIX[p]}DataSource") == SOURCE_API for p in requested):
            await self._cache.put(
                company_id,
                CacheDataType.all,
                date_range,
                payload,
                ttl_sec=self._settings.on_demand_cache_ttl_sec,
            )
        result = dict(payload)
        result["dataFreshness"] = {"source": "api", "timestamp": self._clock().isoformat()}
        return result

    async def fetch_live(
        self,
        company_id: str,
        date_range: DateRange,
        requested: Iterable[Platform] | None = None,
        *,
        backfill: bool = True,
    ) -> dict[str, Any]:
        """Live fan-out over the mapped platforms, rendered without freshness data."""
        requested = list(requested or Platform)
        found = await asyncio.gather(*(self._mappings.get_mapping(company_id, p) for p in requested))
        mapped = {platform: mapping for platform, mapping in zip(requested, found) if mapping is not None}

        outcomes = await self._fan_out(mapped, date_range)
        if backfill:
            await self._backfill(company_id, outcomes)

        failed = [p.value for p, o in outcomes.items() if o.error_kind is not None]
        logger.info(
            "[orchestrator] company=%s range=%s live fetch: %d platforms, failed=%s",
            company_id,
            date_range.key,
            len(outcomes),
            failed or "none",
        )
        return render(outcomes, requested)

    async def _fan_out(
        self, mapped: Mapping[Platform, AccountMapping], date_range: DateRange
    ) -> dict[Platform, PlatformOutcome]:
        if not mapped:
            return {}
        tasks = {
            platform: asyncio.create_task(self._fetch_platform(mapping, date_range))
            for platform, mapping in mapped.items()
        }
        try:
            _done, pending = await asyncio.wait(tasks.values(), timeout=self._settings.analytics_request_timeout_sec)
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: dict[Platform, PlatformOutcome] = {}
        for platform, task in tasks.items():
            if task in pending or task.cancelled():
                logger.warning("[orchestrator] %s fetch cancelled at deadline", platform.value)
                outcomes[platform] = PlatformOutcome(
                    platform, error=TIMEOUT_MESSAGE, error_kind=PlatformErrorKind.api_error
                )
            elif task.exception() is not None:
                exc = task.exception()
                logger.warning("[orchestrator] %s fetch failed: %s", platform.value, exc)
                outcomes[platform] = PlatformOutcome.failed(
                    platform, str(exc) or exc.__class__.__name__, getattr(exc, "error_kind", None)
                )
            else:
                outcomes[platform] = PlatformOutcome(platform, data=task.result(), source=SOURCE_API)
        return outcomes

    async def _fetch_platform(self, mapping: AccountMapping, date_range: DateRange) -> dict[str, Any]:
        platform = mapping.platform
        client = self._clients.get(platform)
        if client is None:
            raise RuntimeError(f"No fetch client configured for {platform.value}")
        start, end, prev_start, prev_end = date_range.as_strings()

        metrics, top = await asyncio.gather(
            client.fetch_metrics(mapping.owner_user_id, mapping.account_id, start, end, prev_start, prev_end),
            client.fetch_top_content(mapping.owner_user_id, mapping.account_id, start, end, TOP_CONTENT_LIMIT),
            return_exceptions=True,
        )
        if isinstance(metrics, BaseException):
            raise metrics
        if isinstance(top, BaseException):
            # Top content is optional; the metrics block alone is a usable result.
            logger.warning("[orchestrator] %s top content failed: %s", platform.value, top)
            top = []
        prefix = PLATFORM_PREFIX[platform]
        return {metrics_key(platform): metrics, f"{prefix}TopContent": top}

    async def _backfill(self, company_id: str, outcomes: dict[Platform, PlatformOutcome]) -> None:
        failed = [outcome for outcome in outcomes.values() if not outcome.ok]
        if not failed:
            return
        hits = await asyncio.gather(
            *(
                self._cache.latest_containing(company_id, o.platform, self._settings.cache_fallback_lookback_days)
                for o in failed
            )
        )
        for outcome, hit in zip(failed, hits):
            if hit is None:
                continue
            data, created_at = hit
            logger.info(
                "[orchestrator] %s/%s falling back to cache of %s after %s",
                company_id,
                outcome.platform.value,
                created_at.isoformat(),
                outcome.error_kind.value if outcome.error_kind else "error",
            )
            outcome.data = data
            outcome.source = SOURCE_CACHED
            outcome.error = None
