"""
Application object graph.

Everything with state (engine, HTTP client, token manager, orchestrator) is
built here once per app and attached to ``app.state.container``; nothing is
created at import time.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from analytics_hub.db import build_engine, build_session_factory
from analytics_hub.integrations.base import ProviderFetchClient
from analytics_hub.integrations.google_analytics import GoogleAnalyticsClient
from analytics_hub.integrations.linkedin_api import LinkedInClient
from analytics_hub.integrations.search_console import SearchConsoleClient
from analytics_hub.integrations.youtube_analytics import YouTubeAnalyticsClient
from analytics_hub.models import Platform
from analytics_hub.services.account_mappings import AccountMappingRepository, CompanyAccessRepository
from analytics_hub.services.analytics_cache import AnalyticsCacheStore
from analytics_hub.services.analytics_orchestrator import AnalyticsOrchestrator
from analytics_hub.services.fetch_lock import RedisFetchLock
from analytics_hub.services.normalized_metrics import NormalizedMetricsReader, NormalizedMetricsWriter
from analytics_hub.services.oauth_tokens import OAuthTokenManager, StoreCapabilities
from analytics_hub.services.portfolio import PortfolioCacheStore, PortfolioService
from analytics_hub.services.sync_status import SyncStatusRepository
from analytics_hub.services.token_encryption import TokenCodec
from analytics_hub.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    token_manager: OAuthTokenManager
    mappings: AccountMappingRepository
    access: CompanyAccessRepository
    sync_status: SyncStatusRepository
    cache: AnalyticsCacheStore
    normalized: NormalizedMetricsReader
    normalized_writer: NormalizedMetricsWriter
    orchestrator: AnalyticsOrchestrator
    portfolio: PortfolioService
    fetch_lock: RedisFetchLock | None = None
    clients: dict[Platform, ProviderFetchClient] = field(default_factory=dict)

    async def aclose(self) -> None:
        await self.http_client.aclose()
        if self.fetch_lock is not None:
            await self.fetch_lock.close()
        await self.engine.dispose()


def build_provider_clients(
    http_client: httpx.AsyncClient, token_manager: OAuthTokenManager, settings: Settings
) -> dict[Platform, ProviderFetchClient]:
    return {
        Platform.ga: GoogleAnalyticsClient(http_client, token_manager),
        Platform.gsc: SearchConsoleClient(http_client, token_manager),
        Platform.youtube: YouTubeAnalyticsClient(http_client, token_manager),
        Platform.linkedin: LinkedInClient(http_client, token_manager, settings.linkedin_api_version),
    }


def build_container(
    settings: Settings,
    *,
    engine: AsyncEngine | None = None,
    http_client: httpx.AsyncClient | None = None,
    clients: Mapping[Platform, ProviderFetchClient] | None = None,
    codec: TokenCodec | None = None,
) -> Container:
    """Wire the app. Tests pass their own engine, HTTP transport and fetch clients."""
    engine = engine or build_engine(settings.async_database_url)
    session_factory = build_session_factory(engine)
    http_client = http_client or httpx.AsyncClient(timeout=settings.provider_http_timeout_sec)
    codec = codec or TokenCodec(settings.oauth_encryption_key or "")

    capabilities = StoreCapabilities.from_settings(settings)
    logger.info(
        "[container] Token store capabilities: identity_columns=%s version=%d",
        capabilities.identity_columns,
        capabilities.version,
    )
    token_manager = OAuthTokenManager(session_factory, codec, http_client, settings, capabilities)
    fetch_clients = dict(clients) if clients is not None else build_provider_clients(http_client, token_manager, settings)

    fetch_lock = None
    if settings.redis_url and settings.single_flight_enabled:
        fetch_lock = RedisFetchLock.from_url(settings.redis_url, ttl_sec=settings.fetch_lock_ttl_sec)

    mappings = AccountMappingRepository(session_factory)
    sync_status = SyncStatusRepository(session_factory)
    cache = AnalyticsCacheStore(session_factory, stale_after_sec=settings.on_demand_stale_after_sec)
    access = CompanyAccessRepository(session_factory)
    normalized = NormalizedMetricsReader(session_factory)
    orchestrator = AnalyticsOrchestrator(
        settings=settings,
        mappings=mappings,
        sync_status=sync_status,
        cache=cache,
        normalized=normalized,
        token_manager=token_manager,
        clients=fetch_clients,
        fetch_lock=fetch_lock,
    )
    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        token_manager=token_manager,
        mappings=mappings,
        access=access,
        sync_status=sync_status,
        cache=cache,
        normalized=normalized,
        normalized_writer=NormalizedMetricsWriter(session_factory),
        orchestrator=orchestrator,
        portfolio=PortfolioService(orchestrator, access, PortfolioCacheStore(session_factory), settings),
        fetch_lock=fetch_lock,
        clients=fetch_clients,
    )
