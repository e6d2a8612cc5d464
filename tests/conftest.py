"""Shared fixtures: a throwaway SQLite database, a fake token endpoint and fake provider clients."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from analytics_hub import models  # noqa: F401
from analytics_hub.container import Container, build_container
from analytics_hub.db import Base, build_session_factory
from analytics_hub.models import Company, CompanyPlatformMapping, Platform, User, UserCompany, UserSession
from analytics_hub.routes_auth import hash_token
from analytics_hub.services.date_ranges import DateRange, trailing_range, utcnow
from analytics_hub.services.token_encryption import TokenCodec
from analytics_hub.settings import Settings

# Keeps PBKDF2 fast in tests; production uses the default iteration count.
TEST_KDF_ITERATIONS = 1_000

DEFAULT_METRICS: dict[Platform, dict[str, Any]] = {
    Platform.ga: {"totalUsers": 120, "sessions": 300, "views": 900, "previousPeriod": None},
    Platform.gsc: {"impressions": 5000, "clicks": 250, "ctr": 0.05, "avgPosition": 7.2, "previousPeriod": None},
    Platform.youtube: {"views": 40, "subscriptions": 3, "previousPeriod": None},
    Platform.linkedin: {"impressions": 800, "clicks": 12, "newFollowers": 4, "previousPeriod": None},
}


class FakeProviderClient:
    """In-memory provider client: canned metrics, an optional error and an optional delay."""

    def __init__(
        self,
        platform: Platform,
        metrics: dict[str, Any] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
        top_content: list[dict[str, Any]] | None = None,
    ) -> None:
        self.platform = platform
        self.metrics = metrics if metrics is not None else dict(DEFAULT_METRICS[platform])
        self.error = error
        self.delay = delay
        self.top_content = top_content or [{"title": f"{platform.value} top item", "views": 10}]
        self.calls = 0

    async def fetch_metrics(self, user_id, account_id, start, end, prev_start, prev_end) -> dict[str, Any]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.metrics)

    async def fetch_top_content(self, user_id, account_id, start, end, limit=10) -> list[dict[str, Any]]:
        return list(self.top_content)[:limit]


class FakeTokenEndpoint:
    """httpx MockTransport handler standing in for the providers' OAuth token endpoints."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.body: dict[str, Any] = {"access_token": "new-access", "expires_in": 3600, "scope": "analytics"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    def form(self, index: int = -1) -> dict[str, str]:
        return dict(httpx.QueryParams(self.requests[index].content.decode()))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        redis_url=None,
        oauth_encryption_key="test-encryption-key",
        google_client_id="google-client",
        google_client_secret="google-secret",
        linkedin_client_id="linkedin-client",
        linkedin_client_secret="linkedin-secret",
        scheduler_enabled=False,
        analytics_request_timeout_sec=2.0,
    )


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine):
    return build_session_factory(engine)


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec("test-encryption-key", iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
async def http_client(token_endpoint: FakeTokenEndpoint) -> httpx.AsyncClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint))
    yield client
    await client.aclose()


@pytest.fixture
def fake_clients() -> dict[Platform, FakeProviderClient]:
    return {platform: FakeProviderClient(platform) for platform in Platform}


@pytest.fixture
def container(
    settings: Settings,
    engine: AsyncEngine,
    http_client: httpx.AsyncClient,
    fake_clients: dict[Platform, FakeProviderClient],
    codec: TokenCodec,
) -> Container:
    return build_container(settings, engine=engine, http_client=http_client, clients=fake_clients, codec=codec)


@pytest.fixture
def date_range(settings: Settings) -> DateRange:
    return trailing_range(utcnow().date(), settings.default_range_days, settings.date_floor)


async def seed_company(
    session_factory,
    company_id: str = "acme",
    platforms: tuple[Platform, ...] = tuple(Platform),
    owner_user_id: str = "owner-1",
) -> str:
    async with session_factory() as session:
        if await session.get(User, owner_user_id) is None:
            session.add(User(id=owner_user_id, email=f"{owner_user_id}@example.com", role="member"))
        session.add(Company(id=company_id, name=company_id.title()))
        for platform in platforms:
            session.add(
                CompanyPlatformMapping(
                    company_id=company_id,
                    platform=platform.value,
                    account_id=f"{platform.value}-account",
                    owner_user_id=owner_user_id,
                )
            )
        await session.commit()
    return company_id


async def seed_user(
    session_factory,
    user_id: str,
    *,
    role: str = "member",
    companies: tuple[str, ...] = (),
    token: str | None = None,
) -> str:
    """Create a user with memberships and a live session; returns the bearer token."""
    token = token or f"token-{user_id}"
    async with session_factory() as session:
        if await session.get(User, user_id) is None:
            session.add(User(id=user_id, email=f"{user_id}@example.com", role=role))
        for company_id in companies:
            session.add(UserCompany(user_id=user_id, company_id=company_id, role="viewer"))
        session.add(
            UserSession(
                token_sha256=hash_token(token),
                user_id=user_id,
                expires_at=utcnow() + timedelta(hours=1),
            )
        )
        await session.commit()
    return token
