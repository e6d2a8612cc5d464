"""Tests for OAuth credential storage and refresh."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

from analytics_hub.db import build_session_factory
from analytics_hub.models import OAuthCredential, OAuthProvider
from analytics_hub.services.error_kinds import PlatformErrorKind, TokenFailureKind, classify_error
from analytics_hub.services.oauth_tokens import (
    IdentityInfo,
    OAuthExchangeError,
    OAuthTokenManager,
    StoreCapabilities,
    TokenGrant,
)
from analytics_hub.services.token_encryption import TokenCodec

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _manager(session_factory, codec, http_client, settings, capabilities=None) -> OAuthTokenManager:
    return OAuthTokenManager(session_factory, codec, http_client, settings, capabilities, clock=lambda: NOW)


def _grant(access: str = "access-1", refresh: str | None = "refresh-1", expires_in: int = 3600) -> TokenGrant:
    return TokenGrant(access_token=access, refresh_token=refresh, expires_in=expires_in, scope="analytics")


async def test_save_encrypts_and_get_decrypts(session_factory, codec, http_client, settings) -> None:
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", OAuthProvider.google, _grant())

    async with session_factory() as session:
        row = await session.scalar(select(OAuthCredential))
    assert row.access_token != "access-1"
    assert row.refresh_token != "refresh-1"

    credential = await manager.get_credential("u1", OAuthProvider.google)
    assert credential.access_token == "access-1"
    assert credential.refresh_token == "refresh-1"
    assert credential.expires_at == datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)


async def test_fresh_token_is_returned_without_network(session_factory, codec, http_client, settings, token_endpoint) -> None:
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", "google", _grant())

    first = await manager.refresh("u1", "google")
    second = await manager.refresh("u1", "google")

    assert first.ok and second.ok
    assert first.access_token == second.access_token == "access-1"
    assert token_endpoint.requests == []


async def test_token_inside_buffer_is_refreshed_once_and_persisted(
    session_factory, codec, http_client, settings, token_endpoint
) -> None:
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", "google", _grant(expires_in=60))

    result = await manager.refresh("u1", "google")
    again = await manager.refresh("u1", "google")

    assert result.ok and result.refreshed
    assert result.access_token == "new-access"
    assert again.access_token == "new-access" and not again.refreshed
    assert len(token_endpoint.requests) == 1
    form = token_endpoint.form()
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "refresh-1"
    assert form["client_id"] == "google-client"

    stored = await manager.get_credential("u1", "google")
    assert stored.access_token == "new-access"
    # The endpoint did not rotate the refresh token, so the old one stays.
    assert stored.refresh_token == "refresh-1"


async def test_rotated_refresh_token_is_stored(session_factory, codec, http_client, settings, token_endpoint) -> None:
    token_endpoint.body = {"access_token": "new-access", "refresh_token": "refresh-2", "expires_in": 3600}
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", "linkedin", _grant(expires_in=0))

    await manager.refresh("u1", "linkedin")

    stored = await manager.get_credential("u1", "linkedin")
    assert stored.refresh_token == "refresh-2"
    assert str(token_endpoint.requests[0].url) == settings.linkedin_token_url


async def test_concurrent_refreshes_hit_the_provider_once(
    session_factory, codec, http_client, settings, token_endpoint
) -> None:
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", "google", _grant(expires_in=0))

    results = await asyncio.gather(*(manager.refresh("u1", "google") for _ in range(3)))

    assert all(r.access_token == "new-access" for r in results)
    assert len(token_endpoint.requests) == 1


async def test_revoked_grant_requires_reauth(session_factory, codec, http_client, settings, token_endpoint) -> None:
    token_endpoint.status_code = 400
    token_endpoint.body = {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", "google", _grant(expires_in=0))

    result = await manager.refresh("u1", "google")

    assert not result.ok
    assert result.failure is TokenFailureKind.refresh_failed
    assert result.reauth_required
    assert result.error_message().startswith("TOKEN_REFRESH_FAILED")
    assert classify_error(result.error_message()) is PlatformErrorKind.auth_required


async def test_transient_refresh_failure_keeps_stored_token(
    session_factory, codec, http_client, settings, token_endpoint
) -> None:
    token_endpoint.status_code = 503
    token_endpoint.body = {"error": "temporarily_unavailable"}
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", "google", _grant(expires_in=0))

    result = await manager.refresh("u1", "google")

    assert result.failure is TokenFailureKind.refresh_failed
    assert not result.reauth_required
    assert result.platform_error_kind is PlatformErrorKind.api_error
    assert classify_error(result.error_message()) is PlatformErrorKind.api_error
    stored = await manager.get_credential("u1", "google")
    assert stored.access_token == "access-1"


async def test_expired_without_refresh_token_requires_reauth(session_factory, codec, http_client, settings, token_endpoint) -> None:
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", "google", _grant(refresh=None, expires_in=0))

    result = await manager.refresh("u1", "google")

    assert result.failure is TokenFailureKind.refresh_failed
    assert result.reauth_required
    assert token_endpoint.requests == []
    assert not await manager.has_valid_credentials("u1", "google")


async def test_missing_credentials(session_factory, codec, http_client, settings) -> None:
    manager = _manager(session_factory, codec, http_client, settings)

    result = await manager.refresh("nobody", "google")

    assert result.failure is TokenFailureKind.no_tokens
    assert result.reauth_required
    assert await manager.get_credential("nobody", "google") is None
    assert not await manager.has_valid_credentials("nobody", "google")


async def test_undecryptable_credentials(session_factory, http_client, settings) -> None:
    writer = _manager(session_factory, TokenCodec("old-key", iterations=1_000), http_client, settings)
    await writer.save("u1", "google", _grant())
    reader = _manager(session_factory, TokenCodec("new-key", iterations=1_000), http_client, settings)

    result = await reader.refresh("u1", "google")

    assert result.failure is TokenFailureKind.decryption_failed
    assert await reader.get_credential("u1", "google") is None
    assert not await reader.has_valid_credentials("u1", "google")


async def test_linked_account_selects_its_identity(session_factory, codec, http_client, settings) -> None:
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("u1", "google", _grant("token-a"), IdentityInfo("brand-a", "Brand A", "chan-1"))
    await manager.save("u1", "google", _grant("token-b"), IdentityInfo("brand-b", "Brand B", "chan-2"))

    assert (await manager.refresh("u1", "google", linked_account_id="chan-1")).access_token == "token-a"
    assert (await manager.refresh("u1", "google", linked_account_id="chan-2")).access_token == "token-b"
    # An unknown channel falls back to any credential of the user.
    assert (await manager.refresh("u1", "google", linked_account_id="chan-9")).ok

    connections = await manager.list_connections("u1", "google")
    assert {c.identity for c in connections} == {"brand-a", "brand-b"}


@pytest.fixture
async def legacy_session_factory(tmp_path):
    """A store migrated only up to 0002: no identity columns."""
    metadata = sa.MetaData()
    sa.Table(
        "oauth_tokens",
        metadata,
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scope", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


async def test_legacy_store_works_without_identity_columns(
    legacy_session_factory, codec, http_client, settings, token_endpoint
) -> None:
    manager = _manager(
        legacy_session_factory, codec, http_client, settings, StoreCapabilities(identity_columns=False, version=1)
    )
    await manager.save("u1", "google", _grant("token-a"), IdentityInfo("brand-a", "Brand A", "chan-1"))
    connection_id = await manager.save(
        "u1", "google", _grant("token-b", expires_in=0), IdentityInfo("brand-b", "Brand B", "chan-2")
    )

    connections = await manager.list_connections("u1", "google")
    assert [c.id for c in connections] == [connection_id]
    assert connections[0].identity == "default"
    assert connections[0].linked_account_id is None

    result = await manager.refresh("u1", "google", linked_account_id="chan-1")
    assert result.ok and result.refreshed
    assert (await manager.get_credential("u1", "google")).access_token == "new-access"
    assert await manager.has_valid_credentials("u1", "google")
    assert [(h["userId"], h["identity"]) for h in await manager.token_health()] == [("u1", "default")]
    assert await manager.delete_credential("u1", "google", connection_id) == 1


async def test_database_failure_is_retryable(tmp_path, codec, http_client, settings) -> None:
    # No tables at all: every credential query fails.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    manager = _manager(build_session_factory(engine), codec, http_client, settings)

    result = await manager.refresh("u1", "google")
    await engine.dispose()

    assert result.failure is TokenFailureKind.db_error
    assert not result.reauth_required
    assert result.platform_error_kind is PlatformErrorKind.api_error
    assert classify_error(result.error_message()) is PlatformErrorKind.api_error


async def test_token_health_flags_expired_and_expiring_credentials(session_factory, codec, http_client, settings) -> None:
    manager = _manager(session_factory, codec, http_client, settings)
    await manager.save("expired", "google", _grant(expires_in=0))
    await manager.save("soon", "google", _grant(expires_in=3600))
    await manager.save("later", "linkedin", _grant(refresh=None, expires_in=3 * 86400))

    health = {h["userId"]: h for h in await manager.token_health()}

    assert health["expired"]["isExpired"] and not health["expired"]["expiresSoon"]
    assert health["soon"]["expiresSoon"] and not health["soon"]["isExpired"]
    assert not health["later"]["expiresSoon"] and not health["later"]["isExpired"]
    assert health["later"]["provider"] == "linkedin"
    assert health["later"]["hasRefreshToken"] is False
    assert "access_token" not in health["soon"]


async def test_delete_credential(session_factory, codec, http_client, settings) -> None:
    manager = _manager(session_factory, codec, http_client, settings)
    connection_id = await manager.save("u1", "google", _grant())

    assert await manager.delete_credential("u1", "google", connection_id) == 1
    assert await manager.delete_credential("u1", "google", connection_id) == 0
    assert await manager.list_connections("u1", "google") == []


async def test_exchange_code(session_factory, codec, http_client, settings, token_endpoint) -> None:
    token_endpoint.body = {"access_token": "a", "refresh_token": "r", "expires_in": "1800", "scope": "s"}
    manager = _manager(session_factory, codec, http_client, settings)

    grant = await manager.exchange_code("google", "auth-code")

    assert grant == TokenGrant(access_token="a", refresh_token="r", expires_in=1800, scope="s")
    form = token_endpoint.form()
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "auth-code"
    assert form["redirect_uri"] == settings.oauth_redirect_uri


async def test_exchange_code_rejected(session_factory, codec, http_client, settings, token_endpoint) -> None:
    token_endpoint.status_code = 400
    token_endpoint.body = {"error": "invalid_request", "error_description": "bad code"}
    manager = _manager(session_factory, codec, http_client, settings)

    with pytest.raises(OAuthExchangeError):
        await manager.exchange_code("google", "bad")
