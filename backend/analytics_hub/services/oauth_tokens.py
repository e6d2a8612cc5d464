"""
OAuth token lifecycle: encrypted storage, expiry checks, provider refresh.

Refresh never raises to report-building code. Every outcome is a
RefreshResult carrying either an access token or a TokenFailureKind, so
callers can choose between surfacing a re-auth state and retrying later.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_hub.models import OAuthCredential, OAuthProvider
from analytics_hub.services.date_ranges import as_utc, utcnow
from analytics_hub.services.error_kinds import PlatformErrorKind, TokenFailureKind, is_revoked_grant
from analytics_hub.services.token_encryption import TokenCodec, TokenDecryptionError
from analytics_hub.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY = "default"

_tokens = OAuthCredential.__table__
_BASE_COLUMNS = (
    "id",
    "user_id",
    "provider",
    "access_token",
    "refresh_token",
    "expires_at",
    "scope",
    "created_at",
    "updated_at",
)
# Added by migration 0003; absent from version 1 stores.
_IDENTITY_COLUMNS = ("identity", "identity_name", "linked_account_id")

# Lookup failures only a reconnect can fix; anything else is retried later.
_REAUTH_KINDS = frozenset({TokenFailureKind.no_tokens, TokenFailureKind.decryption_failed})


class OAuthExchangeError(RuntimeError):
    """Authorization code exchange was rejected by the provider."""


@dataclass(frozen=True)
class StoreCapabilities:
    """Which optional credential columns the backing store has.

    Decided once at startup from configuration; version 1 stores predate the
    identity columns and are keyed by (user, provider) only.
    """

    identity_columns: bool = True
    version: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "StoreCapabilities":
        if settings.token_store_identity_columns:
            return cls(identity_columns=True, version=2)
        return cls(identity_columns=False, version=1)


@dataclass(frozen=True)
class IdentityInfo:
    identity: str
    identity_name: str | None = None
    linked_account_id: str | None = None


@dataclass(frozen=True)
class TokenGrant:
    """Normalized token endpoint response."""

    access_token: str
    refresh_token: str | None
    expires_in: int
    scope: str

    @staticmethod
    def from_response(payload: dict[str, Any], *, fallback_scope: str = "") -> "TokenGrant":
        expires_in = payload.get("expires_in")
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            expires_in = 3600
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=expires_in,
            scope=payload.get("scope") or fallback_scope,
        )


@dataclass(frozen=True)
class Credential:
    id: int
    user_id: str
    provider: str
    identity: str
    identity_name: str | None
    linked_account_id: str | None
    access_token: str
    refresh_token: str | None
    expires_at: datetime
    scope: str


@dataclass(frozen=True)
class Connection:
    id: int
    provider: str
    identity: str
    identity_name: str | None
    linked_account_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class RefreshResult:
    access_token: str | None = None
    failure: TokenFailureKind | None = None
    detail: str | None = None
    reauth_required: bool = False
    refreshed: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None and self.access_token is not None

    @classmethod
    def success(cls, access_token: str, *, refreshed: bool = False) -> "RefreshResult":
        return cls(access_token=access_token, refreshed=refreshed)

    @classmethod
    def failed(cls, kind: TokenFailureKind, detail: str, *, reauth_required: bool = False) -> "RefreshResult":
        return cls(failure=kind, detail=detail, reauth_required=reauth_required)

    @property
    def platform_error_kind(self) -> PlatformErrorKind:
        """Only a failure the user must fix by reconnecting is reported as auth_required."""
        return PlatformErrorKind.auth_required if self.reauth_required else PlatformErrorKind.api_error

    def error_message(self) -> str:
        """Text handed to provider clients; prefixed so the lexical classifier can route it."""
        if self.failure is TokenFailureKind.refresh_failed:
            if self.reauth_required:
                return f"TOKEN_REFRESH_FAILED: {self.detail}"
            return f"Token refresh temporarily failed, retry later: {self.detail}"
        return f"{self.failure.value if self.failure else 'UNKNOWN'}: {self.detail}"


class _LookupFailed(Exception):
    def __init__(self, kind: TokenFailureKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail


class OAuthTokenManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        codec: TokenCodec,
        http_client: httpx.AsyncClient,
        settings: Settings,
        capabilities: StoreCapabilities | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._codec = codec
        self._http = http_client
        self._settings = settings
        self.capabilities = capabilities or StoreCapabilities.from_settings(settings)
        self._clock = clock
        self._refresh_buffer = timedelta(seconds=settings.token_refresh_buffer_sec)
        self._locks: dict[int, asyncio.Lock] = {}

    # ── Reads ────────────────────────────────────────────────

    def _select(self):
        """SELECT over the columns this store actually has."""
        names = _BASE_COLUMNS + (_IDENTITY_COLUMNS if self.capabilities.identity_columns else ())
        return select(*(_tokens.c[name] for name in names))

    def _decrypt_row(self, row: RowMapping) -> Credential:
        access_token = self._codec.decrypt(row["access_token"])
        refresh_token = self._codec.decrypt(row["refresh_token"]) if row["refresh_token"] else None
        return Credential(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            identity=row.get("identity") or DEFAULT_IDENTITY,
            identity_name=row.get("identity_name"),
            linked_account_id=row.get("linked_account_id"),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=as_utc(row["expires_at"]),
            scope=row["scope"] or "",
        )

    async def _select_row(
        self,
        session: AsyncSession,
        user_id: str,
        provider: str,
        *,
        identity: str | None = None,
        linked_account_id: str | None = None,
    ) -> RowMapping | None:
        query = self._select().where(_tokens.c.user_id == user_id, _tokens.c.provider == provider)
        if identity and self.capabilities.identity_columns:
            query = query.where(_tokens.c.identity == identity)
        if linked_account_id and self.capabilities.identity_columns:
            query = query.where(_tokens.c.linked_account_id == linked_account_id)
        query = query.order_by(_tokens.c.updated_at.desc(), _tokens.c.id.desc()).limit(1)
        result = await session.execute(query)
        return result.mappings().first()

    async def _resolve(
        self,
        user_id: str,
        provider: str,
        identity: str | None,
        linked_account_id: str | None,
    ) -> Credential:
        """Find and decrypt the credential to use, raising _LookupFailed otherwise.

        A credential explicitly linked to ``linked_account_id`` wins; without one
        (or if it cannot be decrypted) any credential of the user is used.
        """
        try:
            async with self._session_factory() as session:
                if linked_account_id:
                    linked = await self._select_row(session, user_id, provider, linked_account_id=linked_account_id)
                    if linked is not None:
                        try:
                            return self._decrypt_row(linked)
                        except TokenDecryptionError as exc:
                            logger.warning(
                                "[tokens] Could not decrypt credential %s linked to %s: %s; falling back",
                                linked["id"], linked_account_id, exc,
                            )
                row = await self._select_row(session, user_id, provider, identity=identity)
        except SQLAlchemyError as exc:
            logger.error("[tokens] Credential lookup failed for user=%s provider=%s: %s", user_id, provider, exc)
            raise _LookupFailed(TokenFailureKind.db_error, f"credential lookup failed: {exc.__class__.__name__}") from exc

        if row is None:
            raise _LookupFailed(TokenFailureKind.no_tokens, f"no {provider} credentials stored for user")
        try:
            return self._decrypt_row(row)
        except TokenDecryptionError as exc:
            logger.error("[tokens] Decryption failed for credential %s (user=%s): %s", row["id"], user_id, exc)
            raise _LookupFailed(TokenFailureKind.decryption_failed, "stored credential could not be decrypted") from exc

    async def get_credential(
        self,
        user_id: str,
        provider: OAuthProvider | str,
        identity: str | None = None,
        *,
        linked_account_id: str | None = None,
    ) -> Credential | None:
        """Return the decrypted credential, or None when missing or undecryptable."""
        try:
            return await self._resolve(user_id, _provider_value(provider), identity, linked_account_id)
        except _LookupFailed as exc:
            if exc.kind is TokenFailureKind.db_error and exc.__cause__ is not None:
                raise exc.__cause__
            return None

    async def has_valid_credentials(
        self,
        user_id: str,
        provider: OAuthProvider | str,
        *,
        linked_account_id: str | None = None,
    ) -> bool:
        """A credential is usable if it decrypts and is either unexpired or refreshable."""
        try:
            credential = await self._resolve(user_id, _provider_value(provider), None, linked_account_id)
        except _LookupFailed:
            return False
        return credential.refresh_token is not None or self._clock() < credential.expires_at

    async def list_connections(self, user_id: str, provider: OAuthProvider | str) -> list[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                self._select()
                .where(_tokens.c.user_id == user_id, _tokens.c.provider == _provider_value(provider))
                .order_by(_tokens.c.created_at.desc(), _tokens.c.id.desc())
            )
            rows = result.mappings().all()
        return [
            Connection(
                id=row["id"],
                provider=row["provider"],
                identity=row.get("identity") or DEFAULT_IDENTITY,
                identity_name=row.get("identity_name"),
                linked_account_id=row.get("linked_account_id"),
                created_at=as_utc(row["created_at"]),
            )
            for row in rows
        ]

    async def token_health(self, soon: timedelta = timedelta(hours=24)) -> list[dict[str, Any]]:
        """Expiry overview of every stored credential; no token material is decrypted."""
        async with self._session_factory() as session:
            result = await session.execute(self._select().order_by(_tokens.c.user_id, _tokens.c.provider))
            rows = result.mappings().all()
        now = self._clock()
        health = []
        for row in rows:
            expires_at = as_utc(row["expires_at"])
            health.append(
                {
                    "userId": row["user_id"],
                    "provider": row["provider"],
                    "identity": row.get("identity") or DEFAULT_IDENTITY,
                    "expiresAt": expires_at.isoformat(),
                    "updatedAt": as_utc(row["updated_at"]).isoformat(),
                    "isExpired": expires_at <= now,
                    "expiresSoon": now < expires_at <= now + soon,
                    "hasRefreshToken": row["refresh_token"] is not None,
                }
            )
        return health

    # ── Refresh ──────────────────────────────────────────────

    async def refresh(
        self,
        user_id: str,
        provider: OAuthProvider | str,
        identity: str | None = None,
        *,
        linked_account_id: str | None = None,
    ) -> RefreshResult:
        """Return a usable access token, refreshing it first when it is within the expiry buffer."""
        provider = _provider_value(provider)
        try:
            credential = await self._resolve(user_id, provider, identity, linked_account_id)
        except _LookupFailed as exc:
            return RefreshResult.failed(
                exc.kind,
                exc.detail,
                reauth_required=exc.kind in _REAUTH_KINDS,
            )

        if self._is_fresh(credential):
            return RefreshResult.success(credential.access_token)

        lock = self._locks.setdefault(credential.id, asyncio.Lock())
        async with lock:
            # Another request may have refreshed while we waited.
            try:
                current = await self._load_by_id(credential.id)
            except _LookupFailed as exc:
                return RefreshResult.failed(exc.kind, exc.detail, reauth_required=exc.kind in _REAUTH_KINDS)
            if self._is_fresh(current):
                return RefreshResult.success(current.access_token)
            return await self._refresh_with_provider(current)

    async def _load_by_id(self, credential_id: int) -> Credential:
        try:
            async with self._session_factory() as session:
                result = await session.execute(self._select().where(_tokens.c.id == credential_id))
                row = result.mappings().first()
        except SQLAlchemyError as exc:
            raise _LookupFailed(TokenFailureKind.db_error, f"credential lookup failed: {exc.__class__.__name__}") from exc
        if row is None:
            raise _LookupFailed(TokenFailureKind.no_tokens, "credential was removed")
        try:
            return self._decrypt_row(row)
        except TokenDecryptionError as exc:
            raise _LookupFailed(TokenFailureKind.decryption_failed, "stored credential could not be decrypted") from exc

    def _is_fresh(self, credential: Credential) -> bool:
        return self._clock() < credential.expires_at - self._refresh_buffer

    async def _refresh_with_provider(self, credential: Credential) -> RefreshResult:
        if not credential.refresh_token:
            return RefreshResult.failed(
                TokenFailureKind.refresh_failed,
                "access token expired and no refresh token is stored; re-authenticate",
                reauth_required=True,
            )

        client_id, client_secret, token_url = self._client_config(credential.provider)
        form = {
            "client_id": client_id or "",
            "client_secret": client_secret or "",
            "refresh_token": credential.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            resp = await self._http.post(token_url, data=form, headers={"Accept": "application/json"})
        except (httpx.TransportError, httpx.TimeoutException) as exc:
            logger.warning("[tokens] Refresh request for credential %s failed: %s", credential.id, exc)
            return RefreshResult.failed(TokenFailureKind.refresh_failed, f"token endpoint unreachable: {exc.__class__.__name__}")

        if resp.status_code >= 400:
            error_code, description = _parse_error_body(resp)
            revoked = is_revoked_grant(error_code, description)
            logger.warning(
                "[tokens] Provider rejected refresh for credential %s: status=%s error=%s revoked=%s",
                credential.id, resp.status_code, error_code, revoked,
            )
            detail = f"{resp.status_code} {error_code or 'error'}"
            if description:
                detail = f"{detail}: {description}"
            if revoked:
                detail = f"{detail} (grant revoked or expired; re-authenticate)"
            return RefreshResult.failed(TokenFailureKind.refresh_failed, detail, reauth_required=revoked)

        try:
            grant = TokenGrant.from_response(resp.json(), fallback_scope=credential.scope)
        except (ValueError, KeyError) as exc:
            return RefreshResult.failed(TokenFailureKind.refresh_failed, f"malformed token response: {exc}")

        try:
            await self._persist_refresh(credential, grant)
        except SQLAlchemyError as exc:
            logger.error("[tokens] Could not persist refreshed token for credential %s: %s", credential.id, exc)
            return RefreshResult.failed(TokenFailureKind.db_error, "refreshed token could not be stored")

        logger.info("[tokens] Refreshed %s credential %s (identity=%s)", credential.provider, credential.id, credential.identity)
        return RefreshResult.success(grant.access_token, refreshed=True)

    async def _persist_refresh(self, credential: Credential, grant: TokenGrant) -> None:
        now = self._clock()
        values: dict[str, Any] = {
            "access_token": self._codec.encrypt(grant.access_token),
            "expires_at": now + timedelta(seconds=grant.expires_in),
            "updated_at": now,
        }
        # Providers that rotate refresh tokens send a new one; otherwise keep ours.
        if grant.refresh_token and grant.refresh_token != credential.refresh_token:
            values["refresh_token"] = self._codec.encrypt(grant.refresh_token)
        if grant.scope:
            values["scope"] = grant.scope
        async with self._session_factory() as session:
            result = await session.execute(update(_tokens).where(_tokens.c.id == credential.id).values(**values))
            if not result.rowcount:
                raise SQLAlchemyError(f"credential {credential.id} disappeared during refresh")
            await session.commit()

    def _client_config(self, provider: str) -> tuple[str | None, str | None, str]:
        if provider == OAuthProvider.google.value:
            return self._settings.google_client_id, self._settings.google_client_secret, self._settings.google_token_url
        if provider == OAuthProvider.linkedin.value:
            return self._settings.linkedin_client_id, self._settings.linkedin_client_secret, self._settings.linkedin_token_url
        raise ValueError(f"Unknown OAuth provider: {provider}")

    # ── Writes ───────────────────────────────────────────────

    async def save(
        self,
        user_id: str,
        provider: OAuthProvider | str,
        grant: TokenGrant,
        identity: IdentityInfo | None = None,
    ) -> int:
        """Upsert a credential keyed by (user, provider, identity) and return its id."""
        provider = _provider_value(provider)
        identity_key = DEFAULT_IDENTITY
        if identity is not None and self.capabilities.identity_columns:
            identity_key = identity.identity or DEFAULT_IDENTITY

        now = self._clock()
        key = [_tokens.c.user_id == user_id, _tokens.c.provider == provider]
        if self.capabilities.identity_columns:
            key.append(_tokens.c.identity == identity_key)

        values: dict[str, Any] = {
            "access_token": self._codec.encrypt(grant.access_token),
            "expires_at": now + timedelta(seconds=grant.expires_in),
            "scope": grant.scope,
            "updated_at": now,
        }
        if grant.refresh_token:
            values["refresh_token"] = self._codec.encrypt(grant.refresh_token)
        if identity is not None and self.capabilities.identity_columns:
            values["identity_name"] = identity.identity_name
            values["linked_account_id"] = identity.linked_account_id

        async with self._session_factory() as session:
            credential_id = await session.scalar(
                select(_tokens.c.id).where(*key).order_by(_tokens.c.updated_at.desc(), _tokens.c.id.desc()).limit(1)
            )
            if credential_id is None:
                values.update(user_id=user_id, provider=provider, created_at=now)
                if self.capabilities.identity_columns:
                    values["identity"] = identity_key
                result = await session.execute(insert(_tokens).values(**values))
                credential_id = result.inserted_primary_key[0]
            else:
                await session.execute(update(_tokens).where(_tokens.c.id == credential_id).values(**values))
            await session.commit()
        logger.info("[tokens] Saved %s credential %s for user=%s identity=%s", provider, credential_id, user_id, identity_key)
        return credential_id

    async def exchange_code(self, provider: OAuthProvider | str, code: str) -> TokenGrant:
        """Trade an authorization code from the OAuth callback for tokens."""
        provider = _provider_value(provider)
        client_id, client_secret, token_url = self._client_config(provider)
        if not client_id or not client_secret:
            raise OAuthExchangeError(f"Missing OAuth client credentials for {provider}")
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self._settings.oauth_redirect_uri,
        }
        try:
            resp = await self._http.post(token_url, data=form, headers={"Accept": "application/json"})
        except (httpx.TransportError, httpx.TimeoutException) as exc:
            raise OAuthExchangeError(f"Token exchange failed: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400:
            error_code, description = _parse_error_body(resp)
            raise OAuthExchangeError(f"Token exchange failed: {error_code or resp.status_code} {description or ''}".strip())
        try:
            return TokenGrant.from_response(resp.json())
        except (ValueError, KeyError) as exc:
            raise OAuthExchangeError(f"Token exchange returned a malformed response: {exc}") from exc

    async def delete_credential(
        self,
        user_id: str,
        provider: OAuthProvider | str,
        connection_id: int | None = None,
    ) -> int:
        """Disconnect one connection, or every connection for the provider when no id is given."""
        stmt = delete(_tokens).where(
            _tokens.c.user_id == user_id,
            _tokens.c.provider == _provider_value(provider),
        )
        if connection_id is not None:
            stmt = stmt.where(_tokens.c.id == connection_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if connection_id is not None:
            self._locks.pop(connection_id, None)
        return result.rowcount or 0


def _provider_value(provider: OAuthProvider | str) -> str:
    return provider.value if isinstance(provider, OAuthProvider) else str(provider)


def _parse_error_body(resp: httpx.Response) -> tuple[str | None, str | None]:
    try:
        body = resp.json()
    except ValueError:
        text = resp.text.strip()
        return None, text[:300] or None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if isinstance(error, dict):
        # {"error": {"status": "...", "message": "..."}}
        return error.get("status"), error.get("message")
    description = body.get("error_description") or body.get("message")
    code = error or body.get("serviceErrorCode") or body.get("code")
    return (str(code) if code is not None else None), description
