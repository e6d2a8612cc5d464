from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from analytics_hub.models import PLATFORM_PROVIDER, Platform
from analytics_hub.services.error_kinds import PlatformErrorKind
from analytics_hub.services.oauth_tokens import OAuthTokenManager

logger = logging.getLogger(__name__)


class ProviderAPIError(RuntimeError):
    """A provider call failed.

    The message is inspected lexically by the orchestrator unless the caller
    already knows the kind, as with token refresh failures.
    """

    def __init__(
        self,
        platform: Platform | str,
        message: str,
        status_code: int | None = None,
        *,
        error_kind: PlatformErrorKind | None = None,
    ) -> None:
        super().__init__(message)
        self.platform = platform.value if isinstance(platform, Platform) else platform
        self.status_code = status_code
        self.error_kind = error_kind


@runtime_checkable
class ProviderFetchClient(Protocol):
    platform: Platform

    async def fetch_metrics(
        self,
        user_id: str,
        account_id: str,
        start: str,
        end: str,
        prev_start: str,
        prev_end: str,
    ) -> dict[str, Any]:
        ...

    async def fetch_top_content(
        self,
        user_id: str,
        account_id: str,
        start: str,
        end: str,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        ...


class BaseProviderClient:
    platform: Platform
    api_label: str = "Provider"

    def __init__(self, http_client: httpx.AsyncClient, token_manager: OAuthTokenManager) -> None:
        self._http = http_client
        self._tokens = token_manager

    async def _access_token(self, user_id: str, account_id: str) -> str:
        result = await self._tokens.refresh(
            user_id,
            PLATFORM_PROVIDER[self.platform],
            linked_account_id=account_id,
        )
        if not result.ok:
            raise ProviderAPIError(self.platform, result.error_message(), error_kind=result.platform_error_kind)
        return result.access_token

    async def _request(
        self,
        method: str,
        url: str,
        *,
        user_id: str,
        account_id: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        token = await self._access_token(user_id, account_id)
        request_headers = {"Authorization": f"Bearer {token}"}
        if headers:
            request_headers.update(headers)
        try:
            resp = await self._http.request(method, url, params=params, json=json, headers=request_headers)
        except (httpx.TransportError, httpx.TimeoutException):
            # single retry
            try:
                resp = await self._http.request(method, url, params=params, json=json, headers=request_headers)
            except (httpx.TransportError, httpx.TimeoutException) as exc:
                raise ProviderAPIError(self.platform, f"{self.api_label} API unreachable: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400:
            raise ProviderAPIError(
                self.platform,
                f"{self.api_label} API Error: {resp.status_code} - {resp.text[:500]}",
                status_code=resp.status_code,
            )
        return resp.json()


def as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
