from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from analytics_hub.integrations.base import BaseProviderClient, as_int
from analytics_hub.models import Platform
from analytics_hub.services.oauth_tokens import OAuthTokenManager

LINKEDIN_API_BASE = "https://api.linkedin.com/rest"
MIN_REQUEST_INTERVAL_SEC = 0.2  # 5 requests/second


def _epoch_ms(value: str, *, end_of_day: bool = False) -> int:
    day = datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    ms = int(day.timestamp() * 1000)
    return ms + 86_399_999 if end_of_day else ms


def _time_intervals(start: str, end: str) -> str:
    return (
        f"(timeRange:(start:{_epoch_ms(start)},end:{_epoch_ms(end, end_of_day=True)}),"
        "timeGranularityType:DAY)"
    )


def _sum_elements(elements: list[dict[str, Any]], path: tuple[str, ...]) -> int:
    total = 0
    for element in elements:
        node: Any = element
        for key in path:
            node = node.get(key, {}) if isinstance(node, dict) else {}
        total += as_int(node if not isinstance(node, dict) else 0)
    return total


class LinkedInClient(BaseProviderClient):
    platform = Platform.linkedin
    api_label = "LinkedIn"

    def __init__(self, http_client: httpx.AsyncClient, token_manager: OAuthTokenManager, api_version: str) -> None:
        super().__init__(http_client, token_manager)
        self._api_version = api_version
        self._throttle = asyncio.Lock()
        self._last_request = 0.0

    async def _get(self, user_id: str, organization_id: str, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        async with self._throttle:
            wait = MIN_REQUEST_INTERVAL_SEC - (time.monotonic() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()
        return await self._request(
            "GET",
            f"{LINKEDIN_API_BASE}{endpoint}",
            user_id=user_id,
            account_id=organization_id,
            params=params,
            headers={"X-Restli-Protocol-Version": "2.0.0", "LinkedIn-Version": self._api_version},
        )

    async def _period(self, user_id: str, organization_id: str, start: str, end: str) -> dict[str, Any]:
        entity = f"urn:li:organization:{organization_id}"
        intervals = _time_intervals(start, end)
        visitors = await self._get(
            user_id,
            organization_id,
            "/organizationPageStatistics",
            {"q": "organization", "organization": entity, "timeIntervals": intervals},
        )
        followers = await self._get(
            user_id,
            organization_id,
            "/organizationalEntityFollowerStatistics",
            {"q": "organizationalEntity", "organizationalEntity": entity, "timeIntervals": intervals},
        )
        shares = await self._get(
            user_id,
            organization_id,
            "/organizationalEntityShareStatistics",
            {"q": "organizationalEntity", "organizationalEntity": entity, "timeIntervals": intervals},
        )
        v_el = visitors.get("elements") or []
        f_el = followers.get("elements") or []
        s_el = shares.get("elements") or []
        impressions = _sum_elements(s_el, ("totalShareStatistics", "impressionCount"))
        clicks = _sum_elements(s_el, ("totalShareStatistics", "clickCount"))
        reactions = _sum_elements(s_el, ("totalShareStatistics", "likeCount"))
        comments = _sum_elements(s_el, ("totalShareStatistics", "commentCount"))
        reposts = _sum_elements(s_el, ("totalShareStatistics", "shareCount"))
        return {
            "pageViews": _sum_elements(v_el, ("totalPageStatistics", "views", "allPageViews", "pageViews")),
            "uniqueVisitors": _sum_elements(v_el, ("totalPageStatistics", "views", "allPageViews", "uniquePageViews")),
            "newFollowers": _sum_elements(f_el, ("followerGains", "organicFollowerGain"))
            + _sum_elements(f_el, ("followerGains", "paidFollowerGain")),
            "impressions": impressions,
            "clicks": clicks,
            "reactions": reactions,
            "comments": comments,
            "reposts": reposts,
            "engagementRate": (clicks + reactions + comments + reposts) / impressions if impressions > 0 else 0,
        }

    async def fetch_metrics(
        self,
        user_id: str,
        account_id: str,
        start: str,
        end: str,
        prev_start: str,
        prev_end: str,
    ) -> dict[str, Any]:
        current = await self._period(user_id, account_id, start, end)
        current["previousPeriod"] = await self._period(user_id, account_id, prev_start, prev_end)
        return current

    async def fetch_top_content(
        self,
        user_id: str,
        account_id: str,
        start: str,
        end: str,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        data = await self._get(
            user_id,
            account_id,
            "/posts",
            {"q": "author", "author": f"urn:li:organization:{account_id}", "count": str(limit), "sortBy": "LAST_MODIFIED"},
        )
        posts = []
        for element in (data.get("elements") or [])[:limit]:
            posts.append(
                {
                    "id": element.get("id"),
                    "commentary": (element.get("commentary") or "")[:280],
                    "publishedAt": element.get("publishedAt"),
                }
            )
        return posts
