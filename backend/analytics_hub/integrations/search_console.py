from __future__ import annotations

from typing import Any
from urllib.parse import quote

from analytics_hub.integrations.base import BaseProviderClient, as_float, as_int
from analytics_hub.models import Platform

GSC_QUERY_URL = "https://www.googleapis.com/webmasters/v3/sites/{site}/searchAnalytics/query"


def _totals(rows: list[dict[str, Any]]) -> dict[str, Any]:
    row = rows[0] if rows else {}
    impressions = as_int(row.get("impressions"))
    clicks = as_int(row.get("clicks"))
    return {
        "impressions": impressions,
        "clicks": clicks,
        "ctr": clicks / impressions if impressions > 0 else 0,
        "avgPosition": as_float(row.get("position")),
    }


class SearchConsoleClient(BaseProviderClient):
    platform = Platform.gsc
    api_label = "GSC"

    async def _query(self, user_id: str, site_url: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            GSC_QUERY_URL.format(site=quote(site_url, safe="")),
            user_id=user_id,
            account_id=site_url,
            json=body,
        )

    async def fetch_metrics(
        self,
        user_id: str,
        account_id: str,
        start: str,
        end: str,
        prev_start: str,
        prev_end: str,
    ) -> dict[str, Any]:
        current = await self._query(user_id, account_id, {"startDate": start, "endDate": end})
        previous = await self._query(user_id, account_id, {"startDate": prev_start, "endDate": prev_end})
        metrics = _totals(current.get("rows") or [])
        metrics["previousPeriod"] = _totals(previous.get("rows") or [])
        return metrics

    async def fetch_top_content(
        self,
        user_id: str,
        account_id: str,
        start: str,
        end: str,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        data = await self._query(
            user_id,
            account_id,
            {"startDate": start, "endDate": end, "dimensions": ["query"], "rowLimit": limit},
        )
        keywords = []
        for row in data.get("rows") or []:
            keys = row.get("keys") or [""]
            keywords.append(
                {
                    "keyword": keys[0],
                    "clicks": as_int(row.get("clicks")),
                    "impressions": as_int(row.get("impressions")),
                    "ctr": as_float(row.get("ctr")),
                    "position": as_float(row.get("position")),
                }
            )
        return keywords
