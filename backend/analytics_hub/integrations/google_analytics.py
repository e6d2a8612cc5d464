from __future__ import annotations

from typing import Any

from analytics_hub.integrations.base import BaseProviderClient, as_float, as_int
from analytics_hub.models import Platform

GA_DATA_API_URL = "https://analyticsdata.googleapis.com/v1beta/properties/{property_id}:runReport"

GA_METRICS = [
    "totalUsers",
    "newUsers",
    "sessions",
    "screenPageViews",
    "averageSessionDuration",
    "bounceRate",
    "keyEvents",
    "userKeyEventRate",
]


def _metric_block(values: list[dict[str, Any]]) -> dict[str, Any]:
    raw = [v.get("value") for v in values] + [None] * (len(GA_METRICS) - len(values))
    return {
        "totalUsers": as_int(raw[0]),
        "newUsers": as_int(raw[1]),
        "sessions": as_int(raw[2]),
        "views": as_int(raw[3]),
        "avgSessionDuration": as_float(raw[4]),
        "bounceRate": as_float(raw[5]),
        "keyEvents": as_int(raw[6]),
        "userKeyEventRate": as_float(raw[7]),
    }


class GoogleAnalyticsClient(BaseProviderClient):
    platform = Platform.ga
    api_label = "GA"

    async def _run_report(self, user_id: str, property_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            GA_DATA_API_URL.format(property_id=property_id),
            user_id=user_id,
            account_id=property_id,
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
        data = await self._run_report(
            user_id,
            account_id,
            {
                "dateRanges": [
                    {"startDate": start, "endDate": end, "name": "current"},
                    {"startDate": prev_start, "endDate": prev_end, "name": "previous"},
                ],
                "metrics": [{"name": name} for name in GA_METRICS],
            },
        )
        rows = data.get("rows") or []
        by_range: dict[str, list[dict[str, Any]]] = {}
        for index, row in enumerate(rows):
            dims = row.get("dimensionValues") or []
            name = dims[0].get("value") if dims else ("current" if index == 0 else "previous")
            by_range[name] = row.get("metricValues") or []

        current = _metric_block(by_range.get("current", []))
        current["previousPeriod"] = _metric_block(by_range.get("previous", []))
        return current

    async def fetch_top_content(
        self,
        user_id: str,
        account_id: str,
        start: str,
        end: str,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        data = await self._run_report(
            user_id,
            account_id,
            {
                "dateRanges": [{"startDate": start, "endDate": end}],
                "dimensions": [{"name": "landingPage"}],
                "metrics": [{"name": "sessions"}, {"name": "totalUsers"}, {"name": "bounceRate"}],
                "orderBys": [{"metric": {"metricName": "sessions"}, "desc": True}],
                "limit": limit,
            },
        )
        pages = []
        for row in data.get("rows") or []:
            dims = row.get("dimensionValues") or [{}]
            metrics = row.get("metricValues") or [{}, {}, {}]
            pages.append(
                {
                    "page": dims[0].get("value"),
                    "sessions": as_int(metrics[0].get("value")),
                    "users": as_int(metrics[1].get("value") if len(metrics) > 1 else None),
                    "bounceRate": as_float(metrics[2].get("value") if len(metrics) > 2 else None),
                }
            )
        return pages
