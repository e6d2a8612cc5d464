from __future__ import annotations

from typing import Any

from analytics_hub.integrations.base import BaseProviderClient, as_float, as_int
from analytics_hub.models import Platform

YT_ANALYTICS_URL = "https://youtubeanalytics.googleapis.com/v2/reports"
YT_VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"

YT_METRICS = "views,estimatedMinutesWatched,shares,likes,dislikes,comments,subscribersGained,averageViewDuration"


def _parse_iso8601_duration(duration: str | None) -> int | None:
    if not duration:
        return None
    # Simple parser for PT#H#M#S
    total = 0
    num = ""
    duration = duration.replace("PT", "")
    units = {"H": 3600, "M": 60, "S": 1}
    for ch in duration:
        if ch.isdigit():
            num += ch
        elif ch in units and num:
            total += int(num) * units[ch]
            num = ""
    return total if total > 0 else None


def _metric_block(row: list[Any]) -> dict[str, Any]:
    row = list(row) + [0] * (8 - len(row))
    return {
        "views": as_int(row[0]),
        # minutes -> seconds
        "totalWatchTime": as_int(row[1]) * 60,
        "shares": as_int(row[2]),
        "likes": as_int(row[3]),
        "dislikes": as_int(row[4]),
        "comments": as_int(row[5]),
        "subscriptions": as_int(row[6]),
        "avgViewDuration": as_float(row[7]),
    }


class YouTubeAnalyticsClient(BaseProviderClient):
    platform = Platform.youtube
    api_label = "YouTube Analytics"

    async def _report(self, user_id: str, channel_id: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "GET",
            YT_ANALYTICS_URL,
            user_id=user_id,
            account_id=channel_id,
            params={"ids": f"channel=={channel_id}", **params},
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
        current = await self._report(user_id, account_id, {"startDate": start, "endDate": end, "metrics": YT_METRICS})
        previous = await self._report(
            user_id, account_id, {"startDate": prev_start, "endDate": prev_end, "metrics": YT_METRICS}
        )
        metrics = _metric_block((current.get("rows") or [[]])[0])
        metrics["previousPeriod"] = _metric_block((previous.get("rows") or [[]])[0])
        return metrics

    async def fetch_top_content(
        self,
        user_id: str,
        account_id: str,
        start: str,
        end: str,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        report = await self._report(
            user_id,
            account_id,
            {
                "startDate": start,
                "endDate": end,
                "metrics": "views,estimatedMinutesWatched,likes",
                "dimensions": "video",
                "sort": "-views",
                "maxResults": str(limit),
            },
        )
        rows = report.get("rows") or []
        if not rows:
            return []
        video_ids = [row[0] for row in rows]
        details = await self._request(
            "GET",
            YT_VIDEOS_URL,
            user_id=user_id,
            account_id=account_id,
            params={"part": "snippet,contentDetails", "id": ",".join(video_ids)},
        )
        by_id = {item.get("id"): item for item in details.get("items", [])}
        videos = []
        for row in rows:
            item = by_id.get(row[0], {})
            snippet = item.get("snippet", {}) or {}
            content = item.get("contentDetails", {}) or {}
            videos.append(
                {
                    "videoId": row[0],
                    "title": snippet.get("title") or "",
                    "thumbnailUrl": (snippet.get("thumbnails") or {}).get("high", {}).get("url")
                    or (snippet.get("thumbnails") or {}).get("default", {}).get("url"),
                    "publishedAt": snippet.get("publishedAt"),
                    "durationSeconds": _parse_iso8601_duration(content.get("duration")),
                    "views": as_int(row[1] if len(row) > 1 else 0),
                    "watchTime": as_int(row[2] if len(row) > 2 else 0) * 60,
                    "likes": as_int(row[3] if len(row) > 3 else 0),
                }
            )
        return videos
