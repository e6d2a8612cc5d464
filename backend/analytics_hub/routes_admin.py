"""
Admin operations: run the cache jobs on demand, accept daily metric pushes
from the provider sync and report sync and credential health.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from .container import Container
from .models import Platform
from .routes_auth import CurrentUser, get_container, require_admin
from .schemas import CacheClearRequest, DailyMetricsIngest, IngestResponse
from .services.analytics_jobs import build_daily_snapshots, ingest_daily_metrics
from .services.date_ranges import utcnow

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/cache/clear")
async def clear_cache(
    payload: Optional[CacheClearRequest] = Body(None),
    _admin: CurrentUser = Depends(require_admin),
    container: Container = Depends(get_container),
):
    company_id = payload.company_id if payload else None
    deleted = await container.cache.clear(company_id)
    return {"deleted": deleted, "company_id": company_id}


@router.post("/cache/warm")
async def warm_cache(
    _admin: CurrentUser = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return await build_daily_snapshots(container.orchestrator, container.cache, container.mappings, container.settings)


@router.post("/metrics/{company_id}/{platform}", response_model=IngestResponse)
async def ingest_metrics(
    company_id: str,
    platform: Platform,
    payload: DailyMetricsIngest,
    _admin: CurrentUser = Depends(require_admin),
    container: Container = Depends(get_container),
):
    if not await container.access.company_exists(company_id):
        raise HTTPException(status_code=404, detail="Company not found")
    period = None
    if payload.period_start and payload.period_end:
        period = (payload.period_start, payload.period_end)
    result = await ingest_daily_metrics(
        container.normalized_writer,
        container.sync_status,
        company_id,
        platform,
        [row.model_dump() for row in payload.rows],
        period=period,
        top_content=payload.top_content,
        error=payload.error,
    )
    return IngestResponse(platform=platform, stored=result["stored"], state=result["state"])


@router.get("/sync-status")
async def sync_status_overview(
    _admin: CurrentUser = Depends(require_admin),
    container: Container = Depends(get_container),
):
    """Every sync-status row, plus the expiry state of each stored credential and the companies it serves."""
    statuses = await container.sync_status.list_all()
    owners = await container.mappings.companies_by_owner()
    tokens = await container.token_manager.token_health()
    for token in tokens:
        token["companyIds"] = owners.get(token["userId"], [])
    return {"syncStatuses": statuses, "tokenHealth": tokens, "lastUpdated": utcnow().isoformat()}
