"""
Company analytics API.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .container import Container
from .models import Platform
from .routes_auth import CurrentUser, get_container, require_user
from .schemas import ComparisonRequest
from .services.account_mappings import CompanyMembership
from .services.date_ranges import DateRange, normalize_date_range, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["analytics"])

PLATFORM_ALIASES = {
    "ga": Platform.ga,
    "gsc": Platform.gsc,
    "youtube": Platform.youtube,
    "yt": Platform.youtube,
    "linkedin": Platform.linkedin,
    "li": Platform.linkedin,
}


def parse_platforms(value: str | None) -> list[Platform] | None:
    """Comma-separated platform names; unknown names are ignored, nothing valid means all."""
    if not value:
        return None
    platforms: list[Platform] = []
    for name in value.split(","):
        platform = PLATFORM_ALIASES.get(name.strip().lower())
        if platform is not None and platform not in platforms:
            platforms.append(platform)
    return platforms or None


def _date_range(container: Container, start_date: str | None, end_date: str | None) -> DateRange:
    settings = container.settings
    return normalize_date_range(
        start_date,
        end_date,
        today=utcnow().date(),
        floor=settings.date_floor,
        default_days=settings.default_range_days,
    )


# Declared before /{company_id} so the literal paths win.
@router.get("/portfolio")
async def get_portfolio(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    refresh: bool = Query(False),
    user: CurrentUser = Depends(require_user),
    container: Container = Depends(get_container),
):
    """Every company the user belongs to, with GA totals summed across them."""
    date_range = _date_range(container, start_date, end_date)
    return await container.portfolio.get_portfolio(user.id, date_range, refresh=refresh)


@router.post("/comparison")
async def compare_companies(
    payload: ComparisonRequest,
    user: CurrentUser = Depends(require_user),
    container: Container = Depends(get_container),
):
    if not payload.company_ids:
        raise HTTPException(status_code=400, detail="companyIds is required")
    company_ids = list(dict.fromkeys(payload.company_ids))

    memberships = {m.company_id: m for m in await container.access.memberships_for_user(user.id)}
    if user.is_admin:
        names = await container.access.company_names(company_ids)
        for company_id, name in names.items():
            memberships.setdefault(company_id, CompanyMembership(company_id, name, "admin"))
    if any(company_id not in memberships for company_id in company_ids):
        raise HTTPException(status_code=403, detail="Access denied to one or more companies")

    date_range = _date_range(container, payload.start_date, payload.end_date)
    logger.info("[comparison] %d companies for %s", len(company_ids), date_range.key)
    return await container.portfolio.compare([memberships[c] for c in company_ids], date_range, payload.metrics)


@router.get("/{company_id}")
async def get_company_analytics(
    company_id: str,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    platforms: Optional[str] = Query(None),
    refresh: bool = Query(False),
    user: CurrentUser = Depends(require_user),
    container: Container = Depends(get_container),
):
    """Unified analytics for one company. Per-platform failures come back as fields, not errors."""
    if not await container.access.company_exists(company_id):
        raise HTTPException(status_code=404, detail="Company not found")
    if not user.is_admin and await container.access.user_role(user.id, company_id) is None:
        raise HTTPException(status_code=403, detail="Access denied")

    mappings = await container.mappings.list_for_company(company_id)
    if not mappings:
        raise HTTPException(status_code=404, detail="No analytics accounts are mapped to this company")

    date_range = _date_range(container, start_date, end_date)
    return await container.orchestrator.get_company_analytics(
        company_id,
        date_range,
        parse_platforms(platforms),
        bypass_cache=refresh,
    )
