from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from .models import OAuthProvider, Platform


class ConnectionRead(BaseModel):
    id: int
    provider: OAuthProvider
    identity: str
    identity_name: str | None = None
    linked_account_id: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class OAuthCallbackRequest(BaseModel):
    code: str = Field(min_length=1)
    identity: str | None = None
    identity_name: str | None = None
    linked_account_id: str | None = None


class OAuthCallbackResponse(BaseModel):
    connection_id: int
    provider: OAuthProvider
    scope: str


class CacheClearRequest(BaseModel):
    company_id: str | None = None


class ComparisonRequest(BaseModel):
    company_ids: list[str] = Field(default_factory=list, alias="companyIds")
    start_date: str | None = Field(default=None, alias="startDate")
    end_date: str | None = Field(default=None, alias="endDate")
    metrics: list[str] = Field(default_factory=list)


class DailyMetricRow(BaseModel):
    date: dt.date

    class Config:
        extra = "allow"


class DailyMetricsIngest(BaseModel):
    rows: list[DailyMetricRow] = Field(default_factory=list)
    period_start: date | None = None
    period_end: date | None = None
    top_content: list[dict[str, Any]] | None = None
    error: str | None = None


class IngestResponse(BaseModel):
    platform: Platform
    stored: int
    state: str
