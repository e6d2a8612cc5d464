"""
Sync-status records written by the out-of-band jobs.

The orchestrator only reads them: a platform that has ever synced
successfully has trustworthy precomputed data, even if every metric is zero.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_hub.models import Company, Platform, SyncStatus
from analytics_hub.services.date_ranges import as_utc, utcnow

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 1000


@dataclass(frozen=True)
class SyncStatusRecord:
    platform: Platform
    last_success_at: datetime | None
    data_end_date: date | None
    state: str
    consecutive_failures: int

    @property
    def has_synced(self) -> bool:
        return self.last_success_at is not None

    def freshness(self) -> dict:
        return {
            "lastSuccessAt": self.last_success_at.isoformat() if self.last_success_at else None,
            "dataEndDate": self.data_end_date.isoformat() if self.data_end_date else None,
            "state": self.state,
            "consecutiveFailures": self.consecutive_failures,
        }


class SyncStatusRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_sync_status(self, company_id: str) -> list[SyncStatusRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(SyncStatus).where(SyncStatus.company_id == company_id))
            rows = result.scalars().all()
        records = []
        for row in rows:
            try:
                platform = Platform(row.platform)
            except ValueError:
                logger.warning("[sync_status] Unknown platform %r for company %s", row.platform, company_id)
                continue
            records.append(
                SyncStatusRecord(
                    platform=platform,
                    last_success_at=as_utc(row.last_success_at) if row.last_success_at else None,
                    data_end_date=row.data_end_date,
                    state=row.sync_state,
                    consecutive_failures=row.consecutive_failures or 0,
                )
            )
        return records

    async def list_all(self) -> list[dict]:
        """Every sync-status row with its company name, most recently synced first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncStatus, Company.name)
                .join(Company, SyncStatus.company_id == Company.id)
                .order_by(SyncStatus.last_sync_at.desc())
            )
            rows = result.all()
        return [
            {
                "companyId": row.company_id,
                "companyName": name,
                "platform": row.platform,
                "syncState": row.sync_state,
                "lastSyncAt": as_utc(row.last_sync_at).isoformat() if row.last_sync_at else None,
                "lastSuccessAt": as_utc(row.last_success_at).isoformat() if row.last_success_at else None,
                "lastError": row.last_error,
                "lastErrorAt": as_utc(row.last_error_at).isoformat() if row.last_error_at else None,
                "consecutiveFailures": row.consecutive_failures or 0,
                "dataStartDate": row.data_start_date.isoformat() if row.data_start_date else None,
                "dataEndDate": row.data_end_date.isoformat() if row.data_end_date else None,
            }
            for row, name in rows
        ]

    async def _get_or_create(self, session: AsyncSession, company_id: str, platform: Platform) -> SyncStatus:
        row = await session.scalar(
            select(SyncStatus).where(SyncStatus.company_id == company_id, SyncStatus.platform == platform.value)
        )
        if row is None:
            row = SyncStatus(company_id=company_id, platform=platform.value, sync_state="pending", consecutive_failures=0)
            session.add(row)
        return row

    async def record_success(self, company_id: str, platform: Platform, start: date, end: date) -> None:
        now = utcnow()
        async with self._session_factory() as session:
            row = await self._get_or_create(session, company_id, platform)
            row.sync_state = "success"
            row.last_sync_at = now
            row.last_success_at = now
            row.last_error = None
            row.last_error_at = None
            row.consecutive_failures = 0
            row.data_start_date = row.data_start_date or start
            row.data_end_date = end
            await session.commit()

    async def record_failure(self, company_id: str, platform: Platform, error: str) -> None:
        now = utcnow()
        async with self._session_factory() as session:
            row = await self._get_or_create(session, company_id, platform)
            row.sync_state = "error"
            row.last_sync_at = now
            row.last_error = error[:ERROR_MESSAGE_LIMIT]
            row.last_error_at = now
            row.consecutive_failures = (row.consecutive_failures or 0) + 1
            await session.commit()
        logger.info("[sync_status] %s/%s failure recorded: %s", company_id, platform.value, error[:200])
