"""
Scheduler Service

Runs the out-of-band analytics jobs:
- Daily snapshot rebuild at a fixed UTC time
- Daily per-user portfolio rebuild, after the company snapshots
- Periodic purge of cache rows that can no longer be served

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- Controlled by SCHEDULER_ENABLED env (default: true)
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from analytics_hub.services.analytics_jobs import build_daily_snapshots, build_portfolio_snapshots, purge_expired_cache

if TYPE_CHECKING:
    from analytics_hub.container import Container

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, unique per job type)
LOCK_DAILY_SNAPSHOTS = 910_001
LOCK_PURGE_CACHE = 910_002
LOCK_PORTFOLIO_SNAPSHOTS = 910_003


class SchedulerService:
    """Schedules the snapshot and purge jobs for one app instance.

    Uses Postgres pg_try_advisory_lock on each tick so that only
    one backend instance (the leader) executes the job while
    other instances skip silently.
    """

    def __init__(self, container: "Container") -> None:
        self._container = container
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._running = False

    def _uses_advisory_locks(self) -> bool:
        return self._container.engine.dialect.name == "postgresql"

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Try to acquire a Postgres session-level advisory lock (non-blocking).

        The lock is automatically released when the session/connection closes.
        """
        result = await session.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": lock_key})
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int) -> None:
        await session.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": lock_key})

    async def _run_as_leader(
        self, name: str, lock_key: int, job: Callable[[], Awaitable[dict[str, Any]]]
    ) -> dict[str, Any] | None:
        if not self._uses_advisory_locks():
            logger.info("[%s] running (no advisory locks on this backend)", name)
            return await job()

        async with self._container.session_factory() as session:
            if not await self._try_advisory_lock(session, lock_key):
                logger.debug("[%s] Advisory lock not acquired, another instance is leader, skipping tick", name)
                return None
            try:
                logger.info("[%s] LEADER, running", name)
                return await job()
            finally:
                await self._release_advisory_lock(session, lock_key)

    def start(self) -> None:
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = self._container.settings
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return

        self.scheduler.add_job(
            self._run_daily_snapshots,
            CronTrigger(hour=settings.snapshot_cron_hour_utc, minute=settings.snapshot_cron_minute_utc, timezone="UTC"),
            id="daily_snapshots",
            name="Rebuild daily analytics snapshots",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_portfolio_snapshots,
            CronTrigger(hour=settings.portfolio_cron_hour_utc, minute=settings.portfolio_cron_minute_utc, timezone="UTC"),
            id="portfolio_snapshots",
            name="Rebuild per-user portfolio cache",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_purge_cache,
            IntervalTrigger(minutes=settings.cache_purge_interval_minutes),
            id="purge_cache",
            name="Purge expired analytics cache",
            replace_existing=True,
        )

        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started (single-leader mode via advisory locks)")

    def stop(self) -> None:
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def _run_daily_snapshots(self) -> dict[str, Any] | None:
        c = self._container
        result = await self._run_as_leader(
            "daily_snapshots",
            LOCK_DAILY_SNAPSHOTS,
            lambda: build_daily_snapshots(c.orchestrator, c.cache, c.mappings, c.settings),
        )
        if result is not None:
            logger.info("[daily_snapshots] Completed: %d/%d built", result["built"], result["total"])
        return result

    async def _run_portfolio_snapshots(self) -> dict[str, Any] | None:
        c = self._container
        result = await self._run_as_leader(
            "portfolio_snapshots",
            LOCK_PORTFOLIO_SNAPSHOTS,
            lambda: build_portfolio_snapshots(c.portfolio, c.access, c.settings),
        )
        if result is not None:
            logger.info("[portfolio_snapshots] Completed: %d/%d built", result["processed"], result["total"])
        return result

    async def _run_purge_cache(self) -> dict[str, Any] | None:
        c = self._container
        result = await self._run_as_leader(
            "purge_cache",
            LOCK_PURGE_CACHE,
            lambda: purge_expired_cache(c.cache, c.settings),
        )
        if result is not None:
            logger.info("[purge_cache] Completed: %d rows purged", result["purged"])
        return result
