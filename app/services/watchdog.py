"""Stale-job watchdog.

A worker that dies without calling back would leave its job ``running``
forever.  One asyncio task per process sweeps such jobs to ``failed``.
"""

from __future__ import annotations

import asyncio
import logging

from app.config import Settings
from app.models.database import session_scope
from app.services.jobs import expire_stale_jobs

logger = logging.getLogger(__name__)


async def sweep_once(settings: Settings) -> int:
    async with session_scope() as db:
        return await expire_stale_jobs(db, settings.job_timeout_minutes)


async def run_watchdog(settings: Settings) -> None:
    """Sweep every ``watchdog_interval_seconds`` until cancelled."""
    logger.info(
        "Job watchdog started",
        extra={
            "interval_seconds": settings.watchdog_interval_seconds,
            "timeout_minutes": settings.job_timeout_minutes,
        },
    )
    while True:
        await asyncio.sleep(settings.watchdog_interval_seconds)
        try:
            await sweep_once(settings)
        except Exception:
            # Keep the loop alive; the next sweep retries.
            logger.exception("Watchdog sweep failed")
