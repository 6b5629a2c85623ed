"""Admin endpoints.

Basic observability over fix jobs and a manual trigger for the stale-job
sweep.  Protected by the ``X-Admin-Secret`` header; with ``ADMIN_SECRET``
unset every request is refused.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.security import verify_shared_secret
from app.models.database import get_db
from app.services.jobs import collect_stats, expire_stale_jobs

logger = logging.getLogger(__name__)


async def require_admin(
    x_admin_secret: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
) -> None:
    if not verify_shared_secret(config.admin_secret, x_admin_secret):
        logger.warning("Admin request rejected")
        raise HTTPException(status_code=403, detail="Invalid admin secret")


router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/stats")
async def admin_stats(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """Job counts by status, complexity and priority, success rate, estimated spend."""
    return await collect_stats(db)


@router.post("/jobs/expire")
async def expire_jobs(
    timeout_minutes: int | None = None,
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict[str, int]:
    """Fail open jobs older than ``timeout_minutes`` (default: JOB_TIMEOUT_MINUTES)."""
    minutes = timeout_minutes if timeout_minutes is not None else config.job_timeout_minutes
    expired = await expire_stale_jobs(db, minutes)
    return {"expired": expired, "timeout_minutes": minutes}
