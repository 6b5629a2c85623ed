"""Health-check endpoint.

Docker Compose health checks and load balancers hit this endpoint
to verify the application is running and responsive.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)) -> dict[str, str]:
    """Return service and database status.

    Always 200 while the API is responding; ``database`` reports
    ``"unavailable"`` if a trivial query fails.
    """
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database query failed")
        database = "unavailable"
    return {"status": "healthy", "service": "fixrelay", "database": database}
