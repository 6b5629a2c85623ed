"""Fix job endpoints.

POST /api/fix/execute              submit a problem statement (201, pending)
GET  /api/fix/jobs                 caller's jobs, newest first
GET  /api/fix/status/{id}          one job
GET  /api/fix/status/{id}/events   SSE stream of status changes
POST /api/fix/webhook              completion callback from the worker
POST /api/fix/regenerate           re-run a finished job with an edited RCA

Submission and regeneration return before the workflow is dispatched; the
dispatch runs as a background task in its own session.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse

from app.config import Settings, get_settings
from app.core.auth import get_current_user, get_optional_user, resolve_caller
from app.core.security import verify_job_token
from app.models.database import get_db, session_scope
from app.models.fix_job import FixJob, JobStatus
from app.models.user import User
from app.schemas.jobs import (
    FixExecuteRequest,
    FixJobList,
    FixJobResponse,
    JobCallback,
    RegenerateRequest,
)
from app.services.installations import get_owned_installation
from app.services.jobs import (
    JobResultUpdate,
    apply_terminal_update,
    create_job,
    dispatch_job,
    get_owned_job,
    list_jobs,
    regenerate_job,
    validate_problem_statement,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["fix"])

SSE_POLL_INTERVAL_SECONDS = 3.0


@router.post("/execute", status_code=201, response_model=FixJobResponse)
async def execute_fix(
    body: FixExecuteRequest,
    background_tasks: BackgroundTasks,
    x_api_key: str | None = Header(default=None),
    session_user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> FixJob:
    """Create a pending job and schedule its dispatch.

    Raises (rendered as ``{"error", "message", "action"}``):
        401: no session and no valid X-API-Key.
        404: installation unknown (``install_app``).
        403: installation owned by someone else; no row is created.
        400: statement out of bounds, or no active token (``configure_token``).
    """
    user = await resolve_caller(db, config, session_user, x_api_key, body.user_id)
    installation = await get_owned_installation(db, body.installation_id, user)
    statement = validate_problem_statement(body.problem_statement)

    job = await create_job(
        db,
        installation=installation,
        user_id=user.id,
        repository_id=body.repository_id,
        repository_full_name=body.repository_full_name,
        problem_statement=statement,
    )
    # The dispatch task opens its own session and must see the row.
    await db.commit()

    background_tasks.add_task(dispatch_job, job.id, config, image_urls=body.image_urls)
    return job


@router.get("/jobs", response_model=FixJobList)
async def list_fix_jobs(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status: JobStatus | None = Query(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    jobs, total = await list_jobs(
        db, user, limit=limit, offset=offset, status=status.value if status else None
    )
    return {"jobs": jobs, "total": total, "limit": limit, "offset": offset}


@router.get("/status/{job_id}", response_model=FixJobResponse)
async def get_fix_status(
    job_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> FixJob:
    return await get_owned_job(db, job_id, user)


def _status_snapshot(job: FixJob) -> dict[str, Any]:
    return {
        "job_id": str(job.id),
        "status": job.status,
        "pr_number": job.pr_number,
        "pr_url": job.pr_url,
        "branch_name": job.branch_name,
        "error_message": job.error_message,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


async def job_event_stream(
    job_id: uuid.UUID, poll_interval: float = SSE_POLL_INTERVAL_SECONDS
) -> AsyncIterator[dict[str, str]]:
    """Yield ``status_update`` whenever the job changes, then ``complete``."""
    last: dict[str, Any] | None = None
    try:
        while True:
            async with session_scope() as db:
                job = await db.get(FixJob, job_id)
                snapshot = _status_snapshot(job) if job is not None else None

            if snapshot is None:
                yield {"event": "error", "data": json.dumps({"error": "Job not found"})}
                return

            if snapshot != last:
                yield {"event": "status_update", "data": json.dumps(snapshot)}
                last = snapshot

            if JobStatus(snapshot["status"]).is_terminal:
                yield {
                    "event": "complete",
                    "data": json.dumps(
                        {"status": snapshot["status"], "pr_url": snapshot["pr_url"]}
                    ),
                }
                return

            await asyncio.sleep(poll_interval)
    except asyncio.CancelledError:
        logger.info("SSE stream closed by client", extra={"job_id": str(job_id)})
        raise


@router.get("/status/{job_id}/events")
async def stream_fix_status(
    job_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> EventSourceResponse:
    job = await get_owned_job(db, job_id, user)
    return EventSourceResponse(job_event_stream(job.id))


@router.post("/webhook")
async def workflow_callback(
    body: JobCallback,
    x_callback_token: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Record the worker's result.

    Authenticated by the per-job token handed to the worker at dispatch.
    Replaying the same result is a no-op; a contradictory result is a 409.
    """
    verify_job_token(body.job_id, config.callback_secret, x_callback_token)

    job = await apply_terminal_update(
        db,
        body.job_id,
        JobResultUpdate(
            status=body.status,
            pr_url=body.pr_url,
            pr_number=body.pr_number,
            branch_name=body.branch_name,
            error_message=body.error_message,
        ),
    )
    return {"success": True, "job_id": str(job.id), "status": job.status}


@router.post("/regenerate", status_code=201, response_model=FixJobResponse)
async def regenerate_fix(
    body: RegenerateRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> FixJob:
    source = await get_owned_job(db, body.job_id, user)
    job = await regenerate_job(db, source=source, edited_rca=body.edited_rca)
    await db.commit()

    logger.info(
        "Regeneration requested",
        extra={"job_id": str(job.id), "source_job_id": str(source.id)},
    )
    background_tasks.add_task(dispatch_job, job.id, config, image_urls=body.image_urls)
    return job
