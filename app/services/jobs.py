"""Job lifecycle: create, dispatch, complete, expire, regenerate.

Every status change is a guarded ``UPDATE ... WHERE status IN (...)`` so
that two writers racing on the same row (dispatch vs. callback, callback
replay, watchdog) can never move a job backwards.  The dispatch failure
path and the workflow callback share ``apply_terminal_update``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core.classifier import ESTIMATED_COST_USD, classify_problem
from app.core.dispatcher import DispatchRequest, WorkflowDispatcher
from app.core.exceptions import (
    FixRelayError,
    ForbiddenError,
    InstallationNotFoundError,
    JobNotFoundError,
    JobStateConflictError,
    ValidationFailedError,
)
from app.core.security import sign_job_token
from app.models.database import session_scope, utcnow
from app.models.fix_job import TERMINAL_STATUSES, FixJob, JobStatus, TriggerSource
from app.models.tenant import Installation
from app.models.user import User
from app.services.credentials import get_active_credential, reveal_secret

logger = logging.getLogger(__name__)

MIN_PROBLEM_LENGTH = 10
MAX_PROBLEM_LENGTH = 5000

_OPEN_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


@dataclass
class JobResultUpdate:
    """Terminal result reported for a job (by the worker or by dispatch)."""

    status: str
    pr_url: str | None = None
    pr_number: int | None = None
    branch_name: str | None = None
    error_message: str | None = None


@dataclass
class DispatchOutcome:
    job_id: uuid.UUID
    ok: bool
    error: str | None = None
    action: str | None = None


def validate_problem_statement(text: str | None) -> str:
    """Return the trimmed statement, or raise if it is out of bounds."""
    statement = (text or "").strip()
    if len(statement) < MIN_PROBLEM_LENGTH:
        raise ValidationFailedError(
            f"Problem statement must be at least {MIN_PROBLEM_LENGTH} characters"
        )
    if len(statement) > MAX_PROBLEM_LENGTH:
        raise ValidationFailedError(
            f"Problem statement must be at most {MAX_PROBLEM_LENGTH} characters"
        )
    return statement


def _job_uuid(job_id: str | uuid.UUID) -> uuid.UUID:
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id))
    except ValueError:
        raise JobNotFoundError(f"Job {job_id} not found") from None


# ---------------------------------------------------------------------------
#  Creation
# ---------------------------------------------------------------------------


async def create_job(
    db: AsyncSession,
    *,
    installation: Installation,
    repository_full_name: str,
    problem_statement: str,
    user_id: uuid.UUID | None = None,
    repository_id: int = 0,
    trigger_source: TriggerSource = TriggerSource.API,
    source_issue_number: int | None = None,
    source_comment_id: int | None = None,
    regenerated_from: FixJob | None = None,
    edited_rca: str | None = None,
) -> FixJob:
    """Classify the statement and insert a ``pending`` job.

    The installation must hold an active credential; the caller has already
    checked ownership.  Nothing is dispatched here.
    """
    if installation.suspended_at is not None:
        raise ForbiddenError(f"Installation {installation.id} is suspended")
    await get_active_credential(db, installation.id)

    classification = classify_problem(problem_statement)
    job = FixJob(
        user_id=user_id,
        installation_id=installation.id,
        repository_id=repository_id,
        repository_name=repository_full_name.split("/")[-1],
        repository_full_name=repository_full_name,
        problem_statement=problem_statement,
        status=JobStatus.PENDING.value,
        complexity=classification.complexity,
        bug_type=classification.bug_type,
        priority=classification.priority,
        classification_confidence=dict(classification.confidence),
        trigger_source=trigger_source.value,
        source_issue_number=source_issue_number,
        source_comment_id=source_comment_id,
    )
    if regenerated_from is not None:
        job.rca_edited = True
        job.user_edited_rca = edited_rca
        job.regeneration_count = regenerated_from.regeneration_count + 1
        job.regenerated_from_id = regenerated_from.id
        job.branch_name = regenerated_from.branch_name

    db.add(job)
    await db.flush()
    logger.info(
        "Fix job created",
        extra={
            "job_id": str(job.id),
            "installation_id": installation.id,
            "repo": repository_full_name,
            "trigger_source": trigger_source.value,
            "complexity": job.complexity,
            "priority": job.priority,
        },
    )
    return job


async def regenerate_job(
    db: AsyncSession,
    *,
    source: FixJob,
    edited_rca: str,
) -> FixJob:
    """Start a fresh cycle for a finished job with a user-edited root cause.

    The new row reuses the source's branch so the worker updates the same PR.
    """
    if source.status not in {s.value for s in TERMINAL_STATUSES}:
        raise JobStateConflictError(
            f"Job is {source.status}; only completed or failed jobs can be regenerated"
        )
    rca = (edited_rca or "").strip()
    if not rca:
        raise ValidationFailedError("edited_rca must not be empty")
    if source.installation_id is None:
        raise InstallationNotFoundError("The installation for this job no longer exists")

    installation = await db.get(Installation, source.installation_id)
    if installation is None:
        raise InstallationNotFoundError("The installation for this job no longer exists")

    return await create_job(
        db,
        installation=installation,
        user_id=source.user_id,
        repository_id=source.repository_id,
        repository_full_name=source.repository_full_name,
        problem_statement=source.problem_statement,
        trigger_source=TriggerSource(source.trigger_source),
        source_issue_number=source.source_issue_number,
        regenerated_from=source,
        edited_rca=rca,
    )


# ---------------------------------------------------------------------------
#  Transitions
# ---------------------------------------------------------------------------


async def mark_running(db: AsyncSession, job_id: uuid.UUID) -> bool:
    """``pending → running``.  Returns False when the row had already moved on."""
    now = utcnow()
    result = await db.execute(
        update(FixJob)
        .where(FixJob.id == job_id, FixJob.status == JobStatus.PENDING.value)
        .values(status=JobStatus.RUNNING.value, started_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def apply_terminal_update(
    db: AsyncSession, job_id: str | uuid.UUID, result: JobResultUpdate
) -> FixJob:
    """Move a job to ``completed`` or ``failed``.

    Replaying the status the job already has is accepted and changes
    nothing; reporting the other terminal status is a conflict.

    Raises:
        JobNotFoundError: No such job.
        ValidationFailedError: ``result.status`` is not terminal.
        JobStateConflictError: The job already finished with another status.
    """
    key = _job_uuid(job_id)
    job = await db.get(FixJob, key, populate_existing=True)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")

    try:
        status = JobStatus(result.status)
    except ValueError:
        status = None
    if status is None or not status.is_terminal:
        raise ValidationFailedError('status must be "completed" or "failed"')

    now = utcnow()
    values: dict[str, Any] = {"status": status.value, "completed_at": now, "updated_at": now}
    if status is JobStatus.COMPLETED:
        values["pr_url"] = result.pr_url
        values["pr_number"] = result.pr_number
        values["execution_log"] = (
            f"Successfully created PR #{result.pr_number}"
            if result.pr_number is not None
            else "Workflow completed"
        )
    else:
        values["error_message"] = result.error_message or "Unknown error"
        values["execution_log"] = f"Failed: {values['error_message']}"
    if result.branch_name:
        values["branch_name"] = result.branch_name

    updated = await db.execute(
        update(FixJob)
        .where(FixJob.id == key, FixJob.status.in_(_OPEN_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(job)

    if updated.rowcount == 0:
        if job.status == status.value:
            logger.info(
                "Terminal update replayed",
                extra={"job_id": str(key), "status": status.value},
            )
            return job
        logger.warning(
            "Contradictory terminal update rejected",
            extra={"job_id": str(key), "current": job.status, "requested": status.value},
        )
        raise JobStateConflictError(f"Job already {job.status}; cannot mark it {status.value}")

    logger.info(
        "Job finished",
        extra={"job_id": str(key), "status": status.value, "pr_number": result.pr_number},
    )
    return job


async def expire_stale_jobs(db: AsyncSession, timeout_minutes: int) -> int:
    """Fail open jobs that have not finished within ``timeout_minutes``.

    Age is measured from ``started_at`` for running jobs and ``created_at``
    for jobs still pending.
    """
    now = utcnow()
    cutoff = now - timedelta(minutes=timeout_minutes)
    result = await db.execute(
        update(FixJob)
        .where(
            FixJob.status.in_(_OPEN_STATUSES),
            func.coalesce(FixJob.started_at, FixJob.created_at) < cutoff,
        )
        .values(
            status=JobStatus.FAILED.value,
            error_message=f"Job timed out after {timeout_minutes} minutes without a callback",
            execution_log="Failed: timed out",
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    expired = result.rowcount or 0
    if expired:
        logger.warning("Stale jobs expired", extra={"count": expired, "timeout_minutes": timeout_minutes})
    return expired


# ---------------------------------------------------------------------------
#  Dispatch (runs after the response, in its own session)
# ---------------------------------------------------------------------------


async def dispatch_job(
    job_id: uuid.UUID,
    settings: Settings,
    *,
    image_urls: list[str] | None = None,
    dispatcher: WorkflowDispatcher | None = None,
) -> DispatchOutcome:
    """Hand a pending job to the worker workflow.

    Success moves the job to ``running``.  Any failure is recorded on the
    job as ``failed`` and reported back in the outcome; nothing is raised,
    because this runs as a background task with no one to raise to.
    """
    dispatcher = dispatcher or WorkflowDispatcher(settings)
    try:
        async with session_scope() as db:
            job = await db.get(FixJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.installation_id is None:
                raise InstallationNotFoundError("The installation for this job no longer exists")

            credential = await get_active_credential(db, job.installation_id)
            regeneration = job.regeneration_count > 0
            request = DispatchRequest(
                job_id=str(job.id),
                installation_id=job.installation_id,
                target_repo=job.repository_full_name,
                problem_statement=job.problem_statement,
                api_key=reveal_secret(credential, settings),
                complexity=job.complexity,
                callback_token=sign_job_token(str(job.id), settings.callback_secret),
                user_rca=job.user_edited_rca,
                regeneration=regeneration,
                branch_name=job.branch_name if regeneration else None,
                image_urls=list(image_urls or []),
            )
            await dispatcher.dispatch(request)

            await mark_running(db, job.id)
            credential.last_used_at = utcnow()
    except Exception as exc:
        logger.exception("Dispatch failed", extra={"job_id": str(job_id)})
        message = exc.message if isinstance(exc, FixRelayError) else str(exc) or type(exc).__name__
        async with session_scope() as db:
            try:
                await apply_terminal_update(
                    db, job_id, JobResultUpdate(status=JobStatus.FAILED.value, error_message=message)
                )
            except (JobNotFoundError, JobStateConflictError) as record_exc:
                logger.warning(
                    "Could not record dispatch failure",
                    extra={"job_id": str(job_id), "reason": str(record_exc)},
                )
        return DispatchOutcome(job_id, ok=False, error=message, action=getattr(exc, "action", None))

    return DispatchOutcome(job_id, ok=True)


# ---------------------------------------------------------------------------
#  Queries
# ---------------------------------------------------------------------------


async def get_owned_job(db: AsyncSession, job_id: str | uuid.UUID, user: User) -> FixJob:
    """Load a job the caller owns.  Someone else's job is reported as missing."""
    key = _job_uuid(job_id)
    job = await db.get(FixJob, key, populate_existing=True)
    if job is None or job.user_id != user.id:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


async def list_jobs(
    db: AsyncSession,
    user: User,
    *,
    limit: int = 20,
    offset: int = 0,
    status: str | None = None,
) -> tuple[list[FixJob], int]:
    """The caller's jobs, newest first, plus the total matching count."""
    conditions = [FixJob.user_id == user.id]
    if status:
        conditions.append(FixJob.status == status)

    total = await db.scalar(select(func.count()).select_from(FixJob).where(*conditions))
    result = await db.execute(
        select(FixJob)
        .where(*conditions)
        .order_by(FixJob.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)


async def collect_stats(db: AsyncSession) -> dict[str, Any]:
    """Job counts by status, complexity and priority, with estimated spend."""
    by_status: dict[str, int] = {s.value: 0 for s in JobStatus}
    for status, count in (
        await db.execute(select(FixJob.status, func.count()).group_by(FixJob.status))
    ).all():
        by_status[status] = count

    by_complexity: dict[str, int] = {c: 0 for c in ESTIMATED_COST_USD}
    for complexity, count in (
        await db.execute(select(FixJob.complexity, func.count()).group_by(FixJob.complexity))
    ).all():
        by_complexity[complexity] = count

    by_priority: dict[str, int] = {}
    for priority, count in (
        await db.execute(select(FixJob.priority, func.count()).group_by(FixJob.priority))
    ).all():
        by_priority[priority] = count

    estimated = sum(ESTIMATED_COST_USD.get(c, 0.0) * n for c, n in by_complexity.items())
    total = sum(by_status.values())
    completed = by_status[JobStatus.COMPLETED.value]
    finished = completed + by_status[JobStatus.FAILED.value]
    return {
        "total_jobs": total,
        "by_status": by_status,
        "by_complexity": by_complexity,
        "by_priority": by_priority,
        "success_rate": round(completed / finished * 100, 1) if finished else 0.0,
        "estimated_cost_usd": round(estimated, 2),
    }
