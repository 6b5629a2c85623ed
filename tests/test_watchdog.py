"""Tests for the stale-job watchdog loop."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.models.database import utcnow
from app.services.jobs import create_job
from app.services.watchdog import run_watchdog, sweep_once
from conftest import fetch_job, make_settings


class TestSweep:
    @pytest.mark.asyncio
    async def test_expires_old_pending_job(self, db, session_factory, tenant) -> None:
        user, installation = tenant
        job = await create_job(
            db, installation=installation, user_id=user.id,
            repository_full_name="a/b", problem_statement="Fix null pointer in UserService",
        )
        job.created_at = utcnow() - timedelta(minutes=120)
        await db.commit()

        expired = await sweep_once(make_settings(job_timeout_minutes=60))

        assert expired == 1
        assert (await fetch_job(session_factory, job.id)).status == "failed"


class TestLoop:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [RuntimeError("unexpected"), OperationalError("SELECT 1", {}, Exception("db down"))],
    )
    async def test_sweep_error_keeps_loop_alive(self, error) -> None:
        sweep = AsyncMock(side_effect=[error, 0, asyncio.CancelledError()])
        with patch("app.services.watchdog.sweep_once", new=sweep):
            with pytest.raises(asyncio.CancelledError):
                await run_watchdog(make_settings(watchdog_interval_seconds=0))

        assert sweep.await_count == 3
