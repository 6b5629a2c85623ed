"""Tests for the installation store and installation endpoints.

Covers:
- Ownership check: 404, 403, lazy linking by GitHub account id
- Webhook-driven create / suspend / delete
- Capture endpoint with GitHub lookup mocked
- Listing with credential status
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    ForbiddenError,
    GitHubInstallationNotFoundError,
    InstallationNotFoundError,
)
from app.models.fix_job import FixJob
from app.models.tenant import Credential, Installation
from app.services.installations import (
    apply_installation_event,
    get_owned_installation,
    upsert_installation,
)
from app.services.jobs import create_job
from conftest import create_installation, create_user, login


class TestOwnership:
    @pytest.mark.asyncio
    async def test_unknown_installation(self, db) -> None:
        user = await create_user(db)
        with pytest.raises(InstallationNotFoundError):
            await get_owned_installation(db, 42, user)

    @pytest.mark.asyncio
    async def test_foreign_installation(self, db) -> None:
        owner = await create_user(db)
        other = await create_user(db, github_user_id=2002, login="mallory")
        await create_installation(db, owner=owner)
        with pytest.raises(ForbiddenError):
            await get_owned_installation(db, 42, other)

    @pytest.mark.asyncio
    async def test_lazy_link_on_matching_account(self, db) -> None:
        user = await create_user(db, github_user_id=1001)
        await create_installation(db, owner=None, account_id=1001)
        installation = await get_owned_installation(db, 42, user)
        assert installation.user_id == user.id

    @pytest.mark.asyncio
    async def test_no_link_on_other_account(self, db) -> None:
        user = await create_user(db, github_user_id=1001)
        await create_installation(db, owner=None, account_id=7777)
        with pytest.raises(ForbiddenError):
            await get_owned_installation(db, 42, user)

    @pytest.mark.asyncio
    async def test_upsert_never_replaces_owner(self, db) -> None:
        owner = await create_user(db)
        other = await create_user(db, github_user_id=2002, login="mallory")
        await create_installation(db, owner=owner)
        installation = await upsert_installation(
            db, installation_id=42, account_login="octocat", account_type="User",
            account_id=1001, owner=other,
        )
        assert installation.user_id == owner.id


class TestInstallationEvents:
    @pytest.mark.asyncio
    async def test_created(self, session_factory) -> None:
        await apply_installation_event(
            "created",
            {
                "installation": {
                    "id": 77,
                    "account": {"login": "acme", "id": 3003, "type": "Organization"},
                    "repository_selection": "selected",
                }
            },
        )
        async with session_factory() as session:
            installation = await session.get(Installation, 77)
        assert installation.account_login == "acme"
        assert installation.account_type == "Organization"
        assert installation.repository_selection == "selected"
        assert installation.user_id is None

    @pytest.mark.asyncio
    async def test_suspend_and_unsuspend(self, db, session_factory) -> None:
        await create_installation(db)
        await db.commit()

        await apply_installation_event("suspend", {"installation": {"id": 42}})
        async with session_factory() as session:
            assert (await session.get(Installation, 42)).suspended_at is not None

        await apply_installation_event("unsuspend", {"installation": {"id": 42}})
        async with session_factory() as session:
            assert (await session.get(Installation, 42)).suspended_at is None

    @pytest.mark.asyncio
    async def test_deleted_keeps_job_history(self, db, session_factory, tenant) -> None:
        user, installation = tenant
        job = await create_job(
            db, installation=installation, user_id=user.id,
            repository_full_name="a/b", problem_statement="Fix null pointer in UserService",
        )
        await db.commit()

        await apply_installation_event("deleted", {"installation": {"id": 42}})

        async with session_factory() as session:
            assert await session.get(Installation, 42) is None
            assert (await session.execute(select(Credential))).first() is None
            kept = await session.get(FixJob, job.id)
        assert kept is not None
        assert kept.installation_id is None


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_capture_links_own_installation(self, client, db, settings) -> None:
        user = await create_user(db, github_user_id=1001)
        await db.commit()
        login(client, user, settings)
        github_data = {
            "id": 42,
            "account": {"login": "octocat", "id": 1001, "type": "User"},
            "repository_selection": "all",
        }
        with patch("app.api.installations.fetch_installation", new=AsyncMock(return_value=github_data)):
            resp = await client.post("/api/installations/capture", json={"installation_id": 42})

        assert resp.status_code == 200
        data = resp.json()
        assert data["installation_id"] == 42
        assert data["credential"] is None

    @pytest.mark.asyncio
    async def test_capture_foreign_account_is_403(self, client, db, session_factory, settings) -> None:
        user = await create_user(db, github_user_id=1001)
        await db.commit()
        login(client, user, settings)
        github_data = {"id": 42, "account": {"login": "acme", "id": 9999, "type": "Organization"}}
        with patch("app.api.installations.fetch_installation", new=AsyncMock(return_value=github_data)):
            resp = await client.post("/api/installations/capture", json={"installation_id": 42})

        assert resp.status_code == 403
        async with session_factory() as session:
            assert await session.get(Installation, 42) is None

    @pytest.mark.asyncio
    async def test_capture_unknown_to_github_is_404(self, client, db, settings) -> None:
        user = await create_user(db)
        await db.commit()
        login(client, user, settings)
        missing = AsyncMock(side_effect=GitHubInstallationNotFoundError("gone"))
        with patch("app.api.installations.fetch_installation", new=missing):
            resp = await client.post("/api/installations/capture", json={"installation_id": 42})
        assert resp.status_code == 404
        assert resp.json()["action"] == "install_app"

    @pytest.mark.asyncio
    async def test_list_includes_credential_status(self, client, tenant, settings) -> None:
        user, _ = tenant
        login(client, user, settings)
        resp = await client.get("/api/installations")

        assert resp.status_code == 200
        (item,) = resp.json()
        assert item["installation_id"] == 42
        assert item["credential"]["key_status"] == "active"
        assert item["credential"]["key_prefix"] == "sk-ant-api03..."

    @pytest.mark.asyncio
    async def test_repositories(self, client, tenant, settings) -> None:
        user, _ = tenant
        login(client, user, settings)
        repos = [{"id": 1, "name": "b", "full_name": "a/b", "private": True, "default_branch": "main"}]
        with patch(
            "app.api.installations.GitHubClient.list_repositories",
            new=AsyncMock(return_value=repos),
        ):
            resp = await client.get("/api/installations/42/repositories")

        assert resp.status_code == 200
        assert resp.json()[0]["full_name"] == "a/b"
