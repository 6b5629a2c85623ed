"""Installation store: persistence and ownership checks.

Every read goes to the database; nothing is cached in-process.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ForbiddenError, InstallationNotFoundError
from app.models.database import session_scope, utcnow
from app.models.fix_job import FixJob
from app.models.tenant import Installation
from app.models.user import User

logger = logging.getLogger(__name__)


async def upsert_installation(
    db: AsyncSession,
    *,
    installation_id: int,
    account_login: str,
    account_type: str,
    account_id: int,
    repository_selection: str = "all",
    owner: User | None = None,
) -> Installation:
    """Insert or refresh an installation row keyed by GitHub's installation id.

    An existing owner is never replaced by ``None``; a different owner is
    never overwritten either, so one installation keeps one owner.
    """
    installation = await db.get(Installation, installation_id)
    if installation is None:
        installation = Installation(id=installation_id)
        db.add(installation)
        logger.info(
            "Installation stored",
            extra={"installation_id": installation_id, "account": account_login},
        )

    installation.account_login = account_login
    installation.account_type = account_type
    installation.account_id = account_id
    installation.repository_selection = repository_selection or "all"
    if owner is not None and installation.user_id is None:
        installation.user_id = owner.id

    await db.flush()
    return installation


async def remove_installation(db: AsyncSession, installation_id: int) -> bool:
    """Delete an installation and its credential; jobs keep their history."""
    installation = await db.get(Installation, installation_id)
    if installation is None:
        return False

    await db.execute(
        update(FixJob)
        .where(FixJob.installation_id == installation_id)
        .values(installation_id=None)
    )
    await db.delete(installation)
    await db.flush()
    logger.info("Installation removed", extra={"installation_id": installation_id})
    return True


async def set_suspended(db: AsyncSession, installation_id: int, suspended: bool) -> None:
    installation = await db.get(Installation, installation_id)
    if installation is None:
        return
    installation.suspended_at = utcnow() if suspended else None
    await db.flush()


async def apply_installation_event(action: str, payload: dict[str, Any]) -> None:
    """Mirror an ``installation`` webhook into the store (runs as a background task)."""
    data = payload.get("installation") or {}
    installation_id = int(data.get("id") or 0)
    if not installation_id:
        logger.warning("Installation event without an installation id", extra={"action": action})
        return

    async with session_scope() as db:
        if action == "created":
            account = data.get("account") or {}
            await upsert_installation(
                db,
                installation_id=installation_id,
                account_login=account.get("login", "unknown"),
                account_type=account.get("type", "User"),
                account_id=int(account.get("id") or 0),
                repository_selection=data.get("repository_selection", "all"),
            )
        elif action == "deleted":
            await remove_installation(db, installation_id)
        elif action in ("suspend", "unsuspend"):
            await set_suspended(db, installation_id, suspended=action == "suspend")
            logger.info(
                "Installation suspension changed",
                extra={"installation_id": installation_id, "action": action},
            )
        else:
            logger.debug("Installation event no-op", extra={"action": action})


async def get_owned_installation(
    db: AsyncSession, installation_id: int, user: User
) -> Installation:
    """Load an installation the caller owns, linking it lazily on first use.

    An unlinked installation is linked when its GitHub account is the
    caller's own account.

    Raises:
        InstallationNotFoundError: No such installation.
        ForbiddenError: It belongs to someone else.
    """
    installation = await db.get(Installation, installation_id)
    if installation is None:
        raise InstallationNotFoundError(
            f"Installation {installation_id} not found; install the GitHub App first"
        )

    if installation.user_id is None and installation.account_id == user.github_user_id:
        installation.user_id = user.id
        await db.flush()
        logger.info(
            "Installation linked to user",
            extra={"installation_id": installation_id, "user_id": str(user.id)},
        )

    if installation.user_id != user.id:
        logger.warning(
            "Ownership check failed",
            extra={"installation_id": installation_id, "user_id": str(user.id)},
        )
        raise ForbiddenError("You do not own this installation")

    return installation


async def list_user_installations(db: AsyncSession, user: User) -> list[Installation]:
    result = await db.execute(
        select(Installation)
        .where(Installation.user_id == user.id)
        .order_by(Installation.created_at.desc())
    )
    return list(result.scalars().all())
