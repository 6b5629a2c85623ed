"""Installation endpoints.

POST /api/installations/capture           register an installation after the GitHub install redirect
GET  /api/installations                   caller's installations with token status
GET  /api/installations/{id}/repositories repositories the installation can access
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.auth import get_current_user
from app.core.cache import get_redis
from app.core.exceptions import (
    ConfigurationError,
    ForbiddenError,
    GitHubAuthError,
    GitHubError,
    GitHubInstallationNotFoundError,
    InstallationNotFoundError,
    UpstreamServiceError,
)
from app.core.github_client import GitHubClient, fetch_installation
from app.models.database import get_db
from app.models.tenant import Installation
from app.models.user import User
from app.schemas.tenant import (
    CaptureInstallationRequest,
    CredentialSummary,
    InstallationResponse,
    RepositoryResponse,
)
from app.services.installations import (
    get_owned_installation,
    list_user_installations,
    upsert_installation,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["installations"])


def _to_response(installation: Installation) -> InstallationResponse:
    credential = installation.credential
    return InstallationResponse(
        installation_id=installation.id,
        account_login=installation.account_login,
        account_type=installation.account_type,
        repository_selection=installation.repository_selection,
        suspended=installation.suspended_at is not None,
        created_at=installation.created_at,
        credential=CredentialSummary.model_validate(credential) if credential else None,
    )


@router.post("/capture", response_model=InstallationResponse)
async def capture_installation(
    body: CaptureInstallationRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> InstallationResponse:
    """Look the installation up on GitHub and link it to the caller.

    Only the account the App was installed on may capture it.
    """
    try:
        data = await fetch_installation(config, body.installation_id)
    except GitHubInstallationNotFoundError as exc:
        raise InstallationNotFoundError(str(exc)) from exc
    except GitHubAuthError as exc:
        raise ConfigurationError(str(exc)) from exc
    except GitHubError as exc:
        raise UpstreamServiceError(str(exc)) from exc

    account: dict[str, Any] = data.get("account") or {}
    if int(account.get("id") or 0) != user.github_user_id:
        logger.warning(
            "Installation capture rejected: account mismatch",
            extra={"installation_id": body.installation_id, "user_id": str(user.id)},
        )
        raise ForbiddenError("This installation belongs to a different GitHub account")

    installation = await upsert_installation(
        db,
        installation_id=body.installation_id,
        account_login=account.get("login", "unknown"),
        account_type=account.get("type", "User"),
        account_id=int(account["id"]),
        repository_selection=data.get("repository_selection", "all"),
        owner=user,
    )
    # Re-run the ownership check so a row already linked elsewhere is refused.
    installation = await get_owned_installation(db, installation.id, user)
    await db.refresh(installation, ["credential"])
    return _to_response(installation)


@router.get("", response_model=list[InstallationResponse])
async def list_installations(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[InstallationResponse]:
    return [_to_response(i) for i in await list_user_installations(db, user)]


@router.get("/{installation_id}/repositories", response_model=list[RepositoryResponse])
async def list_repositories(
    installation_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
    redis: Any = Depends(get_redis),
) -> list[dict[str, Any]]:
    await get_owned_installation(db, installation_id, user)

    github = GitHubClient(installation_id, config, redis)
    try:
        return await github.list_repositories()
    except GitHubError as exc:
        raise UpstreamServiceError(f"Could not list repositories: {exc}") from exc
