"""GitHub OAuth login and session endpoints.

GET  /api/auth/login    redirect to GitHub with a state cookie
GET  /api/auth/callback finish OAuth, set the session cookie, go to the dashboard
GET  /api/auth/session  current user, or 401
POST /api/auth/logout   clear the session cookie
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Cookie, Depends, Query, Response
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.auth import (
    SESSION_COOKIE,
    STATE_COOKIE,
    build_authorize_url,
    create_session_token,
    exchange_code,
    fetch_github_user,
    get_current_user,
    new_oauth_state,
)
from app.core.exceptions import ValidationFailedError
from app.models.database import get_db
from app.models.user import User
from app.schemas.user import SessionUser

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

_STATE_MAX_AGE_SECONDS = 600


@router.get("/login")
async def login(config: Settings = Depends(get_settings)) -> RedirectResponse:
    state = new_oauth_state()
    response = RedirectResponse(build_authorize_url(config, state), status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=_STATE_MAX_AGE_SECONDS,
        httponly=True,
        secure=config.cookie_secure,
        samesite="lax",
    )
    return response


@router.get("/callback")
async def oauth_callback(
    code: str = Query(...),
    state: str = Query(...),
    state_cookie: str | None = Cookie(default=None, alias=STATE_COOKIE),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> RedirectResponse:
    if not state_cookie or not hmac.compare_digest(state, state_cookie):
        logger.warning("OAuth callback rejected: state mismatch")
        raise ValidationFailedError("OAuth state mismatch; please log in again")

    access_token = await exchange_code(config, code)
    profile = await fetch_github_user(access_token)

    result = await db.execute(select(User).where(User.github_user_id == int(profile["id"])))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(github_user_id=int(profile["id"]), github_username=profile["login"])
        db.add(user)
    user.github_username = profile["login"]
    user.email = profile.get("email")
    user.avatar_url = profile.get("avatar_url")
    await db.flush()
    logger.info("User logged in", extra={"user_id": str(user.id), "login": user.github_username})

    response = RedirectResponse(config.dashboard_url, status_code=302)
    response.set_cookie(
        SESSION_COOKIE,
        create_session_token(user.id, config),
        max_age=config.session_max_age_seconds,
        httponly=True,
        secure=config.cookie_secure,
        samesite="lax",
    )
    response.delete_cookie(STATE_COOKIE)
    return response


@router.get("/session", response_model=SessionUser)
async def current_session(user: User = Depends(get_current_user)) -> User:
    return user


@router.post("/logout")
async def logout(response: Response) -> dict[str, bool]:
    response.delete_cookie(SESSION_COOKIE)
    return {"success": True}
