"""Session handling and GitHub OAuth helpers.

Sessions are stateless: the cookie holds an HS256 JWT whose ``sub`` is the
user's id.  Programmatic callers may instead present the static
``X-API-Key`` shared secret and name the acting user explicitly.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from typing import Any
from urllib.parse import urlencode

import httpx
from fastapi import Cookie, Depends
from jose import JWTError, jwt as jose_jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.exceptions import (
    ConfigurationError,
    NotAuthenticatedError,
    UpstreamServiceError,
    ValidationFailedError,
)
from app.core.security import verify_shared_secret
from app.models.database import get_db
from app.models.user import User

logger = logging.getLogger(__name__)

SESSION_COOKIE = "fixrelay_session"
STATE_COOKIE = "fixrelay_oauth_state"
_SESSION_ALGORITHM = "HS256"

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"


# ---------------------------------------------------------------------------
#  Session tokens
# ---------------------------------------------------------------------------


def create_session_token(user_id: uuid.UUID, settings: Settings) -> str:
    if not settings.session_secret:
        raise ConfigurationError("SESSION_SECRET is not configured")
    now = int(time.time())
    payload = {"sub": str(user_id), "iat": now, "exp": now + settings.session_max_age_seconds}
    return jose_jwt.encode(payload, settings.session_secret, algorithm=_SESSION_ALGORITHM)


def decode_session_token(token: str, settings: Settings) -> uuid.UUID | None:
    """Return the user id in a valid session token, else None."""
    if not token or not settings.session_secret:
        return None
    try:
        claims = jose_jwt.decode(token, settings.session_secret, algorithms=[_SESSION_ALGORITHM])
        return uuid.UUID(claims["sub"])
    except (JWTError, KeyError, ValueError):
        return None


def new_oauth_state() -> str:
    return secrets.token_urlsafe(24)


# ---------------------------------------------------------------------------
#  FastAPI dependencies
# ---------------------------------------------------------------------------


async def get_optional_user(
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> User | None:
    user_id = decode_session_token(session_token or "", config)
    if user_id is None:
        return None
    return await db.get(User, user_id)


async def get_current_user(user: User | None = Depends(get_optional_user)) -> User:
    """Dependency: the logged-in user, or 401."""
    if user is None:
        raise NotAuthenticatedError("Please login first")
    return user


async def resolve_caller(
    db: AsyncSession,
    config: Settings,
    session_user: User | None,
    api_key: str | None,
    body_user_id: str | None,
) -> User:
    """Identify the acting user from a session or the shared-secret header.

    With a valid ``X-API-Key`` the body must carry ``user_id``; otherwise a
    session is required.
    """
    if verify_shared_secret(config.api_secret_key, api_key):
        if not body_user_id:
            raise ValidationFailedError("user_id is required when using API key authentication")
        try:
            user = await db.get(User, uuid.UUID(str(body_user_id)))
        except ValueError:
            user = None
        if user is None:
            raise NotAuthenticatedError("Unknown user_id")
        return user

    if session_user is None:
        raise NotAuthenticatedError("Please login first or provide a valid API key")
    return session_user


# ---------------------------------------------------------------------------
#  GitHub OAuth
# ---------------------------------------------------------------------------


def build_authorize_url(settings: Settings, state: str) -> str:
    if not settings.github_client_id:
        raise ConfigurationError("GITHUB_CLIENT_ID is not configured")
    query = urlencode(
        {
            "client_id": settings.github_client_id,
            "redirect_uri": f"{settings.public_url.rstrip('/')}/api/auth/callback",
            "scope": "read:user user:email",
            "state": state,
        }
    )
    return f"{GITHUB_AUTHORIZE_URL}?{query}"


async def exchange_code(settings: Settings, code: str) -> str:
    """Trade an OAuth ``code`` for a user access token."""
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(
            GITHUB_TOKEN_URL,
            headers={"Accept": "application/json"},
            data={
                "client_id": settings.github_client_id,
                "client_secret": settings.github_client_secret,
                "code": code,
            },
        )
    data: dict[str, Any] = response.json() if response.status_code == 200 else {}
    token = data.get("access_token")
    if not token:
        logger.warning(
            "OAuth code exchange failed",
            extra={"status_code": response.status_code, "error": data.get("error")},
        )
        raise UpstreamServiceError("GitHub rejected the OAuth code")
    return token


async def fetch_github_user(access_token: str) -> dict[str, Any]:
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(
            GITHUB_USER_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github+json",
            },
        )
    if response.status_code != 200:
        raise UpstreamServiceError(f"Fetching GitHub user failed: {response.status_code}")
    return response.json()
