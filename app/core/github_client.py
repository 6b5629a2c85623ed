"""GitHub API client for FixRelay.

Wraps the GitHub REST API with:
- JWT-based GitHub App authentication
- Installation Access Token caching in Redis (optional)
- Installation lookup, repository listing, issue reactions and comments
- Rate limit monitoring and automatic token refresh on 403

All methods use httpx.AsyncClient.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from jose import jwt as jose_jwt

from app.config import Settings
from app.core.exceptions import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubInstallationNotFoundError,
    GitHubRateLimitError,
)

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"

# Common headers for every GitHub API request.
_BASE_HEADERS: dict[str, str] = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": GITHUB_API_VERSION,
}


def generate_app_jwt(settings: Settings) -> str:
    """Generate a short-lived JWT for GitHub App-level authentication.

    Valid for ~9 minutes (GitHub maximum is 10).  Uses RS256 signing
    with the App's private key.
    """
    private_key = settings.github_private_key
    if not private_key:
        raise GitHubAuthError(
            "GitHub App private key is empty — check GITHUB_APP_PRIVATE_KEY_PATH"
        )

    now = int(time.time())
    payload = {
        "iat": now - 60,     # issued-at: 60s in the past for clock drift
        "exp": now + 540,    # expires in 9 minutes
        "iss": settings.github_app_id,
    }
    return jose_jwt.encode(payload, private_key, algorithm="RS256")


async def fetch_installation(settings: Settings, installation_id: int) -> dict[str, Any]:
    """Return ``GET /app/installations/{id}`` using the App JWT.

    Raises:
        GitHubAuthError: The App JWT was rejected.
        GitHubInstallationNotFoundError: GitHub does not know this installation.
        GitHubAPIError: Any other non-2xx response.
    """
    app_jwt = generate_app_jwt(settings)

    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(
            f"{GITHUB_API_BASE}/app/installations/{installation_id}",
            headers={"Authorization": f"Bearer {app_jwt}", **_BASE_HEADERS},
        )

    if response.status_code == 401:
        raise GitHubAuthError("App JWT is invalid — check GITHUB_APP_PRIVATE_KEY_PATH and GITHUB_APP_ID")
    if response.status_code == 404:
        raise GitHubInstallationNotFoundError(
            f"Installation {installation_id} not found — may have been uninstalled"
        )
    if response.status_code >= 400:
        raise GitHubAPIError(
            f"Failed to fetch installation: {response.text[:200]}",
            status_code=response.status_code,
        )
    return response.json()


class GitHubClient:
    """Async GitHub API client scoped to one installation.

    Each client instance is bound to a specific ``installation_id`` and
    caches its access token in Redis with a 55-minute TTL (tokens expire
    in 60 minutes; the 5-minute buffer avoids clock-skew problems).
    Without Redis every client fetches a fresh token.
    """

    CACHE_KEY_PREFIX = "github:token:"
    TOKEN_TTL_SECONDS = 55 * 60  # 55 minutes

    def __init__(self, installation_id: int, settings: Settings, redis: Any = None) -> None:
        self.installation_id = installation_id
        self.settings = settings
        self.redis = redis

    # ------------------------------------------------------------------
    #  Authentication
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        """Get a valid installation access token, using Redis cache when available."""
        cache_key = f"{self.CACHE_KEY_PREFIX}{self.installation_id}"

        if self.redis is not None:
            cached = await self.redis.get(cache_key)
            if cached:
                return cached if isinstance(cached, str) else cached.decode("utf-8")

        token = await self._fetch_fresh_token()

        if self.redis is not None:
            await self.redis.setex(cache_key, self.TOKEN_TTL_SECONDS, token)

        return token

    async def _fetch_fresh_token(self) -> str:
        """Exchange App JWT for an installation-scoped access token."""
        app_jwt = generate_app_jwt(self.settings)

        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                f"{GITHUB_API_BASE}/app/installations/{self.installation_id}/access_tokens",
                headers={
                    "Authorization": f"Bearer {app_jwt}",
                    **_BASE_HEADERS,
                },
            )

            if response.status_code == 401:
                raise GitHubAuthError(
                    "App JWT is invalid — check GITHUB_APP_PRIVATE_KEY_PATH and GITHUB_APP_ID"
                )
            if response.status_code == 404:
                raise GitHubInstallationNotFoundError(
                    f"Installation {self.installation_id} not found — may have been uninstalled"
                )
            if response.status_code >= 400:
                raise GitHubAPIError(
                    f"Failed to get installation token: {response.text}",
                    status_code=response.status_code,
                )

            data: dict = response.json()
            logger.info(
                "Fresh installation token obtained",
                extra={"installation_id": self.installation_id},
            )
            return data["token"]

    async def _invalidate_token(self) -> None:
        """Force token refresh on next request (e.g., after 403 from GitHub API)."""
        cache_key = f"{self.CACHE_KEY_PREFIX}{self.installation_id}"
        if self.redis is not None:
            await self.redis.delete(cache_key)

    # ------------------------------------------------------------------
    #  Core request method
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict | None = None,
    ) -> httpx.Response:
        """Make an authenticated GitHub API request with automatic token refresh."""
        token = await self.get_access_token()

        request_headers = {
            "Authorization": f"Bearer {token}",
            **_BASE_HEADERS,
        }

        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.request(
                method,
                url,
                headers=request_headers,
                params=params,
                json=json_body,
            )

            self._check_rate_limit(response)

            # Handle 403: token may be revoked — invalidate cache and retry once.
            if response.status_code == 403:
                remaining = response.headers.get("X-RateLimit-Remaining", "unknown")
                if remaining == "0":
                    reset_at = response.headers.get("X-RateLimit-Reset", "")
                    raise GitHubRateLimitError(
                        f"Rate limit exceeded. Resets at: {reset_at}",
                        reset_at=reset_at,
                    )
                logger.warning(
                    "GitHub 403 — invalidating cached token and retrying",
                    extra={"installation_id": self.installation_id},
                )
                await self._invalidate_token()
                token = await self.get_access_token()
                request_headers["Authorization"] = f"Bearer {token}"
                response = await client.request(
                    method,
                    url,
                    headers=request_headers,
                    params=params,
                    json=json_body,
                )

            return response

    def _check_rate_limit(self, response: httpx.Response) -> None:
        """Log rate limit status from every GitHub API response."""
        remaining_str = response.headers.get("X-RateLimit-Remaining")
        if remaining_str is None:
            return

        remaining = int(remaining_str)
        limit = int(response.headers.get("X-RateLimit-Limit", -1))
        reset_ts = int(response.headers.get("X-RateLimit-Reset", 0))

        if remaining < 100:
            logger.warning(
                "GitHub rate limit low",
                extra={
                    "installation_id": self.installation_id,
                    "remaining": remaining,
                    "limit": limit,
                    "resets_in_seconds": max(0, reset_ts - int(time.time())),
                },
            )

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str) -> None:
        if response.status_code >= 400:
            raise GitHubAPIError(
                f"{what} failed: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )

    # ------------------------------------------------------------------
    #  Public API methods
    # ------------------------------------------------------------------

    async def list_repositories(self) -> list[dict[str, Any]]:
        """Return the repositories this installation can access (first 100)."""
        response = await self._request(
            "GET",
            f"{GITHUB_API_BASE}/installation/repositories",
            params={"per_page": 100},
        )
        self._raise_for_status(response, "Listing installation repositories")
        return response.json().get("repositories", [])

    async def add_comment_reaction(
        self, repo_full_name: str, comment_id: int, content: str
    ) -> None:
        """Add an emoji reaction (``eyes``, ``rocket``, ...) to an issue comment."""
        url = (
            f"{GITHUB_API_BASE}/repos/{repo_full_name}/issues/comments/"
            f"{comment_id}/reactions"
        )
        response = await self._request("POST", url, json_body={"content": content})
        self._raise_for_status(response, f"Adding {content} reaction")

    async def create_issue_comment(
        self, repo_full_name: str, issue_number: int, body: str
    ) -> dict:
        """Post a comment on an issue (or the conversation tab of a PR).

        Args:
            repo_full_name: ``owner/repo`` format.
            issue_number: Issue number.
            body: Comment body (markdown).

        Returns:
            The created comment as a dict.
        """
        url = f"{GITHUB_API_BASE}/repos/{repo_full_name}/issues/{issue_number}/comments"
        response = await self._request("POST", url, json_body={"body": body})
        self._raise_for_status(response, "Posting issue comment")
        return response.json()
