"""Credential store: one encrypted agent token per installation.

Saving is an insert-or-replace keyed by installation id; the unique
constraint on ``credentials.installation_id`` is what guarantees a single
credential, the upsert statement just relies on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

import httpx
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core.encryption import decrypt_secret, display_prefix, encrypt_secret
from app.core.exceptions import (
    CredentialInactiveError,
    CredentialNotConfiguredError,
    ValidationFailedError,
)
from app.models.database import utcnow
from app.models.tenant import Credential, Installation
from app.models.user import User

logger = logging.getLogger(__name__)

TOKEN_TYPES: tuple[str, ...] = ("api_key", "oauth_token")
API_KEY_PREFIX = "sk-ant-"
MIN_TOKEN_LENGTH = 20
MAX_TOKEN_LENGTH = 500
MAX_VALIDATION_FAILURES = 3

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
VALIDATION_MODEL = "claude-3-5-haiku-latest"


def validate_token_format(token: str, token_type: str) -> None:
    """Reject malformed tokens before they are encrypted and stored."""
    if token_type not in TOKEN_TYPES:
        raise ValidationFailedError(
            f"Invalid token_type. Must be one of: {', '.join(TOKEN_TYPES)}"
        )
    if token_type == "api_key" and not token.startswith(API_KEY_PREFIX):
        raise ValidationFailedError(f'Anthropic API keys must start with "{API_KEY_PREFIX}"')
    if not MIN_TOKEN_LENGTH <= len(token) <= MAX_TOKEN_LENGTH:
        raise ValidationFailedError("Invalid token length")


def _dialect_insert(db: AsyncSession):
    return sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert


async def get_credential(db: AsyncSession, installation_id: int) -> Credential | None:
    result = await db.execute(
        select(Credential)
        .where(Credential.installation_id == installation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def save_credential(
    db: AsyncSession,
    *,
    installation: Installation,
    user: User,
    token: str,
    token_type: str,
    settings: Settings,
) -> Credential:
    """Encrypt ``token`` and store it as the installation's only credential.

    Overwriting resets the status to ``active`` and clears the failure counter.
    """
    validate_token_format(token, token_type)
    sealed = encrypt_secret(token, settings.encryption_key)
    now = utcnow()

    values = {
        "user_id": user.id,
        "encrypted_key": sealed.ciphertext,
        "key_iv": sealed.iv,
        "key_auth_tag": sealed.auth_tag,
        "key_prefix": display_prefix(token),
        "key_type": token_type,
        "key_status": "active",
        "failure_count": 0,
        "failure_reason": None,
        "last_validated_at": None,
        "updated_at": now,
    }
    insert = _dialect_insert(db)
    stmt = insert(Credential).values(
        installation_id=installation.id, created_at=now, **values
    )
    stmt = stmt.on_conflict_do_update(index_elements=[Credential.installation_id], set_=values)
    await db.execute(stmt)

    credential = await get_credential(db, installation.id)
    assert credential is not None
    logger.info(
        "Credential saved",
        extra={"installation_id": installation.id, "key_type": token_type},
    )
    return credential


async def get_active_credential(db: AsyncSession, installation_id: int) -> Credential:
    """Return the installation's credential if it may be used for a fix.

    Raises:
        CredentialNotConfiguredError: No credential saved.
        CredentialInactiveError: Saved but not ``active``.
    """
    credential = await get_credential(db, installation_id)
    if credential is None:
        raise CredentialNotConfiguredError(
            "Please configure your agent token in Settings before creating fixes."
        )
    if credential.key_status != "active":
        raise CredentialInactiveError(
            "Your token may be invalid or expired. Please update it in Settings."
        )
    return credential


def reveal_secret(credential: Credential, settings: Settings) -> str:
    """Decrypt the stored token.  Raises ``SecretDecryptionError`` on tampering."""
    return decrypt_secret(
        credential.encrypted_key,
        credential.key_iv,
        credential.key_auth_tag,
        settings.encryption_key,
    )


async def list_user_credentials(db: AsyncSession, user: User) -> list[Credential]:
    result = await db.execute(
        select(Credential)
        .join(Installation, Installation.id == Credential.installation_id)
        .where(Installation.user_id == user.id)
        .order_by(Credential.created_at.desc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
#  Validation against the provider
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationOutcome:
    result: Literal["valid", "rate_limited", "unauthorized", "error"]
    detail: str = ""

    @property
    def valid(self) -> bool:
        return self.result in ("valid", "rate_limited")


async def probe_token(
    token: str,
    token_type: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ValidationOutcome:
    """Send a one-token Messages request to check the token authenticates.

    A 400 still proves authentication succeeded, so it counts as valid.
    """
    headers = {"anthropic-version": ANTHROPIC_VERSION, "content-type": "application/json"}
    if token_type == "oauth_token":
        headers["Authorization"] = f"Bearer {token}"
    else:
        headers["x-api-key"] = token

    body = {
        "model": VALIDATION_MODEL,
        "max_tokens": 1,
        "messages": [{"role": "user", "content": "hi"}],
    }
    try:
        async with httpx.AsyncClient(timeout=15.0, transport=transport) as client:
            response = await client.post(ANTHROPIC_MESSAGES_URL, headers=headers, json=body)
    except httpx.HTTPError as exc:
        return ValidationOutcome("error", f"Network error during validation: {exc}")

    if response.status_code in (200, 400):
        return ValidationOutcome("valid")
    if response.status_code == 401:
        return ValidationOutcome("unauthorized", "Invalid or expired token")
    if response.status_code == 429:
        return ValidationOutcome("rate_limited", "Rate limited by provider")
    return ValidationOutcome("error", f"Validation failed with status {response.status_code}")


async def record_validation(
    db: AsyncSession, credential: Credential, outcome: ValidationOutcome
) -> Credential:
    """Apply a validation outcome to the credential's status and failure counter.

    ``unauthorized`` invalidates at once; other errors invalidate after
    ``MAX_VALIDATION_FAILURES`` in a row.
    """
    now = utcnow()
    if outcome.result == "valid":
        credential.key_status = "active"
        credential.failure_count = 0
        credential.failure_reason = None
        credential.last_validated_at = now
    elif outcome.result == "rate_limited":
        credential.key_status = "rate_limited"
        credential.failure_reason = outcome.detail
        credential.last_validated_at = now
    else:
        credential.failure_count += 1
        credential.failure_reason = outcome.detail
        if outcome.result == "unauthorized" or credential.failure_count >= MAX_VALIDATION_FAILURES:
            credential.key_status = "invalid"

    await db.flush()
    logger.info(
        "Credential validated",
        extra={
            "installation_id": credential.installation_id,
            "result": outcome.result,
            "key_status": credential.key_status,
            "failure_count": credential.failure_count,
        },
    )
    return credential
