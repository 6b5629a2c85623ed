"""Agent token endpoints.

POST /api/tokens          encrypt and save (or replace) an installation's token
GET  /api/tokens          caller's tokens; prefix and status only
POST /api/tokens/validate probe the provider with the stored token
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.auth import get_current_user
from app.core.exceptions import CredentialNotConfiguredError
from app.models.database import get_db
from app.models.tenant import Credential
from app.models.user import User
from app.schemas.tenant import (
    CredentialSummary,
    TokenSaveRequest,
    TokenValidateRequest,
    TokenValidateResponse,
)
from app.services.credentials import (
    get_credential,
    list_user_credentials,
    probe_token,
    record_validation,
    reveal_secret,
    save_credential,
)
from app.services.installations import get_owned_installation

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tokens"])


@router.post("", response_model=CredentialSummary)
async def save_token(
    body: TokenSaveRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> Credential:
    installation = await get_owned_installation(db, body.installation_id, user)
    return await save_credential(
        db,
        installation=installation,
        user=user,
        token=body.token.strip(),
        token_type=body.token_type,
        settings=config,
    )


@router.get("", response_model=list[CredentialSummary])
async def list_tokens(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[Credential]:
    return await list_user_credentials(db, user)


@router.post("/validate", response_model=TokenValidateResponse)
async def validate_token(
    body: TokenValidateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> TokenValidateResponse:
    await get_owned_installation(db, body.installation_id, user)
    credential = await get_credential(db, body.installation_id)
    if credential is None:
        raise CredentialNotConfiguredError("No token saved for this installation")

    outcome = await probe_token(reveal_secret(credential, config), credential.key_type)
    credential = await record_validation(db, credential, outcome)
    return TokenValidateResponse(
        valid=outcome.valid,
        result=outcome.result,
        message=outcome.detail or "Token is valid",
        credential=CredentialSummary.model_validate(credential),
    )
