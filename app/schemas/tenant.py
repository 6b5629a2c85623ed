"""Pydantic schemas for installation and token endpoints.

Credential responses carry the display prefix only; the secret itself is
never serialized.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class CaptureInstallationRequest(BaseModel):
    installation_id: int


class CredentialSummary(BaseModel):
    installation_id: int
    key_prefix: str | None
    key_type: str
    key_status: str
    failure_count: int
    failure_reason: str | None
    last_validated_at: datetime | None
    last_used_at: datetime | None
    updated_at: datetime

    model_config = {"from_attributes": True}


class InstallationResponse(BaseModel):
    installation_id: int
    account_login: str
    account_type: str
    repository_selection: str
    suspended: bool
    created_at: datetime
    credential: CredentialSummary | None = None


class RepositoryResponse(BaseModel):
    id: int
    name: str
    full_name: str
    private: bool = False
    default_branch: str | None = None


class TokenSaveRequest(BaseModel):
    installation_id: int
    token: str
    token_type: str = "api_key"


class TokenValidateRequest(BaseModel):
    installation_id: int


class TokenValidateResponse(BaseModel):
    valid: bool
    result: str
    message: str
    credential: CredentialSummary
