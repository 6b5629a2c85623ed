"""Pydantic schemas for the session endpoints."""

from __future__ import annotations

import uuid

from pydantic import BaseModel


class SessionUser(BaseModel):
    id: uuid.UUID
    github_user_id: int
    github_username: str
    email: str | None
    avatar_url: str | None

    model_config = {"from_attributes": True}
