"""Pydantic schemas for fix job endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class FixExecuteRequest(BaseModel):
    installation_id: int
    repository_full_name: str = Field(pattern=r"^[\w.-]+/[\w.-]+$")
    problem_statement: str
    repository_id: int = 0
    image_urls: list[str] = Field(default_factory=list)
    # Only honoured together with a valid X-API-Key header.
    user_id: str | None = None


class FixJobResponse(BaseModel):
    id: uuid.UUID
    status: str
    installation_id: int | None
    repository_id: int
    repository_name: str
    repository_full_name: str
    problem_statement: str
    complexity: str
    bug_type: str
    priority: str
    classification_confidence: dict[str, int]
    branch_name: str | None
    pr_number: int | None
    pr_url: str | None
    error_message: str | None
    execution_log: str | None
    rca_edited: bool
    user_edited_rca: str | None
    regeneration_count: int
    regenerated_from_id: uuid.UUID | None
    trigger_source: str
    source_issue_number: int | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    model_config = {"from_attributes": True}


class FixJobList(BaseModel):
    jobs: list[FixJobResponse]
    total: int
    limit: int
    offset: int


class JobCallback(BaseModel):
    """Result reported by the worker workflow."""

    job_id: str
    status: str
    pr_url: str | None = None
    pr_number: int | None = None
    branch_name: str | None = None
    error_message: str | None = None


class RegenerateRequest(BaseModel):
    job_id: str
    edited_rca: str
    image_urls: list[str] = Field(default_factory=list)
