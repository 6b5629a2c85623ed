"""Fix job model: one record per user-initiated (or relay-triggered) fix request.

Status moves forward only:

    pending → running → completed | failed
    pending → failed               (dispatch raised)
    pending → completed | failed   (callback arrived before the running update)

A terminal row never changes status again; regeneration creates a new row
that links back through ``regenerated_from_id``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.database import Base, utcnow


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class TriggerSource(str, enum.Enum):
    API = "api"
    COMMENT = "comment"
    LABEL = "label"


class FixJob(Base):
    __tablename__ = "fix_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    installation_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("installations.id", ondelete="SET NULL"), nullable=True
    )

    # Repository
    repository_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    repository_name: Mapped[str] = mapped_column(String(255), nullable=False)
    repository_full_name: Mapped[str] = mapped_column(String(500), nullable=False)

    # Problem
    problem_statement: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), default=JobStatus.PENDING.value, nullable=False
    )  # pending|running|completed|failed

    # Timing
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Results
    branch_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pr_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pr_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Classification (app.core.classifier)
    complexity: Mapped[str] = mapped_column(String(10), default="medium", nullable=False)
    bug_type: Mapped[str] = mapped_column(String(50), default="other", nullable=False)
    priority: Mapped[str] = mapped_column(String(5), default="P2", nullable=False)
    classification_confidence: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)  # type: ignore[assignment]

    # RCA editing / regeneration
    rca_edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    user_edited_rca: Mapped[str | None] = mapped_column(Text, nullable=True)
    regeneration_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    regenerated_from_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # Origin
    trigger_source: Mapped[str] = mapped_column(
        String(20), default=TriggerSource.API.value, nullable=False
    )
    source_issue_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_comment_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_fix_jobs_user_id", "user_id"),
        Index("ix_fix_jobs_installation_id", "installation_id"),
        Index("ix_fix_jobs_status", "status"),
        Index("ix_fix_jobs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<FixJob id={self.id!s:.8} repo={self.repository_full_name!r} "
            f"status={self.status!r}>"
        )
