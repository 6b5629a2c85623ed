"""Tenant models: Installation and Credential.

Maps GitHub App installations (tenants) and the single encrypted agent
credential each one may hold.  Installations use BIGINT primary keys
(GitHub's own IDs) — NOT auto-incrementing.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.database import Base, utcnow


class Installation(Base):
    """GitHub App installation → maps to a 'tenant' (organization or user)."""

    __tablename__ = "installations"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)  # GitHub installation_id
    account_login: Mapped[str] = mapped_column(String(255), nullable=False)
    account_type: Mapped[str] = mapped_column(String(50), nullable=False)  # Organization | User
    account_id: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    repository_selection: Mapped[str] = mapped_column(
        String(50), default="all", nullable=False
    )  # all | selected
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationship
    credential: Mapped["Credential | None"] = relationship(
        back_populates="installation",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_installations_user_id", "user_id"),
        Index("ix_installations_account_id", "account_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Installation id={self.id} account={self.account_login!r} "
            f"user_id={self.user_id!s:.8}>"
        )


class Credential(Base):
    """Encrypted agent token for one installation (AES-256-GCM, see app.core.encryption)."""

    __tablename__ = "credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    installation_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("installations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    encrypted_key: Mapped[str] = mapped_column(Text, nullable=False)
    key_iv: Mapped[str] = mapped_column(String(64), nullable=False)
    key_auth_tag: Mapped[str] = mapped_column(String(64), nullable=False)
    key_prefix: Mapped[str | None] = mapped_column(String(20), nullable=True)
    key_type: Mapped[str] = mapped_column(
        String(50), default="api_key", nullable=False
    )  # api_key | oauth_token
    key_status: Mapped[str] = mapped_column(
        String(50), default="active", nullable=False
    )  # active | invalid | expired | rate_limited
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationship
    installation: Mapped["Installation"] = relationship(back_populates="credential")

    __table_args__ = (
        Index("ix_credentials_user_id", "user_id"),
        Index("ix_credentials_key_status", "key_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Credential installation_id={self.installation_id} "
            f"prefix={self.key_prefix!r} status={self.key_status!r}>"
        )
