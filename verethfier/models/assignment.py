"""Role assignment and wallet ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from verethfier.core.types import AssignmentStatus
from verethfier.models.base import Base, TimestampMixin, UUIDMixin


class RoleAssignment(Base, UUIDMixin, TimestampMixin):
    """A continuously monitored grant. Never hard-deleted (audit trail)."""

    __tablename__ = "verifier_user_roles"

    user_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    server_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)
    rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=AssignmentStatus.ACTIVE.value, nullable=False, index=True
    )
    verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_checked: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # False while the platform may still show a role we consider gone
    platform_synced: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # ── Display-only ─────────────────────────────────────────────────
    user_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    server_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role_name: Mapped[str | None] = mapped_column(String(200), nullable=True)


class UserWallet(Base, UUIDMixin, TimestampMixin):
    """An address a user has proven control of."""

    __tablename__ = "user_wallets"
    __table_args__ = (UniqueConstraint("user_id", "address", name="uq_user_wallets_user_address"),)

    user_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    user_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
