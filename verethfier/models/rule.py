"""Verification rule and legacy guild-role ORM models."""

from __future__ import annotations

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from verethfier.core.types import WILDCARD
from verethfier.models.base import Base, TimestampMixin, UUIDMixin


class VerifierRule(Base, UUIDMixin, TimestampMixin):
    """A persisted criterion: own ≥ min_items matching assets to earn role_id."""

    __tablename__ = "verifier_rules"
    __table_args__ = (
        UniqueConstraint(
            "server_id",
            "channel_id",
            "role_id",
            "slug",
            "attribute_key",
            "attribute_value",
            "min_items",
            name="uq_verifier_rules_criteria",
        ),
    )

    # ── Scope ────────────────────────────────────────────────────────
    server_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    server_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    channel_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)
    role_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # ── Criteria ─────────────────────────────────────────────────────
    slug: Mapped[str] = mapped_column(String(200), default=WILDCARD, nullable=False)
    attribute_key: Mapped[str] = mapped_column(String(200), default=WILDCARD, nullable=False)
    attribute_value: Mapped[str] = mapped_column(String(200), default=WILDCARD, nullable=False)
    min_items: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # ── Correlation / discriminant ───────────────────────────────────
    message_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    rule_type: Mapped[str | None] = mapped_column(String(20), nullable=True)  # legacy, modern


class LegacyServerRole(Base, TimestampMixin):
    """Pre-rules setup: one holder role per guild, granted for owning anything."""

    __tablename__ = "verifier_servers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)  # guild id
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)
