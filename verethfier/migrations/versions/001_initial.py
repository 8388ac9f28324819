"""Initial schema — rules, legacy guild roles, role assignments, wallets

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19 00:00:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── Verification rules ───────────────────────────────────────────────
    op.create_table(
        "verifier_rules",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("server_id", sa.String(32), nullable=False),
        sa.Column("server_name", sa.String(200), nullable=True),
        sa.Column("channel_id", sa.String(32), nullable=True),
        sa.Column("channel_name", sa.String(200), nullable=True),
        sa.Column("role_id", sa.String(32), nullable=False),
        sa.Column("role_name", sa.String(200), nullable=True),
        sa.Column("slug", sa.String(200), nullable=False, server_default="ALL"),
        sa.Column("attribute_key", sa.String(200), nullable=False, server_default="ALL"),
        sa.Column("attribute_value", sa.String(200), nullable=False, server_default="ALL"),
        sa.Column("min_items", sa.Integer, nullable=False, server_default="1"),
        sa.Column("message_id", sa.String(32), nullable=True),
        sa.Column("rule_type", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
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

    # ── Legacy guild roles ───────────────────────────────────────────────
    op.create_table(
        "verifier_servers",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("role_id", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # ── Role assignments ─────────────────────────────────────────────────
    op.create_table(
        "verifier_user_roles",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("server_id", sa.String(32), nullable=False),
        sa.Column("role_id", sa.String(32), nullable=False),
        sa.Column("rule_id", UUID(as_uuid=True), nullable=True),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("verified_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_checked", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("platform_synced", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("user_name", sa.String(200), nullable=True),
        sa.Column("server_name", sa.String(200), nullable=True),
        sa.Column("role_name", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # ── Wallets ──────────────────────────────────────────────────────────
    op.create_table(
        "user_wallets",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("user_name", sa.String(200), nullable=True),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "address", name="uq_user_wallets_user_address"),
    )

    # ── Indexes ──────────────────────────────────────────────────────────
    op.create_index("ix_verifier_rules_server_id", "verifier_rules", ["server_id"])
    op.create_index("ix_verifier_rules_channel_id", "verifier_rules", ["channel_id"])
    op.create_index("ix_verifier_rules_message_id", "verifier_rules", ["message_id"])
    op.create_index("ix_verifier_user_roles_user_id", "verifier_user_roles", ["user_id"])
    op.create_index("ix_verifier_user_roles_server_id", "verifier_user_roles", ["server_id"])
    op.create_index("ix_verifier_user_roles_rule_id", "verifier_user_roles", ["rule_id"])
    op.create_index("ix_verifier_user_roles_status", "verifier_user_roles", ["status"])
    op.create_index("ix_user_wallets_user_id", "user_wallets", ["user_id"])


def downgrade() -> None:
    op.drop_table("user_wallets")
    op.drop_table("verifier_user_roles")
    op.drop_table("verifier_servers")
    op.drop_table("verifier_rules")
