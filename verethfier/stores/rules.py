"""Persisted verification rules.

Rules are read-only to the verification core. Only administrative callers
create or delete them, and the only in-place mutation is the message id
backfill.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verethfier.core.database import session_scope
from verethfier.core.errors import DuplicateRuleError, RuleNotFoundError, ValidationError
from verethfier.core.types import (
    LEGACY_ATTRIBUTE_KEY,
    LEGACY_COLLECTION_SLUG,
    LEGACY_RULE_ID,
    WILDCARD,
    RuleType,
    VerificationRule,
)
from verethfier.models.rule import LegacyServerRole, VerifierRule

logger = logging.getLogger(__name__)


def _parse_id(rule_id: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(rule_id, uuid.UUID):
        return rule_id
    try:
        return uuid.UUID(str(rule_id))
    except ValueError:
        return None


def _criterion(value: str | None) -> str:
    value = (value or "").strip()
    return value or WILDCARD


def to_domain(row: VerifierRule) -> VerificationRule:
    return VerificationRule(
        id=str(row.id),
        guild_id=row.server_id,
        guild_name=row.server_name,
        channel_id=row.channel_id,
        channel_name=row.channel_name,
        role_id=row.role_id,
        role_name=row.role_name,
        slug=row.slug,
        attribute_key=row.attribute_key,
        attribute_value=row.attribute_value,
        min_items=row.min_items,
        message_id=row.message_id,
        rule_type=RuleType(row.rule_type) if row.rule_type else None,
    )


def legacy_pseudo_rule(
    guild_id: str,
    role_id: str,
    guild_name: str | None = None,
) -> VerificationRule:
    """The guild-wide "holds anything" rule from the pre-rules setup."""
    return VerificationRule(
        id=LEGACY_RULE_ID,
        guild_id=guild_id,
        guild_name=guild_name,
        role_id=role_id,
        slug=LEGACY_COLLECTION_SLUG,
        attribute_key=LEGACY_ATTRIBUTE_KEY,
        attribute_value=WILDCARD,
        min_items=1,
        rule_type=RuleType.LEGACY,
    )


class RuleStore:
    """SQLAlchemy-backed rule repository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    # ── Reads ────────────────────────────────────────────────────────────

    async def get(self, rule_id: str) -> VerificationRule | None:
        pk = _parse_id(rule_id)
        if pk is None:
            return None
        async with session_scope(self._session_factory) as session:
            row = await session.get(VerifierRule, pk)
            return to_domain(row) if row else None

    async def list_for_guild(
        self,
        guild_id: str,
        channel_id: str | None = None,
        include_legacy: bool = False,
    ) -> list[VerificationRule]:
        stmt = select(VerifierRule).where(VerifierRule.server_id == guild_id)
        if channel_id is not None:
            stmt = stmt.where(VerifierRule.channel_id == channel_id)
        stmt = stmt.order_by(VerifierRule.created_at, VerifierRule.id)

        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            rules = [to_domain(r) for r in rows]
            if include_legacy:
                legacy = await session.get(LegacyServerRole, guild_id)
                if legacy is not None:
                    rules.append(legacy_pseudo_rule(legacy.id, legacy.role_id, legacy.name))
        return rules

    async def list_for_message(self, guild_id: str, message_id: str) -> list[VerificationRule]:
        stmt = (
            select(VerifierRule)
            .where(VerifierRule.server_id == guild_id, VerifierRule.message_id == message_id)
            .order_by(VerifierRule.created_at, VerifierRule.id)
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [to_domain(r) for r in rows]

    async def find_rule_with_message(
        self, guild_id: str, channel_id: str
    ) -> VerificationRule | None:
        """First rule in the channel that already has a verification message."""
        stmt = (
            select(VerifierRule)
            .where(
                VerifierRule.server_id == guild_id,
                VerifierRule.channel_id == channel_id,
                VerifierRule.message_id.is_not(None),
            )
            .order_by(VerifierRule.created_at)
            .limit(1)
        )
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalars().first()
            return to_domain(row) if row else None

    async def get_legacy(self, guild_id: str) -> VerificationRule | None:
        async with session_scope(self._session_factory) as session:
            legacy = await session.get(LegacyServerRole, guild_id)
            if legacy is None:
                return None
            return legacy_pseudo_rule(legacy.id, legacy.role_id, legacy.name)

    async def find_conflicting(
        self,
        guild_id: str,
        channel_id: str | None,
        slug: str | None = WILDCARD,
        attribute_key: str | None = WILDCARD,
        attribute_value: str | None = WILDCARD,
        min_items: int = 1,
        exclude_role_id: str | None = None,
    ) -> VerificationRule | None:
        """A rule in the same scope with the same criteria (optionally for another role)."""
        conditions = [
            VerifierRule.server_id == guild_id,
            VerifierRule.slug == _criterion(slug),
            VerifierRule.attribute_key == _criterion(attribute_key),
            VerifierRule.attribute_value == _criterion(attribute_value),
            VerifierRule.min_items == min_items,
        ]
        if channel_id is None:
            conditions.append(VerifierRule.channel_id.is_(None))
        else:
            conditions.append(VerifierRule.channel_id == channel_id)
        if exclude_role_id is not None:
            conditions.append(VerifierRule.role_id != exclude_role_id)

        stmt = select(VerifierRule).where(and_(*conditions)).limit(1)
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalars().first()
            return to_domain(row) if row else None

    # ── Administrative writes ────────────────────────────────────────────

    async def create(
        self,
        guild_id: str,
        role_id: str,
        channel_id: str | None = None,
        slug: str | None = WILDCARD,
        attribute_key: str | None = WILDCARD,
        attribute_value: str | None = WILDCARD,
        min_items: int = 1,
        guild_name: str | None = None,
        channel_name: str | None = None,
        role_name: str | None = None,
        message_id: str | None = None,
        rule_type: RuleType | None = None,
    ) -> VerificationRule:
        """Insert a rule. The rule type is fixed here and never re-inferred."""
        if min_items < 1:
            raise ValidationError(f"min_items must be at least 1, got {min_items}")

        slug, attribute_key, attribute_value = (
            _criterion(slug),
            _criterion(attribute_key),
            _criterion(attribute_value),
        )
        if rule_type is None:
            is_legacy = slug == LEGACY_COLLECTION_SLUG or attribute_key == LEGACY_ATTRIBUTE_KEY
            rule_type = RuleType.LEGACY if is_legacy else RuleType.MODERN

        existing = await self.find_conflicting(
            guild_id, channel_id, slug, attribute_key, attribute_value, min_items
        )
        if existing is not None and existing.role_id == role_id:
            raise DuplicateRuleError(
                f"An identical rule already exists for role {role_id}",
                existing_rule_id=existing.id,
            )

        row = VerifierRule(
            server_id=guild_id,
            server_name=guild_name,
            channel_id=channel_id,
            channel_name=channel_name,
            role_id=role_id,
            role_name=role_name,
            slug=slug,
            attribute_key=attribute_key,
            attribute_value=attribute_value,
            min_items=min_items,
            message_id=message_id,
            rule_type=rule_type.value,
        )
        try:
            async with session_scope(self._session_factory) as session:
                session.add(row)
                await session.flush()
                await session.refresh(row)
                rule = to_domain(row)
        except IntegrityError as exc:
            raise DuplicateRuleError(
                f"An identical rule already exists for role {role_id}"
            ) from exc

        logger.info(
            "Created rule %s for role %s in guild %s",
            rule.id,
            role_id,
            guild_id,
            extra={"rule_id": rule.id, "guild_id": guild_id},
        )
        return rule

    async def delete(self, rule_id: str, guild_id: str) -> VerificationRule:
        """Delete a rule, refusing to touch rules owned by another guild."""
        pk = _parse_id(rule_id)
        if pk is None:
            raise RuleNotFoundError(f"Rule {rule_id} not found")
        async with session_scope(self._session_factory) as session:
            row = await session.get(VerifierRule, pk)
            if row is None or row.server_id != guild_id:
                raise RuleNotFoundError(f"Rule {rule_id} not found in guild {guild_id}")
            rule = to_domain(row)
            await session.delete(row)

        logger.info(
            "Deleted rule %s from guild %s",
            rule_id,
            guild_id,
            extra={"rule_id": rule_id, "guild_id": guild_id},
        )
        return rule

    async def set_message_id(self, rule_id: str, message_id: str) -> VerificationRule:
        pk = _parse_id(rule_id)
        if pk is None:
            raise RuleNotFoundError(f"Rule {rule_id} not found")
        async with session_scope(self._session_factory) as session:
            row = await session.get(VerifierRule, pk)
            if row is None:
                raise RuleNotFoundError(f"Rule {rule_id} not found")
            row.message_id = message_id
            await session.flush()
            return to_domain(row)

    async def set_legacy_role(
        self, guild_id: str, role_id: str, guild_name: str | None = None
    ) -> VerificationRule:
        async with session_scope(self._session_factory) as session:
            row = await session.get(LegacyServerRole, guild_id)
            if row is None:
                row = LegacyServerRole(id=guild_id, role_id=role_id, name=guild_name)
                session.add(row)
            else:
                row.role_id = role_id
                row.name = guild_name or row.name
        return legacy_pseudo_rule(guild_id, role_id, guild_name)
