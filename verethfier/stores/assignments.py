"""Persisted role assignments owned by the reconciliation subsystem.

Rows are never deleted. Status only moves forward out of ``active``:
``expired`` and ``revoked`` are terminal, and the store refuses any
transition that would leave them.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verethfier.core.database import session_scope
from verethfier.core.errors import AssignmentStateError
from verethfier.core.types import AssignmentStats, AssignmentStatus, RoleAssignmentRecord
from verethfier.models.assignment import RoleAssignment

logger = logging.getLogger(__name__)


def to_record(row: RoleAssignment) -> RoleAssignmentRecord:
    return RoleAssignmentRecord(
        id=str(row.id),
        user_id=row.user_id,
        guild_id=row.server_id,
        role_id=row.role_id,
        rule_id=str(row.rule_id) if row.rule_id else None,
        address=row.address,
        status=AssignmentStatus(row.status),
        verified_at=row.verified_at,
        last_checked=row.last_checked,
        expires_at=row.expires_at,
        platform_synced=row.platform_synced,
        user_name=row.user_name,
        guild_name=row.server_name,
        role_name=row.role_name,
    )


def _rule_pk(rule_id: str | None) -> uuid.UUID | None:
    """Stored rule reference; the legacy marker and garbage both map to NULL."""
    if not rule_id:
        return None
    try:
        return uuid.UUID(str(rule_id))
    except ValueError:
        return None


class AssignmentStore:
    """SQLAlchemy-backed repository for ``verifier_user_roles``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    async def _load(self, session: AsyncSession, assignment_id: str) -> RoleAssignment:
        try:
            pk = uuid.UUID(str(assignment_id))
        except ValueError:
            pk = None
        row = await session.get(RoleAssignment, pk) if pk else None
        if row is None:
            raise AssignmentStateError(f"Assignment {assignment_id} not found")
        return row

    # ── Writes ───────────────────────────────────────────────────────────

    async def record_grant(
        self,
        user_id: str,
        guild_id: str,
        role_id: str,
        rule_id: str | None,
        address: str,
        now: datetime,
        expires_at: datetime | None = None,
        user_name: str | None = None,
        guild_name: str | None = None,
        role_name: str | None = None,
    ) -> RoleAssignmentRecord:
        """Insert a grant, or refresh the user's existing active grant for the role."""
        stmt = select(RoleAssignment).where(
            RoleAssignment.user_id == user_id,
            RoleAssignment.server_id == guild_id,
            RoleAssignment.role_id == role_id,
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
        )
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                row = RoleAssignment(
                    user_id=user_id,
                    server_id=guild_id,
                    role_id=role_id,
                    status=AssignmentStatus.ACTIVE.value,
                    platform_synced=True,
                )
                session.add(row)
            row.rule_id = _rule_pk(rule_id)
            row.address = address.lower()
            row.verified_at = now
            row.last_checked = now
            row.expires_at = expires_at
            row.user_name = user_name or row.user_name
            row.server_name = guild_name or row.server_name
            row.role_name = role_name or row.role_name
            await session.flush()
            return to_record(row)

    async def mark_checked(
        self,
        assignment_id: str,
        checked_at: datetime,
        expires_at: datetime | None = None,
    ) -> RoleAssignmentRecord:
        async with session_scope(self._session_factory) as session:
            row = await self._load(session, assignment_id)
            if row.status != AssignmentStatus.ACTIVE.value:
                raise AssignmentStateError(
                    f"Assignment {assignment_id} is {row.status}, cannot mark checked"
                )
            row.last_checked = checked_at
            if expires_at is not None:
                row.expires_at = expires_at
            await session.flush()
            return to_record(row)

    async def set_status(
        self,
        assignment_id: str,
        status: AssignmentStatus,
        platform_synced: bool,
        checked_at: datetime | None = None,
    ) -> RoleAssignmentRecord:
        async with session_scope(self._session_factory) as session:
            row = await self._load(session, assignment_id)
            current = AssignmentStatus(row.status)
            if not current.can_transition_to(status):
                raise AssignmentStateError(
                    f"Assignment {assignment_id} cannot move from {current.value} to {status.value}"
                )
            row.status = status.value
            row.platform_synced = platform_synced
            if checked_at is not None:
                row.last_checked = checked_at
            await session.flush()
            return to_record(row)

    async def mark_synced(self, assignment_id: str) -> RoleAssignmentRecord:
        async with session_scope(self._session_factory) as session:
            row = await self._load(session, assignment_id)
            row.platform_synced = True
            await session.flush()
            return to_record(row)

    # ── Reads ────────────────────────────────────────────────────────────

    async def get(self, assignment_id: str) -> RoleAssignmentRecord | None:
        async with session_scope(self._session_factory) as session:
            try:
                row = await self._load(session, assignment_id)
            except AssignmentStateError:
                return None
            return to_record(row)

    async def list_due(
        self, now: datetime, stale_before: datetime
    ) -> list[RoleAssignmentRecord]:
        """Active rows due for a check, plus expired rows still shown on the platform."""
        active_due = and_(
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
            or_(
                RoleAssignment.last_checked.is_(None),
                RoleAssignment.last_checked < stale_before,
                and_(RoleAssignment.expires_at.is_not(None), RoleAssignment.expires_at <= now),
            ),
        )
        unsynced = and_(
            RoleAssignment.status == AssignmentStatus.EXPIRED.value,
            RoleAssignment.platform_synced.is_(False),
        )
        stmt = (
            select(RoleAssignment)
            .where(or_(active_due, unsynced))
            .order_by(RoleAssignment.last_checked.is_not(None), RoleAssignment.last_checked)
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [to_record(r) for r in rows]

    async def list_active_for_user(self, user_id: str) -> list[RoleAssignmentRecord]:
        stmt = select(RoleAssignment).where(
            RoleAssignment.user_id == user_id,
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [to_record(r) for r in rows]

    async def list_for_user(self, user_id: str) -> list[RoleAssignmentRecord]:
        stmt = (
            select(RoleAssignment)
            .where(RoleAssignment.user_id == user_id)
            .order_by(RoleAssignment.verified_at.desc())
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [to_record(r) for r in rows]

    async def list_active_for_rule(self, rule_id: str) -> list[RoleAssignmentRecord]:
        pk = _rule_pk(rule_id)
        if pk is None:
            return []
        stmt = select(RoleAssignment).where(
            RoleAssignment.rule_id == pk,
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [to_record(r) for r in rows]

    async def stats(self, now: datetime, expiring_within: timedelta) -> AssignmentStats:
        counts_stmt = select(RoleAssignment.status, func.count()).group_by(RoleAssignment.status)
        unsynced_stmt = select(func.count()).where(RoleAssignment.platform_synced.is_(False))
        expiring_stmt = select(func.count()).where(
            RoleAssignment.status == AssignmentStatus.ACTIVE.value,
            RoleAssignment.expires_at.is_not(None),
            RoleAssignment.expires_at <= now + expiring_within,
        )
        last_run_stmt = select(func.max(RoleAssignment.last_checked))

        async with session_scope(self._session_factory) as session:
            counts = dict((await session.execute(counts_stmt)).all())
            unsynced = (await session.execute(unsynced_stmt)).scalar_one()
            expiring = (await session.execute(expiring_stmt)).scalar_one()
            last_run = (await session.execute(last_run_stmt)).scalar_one_or_none()

        return AssignmentStats(
            total_active=counts.get(AssignmentStatus.ACTIVE.value, 0),
            total_expired=counts.get(AssignmentStatus.EXPIRED.value, 0),
            total_revoked=counts.get(AssignmentStatus.REVOKED.value, 0),
            pending_platform_sync=unsynced,
            expiring_soon=expiring,
            last_reverification_run=last_run,
        )
