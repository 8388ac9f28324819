"""Role reconciliation — keeps granted roles in line with current ownership.

A sweep loads every assignment that is due for a check and runs each through
``reconcile_assignment``:

    rule deleted                 → revoke
    verdict inconclusive         → deferred (nothing changes, retried next sweep)
    still qualifies              → last_checked bumped
    no longer qualifies          → role removed, status revoked
    role removal failed          → status expired, platform_synced=False
    expired and unsynced         → role removal retried

Only a conclusive sub-threshold count revokes. An unreachable oracle never
does. Failures are isolated per assignment: one bad record never aborts the
batch, and one batch never aborts the sweep.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta

from pydantic import BaseModel

from verethfier.core.clock import Clock, system_clock
from verethfier.core.errors import RolePlatformError
from verethfier.core.types import (
    LEGACY_RULE_ID,
    AssignmentStats,
    AssignmentStatus,
    RoleAssignmentRecord,
    VerdictErrorCode,
    VerificationVerdict,
)
from verethfier.integrations.discord import RolePlatform
from verethfier.stores.assignments import AssignmentStore
from verethfier.stores.rules import RuleStore, legacy_pseudo_rule
from verethfier.stores.wallets import WalletStore
from verethfier.verification.engine import VerificationEngine

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    VERIFIED = "verified"
    REVOKED = "revoked"
    EXPIRED = "expired"
    DEFERRED = "deferred"
    SYNCED = "synced"
    SKIPPED = "skipped"
    ERROR = "error"


class ReconciliationReport(BaseModel):
    started_at: datetime
    finished_at: datetime | None = None
    total: int = 0
    verified: int = 0
    revoked: int = 0
    expired: int = 0
    deferred: int = 0
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    granted: int = 0
    batches: int = 0
    duration_ms: float = 0.0
    already_running: bool = False

    def tally(self, outcomes: Sequence[Outcome]) -> None:
        counts = Counter(outcomes)
        self.total += len(outcomes)
        self.verified += counts[Outcome.VERIFIED]
        self.revoked += counts[Outcome.REVOKED]
        self.expired += counts[Outcome.EXPIRED]
        self.deferred += counts[Outcome.DEFERRED]
        self.synced += counts[Outcome.SYNCED]
        self.skipped += counts[Outcome.SKIPPED]
        self.errors += counts[Outcome.ERROR]


class ReconcilerStats(AssignmentStats):
    last_sweep: ReconciliationReport | None = None


class RoleReconciler:
    def __init__(
        self,
        engine: VerificationEngine,
        rules: RuleStore,
        assignments: AssignmentStore,
        platform: RolePlatform,
        wallets: WalletStore | None = None,
        clock: Clock = system_clock,
        batch_size: int = 10,
        batch_delay_seconds: float = 1.0,
        stale_after_seconds: int = 3600,
        item_timeout_seconds: float = 30.0,
        grant_new_roles: bool = False,
        assignment_ttl_hours: int | None = None,
    ) -> None:
        self._engine = engine
        self._rules = rules
        self._assignments = assignments
        self._platform = platform
        self._wallets = wallets
        self._clock = clock
        self.batch_size = max(1, batch_size)
        self.batch_delay_seconds = batch_delay_seconds
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.item_timeout_seconds = item_timeout_seconds
        self.grant_new_roles = grant_new_roles
        self.assignment_ttl = (
            timedelta(hours=assignment_ttl_hours) if assignment_ttl_hours else None
        )
        self._sweep_lock = asyncio.Lock()
        self.last_report: ReconciliationReport | None = None

    # ── Sweeps ───────────────────────────────────────────────────────────

    async def run_scheduled_reverification(self) -> ReconciliationReport:
        """Check every due assignment. Overlapping sweeps are skipped, not queued."""
        if self._sweep_lock.locked():
            logger.warning("Reconciliation sweep already running, skipping")
            return ReconciliationReport(started_at=self._clock.now(), already_running=True)

        async with self._sweep_lock:
            now = self._clock.now()
            due = await self._assignments.list_due(now, now - self.stale_after)
            logger.info("Reconciliation sweep starting: %d assignments due", len(due))
            report = await self._process(due)
            self.last_report = report
            logger.info(
                "Reconciliation sweep complete: %d verified, %d revoked, %d expired, "
                "%d deferred, %d errors",
                report.verified,
                report.revoked,
                report.expired,
                report.deferred,
                report.errors,
                extra={"duration_ms": report.duration_ms},
            )
            return report

    async def reverify_user(
        self, user_id: str, guild_ids: Sequence[str] = ()
    ) -> ReconciliationReport:
        """Re-check one user's active grants, optionally granting newly earned roles."""
        active = await self._assignments.list_active_for_user(user_id)
        report = await self._process(active)
        if self.grant_new_roles:
            guilds = {a.guild_id for a in active} | set(guild_ids)
            for guild_id in sorted(guilds):
                report.granted += await self._grant_new(user_id, guild_id)
        logger.info(
            "Re-verified user %s: %d verified, %d revoked, %d granted",
            user_id,
            report.verified,
            report.revoked,
            report.granted,
        )
        return report

    async def reverify_rule(self, rule_id: str) -> ReconciliationReport:
        active = await self._assignments.list_active_for_rule(rule_id)
        report = await self._process(active)
        logger.info(
            "Re-verified rule %s: %d verified, %d revoked",
            rule_id,
            report.verified,
            report.revoked,
            extra={"rule_id": rule_id},
        )
        return report

    async def _process(self, assignments: Sequence[RoleAssignmentRecord]) -> ReconciliationReport:
        report = ReconciliationReport(started_at=self._clock.now())
        start = time.perf_counter()
        for offset in range(0, len(assignments), self.batch_size):
            if offset:
                await self._clock.sleep(self.batch_delay_seconds)
            batch = assignments[offset : offset + self.batch_size]
            outcomes = await asyncio.gather(*(self._guarded(a) for a in batch))
            report.tally(outcomes)
            report.batches += 1
        report.finished_at = self._clock.now()
        report.duration_ms = round((time.perf_counter() - start) * 1000, 1)
        return report

    async def _guarded(self, assignment: RoleAssignmentRecord) -> Outcome:
        try:
            return await asyncio.wait_for(
                self.reconcile_assignment(assignment), timeout=self.item_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                "Reconciling assignment %s timed out after %.1fs",
                assignment.id,
                self.item_timeout_seconds,
                extra={"assignment_id": assignment.id},
            )
        except Exception:
            logger.exception(
                "Reconciling assignment %s failed",
                assignment.id,
                extra={"assignment_id": assignment.id},
            )
        return Outcome.ERROR

    # ── Per assignment ───────────────────────────────────────────────────

    async def reconcile_assignment(self, assignment: RoleAssignmentRecord) -> Outcome:
        if assignment.status is AssignmentStatus.EXPIRED and not assignment.platform_synced:
            return await self._retry_removal(assignment)
        if assignment.status.is_terminal:
            return Outcome.SKIPPED

        verdict = await self._check(assignment)

        if verdict.error_code is VerdictErrorCode.RULE_NOT_FOUND:
            logger.warning(
                "Rule %s for assignment %s no longer exists, revoking",
                assignment.rule_id,
                assignment.id,
                extra={"assignment_id": assignment.id, "rule_id": assignment.rule_id},
            )
            return await self._revoke(assignment)

        if not verdict.is_conclusive:
            logger.warning(
                "Deferring assignment %s: %s",
                assignment.id,
                verdict.error,
                extra={"assignment_id": assignment.id, "rule_id": assignment.rule_id},
            )
            return Outcome.DEFERRED

        if verdict.is_valid:
            now = self._clock.now()
            expires_at = now + self.assignment_ttl if self.assignment_ttl else None
            await self._assignments.mark_checked(assignment.id, now, expires_at)
            return Outcome.VERIFIED

        return await self._revoke(assignment)

    async def _check(self, assignment: RoleAssignmentRecord) -> VerificationVerdict:
        if assignment.is_legacy:
            rule = await self._rules.get_legacy(assignment.guild_id)
            if rule is None:
                rule = legacy_pseudo_rule(assignment.guild_id, assignment.role_id)
            return await self._engine.evaluate_rule(assignment.user_id, rule, assignment.address)

        verdict = await self._engine.verify_user(
            assignment.user_id, assignment.rule_id, assignment.address
        )
        if verdict.is_conclusive and not verdict.is_valid and self._wallets is not None:
            # The grant may be backed by another of the user's wallets. An
            # inconclusive lookup there defers the revocation.
            fallback = await self._engine.verify_user_multi_wallet(
                assignment.user_id, assignment.rule_id
            )
            if fallback.is_valid:
                return fallback
            if not fallback.is_conclusive and fallback.error_code is not VerdictErrorCode.NO_ADDRESSES:
                return fallback
        return verdict

    async def _revoke(self, assignment: RoleAssignmentRecord) -> Outcome:
        now = self._clock.now()
        try:
            await self._platform.remove_role(
                assignment.guild_id, assignment.user_id, assignment.role_id
            )
        except RolePlatformError as exc:
            logger.error(
                "Could not remove role %s from %s, marking expired: %s",
                assignment.role_id,
                assignment.user_id,
                exc.message,
                extra={"assignment_id": assignment.id, "guild_id": assignment.guild_id},
            )
            await self._assignments.set_status(
                assignment.id, AssignmentStatus.EXPIRED, platform_synced=False, checked_at=now
            )
            return Outcome.EXPIRED

        await self._assignments.set_status(
            assignment.id, AssignmentStatus.REVOKED, platform_synced=True, checked_at=now
        )
        logger.info(
            "Revoked role %s from user %s",
            assignment.role_name or assignment.role_id,
            assignment.user_name or assignment.user_id,
            extra={"assignment_id": assignment.id, "guild_id": assignment.guild_id},
        )
        return Outcome.REVOKED

    async def _retry_removal(self, assignment: RoleAssignmentRecord) -> Outcome:
        active = await self._assignments.list_active_for_user(assignment.user_id)
        if any(
            a.guild_id == assignment.guild_id and a.role_id == assignment.role_id for a in active
        ):
            # Re-earned since expiry; the role on the platform is legitimate again
            logger.info(
                "Skipping role removal for assignment %s: role %s is held by an active grant",
                assignment.id,
                assignment.role_id,
                extra={"assignment_id": assignment.id, "guild_id": assignment.guild_id},
            )
            await self._assignments.mark_synced(assignment.id)
            return Outcome.SYNCED
        try:
            await self._platform.remove_role(
                assignment.guild_id, assignment.user_id, assignment.role_id
            )
        except RolePlatformError as exc:
            logger.warning(
                "Role removal retry failed for assignment %s: %s",
                assignment.id,
                exc.message,
                extra={"assignment_id": assignment.id},
            )
            return Outcome.DEFERRED
        await self._assignments.mark_synced(assignment.id)
        return Outcome.SYNCED

    # ── Newly qualifying roles ───────────────────────────────────────────

    async def _grant_new(self, user_id: str, guild_id: str) -> int:
        if self._wallets is None:
            return 0
        addresses = await self._wallets.get_addresses(user_id)
        if not addresses:
            return 0

        held = {
            a.role_id
            for a in await self._assignments.list_active_for_user(user_id)
            if a.guild_id == guild_id
        }
        rules = [
            r for r in await self._rules.list_for_guild(guild_id, include_legacy=True)
            if r.role_id not in held
        ]

        granted = 0
        for rule in rules:
            if rule.role_id in held:
                continue
            for address in addresses:
                verdict = await self._engine.evaluate_rule(user_id, rule, address)
                if not verdict.is_valid:
                    continue
                try:
                    await self._platform.add_role(guild_id, user_id, rule.role_id)
                except RolePlatformError as exc:
                    logger.error("Granting role %s to %s failed: %s", rule.role_id, user_id,
                                 exc.message, extra={"guild_id": guild_id, "rule_id": rule.id})
                    break
                now = self._clock.now()
                await self._assignments.record_grant(
                    user_id=user_id,
                    guild_id=guild_id,
                    role_id=rule.role_id,
                    rule_id=None if rule.id == LEGACY_RULE_ID else rule.id,
                    address=address,
                    now=now,
                    expires_at=now + self.assignment_ttl if self.assignment_ttl else None,
                    guild_name=rule.guild_name,
                    role_name=rule.role_name,
                )
                held.add(rule.role_id)
                granted += 1
                break
        return granted

    # ── Stats ────────────────────────────────────────────────────────────

    async def stats(self, expiring_within: timedelta = timedelta(days=1)) -> ReconcilerStats:
        base = await self._assignments.stats(self._clock.now(), expiring_within)
        return ReconcilerStats(**base.model_dump(), last_sweep=self.last_report)
