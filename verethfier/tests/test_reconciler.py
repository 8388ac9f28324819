"""Tests for role reconciliation (verethfier/verification/reconciler.py).

Covers:
- Revocation when the rule was deleted or ownership dropped
- Inconclusive checks never revoke
- Platform failure → expired + unsynced, then retried removal
- Legacy assignments
- Multi-wallet fallback
- Batching, per-item isolation and overlapping sweeps
- Granting newly earned roles
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from verethfier.core.types import AssignmentStatus
from verethfier.tests.fakes import GUILD, START, USER, asset
from verethfier.verification.reconciler import Outcome, RoleReconciler

ADDRESS = "0x" + "ab" * 20
OTHER = "0x" + "cd" * 20
STALE = START - timedelta(hours=2)


@pytest.fixture
def reconciler(engine, rule_store, assignment_store, platform, wallet_store, clock) -> RoleReconciler:
    return RoleReconciler(
        engine,
        rule_store,
        assignment_store,
        platform,
        wallets=wallet_store,
        clock=clock,
        batch_size=1,
        batch_delay_seconds=1.0,
        stale_after_seconds=3600,
    )


async def _grant(assignment_store, role_id="role-1", rule_id=None, address=ADDRESS, user=USER, at=STALE):
    return await assignment_store.record_grant(user, GUILD, role_id, rule_id, address, at)


class TestReconcileAssignment:
    @pytest.mark.asyncio
    async def test_deleted_rule_is_revoked(self, reconciler, rule_store, assignment_store, platform, oracle):
        rule = await rule_store.create(GUILD, "role-1")
        oracle.give(ADDRESS, asset("punks"))
        record = await _grant(assignment_store, rule_id=rule.id)
        await rule_store.delete(rule.id, GUILD)

        report = await reconciler.run_scheduled_reverification()

        assert report.revoked == 1
        assert (GUILD, USER, "role-1") in platform.removed
        stored = await assignment_store.get(record.id)
        assert stored.status is AssignmentStatus.REVOKED
        assert stored.platform_synced

    @pytest.mark.asyncio
    async def test_still_qualifies(self, reconciler, rule_store, assignment_store, platform, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        oracle.give(ADDRESS, asset("punks"))
        record = await _grant(assignment_store, rule_id=rule.id)

        outcome = await reconciler.reconcile_assignment(record)

        assert outcome is Outcome.VERIFIED
        assert platform.removed == []
        stored = await assignment_store.get(record.id)
        assert stored.status is AssignmentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_ownership_lost_revokes(self, reconciler, rule_store, assignment_store, platform):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        record = await _grant(assignment_store, rule_id=rule.id)

        assert await reconciler.reconcile_assignment(record) is Outcome.REVOKED
        assert (GUILD, USER, "role-1") in platform.removed

    @pytest.mark.asyncio
    async def test_oracle_outage_never_revokes(self, reconciler, rule_store, assignment_store, platform, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        record = await _grant(assignment_store, rule_id=rule.id)
        oracle.down = True

        assert await reconciler.reconcile_assignment(record) is Outcome.DEFERRED
        assert platform.removed == []
        stored = await assignment_store.get(record.id)
        assert stored.status is AssignmentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_platform_failure_marks_expired(self, reconciler, rule_store, assignment_store, platform):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        record = await _grant(assignment_store, rule_id=rule.id)
        platform.fail_remove = True

        assert await reconciler.reconcile_assignment(record) is Outcome.EXPIRED
        stored = await assignment_store.get(record.id)
        assert stored.status is AssignmentStatus.EXPIRED
        assert stored.platform_synced is False

    @pytest.mark.asyncio
    async def test_expired_unsynced_is_retried(self, reconciler, rule_store, assignment_store, platform):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        record = await _grant(assignment_store, rule_id=rule.id)
        platform.fail_remove = True
        await reconciler.run_scheduled_reverification()

        platform.fail_remove = False
        report = await reconciler.run_scheduled_reverification()

        assert report.synced == 1
        stored = await assignment_store.get(record.id)
        assert stored.status is AssignmentStatus.EXPIRED
        assert stored.platform_synced is True

        # Nothing left to do afterwards
        assert (await reconciler.run_scheduled_reverification()).total == 0

    @pytest.mark.asyncio
    async def test_removal_retry_keeps_reearned_role(self, reconciler, rule_store, assignment_store, platform):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        record = await _grant(assignment_store, rule_id=rule.id)
        expired = await assignment_store.set_status(record.id, AssignmentStatus.EXPIRED, platform_synced=False)
        fresh = await _grant(assignment_store, rule_id=rule.id, at=START)
        assert fresh.id != record.id

        assert await reconciler.reconcile_assignment(expired) is Outcome.SYNCED

        assert platform.removed == []
        assert (await assignment_store.get(record.id)).platform_synced is True
        assert (await assignment_store.get(fresh.id)).status is AssignmentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_revoked_is_skipped(self, reconciler, assignment_store):
        record = await _grant(assignment_store)
        revoked = await assignment_store.set_status(record.id, AssignmentStatus.REVOKED, platform_synced=True)
        assert await reconciler.reconcile_assignment(revoked) is Outcome.SKIPPED

    @pytest.mark.asyncio
    async def test_legacy_assignment_uses_legacy_rule(self, reconciler, assignment_store, rule_store, platform, oracle):
        await rule_store.set_legacy_role(GUILD, "legacy-role")
        record = await _grant(assignment_store, role_id="legacy-role")
        oracle.give(ADDRESS, asset("anything"))

        assert await reconciler.reconcile_assignment(record) is Outcome.VERIFIED

        oracle.take_all(ADDRESS)
        assert await reconciler.reconcile_assignment(record) is Outcome.REVOKED
        assert (GUILD, USER, "legacy-role") in platform.removed

    @pytest.mark.asyncio
    async def test_other_wallet_keeps_role(self, reconciler, rule_store, assignment_store, wallet_store, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        await wallet_store.add_address(USER, ADDRESS, START)
        await wallet_store.add_address(USER, OTHER, START - timedelta(days=1))
        oracle.give(OTHER, asset("punks"))
        record = await _grant(assignment_store, rule_id=rule.id)

        assert await reconciler.reconcile_assignment(record) is Outcome.VERIFIED

    @pytest.mark.asyncio
    async def test_other_wallet_outage_defers(self, reconciler, rule_store, assignment_store, wallet_store, platform, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        await wallet_store.add_address(USER, ADDRESS, START)
        await wallet_store.add_address(USER, OTHER, START - timedelta(days=1))
        oracle.failing.add(OTHER)
        record = await _grant(assignment_store, rule_id=rule.id)

        assert await reconciler.reconcile_assignment(record) is Outcome.DEFERRED
        assert platform.removed == []
        assert (await assignment_store.get(record.id)).status is AssignmentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_ttl_extends_expiry(self, engine, rule_store, assignment_store, platform, clock, oracle):
        reconciler = RoleReconciler(
            engine, rule_store, assignment_store, platform, clock=clock, assignment_ttl_hours=24
        )
        rule = await rule_store.create(GUILD, "role-1")
        oracle.give(ADDRESS, asset("punks"))
        record = await _grant(assignment_store, rule_id=rule.id)

        assert await reconciler.reconcile_assignment(record) is Outcome.VERIFIED
        stored = await assignment_store.get(record.id)
        assert stored.expires_at is not None


# ── Sweeps ───────────────────────────────────────────────────────────────


class TestSweep:
    @pytest.mark.asyncio
    async def test_only_due_assignments_are_checked(self, reconciler, rule_store, assignment_store, oracle):
        rule = await rule_store.create(GUILD, "role-1")
        oracle.give(ADDRESS, asset("punks"))
        await _grant(assignment_store, rule_id=rule.id, role_id="role-1", at=STALE)
        await _grant(assignment_store, rule_id=rule.id, role_id="role-2", at=START)

        report = await reconciler.run_scheduled_reverification()
        assert report.total == 1
        assert report.verified == 1

    @pytest.mark.asyncio
    async def test_batches_are_spaced_out(self, reconciler, rule_store, assignment_store, oracle, clock):
        rule = await rule_store.create(GUILD, "role-1")
        oracle.give(ADDRESS, asset("punks"))
        for i in range(3):
            await _grant(assignment_store, rule_id=rule.id, role_id=f"role-{i}")

        report = await reconciler.run_scheduled_reverification()

        assert report.batches == 3
        assert report.verified == 3
        assert clock.sleeps == [1.0, 1.0]
        assert reconciler.last_report is report

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_sweep(self, reconciler, rule_store, assignment_store, oracle, monkeypatch):
        rule = await rule_store.create(GUILD, "role-1")
        oracle.give(ADDRESS, asset("punks"))
        broken = await _grant(assignment_store, rule_id=rule.id, role_id="role-1")
        await _grant(assignment_store, rule_id=rule.id, role_id="role-2")

        original = reconciler.reconcile_assignment

        async def flaky(assignment):
            if assignment.id == broken.id:
                raise RuntimeError("boom")
            return await original(assignment)

        monkeypatch.setattr(reconciler, "reconcile_assignment", flaky)
        report = await reconciler.run_scheduled_reverification()

        assert report.errors == 1
        assert report.verified == 1

    @pytest.mark.asyncio
    async def test_slow_item_times_out(self, reconciler, assignment_store, monkeypatch):
        await _grant(assignment_store)
        reconciler.item_timeout_seconds = 0.01

        async def hang(assignment):
            await asyncio.sleep(10)

        monkeypatch.setattr(reconciler, "reconcile_assignment", hang)
        report = await reconciler.run_scheduled_reverification()
        assert report.errors == 1

    @pytest.mark.asyncio
    async def test_overlapping_sweep_is_skipped(self, reconciler, assignment_store, monkeypatch):
        await _grant(assignment_store)
        release = asyncio.Event()

        async def slow(assignment):
            await release.wait()
            return Outcome.VERIFIED

        monkeypatch.setattr(reconciler, "reconcile_assignment", slow)
        first = asyncio.create_task(reconciler.run_scheduled_reverification())
        for _ in range(50):
            await asyncio.sleep(0)
            if reconciler._sweep_lock.locked():
                break

        second = await reconciler.run_scheduled_reverification()
        release.set()
        done = await first

        assert second.already_running is True
        assert done.verified == 1


# ── Targeted ─────────────────────────────────────────────────────────────


class TestTargeted:
    @pytest.mark.asyncio
    async def test_reverify_rule(self, reconciler, rule_store, assignment_store, platform):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        await _grant(assignment_store, rule_id=rule.id, user="u1")
        await _grant(assignment_store, rule_id=rule.id, user="u2")

        report = await reconciler.reverify_rule(rule.id)
        assert report.revoked == 2
        assert len(platform.removed) == 2

    @pytest.mark.asyncio
    async def test_reverify_user_grants_new_roles(self, reconciler, rule_store, assignment_store, wallet_store, platform, oracle):
        reconciler.grant_new_roles = True
        await rule_store.create(GUILD, "role-new", slug="punks")
        await wallet_store.add_address(USER, ADDRESS, START)
        oracle.give(ADDRESS, asset("punks"))

        report = await reconciler.reverify_user(USER, [GUILD])

        assert report.granted == 1
        assert (GUILD, USER, "role-new") in platform.added
        active = await assignment_store.list_active_for_user(USER)
        assert [a.role_id for a in active] == ["role-new"]

    @pytest.mark.asyncio
    async def test_reverify_user_without_grants(self, reconciler, rule_store, wallet_store, platform, oracle):
        await rule_store.create(GUILD, "role-new", slug="punks")
        await wallet_store.add_address(USER, ADDRESS, START)
        oracle.give(ADDRESS, asset("punks"))

        report = await reconciler.reverify_user(USER, [GUILD])
        assert report.granted == 0
        assert platform.added == []

    @pytest.mark.asyncio
    async def test_reverify_user_oracle_down(self, reconciler, rule_store, assignment_store, wallet_store, platform, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        await wallet_store.add_address(USER, ADDRESS, START)
        record = await _grant(assignment_store, rule_id=rule.id)
        oracle.down = True

        report = await reconciler.reverify_user(USER, [GUILD])

        assert report.deferred == 1
        assert report.revoked == 0
        assert platform.removed == []
        stored = await assignment_store.get(record.id)
        assert stored.status is AssignmentStatus.ACTIVE
        assert stored.last_checked == record.last_checked

    @pytest.mark.asyncio
    async def test_stats(self, reconciler, assignment_store):
        await _grant(assignment_store)
        await reconciler.run_scheduled_reverification()
        stats = await reconciler.stats()
        assert stats.total_active + stats.total_revoked == 1
        assert stats.last_sweep is not None
