"""Role assignment and reconciliation endpoints (admin)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from verethfier.api.deps import get_services
from verethfier.api.middleware.auth import require_admin
from verethfier.api.middleware.metrics import reconciliation_last_run, reconciliation_outcomes_total
from verethfier.core.types import RoleAssignmentRecord
from verethfier.verification.factory import Services
from verethfier.verification.reconciler import ReconcilerStats, ReconciliationReport

router = APIRouter(dependencies=[Depends(require_admin)])


def _record(report: ReconciliationReport) -> ReconciliationReport:
    for outcome in ("verified", "revoked", "expired", "deferred", "synced", "errors"):
        count = getattr(report, outcome)
        if count:
            reconciliation_outcomes_total.inc((outcome,), count)
    if report.finished_at is not None:
        reconciliation_last_run.set(report.finished_at.timestamp())
    return report


@router.post("/reverify", response_model=ReconciliationReport)
async def run_reverification(services: Services = Depends(get_services)) -> ReconciliationReport:
    """Run a full reconciliation sweep now."""
    return _record(await services.reconciler.run_scheduled_reverification())


@router.post("/reverify/user/{user_id}", response_model=ReconciliationReport)
async def reverify_user(
    user_id: str,
    guild_id: list[str] | None = Query(default=None),
    services: Services = Depends(get_services),
) -> ReconciliationReport:
    return _record(await services.reconciler.reverify_user(user_id, guild_id or []))


@router.post("/reverify/rule/{rule_id}", response_model=ReconciliationReport)
async def reverify_rule(
    rule_id: str,
    services: Services = Depends(get_services),
) -> ReconciliationReport:
    return _record(await services.reconciler.reverify_rule(rule_id))


@router.get("/stats", response_model=ReconcilerStats)
async def assignment_stats(services: Services = Depends(get_services)) -> ReconcilerStats:
    return await services.reconciler.stats()


@router.get("/user/{user_id}", response_model=list[RoleAssignmentRecord])
async def list_user_assignments(
    user_id: str,
    services: Services = Depends(get_services),
) -> list[RoleAssignmentRecord]:
    return await services.assignments.list_for_user(user_id)
