"""Celery tasks — reconciliation sweeps for worker deployments.

Workers run with ``VERETHFIER_RECONCILE_IN_PROCESS=false`` on the API side so
that only the beat schedule drives sweeps.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from verethfier.core.config import get_settings
from verethfier.core.database import reset_engine
from verethfier.pipeline import celery_app
from verethfier.verification.factory import Services, build_services
from verethfier.verification.reconciler import ReconciliationReport

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Helper to run async code in sync Celery tasks."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_services(
    action: Callable[[Services], Awaitable[ReconciliationReport]],
) -> dict[str, Any]:
    # Each task runs on a fresh loop; pooled connections cannot be reused across loops
    reset_engine()
    services = build_services(get_settings())
    try:
        report = await action(services)
        return report.model_dump(mode="json")
    finally:
        await services.close()


@celery_app.task(bind=True, name="verethfier.pipeline.tasks.run_scheduled_reverification")
def run_scheduled_reverification(self) -> dict:
    """Full reconciliation sweep (beat-scheduled)."""
    self.update_state(state="STARTED", meta={"step": "sweeping"})
    try:
        return _run_async(_with_services(lambda s: s.reconciler.run_scheduled_reverification()))
    except Exception as e:
        logger.exception("Reconciliation sweep task failed")
        self.update_state(state="FAILURE", meta={"error": str(e)})
        raise


@celery_app.task(bind=True, name="verethfier.pipeline.tasks.reverify_user")
def reverify_user(self, user_id: str, guild_ids: list[str] | None = None) -> dict:
    try:
        return _run_async(
            _with_services(lambda s: s.reconciler.reverify_user(user_id, guild_ids or []))
        )
    except Exception as e:
        self.update_state(state="FAILURE", meta={"error": str(e), "user_id": user_id})
        raise


@celery_app.task(bind=True, name="verethfier.pipeline.tasks.reverify_rule")
def reverify_rule(self, rule_id: str) -> dict:
    try:
        return _run_async(_with_services(lambda s: s.reconciler.reverify_rule(rule_id)))
    except Exception as e:
        self.update_state(state="FAILURE", meta={"error": str(e), "rule_id": rule_id})
        raise
