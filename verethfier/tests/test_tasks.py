"""Tests for the Celery reconciliation tasks (verethfier/pipeline/tasks.py).

Tasks are called in-process; the service graph is replaced with a stub so
no broker, database or Discord connection is needed.
"""

from __future__ import annotations

import pytest

from verethfier.pipeline import celery_app
from verethfier.pipeline import tasks
from verethfier.tests.fakes import START
from verethfier.verification.reconciler import ReconciliationReport


class _StubReconciler:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def reverify_user(self, user_id, guild_ids):
        self.calls.append(("user", user_id, list(guild_ids)))
        return ReconciliationReport(started_at=START, total=2, verified=1, revoked=1)

    async def reverify_rule(self, rule_id):
        self.calls.append(("rule", rule_id))
        raise RuntimeError("database unavailable")


class _StubServices:
    def __init__(self) -> None:
        self.reconciler = _StubReconciler()
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def stub_services(monkeypatch):
    services = _StubServices()
    monkeypatch.setattr(tasks, "reset_engine", lambda: None)
    monkeypatch.setattr(tasks, "build_services", lambda settings: services)
    return services


class TestRunAsync:
    def test_runs_coroutine_on_fresh_loop(self):
        async def answer():
            return 42

        assert tasks._run_async(answer()) == 42


class TestTasks:
    def test_reverify_user_returns_report(self, stub_services):
        result = tasks.reverify_user("user-1", ["guild-1"])

        assert result["total"] == 2
        assert result["revoked"] == 1
        assert stub_services.reconciler.calls == [("user", "user-1", ["guild-1"])]
        assert stub_services.closed

    def test_failure_propagates_and_closes(self, stub_services, monkeypatch):
        states: list[dict] = []
        monkeypatch.setattr(
            tasks.reverify_rule, "update_state", lambda state, meta: states.append(meta)
        )

        with pytest.raises(RuntimeError, match="database unavailable"):
            tasks.reverify_rule("7")

        assert stub_services.closed
        assert states == [{"error": "database unavailable", "rule_id": "7"}]


class TestBeatSchedule:
    def test_sweep_is_scheduled(self):
        entry = celery_app.conf.beat_schedule["reconciliation-sweep"]
        assert entry["task"] == "verethfier.pipeline.tasks.run_scheduled_reverification"
        assert entry["schedule"] > 0

    def test_tasks_routed_to_reconciliation_queue(self):
        routes = celery_app.conf.task_routes
        assert routes["verethfier.pipeline.tasks.reverify_user"]["queue"] == "reconciliation"
