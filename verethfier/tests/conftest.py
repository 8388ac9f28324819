"""Shared fixtures for the Verethfier test suite."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from eth_account import Account
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from verethfier.core.cache import MemoryCache
from verethfier.core.config import Settings
from verethfier.models.base import Base
from verethfier.stores.assignments import AssignmentStore
from verethfier.stores.rules import RuleStore
from verethfier.stores.wallets import WalletStore
from verethfier.tests.fakes import FakeClock, FakeOracle, FakePlatform
from verethfier.verification.engine import VerificationEngine
from verethfier.verification.factory import Services, build_services


# ── Doubles ──────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def account():
    """A fresh wallet with a private key for signing."""
    return Account.create()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="test",
        admin_api_key="test-admin-key",
        redis_url="",
        nonce_backend="memory",
        reconcile_in_process=False,
        reconcile_batch_size=1,
        reconcile_batch_delay_seconds=0.5,
        rate_limit_short=(1000, 1),
        rate_limit_medium=(1000, 10),
        rate_limit_long=(1000, 60),
    )


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A throwaway SQLite database per test, schema created from the models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'verethfier.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def rule_store(session_factory) -> RuleStore:
    return RuleStore(session_factory)


@pytest.fixture
def assignment_store(session_factory) -> AssignmentStore:
    return AssignmentStore(session_factory)


@pytest.fixture
def wallet_store(session_factory) -> WalletStore:
    return WalletStore(session_factory)


# ── Services ─────────────────────────────────────────────────────────────────


@pytest.fixture
def engine(rule_store, oracle, wallet_store) -> VerificationEngine:
    return VerificationEngine(rule_store, oracle, wallet_store)


@pytest_asyncio.fixture
async def services(settings, clock, session_factory, oracle, platform) -> AsyncGenerator[Services, None]:
    built = build_services(
        settings,
        clock=clock,
        session_factory=session_factory,
        cache=MemoryCache(clock=clock),
        oracle=oracle,
        platform=platform,
    )
    yield built
    await built.close()
