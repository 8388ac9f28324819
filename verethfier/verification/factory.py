"""Wire the verification services together from ``Settings``.

The API (``app.state.services``), the Celery tasks and the CLI all build the
same object graph through ``build_services`` so behaviour does not drift
between entry points.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verethfier.core.cache import KeyValueCache, MemoryCache, build_cache
from verethfier.core.clock import Clock, system_clock
from verethfier.core.config import Settings
from verethfier.core.database import get_session_factory
from verethfier.integrations.discord import DiscordRolePlatform, RolePlatform
from verethfier.integrations.oracle import AssetIndexOracle, OwnershipOracle
from verethfier.stores.assignments import AssignmentStore
from verethfier.stores.rules import RuleStore
from verethfier.stores.wallets import WalletStore
from verethfier.verification.engine import VerificationEngine
from verethfier.verification.flow import VerificationFlow
from verethfier.verification.nonce import NonceAuthority
from verethfier.verification.reconciler import RoleReconciler
from verethfier.verification.scheduler import PeriodicScheduler
from verethfier.verification.signature import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    clock: Clock
    cache: KeyValueCache
    oracle: OwnershipOracle
    platform: RolePlatform
    rules: RuleStore
    assignments: AssignmentStore
    wallets: WalletStore
    nonces: NonceAuthority
    signatures: SignatureVerifier
    engine: VerificationEngine
    reconciler: RoleReconciler
    flow: VerificationFlow
    scheduler: PeriodicScheduler | None = field(default=None)

    async def start_background(self) -> None:
        if isinstance(self.cache, MemoryCache):
            self.cache.start_sweeper()
        if self.settings.reconcile_in_process:
            self.scheduler = PeriodicScheduler(
                "reconciliation",
                self.settings.reconcile_interval_hours * 3600,
                self.reconciler.run_scheduled_reverification,
                clock=self.clock,
            )
            self.scheduler.start()

    async def close(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
            self.scheduler = None
        await self.cache.close()
        await self.platform.close()
        await self.oracle.close()


def build_services(
    settings: Settings,
    *,
    clock: Clock = system_clock,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    cache: KeyValueCache | None = None,
    oracle: OwnershipOracle | None = None,
    platform: RolePlatform | None = None,
) -> Services:
    """Assemble the object graph. Any collaborator can be swapped (tests do)."""
    session_factory = session_factory or get_session_factory()
    cache = cache or build_cache(settings, clock)
    oracle = oracle or AssetIndexOracle.from_settings(settings)
    platform = platform or DiscordRolePlatform.from_settings(settings, clock)

    rules = RuleStore(session_factory)
    assignments = AssignmentStore(session_factory)
    wallets = WalletStore(session_factory)

    nonces = NonceAuthority(cache, expiry_seconds=settings.nonce_expiry_seconds, clock=clock)
    signatures = SignatureVerifier(
        domain_name=settings.eip712_domain_name,
        domain_version=settings.eip712_domain_version,
        chain_id=settings.eip712_chain_id,
        clock=clock,
    )
    engine = VerificationEngine(rules, oracle, wallets)
    reconciler = RoleReconciler(
        engine,
        rules,
        assignments,
        platform,
        wallets=wallets,
        clock=clock,
        batch_size=settings.reconcile_batch_size,
        batch_delay_seconds=settings.reconcile_batch_delay_seconds,
        stale_after_seconds=settings.reconcile_stale_after_seconds,
        item_timeout_seconds=settings.reconcile_item_timeout_seconds,
        grant_new_roles=settings.reconcile_grant_new_roles,
        assignment_ttl_hours=settings.assignment_ttl_hours,
    )
    flow = VerificationFlow(
        nonces,
        signatures,
        engine,
        rules,
        assignments,
        platform,
        oracle,
        wallets=wallets,
        clock=clock,
        assignment_ttl_hours=settings.assignment_ttl_hours,
    )
    logger.debug("Verification services built (nonce backend: %s)", settings.nonce_backend)
    return Services(
        settings=settings,
        clock=clock,
        cache=cache,
        oracle=oracle,
        platform=platform,
        rules=rules,
        assignments=assignments,
        wallets=wallets,
        nonces=nonces,
        signatures=signatures,
        engine=engine,
        reconciler=reconciler,
        flow=flow,
    )
