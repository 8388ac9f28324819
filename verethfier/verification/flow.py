"""End-to-end verification of a signed wallet proof.

Order matters: the nonce is checked before the signature, and consumed
after the signature verifies but before any role is granted. A replayed
request therefore fails at the nonce check, and a failed signature leaves
the nonce usable for a corrected retry within its window.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from verethfier.core.clock import Clock, system_clock
from verethfier.core.errors import NoQualifyingAssetsError, NonceError, RolePlatformError
from verethfier.core.types import (
    LEGACY_RULE_ID,
    Asset,
    NonceContext,
    RuleType,
    VerificationOutcome,
    VerificationPayload,
    VerificationRule,
)
from verethfier.integrations.discord import RolePlatform
from verethfier.integrations.oracle import OwnershipOracle
from verethfier.stores.assignments import AssignmentStore
from verethfier.stores.rules import RuleStore
from verethfier.stores.wallets import WalletStore
from verethfier.verification.engine import VerificationEngine, classify
from verethfier.verification.matcher import matches
from verethfier.verification.nonce import NonceAuthority
from verethfier.verification.signature import SignatureVerifier

logger = logging.getLogger(__name__)


def _missing_message(rules: list[VerificationRule]) -> str:
    if not rules:
        return "No verification rules are configured for this server"
    requirements = "; ".join(sorted({r.describe() for r in rules}))
    return f"Your wallet does not hold the required assets. Needed: {requirements}"


def _prefilter(rule: VerificationRule, snapshot: list[Asset], channel_id: str | None) -> bool:
    if classify(rule) is RuleType.LEGACY:
        # Legacy rules accept any asset; only channel scope and count apply
        rule = rule.model_copy(update={"slug": None, "attribute_key": None, "attribute_value": None})
    return matches(rule, snapshot, channel_id)


class VerificationFlow:
    def __init__(
        self,
        nonces: NonceAuthority,
        signatures: SignatureVerifier,
        engine: VerificationEngine,
        rules: RuleStore,
        assignments: AssignmentStore,
        platform: RolePlatform,
        oracle: OwnershipOracle,
        wallets: WalletStore | None = None,
        clock: Clock = system_clock,
        assignment_ttl_hours: int | None = None,
    ) -> None:
        self._nonces = nonces
        self._signatures = signatures
        self._engine = engine
        self._rules = rules
        self._assignments = assignments
        self._platform = platform
        self._oracle = oracle
        self._wallets = wallets
        self._clock = clock
        self._ttl_hours = assignment_ttl_hours

    async def verify_signature_flow(
        self, payload: VerificationPayload, signature: str
    ) -> VerificationOutcome:
        context = await self._nonces.require(payload.user_id, payload.nonce)
        address = self._signatures.verify(payload, signature)
        if not await self._nonces.consume(payload.user_id):
            # Lost a race with a concurrent attempt using the same nonce
            raise NonceError(f"Nonce for user {payload.user_id} was already used")

        logger.info(
            "Signature verified for user %s in guild %s",
            payload.user_id,
            payload.discord_id,
            extra={"guild_id": payload.discord_id, "address": address},
        )
        await self._record_wallet(payload, address)

        candidates = await self._candidate_rules(payload, context)
        channel_id = context.channel_id or payload.channel_id
        snapshot = await self._oracle.get_assets(address)
        eligible = [r for r in candidates if _prefilter(r, snapshot, channel_id)]

        result = await self._engine.evaluate_rules(payload.user_id, eligible, address)
        if not result.valid_rules:
            raise NoQualifyingAssetsError(_missing_message(candidates))

        assigned = await self._grant(payload, address, result.valid_rules)
        if not assigned:
            raise RolePlatformError("Could not assign any roles, please try again later")

        legacy_only = all(r.id == LEGACY_RULE_ID for r in result.valid_rules)
        return VerificationOutcome(
            message="Verification successful (legacy)" if legacy_only else "Verification successful",
            address=address,
            assigned_roles=assigned,
        )

    async def _record_wallet(self, payload: VerificationPayload, address: str) -> None:
        if self._wallets is None:
            return
        try:
            await self._wallets.add_address(
                payload.user_id, address, self._clock.now(), user_name=payload.user_tag or None
            )
        except Exception:
            logger.exception("Storing wallet for user %s failed", payload.user_id)

    async def _candidate_rules(
        self, payload: VerificationPayload, context: NonceContext
    ) -> list[VerificationRule]:
        guild_id = payload.discord_id
        if context.message_id:
            rules = await self._rules.list_for_message(guild_id, context.message_id)
            if rules:
                return rules
        return await self._rules.list_for_guild(guild_id, include_legacy=True)

    async def _grant(
        self,
        payload: VerificationPayload,
        address: str,
        rules: list[VerificationRule],
    ) -> list[str]:
        assigned: list[str] = []
        seen_roles: set[str] = set()
        now = self._clock.now()
        expires_at = now + timedelta(hours=self._ttl_hours) if self._ttl_hours else None

        for rule in rules:
            if rule.role_id in seen_roles:
                continue
            seen_roles.add(rule.role_id)
            try:
                await self._platform.add_role(payload.discord_id, payload.user_id, rule.role_id)
            except RolePlatformError as exc:
                logger.error(
                    "Granting role %s to %s failed: %s",
                    rule.role_id,
                    payload.user_id,
                    exc.message,
                    extra={"guild_id": payload.discord_id, "rule_id": rule.id},
                )
                continue

            await self._assignments.record_grant(
                user_id=payload.user_id,
                guild_id=payload.discord_id,
                role_id=rule.role_id,
                rule_id=None if rule.id == LEGACY_RULE_ID else rule.id,
                address=address,
                now=now,
                expires_at=expires_at,
                user_name=payload.user_tag or None,
                guild_name=payload.discord_name or rule.guild_name,
                role_name=rule.role_name,
            )
            assigned.append(rule.role_name or rule.role_id)
        return assigned
