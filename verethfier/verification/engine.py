"""Verification engine — classifies rules and turns ownership counts into verdicts.

The engine holds no state of its own. It reads rules from the ``RuleStore``,
counts matching assets through the ``OwnershipOracle`` and reports the
outcome as a ``VerificationVerdict``. No exception crosses this boundary:
every failure comes back as an invalid verdict with ``error`` and
``error_code`` set, which callers (the reconciler in particular) use to tell
"does not qualify" apart from "could not check".
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence

from verethfier.core.errors import OwnershipQueryError
from verethfier.core.types import (
    LEGACY_ATTRIBUTE_KEY,
    LEGACY_COLLECTION_SLUG,
    LEGACY_RULE_ID,
    WILDCARD,
    BulkVerificationResult,
    RuleType,
    VerdictErrorCode,
    VerificationDetails,
    VerificationRule,
    VerificationVerdict,
)
from verethfier.integrations.oracle import OwnershipOracle
from verethfier.stores.rules import RuleStore
from verethfier.stores.wallets import WalletStore
from verethfier.verification.matcher import is_wildcard, normalize_address

logger = logging.getLogger(__name__)


def classify(rule: VerificationRule) -> RuleType:
    """Legacy or modern. A stored discriminant always wins over the heuristic."""
    if rule.rule_type is not None:
        return rule.rule_type

    if (
        rule.slug == LEGACY_COLLECTION_SLUG
        or rule.attribute_key == LEGACY_ATTRIBUTE_KEY
        or rule.id == LEGACY_RULE_ID
    ):
        return RuleType.LEGACY

    has_criteria = (
        bool(rule.slug)
        or bool(rule.attribute_key)
        or bool(rule.attribute_value)
        or rule.min_items is not None
    )
    if has_criteria or (rule.slug and rule.id):
        return RuleType.MODERN
    return RuleType.UNKNOWN


class VerificationEngine:
    def __init__(
        self,
        rules: RuleStore,
        oracle: OwnershipOracle,
        wallets: WalletStore | None = None,
    ) -> None:
        self._rules = rules
        self._oracle = oracle
        self._wallets = wallets

    classify = staticmethod(classify)

    # ── Single rule ──────────────────────────────────────────────────────

    async def verify_user(self, user_id: str, rule_id: str, address: str) -> VerificationVerdict:
        address = normalize_address(address)
        try:
            rule = await self._rules.get(str(rule_id))
        except Exception as exc:
            logger.error("Loading rule %s failed: %s", rule_id, exc, extra={"rule_id": str(rule_id)})
            return VerificationVerdict(
                user_id=user_id,
                rule_id=str(rule_id),
                address=address,
                is_valid=False,
                rule_type=RuleType.ERROR,
                error=f"Could not load rule {rule_id}: {exc}",
                error_code=VerdictErrorCode.STORE_ERROR,
            )

        if rule is None:
            return VerificationVerdict(
                user_id=user_id,
                rule_id=str(rule_id),
                address=address,
                is_valid=False,
                rule_type=RuleType.UNKNOWN,
                error=f"Rule {rule_id} not found",
                error_code=VerdictErrorCode.RULE_NOT_FOUND,
            )
        return await self.evaluate_rule(user_id, rule, address)

    async def evaluate_rule(
        self, user_id: str, rule: VerificationRule, address: str
    ) -> VerificationVerdict:
        """Check an already loaded rule against ``address``."""
        address = normalize_address(address)
        rule_type = self.classify(rule)
        verdict = VerificationVerdict(
            user_id=user_id,
            rule_id=rule.id,
            address=address,
            is_valid=False,
            rule_type=rule_type,
            rule=rule,
        )

        if rule_type is RuleType.UNKNOWN:
            verdict.error = f"Rule {rule.id} cannot be classified"
            verdict.error_code = VerdictErrorCode.UNCLASSIFIABLE_RULE
            return verdict

        if rule_type is RuleType.LEGACY:
            slug = attribute_key = attribute_value = WILDCARD
            required = 1
        else:
            slug = rule.slug if not is_wildcard(rule.slug) else WILDCARD
            attribute_key = rule.attribute_key or WILDCARD
            attribute_value = rule.attribute_value or WILDCARD
            required = rule.min_items if rule.min_items is not None else 1
            if required < 1:
                verdict.error = f"Rule {rule.id} has min_items={required}; it can never match"
                verdict.error_code = VerdictErrorCode.INVALID_MIN_ITEMS
                return verdict

        start = time.perf_counter()
        try:
            count = await self._oracle.count_matching(address, slug, attribute_key, attribute_value)
        except OwnershipQueryError as exc:
            verdict.error = exc.message
            verdict.error_code = VerdictErrorCode.OWNERSHIP_QUERY_FAILED
            return verdict
        except Exception as exc:
            logger.exception("Unexpected oracle failure for rule %s", rule.id,
                             extra={"rule_id": rule.id})
            verdict.error = f"Ownership check failed: {exc}"
            verdict.error_code = VerdictErrorCode.OWNERSHIP_QUERY_FAILED
            return verdict

        verdict.matching_asset_count = count
        verdict.is_valid = count >= required
        verdict.details = VerificationDetails(
            collection=slug,
            attribute_key=attribute_key,
            attribute_value=attribute_value,
            min_items=required,
            found_assets=count,
        )
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug(
            "Rule %s %s for %s: found %d, needed %d",
            rule.id,
            "passed" if verdict.is_valid else "failed",
            address,
            count,
            required,
            extra={"rule_id": rule.id, "address": address, "duration_ms": round(elapsed, 1)},
        )
        return verdict

    # ── Bulk ─────────────────────────────────────────────────────────────

    @staticmethod
    def _summarize(
        user_id: str,
        address: str,
        verdicts: Sequence[VerificationVerdict],
    ) -> BulkVerificationResult:
        result = BulkVerificationResult(
            user_id=user_id,
            address=normalize_address(address),
            total_rules=len(verdicts),
            results=list(verdicts),
        )
        for verdict in verdicts:
            if verdict.rule is None:
                continue
            if verdict.is_valid:
                result.valid_rules.append(verdict.rule)
                result.matching_asset_counts[verdict.rule_id] = verdict.matching_asset_count
            else:
                result.invalid_rules.append(verdict.rule)
        return result

    async def verify_user_bulk(
        self, user_id: str, rule_ids: Sequence[str], address: str
    ) -> BulkVerificationResult:
        """Check every rule id concurrently; results keep input order."""
        verdicts = await asyncio.gather(
            *(self.verify_user(user_id, rule_id, address) for rule_id in rule_ids)
        )
        return self._summarize(user_id, address, verdicts)

    async def evaluate_rules(
        self, user_id: str, rules: Sequence[VerificationRule], address: str
    ) -> BulkVerificationResult:
        verdicts = await asyncio.gather(
            *(self.evaluate_rule(user_id, rule, address) for rule in rules)
        )
        return self._summarize(user_id, address, verdicts)

    async def verify_user_for_server(
        self, user_id: str, guild_id: str, address: str
    ) -> BulkVerificationResult:
        """Check the guild's full rule set, legacy role included."""
        try:
            rules = await self._rules.list_for_guild(guild_id, include_legacy=True)
        except Exception as exc:
            logger.error("Loading rules for guild %s failed: %s", guild_id, exc,
                         extra={"guild_id": guild_id})
            return BulkVerificationResult(
                user_id=user_id,
                address=normalize_address(address),
                total_rules=0,
                error=f"Could not load rules: {exc}",
                error_code=VerdictErrorCode.STORE_ERROR,
            )
        return await self.evaluate_rules(user_id, rules, address)

    # ── Multi-wallet ─────────────────────────────────────────────────────

    async def verify_user_multi_wallet(self, user_id: str, rule_id: str) -> VerificationVerdict:
        """Pass if any of the user's verified wallets satisfies the rule."""
        addresses: list[str] = []
        if self._wallets is not None:
            try:
                addresses = await self._wallets.get_addresses(user_id)
            except Exception as exc:
                logger.error("Loading wallets for user %s failed: %s", user_id, exc)
                return VerificationVerdict(
                    user_id=user_id,
                    rule_id=str(rule_id),
                    address="",
                    is_valid=False,
                    rule_type=RuleType.ERROR,
                    error=f"Could not load wallets: {exc}",
                    error_code=VerdictErrorCode.STORE_ERROR,
                )

        if not addresses:
            return VerificationVerdict(
                user_id=user_id,
                rule_id=str(rule_id),
                address="",
                is_valid=False,
                error=f"No verified wallets for user {user_id}",
                error_code=VerdictErrorCode.NO_ADDRESSES,
                addresses_checked=0,
            )

        first = await self.verify_user(user_id, rule_id, addresses[0])
        if first.rule is None:
            first.addresses_checked = 1
            return first

        verdicts = [first]
        for address in addresses[1:]:
            if verdicts[-1].is_valid:
                break
            verdicts.append(await self.evaluate_rule(user_id, first.rule, address))

        checked = len(verdicts)
        winner = next((v for v in verdicts if v.is_valid), None)
        if winner is None:
            # An inconclusive check outranks a conclusive failure
            winner = next((v for v in verdicts if not v.is_conclusive), verdicts[-1])
        winner.addresses_checked = checked
        winner.verified_address = winner.address if winner.is_valid else None
        return winner
