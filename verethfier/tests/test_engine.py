"""Tests for the verification engine (verethfier/verification/engine.py).

Covers:
- Rule classification (stored discriminant, legacy sentinels, unknown)
- Single-rule verdicts, including the no-assets and attribute-count scenarios
- Error isolation: every failure is an invalid verdict, never an exception
- Bulk and per-guild checks
- Multi-wallet checks
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from verethfier.core.types import (
    LEGACY_RULE_ID,
    RuleType,
    VerdictErrorCode,
    VerificationRule,
)
from verethfier.tests.fakes import GUILD, START, USER, asset
from verethfier.verification.engine import VerificationEngine, classify

ADDRESS = "0x" + "ab" * 20
OTHER = "0x" + "cd" * 20
MISSING_RULE = "00000000-0000-0000-0000-000000000000"


class BrokenRuleStore:
    async def get(self, rule_id):
        raise RuntimeError("connection reset")

    async def list_for_guild(self, guild_id, channel_id=None, include_legacy=False):
        raise RuntimeError("connection reset")


def _rule(**overrides) -> VerificationRule:
    data = {"id": "r1", "guild_id": GUILD, "role_id": "role-1"}
    data.update(overrides)
    return VerificationRule(**data)


# ── Classification ───────────────────────────────────────────────────────


class TestClassify:
    def test_stored_type_wins(self):
        rule = _rule(slug="legacy_collection", rule_type=RuleType.MODERN)
        assert classify(rule) is RuleType.MODERN

    @pytest.mark.parametrize(
        "overrides",
        [
            {"slug": "legacy_collection"},
            {"attribute_key": "legacy_attribute"},
            {"id": LEGACY_RULE_ID},
        ],
    )
    def test_legacy_sentinels(self, overrides):
        assert classify(_rule(**overrides)) is RuleType.LEGACY

    def test_criteria_make_modern(self):
        assert classify(_rule(slug="punks")) is RuleType.MODERN

    def test_no_criteria_is_unknown(self):
        rule = _rule(slug=None, attribute_key=None, attribute_value=None, min_items=None)
        assert classify(rule) is RuleType.UNKNOWN

    def test_exposed_on_engine(self):
        assert VerificationEngine.classify(_rule(slug="punks")) is RuleType.MODERN


# ── Single rule ──────────────────────────────────────────────────────────


class TestVerifyUser:
    @pytest.mark.asyncio
    async def test_wildcard_rule_with_no_assets_fails(self, engine, rule_store):
        rule = await rule_store.create(GUILD, "role-1")
        verdict = await engine.verify_user(USER, rule.id, ADDRESS)
        assert verdict.is_valid is False
        assert verdict.is_conclusive
        assert verdict.matching_asset_count == 0
        assert verdict.rule_type is RuleType.MODERN

    @pytest.mark.asyncio
    async def test_attribute_count_meets_threshold(self, engine, rule_store, oracle):
        rule = await rule_store.create(
            GUILD, "role-1", slug="punks", attribute_key="background",
            attribute_value="blue", min_items=2,
        )
        oracle.give(
            ADDRESS,
            asset("punks", background="blue"),
            asset("punks", background="blue"),
            asset("punks", background="red"),
        )
        verdict = await engine.verify_user(USER, rule.id, ADDRESS)
        assert verdict.is_valid is True
        assert verdict.matching_asset_count == 2
        assert verdict.details is not None
        assert verdict.details.found_assets == 2
        assert verdict.details.min_items == 2

    @pytest.mark.asyncio
    async def test_below_threshold(self, engine, rule_store, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks", min_items=3)
        oracle.give(ADDRESS, asset("punks"), asset("punks"), asset("apes"))
        verdict = await engine.verify_user(USER, rule.id, ADDRESS)
        assert verdict.is_valid is False
        assert verdict.matching_asset_count == 2

    @pytest.mark.asyncio
    async def test_address_is_normalised(self, engine, rule_store, oracle):
        rule = await rule_store.create(GUILD, "role-1")
        oracle.give(ADDRESS, asset("punks"))
        verdict = await engine.verify_user(USER, rule.id, ADDRESS.upper().replace("0X", "0x"))
        assert verdict.is_valid
        assert verdict.address == ADDRESS

    @pytest.mark.asyncio
    async def test_idempotent(self, engine, rule_store, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        oracle.give(ADDRESS, asset("punks"))
        first = await engine.verify_user(USER, rule.id, ADDRESS)
        second = await engine.verify_user(USER, rule.id, ADDRESS)
        assert first.model_dump() == second.model_dump()

    @pytest.mark.asyncio
    async def test_missing_rule(self, engine):
        verdict = await engine.verify_user(USER, MISSING_RULE, ADDRESS)
        assert verdict.is_valid is False
        assert verdict.error_code is VerdictErrorCode.RULE_NOT_FOUND
        assert verdict.rule_type is RuleType.UNKNOWN

    @pytest.mark.asyncio
    async def test_store_failure_becomes_verdict(self, oracle):
        engine = VerificationEngine(BrokenRuleStore(), oracle)
        verdict = await engine.verify_user(USER, MISSING_RULE, ADDRESS)
        assert verdict.is_valid is False
        assert verdict.error_code is VerdictErrorCode.STORE_ERROR
        assert verdict.rule_type is RuleType.ERROR

    @pytest.mark.asyncio
    async def test_oracle_failure_is_inconclusive(self, engine, rule_store, oracle):
        rule = await rule_store.create(GUILD, "role-1")
        oracle.down = True
        verdict = await engine.verify_user(USER, rule.id, ADDRESS)
        assert verdict.is_valid is False
        assert not verdict.is_conclusive
        assert verdict.error_code is VerdictErrorCode.OWNERSHIP_QUERY_FAILED


class TestEvaluateRule:
    @pytest.mark.asyncio
    async def test_legacy_counts_anything(self, engine, oracle):
        rule = _rule(id=LEGACY_RULE_ID, slug="legacy_collection", attribute_key="legacy_attribute")
        oracle.give(ADDRESS, asset("whatever"))
        verdict = await engine.evaluate_rule(USER, rule, ADDRESS)
        assert verdict.is_valid
        assert verdict.rule_type is RuleType.LEGACY
        assert verdict.details.collection == "ALL"

    @pytest.mark.asyncio
    async def test_unclassifiable_rule(self, engine):
        rule = _rule(slug=None, attribute_key=None, attribute_value=None, min_items=None)
        verdict = await engine.evaluate_rule(USER, rule, ADDRESS)
        assert verdict.error_code is VerdictErrorCode.UNCLASSIFIABLE_RULE

    @pytest.mark.asyncio
    async def test_zero_min_items_never_matches(self, engine, oracle):
        oracle.give(ADDRESS, asset("punks"))
        verdict = await engine.evaluate_rule(USER, _rule(min_items=0), ADDRESS)
        assert verdict.is_valid is False
        assert verdict.error_code is VerdictErrorCode.INVALID_MIN_ITEMS
        assert oracle.queries == []


# ── Bulk ─────────────────────────────────────────────────────────────────


class TestBulk:
    @pytest.mark.asyncio
    async def test_bulk_keeps_order_and_isolates_failures(self, engine, rule_store, oracle):
        good = await rule_store.create(GUILD, "role-1", slug="punks")
        bad = await rule_store.create(GUILD, "role-2", slug="apes")
        oracle.give(ADDRESS, asset("punks"))

        result = await engine.verify_user_bulk(USER, [good.id, MISSING_RULE, bad.id], ADDRESS)
        assert result.total_rules == 3
        assert [v.rule_id for v in result.results] == [good.id, MISSING_RULE, bad.id]
        assert [r.id for r in result.valid_rules] == [good.id]
        assert [r.id for r in result.invalid_rules] == [bad.id]
        assert result.matching_asset_counts == {good.id: 1}

    @pytest.mark.asyncio
    async def test_server_check_includes_legacy(self, engine, rule_store, oracle):
        await rule_store.create(GUILD, "role-1", slug="apes")
        await rule_store.set_legacy_role(GUILD, "legacy-role")
        oracle.give(ADDRESS, asset("punks"))

        result = await engine.verify_user_for_server(USER, GUILD, ADDRESS)
        assert result.total_rules == 2
        assert [r.id for r in result.valid_rules] == [LEGACY_RULE_ID]

    @pytest.mark.asyncio
    async def test_server_check_store_failure(self, oracle):
        engine = VerificationEngine(BrokenRuleStore(), oracle)
        result = await engine.verify_user_for_server(USER, GUILD, ADDRESS)
        assert result.total_rules == 0
        assert result.valid_rules == []
        assert result.error_code is VerdictErrorCode.STORE_ERROR
        assert "Could not load rules" in result.error


# ── Multi-wallet ─────────────────────────────────────────────────────────


class TestMultiWallet:
    @pytest.mark.asyncio
    async def test_no_wallets(self, engine, rule_store):
        rule = await rule_store.create(GUILD, "role-1")
        verdict = await engine.verify_user_multi_wallet(USER, rule.id)
        assert verdict.error_code is VerdictErrorCode.NO_ADDRESSES
        assert verdict.addresses_checked == 0

    @pytest.mark.asyncio
    async def test_second_wallet_satisfies(self, engine, rule_store, wallet_store, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        await wallet_store.add_address(USER, ADDRESS, START + timedelta(hours=1))
        await wallet_store.add_address(USER, OTHER, START)
        oracle.give(OTHER, asset("punks"))

        verdict = await engine.verify_user_multi_wallet(USER, rule.id)
        assert verdict.is_valid
        assert verdict.verified_address == OTHER
        assert verdict.addresses_checked == 2

    @pytest.mark.asyncio
    async def test_inconclusive_outranks_failure(self, engine, rule_store, wallet_store, oracle):
        rule = await rule_store.create(GUILD, "role-1", slug="punks")
        await wallet_store.add_address(USER, ADDRESS, START + timedelta(hours=1))
        await wallet_store.add_address(USER, OTHER, START)
        oracle.failing.add(OTHER)

        verdict = await engine.verify_user_multi_wallet(USER, rule.id)
        assert verdict.is_valid is False
        assert not verdict.is_conclusive
        assert verdict.addresses_checked == 2
        assert verdict.verified_address is None
