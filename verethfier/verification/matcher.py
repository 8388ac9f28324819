"""Pure rule matching against an asset snapshot.

No I/O happens here. The oracle uses ``matching_assets`` to count, the
verification flow uses ``matches`` to prefilter candidate rules before the
engine does the authoritative count.

Wildcards: ``None``, ``""`` and ``"ALL"`` all mean "no constraint".
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from verethfier.core.types import WILDCARD, Asset, VerificationRule


def is_wildcard(value: str | None) -> bool:
    return value is None or value == "" or value == WILDCARD


def normalize_address(address: str) -> str:
    return address.strip().lower()


def key_variants(key: str) -> list[str]:
    """Literal key, Capitalized, lower, UPPER; duplicates dropped, order kept."""
    variants = [key, key[:1].upper() + key[1:], key.lower(), key.upper()]
    seen: list[str] = []
    for variant in variants:
        if variant not in seen:
            seen.append(variant)
    return seen


def _same_value(actual: Any, expected: str) -> bool:
    if actual is None:
        return False
    return str(actual).lower() == expected.lower()


def _filter_by_slug(assets: Iterable[Asset], slug: str | None) -> list[Asset]:
    if is_wildcard(slug):
        return list(assets)
    return [a for a in assets if a.slug == slug]


def _filter_by_any_value(assets: Sequence[Asset], value: str) -> list[Asset]:
    return [
        a for a in assets
        if any(_same_value(v, value) for v in a.attributes.values())
    ]


def _filter_by_key(
    assets: Sequence[Asset],
    key: str,
    value: str | None,
) -> list[Asset]:
    """First key variant that yields a non-empty match set wins."""
    for variant in key_variants(key):
        if is_wildcard(value):
            hits = [a for a in assets if variant in a.attributes]
        else:
            hits = [a for a in assets if _same_value(a.attributes.get(variant), value)]
        if hits:
            return hits
    return []


def matching_assets(
    assets: Iterable[Asset],
    slug: str | None = WILDCARD,
    attribute_key: str | None = WILDCARD,
    attribute_value: str | None = WILDCARD,
) -> list[Asset]:
    """Assets satisfying the slug and attribute criteria.

    A concrete key paired with a wildcard value requires the key to be
    present. A wildcard key paired with a concrete value matches that value
    against every attribute of the asset.
    """
    candidates = _filter_by_slug(assets, slug)
    key_any = is_wildcard(attribute_key)
    value_any = is_wildcard(attribute_value)

    if key_any and value_any:
        return candidates
    if key_any:
        return _filter_by_any_value(candidates, attribute_value)  # type: ignore[arg-type]
    return _filter_by_key(candidates, attribute_key, attribute_value)  # type: ignore[arg-type]


# ── Rule-level check ─────────────────────────────────────────────────────────


def _slug_ok(rule: VerificationRule, assets: Sequence[Asset]) -> bool:
    if is_wildcard(rule.slug):
        return True
    return any(a.slug == rule.slug for a in assets)


def _channel_ok(rule: VerificationRule, context_channel_id: str | None) -> bool:
    if rule.channel_id is None:
        return True
    return rule.channel_id == context_channel_id


def _attribute_ok(rule: VerificationRule, assets: Sequence[Asset]) -> bool:
    key, value = rule.attribute_key, rule.attribute_value
    if not key or is_wildcard(value):
        return True
    if key == WILDCARD:
        return bool(_filter_by_any_value(assets, value))  # type: ignore[arg-type]
    return bool(_filter_by_key(assets, key, value))


def _count_ok(rule: VerificationRule, assets: Sequence[Asset]) -> bool:
    if rule.min_items is None:
        return True
    if rule.min_items < 1:
        return False
    return len(assets) >= rule.min_items


def matches(
    rule: VerificationRule,
    assets: Iterable[Asset],
    context_channel_id: str | None = None,
) -> bool:
    """Whether ``rule`` is satisfied by ``assets`` in the given channel context.

    The four checks (slug, channel, attribute, count) are evaluated
    independently and AND-ed. Note that the count check uses the full
    snapshot, not just the assets that passed the slug or attribute filter;
    the engine's oracle count is the authoritative figure.
    """
    snapshot = list(assets)
    return (
        _slug_ok(rule, snapshot)
        and _channel_ok(rule, context_channel_id)
        and _attribute_ok(rule, snapshot)
        and _count_ok(rule, snapshot)
    )
