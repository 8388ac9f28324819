"""Shared enums, constants and value objects used across the service."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ── Reserved values ──────────────────────────────────────────────────────────

WILDCARD = "ALL"
LEGACY_COLLECTION_SLUG = "legacy_collection"
LEGACY_ATTRIBUTE_KEY = "legacy_attribute"
LEGACY_RULE_ID = "LEGACY"

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"


# ── Enums ────────────────────────────────────────────────────────────────────


class RuleType(str, enum.Enum):
    """How a rule is evaluated against the ownership oracle."""

    LEGACY = "legacy"
    MODERN = "modern"
    UNKNOWN = "unknown"
    ERROR = "error"


class AssignmentStatus(str, enum.Enum):
    """Lifecycle of a persisted role grant. Expired and revoked are terminal."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def is_terminal(self) -> bool:
        return self is not AssignmentStatus.ACTIVE

    def can_transition_to(self, target: AssignmentStatus) -> bool:
        if self is AssignmentStatus.ACTIVE:
            return True
        return target is self


class VerdictErrorCode(str, enum.Enum):
    """Machine-readable reason attached to a failed verdict."""

    RULE_NOT_FOUND = "rule_not_found"
    UNCLASSIFIABLE_RULE = "unclassifiable_rule"
    INVALID_MIN_ITEMS = "invalid_min_items"
    OWNERSHIP_QUERY_FAILED = "ownership_query_failed"
    STORE_ERROR = "store_error"
    NO_ADDRESSES = "no_addresses"


# ── Rules and assets ─────────────────────────────────────────────────────────


class Asset(BaseModel):
    """One asset held by an address, as reported by the asset index."""

    slug: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("attributes", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return v or {}


class VerificationRule(BaseModel):
    """One way to earn one role in one guild."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    guild_id: str
    role_id: str
    channel_id: str | None = None
    slug: str | None = WILDCARD
    attribute_key: str | None = WILDCARD
    attribute_value: str | None = WILDCARD
    min_items: int | None = 1
    message_id: str | None = None
    rule_type: RuleType | None = None

    # Display-only fields, never used for matching
    guild_name: str | None = None
    channel_name: str | None = None
    role_name: str | None = None

    def describe(self) -> str:
        """Human-readable requirement, used in "missing assets" messages."""
        if (
            self.rule_type is RuleType.LEGACY
            or self.id == LEGACY_RULE_ID
            or self.slug == LEGACY_COLLECTION_SLUG
        ):
            return "any asset"
        collection = self.slug if self.slug and self.slug != WILDCARD else "any collection"
        parts = [f"{self.min_items or 1} × {collection}"]
        key, value = self.attribute_key, self.attribute_value
        has_key = bool(key) and key != WILDCARD
        has_value = bool(value) and value != WILDCARD
        if has_key and has_value:
            parts.append(f"with {key}={value}")
        elif has_key:
            parts.append(f"with attribute {key}")
        elif has_value:
            parts.append(f"with any attribute equal to {value}")
        return " ".join(parts)


# ── Verdicts ─────────────────────────────────────────────────────────────────


class VerificationDetails(BaseModel):
    collection: str
    attribute_key: str
    attribute_value: str
    min_items: int
    found_assets: int


class VerificationVerdict(BaseModel):
    """Outcome of checking one rule for one address."""

    user_id: str
    rule_id: str
    address: str
    is_valid: bool
    matching_asset_count: int = 0
    rule_type: RuleType = RuleType.UNKNOWN
    error: str | None = None
    error_code: VerdictErrorCode | None = None
    rule: VerificationRule | None = None
    details: VerificationDetails | None = None

    # Multi-wallet checks
    verified_address: str | None = None
    addresses_checked: int | None = None

    @property
    def is_conclusive(self) -> bool:
        """True when the verdict reflects a real count rather than a failure."""
        return self.error is None


class BulkVerificationResult(BaseModel):
    user_id: str
    address: str
    total_rules: int
    valid_rules: list[VerificationRule] = Field(default_factory=list)
    invalid_rules: list[VerificationRule] = Field(default_factory=list)
    matching_asset_counts: dict[str, int] = Field(default_factory=dict)
    results: list[VerificationVerdict] = Field(default_factory=list)
    error: str | None = None
    error_code: VerdictErrorCode | None = None


# ── Signed payload ───────────────────────────────────────────────────────────


class VerificationPayload(BaseModel):
    """Decoded verification request data, as signed by the wallet."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    address: str = Field(pattern=ADDRESS_PATTERN)
    user_id: str = Field(min_length=1)
    user_tag: str = ""
    avatar: str = ""
    discord_id: str = Field(min_length=1)
    discord_name: str = ""
    discord_icon: str = ""
    nonce: str = Field(min_length=1)
    expiry: int = Field(ge=0)
    channel_id: str | None = None


class NonceContext(BaseModel):
    """Correlation data stored alongside a live nonce."""

    nonce: str
    owner_user_id: str
    message_id: str | None = None
    channel_id: str | None = None
    expires_at: float


class VerificationOutcome(BaseModel):
    """Successful verification response body."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    address: str
    assigned_roles: list[str] = Field(default_factory=list)


# ── Assignments ──────────────────────────────────────────────────────────────


class RoleAssignmentRecord(BaseModel):
    """Read model of a persisted role grant."""

    id: str
    user_id: str
    guild_id: str
    role_id: str
    rule_id: str | None = None
    address: str
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    verified_at: datetime | None = None
    last_checked: datetime | None = None
    expires_at: datetime | None = None
    platform_synced: bool = True

    user_name: str | None = None
    guild_name: str | None = None
    role_name: str | None = None

    @property
    def is_legacy(self) -> bool:
        return self.rule_id is None


class AssignmentStats(BaseModel):
    total_active: int = 0
    total_expired: int = 0
    total_revoked: int = 0
    pending_platform_sync: int = 0
    expiring_soon: int = 0
    last_reverification_run: datetime | None = None
