"""Rule management endpoints (admin)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from verethfier.api.deps import get_services
from verethfier.api.middleware.auth import require_admin
from verethfier.core.types import WILDCARD, RuleType, VerificationRule
from verethfier.verification.factory import Services

router = APIRouter(dependencies=[Depends(require_admin)])


class RuleCreate(BaseModel):
    guild_id: str = Field(min_length=1)
    role_id: str = Field(min_length=1)
    channel_id: str | None = None
    slug: str = WILDCARD
    attribute_key: str = WILDCARD
    attribute_value: str = WILDCARD
    min_items: int = 1
    guild_name: str | None = None
    channel_name: str | None = None
    role_name: str | None = None
    message_id: str | None = None
    rule_type: RuleType | None = None


class MessageIdUpdate(BaseModel):
    message_id: str = Field(min_length=1)


class LegacyRoleUpdate(BaseModel):
    role_id: str = Field(min_length=1)
    guild_name: str | None = None


@router.get("/", response_model=list[VerificationRule])
async def list_rules(
    guild_id: str,
    channel_id: str | None = None,
    include_legacy: bool = Query(default=False),
    services: Services = Depends(get_services),
) -> list[VerificationRule]:
    return await services.rules.list_for_guild(guild_id, channel_id, include_legacy)


@router.get("/conflicts", response_model=VerificationRule | None)
async def find_conflicting_rule(
    guild_id: str,
    channel_id: str | None = None,
    slug: str = WILDCARD,
    attribute_key: str = WILDCARD,
    attribute_value: str = WILDCARD,
    min_items: int = 1,
    exclude_role_id: str | None = None,
    services: Services = Depends(get_services),
) -> VerificationRule | None:
    """Existing rule with the same criteria in the same scope, if any."""
    return await services.rules.find_conflicting(
        guild_id, channel_id, slug, attribute_key, attribute_value, min_items, exclude_role_id
    )


@router.post("/", response_model=VerificationRule, status_code=201)
async def create_rule(
    body: RuleCreate,
    services: Services = Depends(get_services),
) -> VerificationRule:
    return await services.rules.create(**body.model_dump())


@router.put("/legacy/{guild_id}", response_model=VerificationRule)
async def set_legacy_role(
    guild_id: str,
    body: LegacyRoleUpdate,
    services: Services = Depends(get_services),
) -> VerificationRule:
    return await services.rules.set_legacy_role(guild_id, body.role_id, body.guild_name)


@router.patch("/{rule_id}/message", response_model=VerificationRule)
async def set_rule_message(
    rule_id: str,
    body: MessageIdUpdate,
    services: Services = Depends(get_services),
) -> VerificationRule:
    """Backfill the verification message a rule is attached to."""
    return await services.rules.set_message_id(rule_id, body.message_id)


@router.delete("/{rule_id}", response_model=VerificationRule)
async def delete_rule(
    rule_id: str,
    guild_id: str,
    services: Services = Depends(get_services),
) -> VerificationRule:
    return await services.rules.delete(rule_id, guild_id)
