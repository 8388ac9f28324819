"""Verification endpoints — signed wallet proofs and nonce management."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from verethfier.api.deps import get_services
from verethfier.api.middleware.auth import require_admin
from verethfier.api.middleware.metrics import roles_granted_total, verifications_total
from verethfier.core.errors import VerethfierError
from verethfier.core.types import NonceContext, VerificationOutcome, VerificationPayload
from verethfier.verification.factory import Services

logger = logging.getLogger(__name__)

router = APIRouter()
legacy_router = APIRouter()


class VerifySignatureRequest(BaseModel):
    data: VerificationPayload
    signature: str = Field(min_length=2, max_length=1024)


class NonceRequest(BaseModel):
    user_id: str = Field(min_length=1)
    message_id: str | None = None
    channel_id: str | None = None


class NonceResponse(BaseModel):
    nonce: str
    expires_in: int


async def _verify(body: VerifySignatureRequest, services: Services) -> VerificationOutcome:
    try:
        outcome = await services.flow.verify_signature_flow(body.data, body.signature)
    except VerethfierError as exc:
        verifications_total.inc((exc.code.lower(),))
        raise
    verifications_total.inc(("success",))
    roles_granted_total.inc(("verification",), len(outcome.assigned_roles))
    return outcome


@legacy_router.post("/verify-signature", response_model=VerificationOutcome)
async def verify_signature_legacy(
    body: VerifySignatureRequest,
    services: Services = Depends(get_services),
) -> VerificationOutcome:
    """Verify a signed proof and grant every role the wallet qualifies for."""
    return await _verify(body, services)


@router.post("/signature", response_model=VerificationOutcome)
async def verify_signature(
    body: VerifySignatureRequest,
    services: Services = Depends(get_services),
) -> VerificationOutcome:
    """Verify a signed proof and grant every role the wallet qualifies for."""
    return await _verify(body, services)


@router.post("/nonce", response_model=NonceResponse, dependencies=[Depends(require_admin)])
async def issue_nonce(
    body: NonceRequest,
    services: Services = Depends(get_services),
) -> NonceResponse:
    """Issue a nonce for a user starting verification (called by the bot)."""
    nonce = await services.nonces.issue(body.user_id, body.message_id, body.channel_id)
    return NonceResponse(nonce=nonce, expires_in=services.settings.nonce_expiry_seconds)


@router.get("/nonce/{user_id}", response_model=NonceContext, dependencies=[Depends(require_admin)])
async def resolve_nonce(
    user_id: str,
    services: Services = Depends(get_services),
) -> NonceContext:
    context = await services.nonces.resolve(user_id)
    if context is None:
        raise HTTPException(status_code=404, detail="No active nonce")
    return context
