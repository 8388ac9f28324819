"""Admin authentication.

Administrative routes (nonce issuance, rule management, reconciliation
triggers) require the ``X-API-Key`` header to match
``VERETHFIER_ADMIN_API_KEY``. The public verification endpoint is
authenticated by the signed payload itself and needs no key.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from verethfier.core.config import Settings

logger = logging.getLogger(__name__)


async def require_admin(
    request: Request,
    x_api_key: str | None = Header(default=None),
) -> None:
    settings: Settings = request.app.state.settings
    if not settings.admin_api_key:
        logger.error("Admin route called but VERETHFIER_ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is not configured",
        )
    if not x_api_key or not hmac.compare_digest(x_api_key.encode(), settings.admin_api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
