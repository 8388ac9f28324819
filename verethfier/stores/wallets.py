"""Addresses each user has proven control of."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verethfier.core.database import session_scope
from verethfier.models.assignment import UserWallet

logger = logging.getLogger(__name__)


class WalletStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    async def add_address(
        self,
        user_id: str,
        address: str,
        verified_at: datetime,
        user_name: str | None = None,
    ) -> None:
        """Record (or touch) a verified address for the user."""
        address = address.lower()
        stmt = select(UserWallet).where(UserWallet.user_id == user_id, UserWallet.address == address)
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                session.add(
                    UserWallet(
                        user_id=user_id,
                        address=address,
                        user_name=user_name,
                        last_verified_at=verified_at,
                    )
                )
                logger.info("Linked new wallet %s to user %s", address, user_id,
                            extra={"address": address})
            else:
                row.last_verified_at = verified_at
                row.user_name = user_name or row.user_name

    async def get_addresses(self, user_id: str) -> list[str]:
        """Most recently verified first."""
        stmt = (
            select(UserWallet.address)
            .where(UserWallet.user_id == user_id)
            .order_by(UserWallet.last_verified_at.desc())
        )
        async with session_scope(self._session_factory) as session:
            return list((await session.execute(stmt)).scalars().all())
