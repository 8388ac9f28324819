"""Ownership oracle — read-only view of the on-chain asset index.

An address holds an asset when it is the current owner, or when the asset
sits in marketplace escrow and the address listed it (previous owner).
"""

from __future__ import annotations

import logging
import time

from sqlalchemy import JSON, Column, MetaData, String, Table, and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from verethfier.core.config import Settings
from verethfier.core.database import build_engine
from verethfier.core.errors import OwnershipQueryError
from verethfier.core.types import WILDCARD, Asset
from verethfier.verification.matcher import is_wildcard, matching_assets, normalize_address

logger = logging.getLogger(__name__)


def asset_index_table(name: str = "ethscriptions", metadata: MetaData | None = None) -> Table:
    """Query contract of the external index; the real table has more columns."""
    return Table(
        name,
        metadata or MetaData(),
        Column("hash_id", String, primary_key=True),
        Column("owner", String, index=True),
        Column("prev_owner", String),
        Column("slug", String),
        Column("values", JSON),
    )


class OwnershipOracle:
    """Answers "what does address X hold" and "how many match these criteria"."""

    async def get_assets(self, address: str) -> list[Asset]:
        raise NotImplementedError

    async def count_matching(
        self,
        address: str,
        slug: str | None = WILDCARD,
        attribute_key: str | None = WILDCARD,
        attribute_value: str | None = WILDCARD,
    ) -> int:
        assets = await self.get_assets(address)
        return len(matching_assets(assets, slug, attribute_key, attribute_value))

    async def close(self) -> None:
        return None


class AssetIndexOracle(OwnershipOracle):
    """Oracle backed by a SQL asset index (separate engine, read-only)."""

    def __init__(
        self,
        engine: AsyncEngine,
        marketplace_address: str,
        table_name: str = "ethscriptions",
    ) -> None:
        self._engine = engine
        self._marketplace = normalize_address(marketplace_address)
        self.table = asset_index_table(table_name)

    @classmethod
    def from_settings(cls, settings: Settings) -> AssetIndexOracle:
        return cls(
            build_engine(settings.asset_index_url, pool_size=settings.asset_index_pool_size),
            marketplace_address=settings.marketplace_address,
            table_name=settings.asset_index_table,
        )

    def _held_by(self, address: str):
        t = self.table
        return or_(
            t.c.owner == address,
            and_(t.c.owner == self._marketplace, t.c.prev_owner == address),
        )

    async def _fetch(self, address: str, slug: str | None = None) -> list[Asset]:
        address = normalize_address(address)
        t = self.table
        stmt = select(t.c.slug, t.c["values"]).where(self._held_by(address))
        if not is_wildcard(slug):
            stmt = stmt.where(t.c.slug == slug)

        start = time.perf_counter()
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        except SQLAlchemyError as exc:
            logger.error("Asset index query failed for %s: %s", address, exc,
                         extra={"address": address})
            raise OwnershipQueryError(f"Asset index unavailable: {exc.__class__.__name__}") from exc

        elapsed = (time.perf_counter() - start) * 1000
        logger.debug(
            "Asset index returned %d rows for %s (%.1fms)",
            len(rows),
            address,
            elapsed,
            extra={"address": address, "duration_ms": round(elapsed, 1)},
        )
        try:
            return [Asset(slug=row.slug, attributes=row[1]) for row in rows]
        except ValueError as exc:
            raise OwnershipQueryError(f"Malformed asset record: {exc}") from exc

    async def get_assets(self, address: str) -> list[Asset]:
        return await self._fetch(address)

    async def count_matching(
        self,
        address: str,
        slug: str | None = WILDCARD,
        attribute_key: str | None = WILDCARD,
        attribute_value: str | None = WILDCARD,
    ) -> int:
        assets = await self._fetch(address, slug)
        return len(matching_assets(assets, slug, attribute_key, attribute_value))

    async def close(self) -> None:
        await self._engine.dispose()
