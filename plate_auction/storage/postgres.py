"""Postgres storage backend leveraging asyncpg."""

from __future__ import annotations

from typing import Any, Iterable

import asyncpg
import orjson

from .errors import DuplicateRecordError, apply_patch, check_preconditions


class PostgresStorage:
    def __init__(self, *, dsn: str | None = None, **connect_kwargs: Any) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._pool: asyncpg.Pool | None = None

    def _encode(self, payload: dict[str, Any]) -> str:
        return orjson.dumps(payload).decode()

    def _decode(self, value: Any) -> dict[str, Any]:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode()
        if isinstance(value, str):
            return orjson.loads(value)
        return value

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS listings (
                        listing_id TEXT PRIMARY KEY,
                        data JSONB NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_listings_status
                    ON listings ((data->>'status'));
                    CREATE TABLE IF NOT EXISTS bids (
                        bid_id TEXT PRIMARY KEY,
                        listing_id TEXT NOT NULL,
                        data JSONB NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_bids_listing ON bids (listing_id);
                    CREATE TABLE IF NOT EXISTS transactions (
                        transaction_id TEXT PRIMARY KEY,
                        data JSONB NOT NULL
                    );
                    """
                )
        return self._pool

    async def create_listing(self, listing: dict[str, Any]) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute(
                    """INSERT INTO listings(listing_id, data) VALUES($1, $2)""",
                    listing["listing_id"],
                    self._encode(listing),
                )
            except asyncpg.UniqueViolationError as exc:
                raise DuplicateRecordError(
                    f"listing {listing['listing_id']} already exists"
                ) from exc
        return listing

    async def get_listing(self, listing_id: str) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT data FROM listings WHERE listing_id=$1""",
                listing_id,
            )
        if not row:
            raise KeyError(f"listing {listing_id} not found")
        return self._decode(row["data"])

    async def list_listings(
        self,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
        *,
        unsettled: bool = False,
    ) -> list[dict[str, Any]]:
        conditions = ["($1::text[] IS NULL OR data->>'status' = ANY($1::text[]))"]
        if unsettled:
            conditions.append("COALESCE(data->'settlement', 'null'::jsonb) = 'null'::jsonb")
        query = (
            f"SELECT data FROM listings WHERE {' AND '.join(conditions)} "
            "ORDER BY listing_id LIMIT $2"
        )
        wanted = list(statuses) if statuses is not None else None
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, wanted, limit)
        return [self._decode(row["data"]) for row in rows]

    async def _compare_and_set(
        self,
        listing_id: str,
        patch: dict[str, Any],
        expected_status: str | None,
        expected_version: int | None,
        bid: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """SELECT data FROM listings WHERE listing_id=$1 FOR UPDATE""",
                    listing_id,
                )
                if not row:
                    raise KeyError(f"listing {listing_id} not found")
                current = self._decode(row["data"])
                check_preconditions(
                    listing_id,
                    current,
                    expected_status=expected_status,
                    expected_version=expected_version,
                )
                updated = apply_patch(current, patch)
                if bid is not None:
                    await conn.execute(
                        """INSERT INTO bids(bid_id, listing_id, data) VALUES($1, $2, $3)""",
                        bid["bid_id"],
                        listing_id,
                        self._encode(bid),
                    )
                await conn.execute(
                    """UPDATE listings SET data=$2 WHERE listing_id=$1""",
                    listing_id,
                    self._encode(updated),
                )
        return updated

    async def update_listing(
        self,
        listing_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        return await self._compare_and_set(listing_id, patch, expected_status, expected_version)

    async def create_bid(
        self,
        bid: dict[str, Any],
        *,
        listing_patch: dict[str, Any],
        expected_version: int,
    ) -> dict[str, Any]:
        return await self._compare_and_set(
            bid["listing_id"], listing_patch, None, expected_version, bid
        )

    async def list_bids(self, listing_id: str) -> list[dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT data FROM bids WHERE listing_id=$1""",
                listing_id,
            )
        return [self._decode(row["data"]) for row in rows]

    async def create_transaction(self, record: dict[str, Any]) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute(
                    """INSERT INTO transactions(transaction_id, data) VALUES($1, $2)""",
                    record["transaction_id"],
                    self._encode(record),
                )
            except asyncpg.UniqueViolationError as exc:
                raise DuplicateRecordError(
                    f"transaction {record['transaction_id']} already exists"
                ) from exc
        return record

    async def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT data FROM transactions WHERE transaction_id=$1""",
                transaction_id,
            )
        if not row:
            return None
        return self._decode(row["data"])

    async def list_transactions(self) -> list[dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT data FROM transactions ORDER BY transaction_id")
        return [self._decode(row["data"]) for row in rows]
