"""Redis storage backend using redis-py asyncio client."""

from __future__ import annotations

from typing import Any, Iterable

import orjson
from redis import asyncio as aioredis
from redis.exceptions import WatchError

from .errors import ConflictError, DuplicateRecordError, apply_patch, check_preconditions


class RedisStorage:
    def __init__(self, *, url: str, prefix: str = "plate-auction") -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")

    def _listing_key(self, listing_id: str) -> str:
        return f"{self._prefix}:listing:{listing_id}"

    def _bids_key(self, listing_id: str) -> str:
        return f"{self._prefix}:bids:{listing_id}"

    def _transaction_key(self, transaction_id: str) -> str:
        return f"{self._prefix}:transaction:{transaction_id}"

    async def _scan(self, pattern: str) -> list[dict[str, Any]]:
        keys: list[bytes] = []
        cursor = 0
        while True:
            cursor, batch = await self._redis.scan(cursor=cursor, match=pattern, count=100)
            keys.extend(batch)
            if cursor == 0:
                break
        if not keys:
            return []
        values = await self._redis.mget(keys)
        return [orjson.loads(value) for value in values if value]

    async def create_listing(self, listing: dict[str, Any]) -> dict[str, Any]:
        created = await self._redis.set(
            self._listing_key(listing["listing_id"]), orjson.dumps(listing), nx=True
        )
        if not created:
            raise DuplicateRecordError(f"listing {listing['listing_id']} already exists")
        return listing

    async def get_listing(self, listing_id: str) -> dict[str, Any]:
        raw = await self._redis.get(self._listing_key(listing_id))
        if raw is None:
            raise KeyError(f"listing {listing_id} not found")
        return orjson.loads(raw)

    async def list_listings(
        self,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
        *,
        unsettled: bool = False,
    ) -> list[dict[str, Any]]:
        wanted = set(statuses) if statuses is not None else None
        listings = [
            listing
            for listing in await self._scan(self._listing_key("*"))
            if (wanted is None or listing.get("status") in wanted)
            and not (unsettled and listing.get("settlement"))
        ]
        return listings[:limit] if limit is not None else listings

    async def _compare_and_set(
        self,
        listing_id: str,
        patch: dict[str, Any],
        expected_status: str | None,
        expected_version: int | None,
        bid: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        key = self._listing_key(listing_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise KeyError(f"listing {listing_id} not found")
                current = orjson.loads(raw)
                check_preconditions(
                    listing_id,
                    current,
                    expected_status=expected_status,
                    expected_version=expected_version,
                )
                updated = apply_patch(current, patch)
                pipe.multi()
                pipe.set(key, orjson.dumps(updated))
                if bid is not None:
                    pipe.rpush(self._bids_key(listing_id), orjson.dumps(bid))
                await pipe.execute()
            except WatchError as exc:
                raise ConflictError(f"listing {listing_id} changed concurrently") from exc
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
        values = await self._redis.lrange(self._bids_key(listing_id), 0, -1)
        return [orjson.loads(value) for value in values]

    async def create_transaction(self, record: dict[str, Any]) -> dict[str, Any]:
        created = await self._redis.set(
            self._transaction_key(record["transaction_id"]), orjson.dumps(record), nx=True
        )
        if not created:
            raise DuplicateRecordError(
                f"transaction {record['transaction_id']} already exists"
            )
        return record

    async def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        raw = await self._redis.get(self._transaction_key(transaction_id))
        if raw is None:
            return None
        return orjson.loads(raw)

    async def list_transactions(self) -> list[dict[str, Any]]:
        return await self._scan(self._transaction_key("*"))
