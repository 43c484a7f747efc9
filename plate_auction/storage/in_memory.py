"""In-memory storage backend for listings, bids and transactions."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from copy import deepcopy
from typing import Any, Iterable

from .errors import DuplicateRecordError, apply_patch, check_preconditions


class InMemoryStorage:
    def __init__(self) -> None:
        self._listings: dict[str, dict[str, Any]] = {}
        self._bids: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._transactions: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create_listing(self, listing: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            listing_id = listing["listing_id"]
            if listing_id in self._listings:
                raise DuplicateRecordError(f"listing {listing_id} already exists")
            self._listings[listing_id] = deepcopy(listing)
            return deepcopy(listing)

    async def get_listing(self, listing_id: str) -> dict[str, Any]:
        async with self._lock:
            try:
                return deepcopy(self._listings[listing_id])
            except KeyError as exc:
                raise KeyError(f"listing {listing_id} not found") from exc

    async def list_listings(
        self,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
        *,
        unsettled: bool = False,
    ) -> list[dict[str, Any]]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            matches = [
                deepcopy(listing)
                for listing in self._listings.values()
                if (wanted is None or listing.get("status") in wanted)
                and not (unsettled and listing.get("settlement"))
            ]
        return matches[:limit] if limit is not None else matches

    async def update_listing(
        self,
        listing_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            if listing_id not in self._listings:
                raise KeyError(f"listing {listing_id} not found")
            current = self._listings[listing_id]
            check_preconditions(
                listing_id,
                current,
                expected_status=expected_status,
                expected_version=expected_version,
            )
            self._listings[listing_id] = apply_patch(current, deepcopy(patch))
            return deepcopy(self._listings[listing_id])

    async def create_bid(
        self,
        bid: dict[str, Any],
        *,
        listing_patch: dict[str, Any],
        expected_version: int,
    ) -> dict[str, Any]:
        listing_id = bid["listing_id"]
        async with self._lock:
            if listing_id not in self._listings:
                raise KeyError(f"listing {listing_id} not found")
            current = self._listings[listing_id]
            check_preconditions(listing_id, current, expected_version=expected_version)
            self._bids[listing_id].append(deepcopy(bid))
            self._listings[listing_id] = apply_patch(current, deepcopy(listing_patch))
            return deepcopy(self._listings[listing_id])

    async def list_bids(self, listing_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return [deepcopy(bid) for bid in self._bids.get(listing_id, [])]

    async def create_transaction(self, record: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            transaction_id = record["transaction_id"]
            if transaction_id in self._transactions:
                raise DuplicateRecordError(f"transaction {transaction_id} already exists")
            self._transactions[transaction_id] = deepcopy(record)
            return deepcopy(record)

    async def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        async with self._lock:
            record = self._transactions.get(transaction_id)
            return deepcopy(record) if record else None

    async def list_transactions(self) -> list[dict[str, Any]]:
        async with self._lock:
            return [deepcopy(record) for record in self._transactions.values()]
