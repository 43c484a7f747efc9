"""Storage backend factory."""

from __future__ import annotations

from typing import Iterable, Protocol

from ..config import ServerConfig
from .errors import ConflictError, DuplicateRecordError
from .firestore import FirestoreStorage
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage
from .redis import RedisStorage

__all__ = [
    "AuctionStorage",
    "ConflictError",
    "DuplicateRecordError",
    "build_storage",
]


class AuctionStorage(Protocol):
    async def create_listing(self, listing: dict) -> dict: ...

    async def get_listing(self, listing_id: str) -> dict: ...

    async def list_listings(
        self,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
        *,
        unsettled: bool = False,
    ) -> list[dict]:
        """Listings in ``statuses``; ``unsettled`` drops those with a recorded settlement."""
        ...

    async def update_listing(
        self,
        listing_id: str,
        patch: dict,
        *,
        expected_status: str | None = None,
        expected_version: int | None = None,
    ) -> dict: ...

    async def create_bid(self, bid: dict, *, listing_patch: dict, expected_version: int) -> dict:
        """Append ``bid`` and apply ``listing_patch`` atomically, guarded by the listing version."""
        ...

    async def list_bids(self, listing_id: str) -> list[dict]: ...

    async def create_transaction(self, record: dict) -> dict: ...

    async def get_transaction(self, transaction_id: str) -> dict | None: ...

    async def list_transactions(self) -> list[dict]: ...


def build_storage(config: ServerConfig) -> AuctionStorage:
    backend = config.store.backend
    options = dict(config.store.options)
    if backend == "in_memory":
        return InMemoryStorage()
    if backend == "redis":
        return RedisStorage(**options)
    if backend == "postgres":
        return PostgresStorage(**options)
    if backend == "firestore":
        return FirestoreStorage(**options)
    raise ValueError(f"unknown storage backend {backend}")
