"""Typed access to stored auction documents.

Stored documents may carry amounts as numbers or numeric strings and
timestamps as ISO-8601 strings. They are schema-checked and coerced here,
once, so the auction services only ever handle typed records.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from jsonschema import ValidationError

from ..auction.models import Bid, Listing, Transaction, format_money
from ..lifecycle.fsm import ListingStatus
from ..transport.timestamps import format_timestamp
from ..validation.validator import SchemaRegistry, get_schema_registry
from . import AuctionStorage
from .errors import DuplicateRecordError

logger = logging.getLogger(__name__)


class InvalidDocumentError(ValueError):
    """Raised when a stored document does not match its schema."""


def encode_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format_money(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    return value


class AuctionRepository:
    def __init__(self, storage: AuctionStorage, schemas: SchemaRegistry | None = None) -> None:
        self._storage = storage
        self._schemas = schemas or get_schema_registry()

    @property
    def storage(self) -> AuctionStorage:
        return self._storage

    def _validate(self, schema: str, doc: dict[str, Any]) -> None:
        try:
            self._schemas.validate(schema, doc)
        except ValidationError as exc:
            raise InvalidDocumentError(f"{schema} document invalid: {exc.message}") from exc

    def _listing(self, doc: dict[str, Any]) -> Listing:
        self._validate("listing", doc)
        return Listing.from_document(doc)

    async def create_listing(self, listing: Listing) -> Listing:
        doc = listing.to_document()
        self._validate("listing", doc)
        return self._listing(await self._storage.create_listing(doc))

    async def get_listing(self, listing_id: str) -> Listing:
        return self._listing(await self._storage.get_listing(listing_id))

    async def list_listings(
        self,
        statuses: Iterable[ListingStatus] | None = None,
        limit: int | None = None,
        *,
        unsettled: bool = False,
    ) -> list[Listing]:
        wanted = [status.value for status in statuses] if statuses is not None else None
        listings = []
        for doc in await self._storage.list_listings(wanted, limit, unsettled=unsettled):
            try:
                listings.append(self._listing(doc))
            except (ValueError, KeyError):
                logger.error("skipping unreadable listing %s", doc.get("listing_id"), exc_info=True)
        return listings

    async def update_listing(
        self,
        listing_id: str,
        patch: dict[str, Any],
        *,
        expected_status: ListingStatus | None = None,
        expected_version: int | None = None,
    ) -> Listing:
        doc = await self._storage.update_listing(
            listing_id,
            encode_value(patch),
            expected_status=expected_status.value if expected_status else None,
            expected_version=expected_version,
        )
        return self._listing(doc)

    async def create_bid(
        self, bid: Bid, *, listing_patch: dict[str, Any], expected_version: int
    ) -> Listing:
        bid_doc = bid.to_document()
        self._validate("bid", bid_doc)
        doc = await self._storage.create_bid(
            bid_doc,
            listing_patch=encode_value(listing_patch),
            expected_version=expected_version,
        )
        return self._listing(doc)

    async def list_bids(self, listing_id: str, lifecycle: int | None = None) -> list[Bid]:
        """Bids for ``listing_id``, optionally only those of one listing lifecycle."""
        bids = []
        for doc in await self._storage.list_bids(listing_id):
            self._validate("bid", doc)
            bid = Bid.from_document(doc)
            if lifecycle is None or bid.lifecycle == lifecycle:
                bids.append(bid)
        return bids

    async def create_transaction(self, transaction: Transaction) -> tuple[Transaction, bool]:
        """Store ``transaction`` unless one already exists; returns (record, created)."""
        doc = transaction.to_document()
        self._validate("transaction", doc)
        try:
            await self._storage.create_transaction(doc)
        except DuplicateRecordError:
            existing = await self.get_transaction(transaction.transaction_id)
            if existing is None:
                raise
            return existing, False
        return transaction, True

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        doc = await self._storage.get_transaction(transaction_id)
        if doc is None:
            return None
        self._validate("transaction", doc)
        return Transaction.from_document(doc)

    async def list_transactions(self) -> list[Transaction]:
        records = []
        for doc in await self._storage.list_transactions():
            self._validate("transaction", doc)
            records.append(Transaction.from_document(doc))
        return records
