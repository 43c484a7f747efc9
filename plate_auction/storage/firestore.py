"""Firestore storage backend leveraging google-cloud-firestore."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore
from google.oauth2 import service_account

from .errors import DuplicateRecordError, apply_patch, check_preconditions


class FirestoreStorage:
    def __init__(
        self,
        *,
        project_id: str,
        listings_collection: str = "listings",
        bids_collection: str = "bids",
        transactions_collection: str = "transactions",
        credentials_path: str | None = None,
    ) -> None:
        if not project_id:
            raise ValueError("project_id required for firestore backend")
        client_kwargs: dict[str, Any] = {"project": project_id}
        if credentials_path:
            client_kwargs["credentials"] = service_account.Credentials.from_service_account_file(
                credentials_path
            )
        self._client = firestore.Client(**client_kwargs)
        self._listings_name = listings_collection
        self._bids_name = bids_collection
        self._transactions_name = transactions_collection

    def _listings(self):
        return self._client.collection(self._listings_name)

    def _bids(self):
        return self._client.collection(self._bids_name)

    def _transactions(self):
        return self._client.collection(self._transactions_name)

    async def _run(self, func: Callable, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    async def create_listing(self, listing: dict[str, Any]) -> dict[str, Any]:
        try:
            await self._run(self._listings().document(listing["listing_id"]).create, listing)
        except AlreadyExists as exc:
            raise DuplicateRecordError(f"listing {listing['listing_id']} already exists") from exc
        return listing

    async def get_listing(self, listing_id: str) -> dict[str, Any]:
        doc = await self._run(self._listings().document(listing_id).get)
        if not doc.exists:
            raise KeyError(f"listing {listing_id} not found")
        return doc.to_dict()

    async def list_listings(
        self,
        statuses: Iterable[str] | None = None,
        limit: int | None = None,
        *,
        unsettled: bool = False,
    ) -> list[dict[str, Any]]:
        query = self._listings()
        if statuses is not None:
            query = query.where(filter=firestore.FieldFilter("status", "in", list(statuses)))
        if unsettled:
            # listing documents always carry the field, null until an outcome is recorded
            query = query.where(filter=firestore.FieldFilter("settlement", "==", None))
        if limit is not None:
            query = query.limit(limit)
        docs = await self._run(lambda: list(query.stream()))
        return [doc.to_dict() for doc in docs]

    def _update_sync(
        self,
        listing_id: str,
        patch: dict[str, Any],
        expected_status: str | None,
        expected_version: int | None,
        bid: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        ref = self._listings().document(listing_id)

        @firestore.transactional
        def _apply(transaction) -> dict[str, Any]:
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise KeyError(f"listing {listing_id} not found")
            current = snapshot.to_dict()
            check_preconditions(
                listing_id,
                current,
                expected_status=expected_status,
                expected_version=expected_version,
            )
            updated = apply_patch(current, patch)
            if bid is not None:
                transaction.create(self._bids().document(bid["bid_id"]), bid)
            transaction.set(ref, updated)
            return updated

        return _apply(self._client.transaction())

    async def update_listing(
        self,
        listing_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        return await self._run(
            self._update_sync, listing_id, patch, expected_status, expected_version
        )

    async def create_bid(
        self,
        bid: dict[str, Any],
        *,
        listing_patch: dict[str, Any],
        expected_version: int,
    ) -> dict[str, Any]:
        return await self._run(
            self._update_sync, bid["listing_id"], listing_patch, None, expected_version, bid
        )

    async def list_bids(self, listing_id: str) -> list[dict[str, Any]]:
        query = self._bids().where(filter=firestore.FieldFilter("listing_id", "==", listing_id))
        docs = await self._run(lambda: list(query.stream()))
        return [doc.to_dict() for doc in docs]

    async def create_transaction(self, record: dict[str, Any]) -> dict[str, Any]:
        try:
            await self._run(
                self._transactions().document(record["transaction_id"]).create, record
            )
        except AlreadyExists as exc:
            raise DuplicateRecordError(
                f"transaction {record['transaction_id']} already exists"
            ) from exc
        return record

    async def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        doc = await self._run(self._transactions().document(transaction_id).get)
        if not doc.exists:
            return None
        return doc.to_dict()

    async def list_transactions(self) -> list[dict[str, Any]]:
        docs = await self._run(lambda: list(self._transactions().stream()))
        return [doc.to_dict() for doc in docs]
