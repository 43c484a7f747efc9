"""Operator listing management: creation, lifecycle actions and settlement retry."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from jsonschema import ValidationError

from ..lifecycle.actions import ListingActionError, ListingActions
from ..lifecycle.fsm import ListingStatus
from ..settlement.service import WinnerSettlement, transaction_id_for
from ..storage.repository import AuctionRepository
from ..validation.validator import SchemaRegistry

router = APIRouter(prefix="/admin/listings", tags=["admin"])


def _get_actions(request: Request) -> ListingActions:
    return request.app.state.listing_actions


def _get_repository(request: Request) -> AuctionRepository:
    return request.app.state.repository


def _get_settlement(request: Request) -> WinnerSettlement:
    return request.app.state.settlement


def _get_schemas(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def _action_error(exc: ListingActionError) -> HTTPException:
    code = (
        status.HTTP_422_UNPROCESSABLE_ENTITY
        if exc.reason.startswith("invalid-") and exc.reason != "invalid-transition"
        else status.HTTP_409_CONFLICT
    )
    return HTTPException(status_code=code, detail={"reason": exc.reason, "message": str(exc)})


def _not_found(listing_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"listing {listing_id} not found")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_listing(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(_get_schemas),
    actions: ListingActions = Depends(_get_actions),
) -> dict[str, Any]:
    try:
        schemas.validate("listing_create", payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc
    try:
        listing = await actions.create(payload)
    except ListingActionError as exc:
        raise _action_error(exc) from exc
    return listing.as_dict()


@router.get("")
async def list_listings(
    status_filter: list[str] | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1, le=1000),
    repository: AuctionRepository = Depends(_get_repository),
) -> list[dict[str, Any]]:
    try:
        statuses = [ListingStatus(value) for value in status_filter] if status_filter else None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    listings = await repository.list_listings(statuses, limit)
    return [listing.as_dict() for listing in listings]


@router.get("/{listing_id}")
async def get_listing(
    listing_id: str, repository: AuctionRepository = Depends(_get_repository)
) -> dict[str, Any]:
    try:
        listing = await repository.get_listing(listing_id)
    except KeyError as exc:
        raise _not_found(listing_id) from exc
    bids = await repository.list_bids(listing_id, lifecycle=listing.lifecycle)
    transaction = await repository.get_transaction(transaction_id_for(listing_id))
    return {
        "listing": listing.as_dict(),
        "bids": [bid.to_document() for bid in sorted(bids, key=lambda bid: bid.sequence)],
        "transaction": transaction.to_document() if transaction else None,
    }


@router.post("/{listing_id}/approve")
async def approve_listing(listing_id: str, actions: ListingActions = Depends(_get_actions)) -> dict[str, Any]:
    try:
        listing = await actions.approve(listing_id)
    except KeyError as exc:
        raise _not_found(listing_id) from exc
    except ListingActionError as exc:
        raise _action_error(exc) from exc
    return listing.as_dict()


@router.post("/{listing_id}/reject")
async def reject_listing(
    listing_id: str,
    payload: dict[str, Any] | None = Body(default=None),
    actions: ListingActions = Depends(_get_actions),
) -> dict[str, Any]:
    reason = (payload or {}).get("reason")
    try:
        listing = await actions.reject(listing_id, reason=str(reason) if reason else None)
    except KeyError as exc:
        raise _not_found(listing_id) from exc
    except ListingActionError as exc:
        raise _action_error(exc) from exc
    return listing.as_dict()


@router.post("/{listing_id}/withdraw")
async def withdraw_listing(listing_id: str, actions: ListingActions = Depends(_get_actions)) -> dict[str, Any]:
    try:
        listing = await actions.withdraw(listing_id)
    except KeyError as exc:
        raise _not_found(listing_id) from exc
    except ListingActionError as exc:
        raise _action_error(exc) from exc
    return listing.as_dict()


@router.post("/{listing_id}/relist")
async def relist_listing(listing_id: str, actions: ListingActions = Depends(_get_actions)) -> dict[str, Any]:
    try:
        listing = await actions.relist(listing_id)
    except KeyError as exc:
        raise _not_found(listing_id) from exc
    except ListingActionError as exc:
        raise _action_error(exc) from exc
    return listing.as_dict()


@router.post("/{listing_id}/close-unsold")
async def close_unsold(listing_id: str, actions: ListingActions = Depends(_get_actions)) -> dict[str, Any]:
    try:
        listing = await actions.close_unsold(listing_id)
    except KeyError as exc:
        raise _not_found(listing_id) from exc
    except ListingActionError as exc:
        raise _action_error(exc) from exc
    return listing.as_dict()


@router.post("/{listing_id}/settle")
async def retry_settlement(
    listing_id: str, settlement: WinnerSettlement = Depends(_get_settlement)
) -> dict[str, Any]:
    """Re-run settlement for a completed listing, ignoring any recorded outcome.

    Each forced retry of a recorded decline charges under a fresh idempotency
    key (``winner-charge-<id>-retry-<n>``), so the gateway evaluates the card
    again instead of replaying the stored decline. Retrying a forced attempt
    whose outcome was unknown reuses that attempt's key.
    """
    try:
        outcome = await settlement.settle(listing_id, force=True)
    except KeyError as exc:
        raise _not_found(listing_id) from exc
    return outcome.summary()
