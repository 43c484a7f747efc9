"""Operator-driven listing transitions."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from ..auction.models import Listing, parse_money
from ..auction.window import DEFAULT_SCHEDULE, WindowSchedule, upcoming_window
from ..storage.errors import ConflictError, DuplicateRecordError
from ..storage.repository import AuctionRepository
from ..transport.timestamps import format_timestamp, utcnow
from .fsm import ListingEvent, ListingStatus, transition

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class ListingActionError(ValueError):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


def normalize_registration(value: str) -> str:
    registration = _WHITESPACE.sub(" ", value.strip().upper())
    if not registration or len(registration) > 8:
        raise ListingActionError("invalid-registration", f"invalid registration {value!r}")
    return registration


def _price(payload: dict[str, Any], key: str) -> Decimal | None:
    try:
        value = parse_money(payload.get(key))
    except ValueError as exc:
        raise ListingActionError("invalid-price", f"{key} must be numeric") from exc
    if value is not None and value < 0:
        raise ListingActionError("invalid-price", f"{key} must not be negative")
    return value


class ListingActions:
    def __init__(
        self,
        repository: AuctionRepository,
        *,
        schedule: WindowSchedule = DEFAULT_SCHEDULE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._schedule = schedule
        self._clock = clock

    async def create(self, payload: dict[str, Any]) -> Listing:
        """Create a ``pending`` listing awaiting approval."""
        reserve = _price(payload, "reserve_price")
        buy_now = _price(payload, "buy_now_price")
        if buy_now is not None and buy_now > 0 and reserve is not None and buy_now < reserve:
            raise ListingActionError("invalid-price", "buy_now_price must not be below reserve_price")
        listing = Listing(
            listing_id=str(payload.get("listing_id") or uuid.uuid4().hex),
            registration=normalize_registration(str(payload.get("registration") or "")),
            status=ListingStatus.PENDING,
            seller_id=str(payload["seller_id"]),
            seller_email=payload.get("seller_email"),
            reserve_price=reserve,
            starting_price=_price(payload, "starting_price"),
            buy_now_price=buy_now,
            commission_rate=_price(payload, "commission_rate"),
            listing_fee=_price(payload, "listing_fee") or Decimal("0"),
        )
        try:
            return await self._repository.create_listing(listing)
        except DuplicateRecordError as exc:
            raise ListingActionError("duplicate", f"listing {listing.listing_id} already exists") from exc

    async def approve(self, listing_id: str) -> Listing:
        start, end = upcoming_window(self._clock(), self._schedule)
        return await self._apply(
            listing_id, ListingEvent.APPROVE, {"auction_start": start, "auction_end": end}
        )

    async def reject(self, listing_id: str, reason: str | None = None) -> Listing:
        return await self._apply(listing_id, ListingEvent.REJECT, {"rejection_reason": reason})

    async def withdraw(self, listing_id: str) -> Listing:
        listing = await self._repository.get_listing(listing_id)
        if listing.claim_active(self._clock()):
            raise ListingActionError("buy-now-in-progress", "listing is being bought")
        return await self._apply(listing_id, ListingEvent.WITHDRAW, {}, listing=listing)

    async def relist(self, listing_id: str) -> Listing:
        """Start a new lifecycle in the next window with bidding state reset."""
        listing = await self._repository.get_listing(listing_id)
        start, end = upcoming_window(self._clock(), self._schedule)
        patch = {
            "auction_start": start,
            "auction_end": end,
            "current_bid": None,
            "bid_count": 0,
            "lifecycle": listing.lifecycle + 1,
            "settlement": None,
            "buy_now_claim": None,
            "relisted_at": format_timestamp(self._clock()),
        }
        return await self._apply(listing_id, ListingEvent.RELIST, patch, listing=listing)

    async def close_unsold(self, listing_id: str) -> Listing:
        """Operator resolution for a completed listing whose sale cannot go through."""
        listing = await self._repository.get_listing(listing_id)
        record = dict(listing.settlement or {})
        record["closed_by_operator_at"] = format_timestamp(self._clock())
        record.setdefault("outcome", "skipped")
        record.setdefault("reason", "closed-by-operator")
        return await self._apply(
            listing_id, ListingEvent.CLOSE_UNSOLD, {"settlement": record}, listing=listing
        )

    async def _apply(
        self,
        listing_id: str,
        event: ListingEvent,
        patch: dict[str, Any],
        *,
        listing: Listing | None = None,
    ) -> Listing:
        if listing is None:
            listing = await self._repository.get_listing(listing_id)
        try:
            status = transition(listing.status, event)
        except ValueError as exc:
            raise ListingActionError("invalid-transition", str(exc)) from exc
        try:
            updated = await self._repository.update_listing(
                listing_id, {**patch, "status": status}, expected_status=listing.status
            )
        except ConflictError as exc:
            raise ListingActionError("conflict", f"listing {listing_id} changed, please retry") from exc
        logger.info("listing %s: %s -> %s (%s)", listing_id, listing.status.value, status.value, event.value)
        return updated
