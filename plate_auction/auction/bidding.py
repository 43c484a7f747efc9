"""Bid acceptance against a live listing."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Sequence

from ..config import DEFAULT_BID_INCREMENTS
from ..lifecycle.fsm import ListingStatus
from ..storage.errors import ConflictError
from ..storage.repository import AuctionRepository
from ..transport.timestamps import ensure_utc, utcnow
from .models import Bid, Listing, format_money, parse_money

logger = logging.getLogger(__name__)

IncrementLadder = Sequence[tuple[Decimal | None, Decimal]]


class BidError(ValueError):
    """Base class for bids rejected by validation."""

    code = "bid_rejected"


class AuctionNotLiveError(BidError):
    code = "auction_not_live"


class InvalidAmountError(BidError):
    code = "invalid_amount"


class BidTooLowError(BidError):
    code = "bid_too_low"

    def __init__(self, minimum: Decimal, increment: Decimal) -> None:
        super().__init__(f"minimum bid is £{format_money(minimum)} (increment £{format_money(increment)})")
        self.minimum = minimum
        self.increment = increment


class BidConflictError(BidError):
    code = "bid_conflict"


def bid_increment(base: Decimal, ladder: IncrementLadder = DEFAULT_BID_INCREMENTS) -> Decimal:
    for below, step in ladder:
        if below is None or base < below:
            return step
    raise ValueError("increment ladder has no unbounded step")


def minimum_bid(base: Decimal, ladder: IncrementLadder = DEFAULT_BID_INCREMENTS) -> Decimal:
    return base + bid_increment(base, ladder)


def bidding_base(listing: Listing) -> Decimal:
    if listing.current_bid is not None:
        return listing.current_bid
    if listing.starting_price is not None:
        return listing.starting_price
    return Decimal("0")


class BidEngine:
    def __init__(
        self,
        repository: AuctionRepository,
        *,
        increments: IncrementLadder = DEFAULT_BID_INCREMENTS,
        commit_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._increments = increments
        self._commit_attempts = max(commit_attempts, 1)
        self._clock = clock

    async def place_bid(
        self,
        listing_id: str,
        bidder_id: str,
        amount: Any,
        *,
        bidder_email: str | None = None,
        now: datetime | None = None,
    ) -> Listing:
        """Validate and record one bid, returning the updated listing.

        The listing version read during validation guards the write, so two
        bids computed against the same base cannot both be accepted: the loser
        is re-validated against the winner's amount.
        """
        for attempt in range(1, self._commit_attempts + 1):
            placed_at = ensure_utc(now) if now else self._clock()
            listing = await self._load_open_listing(listing_id, placed_at)
            value = self._parse_amount(amount)
            base = bidding_base(listing)
            increment = bid_increment(base, self._increments)
            if value < base + increment:
                raise BidTooLowError(base + increment, increment)
            bid = Bid(
                bid_id=uuid.uuid4().hex,
                listing_id=listing_id,
                bidder_id=bidder_id,
                amount=value,
                placed_at=placed_at,
                sequence=listing.bid_count + 1,
                bidder_email=bidder_email,
                lifecycle=listing.lifecycle,
            )
            try:
                return await self._repository.create_bid(
                    bid,
                    listing_patch={"current_bid": value, "bid_count": listing.bid_count + 1},
                    expected_version=listing.version,
                )
            except ConflictError:
                logger.debug(
                    "bid on %s lost a concurrent update (attempt %s)", listing_id, attempt
                )
        raise BidConflictError(f"listing {listing_id} is too busy, please retry")

    async def _load_open_listing(self, listing_id: str, now: datetime) -> Listing:
        try:
            listing = await self._repository.get_listing(listing_id)
        except KeyError as exc:
            raise AuctionNotLiveError("auction is not live") from exc
        if listing.status is not ListingStatus.LIVE:
            raise AuctionNotLiveError("auction is not live")
        if listing.claim_active(now):
            raise AuctionNotLiveError("auction is closing for a buy-now purchase")
        if listing.auction_end is not None and now >= listing.auction_end:
            raise AuctionNotLiveError("auction has ended")
        return listing

    def _parse_amount(self, amount: Any) -> Decimal:
        try:
            value = parse_money(amount)
        except ValueError as exc:
            raise InvalidAmountError("invalid bid amount") from exc
        if value is None or value <= 0:
            raise InvalidAmountError("invalid bid amount")
        return value
