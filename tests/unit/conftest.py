"""Shared fixtures: in-memory collaborators, a controllable clock and listing builders."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from plate_auction.auction.models import Bid, Listing
from plate_auction.lifecycle.fsm import ListingStatus
from plate_auction.notifications.publisher import NotificationPublisher
from plate_auction.payments.in_memory import InMemoryPaymentGateway
from plate_auction.storage.in_memory import InMemoryStorage
from plate_auction.storage.repository import AuctionRepository

# The auction week of Monday 2024-06-10.
WEEK_START = datetime(2024, 6, 10, 1, 0, tzinfo=timezone.utc)
WEEK_END = datetime(2024, 6, 16, 23, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 6, 12, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def repository(storage) -> AuctionRepository:
    return AuctionRepository(storage)


@pytest.fixture
def gateway() -> InMemoryPaymentGateway:
    return InMemoryPaymentGateway()


@pytest.fixture
def publisher() -> NotificationPublisher:
    return NotificationPublisher("local")


@pytest.fixture
def make_listing():
    def factory(listing_id: str = "lst-1", status: ListingStatus = ListingStatus.LIVE, **overrides: Any) -> Listing:
        fields: dict[str, Any] = {
            "listing_id": listing_id,
            "registration": "AB12 CDE",
            "status": status,
            "seller_id": "seller-1",
            "seller_email": "seller@example.com",
            "starting_price": Decimal("100"),
            "auction_start": WEEK_START,
            "auction_end": WEEK_END,
        }
        fields.update(overrides)
        return Listing(**fields)

    return factory


@pytest.fixture
def seed_bids(storage):
    """Write bids straight to storage, bypassing BidEngine validation."""

    async def seed(listing_id: str, *entries: tuple[str, str, datetime], lifecycle: int = 1) -> None:
        for sequence, (bidder, amount, placed_at) in enumerate(entries, start=1):
            bid = Bid(
                bid_id=f"{listing_id}-{lifecycle}-bid-{sequence}",
                listing_id=listing_id,
                bidder_id=bidder,
                bidder_email=f"{bidder}@example.com",
                amount=Decimal(amount),
                placed_at=placed_at,
                sequence=sequence,
                lifecycle=lifecycle,
            )
            current = await storage.get_listing(listing_id)
            await storage.create_bid(
                bid.to_document(),
                listing_patch={},
                expected_version=current["version"],
            )

    return seed
