"""Tests for bid validation, the increment ladder and concurrent bid commits."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from plate_auction.auction.bidding import (
    AuctionNotLiveError,
    BidConflictError,
    BidEngine,
    BidTooLowError,
    InvalidAmountError,
    bid_increment,
    minimum_bid,
)
from plate_auction.lifecycle.fsm import ListingStatus
from plate_auction.storage.errors import ConflictError
from plate_auction.storage.in_memory import InMemoryStorage
from plate_auction.storage.repository import AuctionRepository


class BarrierStorage(InMemoryStorage):
    """Holds the first ``parties`` listing reads until all of them have happened."""

    def __init__(self, parties: int) -> None:
        super().__init__()
        self.armed = False
        self._parties = parties
        self._arrived = 0
        self._released = asyncio.Event()

    async def get_listing(self, listing_id):
        doc = await super().get_listing(listing_id)
        if self.armed:
            self._arrived += 1
            if self._arrived >= self._parties:
                self.armed = False
                self._released.set()
            await self._released.wait()
        return doc


class AlwaysConflictingStorage(InMemoryStorage):
    async def create_bid(self, bid, *, listing_patch, expected_version):
        raise ConflictError("version moved")


@pytest.fixture
def engine(repository, clock) -> BidEngine:
    return BidEngine(repository, clock=clock)


class TestIncrementLadder:
    @pytest.mark.parametrize(
        "base,step",
        [
            ("0", "5"),
            ("99.99", "5"),
            ("100", "10"),
            ("499", "10"),
            ("500", "25"),
            ("999", "25"),
            ("1000", "50"),
            ("4999", "50"),
            ("5000", "100"),
            ("10000", "250"),
            ("25000", "500"),
            ("50000", "1000"),
            ("250000", "1000"),
        ],
    )
    def test_step_for_base(self, base, step):
        assert bid_increment(Decimal(base)) == Decimal(step)

    def test_minimum_bid_adds_step(self):
        assert minimum_bid(Decimal("480")) == Decimal("490")
        assert minimum_bid(Decimal("500")) == Decimal("525")


class TestPlaceBid:
    @pytest.mark.asyncio
    async def test_first_bid_measured_from_starting_price(self, engine, repository, make_listing):
        await repository.create_listing(make_listing())
        with pytest.raises(BidTooLowError) as excinfo:
            await engine.place_bid("lst-1", "bidder-a", 105)
        assert excinfo.value.minimum == Decimal("110")

        listing = await engine.place_bid("lst-1", "bidder-a", 110, bidder_email="a@example.com")
        assert listing.current_bid == Decimal("110")
        assert listing.bid_count == 1

        bids = await repository.list_bids("lst-1")
        assert [(bid.bidder_id, bid.amount, bid.sequence) for bid in bids] == [
            ("bidder-a", Decimal("110"), 1)
        ]
        assert bids[0].bidder_email == "a@example.com"

    @pytest.mark.asyncio
    async def test_base_is_zero_without_starting_price(self, engine, repository, make_listing):
        await repository.create_listing(make_listing(starting_price=None))
        with pytest.raises(BidTooLowError) as excinfo:
            await engine.place_bid("lst-1", "bidder-a", "4.99")
        assert excinfo.value.minimum == Decimal("5")
        listing = await engine.place_bid("lst-1", "bidder-a", "5")
        assert listing.current_bid == Decimal("5")

    @pytest.mark.asyncio
    async def test_subsequent_bid_measured_from_current_bid(self, engine, repository, make_listing):
        await repository.create_listing(make_listing(current_bid=Decimal("480"), bid_count=3))
        with pytest.raises(BidTooLowError):
            await engine.place_bid("lst-1", "bidder-b", 489)
        listing = await engine.place_bid("lst-1", "bidder-b", "490.00")
        assert listing.current_bid == Decimal("490")
        assert listing.bid_count == 4

    @pytest.mark.asyncio
    async def test_numeric_string_amount_accepted(self, engine, repository, make_listing):
        await repository.create_listing(make_listing())
        listing = await engine.place_bid("lst-1", "bidder-a", "150.50")
        assert listing.current_bid == Decimal("150.50")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["abc", True, -5, 0, "NaN", float("inf"), None, ""])
    async def test_invalid_amounts_rejected(self, engine, repository, make_listing, amount):
        await repository.create_listing(make_listing())
        with pytest.raises(InvalidAmountError):
            await engine.place_bid("lst-1", "bidder-a", amount)
        assert (await repository.get_listing("lst-1")).bid_count == 0

    @pytest.mark.asyncio
    async def test_listing_must_be_live(self, engine, repository, make_listing):
        await repository.create_listing(make_listing(status=ListingStatus.QUEUED))
        with pytest.raises(AuctionNotLiveError):
            await engine.place_bid("lst-1", "bidder-a", 500)

    @pytest.mark.asyncio
    async def test_liveness_checked_before_amount(self, engine, repository, make_listing):
        await repository.create_listing(make_listing(status=ListingStatus.COMPLETED))
        with pytest.raises(AuctionNotLiveError):
            await engine.place_bid("lst-1", "bidder-a", "abc")

    @pytest.mark.asyncio
    async def test_unknown_listing_is_not_live(self, engine):
        with pytest.raises(AuctionNotLiveError):
            await engine.place_bid("missing", "bidder-a", 500)

    @pytest.mark.asyncio
    async def test_bid_after_auction_end_rejected(self, engine, repository, make_listing, clock):
        await repository.create_listing(make_listing())
        clock.now = datetime(2024, 6, 16, 23, 0, tzinfo=timezone.utc)
        with pytest.raises(AuctionNotLiveError):
            await engine.place_bid("lst-1", "bidder-a", 500)

    @pytest.mark.asyncio
    async def test_active_buy_now_claim_blocks_bids(self, engine, repository, make_listing):
        claim = {"buyer_id": "buyer-1", "expires_at": "2024-06-12T12:10:00Z"}
        await repository.create_listing(make_listing(buy_now_claim=claim))
        with pytest.raises(AuctionNotLiveError):
            await engine.place_bid("lst-1", "bidder-a", 500)

    @pytest.mark.asyncio
    async def test_expired_buy_now_claim_does_not_block(self, engine, repository, make_listing):
        claim = {"buyer_id": "buyer-1", "expires_at": "2024-06-12T11:00:00Z"}
        await repository.create_listing(make_listing(buy_now_claim=claim))
        listing = await engine.place_bid("lst-1", "bidder-a", 500)
        assert listing.current_bid == Decimal("500")


class TestConcurrentBids:
    @pytest.mark.asyncio
    async def test_equal_racing_bids_accept_exactly_one(self, make_listing, clock):
        storage = BarrierStorage(parties=2)
        repository = AuctionRepository(storage)
        engine = BidEngine(repository, clock=clock)
        await repository.create_listing(make_listing())
        storage.armed = True

        results = await asyncio.gather(
            engine.place_bid("lst-1", "bidder-a", 110),
            engine.place_bid("lst-1", "bidder-b", 110),
            return_exceptions=True,
        )

        accepted = [result for result in results if not isinstance(result, Exception)]
        rejected = [result for result in results if isinstance(result, Exception)]
        assert len(accepted) == 1
        assert len(rejected) == 1
        assert isinstance(rejected[0], BidTooLowError)
        assert rejected[0].minimum == Decimal("120")

        listing = await repository.get_listing("lst-1")
        assert listing.current_bid == Decimal("110")
        assert listing.bid_count == 1
        assert len(await repository.list_bids("lst-1")) == 1

    @pytest.mark.asyncio
    async def test_racing_bids_keep_history_strictly_increasing(self, make_listing, clock):
        storage = BarrierStorage(parties=2)
        repository = AuctionRepository(storage)
        engine = BidEngine(repository, clock=clock)
        await repository.create_listing(make_listing())
        storage.armed = True

        results = await asyncio.gather(
            engine.place_bid("lst-1", "bidder-a", 110),
            engine.place_bid("lst-1", "bidder-b", 200),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, Exception):
                assert isinstance(result, BidTooLowError)
        listing = await repository.get_listing("lst-1")
        assert listing.current_bid == Decimal("200")
        bids = sorted(await repository.list_bids("lst-1"), key=lambda bid: bid.sequence)
        assert listing.bid_count == len(bids)
        assert [bid.sequence for bid in bids] == list(range(1, len(bids) + 1))
        amounts = [bid.amount for bid in bids]
        assert amounts == sorted(set(amounts))
        assert amounts[-1] == Decimal("200")

    @pytest.mark.asyncio
    async def test_commit_attempts_exhausted(self, make_listing, clock):
        repository = AuctionRepository(AlwaysConflictingStorage())
        engine = BidEngine(repository, commit_attempts=3, clock=clock)
        await repository.create_listing(make_listing())
        with pytest.raises(BidConflictError):
            await engine.place_bid("lst-1", "bidder-a", 500)
