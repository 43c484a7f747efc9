"""Tests for winner settlement: reserve, winner choice, charging and idempotency."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from plate_auction.lifecycle.fsm import ListingStatus
from plate_auction.payments import ChargeResult
from plate_auction.settlement.service import Outcome, SettlementOutcome, WinnerSettlement, winner_charge_key

UTC = timezone.utc
EARLY = datetime(2024, 6, 12, 10, 0, tzinfo=UTC)
LATE = datetime(2024, 6, 12, 11, 0, tzinfo=UTC)


@pytest.fixture
def settlement(repository, gateway, publisher, clock) -> WinnerSettlement:
    return WinnerSettlement(repository, gateway, publisher, retry_delay_ms=0, clock=clock)


@pytest.fixture
def completed_listing(repository, make_listing, seed_bids):
    async def create(current_bid="7500", reserve=None, bids=None, **overrides):
        listing = make_listing(
            status=ListingStatus.COMPLETED,
            current_bid=Decimal(current_bid) if current_bid is not None else None,
            reserve_price=Decimal(reserve) if reserve is not None else None,
            **overrides,
        )
        await repository.create_listing(listing)
        if bids is None and current_bid is not None:
            bids = [("bidder-a", str(Decimal(current_bid) - 500), EARLY), ("bidder-b", current_bid, LATE)]
        if bids:
            await seed_bids(listing.listing_id, *bids, lifecycle=listing.lifecycle)
        return listing

    return create


class TestSuccessfulSettlement:
    @pytest.mark.asyncio
    async def test_winner_charged_and_listing_sold(
        self, settlement, repository, gateway, publisher, completed_listing
    ):
        await completed_listing(reserve="5000")
        gateway.add_payment_method("bidder-b@example.com")

        outcome = await settlement.settle("lst-1")

        assert outcome.outcome is Outcome.SUCCEEDED
        assert outcome.charged is True
        assert outcome.winner_id == "bidder-b"
        assert outcome.total_charged == Decimal("7580")
        [charge] = gateway.successful_charges
        assert charge.amount_minor == 758000
        assert charge.currency == "gbp"
        assert charge.metadata["listing_id"] == "lst-1"
        assert charge.reference == outcome.charge_reference

        listing = await repository.get_listing("lst-1")
        assert listing.status is ListingStatus.SOLD
        assert listing.sold_price == Decimal("7500")
        assert listing.settlement["outcome"] == "succeeded"

        transaction = await repository.get_transaction("txn-lst-1")
        assert transaction.buyer_id == "bidder-b"
        assert transaction.winning_amount == Decimal("7500")
        assert transaction.commission_rate == Decimal("8")
        assert transaction.commission_amount == Decimal("600")
        assert transaction.seller_payout == Decimal("6900")
        assert transaction.total_charged == Decimal("7580")
        assert transaction.sale_type == "auction"

        events = [event for event, _ in publisher.backend.published]
        assert events == ["settlement.outcome", "listing.sold"]

    @pytest.mark.asyncio
    async def test_reserve_equal_to_bid_is_met(self, settlement, repository, gateway, completed_listing):
        await completed_listing(current_bid="500", reserve="500")
        gateway.add_payment_method("bidder-b@example.com")
        outcome = await settlement.settle("lst-1")
        assert outcome.outcome is Outcome.SUCCEEDED
        assert outcome.total_charged == Decimal("580")

    @pytest.mark.asyncio
    async def test_default_payment_method_preferred(self, settlement, gateway, completed_listing, monkeypatch):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com", "pm_first")
        gateway.add_payment_method("bidder-b@example.com", "pm_default")
        customer = await gateway.find_or_create_customer("bidder-b@example.com")
        monkeypatch.setitem(
            gateway._customers,
            "bidder-b@example.com",
            type(customer)(customer.customer_id, customer.email, "pm_default"),
        )
        charge_spy = AsyncMock(wraps=gateway.charge)
        monkeypatch.setattr(gateway, "charge", charge_spy)

        await settlement.settle("lst-1")

        assert charge_spy.await_args.args[1] == "pm_default"
        assert charge_spy.await_args.args[4] == "winner-charge-lst-1"


class TestSkippedSettlement:
    @pytest.mark.asyncio
    async def test_reserve_not_met(self, settlement, repository, gateway, completed_listing):
        await completed_listing(current_bid="499", reserve="500")
        gateway.add_payment_method("bidder-b@example.com")

        outcome = await settlement.settle("lst-1")

        assert outcome.outcome is Outcome.SKIPPED
        assert outcome.reason == "reserve-not-met"
        assert gateway.charge_calls == 0
        listing = await repository.get_listing("lst-1")
        assert listing.status is ListingStatus.NOT_SOLD
        assert await repository.get_transaction("txn-lst-1") is None

    @pytest.mark.asyncio
    async def test_no_bids(self, settlement, repository, gateway, completed_listing):
        await completed_listing(current_bid=None)
        outcome = await settlement.settle("lst-1")
        assert (outcome.outcome, outcome.reason) == (Outcome.SKIPPED, "no-bids")
        assert gateway.charge_calls == 0
        assert (await repository.get_listing("lst-1")).status is ListingStatus.NOT_SOLD

    @pytest.mark.asyncio
    async def test_missing_bid_history(self, settlement, repository, completed_listing):
        await completed_listing(bids=[])
        outcome = await settlement.settle("lst-1")
        assert outcome.reason == "bid-history-missing"
        listing = await repository.get_listing("lst-1")
        assert listing.status is ListingStatus.COMPLETED
        assert listing.settlement["reason"] == "bid-history-missing"

    @pytest.mark.asyncio
    async def test_no_payment_method(self, settlement, repository, gateway, completed_listing):
        await completed_listing()
        outcome = await settlement.settle("lst-1")
        assert (outcome.outcome, outcome.reason) == (Outcome.SKIPPED, "no-payment-method")
        assert gateway.charge_calls == 0
        assert (await repository.get_listing("lst-1")).status is ListingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_listing_not_completed(self, settlement, repository, make_listing):
        await repository.create_listing(make_listing(status=ListingStatus.LIVE))
        outcome = await settlement.settle("lst-1")
        assert (outcome.outcome, outcome.reason) == (Outcome.SKIPPED, "not-completed")


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_second_settle_is_a_no_op(self, settlement, repository, gateway, completed_listing):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")

        first = await settlement.settle("lst-1")
        second = await settlement.settle("lst-1")

        assert first.outcome is Outcome.SUCCEEDED
        assert (second.outcome, second.reason) == (Outcome.SKIPPED, "already-settled")
        assert second.charge_reference == first.charge_reference
        assert gateway.charge_calls == 1
        assert len(await repository.list_transactions()) == 1

    @pytest.mark.asyncio
    async def test_lost_response_retried_with_same_key(self, settlement, repository, gateway, completed_listing):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        gateway.fail_transiently(1, after_commit=True)

        outcome = await settlement.settle("lst-1")

        assert outcome.outcome is Outcome.SUCCEEDED
        assert gateway.charge_calls == 2
        assert len(gateway.successful_charges) == 1

    @pytest.mark.asyncio
    async def test_unknown_outcome_is_pending_and_not_persisted(
        self, settlement, repository, gateway, completed_listing
    ):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        gateway.fail_transiently(3)

        pending = await settlement.settle("lst-1")

        assert (pending.outcome, pending.reason) == (Outcome.PENDING, "gateway-unavailable")
        listing = await repository.get_listing("lst-1")
        assert listing.status is ListingStatus.COMPLETED
        assert listing.settlement is None
        assert await repository.get_transaction("txn-lst-1") is None

        retried = await settlement.settle("lst-1")
        assert retried.outcome is Outcome.SUCCEEDED
        assert len(gateway.successful_charges) == 1

    @pytest.mark.asyncio
    async def test_relisted_listing_uses_only_its_own_bids(self, settlement, repository, gateway, make_listing, seed_bids):
        listing = make_listing(status=ListingStatus.COMPLETED, current_bid=Decimal("7500"), lifecycle=2)
        await repository.create_listing(listing)
        await seed_bids("lst-1", ("old-bidder", "9000", EARLY), lifecycle=1)
        await seed_bids("lst-1", ("bidder-b", "7500", LATE), lifecycle=2)
        gateway.add_payment_method("bidder-b@example.com")

        outcome = await settlement.settle("lst-1")

        assert outcome.winner_id == "bidder-b"
        assert outcome.winning_amount == Decimal("7500")
        assert winner_charge_key(listing) == "winner-charge-lst-1-2"


class TestFailedCharges:
    @pytest.mark.asyncio
    async def test_decline_recorded_without_transaction(self, settlement, repository, gateway, completed_listing):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        gateway.decline("bidder-b@example.com", "card_declined", "insufficient_funds")

        outcome = await settlement.settle("lst-1")

        assert outcome.outcome is Outcome.FAILED
        assert outcome.reason == "insufficient-funds"
        assert outcome.charged is False
        listing = await repository.get_listing("lst-1")
        assert listing.status is ListingStatus.COMPLETED
        assert listing.settlement["outcome"] == "failed"
        assert await repository.get_transaction("txn-lst-1") is None

    @pytest.mark.asyncio
    async def test_recorded_failure_returned_until_forced(self, settlement, gateway, completed_listing):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        gateway.decline("bidder-b@example.com", "authentication_required")

        first = await settlement.settle("lst-1")
        again = await settlement.settle("lst-1")
        forced = await settlement.settle("lst-1", force=True)

        assert first.reason == "authentication-required"
        assert again.reason == "authentication-required"
        assert gateway.charge_calls == 2
        assert forced.outcome is Outcome.FAILED

    @pytest.mark.asyncio
    async def test_forced_retry_charges_under_new_key(
        self, settlement, repository, gateway, completed_listing, monkeypatch
    ):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        gateway.decline("bidder-b@example.com")
        spy = AsyncMock(wraps=gateway.charge)
        monkeypatch.setattr(gateway, "charge", spy)
        assert (await settlement.settle("lst-1")).outcome is Outcome.FAILED
        gateway.approve("bidder-b@example.com")

        forced = await settlement.settle("lst-1", force=True)

        assert forced.outcome is Outcome.SUCCEEDED
        assert [call.args[4] for call in spy.await_args_list] == [
            "winner-charge-lst-1",
            "winner-charge-lst-1-retry-1",
        ]
        assert len(gateway.successful_charges) == 1
        assert (await repository.get_listing("lst-1")).status is ListingStatus.SOLD

    @pytest.mark.asyncio
    async def test_unknown_forced_retry_reuses_its_key(
        self, settlement, repository, gateway, completed_listing, monkeypatch
    ):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        gateway.decline("bidder-b@example.com")
        await settlement.settle("lst-1")
        gateway.approve("bidder-b@example.com")
        gateway.fail_transiently(3, after_commit=True)
        spy = AsyncMock(wraps=gateway.charge)
        monkeypatch.setattr(gateway, "charge", spy)

        pending = await settlement.settle("lst-1", force=True)
        forced = await settlement.settle("lst-1", force=True)

        assert pending.outcome is Outcome.PENDING
        assert forced.outcome is Outcome.SUCCEEDED
        assert {call.args[4] for call in spy.await_args_list} == {"winner-charge-lst-1-retry-1"}
        assert len(gateway.successful_charges) == 1

    @pytest.mark.asyncio
    async def test_repeated_forced_declines_count_attempts(
        self, settlement, repository, gateway, completed_listing
    ):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        gateway.decline("bidder-b@example.com")
        await settlement.settle("lst-1")

        await settlement.settle("lst-1", force=True)
        again = await settlement.settle("lst-1", force=True)

        assert again.outcome is Outcome.FAILED
        assert (await repository.get_listing("lst-1")).settlement["attempt"] == 2
        assert gateway.charge_calls == 3


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_divergent_winner_logged(self, settlement, gateway, completed_listing, caplog):
        # the highest bid was placed before a lower one, which bidding never produces
        await completed_listing(
            current_bid="7500",
            bids=[("bidder-b", "7500", EARLY), ("bidder-a", "7000", LATE)],
        )
        gateway.add_payment_method("bidder-b@example.com")

        with caplog.at_level(logging.WARNING, logger="plate_auction.settlement.service"):
            outcome = await settlement.settle("lst-1")

        assert outcome.winner_id == "bidder-b"
        assert any("is not the latest bid" in record.getMessage() for record in caplog.records)

    @pytest.mark.asyncio
    async def test_publisher_failure_does_not_affect_outcome(
        self, settlement, repository, gateway, publisher, completed_listing
    ):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        publisher.backend.publish = AsyncMock(side_effect=RuntimeError("broker down"))

        outcome = await settlement.settle("lst-1")

        assert outcome.outcome is Outcome.SUCCEEDED
        assert (await repository.get_listing("lst-1")).status is ListingStatus.SOLD

    @pytest.mark.asyncio
    async def test_processing_charge_flagged_in_summary(
        self, settlement, repository, gateway, completed_listing, monkeypatch
    ):
        await completed_listing()
        gateway.add_payment_method("bidder-b@example.com")
        processing = ChargeResult(reference="pi_p", status="processing", amount_minor=758000, currency="gbp")
        monkeypatch.setattr(gateway, "charge", AsyncMock(return_value=processing))

        outcome = await settlement.settle("lst-1")

        assert outcome.outcome is Outcome.SUCCEEDED
        assert outcome.summary()["charge_status"] == "processing"
        transaction = await repository.get_transaction("txn-lst-1")
        assert transaction.charge_status == "processing"
        assert (await repository.get_listing("lst-1")).settlement["details"]["charge_status"] == "processing"

    def test_completed_charge_status_left_out_of_summary(self):
        outcome = SettlementOutcome(
            "lst-1", Outcome.SUCCEEDED, charged=True, charge_reference="pi_1",
            details={"charge_status": "succeeded"},
        )
        assert outcome.summary() == {
            "listing_id": "lst-1", "outcome": "succeeded", "charged": True, "charge_reference": "pi_1",
        }
