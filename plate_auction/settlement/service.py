"""Winner settlement for listings whose auction has closed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from ..auction.models import Listing, Transaction, format_money, parse_money, to_minor_units
from ..auction.selection import latest_bid, select_winner
from ..config import DEFAULT_COMMISSION_TIERS
from ..lifecycle.fsm import ListingEvent, ListingStatus, transition
from ..notifications.publisher import NotificationPublisher
from ..payments import (
    ChargeResult,
    Customer,
    GatewayUnavailableError,
    PaymentError,
    PaymentGateway,
    PaymentMethod,
)
from ..storage.errors import ConflictError
from ..storage.repository import AuctionRepository
from ..transport.timestamps import format_timestamp, utcnow
from .billing import DEFAULT_TRANSFER_FEE, SaleBreakdown, calculate_sale

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    # gateway answer unknown; nothing persisted, retried on the next pass
    PENDING = "pending"
    # unexpected failure (persistence etc.); nothing persisted
    ERROR = "error"


DEFINITIVE_OUTCOMES = {Outcome.SUCCEEDED, Outcome.FAILED, Outcome.SKIPPED}


@dataclass
class SettlementOutcome:
    listing_id: str
    outcome: Outcome
    reason: str | None = None
    charged: bool = False
    charge_reference: str | None = None
    winner_id: str | None = None
    winning_amount: Decimal | None = None
    total_charged: Decimal | None = None
    transaction_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    # forced retries of a recorded outcome, each charged under its own key
    attempt: int = 0

    @property
    def definitive(self) -> bool:
        return self.outcome in DEFINITIVE_OUTCOMES

    def summary(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"listing_id": self.listing_id, "outcome": self.outcome.value}
        if self.reason:
            entry["reason"] = self.reason
        if self.outcome in (Outcome.SUCCEEDED, Outcome.FAILED):
            entry["charged"] = self.charged
        if self.charge_reference:
            entry["charge_reference"] = self.charge_reference
        # accepted charges whose funds have not landed yet, e.g. stripe "processing"
        charge_status = self.details.get("charge_status")
        if self.outcome is Outcome.SUCCEEDED and charge_status and charge_status != "succeeded":
            entry["charge_status"] = charge_status
        return entry

    def to_record(self, settled_at: datetime) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason,
            "charged": self.charged,
            "charge_reference": self.charge_reference,
            "winner_id": self.winner_id,
            "winning_amount": format_money(self.winning_amount),
            "total_charged": format_money(self.total_charged),
            "transaction_id": self.transaction_id,
            "details": self.details,
            "settled_at": format_timestamp(settled_at),
            "attempt": self.attempt,
        }

    @classmethod
    def from_record(cls, listing_id: str, record: dict[str, Any]) -> "SettlementOutcome":
        return cls(
            listing_id=listing_id,
            outcome=Outcome(record["outcome"]),
            reason=record.get("reason"),
            charged=bool(record.get("charged")),
            charge_reference=record.get("charge_reference"),
            winner_id=record.get("winner_id"),
            winning_amount=parse_money(record.get("winning_amount")),
            total_charged=parse_money(record.get("total_charged")),
            transaction_id=record.get("transaction_id"),
            details=dict(record.get("details") or {}),
            attempt=int(record.get("attempt") or 0),
        )


async def call_gateway(
    func: Callable[..., Awaitable[T]], *args: Any, attempts: int, retry_delay: float
) -> T:
    """Call the gateway, retrying unknown outcomes with identical arguments."""
    for attempt in range(1, attempts + 1):
        try:
            return await func(*args)
        except GatewayUnavailableError:
            if attempt >= attempts:
                raise
            logger.warning("payment gateway unavailable (attempt %s/%s), retrying", attempt, attempts)
            await asyncio.sleep(retry_delay * attempt)
    raise GatewayUnavailableError("no gateway attempts configured")


def choose_payment_method(customer: Customer, methods: Sequence[PaymentMethod]) -> str:
    """Prefer the customer's default instrument, else the first saved one."""
    method_ids = [method.payment_method_id for method in methods]
    if customer.default_payment_method in method_ids:
        return customer.default_payment_method
    return method_ids[0]


def transaction_id_for(listing_id: str) -> str:
    return f"txn-{listing_id}"


def winner_charge_key(listing: Listing, attempt: int = 0) -> str:
    """Idempotency key for the winner charge.

    Stable across passes and unknown-outcome retries, so a charge that went
    through is never taken twice. A forced retry after a recorded decline
    bumps ``attempt``: gateways replay the stored response for a reused key
    (Stripe keeps it for 24 hours), so the old key would only return the
    original decline.
    """
    key = f"winner-charge-{listing.listing_id}"
    if listing.lifecycle > 1:
        key = f"{key}-{listing.lifecycle}"
    if attempt:
        key = f"{key}-retry-{attempt}"
    return key


async def finalize_sale(
    repository: AuctionRepository,
    listing: Listing,
    *,
    buyer_id: str,
    buyer_email: str | None,
    breakdown: SaleBreakdown,
    charge: ChargeResult,
    sale_type: str,
    event: ListingEvent,
    now: datetime,
    extra_patch: dict[str, Any] | None = None,
) -> tuple[Transaction, Listing]:
    """Record the Transaction (once per listing) and move the listing to sold."""
    transaction = Transaction(
        transaction_id=transaction_id_for(listing.listing_id),
        listing_id=listing.listing_id,
        registration=listing.registration,
        sale_type=sale_type,
        buyer_id=buyer_id,
        buyer_email=buyer_email,
        seller_id=listing.seller_id,
        seller_email=listing.seller_email,
        winning_amount=breakdown.winning_amount,
        transfer_fee=breakdown.transfer_fee,
        commission_rate=breakdown.commission_rate,
        commission_amount=breakdown.commission_amount,
        listing_fee=breakdown.listing_fee,
        seller_payout=breakdown.seller_payout,
        total_charged=breakdown.buyer_total,
        currency=charge.currency,
        charge_reference=charge.reference,
        charge_status=charge.status,
        created_at=now,
        metadata={"lifecycle": listing.lifecycle},
    )
    stored, created = await repository.create_transaction(transaction)
    if not created:
        logger.info("transaction %s already recorded for %s", stored.transaction_id, listing.listing_id)
    patch = {
        "status": transition(listing.status, event),
        "sold_price": breakdown.winning_amount,
        "buyer_id": buyer_id,
        "sale_type": sale_type,
    }
    patch.update(extra_patch or {})
    try:
        updated = await repository.update_listing(
            listing.listing_id, patch, expected_status=listing.status
        )
    except ConflictError:
        updated = await repository.get_listing(listing.listing_id)
        if updated.status is not ListingStatus.SOLD:
            raise
    return stored, updated


class WinnerSettlement:
    def __init__(
        self,
        repository: AuctionRepository,
        gateway: PaymentGateway,
        notifier: NotificationPublisher | None = None,
        *,
        currency: str = "gbp",
        transfer_fee: Decimal = DEFAULT_TRANSFER_FEE,
        commission_tiers: Sequence[tuple[Decimal | None, Decimal]] = DEFAULT_COMMISSION_TIERS,
        charge_attempts: int = 3,
        retry_delay_ms: int = 250,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._notifier = notifier
        self._currency = currency
        self._transfer_fee = transfer_fee
        self._tiers = commission_tiers
        self._attempts = max(charge_attempts, 1)
        self._retry_delay = retry_delay_ms / 1000
        self._clock = clock

    @property
    def transfer_fee(self) -> Decimal:
        return self._transfer_fee

    @property
    def currency(self) -> str:
        return self._currency

    @property
    def commission_tiers(self) -> Sequence[tuple[Decimal | None, Decimal]]:
        return self._tiers

    async def settle(self, listing_id: str, *, force: bool = False) -> SettlementOutcome:
        """Settle a completed listing.

        A listing already sold is a no-op, and a completed listing that already
        carries a definitive outcome returns it unchanged unless ``force`` is
        set (operator retry). Only definitive outcomes are persisted.

        A forced retry charges under a new idempotency key, so a winner who has
        since fixed their card is charged for real instead of getting the
        gateway's stored decline back. A forced retry that ends pending keeps
        the recorded outcome, so forcing again reuses that retry's key.
        """
        listing = await self._repository.get_listing(listing_id)
        if listing.status is ListingStatus.SOLD:
            existing = await self._repository.get_transaction(transaction_id_for(listing_id))
            return SettlementOutcome(
                listing_id=listing_id,
                outcome=Outcome.SKIPPED,
                reason="already-settled",
                charge_reference=existing.charge_reference if existing else None,
                transaction_id=existing.transaction_id if existing else None,
            )
        if listing.status is not ListingStatus.COMPLETED:
            return SettlementOutcome(listing_id, Outcome.SKIPPED, reason="not-completed")
        attempt = 0
        if listing.settlement:
            previous = SettlementOutcome.from_record(listing_id, listing.settlement)
            if not force:
                return previous
            attempt = previous.attempt if previous.charged else previous.attempt + 1

        outcome = await self._settle_completed(listing, attempt)
        logger.info(
            "settlement %s for %s (%s)", outcome.outcome.value, listing_id, outcome.reason or "-"
        )
        if outcome.definitive and self._notifier is not None:
            await self._notifier.publish("settlement.outcome", self._event_payload(listing, outcome))
            if outcome.outcome is Outcome.SUCCEEDED:
                await self._notifier.publish("listing.sold", self._event_payload(listing, outcome))
        return outcome

    async def _settle_completed(self, listing: Listing, attempt: int = 0) -> SettlementOutcome:
        listing_id = listing.listing_id
        if listing.current_bid is None or listing.current_bid <= 0:
            return await self._close_unsold(listing, "no-bids")
        if listing.has_reserve and listing.current_bid < listing.reserve_price:
            return await self._close_unsold(
                listing,
                "reserve-not-met",
                details={
                    "current_bid": format_money(listing.current_bid),
                    "reserve_price": format_money(listing.reserve_price),
                },
            )

        bids = await self._repository.list_bids(listing_id, lifecycle=listing.lifecycle)
        winner = select_winner(bids)
        if winner is None:
            return await self._record(
                listing, SettlementOutcome(listing_id, Outcome.SKIPPED, reason="bid-history-missing")
            )
        latest = latest_bid(bids)
        if latest is not None and latest.bid_id != winner.bid_id:
            logger.warning(
                "listing %s: highest bid %s (%s) is not the latest bid %s (%s)",
                listing_id,
                winner.bid_id,
                winner.amount,
                latest.bid_id,
                latest.amount,
            )
        if winner.amount != listing.current_bid:
            logger.warning(
                "listing %s: winning bid %s differs from current_bid %s, using winning bid",
                listing_id,
                winner.amount,
                listing.current_bid,
            )

        base = SettlementOutcome(
            listing_id,
            Outcome.SKIPPED,
            winner_id=winner.bidder_id,
            winning_amount=winner.amount,
            attempt=attempt,
        )
        try:
            customer = await self._with_retries(self._gateway.find_or_create_customer, winner.contact)
            methods = await self._with_retries(
                self._gateway.list_stored_payment_methods, customer.customer_id
            )
        except GatewayUnavailableError:
            return self._pending(base)
        except PaymentError as exc:
            return await self._record(listing, self._failed(base, exc))
        if not methods:
            base.reason = "no-payment-method"
            return await self._record(listing, base)
        payment_method_id = choose_payment_method(customer, methods)

        breakdown = calculate_sale(
            winner.amount,
            tiers=self._tiers,
            transfer_fee=self._transfer_fee,
            listing_fee=listing.listing_fee,
            rate_override=listing.commission_rate,
        )
        base.total_charged = breakdown.buyer_total
        metadata = {
            "description": f"Auction winner - {listing.registration or listing_id} "
            f"(incl. £{format_money(self._transfer_fee)} transfer fee)",
            "type": "auction_winner",
            "listing_id": listing_id,
            "winner": winner.contact,
            "final_bid_amount": format_money(winner.amount),
            "transfer_fee": format_money(self._transfer_fee),
        }
        try:
            charge = await self._with_retries(
                self._gateway.charge,
                customer.customer_id,
                payment_method_id,
                to_minor_units(breakdown.buyer_total),
                self._currency,
                winner_charge_key(listing, attempt),
                metadata,
            )
        except GatewayUnavailableError:
            return self._pending(base)
        except PaymentError as exc:
            return await self._record(listing, self._failed(base, exc))

        base.outcome = Outcome.SUCCEEDED
        base.reason = None
        base.charged = True
        base.charge_reference = charge.reference
        base.transaction_id = transaction_id_for(listing_id)
        base.details = {
            "commission_rate": format_money(breakdown.commission_rate),
            "commission_amount": format_money(breakdown.commission_amount),
            "seller_payout": format_money(breakdown.seller_payout),
            "charge_status": charge.status,
        }
        now = self._clock()
        await finalize_sale(
            self._repository,
            listing,
            buyer_id=winner.bidder_id,
            buyer_email=winner.bidder_email,
            breakdown=breakdown,
            charge=charge,
            sale_type="auction",
            event=ListingEvent.SETTLE,
            now=now,
            extra_patch={"settlement": base.to_record(now)},
        )
        return base

    async def _with_retries(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        return await call_gateway(func, *args, attempts=self._attempts, retry_delay=self._retry_delay)

    def _pending(self, base: SettlementOutcome) -> SettlementOutcome:
        base.outcome = Outcome.PENDING
        base.reason = "gateway-unavailable"
        return base

    def _failed(self, base: SettlementOutcome, exc: PaymentError) -> SettlementOutcome:
        logger.warning("charge for listing %s failed: %s (%s)", base.listing_id, exc.reason, exc)
        base.outcome = Outcome.FAILED
        base.reason = exc.reason
        base.charged = False
        base.charge_reference = exc.reference
        base.details = exc.as_dict()
        return base

    async def _close_unsold(
        self, listing: Listing, reason: str, details: dict[str, Any] | None = None
    ) -> SettlementOutcome:
        outcome = SettlementOutcome(
            listing.listing_id, Outcome.SKIPPED, reason=reason, details=details or {}
        )
        return await self._record(
            listing, outcome, status=transition(listing.status, ListingEvent.CLOSE_UNSOLD)
        )

    async def _record(
        self,
        listing: Listing,
        outcome: SettlementOutcome,
        *,
        status: ListingStatus | None = None,
    ) -> SettlementOutcome:
        patch: dict[str, Any] = {"settlement": outcome.to_record(self._clock())}
        if status is not None:
            patch["status"] = status
        try:
            await self._repository.update_listing(
                listing.listing_id, patch, expected_status=ListingStatus.COMPLETED
            )
        except ConflictError:
            logger.info("listing %s moved on before its settlement was recorded", listing.listing_id)
        return outcome

    def _event_payload(self, listing: Listing, outcome: SettlementOutcome) -> dict[str, Any]:
        payload = outcome.summary()
        payload.update(
            {
                "registration": listing.registration,
                "seller_id": listing.seller_id,
                "seller_email": listing.seller_email,
                "winner_id": outcome.winner_id,
                "winning_amount": format_money(outcome.winning_amount),
                "total_charged": format_money(outcome.total_charged),
                "transaction_id": outcome.transaction_id,
            }
        )
        return payload
