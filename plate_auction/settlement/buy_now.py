"""Outright purchase of a live listing at its buy-now price."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, NoReturn, Sequence

from ..auction.models import Listing, Transaction, format_money, to_minor_units
from ..config import DEFAULT_COMMISSION_TIERS
from ..lifecycle.fsm import ListingEvent, ListingStatus
from ..notifications.publisher import NotificationPublisher
from ..payments import GatewayUnavailableError, PaymentError, PaymentGateway
from ..storage.errors import ConflictError
from ..storage.repository import AuctionRepository
from ..transport.canonical_json import canonical_hash
from ..transport.timestamps import format_timestamp, utcnow
from .billing import DEFAULT_TRANSFER_FEE, calculate_sale
from .service import call_gateway, choose_payment_method, finalize_sale

logger = logging.getLogger(__name__)


class BuyNowError(ValueError):
    def __init__(self, reason: str, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.reason = reason
        self.retryable = retryable


def buy_now_charge_key(listing_id: str, buyer_id: str) -> str:
    return f"buy-now-{listing_id}-{canonical_hash(buyer_id)[:16]}"


class BuyNowService:
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
        claim_ttl_seconds: int = 600,
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
        self._claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self._clock = clock

    async def buy_now(
        self, listing_id: str, buyer_id: str, *, buyer_email: str | None = None
    ) -> Transaction:
        """Charge the buyer and close the listing as sold.

        The buyer first claims the listing, which stops bidding and scheduler
        completion while the charge is in flight. A declined charge releases
        the claim. When the charge outcome is unknown the claim is marked
        ``pending_charge`` and holds until the same buyer retries or the
        scheduler resumes it, both under the same idempotency key.
        """
        now = self._clock()
        listing = await self._load(listing_id, buyer_id, now)
        listing = await self._claim(listing, buyer_id, buyer_email, now)
        return await self._complete(listing, buyer_id, buyer_email)

    async def resume(self, listing_id: str) -> Transaction:
        """Re-post an interrupted buy-now charge for the buyer holding the claim."""
        try:
            listing = await self._repository.get_listing(listing_id)
        except KeyError as exc:
            raise BuyNowError("not-found", f"listing {listing_id} not found") from exc
        claim = listing.buy_now_claim or {}
        if listing.status is not ListingStatus.LIVE or not claim.get("pending_charge"):
            raise BuyNowError("no-pending-charge", f"listing {listing_id} has no buy-now charge to resume")
        logger.info("resuming buy-now charge on %s for %s", listing_id, claim.get("buyer_id"))
        return await self._complete(listing, str(claim["buyer_id"]), claim.get("buyer_email"))

    async def _complete(
        self, listing: Listing, buyer_id: str, buyer_email: str | None
    ) -> Transaction:
        listing_id = listing.listing_id
        pending = bool((listing.buy_now_claim or {}).get("pending_charge"))
        breakdown = calculate_sale(
            listing.buy_now_price,
            tiers=self._tiers,
            transfer_fee=self._transfer_fee,
            listing_fee=listing.listing_fee,
            rate_override=listing.commission_rate,
        )
        contact = buyer_email or buyer_id
        try:
            customer = await self._call(self._gateway.find_or_create_customer, contact)
            methods = await self._call(self._gateway.list_stored_payment_methods, customer.customer_id)
        except GatewayUnavailableError as exc:
            raise BuyNowError(
                "gateway-unavailable", "payment provider unavailable, retry shortly", retryable=True
            ) from exc
        except PaymentError as exc:
            if pending:
                raise BuyNowError(exc.reason, str(exc), retryable=True) from exc
            await self._fail(listing, exc)
        if not methods:
            if pending:
                # a charge may already exist under the key; keep holding the listing
                raise BuyNowError(
                    "no-payment-method", "buyer has no saved payment method", retryable=True
                )
            await self._release(listing_id)
            raise BuyNowError("no-payment-method", "buyer has no saved payment method")
        try:
            charge = await self._call(
                self._gateway.charge,
                customer.customer_id,
                choose_payment_method(customer, methods),
                to_minor_units(breakdown.buyer_total),
                self._currency,
                buy_now_charge_key(listing_id, buyer_id),
                {
                    "description": f"Buy now - {listing.registration or listing_id} "
                    f"(incl. £{format_money(self._transfer_fee)} transfer fee)",
                    "type": "buy_now",
                    "listing_id": listing_id,
                    "buyer": contact,
                    "buy_now_price": format_money(listing.buy_now_price),
                    "transfer_fee": format_money(self._transfer_fee),
                },
            )
        except GatewayUnavailableError as exc:
            await self._mark_pending(listing)
            raise BuyNowError(
                "gateway-unavailable", "payment outcome unknown, retry shortly", retryable=True
            ) from exc
        except PaymentError as exc:
            await self._fail(listing, exc)

        transaction, updated = await finalize_sale(
            self._repository,
            listing,
            buyer_id=buyer_id,
            buyer_email=buyer_email,
            breakdown=breakdown,
            charge=charge,
            sale_type="buy_now",
            event=ListingEvent.BUY_NOW,
            now=self._clock(),
            extra_patch={"buy_now_claim": None},
        )
        logger.info("listing %s sold by buy-now to %s (%s)", listing_id, buyer_id, charge.reference)
        if self._notifier is not None:
            await self._notifier.publish(
                "listing.sold",
                {
                    "listing_id": listing_id,
                    "outcome": "succeeded",
                    "sale_type": "buy_now",
                    "registration": updated.registration,
                    "seller_id": updated.seller_id,
                    "seller_email": updated.seller_email,
                    "winner_id": buyer_id,
                    "winning_amount": format_money(transaction.winning_amount),
                    "total_charged": format_money(transaction.total_charged),
                    "charge_reference": transaction.charge_reference,
                    "transaction_id": transaction.transaction_id,
                },
            )
        return transaction

    async def _fail(self, listing: Listing, exc: PaymentError) -> NoReturn:
        logger.warning("buy-now charge for %s failed: %s", listing.listing_id, exc.reason)
        await self._release(listing.listing_id)
        raise BuyNowError(exc.reason, str(exc)) from exc

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        return await call_gateway(func, *args, attempts=self._attempts, retry_delay=self._retry_delay)

    async def _load(self, listing_id: str, buyer_id: str, now: datetime) -> Listing:
        try:
            listing = await self._repository.get_listing(listing_id)
        except KeyError as exc:
            raise BuyNowError("not-found", f"listing {listing_id} not found") from exc
        if listing.status is not ListingStatus.LIVE:
            raise BuyNowError("not-live", "listing is not live")
        if listing.buy_now_price is None or listing.buy_now_price <= 0:
            raise BuyNowError("not-offered", "listing has no buy-now price")
        holder = listing.buy_now_claim.get("buyer_id") if listing.claim_active(now) else None
        if holder is not None and holder != buyer_id:
            raise BuyNowError("claimed", "listing is being bought by another buyer")
        # the holder may finish an interrupted purchase after the auction end
        resuming = holder == buyer_id and bool(listing.buy_now_claim.get("pending_charge"))
        if not resuming and listing.auction_end is not None and now >= listing.auction_end:
            raise BuyNowError("auction-ended", "auction has ended")
        return listing

    async def _claim(
        self, listing: Listing, buyer_id: str, buyer_email: str | None, now: datetime
    ) -> Listing:
        claim = {
            "buyer_id": buyer_id,
            "buyer_email": buyer_email,
            "claimed_at": format_timestamp(now),
            "expires_at": format_timestamp(now + self._claim_ttl),
        }
        previous = listing.buy_now_claim or {}
        if previous.get("pending_charge") and previous.get("buyer_id") == buyer_id:
            claim["pending_charge"] = True
            claim["pending_since"] = previous.get("pending_since")
        try:
            return await self._repository.update_listing(
                listing.listing_id,
                {"buy_now_claim": claim},
                expected_status=ListingStatus.LIVE,
                expected_version=listing.version,
            )
        except ConflictError as exc:
            raise BuyNowError(
                "conflict", "listing changed while buying, please retry", retryable=True
            ) from exc

    async def _mark_pending(self, listing: Listing) -> None:
        claim = dict(listing.buy_now_claim or {})
        claim.setdefault("pending_since", format_timestamp(self._clock()))
        claim["pending_charge"] = True
        try:
            await self._repository.update_listing(
                listing.listing_id, {"buy_now_claim": claim}, expected_status=ListingStatus.LIVE
            )
        except ConflictError:
            logger.error("could not hold buy-now claim on %s after unknown charge outcome", listing.listing_id)
        else:
            logger.warning("buy-now charge outcome unknown for %s, holding claim", listing.listing_id)

    async def _release(self, listing_id: str) -> None:
        try:
            await self._repository.update_listing(
                listing_id, {"buy_now_claim": None}, expected_status=ListingStatus.LIVE
            )
        except ConflictError:
            logger.info("buy-now claim on %s already gone", listing_id)
