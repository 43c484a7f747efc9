"""Typed auction records coerced from loosely typed stored documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from ..lifecycle.fsm import ListingStatus
from ..transport.timestamps import format_timestamp, parse_optional_timestamp, parse_timestamp

PENNY = Decimal("0.01")
WHOLE = Decimal("1")


def parse_money(value: Any) -> Decimal | None:
    """Coerce a stored or requested amount (number or numeric string) to Decimal."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("amount must be numeric")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"amount {value!r} is not numeric") from exc
    else:
        raise ValueError(f"amount of type {type(value).__name__} is not numeric")
    if not amount.is_finite():
        raise ValueError("amount must be finite")
    return amount


def format_money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(value.quantize(PENNY, rounding=ROUND_HALF_UP))


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(WHOLE, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Listing:
    listing_id: str
    registration: str
    status: ListingStatus
    seller_id: str
    seller_email: str | None = None
    reserve_price: Decimal | None = None
    starting_price: Decimal | None = None
    buy_now_price: Decimal | None = None
    current_bid: Decimal | None = None
    bid_count: int = 0
    auction_start: datetime | None = None
    auction_end: datetime | None = None
    commission_rate: Decimal | None = None
    listing_fee: Decimal = Decimal("0")
    version: int = 0
    lifecycle: int = 1
    settlement: dict[str, Any] | None = None
    buy_now_claim: dict[str, Any] | None = None
    sold_price: Decimal | None = None
    buyer_id: str | None = None
    sale_type: str | None = None

    @property
    def has_reserve(self) -> bool:
        return self.reserve_price is not None and self.reserve_price > 0

    def claim_active(self, now: datetime) -> bool:
        """True while a buy-now purchase holds the listing.

        A claim whose charge outcome is unknown never lapses: it holds until
        the charge is resolved under its idempotency key.
        """
        if not self.buy_now_claim:
            return False
        if self.buy_now_claim.get("pending_charge"):
            return True
        expires_at = parse_optional_timestamp(self.buy_now_claim.get("expires_at"))
        return expires_at is None or now < expires_at

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Listing":
        return cls(
            listing_id=str(doc["listing_id"]),
            registration=str(doc.get("registration") or ""),
            status=ListingStatus(doc["status"]),
            seller_id=str(doc.get("seller_id") or ""),
            seller_email=doc.get("seller_email"),
            reserve_price=parse_money(doc.get("reserve_price")),
            starting_price=parse_money(doc.get("starting_price")),
            buy_now_price=parse_money(doc.get("buy_now_price")),
            current_bid=parse_money(doc.get("current_bid")),
            bid_count=int(doc.get("bid_count") or 0),
            auction_start=parse_optional_timestamp(doc.get("auction_start")),
            auction_end=parse_optional_timestamp(doc.get("auction_end")),
            commission_rate=parse_money(doc.get("commission_rate")),
            listing_fee=parse_money(doc.get("listing_fee")) or Decimal("0"),
            version=int(doc.get("version") or 0),
            lifecycle=int(doc.get("lifecycle") or 1),
            settlement=doc.get("settlement"),
            buy_now_claim=doc.get("buy_now_claim"),
            sold_price=parse_money(doc.get("sold_price")),
            buyer_id=doc.get("buyer_id"),
            sale_type=doc.get("sale_type"),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "registration": self.registration,
            "status": self.status.value,
            "seller_id": self.seller_id,
            "seller_email": self.seller_email,
            "reserve_price": format_money(self.reserve_price),
            "starting_price": format_money(self.starting_price),
            "buy_now_price": format_money(self.buy_now_price),
            "current_bid": format_money(self.current_bid),
            "bid_count": self.bid_count,
            "auction_start": format_timestamp(self.auction_start),
            "auction_end": format_timestamp(self.auction_end),
            "commission_rate": format_money(self.commission_rate),
            "listing_fee": format_money(self.listing_fee),
            "version": self.version,
            "lifecycle": self.lifecycle,
            "settlement": self.settlement,
            "buy_now_claim": self.buy_now_claim,
            "sold_price": format_money(self.sold_price),
            "buyer_id": self.buyer_id,
            "sale_type": self.sale_type,
        }

    def as_dict(self) -> dict[str, Any]:
        return self.to_document()


@dataclass(frozen=True)
class Bid:
    bid_id: str
    listing_id: str
    bidder_id: str
    amount: Decimal
    placed_at: datetime
    sequence: int = 0
    bidder_email: str | None = None
    lifecycle: int = 1

    @property
    def contact(self) -> str:
        return self.bidder_email or self.bidder_id

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Bid":
        amount = parse_money(doc.get("amount"))
        if amount is None:
            raise ValueError(f"bid {doc.get('bid_id')} has no amount")
        return cls(
            bid_id=str(doc["bid_id"]),
            listing_id=str(doc["listing_id"]),
            bidder_id=str(doc["bidder_id"]),
            amount=amount,
            placed_at=parse_timestamp(doc["placed_at"]),
            sequence=int(doc.get("sequence") or 0),
            bidder_email=doc.get("bidder_email"),
            lifecycle=int(doc.get("lifecycle") or 1),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "listing_id": self.listing_id,
            "bidder_id": self.bidder_id,
            "bidder_email": self.bidder_email,
            "amount": format_money(self.amount),
            "placed_at": format_timestamp(self.placed_at),
            "sequence": self.sequence,
            "lifecycle": self.lifecycle,
        }


@dataclass(frozen=True)
class Transaction:
    transaction_id: str
    listing_id: str
    registration: str
    sale_type: str
    buyer_id: str
    buyer_email: str | None
    seller_id: str
    seller_email: str | None
    winning_amount: Decimal
    transfer_fee: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    listing_fee: Decimal
    seller_payout: Decimal
    total_charged: Decimal
    currency: str
    charge_reference: str
    charge_status: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Transaction":
        def money(key: str) -> Decimal:
            return parse_money(doc.get(key)) or Decimal("0")

        return cls(
            transaction_id=str(doc["transaction_id"]),
            listing_id=str(doc["listing_id"]),
            registration=str(doc.get("registration") or ""),
            sale_type=str(doc.get("sale_type") or "auction"),
            buyer_id=str(doc["buyer_id"]),
            buyer_email=doc.get("buyer_email"),
            seller_id=str(doc.get("seller_id") or ""),
            seller_email=doc.get("seller_email"),
            winning_amount=money("winning_amount"),
            transfer_fee=money("transfer_fee"),
            commission_rate=money("commission_rate"),
            commission_amount=money("commission_amount"),
            listing_fee=money("listing_fee"),
            seller_payout=money("seller_payout"),
            total_charged=money("total_charged"),
            currency=str(doc.get("currency") or "gbp"),
            charge_reference=str(doc.get("charge_reference") or ""),
            charge_status=str(doc.get("charge_status") or ""),
            created_at=parse_timestamp(doc["created_at"]),
            metadata=dict(doc.get("metadata") or {}),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "listing_id": self.listing_id,
            "registration": self.registration,
            "sale_type": self.sale_type,
            "buyer_id": self.buyer_id,
            "buyer_email": self.buyer_email,
            "seller_id": self.seller_id,
            "seller_email": self.seller_email,
            "winning_amount": format_money(self.winning_amount),
            "transfer_fee": format_money(self.transfer_fee),
            "commission_rate": format_money(self.commission_rate),
            "commission_amount": format_money(self.commission_amount),
            "listing_fee": format_money(self.listing_fee),
            "seller_payout": format_money(self.seller_payout),
            "total_charged": format_money(self.total_charged),
            "currency": self.currency,
            "charge_reference": self.charge_reference,
            "charge_status": self.charge_status,
            "created_at": format_timestamp(self.created_at),
            "metadata": self.metadata,
        }
