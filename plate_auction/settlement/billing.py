"""Sale economics: tiered commission, transfer fee and seller payout."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from ..config import DEFAULT_COMMISSION_TIERS

CommissionTiers = Sequence[tuple[Decimal | None, Decimal]]

WHOLE_POUND = Decimal("1")
DEFAULT_TRANSFER_FEE = Decimal("80")


@dataclass(frozen=True)
class SaleBreakdown:
    winning_amount: Decimal
    transfer_fee: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    listing_fee: Decimal
    seller_payout: Decimal

    @property
    def buyer_total(self) -> Decimal:
        return self.winning_amount + self.transfer_fee


def commission_rate_for(amount: Decimal, tiers: CommissionTiers = DEFAULT_COMMISSION_TIERS) -> Decimal:
    for up_to, rate in tiers:
        if up_to is None or amount <= up_to:
            return rate
    raise ValueError("commission tiers have no unbounded tier")


def calculate_sale(
    winning_amount: Decimal,
    *,
    tiers: CommissionTiers = DEFAULT_COMMISSION_TIERS,
    transfer_fee: Decimal = DEFAULT_TRANSFER_FEE,
    listing_fee: Decimal = Decimal("0"),
    rate_override: Decimal | None = None,
) -> SaleBreakdown:
    """Commission is rounded half-up to whole pounds before the payout is derived."""
    if not winning_amount.is_finite() or winning_amount <= 0:
        raise ValueError("invalid sale price for settlement")
    rate = rate_override if rate_override is not None and rate_override > 0 else commission_rate_for(
        winning_amount, tiers
    )
    commission = (winning_amount * rate / Decimal("100")).quantize(WHOLE_POUND, rounding=ROUND_HALF_UP)
    return SaleBreakdown(
        winning_amount=winning_amount,
        transfer_fee=transfer_fee,
        commission_rate=rate,
        commission_amount=commission,
        listing_fee=listing_fee,
        seller_payout=winning_amount - commission - listing_fee,
    )
