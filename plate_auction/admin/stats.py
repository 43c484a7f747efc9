"""Operational stats endpoint."""

from __future__ import annotations

from collections import Counter
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auction.models import format_money
from ..storage.repository import AuctionRepository

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_repository(request: Request) -> AuctionRepository:
    return request.app.state.repository


@router.get("/stats")
async def stats(repository: AuctionRepository = Depends(_get_repository)) -> dict[str, Any]:
    listings = await repository.list_listings()
    transactions = await repository.list_transactions()

    by_status: Counter[str] = Counter(listing.status.value for listing in listings)
    outcomes: Counter[str] = Counter()
    reasons: Counter[str] = Counter()
    for listing in listings:
        record = listing.settlement or {}
        if record.get("outcome"):
            outcomes[record["outcome"]] += 1
        if record.get("reason"):
            reasons[record["reason"]] += 1

    sales_by_type: Counter[str] = Counter(tx.sale_type for tx in transactions)
    charged = sum((tx.total_charged for tx in transactions), Decimal("0"))
    commission = sum((tx.commission_amount for tx in transactions), Decimal("0"))
    payouts = sum((tx.seller_payout for tx in transactions), Decimal("0"))
    total_bids = sum(listing.bid_count for listing in listings)

    return {
        "total_listings": len(listings),
        "listings_by_status": dict(by_status),
        "total_bids": total_bids,
        "settlement_outcomes": dict(outcomes),
        "settlement_reasons": dict(reasons),
        "sales_by_type": dict(sales_by_type),
        "total_charged": format_money(charged),
        "total_commission": format_money(commission),
        "total_seller_payout": format_money(payouts),
    }
