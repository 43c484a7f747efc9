"""Winner selection helpers."""

from __future__ import annotations

from typing import Iterable, Optional

from .models import Bid


def select_winner(bids: Iterable[Bid]) -> Optional[Bid]:
    """Highest amount wins; equal amounts fall back to the latest placed."""
    return max(bids, key=lambda bid: (bid.amount, bid.placed_at, bid.sequence), default=None)


def latest_bid(bids: Iterable[Bid]) -> Optional[Bid]:
    return max(bids, key=lambda bid: (bid.placed_at, bid.sequence), default=None)
