"""Listing lifecycle finite state machine."""

from __future__ import annotations

from enum import Enum


class ListingStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    LIVE = "live"
    COMPLETED = "completed"
    SOLD = "sold"
    NOT_SOLD = "not_sold"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ListingEvent(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    OPEN = "open"
    CLOSE = "close"
    SETTLE = "settle"
    CLOSE_UNSOLD = "close_unsold"
    BUY_NOW = "buy_now"
    WITHDRAW = "withdraw"
    RELIST = "relist"


_TRANSITIONS = {
    (ListingStatus.PENDING, ListingEvent.APPROVE): ListingStatus.QUEUED,
    (ListingStatus.PENDING, ListingEvent.REJECT): ListingStatus.REJECTED,
    (ListingStatus.QUEUED, ListingEvent.OPEN): ListingStatus.LIVE,
    (ListingStatus.QUEUED, ListingEvent.WITHDRAW): ListingStatus.WITHDRAWN,
    (ListingStatus.LIVE, ListingEvent.CLOSE): ListingStatus.COMPLETED,
    (ListingStatus.LIVE, ListingEvent.WITHDRAW): ListingStatus.WITHDRAWN,
    (ListingStatus.LIVE, ListingEvent.BUY_NOW): ListingStatus.SOLD,
    (ListingStatus.COMPLETED, ListingEvent.SETTLE): ListingStatus.SOLD,
    (ListingStatus.COMPLETED, ListingEvent.CLOSE_UNSOLD): ListingStatus.NOT_SOLD,
    (ListingStatus.NOT_SOLD, ListingEvent.RELIST): ListingStatus.QUEUED,
    (ListingStatus.WITHDRAWN, ListingEvent.RELIST): ListingStatus.QUEUED,
}


def transition(current: ListingStatus, event: ListingEvent) -> ListingStatus:
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError as exc:
        raise ValueError(f"invalid transition from {current.value} via {event.value}") from exc


def can_transition(current: ListingStatus, event: ListingEvent) -> bool:
    return (current, event) in _TRANSITIONS
