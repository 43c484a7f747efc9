"""Periodic lifecycle pass: open queued auctions, close ended ones, settle them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from ..auction.models import Listing
from ..auction.window import DEFAULT_SCHEDULE, WindowSchedule, compute_window
from ..settlement.buy_now import BuyNowError, BuyNowService
from ..settlement.service import Outcome, SettlementOutcome, WinnerSettlement
from ..storage.errors import ConflictError
from ..storage.repository import AuctionRepository
from ..transport.timestamps import ensure_utc, format_timestamp, utcnow
from .fsm import ListingEvent, ListingStatus, transition

logger = logging.getLogger(__name__)

CANDIDATE_STATUSES = (ListingStatus.QUEUED, ListingStatus.LIVE, ListingStatus.COMPLETED)


@dataclass
class SchedulerReport:
    now: datetime
    processed: int = 0
    promoted: int = 0
    completed: int = 0
    settlements: list[dict[str, Any]] = field(default_factory=list)
    deferred: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "now": format_timestamp(self.now),
            "processed": self.processed,
            "promoted": self.promoted,
            "completed": self.completed,
            "settlements": self.settlements,
            "deferred": self.deferred,
            "errors": self.errors,
        }


class LifecycleScheduler:
    """Stateless lifecycle pass, safe to re-run and to run concurrently.

    Every status change is a compare-and-set on the status the pass observed,
    so a listing another pass already moved is left alone.
    """

    def __init__(
        self,
        repository: AuctionRepository,
        settlement: WinnerSettlement,
        *,
        schedule: WindowSchedule = DEFAULT_SCHEDULE,
        max_concurrency: int = 8,
        batch_limit: int | None = 100,
        buy_now: BuyNowService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._settlement = settlement
        self._schedule = schedule
        self._max_concurrency = max(max_concurrency, 1)
        self._batch_limit = batch_limit
        self._buy_now = buy_now
        self._clock = clock
        self._settling: set[str] = set()

    async def run(self, now: datetime | None = None, listing_id: str | None = None) -> SchedulerReport:
        now = ensure_utc(now) if now else self._clock()
        report = SchedulerReport(now=now)
        if listing_id:
            try:
                candidates = [await self._repository.get_listing(listing_id)]
            except KeyError:
                report.errors.append({"listing_id": listing_id, "error": "listing-not-found"})
                return report
        else:
            candidates = await self._candidates()

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def guarded(listing: Listing) -> None:
            async with semaphore:
                await self._process(listing, now, report)

        await asyncio.gather(*(guarded(listing) for listing in candidates))
        logger.info(
            "lifecycle pass: processed=%s promoted=%s completed=%s settlements=%s errors=%s",
            report.processed,
            report.promoted,
            report.completed,
            len(report.settlements),
            len(report.errors),
        )
        return report

    async def _candidates(self) -> list[Listing]:
        """One bounded scan per status, so no status can use up another's batch.

        Completed listings whose outcome is already recorded wait for an
        operator and are left out of the scan.
        """
        scans = await asyncio.gather(
            *(
                self._repository.list_listings(
                    [status], self._batch_limit, unsettled=status is ListingStatus.COMPLETED
                )
                for status in CANDIDATE_STATUSES
            )
        )
        candidates: dict[str, Listing] = {}
        for scan in scans:
            for listing in scan:
                candidates.setdefault(listing.listing_id, listing)
        return list(candidates.values())

    async def _process(self, listing: Listing, now: datetime, report: SchedulerReport) -> None:
        report.processed += 1
        try:
            await self._advance(listing, now, report)
        except Exception as exc:
            logger.error("lifecycle pass failed for listing %s", listing.listing_id, exc_info=True)
            report.errors.append({"listing_id": listing.listing_id, "error": str(exc) or type(exc).__name__})

    async def _advance(self, listing: Listing, now: datetime, report: SchedulerReport) -> None:
        if listing.status is ListingStatus.QUEUED:
            promoted = await self._promote(listing, now)
            if promoted is None:
                return
            report.promoted += 1
            listing = promoted

        if listing.status is ListingStatus.LIVE:
            if now < self._end_of(listing, now):
                return
            if listing.claim_active(now):
                resolved = await self._resolve_claim(listing, now, report)
                if resolved is None:
                    return
                listing = resolved
            try:
                listing = await self._repository.update_listing(
                    listing.listing_id,
                    {"status": transition(listing.status, ListingEvent.CLOSE)},
                    expected_status=ListingStatus.LIVE,
                )
            except ConflictError:
                logger.debug("listing %s already moved on", listing.listing_id)
                return
            report.completed += 1
            logger.info("auction closed for listing %s", listing.listing_id)

        if listing.status is ListingStatus.COMPLETED and listing.settlement is None:
            outcome = await self._settle(listing.listing_id)
            if outcome is not None:
                report.settlements.append(outcome.summary())
                if outcome.outcome is Outcome.ERROR:
                    report.errors.append({"listing_id": listing.listing_id, "error": outcome.reason})

    async def _resolve_claim(
        self, listing: Listing, now: datetime, report: SchedulerReport
    ) -> Listing | None:
        """Settle a buy-now claim that holds an ended auction.

        Returns the listing when the claim is gone and the auction may close.
        A claim whose charge outcome is unknown is re-posted under its own
        idempotency key, so the auction is never closed over a charge that
        may have gone through.
        """
        claim = listing.buy_now_claim or {}
        if not claim.get("pending_charge") or self._buy_now is None:
            report.deferred.append({"listing_id": listing.listing_id, "reason": "buy-now-in-progress"})
            return None
        try:
            transaction = await self._buy_now.resume(listing.listing_id)
        except BuyNowError as exc:
            if exc.retryable:
                report.deferred.append(
                    {"listing_id": listing.listing_id, "reason": "buy-now-charge-pending", "detail": exc.reason}
                )
                return None
            logger.info("buy-now on %s not completed (%s), closing auction", listing.listing_id, exc.reason)
        else:
            report.settlements.append(
                {
                    "listing_id": listing.listing_id,
                    "outcome": Outcome.SUCCEEDED.value,
                    "reason": "buy-now-resumed",
                    "charged": True,
                    "charge_reference": transaction.charge_reference,
                }
            )
            return None
        current = await self._repository.get_listing(listing.listing_id)
        if current.status is not ListingStatus.LIVE or current.claim_active(now):
            report.deferred.append({"listing_id": listing.listing_id, "reason": "buy-now-in-progress"})
            return None
        return current

    async def _promote(self, listing: Listing, now: datetime) -> Listing | None:
        start, end = self._window_of(listing, now)
        if now < start:
            return None
        try:
            return await self._repository.update_listing(
                listing.listing_id,
                {
                    "status": transition(listing.status, ListingEvent.OPEN),
                    "auction_start": start,
                    "auction_end": end,
                },
                expected_status=ListingStatus.QUEUED,
            )
        except ConflictError:
            logger.debug("listing %s already promoted", listing.listing_id)
            return None

    async def _settle(self, listing_id: str) -> SettlementOutcome | None:
        # one in-process settle per listing at a time
        if listing_id in self._settling:
            return None
        self._settling.add(listing_id)
        try:
            return await self._settlement.settle(listing_id)
        except Exception as exc:
            logger.error("settlement failed for listing %s", listing_id, exc_info=True)
            return SettlementOutcome(listing_id, Outcome.ERROR, reason=str(exc) or type(exc).__name__)
        finally:
            self._settling.discard(listing_id)

    def _window_of(self, listing: Listing, now: datetime) -> tuple[datetime, datetime]:
        duration = self._schedule.duration
        if listing.auction_start and listing.auction_end:
            return listing.auction_start, listing.auction_end
        if listing.auction_start:
            return listing.auction_start, listing.auction_start + duration
        if listing.auction_end:
            return listing.auction_end - duration, listing.auction_end
        window = compute_window(now, self._schedule)
        if now <= window.current_end:
            return window.current_start, window.current_end
        return window.next_start, window.next_end

    def _end_of(self, listing: Listing, now: datetime) -> datetime:
        if listing.auction_end is not None:
            return listing.auction_end
        if listing.auction_start is not None:
            return listing.auction_start + self._schedule.duration
        return compute_window(now, self._schedule).current_end
