from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from jsonschema import ValidationError

from .admin import config as admin_config
from .admin import health as admin_health
from .admin import listings as admin_listings
from .admin import stats as admin_stats
from .auction.bidding import (
    AuctionNotLiveError,
    BidConflictError,
    BidEngine,
    BidError,
    BidTooLowError,
)
from .auction.models import format_money
from .auction.window import WindowSchedule, compute_window
from .config import ServerConfig, get_server_config
from .lifecycle.actions import ListingActions
from .lifecycle.scheduler import LifecycleScheduler
from .notifications.publisher import NotificationPublisher
from .payments import build_gateway
from .settlement.buy_now import BuyNowError, BuyNowService
from .settlement.service import WinnerSettlement
from .storage import build_storage
from .storage.repository import AuctionRepository
from .transport.timestamps import TimestampError, parse_timestamp, utcnow
from .validation.validator import SchemaRegistry, get_schema_registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    schema_registry = get_schema_registry()
    storage = build_storage(server_config)
    repository = AuctionRepository(storage, schema_registry)
    gateway = build_gateway(server_config)
    notifications = server_config.notifications
    publisher = NotificationPublisher(notifications.backend, dict(notifications.options))
    schedule = WindowSchedule.from_config(server_config.auction.window)
    settlement_config = server_config.settlement
    bid_engine = BidEngine(
        repository,
        increments=server_config.auction.bid_increments,
        commit_attempts=server_config.auction.bid_commit_attempts,
    )
    settlement = WinnerSettlement(
        repository,
        gateway,
        publisher,
        currency=settlement_config.currency,
        transfer_fee=settlement_config.transfer_fee,
        commission_tiers=settlement_config.commission_tiers,
        charge_attempts=settlement_config.charge_attempts,
        retry_delay_ms=settlement_config.charge_retry_delay_ms,
    )
    buy_now = BuyNowService(
        repository,
        gateway,
        publisher,
        currency=settlement_config.currency,
        transfer_fee=settlement_config.transfer_fee,
        commission_tiers=settlement_config.commission_tiers,
        charge_attempts=settlement_config.charge_attempts,
        retry_delay_ms=settlement_config.charge_retry_delay_ms,
        claim_ttl_seconds=settlement_config.buy_now_claim_ttl_seconds,
    )
    scheduler = LifecycleScheduler(
        repository,
        settlement,
        schedule=schedule,
        max_concurrency=server_config.scheduler.max_concurrency,
        batch_limit=server_config.scheduler.batch_limit,
        buy_now=buy_now,
    )
    listing_actions = ListingActions(repository, schedule=schedule)

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.storage = storage
    app.state.repository = repository
    app.state.gateway = gateway
    app.state.publisher = publisher
    app.state.window_schedule = schedule
    app.state.bid_engine = bid_engine
    app.state.settlement = settlement
    app.state.buy_now = buy_now
    app.state.scheduler = scheduler
    app.state.listing_actions = listing_actions
    app.state.start_time = datetime.now(timezone.utc)

    yield

    close = getattr(gateway, "close", None)
    if close is not None:
        await close()


app = FastAPI(
    title="Plate Auction Engine",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)
app.include_router(admin_config.router)
app.include_router(admin_listings.router)


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_window_schedule(request: Request) -> WindowSchedule:
    return request.app.state.window_schedule


def get_bid_engine(request: Request) -> BidEngine:
    return request.app.state.bid_engine


def get_buy_now_service(request: Request) -> BuyNowService:
    return request.app.state.buy_now


def get_scheduler(request: Request) -> LifecycleScheduler:
    return request.app.state.scheduler


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "plate-auction",
        "version": app.version,
        "auction": {
            "window": {
                "start_weekday": settings.auction.window.start_weekday,
                "start_hour": settings.auction.window.start_hour,
                "duration_hours": settings.auction.window.duration_hours,
            },
            "transfer_fee": format_money(settings.settlement.transfer_fee),
            "currency": settings.settlement.currency,
        },
    }


@app.get("/auction/window", tags=["auction"])
async def auction_window(
    at: str | None = Query(default=None),
    schedule: WindowSchedule = Depends(get_window_schedule),
) -> dict[str, Any]:
    try:
        reference = parse_timestamp(at) if at else utcnow()
    except TimestampError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return compute_window(reference, schedule).as_dict()


@app.post("/auction/scheduler/run", tags=["auction"])
async def trigger_scheduler(
    payload: dict[str, Any] | None = Body(default=None),
    schemas: SchemaRegistry = Depends(get_schema_service),
    scheduler: LifecycleScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    payload = payload or {}
    try:
        schemas.validate("trigger_request", payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc
    report = await scheduler.run(listing_id=payload.get("listing_id"))
    return report.as_dict()


@app.get("/auction/scheduler/run", tags=["auction"])
async def trigger_scheduler_get(
    listing_id: str | None = Query(default=None),
    scheduler: LifecycleScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    report = await scheduler.run(listing_id=listing_id or None)
    return report.as_dict()


@app.post("/listings/{listing_id}/bids", tags=["auction"], status_code=status.HTTP_201_CREATED)
async def place_bid(
    listing_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    engine: BidEngine = Depends(get_bid_engine),
) -> dict[str, Any]:
    try:
        schemas.validate("bid_request", payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc
    try:
        listing = await engine.place_bid(
            listing_id,
            payload["bidder_id"],
            payload["amount"],
            bidder_email=payload.get("bidder_email"),
        )
    except BidError as exc:
        raise HTTPException(status_code=_bid_error_status(exc), detail=_bid_error_detail(exc)) from exc
    return {
        "status": "accepted",
        "listing_id": listing.listing_id,
        "current_bid": format_money(listing.current_bid),
        "bid_count": listing.bid_count,
    }


@app.post("/listings/{listing_id}/buy-now", tags=["auction"], status_code=status.HTTP_201_CREATED)
async def buy_now(
    listing_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    service: BuyNowService = Depends(get_buy_now_service),
) -> dict[str, Any]:
    try:
        schemas.validate("buy_now_request", payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc
    try:
        transaction = await service.buy_now(
            listing_id, payload["buyer_id"], buyer_email=payload.get("buyer_email")
        )
    except BuyNowError as exc:
        raise HTTPException(
            status_code=_buy_now_error_status(exc),
            detail={"reason": exc.reason, "message": str(exc), "retryable": exc.retryable},
        ) from exc
    return {"status": "sold", "transaction": transaction.to_document()}


def _bid_error_status(exc: BidError) -> int:
    if isinstance(exc, (AuctionNotLiveError, BidConflictError)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_422_UNPROCESSABLE_ENTITY


def _bid_error_detail(exc: BidError) -> dict[str, Any]:
    detail: dict[str, Any] = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, BidTooLowError):
        detail["minimum"] = format_money(exc.minimum)
    return detail


_BUY_NOW_STATUS = {
    "not-found": status.HTTP_404_NOT_FOUND,
    "not-live": status.HTTP_409_CONFLICT,
    "not-offered": status.HTTP_409_CONFLICT,
    "auction-ended": status.HTTP_409_CONFLICT,
    "claimed": status.HTTP_409_CONFLICT,
    "conflict": status.HTTP_409_CONFLICT,
    "gateway-unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _buy_now_error_status(exc: BuyNowError) -> int:
    # anything else is a classified payment failure
    return _BUY_NOW_STATUS.get(exc.reason, status.HTTP_402_PAYMENT_REQUIRED)
