"""Configuration helpers for the auction engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"

DEFAULT_BID_INCREMENTS = (
    (Decimal("100"), Decimal("5")),
    (Decimal("500"), Decimal("10")),
    (Decimal("1000"), Decimal("25")),
    (Decimal("5000"), Decimal("50")),
    (Decimal("10000"), Decimal("100")),
    (Decimal("25000"), Decimal("250")),
    (Decimal("50000"), Decimal("500")),
    (None, Decimal("1000")),
)

DEFAULT_COMMISSION_TIERS = (
    (Decimal("4999"), Decimal("10")),
    (Decimal("9999"), Decimal("8")),
    (Decimal("24999"), Decimal("7")),
    (Decimal("49999"), Decimal("6")),
    (None, Decimal("5")),
)


@dataclass(frozen=True)
class StoreConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class WindowConfig:
    start_weekday: int
    start_hour: int
    duration_hours: int


@dataclass(frozen=True)
class AuctionConfig:
    window: WindowConfig
    # (exclusive upper bound on the current base, step); None means unbounded
    bid_increments: tuple[tuple[Decimal | None, Decimal], ...]
    bid_commit_attempts: int


@dataclass(frozen=True)
class SettlementConfig:
    currency: str
    transfer_fee: Decimal
    # (inclusive upper bound on the winning amount, percent rate)
    commission_tiers: tuple[tuple[Decimal | None, Decimal], ...]
    charge_attempts: int
    charge_retry_delay_ms: int
    buy_now_claim_ttl_seconds: int


@dataclass(frozen=True)
class GatewayConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class NotificationConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class SchedulerConfig:
    max_concurrency: int
    batch_limit: int


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    store: StoreConfig
    auction: AuctionConfig
    settlement: SettlementConfig
    gateway: GatewayConfig
    notifications: NotificationConfig
    scheduler: SchedulerConfig


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def _bound(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _parse_increments(items: Any) -> tuple[tuple[Decimal | None, Decimal], ...]:
    if not items:
        return DEFAULT_BID_INCREMENTS
    ladder = tuple((_bound(item.get("below")), Decimal(str(item["step"]))) for item in items)
    if ladder[-1][0] is not None:
        raise ValueError("bid_increments must end with an unbounded step")
    return ladder


def _parse_tiers(items: Any) -> tuple[tuple[Decimal | None, Decimal], ...]:
    if not items:
        return DEFAULT_COMMISSION_TIERS
    tiers = tuple((_bound(item.get("up_to")), Decimal(str(item["rate"]))) for item in items)
    if tiers[-1][0] is not None:
        raise ValueError("commission_tiers must end with an unbounded tier")
    return tiers


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    store = data.get("store", {})
    auction = data.get("auction", {})
    window = auction.get("window", {})
    settlement = data.get("settlement", {})
    gateway = data.get("gateway", {})
    notifications = data.get("notifications", {})
    scheduler = data.get("scheduler", {})
    return ServerConfig(
        listen=data.get("listen", {}),
        store=StoreConfig(
            backend=str(store.get("backend", "in_memory")),
            options=dict(store.get("options") or {}),
        ),
        auction=AuctionConfig(
            window=WindowConfig(
                start_weekday=int(window.get("start_weekday", 0)),
                start_hour=int(window.get("start_hour", 1)),
                duration_hours=int(window.get("duration_hours", 166)),
            ),
            bid_increments=_parse_increments(auction.get("bid_increments")),
            bid_commit_attempts=int(auction.get("bid_commit_attempts", 5)),
        ),
        settlement=SettlementConfig(
            currency=str(settlement.get("currency", "gbp")).lower(),
            transfer_fee=Decimal(str(settlement.get("transfer_fee", 80))),
            commission_tiers=_parse_tiers(settlement.get("commission_tiers")),
            charge_attempts=int(settlement.get("charge_attempts", 3)),
            charge_retry_delay_ms=int(settlement.get("charge_retry_delay_ms", 250)),
            buy_now_claim_ttl_seconds=int(settlement.get("buy_now_claim_ttl_seconds", 600)),
        ),
        gateway=GatewayConfig(
            backend=str(gateway.get("backend", "in_memory")),
            options=dict(gateway.get("options") or {}),
        ),
        notifications=NotificationConfig(
            backend=str(notifications.get("backend", "local")),
            options=dict(notifications.get("options") or {}),
        ),
        scheduler=SchedulerConfig(
            max_concurrency=int(scheduler.get("max_concurrency", 8)),
            batch_limit=int(scheduler.get("batch_limit", 100)),
        ),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("PLATE_AUCTION_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return parse_server_config(_load_yaml(path))
