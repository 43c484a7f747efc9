"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..auction.models import format_money
from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


def _bound(value) -> str | None:
    return format_money(value) if value is not None else None


@router.get("/config")
async def config(request: Request, config: ServerConfig = Depends(_get_config)) -> dict:
    window = config.auction.window
    settlement = config.settlement
    # gateway options may name the key's environment variable, never the key
    gateway_options = {key: value for key, value in config.gateway.options.items() if key != "api_key"}
    return {
        "version": request.app.version,
        "storage_backend": config.store.backend,
        "auction_window": {
            "start_weekday": window.start_weekday,
            "start_hour": window.start_hour,
            "duration_hours": window.duration_hours,
        },
        "bid_increments": [
            {"below": _bound(below), "step": format_money(step)}
            for below, step in config.auction.bid_increments
        ],
        "settlement": {
            "currency": settlement.currency,
            "transfer_fee": format_money(settlement.transfer_fee),
            "commission_tiers": [
                {"up_to": _bound(up_to), "rate": format_money(rate)}
                for up_to, rate in settlement.commission_tiers
            ],
            "charge_attempts": settlement.charge_attempts,
        },
        "gateway_backend": config.gateway.backend,
        "gateway_options": gateway_options,
        "notifications_backend": config.notifications.backend,
        "scheduler": {
            "max_concurrency": config.scheduler.max_concurrency,
            "batch_limit": config.scheduler.batch_limit,
        },
    }
