"""Payment gateway protocol and backend factory."""

from __future__ import annotations

from typing import Any, Protocol

from ..config import ServerConfig
from .gateway import (
    ChargeResult,
    Customer,
    GatewayUnavailableError,
    PaymentError,
    PaymentMethod,
)
from .in_memory import InMemoryPaymentGateway
from .stripe_gateway import StripeGateway

__all__ = [
    "ChargeResult",
    "Customer",
    "GatewayUnavailableError",
    "PaymentError",
    "PaymentGateway",
    "PaymentMethod",
    "build_gateway",
]


class PaymentGateway(Protocol):
    async def find_or_create_customer(self, email: str) -> Customer: ...

    async def list_stored_payment_methods(self, customer_id: str) -> list[PaymentMethod]: ...

    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, Any],
    ) -> ChargeResult:
        """Charge a stored instrument; repeated keys resolve to the same gateway-side charge."""
        ...


def build_gateway(config: ServerConfig) -> PaymentGateway:
    backend = config.gateway.backend
    options = dict(config.gateway.options)
    if backend == "in_memory":
        return InMemoryPaymentGateway(currency=config.settlement.currency)
    if backend == "stripe":
        return StripeGateway(**options)
    raise ValueError(f"unknown payment gateway backend {backend}")
