"""Deterministic in-process payment gateway with idempotency-key deduplication."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from .gateway import (
    ChargeResult,
    Customer,
    GatewayUnavailableError,
    PaymentError,
    PaymentMethod,
)


class InMemoryPaymentGateway:
    def __init__(self, *, currency: str = "gbp") -> None:
        self._currency = currency
        self._customers: dict[str, Customer] = {}
        self._methods: dict[str, list[PaymentMethod]] = {}
        self._declines: dict[str, PaymentError] = {}
        self._charges: dict[str, ChargeResult | PaymentError] = {}
        self._unavailable_before = 0
        self._unavailable_after = 0
        self._lock = asyncio.Lock()
        self.charge_calls = 0

    # Test and local-run helpers -------------------------------------------

    def add_payment_method(self, email: str, payment_method_id: str | None = None) -> str:
        customer = self._ensure_customer(email)
        method_id = payment_method_id or f"pm_{uuid.uuid4().hex[:16]}"
        self._methods.setdefault(customer.customer_id, []).append(
            PaymentMethod(payment_method_id=method_id, brand="visa", last4="4242")
        )
        return method_id

    def decline(self, email: str, code: str = "card_declined", decline_code: str | None = None) -> None:
        customer = self._ensure_customer(email)
        self._declines[customer.customer_id] = PaymentError(
            code, f"charge for {email} declined", decline_code=decline_code
        )

    def approve(self, email: str) -> None:
        """Lift a decline, as when the customer updates their card."""
        self._declines.pop(self._ensure_customer(email).customer_id, None)

    def fail_transiently(self, times: int = 1, *, after_commit: bool = False) -> None:
        """Make the next ``times`` charge calls raise GatewayUnavailableError.

        With ``after_commit`` the charge is recorded before the error, like a
        response lost to a timeout.
        """
        if after_commit:
            self._unavailable_after += times
        else:
            self._unavailable_before += times

    @property
    def successful_charges(self) -> list[ChargeResult]:
        return [item for item in self._charges.values() if isinstance(item, ChargeResult)]

    def _ensure_customer(self, email: str) -> Customer:
        key = email.lower()
        if key not in self._customers:
            self._customers[key] = Customer(customer_id=f"cus_{uuid.uuid4().hex[:14]}", email=email)
        return self._customers[key]

    # Gateway protocol -----------------------------------------------------

    async def find_or_create_customer(self, email: str) -> Customer:
        async with self._lock:
            return self._ensure_customer(email)

    async def list_stored_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        async with self._lock:
            return list(self._methods.get(customer_id, []))

    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, Any],
    ) -> ChargeResult:
        async with self._lock:
            self.charge_calls += 1
            if self._unavailable_before:
                self._unavailable_before -= 1
                raise GatewayUnavailableError("gateway unavailable")
            outcome = self._charges.get(idempotency_key)
            if outcome is None:
                methods = {m.payment_method_id for m in self._methods.get(customer_id, [])}
                if payment_method_id not in methods:
                    outcome = PaymentError("resource_missing", "payment method not found")
                elif customer_id in self._declines:
                    outcome = self._declines[customer_id]
                else:
                    outcome = ChargeResult(
                        reference=f"pi_{uuid.uuid4().hex[:24]}",
                        status="succeeded",
                        amount_minor=amount_minor,
                        currency=currency or self._currency,
                        metadata=dict(metadata),
                    )
                self._charges[idempotency_key] = outcome
            if self._unavailable_after:
                self._unavailable_after -= 1
                raise GatewayUnavailableError("gateway response lost")
            if isinstance(outcome, PaymentError):
                raise outcome
            return outcome
