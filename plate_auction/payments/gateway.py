"""Payment gateway records and error classification."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Customer:
    customer_id: str
    email: str
    default_payment_method: str | None = None


@dataclass(frozen=True)
class PaymentMethod:
    payment_method_id: str
    brand: str | None = None
    last4: str | None = None


@dataclass(frozen=True)
class ChargeResult:
    reference: str
    status: str
    amount_minor: int
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)


class GatewayUnavailableError(RuntimeError):
    """The gateway could not be reached or gave no definitive answer.

    The charge may or may not have happened; retrying with the same
    idempotency key is safe.
    """


_REASONS = {
    "authentication_required": "authentication-required",
    "requires_action": "authentication-required",
    "card_declined": "card-declined",
    "requires_payment_method": "card-declined",
    "resource_missing": "customer-missing",
    "customer_missing": "customer-missing",
    "expired_card": "expired-card",
    "insufficient_funds": "insufficient-funds",
}


class PaymentError(RuntimeError):
    """A definitive charge failure reported by the gateway."""

    def __init__(
        self,
        code: str,
        message: str = "",
        *,
        decline_code: str | None = None,
        reference: str | None = None,
        status: str | None = None,
    ) -> None:
        super().__init__(message or code)
        self.code = code
        self.decline_code = decline_code
        self.reference = reference
        self.status = status

    @property
    def reason(self) -> str:
        if self.code == "card_declined" and self.decline_code in _REASONS:
            return _REASONS[self.decline_code]
        return _REASONS.get(self.code, self.code.replace("_", "-"))

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "decline_code": self.decline_code,
            "message": str(self),
            "reference": self.reference,
            "status": self.status,
        }
