"""Stripe REST adapter for off-session charges using httpx."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from ..transport.canonical_json import canonical_hash
from .gateway import (
    ChargeResult,
    Customer,
    GatewayUnavailableError,
    PaymentError,
    PaymentMethod,
)

logger = logging.getLogger(__name__)

# "processing" counts as charged; stripe settles it later, so the status is kept
# on the transaction and the settlement outcome for reconciliation
_SUCCESS_STATUSES = {"succeeded", "processing"}


class StripeGateway:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_key_env: str = "STRIPE_SECRET_KEY",
        base_url: str = "https://api.stripe.com",
        api_version: str = "2024-06-20",
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        key = api_key or os.getenv(api_key_env)
        if not key:
            raise ValueError(f"stripe api key missing (set {api_key_env})")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key, ""),
            headers={"Stripe-Version": api_version},
            timeout=timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._client.request(
                method, path, params=params, data=data, headers=headers
            )
        except httpx.TimeoutException as exc:
            raise GatewayUnavailableError(f"stripe {method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailableError(f"stripe {method} {path} failed: {exc}") from exc
        # 409 is an idempotent request still in flight under the same key
        if response.status_code in (409, 429) or response.status_code >= 500:
            raise GatewayUnavailableError(
                f"stripe {method} {path} returned {response.status_code}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayUnavailableError(f"stripe {method} {path} returned invalid JSON") from exc
        if response.is_error:
            error = body.get("error") or {}
            intent = error.get("payment_intent") or {}
            raise PaymentError(
                error.get("code") or error.get("type") or f"http_{response.status_code}",
                error.get("message", ""),
                decline_code=error.get("decline_code"),
                reference=intent.get("id"),
                status=intent.get("status"),
            )
        return body

    async def find_or_create_customer(self, email: str) -> Customer:
        found = await self._request("GET", "/v1/customers", params={"email": email, "limit": 1})
        records = found.get("data") or []
        if records:
            return self._customer(records[0])
        created = await self._request(
            "POST",
            "/v1/customers",
            data={"email": email},
            idempotency_key=f"customer-{canonical_hash(email.lower())[:32]}",
        )
        return self._customer(created)

    def _customer(self, payload: dict[str, Any]) -> Customer:
        settings = payload.get("invoice_settings") or {}
        default = settings.get("default_payment_method")
        if isinstance(default, dict):
            default = default.get("id")
        return Customer(
            customer_id=payload["id"],
            email=payload.get("email") or "",
            default_payment_method=default,
        )

    async def list_stored_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        body = await self._request(
            "GET",
            "/v1/payment_methods",
            params={"customer": customer_id, "type": "card", "limit": 10},
        )
        methods = []
        for item in body.get("data") or []:
            card = item.get("card") or {}
            methods.append(
                PaymentMethod(
                    payment_method_id=item["id"],
                    brand=card.get("brand"),
                    last4=card.get("last4"),
                )
            )
        return methods

    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, Any],
    ) -> ChargeResult:
        data: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "confirm": "true",
            "off_session": "true",
        }
        description = metadata.get("description")
        if description:
            data["description"] = description
        for key, value in metadata.items():
            if key != "description" and value is not None:
                data[f"metadata[{key}]"] = str(value)
        intent = await self._request(
            "POST", "/v1/payment_intents", data=data, idempotency_key=idempotency_key
        )
        status = intent.get("status", "")
        if status not in _SUCCESS_STATUSES:
            raise PaymentError(
                status or "unknown_status",
                f"payment intent {intent.get('id')} ended in {status}",
                reference=intent.get("id"),
                status=status,
            )
        if status == "processing":
            logger.warning("stripe charge %s for %s accepted but still processing", intent.get("id"), customer_id)
        else:
            logger.info("stripe charge %s %s for %s", intent.get("id"), status, customer_id)
        return ChargeResult(
            reference=intent["id"],
            status=status,
            amount_minor=int(intent.get("amount", amount_minor)),
            currency=intent.get("currency", currency),
            metadata=dict(intent.get("metadata") or {}),
        )
