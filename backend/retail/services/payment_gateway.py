# Overview: Payment gateway client; refunds against the original card charge.

"""
Payment Gateway

Only the refund call is needed server-side: charges are confirmed by the
storefront before the order is submitted, and the resulting payment intent
id is stored on the order.

refund() is called while the refund transaction is open. It must either
return a gateway reference or raise PaymentGatewayError; the caller rolls
back on error. The idempotency key makes a retried call safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from flask import current_app

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """The gateway rejected the call or could not be reached."""
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    status: str
    amount_cents: int


class HttpPaymentGateway:
    """Stripe-compatible refunds endpoint over httpx."""

    def __init__(
        self,
        base_url: str,
        secret_key: str | None,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )

    def refund(self, payment_reference: str, amount_cents: int, *, idempotency_key: str | None = None) -> GatewayRefund:
        if not self.secret_key:
            raise PaymentGatewayError("Payment gateway is not configured")
        if amount_cents <= 0:
            raise PaymentGatewayError("Refund amount must be positive")

        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            with self._client() as client:
                response = client.post(
                    "/v1/refunds",
                    data={"payment_intent": payment_reference, "amount": str(amount_cents)},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.warning("Refund request for %s failed: %s", payment_reference, exc)
            raise PaymentGatewayError(f"Payment gateway unreachable: {exc}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("Gateway rejected refund for %s (%s): %s", payment_reference, response.status_code, message)
            raise PaymentGatewayError(message, status_code=response.status_code)

        try:
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("refund response is not an object")
            refund_id = body["id"]
        except (ValueError, KeyError) as exc:
            raise PaymentGatewayError("Payment gateway returned an invalid response") from exc

        return GatewayRefund(
            id=str(refund_id),
            status=str(body.get("status") or "succeeded"),
            amount_cents=int(body.get("amount") or amount_cents),
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Payment gateway error (HTTP {response.status_code})"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return f"Payment gateway error (HTTP {response.status_code})"


def init_app(app) -> None:
    app.extensions.setdefault(
        "payment_gateway",
        HttpPaymentGateway(
            app.config["PAYMENT_GATEWAY_URL"],
            app.config.get("PAYMENT_GATEWAY_SECRET_KEY"),
            timeout=app.config.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10.0),
        ),
    )


def get_payment_gateway():
    return current_app.extensions["payment_gateway"]
