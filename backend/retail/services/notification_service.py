# Overview: Best-effort transactional email; failures are logged and never surface to callers.

from __future__ import annotations

import logging

import httpx
from flask import current_app

logger = logging.getLogger(__name__)


class EmailClient:
    """JSON email API client (POST {from, to, subject, text})."""

    def __init__(
        self,
        api_url: str | None,
        api_key: str | None,
        sender: str,
        *,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    def send(self, to: str, subject: str, body: str) -> None:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(
                self.api_url,
                json={"from": self.sender, "to": [to], "subject": subject, "text": body},
                headers=headers,
            )
            response.raise_for_status()


def init_app(app) -> None:
    app.extensions.setdefault(
        "email_client",
        EmailClient(
            app.config.get("EMAIL_API_URL"),
            app.config.get("EMAIL_API_KEY"),
            app.config.get("EMAIL_FROM", "orders@example.com"),
            timeout=app.config.get("EMAIL_TIMEOUT_SECONDS", 5.0),
        ),
    )


def send_email(to: str | None, subject: str, body: str) -> bool:
    """Returns True if the provider accepted the message."""
    client = current_app.extensions.get("email_client")
    if not to or client is None or not client.enabled:
        logger.debug("Email disabled or no recipient; skipping %r", subject)
        return False
    try:
        client.send(to, subject, body)
    except Exception as exc:
        logger.warning("Failed to send email %r to %s: %s", subject, to, exc)
        return False
    return True


def _money(cents: int | None) -> str:
    return f"{(cents or 0) / 100:.2f}"


def notify_order_confirmation(order) -> bool:
    try:
        lines = [
            f"- {item.product_name} x {item.quantity}: {_money(item.line_total_cents)}"
            for item in order.items
        ]
        body = "\n".join(
            [
                f"Hi {order.customer_name or 'there'},",
                "",
                f"Thank you for your order #{order.id}.",
                *lines,
                "",
                f"Total: {_money(order.total_cents)}",
            ]
        )
        recipient = order.customer_email
    except Exception as exc:
        logger.warning("Could not build confirmation email for order: %s", exc)
        return False
    return send_email(recipient, f"Order #{order.id} confirmed", body)


def notify_refund_processed(return_doc, refund) -> bool:
    try:
        recipient = return_doc.order.customer_email
        method = "store credit" if refund.method == "store_credit" else "your original payment method"
        body = "\n".join(
            [
                f"Your return #{return_doc.id} for order #{return_doc.order_id} has been refunded.",
                f"Amount: {_money(refund.amount_cents)} to {method}.",
                f"Reference: {refund.payment_reference}",
            ]
        )
    except Exception as exc:
        logger.warning("Could not build refund email: %s", exc)
        return False
    return send_email(recipient, f"Refund processed for return #{return_doc.id}", body)
