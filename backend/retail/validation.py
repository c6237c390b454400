from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


# Maximum price: $9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class LineItem:
    product_id: int
    quantity: int


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for request payloads.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals,
    and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_positive_int(value: Any, field: str) -> int:
    number = coerce_int(value, field)
    if number <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return number


def amount_to_cents(value: Any, field: str) -> int:
    """Convert a decimal money amount ("12.50", 12.5) to integer cents, half-up."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0:
        raise ValidationError(f"{field} cannot be negative")
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum allowed amount")
    return cents


def parse_money(data: dict, cents_key: str, amount_key: str, *, required: bool = False) -> int | None:
    """
    Read a money field from a payload that may carry either integer cents
    (``total_cents``) or a decimal amount (``total_amount``).
    """
    if data.get(cents_key) is not None:
        cents = coerce_int(data[cents_key], cents_key)
        if cents < 0:
            raise ValidationError(f"{cents_key} cannot be negative")
        if cents > MAX_AMOUNT_CENTS:
            raise ValidationError(f"{cents_key} exceeds maximum allowed amount")
        return cents
    if data.get(amount_key) is not None:
        return amount_to_cents(data[amount_key], amount_key)
    if required:
        raise ValidationError(f"{cents_key} or {amount_key} is required")
    return None


def _line_product_id(raw: dict) -> Any:
    if raw.get("product_id") is not None:
        return raw["product_id"]
    return raw.get("productId")


def normalize_line_items(items: Any, *, kind: str = "order") -> list[LineItem]:
    """
    Normalize a list of ``{product_id|productId, quantity}`` lines.

    Lines for the same product are merged. Output is ordered by product id,
    which is also the lock order used by stock mutations.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError(f"{kind.capitalize()} must contain at least one item")

    merged: dict[int, int] = {}
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item {index + 1} must be an object")
        raw_product_id = _line_product_id(raw)
        if raw_product_id is None:
            raise ValidationError(f"Item {index + 1} is missing product_id")
        product_id = coerce_positive_int(raw_product_id, "product_id")
        quantity = coerce_positive_int(raw.get("quantity"), "quantity")
        merged[product_id] = merged.get(product_id, 0) + quantity

    return [LineItem(product_id=pid, quantity=qty) for pid, qty in sorted(merged.items())]


def require_text(value: Any, field: str, *, max_length: int | None = None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    text = value.strip()
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return text
