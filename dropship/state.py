"""Fulfillment state as read from PaymentIntent metadata.

Metadata stays a flat string map at the Stripe boundary; everything else works
with the tagged states below.
"""

import json
from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation

from dropship.errors import InvalidInput

PAYOUT_MISMATCH = "incomplete_payout_mismatch"
AMOUNT_MISMATCH = "incomplete_amount_mismatch"
INSUFFICIENT_FUNDS = "incomplete_insufficient_funds"

CENT = Decimal("0.01")


@dataclass(frozen=True)
class AwaitingPayout:
    pass


@dataclass(frozen=True)
class PayoutMismatch:
    reason: str


@dataclass(frozen=True)
class Fulfilled:
    order_id: str


FulfillmentState = AwaitingPayout | PayoutMismatch | Fulfilled


def derive_state(metadata) -> FulfillmentState:
    metadata = metadata or {}
    order_id = metadata.get("ali_order_id")
    if order_id:
        return Fulfilled(order_id)
    status = metadata.get("payout_status") or ""
    if status in (PAYOUT_MISMATCH, AMOUNT_MISMATCH):
        return PayoutMismatch(status)
    return AwaitingPayout()


def to_decimal(value) -> Decimal:
    if value in (None, ""):
        return Decimal(0)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal(0)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_money(amount) -> str:
    return str(to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP))


def expected_total_cents(metadata) -> int:
    """round((subtotal + tax + fee) * 100)"""
    metadata = metadata or {}
    total = sum(
        (to_decimal(metadata.get(key)) for key in ("subtotal", "tax", "fee")),
        Decimal(0),
    )
    return to_cents(total)


def payout_cents(metadata) -> int:
    """Merchant proceeds: floor((subtotal + tax) * 100)."""
    metadata = metadata or {}
    net = to_decimal(metadata.get("subtotal")) + to_decimal(metadata.get("tax"))
    return int((net * 100).to_integral_value(rounding=ROUND_FLOOR))


def parse_items(metadata) -> list[dict]:
    raw = (metadata or {}).get("items")
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return items if isinstance(items, list) else []


def parse_shipping(metadata) -> dict | None:
    raw = (metadata or {}).get("shipping")
    if not raw:
        return None
    try:
        shipping = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return shipping if isinstance(shipping, dict) else None


def to_supplier_items(items: list[dict]) -> list[dict]:
    """Map stored cart lines to supplier lines; raises InvalidInput on a bad line."""
    lines = []
    for item in items:
        if not isinstance(item, dict):
            raise InvalidInput(f"cart line is not an object: {item!r}")
        product_id = item.get("aliId") or item.get("id")
        if not product_id:
            raise InvalidInput(f"cart line has no product id: {item!r}")
        raw_quantity = item.get("quantity")
        try:
            quantity = 1 if raw_quantity in (None, "") else int(raw_quantity)
        except (TypeError, ValueError):
            raise InvalidInput(f"bad quantity for {product_id}: {raw_quantity!r}")
        if quantity < 1:
            raise InvalidInput(f"bad quantity for {product_id}: {quantity}")
        lines.append({
            "id": str(product_id),
            "quantity": quantity,
            "sku_attr": item.get("skuAttr") or item.get("sku_attr") or "",
        })
    return lines
