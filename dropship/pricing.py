import random
from datetime import datetime, timezone
from decimal import Decimal

from dropship.state import to_cents

TAX_RATE = Decimal("0.07")          # 7 % flat state tax
STRIPE_FEE_RATE = Decimal("0.03")   # padded to cover card fees
STRIPE_FEE_FLAT = Decimal("0.30")

# server-side prices; anything the client sends is ignored
CATALOGUE = {
    "desktop-fountain": {
        "title": "ZenFlow Desktop Fountain",
        "price": Decimal("109.99"),
        "aliId": "1005006134567890",
    },
}


def calculate_order_amount(subtotal: Decimal) -> dict:
    """Returns tax and fee in dollars and the total in cents."""
    subtotal = Decimal(subtotal)
    tax = subtotal * TAX_RATE
    fee = (subtotal + tax) * STRIPE_FEE_RATE + STRIPE_FEE_FLAT
    return {"tax": tax, "fee": fee, "total": to_cents(subtotal + tax + fee)}


def price_items(items: list[dict]) -> tuple[Decimal, list[dict]]:
    """Subtotal from the catalogue plus the line items to store on the intent."""
    subtotal = Decimal(0)
    lines = []
    for item in items:
        product = CATALOGUE.get(item.get("id"))
        if product is None:
            continue
        quantity = int(item.get("quantity") or 1)
        subtotal += product["price"] * quantity
        lines.append({
            "id": item["id"],
            "aliId": product["aliId"],
            "title": product["title"],
            "quantity": quantity,
            "skuAttr": item.get("skuAttr") or "",
        })
    return subtotal, lines


def generate_order_number(now: datetime | None = None) -> str:
    # e.g. 20240611123456
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y%m%d}{random.randint(0, 999999):06d}"
