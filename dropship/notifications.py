"""Transactional order e-mails.

One SMTP send per call and no retries. Optional enrichment (card brand, map,
address, tracking) is dropped from the message when it is missing.
"""

import smtplib
import ssl
from email.message import EmailMessage
from html import escape
from urllib.parse import quote

import structlog

from dropship.config import Settings, get_settings
from dropship.errors import NotificationError
from dropship.state import format_money, parse_items, parse_shipping, to_decimal

logger = structlog.get_logger(__name__)

SUCCESS = "success"
FAILURE = "failure"
TRACKING_UPDATE = "tracking-update"
KINDS = (SUCCESS, FAILURE, TRACKING_UPDATE)

STORE_NAME = "Zen Essentials"


def _get(obj, key, default=None):
    if obj is None or isinstance(obj, str):
        return default
    value = obj.get(key) if hasattr(obj, "get") else getattr(obj, key, None)
    return default if value is None else value


def order_number(intent) -> str:
    return _get(_get(intent, "metadata", {}), "order_number") or intent["id"]


def tracking_url(tracking_number: str) -> str:
    return f"https://t.17track.net/en#nums={quote(tracking_number)}"


def card_details(payment_method=None, charge=None) -> tuple[str | None, str | None]:
    card = _get(payment_method, "card")
    if card is None:
        card = _get(_get(charge, "payment_method_details"), "card")
    if card is None:
        return None, None
    brand = _get(card, "brand")
    if brand:
        brand = brand.replace("_", " ").upper()
    return brand, _get(card, "last4")


def shipping_lines(intent, charge=None) -> list[str]:
    """Address lines from the Stripe shipping block or the checkout metadata."""
    shipping = _get(charge, "shipping") or _get(intent, "shipping")
    if shipping and _get(shipping, "address"):
        addr = shipping["address"]
        lines = [
            _get(shipping, "name", ""),
            ", ".join(p for p in (_get(addr, "line1"), _get(addr, "line2")) if p),
            ", ".join(p for p in (_get(addr, "city"), _get(addr, "postal_code")) if p),
            " ".join(p for p in (_get(addr, "state"), _get(addr, "country")) if p),
        ]
        return [line for line in lines if line]

    meta = parse_shipping(_get(intent, "metadata", {}))
    if not meta:
        return []
    name = " ".join(p for p in (meta.get("firstName"), meta.get("lastName")) if p)
    lines = [
        name,
        ", ".join(p for p in (meta.get("address1"), meta.get("address2")) if p),
        ", ".join(p for p in (meta.get("city"), meta.get("zip")) if p),
        " ".join(p for p in (meta.get("state"), meta.get("country")) if p),
    ]
    return [line for line in lines if line]


def location_label(intent, charge=None) -> str | None:
    shipping = _get(charge, "shipping") or _get(intent, "shipping")
    if shipping and _get(shipping, "address"):
        addr = shipping["address"]
        parts = (_get(addr, "city"), _get(addr, "state"), _get(addr, "country"))
    else:
        meta = parse_shipping(_get(intent, "metadata", {})) or {}
        parts = (meta.get("city"), meta.get("state"), meta.get("country"))
    label = ", ".join(p for p in parts if p)
    return label or None


def _container(inner: str) -> str:
    return f"""
  <div style="font-family:system-ui,Segoe UI,Roboto,sans-serif;
              max-width:600px;margin:0 auto;padding:24px;color:#111">
    {inner}
    <p style="margin-top:32px;font-size:13px;color:#666">{STORE_NAME}</p>
  </div>"""


class Notifier:
    def __init__(self, settings: Settings | None = None, smtp_factory=None):
        self._settings = settings
        self._smtp_factory = smtp_factory or smtplib.SMTP

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def send(self, kind: str, intent, to: str, **context) -> EmailMessage:
        if kind not in KINDS:
            raise ValueError(f"Unknown notification kind: {kind}")
        if kind == SUCCESS:
            subject, html, text = self.render_success(intent, **context)
        elif kind == FAILURE:
            subject, html, text = self.render_failure(intent)
        else:
            subject, html, text = self.render_tracking(intent, context["tracking_number"])

        message = EmailMessage()
        message["From"] = self.settings.email_from or self.settings.smtp_user or ""
        message["To"] = to
        message["Subject"] = subject
        message["List-Unsubscribe"] = f"<mailto:{self.settings.support_email}>"
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        self._deliver(message)
        logger.info("notification_sent", kind=kind, intent_id=intent["id"], to=to)
        return message

    def _deliver(self, message: EmailMessage) -> None:
        settings = self.settings
        if not settings.smtp_host:
            raise NotificationError("SMTP_HOST not configured")
        try:
            with self._smtp_factory(settings.smtp_host, settings.smtp_port) as smtp:
                if settings.smtp_user and settings.smtp_pass:
                    smtp.starttls(context=ssl.create_default_context())
                    smtp.login(settings.smtp_user, settings.smtp_pass)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"SMTP send failed: {exc}") from exc

    def render_success(self, intent, charge=None, payment_method=None,
                       tracking_number: str | None = None) -> tuple[str, str, str]:
        metadata = _get(intent, "metadata", {})
        number = order_number(intent)
        total = to_decimal(intent["amount"]) / 100
        items = parse_items(metadata)

        rows = "".join(
            f'<tr><td style="text-align:left">{escape(str(item.get("title") or item.get("id")))}</td>'
            f'<td style="text-align:right">{escape(str(item.get("quantity", 1)))}</td></tr>'
            for item in items
        )
        receipt = "".join(
            f'<tr><td style="text-align:left">{label}</td>'
            f'<td style="text-align:right">${format_money(value)}</td></tr>'
            for label, value in (
                ("Subtotal", _get(metadata, "subtotal", 0)),
                ("Tax", _get(metadata, "tax", 0)),
                ("Processing&nbsp;Fee", _get(metadata, "fee", 0)),
            )
        )

        address = shipping_lines(intent, charge)
        brand, last4 = card_details(payment_method, charge)

        sections = [
            '<h2 style="color:#0f766e">Thank you for your purchase!</h2>',
            f"<p>Your order #<strong>{escape(number)}</strong> is confirmed.</p>",
        ]
        if rows:
            sections.append(
                '<h3>Items</h3><table style="width:100%;border-collapse:collapse">'
                '<thead><tr><th style="text-align:left">Product</th>'
                f'<th style="text-align:right">Qty</th></tr></thead><tbody>{rows}</tbody></table>'
            )
        sections.append(
            '<h3>Receipt</h3><table style="width:100%;border-collapse:collapse"><tbody>'
            f'{receipt}<tr><td style="font-weight:bold">Total</td>'
            f'<td style="text-align:right;font-weight:bold">${format_money(total)}</td></tr>'
            "</tbody></table>"
        )
        if address:
            sections.append(
                "<h3>Shipped&nbsp;To</h3><p>" + "<br/>".join(escape(line) for line in address) + "</p>"
            )
        if last4:
            sections.append(
                f"<h3>Paid&nbsp;With</h3><p>{escape(brand or 'CARD')} •••• {escape(last4)}</p>"
            )

        map_url = self.map_url(location_label(intent, charge))
        if map_url:
            sections.append(
                '<h3>Current&nbsp;Location</h3>'
                f'<img src="{escape(map_url)}" alt="Package location" width="600" '
                'style="display:block;width:100%;max-width:600px;border:0">'
            )
        if tracking_number:
            sections.append(
                f'<p>Track your package any time here: '
                f'<a href="{escape(tracking_url(tracking_number))}">{escape(tracking_number)}</a></p>'
            )
        sections.append("<p>We appreciate your business!</p>")

        text = [
            "Thank you for your purchase!",
            f"Order #: {number}",
            f"Total: ${format_money(total)}",
        ]
        if address:
            text += ["", "Shipped To:", *address]
        if last4:
            text += ["", f"Paid with {brand or 'CARD'} **** {last4}"]
        if tracking_number:
            text += ["", f"Tracking: {tracking_url(tracking_number)}"]
        text += ["", "We appreciate your business!"]

        subject = f"Your {STORE_NAME} order is confirmed"
        return subject, _container("\n".join(sections)), "\n".join(text)

    def render_failure(self, intent) -> tuple[str, str, str]:
        support = self.settings.support_email
        html = _container(f"""
    <h2 style="color:#b91c1c">We're sorry, your payment did not go through.</h2>
    <p>Unfortunately there was an error processing your order
      <strong>{escape(intent["id"])}</strong>.</p>
    <p>Your items are <strong>not</strong> on the way. Please try again or contact support at
      <a href="mailto:{escape(support)}">{escape(support)}</a>.</p>""")
        text = (
            "We're sorry, your payment did not go through.\n"
            f"Order reference: {intent['id']}\n"
            f"Your items are not on the way. Please try again or contact {support}."
        )
        return f"Issue with your {STORE_NAME} order", html, text

    def render_tracking(self, intent, tracking_number: str) -> tuple[str, str, str]:
        number = order_number(intent)
        url = tracking_url(tracking_number)
        html = _container(f"""
    <h2 style="color:#0f766e">Your order is on its way!</h2>
    <p>Order #<strong>{escape(number)}</strong> has shipped.</p>
    <p>Tracking number: <a href="{escape(url)}">{escape(tracking_number)}</a></p>""")
        text = (
            "Your order is on its way!\n"
            f"Order #: {number}\n"
            f"Tracking number: {tracking_number}\n{url}"
        )
        return f"Your {STORE_NAME} order has shipped", html, text

    def map_url(self, label: str | None) -> str | None:
        key = self.settings.google_maps_key
        if not key or not label:
            return None
        return (
            "https://maps.googleapis.com/maps/api/staticmap?size=600x320&scale=2&zoom=4"
            f"&markers=color:red|{quote(label)}&key={quote(key)}"
        )


notifier = Notifier()
