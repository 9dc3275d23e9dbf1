"""Webhook-driven order fulfillment.

Stripe delivers ``payment_intent.succeeded`` and ``payout.paid`` in any order,
possibly more than once and possibly concurrently. A supplier order is placed
at most once per PaymentIntent: ``ali_order_id`` in the intent metadata marks
a fulfilled intent, and a row in ``fulfillment_claims`` serializes placement
while that marker is not yet written.

``payout.paid`` is the authoritative trigger. It only fulfills when the payout
matches ``expected_payout_cents`` and the intent amount matches the stored
subtotal, tax and fee. ``payment_intent.succeeded`` tries the same placement
early so tracking shows up sooner, then creates the payout.

Handlers never raise: the webhook is acknowledged whatever happens here, and
a failed placement is retried only when Stripe redelivers ``payout.paid``.
"""

from decimal import Decimal

import stripe
import structlog

from dropship import stripe_service
from dropship.claims import ClaimRegistry
from dropship.errors import (
    AlreadyFulfilled,
    IntegrityMismatch,
    InvalidInput,
    SupplierError,
    Uncorrelated,
)
from dropship.notifications import FAILURE, SUCCESS, TRACKING_UPDATE, Notifier
from dropship.notifications import notifier as default_notifier
from dropship.state import (
    AMOUNT_MISMATCH,
    INSUFFICIENT_FUNDS,
    PAYOUT_MISMATCH,
    Fulfilled,
    derive_state,
    expected_total_cents,
    format_money,
    parse_items,
    parse_shipping,
    payout_cents,
    to_decimal,
    to_supplier_items,
)
from dropship.supplier import SupplierClient, SupplierOrder, supplier_client

logger = structlog.get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYOUT_PAID = "payout.paid"
CHECKOUT_COMPLETED = "checkout.session.completed"


def _get(obj, key, default=None):
    if obj is None or isinstance(obj, str):
        return default
    value = obj.get(key)
    return default if value is None else value


def _as_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def stripe_fee(intent) -> Decimal:
    """Processing fee in dollars from the expanded charge, 0 when unknown."""
    transaction = _get(_get(intent, "latest_charge"), "balance_transaction")
    fee = _get(transaction, "fee")
    if fee is None:
        return Decimal(0)
    return to_decimal(fee) / 100


class FulfillmentOrchestrator:
    def __init__(self, gateway=stripe_service, supplier: SupplierClient | None = None,
                 notifier: Notifier | None = None, claims: ClaimRegistry | None = None):
        self.gateway = gateway
        self.supplier = supplier or supplier_client
        self.notifier = notifier or default_notifier
        self.claims = claims or ClaimRegistry()
        self._handlers = {
            PAYMENT_SUCCEEDED: self.on_payment_succeeded,
            PAYOUT_PAID: self.on_payout_paid,
            PAYMENT_FAILED: self.on_payment_failed,
            CHECKOUT_COMPLETED: self.on_checkout_completed,
        }

    def handle_event(self, event) -> str:
        """Run the handler for ``event`` and return a short outcome label."""
        event_type = event["type"]
        obj = event["data"]["object"]
        log = logger.bind(event_type=event_type, event_id=_get(event, "id"), object_id=_get(obj, "id"))

        handler = self._handlers.get(event_type)
        if handler is None:
            log.debug("webhook_event_ignored")
            return "ignored"

        try:
            outcome = handler(obj)
        except Uncorrelated as exc:
            log.warning("webhook_uncorrelated", reason=str(exc))
            return "uncorrelated"
        except IntegrityMismatch as exc:
            log.error(
                "fulfillment_integrity_mismatch",
                reason=exc.reason, expected=exc.expected, actual=exc.actual,
            )
            return exc.reason
        except AlreadyFulfilled as exc:
            log.info("fulfillment_already_done", order_id=exc.order_id)
            return "already_fulfilled"
        except (SupplierError, InvalidInput):
            log.exception("supplier_order_failed")
            return "supplier_failed"
        except stripe.StripeError:
            log.exception("stripe_call_failed")
            return "gateway_error"
        except Exception:
            log.exception("webhook_handler_failed")
            return "error"

        log.info("webhook_event_processed", outcome=outcome)
        return outcome

    # -- handlers ------------------------------------------------------------

    def on_checkout_completed(self, session) -> str:
        logger.info("checkout_session_completed", session_id=_get(session, "id"))
        return "logged"

    def on_payment_succeeded(self, base) -> str:
        intent = self.gateway.retrieve_intent(base["id"])
        outcome = "payout_only"

        if isinstance(derive_state(intent.get("metadata")), Fulfilled):
            logger.info("early_fulfillment_skipped", intent_id=intent["id"])
        else:
            try:
                order = self._place_order(intent, source=PAYMENT_SUCCEEDED)
            except (AlreadyFulfilled, SupplierError, InvalidInput) as exc:
                logger.warning("early_fulfillment_failed", intent_id=intent["id"], reason=str(exc))
            else:
                try:
                    self.gateway.update_metadata(intent["id"], {
                        "ali_order_id": order.order_id,
                        "ali_tracking": order.tracking_number or "",
                        "ali_cost_usd": format_money(order.order_cost),
                    })
                except stripe.StripeError:
                    # the completed claim repairs ali_order_id on the next delivery
                    logger.exception(
                        "order_metadata_write_failed", intent_id=intent["id"], order_id=order.order_id
                    )
                self._notify_success(intent, order)
                outcome = "fulfilled"

        # payout does not depend on the supplier order
        try:
            self.create_payout_for_intent(intent)
        except stripe.StripeError:
            logger.exception("payout_creation_failed", intent_id=intent["id"])
        return outcome

    def on_payout_paid(self, payout) -> str:
        intent_id = _get(_get(payout, "metadata"), "payment_intent_id")
        if not intent_id:
            raise Uncorrelated(f"payout {_get(payout, 'id')} has no payment_intent_id")

        intent = self.gateway.retrieve_intent(intent_id)
        metadata = intent.get("metadata") or {}

        expected_payout = _as_int(metadata.get("expected_payout_cents"))
        if expected_payout is None or int(payout["amount"]) != expected_payout:
            self.gateway.update_metadata(intent_id, {"payout_status": PAYOUT_MISMATCH})
            raise IntegrityMismatch(PAYOUT_MISMATCH, expected_payout, payout["amount"])

        expected_total = expected_total_cents(metadata)
        if expected_total != int(intent["amount"]):
            self.gateway.update_metadata(intent_id, {"payout_status": AMOUNT_MISMATCH})
            raise IntegrityMismatch(AMOUNT_MISMATCH, expected_total, intent["amount"])

        state = derive_state(metadata)
        if isinstance(state, Fulfilled):
            self._record_payout(intent, payout)
            raise AlreadyFulfilled(intent_id, state.order_id)

        order = self._place_order(intent, source=PAYOUT_PAID)

        fee = stripe_fee(intent)
        profit = to_decimal(intent["amount"]) / 100 - fee - order.order_cost
        self.gateway.update_metadata(intent_id, {
            "ali_order_id": order.order_id,
            "ali_tracking": order.tracking_number or "",
            "ali_cost_usd": format_money(order.order_cost),
            "stripe_fee_usd": format_money(fee),
            "profit_usd": format_money(profit),
            "payout_id": payout["id"],
            "payout_status": "paid",
        })
        logger.info(
            "intent_fulfilled",
            intent_id=intent_id, order_id=order.order_id, profit_usd=format_money(profit),
        )

        self._notify_success(intent, order)
        return "fulfilled"

    def on_payment_failed(self, intent) -> str:
        email = self.resolve_email(intent)
        if not email:
            logger.warning("failure_email_skipped_no_address", intent_id=intent["id"])
            return "no_email"
        self._notify(FAILURE, intent, email)
        return "notified"

    def on_supplier_shipment(self, order_id: str) -> str:
        """Supplier push callback: copy tracking onto the intent and tell the customer."""
        tracking = self.supplier.get_order_tracking(order_id)
        if not tracking:
            logger.info("supplier_tracking_pending", order_id=order_id)
            return "no_tracking"

        intents = self.gateway.search_intents_by_metadata("ali_order_id", order_id)
        if not intents:
            raise Uncorrelated(f"no PaymentIntent for supplier order {order_id}")
        intent = intents[0]

        if _get(intent.get("metadata"), "ali_tracking") == tracking:
            return "unchanged"
        self.gateway.update_metadata(intent["id"], {"ali_tracking": tracking})

        email = self.resolve_email(intent)
        if email:
            self._notify(TRACKING_UPDATE, intent, email, tracking_number=tracking)
        else:
            logger.warning("tracking_email_skipped_no_address", intent_id=intent["id"])
        return "tracking_updated"

    # -- steps ---------------------------------------------------------------

    def _place_order(self, intent, source: str) -> SupplierOrder:
        intent_id = intent["id"]
        claim = self.claims.claim(intent_id, source)
        if not claim.acquired:
            if claim.order_id:
                # order exists but its metadata write was lost
                self.gateway.update_metadata(intent_id, {"ali_order_id": claim.order_id})
            raise AlreadyFulfilled(intent_id, claim.order_id)

        metadata = intent.get("metadata") or {}
        try:
            items = to_supplier_items(parse_items(metadata))
            shipping = parse_shipping(metadata) or intent.get("shipping")
            order = self.supplier.place_order(items, shipping)
        except Exception:
            self.claims.release(intent_id)
            raise

        self.claims.complete(intent_id, order.order_id)
        return order

    def _record_payout(self, intent, payout) -> None:
        metadata = intent.get("metadata") or {}
        if metadata.get("payout_status") == "paid" and metadata.get("payout_id") == payout["id"]:
            return
        update = {"payout_id": payout["id"], "payout_status": "paid"}
        if not metadata.get("profit_usd"):
            fee = stripe_fee(intent)
            cost = to_decimal(metadata.get("ali_cost_usd"))
            update["stripe_fee_usd"] = format_money(fee)
            update["profit_usd"] = format_money(to_decimal(intent["amount"]) / 100 - fee - cost)
        self.gateway.update_metadata(intent["id"], update)

    def create_payout_for_intent(self, intent) -> bool:
        metadata = intent.get("metadata") or {}
        if metadata.get("payout_id"):
            logger.info("payout_exists", intent_id=intent["id"], payout_id=metadata["payout_id"])
            return False

        amount = payout_cents(metadata)
        if amount <= 0:
            logger.warning("payout_not_positive", intent_id=intent["id"], amount=amount)
            return False

        balance = self.gateway.retrieve_balance()
        available = sum(
            int(entry["amount"])
            for entry in (balance.get("available") or [])
            if entry["currency"] == intent["currency"]
        )
        if available < amount:
            self.gateway.update_metadata(intent["id"], {
                "payout_status": INSUFFICIENT_FUNDS,
                "expected_payout_cents": amount,
            })
            logger.warning("payout_deferred_insufficient_funds",
                           intent_id=intent["id"], available=available, amount=amount)
            return False

        payout = self.gateway.create_payout(
            amount,
            intent["currency"],
            {
                "payment_intent_id": intent["id"],
                "order_number": metadata.get("order_number") or intent["id"],
            },
            idempotency_key=f"payout-{intent['id']}",
        )
        self.gateway.update_metadata(intent["id"], {
            "payout_id": payout["id"],
            "expected_payout_cents": amount,
            "payout_status": "pending",
        })
        logger.info("payout_created", intent_id=intent["id"], payout_id=payout["id"], amount=amount)
        return True

    # -- customer contact ----------------------------------------------------

    def resolve_email(self, intent) -> str | None:
        """receipt e-mail, then customer, then payment method, then charges."""
        if intent.get("receipt_email"):
            return intent["receipt_email"]

        customer = intent.get("customer")
        if isinstance(customer, str):
            customer = self._lookup(self.gateway.retrieve_customer, customer)
        if customer and not _get(customer, "deleted") and _get(customer, "email"):
            return customer["email"]

        payment_method = intent.get("payment_method")
        if isinstance(payment_method, str):
            payment_method = self._lookup(self.gateway.retrieve_payment_method, payment_method)
        email = _get(_get(payment_method, "billing_details"), "email")
        if email:
            return email

        for charge in self._charges(intent):
            email = _get(_get(charge, "billing_details"), "email")
            if email:
                return email
        return None

    def _charges(self, intent):
        """Most recent charge first."""
        latest = intent.get("latest_charge")
        if latest is not None and not isinstance(latest, str):
            yield latest
        for charge in reversed(_get(_get(intent, "charges"), "data", [])):
            yield charge

    def _lookup(self, fetch, object_id):
        try:
            return fetch(object_id)
        except stripe.StripeError:
            logger.warning("email_lookup_failed", object_id=object_id, exc_info=True)
            return None

    def _notify_success(self, intent, order: SupplierOrder) -> None:
        email = self.resolve_email(intent)
        if not email:
            logger.warning("success_email_skipped_no_address", intent_id=intent["id"])
            return
        payment_method = intent.get("payment_method")
        self._notify(
            SUCCESS, intent, email,
            charge=_get(intent, "latest_charge"),
            payment_method=None if isinstance(payment_method, str) else payment_method,
            tracking_number=order.tracking_number if order.has_tracking else None,
        )

    def _notify(self, kind: str, intent, email: str, **context) -> None:
        try:
            self.notifier.send(kind, intent, email, **context)
        except Exception:
            logger.exception("notification_failed", kind=kind, intent_id=intent["id"])


orchestrator = FulfillmentOrchestrator()
