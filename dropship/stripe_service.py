import stripe

from dropship.config import get_settings
from dropship.errors import SignatureInvalid

stripe.api_key = get_settings().stripe_secret_key

INTENT_EXPAND = ["latest_charge.balance_transaction", "payment_method", "customer"]


def _plain(obj):
    # StripeObject is not a dict subclass on current SDKs
    return obj.to_dict() if hasattr(obj, "to_dict") else obj


def construct_event(payload: bytes, sig_header: str | None, secret: str | None):
    """Raises ValueError on a malformed payload, SignatureInvalid on a bad signature."""
    if not sig_header or not secret:
        raise SignatureInvalid("Missing signature or secret")
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, secret)
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalid(str(exc)) from exc
    return _plain(event)


def retrieve_intent(intent_id: str, expand=None):
    return _plain(stripe.PaymentIntent.retrieve(
        intent_id, expand=INTENT_EXPAND if expand is None else expand
    ))


def update_metadata(intent_id: str, metadata: dict):
    # Stripe merges metadata keys server side; values must be strings
    return _plain(stripe.PaymentIntent.modify(
        intent_id,
        metadata={k: "" if v is None else str(v) for k, v in metadata.items()},
    ))


def search_intents_by_metadata(key: str, value: str, limit: int = 1):
    result = stripe.PaymentIntent.search(
        query=f"metadata['{key}']:'{value}'",
        limit=limit,
    )
    return [_plain(intent) for intent in result.data]


def retrieve_balance():
    return _plain(stripe.Balance.retrieve())


def create_payout(amount: int, currency: str, metadata: dict, idempotency_key: str | None = None):
    return _plain(stripe.Payout.create(
        amount=amount,
        currency=currency,
        statement_descriptor="Dropship profit",
        metadata=metadata,
        idempotency_key=idempotency_key,
    ))


def retrieve_customer(customer_id: str):
    return _plain(stripe.Customer.retrieve(customer_id))


def retrieve_payment_method(payment_method_id: str):
    return _plain(stripe.PaymentMethod.retrieve(payment_method_id))


def create_payment_intent(amount: int, currency: str, metadata: dict, receipt_email: str | None = None):
    return stripe.PaymentIntent.create(
        amount=amount,
        currency=currency,
        payment_method_types=["card"],
        metadata=metadata,
        receipt_email=receipt_email,
    )


def update_payment_intent(intent_id: str, amount: int, metadata: dict, receipt_email: str | None = None):
    return stripe.PaymentIntent.modify(
        intent_id,
        amount=amount,
        payment_method_types=["card"],
        metadata=metadata,
        receipt_email=receipt_email,
    )
