import json
import secrets
from urllib.parse import urlencode

import stripe
import structlog
from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from dropship import stripe_service
from dropship.auth import verify_token
from dropship.config import get_settings
from dropship.credentials import credential_store
from dropship.errors import CredentialError, NotConnected, SupplierError, Uncorrelated
from dropship.notifications import card_details
from dropship.orchestrator import orchestrator
from dropship.pricing import calculate_order_amount, generate_order_number, price_items
from dropship.supplier import supplier_client

logger = structlog.get_logger(__name__)

router = APIRouter()


class CheckoutItem(BaseModel):
    id: str
    quantity: int = 1
    skuAttr: str | None = None


class CheckoutRequest(BaseModel):
    items: list[CheckoutItem] = []
    paymentIntentId: str | None = None
    email: str | None = None
    shipping: dict | None = None


@router.get("/api/health")
def health():
    return {"status": "ok"}


@router.post("/api/create-or-update-payment-intent")
def create_or_update_payment_intent(request: CheckoutRequest):
    if not request.items:
        raise HTTPException(status_code=400, detail="Missing or empty items array")

    subtotal, lines = price_items([item.model_dump() for item in request.items])
    if not lines:
        raise HTTPException(status_code=400, detail="No known products in items")

    amounts = calculate_order_amount(subtotal)
    metadata = {
        "subtotal": str(subtotal),
        "tax": str(amounts["tax"]),
        "fee": str(amounts["fee"]),
        "items": json.dumps(lines),
        "shipping": json.dumps(request.shipping) if request.shipping else "",
    }

    try:
        if request.paymentIntentId:
            intent = stripe_service.update_payment_intent(
                request.paymentIntentId, amounts["total"], metadata, request.email or None
            )
        else:
            metadata["order_number"] = generate_order_number()
            intent = stripe_service.create_payment_intent(
                amounts["total"], "usd", metadata, request.email or None
            )
    except stripe.StripeError as exc:
        logger.exception("payment_intent_upsert_failed")
        raise HTTPException(status_code=500, detail=str(exc))

    return {"id": intent.id, "clientSecret": intent.client_secret}


@router.get("/api/retrieve-payment-intent")
def retrieve_payment_intent(clientSecret: str, expandCards: str | None = None):
    intent_id = clientSecret.split("_secret_")[0]
    expand = ["latest_charge", "payment_method"] if expandCards == "1" else []
    try:
        intent = stripe_service.retrieve_intent(intent_id, expand=expand)
    except stripe.StripeError as exc:
        logger.exception("payment_intent_retrieve_failed", intent_id=intent_id)
        raise HTTPException(status_code=500, detail=str(exc))

    brand = last4 = None
    if expandCards == "1":
        payment_method = intent.get("payment_method")
        brand, last4 = card_details(
            None if isinstance(payment_method, str) else payment_method,
            intent.get("latest_charge"),
        )
    return {"amount": intent["amount"], "brand": brand, "last4": last4}


def build_auth_url() -> str:
    settings = get_settings()
    params = {
        "response_type": "code",
        "client_id": settings.ali_app_key or "",
        "redirect_uri": settings.ali_redirect_uri or "",
        "state": secrets.token_hex(8),
        "site": "aliexpress",
    }
    return f"{settings.ali_auth_url}?{urlencode(params)}"


@router.get("/ali/oauth/start")
def oauth_start():
    return RedirectResponse(build_auth_url())


@router.get("/ali/oauth/callback")
def oauth_callback(code: str | None = None):
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    try:
        data = supplier_client.exchange_code(code)
    except SupplierError as exc:
        logger.exception("supplier_oauth_failed")
        raise HTTPException(status_code=502, detail=str(exc))

    token = credential_store.store_token(
        data["access_token"],
        data.get("refresh_token") or "",
        int(data.get("expires_in") or 0),
    )
    return {"connected": True, "expires_at": token.expires_at.isoformat()}


@router.post("/ali/oauth/manual-refresh")
def oauth_manual_refresh(auth=Depends(verify_token)):
    try:
        token = credential_store.refresh()
    except NotConnected:
        raise HTTPException(status_code=404, detail="No token found in database")
    except CredentialError as exc:
        logger.exception("supplier_manual_refresh_failed")
        raise HTTPException(status_code=502, detail=str(exc))

    return {
        "success": True,
        "message": "Token refreshed successfully",
        "expires_at": token.expires_at.isoformat(),
    }


@router.get("/ali/oauth/status")
def oauth_status(auth=Depends(verify_token)):
    return credential_store.status()


@router.post("/ali/order-webhook")
def supplier_order_webhook(payload: dict | None = Body(default=None)):
    payload = payload or {}
    order_id = next(
        (payload[key] for key in ("orderId", "order_id", "id", "ae_order_id") if payload.get(key)),
        None,
    )
    if not order_id:
        raise HTTPException(status_code=400, detail="orderId missing in callback")

    log = logger.bind(order_id=str(order_id))
    try:
        outcome = orchestrator.on_supplier_shipment(str(order_id))
        log.info("supplier_callback_processed", outcome=outcome)
    except Uncorrelated as exc:
        log.warning("supplier_callback_uncorrelated", reason=str(exc))
    except (SupplierError, stripe.StripeError):
        log.exception("supplier_callback_failed")

    return {"received": True}
