import json
import os

import pytest
import stripe
from fastapi.testclient import TestClient
from jose import jwt

import dropship.routes
from dropship.credentials import CredentialStore
from dropship.errors import RefreshFailed, SupplierError
from dropship.main import app as fastapi_app
from dropship.state import expected_total_cents
from conftest import TestingSessionLocal


@pytest.fixture
def client(monkeypatch, mocker):
    mocker.patch.dict(os.environ, {"JWT_SECRET": "jwt-test", "ALI_APP_KEY": "app-key"})
    monkeypatch.setattr("dropship.credentials.SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def operator_headers():
    token = jwt.encode({"sub": "operator"}, "jwt-test", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def test_health(client):
    response = client.get("/api/health")
    assert response.json() == {"status": "ok"}


def test_create_payment_intent_prices_from_catalogue(client, mocker):
    mock_intent = mocker.Mock()
    mock_intent.id = "pi_123"
    mock_intent.client_secret = "pi_123_secret_abc"
    create = mocker.patch(
        "dropship.routes.stripe_service.create_payment_intent", return_value=mock_intent
    )

    response = client.post("/api/create-or-update-payment-intent", json={
        "items": [{"id": "desktop-fountain", "quantity": 2, "price": 0.01}],
        "email": "buyer@example.com",
        "shipping": {"firstName": "Ada", "city": "Denver"},
    })

    assert response.status_code == 200
    assert response.json() == {"id": "pi_123", "clientSecret": "pi_123_secret_abc"}

    amount, currency, metadata, email = create.call_args.args
    assert currency == "usd"
    assert email == "buyer@example.com"
    assert metadata["subtotal"] == "219.98"
    assert len(metadata["order_number"]) == 14
    assert json.loads(metadata["items"])[0]["aliId"] == "1005006134567890"
    assert json.loads(metadata["shipping"])["city"] == "Denver"
    # the fulfillment integrity check must hold for what checkout stores
    assert expected_total_cents(metadata) == amount


def test_update_payment_intent_keeps_order_number(client, mocker):
    mock_intent = mocker.Mock(id="pi_123", client_secret="secret")
    update = mocker.patch(
        "dropship.routes.stripe_service.update_payment_intent", return_value=mock_intent
    )

    response = client.post("/api/create-or-update-payment-intent", json={
        "paymentIntentId": "pi_123",
        "items": [{"id": "desktop-fountain", "quantity": 1}],
    })

    assert response.status_code == 200
    intent_id, amount, metadata, email = update.call_args.args
    assert intent_id == "pi_123"
    assert "order_number" not in metadata
    assert email is None


@pytest.mark.parametrize("payload", [
    {"items": []},
    {"items": [{"id": "unknown-product", "quantity": 1}]},
])
def test_checkout_rejects_empty_orders(client, payload):
    response = client.post("/api/create-or-update-payment-intent", json=payload)
    assert response.status_code == 400


def test_checkout_reports_stripe_errors(client, mocker):
    mocker.patch(
        "dropship.routes.stripe_service.create_payment_intent",
        side_effect=stripe.InvalidRequestError("Amount too small", "amount"),
    )

    response = client.post("/api/create-or-update-payment-intent", json={
        "items": [{"id": "desktop-fountain"}],
    })

    assert response.status_code == 500
    assert "Amount too small" in response.json()["detail"]


def test_retrieve_payment_intent_with_card(client, mocker):
    retrieve = mocker.patch("dropship.routes.stripe_service.retrieve_intent", return_value={
        "id": "pi_123",
        "amount": 11051,
        "payment_method": {"card": {"brand": "mastercard", "last4": "4444"}},
        "latest_charge": None,
    })

    response = client.get(
        "/api/retrieve-payment-intent",
        params={"clientSecret": "pi_123_secret_abc", "expandCards": "1"},
    )

    assert response.json() == {"amount": 11051, "brand": "MASTERCARD", "last4": "4444"}
    assert retrieve.call_args.args == ("pi_123",)


def test_oauth_start_redirects(client):
    response = client.get("/ali/oauth/start", follow_redirects=False)

    assert response.status_code == 307
    location = response.headers["location"]
    assert "response_type=code" in location
    assert "client_id=app-key" in location


def test_oauth_callback_requires_code(client):
    assert client.get("/ali/oauth/callback").status_code == 400


def test_oauth_callback_stores_token(client, mocker):
    mocker.patch.object(dropship.routes.supplier_client, "exchange_code", return_value={
        "access_token": "a1", "refresh_token": "r1", "expires_in": 86400,
    })

    response = client.get("/ali/oauth/callback", params={"code": "auth-code"})

    assert response.status_code == 200
    assert response.json()["connected"] is True
    assert CredentialStore(session_factory=TestingSessionLocal).get_valid_token() == "a1"


def test_oauth_callback_supplier_error(client, mocker):
    mocker.patch.object(
        dropship.routes.supplier_client, "exchange_code",
        side_effect=SupplierError("oauth", "invalid code"),
    )

    response = client.get("/ali/oauth/callback", params={"code": "bad"})

    assert response.status_code == 502


def test_manual_refresh_requires_operator_token(client):
    assert client.post("/ali/oauth/manual-refresh", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.post("/ali/oauth/manual-refresh", headers={"Authorization": "nope"}).status_code == 401


def test_manual_refresh_without_token(client, operator_headers):
    response = client.post("/ali/oauth/manual-refresh", headers=operator_headers)

    assert response.status_code == 404


def test_manual_refresh(client, operator_headers, mocker):
    CredentialStore(session_factory=TestingSessionLocal).store_token("a1", "r1", 86400)
    refresh = mocker.patch.object(dropship.routes.credential_store, "_request_refresh", return_value={
        "access_token": "a2", "expires_in": 3600,
    })

    response = client.post("/ali/oauth/manual-refresh", headers=operator_headers)

    assert response.status_code == 200
    assert response.json()["success"] is True
    refresh.assert_called_once_with("r1")


def test_manual_refresh_failure(client, operator_headers, mocker):
    CredentialStore(session_factory=TestingSessionLocal).store_token("a1", "r1", 86400)
    mocker.patch.object(
        dropship.routes.credential_store, "_request_refresh", side_effect=RefreshFailed("revoked")
    )

    response = client.post("/ali/oauth/manual-refresh", headers=operator_headers)

    assert response.status_code == 502


def test_oauth_status(client, operator_headers):
    response = client.get("/ali/oauth/status", headers=operator_headers)

    assert response.json() == {"connected": False, "expires_at": None}


def test_supplier_webhook_requires_order_id(client):
    assert client.post("/ali/order-webhook", json={}).status_code == 400


def test_supplier_webhook_acknowledges(client, mocker):
    shipment = mocker.patch.object(
        dropship.routes.orchestrator, "on_supplier_shipment",
        side_effect=SupplierError("credential", "not connected"),
    )

    response = client.post("/ali/order-webhook", json={"order_id": 8180000000001})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    shipment.assert_called_once_with("8180000000001")
