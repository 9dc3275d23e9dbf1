import copy
import json
import os
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_dropship.db")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dropship.claims import ClaimRegistry
from dropship.database import Base
from dropship.notifications import Notifier
from dropship.orchestrator import FulfillmentOrchestrator
from dropship.supplier import SupplierClient, SupplierOrder

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


class FakeGateway:
    """In-memory stand-in for dropship.stripe_service."""

    def __init__(self, balance=1_000_000):
        self.intents = {}
        self.customers = {}
        self.payment_methods = {}
        self.payouts = []
        self.updates = []
        self.retrieved = []
        self.balance = balance

    def add_intent(self, intent):
        self.intents[intent["id"]] = copy.deepcopy(intent)
        return intent

    def retrieve_intent(self, intent_id, expand=None):
        self.retrieved.append(intent_id)
        return copy.deepcopy(self.intents[intent_id])

    def update_metadata(self, intent_id, metadata):
        self.updates.append((intent_id, dict(metadata)))
        stored = self.intents[intent_id]["metadata"]
        stored.update({k: "" if v is None else str(v) for k, v in metadata.items()})
        return copy.deepcopy(self.intents[intent_id])

    def search_intents_by_metadata(self, key, value, limit=1):
        found = [
            copy.deepcopy(i) for i in self.intents.values()
            if i["metadata"].get(key) == value
        ]
        return found[:limit]

    def retrieve_balance(self):
        return {"available": [{"amount": self.balance, "currency": "usd"}]}

    def create_payout(self, amount, currency, metadata, idempotency_key=None):
        payout = {
            "id": f"po_{len(self.payouts) + 1}",
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
        }
        self.payouts.append(payout)
        return payout

    def retrieve_customer(self, customer_id):
        return self.customers[customer_id]

    def retrieve_payment_method(self, payment_method_id):
        return self.payment_methods[payment_method_id]

    def metadata(self, intent_id):
        return self.intents[intent_id]["metadata"]


def make_intent(intent_id="pi_happy", **overrides):
    metadata = {
        "order_number": "20240611123456",
        "subtotal": "100.00",
        "tax": "7.00",
        "fee": "3.51",
        "expected_payout_cents": "10700",
        "payout_id": "po_1",
        "payout_status": "pending",
        "items": json.dumps([{
            "id": "desktop-fountain",
            "aliId": "1005006134567890",
            "title": "ZenFlow Desktop Fountain",
            "quantity": 1,
            "skuAttr": "14:193#Black",
        }]),
        "shipping": json.dumps({
            "firstName": "Ada",
            "lastName": "Lovelace",
            "address1": "1 Main St",
            "city": "Denver",
            "state": "CO",
            "zip": "80202",
            "country": "US",
            "phone": "5550100",
        }),
    }
    metadata.update(overrides.pop("metadata", {}))
    intent = {
        "id": intent_id,
        "amount": 11051,
        "currency": "usd",
        "receipt_email": "buyer@example.com",
        "customer": None,
        "payment_method": {
            "id": "pm_1",
            "card": {"brand": "visa", "last4": "4242"},
            "billing_details": {"email": None},
        },
        "latest_charge": {
            "id": "ch_1",
            "billing_details": {"email": None},
            "balance_transaction": {"fee": 350},
        },
        "metadata": metadata,
    }
    intent.update(overrides)
    return intent


def payout_event(intent_id="pi_happy", amount=10700, payout_id="po_1"):
    return {
        "id": "evt_payout",
        "type": "payout.paid",
        "data": {"object": {
            "id": payout_id,
            "amount": amount,
            "currency": "usd",
            "status": "paid",
            "metadata": {"payment_intent_id": intent_id},
        }},
    }


def intent_event(event_type, intent_id="pi_happy"):
    return {
        "id": f"evt_{event_type}",
        "type": event_type,
        "data": {"object": {"id": intent_id}},
    }


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def supplier(mocker):
    client = mocker.Mock(spec=SupplierClient)
    client.place_order.return_value = SupplierOrder(
        order_id="8180000000001",
        tracking_number="LP00123456789",
        order_cost=Decimal("40.25"),
    )
    return client


@pytest.fixture
def notifier(mocker):
    return mocker.Mock(spec=Notifier)


@pytest.fixture
def claims():
    return ClaimRegistry(session_factory=TestingSessionLocal)


@pytest.fixture
def orchestrator(gateway, supplier, notifier, claims):
    return FulfillmentOrchestrator(
        gateway=gateway, supplier=supplier, notifier=notifier, claims=claims
    )
