"""
Pytest configuration and fixtures.
"""
import json
from datetime import timedelta
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from nisarg_store.app import create_app
from nisarg_store.events import OrderEventHub
from nisarg_store.gateways import PhonePeGateway, RazorpayGateway
from nisarg_store.orders import PricingRules, build_order_document
from nisarg_store.reconciliation import ReconciliationEngine
from nisarg_store.signatures import razorpay_webhook_signature
from nisarg_store.store import OrderStore

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "whsec_test_secret"
PHONEPE_MERCHANT_ID = "MERCHANTUAT"
PHONEPE_SALT_KEY = "099eb0cd-02cf-4e2a-8aca-3e6c6aff0399"
PHONEPE_SALT_INDEX = "1"
COUPONS = {"GREEN10": {"type": "percent", "value": 10}, "FLAT50": {"type": "flat", "value": 50}}


class FakeMailer:
    """Records confirmation emails instead of sending them."""

    def __init__(self, fail_with: Optional[str] = None):
        self.sent: List[str] = []
        self.fail_with = fail_with

    def send_order_confirmation(self, order_document: Dict):
        if self.fail_with:
            return False, self.fail_with
        self.sent.append(order_document["order_id"])
        return True, None


def fake_response(status_code: int = 200, payload: Optional[Dict] = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    return response


def order_payload(**overrides) -> Dict:
    """A storefront checkout payload: items worth 850 plus standard shipping."""
    payload = {
        "customer": {
            "firstName": "Asha",
            "lastName": "Patel",
            "email": "Asha.Patel@Example.com",
            "phone": "9876543210",
        },
        "shippingAddress": {
            "address1": "12 Lake Road",
            "city": "Pune",
            "state": "Maharashtra",
            "pincode": "411001",
            "country": "India",
        },
        "items": [
            {"productId": "bamboo-brush", "name": "Bamboo Toothbrush", "quantity": 1, "price": 500},
            {"productId": "jute-bag", "name": "Jute Bag", "quantity": 2, "price": 175},
        ],
        "shippingMethod": {"type": "standard"},
        "total": 930,
        "paymentMethod": "razorpay",
    }
    payload.update(overrides)
    return payload


def razorpay_webhook(event: str, order_ref: str, amount: int = 93000,
                     payment_id: str = "pay_test_1", status: str = "captured"):
    """Return ``(raw_body, signature)`` for a signed Razorpay webhook."""
    raw_body = json.dumps(
        {
            "event": event,
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "order_id": order_ref,
                        "amount": amount,
                        "status": status,
                    }
                }
            },
        }
    ).encode("utf-8")
    return raw_body, razorpay_webhook_signature(raw_body, RAZORPAY_WEBHOOK_SECRET)


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient().nisarg_test


@pytest.fixture
def store(mongo_db) -> OrderStore:
    order_store = OrderStore(mongo_db.orders)
    order_store.ensure_indexes()
    return order_store


@pytest.fixture
def pricing() -> PricingRules:
    return PricingRules(coupons=COUPONS)


@pytest.fixture
def razorpay_gateway() -> RazorpayGateway:
    return RazorpayGateway(
        RAZORPAY_KEY_ID,
        RAZORPAY_KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET,
        status_attempts=2,
        backoff=0,
    )


@pytest.fixture
def phonepe_gateway() -> PhonePeGateway:
    return PhonePeGateway(
        PHONEPE_MERCHANT_ID, PHONEPE_SALT_KEY, PHONEPE_SALT_INDEX, status_attempts=2, backoff=0
    )


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def events() -> OrderEventHub:
    return OrderEventHub()


@pytest.fixture
def engine(store, pricing, razorpay_gateway, phonepe_gateway, mailer, events) -> ReconciliationEngine:
    return ReconciliationEngine(
        store,
        {"razorpay": razorpay_gateway, "phonepe": phonepe_gateway},
        pricing,
        mailer=mailer,
        events=events,
        validity=timedelta(minutes=30),
        retention=timedelta(hours=24),
    )


@pytest.fixture
def create_gateway_order(engine, pricing):
    """Create a pending gateway order through the engine."""

    def _create(provider: str = "razorpay", **overrides) -> Dict:
        document = build_order_document(
            order_payload(paymentMethod=provider, **overrides), pricing, provider
        )
        order, _ = engine.create_order(document)
        return order

    return _create


@pytest.fixture
def app(mongo_db):
    flask_app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough",
            "FRONTEND_URL": "https://shop.example.com",
            "PAYMENT_REDIRECT_URL": "",
            "PAYMENT_GATEWAY": "razorpay",
            "RAZORPAY_KEY_ID": RAZORPAY_KEY_ID,
            "RAZORPAY_KEY_SECRET": RAZORPAY_KEY_SECRET,
            "RAZORPAY_WEBHOOK_SECRET": RAZORPAY_WEBHOOK_SECRET,
            "PHONEPE_MERCHANT_ID": PHONEPE_MERCHANT_ID,
            "PHONEPE_SALT_KEY": PHONEPE_SALT_KEY,
            "PHONEPE_SALT_INDEX": PHONEPE_SALT_INDEX,
            "PHONEPE_ENV": "sandbox",
            "GATEWAY_STATUS_ATTEMPTS": 2,
            "GATEWAY_RETRY_BACKOFF": 0,
            "SHIPPING_RATES": "",
            "COUPONS": COUPONS,
            "RESEND_API_KEY": "re_test_key",
            "ORDER_EMAIL_SENDER": "orders@example.com",
            "ADMIN_ORDER_EMAIL": "admin@example.com",
        },
        db=mongo_db,
    )
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def resend_send(monkeypatch):
    """Replace the Resend API call with a recorder."""
    sent: List[Dict] = []

    def _send(payload):
        sent.append(payload)
        return {"id": f"email_{len(sent)}"}

    monkeypatch.setattr("nisarg_store.emails.resend.Emails.send", _send)
    return sent


def _auth_headers(app, email: str, is_admin: bool) -> Dict[str, str]:
    with app.app_context():
        token = create_access_token(identity=email, additional_claims={"is_admin": is_admin})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(app) -> Dict[str, str]:
    return _auth_headers(app, "admin@example.com", True)


@pytest.fixture
def customer_headers(app) -> Dict[str, str]:
    return _auth_headers(app, "asha.patel@example.com", False)
