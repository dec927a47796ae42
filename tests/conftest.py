import hashlib
import hmac
import itertools
import json
import os
import tempfile
import time
from datetime import timedelta
from types import SimpleNamespace

# settings are read at import time
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="artify-uploads-"))
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["EMAIL_MAX_ATTEMPTS"] = "2"
os.environ["EMAIL_RETRY_WAIT"] = "0"

import mongomock  # noqa: E402
import pytest  # noqa: E402
import stripe  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import auth  # noqa: E402
import catalog  # noqa: E402
import config  # noqa: E402
import coupons  # noqa: E402
import database  # noqa: E402
import notifications  # noqa: E402
from schemas import Coupon, Product  # noqa: E402


class RecordingMailer(notifications.Mailer):
    def __init__(self):
        self.sent = []
        self.failures_left = 0

    def send(self, to, subject, html):
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("SMTP unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html})

    def to(self, address):
        return [m for m in self.sent if m["to"] == address]


@pytest.fixture(autouse=True)
def db(monkeypatch):
    mock_db = mongomock.MongoClient().db
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    return mock_db


@pytest.fixture(autouse=True)
def mailer():
    recorder = RecordingMailer()
    notifications.set_mailer(recorder)
    yield recorder
    notifications.set_mailer(None)


@pytest.fixture
def stripe_intents(monkeypatch):
    """Stub PaymentIntent.create; returns the list of parameter dicts it was called with."""
    calls = []
    counter = itertools.count(1)

    def create(**params):
        calls.append(params)
        n = next(counter)
        return SimpleNamespace(id=f"pi_test_{n}", client_secret=f"pi_test_{n}_secret_abc")

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)
    return calls


@pytest.fixture
def client():
    from main import app
    return TestClient(app)


def make_user(email, role="user", first_name="Asha"):
    user_id = database.create_document("user", {
        "firstName": first_name,
        "lastName": "Rao",
        "email": email,
        "password_hash": auth.hash_password("secret123"),
        "role": role,
        "is_active": True,
    })
    doc = database.db["user"].find_one({"_id": database.to_object_id(user_id)})
    return SimpleNamespace(id=user_id, doc=doc, headers={"Authorization": f"Bearer {auth.create_token(doc)}"})


@pytest.fixture
def customer():
    return make_user("asha@example.com")


@pytest.fixture
def other_customer():
    return make_user("ravi@example.com", first_name="Ravi")


@pytest.fixture
def admin():
    return make_user("admin@example.com", role="admin", first_name="Admin")


def make_product(name="Custom Portrait", price=500.0, category="portraits", status="active", **extra):
    product = catalog.create_product(Product(
        name=name, description=f"{name} description", price=price, category=category, status=status, **extra))
    return str(product["_id"])


@pytest.fixture
def product():
    return make_product()


def make_coupon(code="SAVE10", discount_type="percentage", value=10, **extra):
    now = database.now()
    fields = {
        "code": code,
        "description": f"{code} coupon",
        "discountType": discount_type,
        "discountValue": value,
        "startDate": now - timedelta(days=1),
        "endDate": now + timedelta(days=30),
    }
    fields.update(extra)
    return coupons.create_coupon(Coupon(**fields))


def billing(email="asha@example.com"):
    return {
        "firstName": "Asha",
        "lastName": "Rao",
        "email": email,
        "phone": "9999999999",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "zipCode": "560001",
        "country": "IN",
    }


def order_payload(product_id, intent_id="pi_123", price=500.0, quantity=2, gst=None, discount=0.0,
                  coupon=None, total=None):
    subtotal = price * quantity
    gst = round(subtotal * config.GST_RATE, 2) if gst is None else gst
    payload = {
        "items": [{"product": product_id, "quantity": quantity, "price": price}],
        "subtotal": subtotal,
        "gst": gst,
        "discount": discount,
        "total": subtotal + gst - discount if total is None else total,
        "paymentIntentId": intent_id,
        "billingDetails": billing(),
    }
    if coupon:
        payload["coupon"] = coupon
    return payload


def sign_payload(body, secret=None):
    """Stripe-Signature header value (v1 scheme) for ``body``."""
    timestamp = int(time.time())
    secret = secret or config.STRIPE_WEBHOOK_SECRET
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_webhook(event_type, obj, secret=None, event_id="evt_test"):
    """Body and Stripe-Signature header for a webhook signed the way Stripe signs them."""
    body = json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })
    return body, {"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"}


def intent_event(intent_id, event_type="payment_intent.succeeded"):
    return signed_webhook(event_type, {"id": intent_id, "object": "payment_intent"})
