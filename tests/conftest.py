"""Shared test fixtures for the billing reconciliation test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- user / admin: accounts to act as
- gateway: in-memory StripeGateway stand-in installed on the app
- deliver / make_event / make_subscription: webhook event builders
"""

import copy
import itertools
import json

import pytest
import stripe
from werkzeug.security import generate_password_hash

from billing_app import create_app
from billing_app.extensions import GATEWAY_KEY, db as _db
from billing_app.models.user import User

# Fixed event clock: 2026-01-01T00:00:00Z, advanced one second per event
BASE_EVENT_TS = 1767225600


class FakeGateway:
    """StripeGateway with canned data instead of HTTP calls.

    - subscriptions:          sub id -> subscription dict
    - customer_subscriptions: customer id -> list of subscription dicts
    - invoices:               customer id -> list of invoice dicts (newest first)
    - failing:                method names that raise APIConnectionError
    """

    def __init__(self):
        self.api_key = "sk_test_fake"
        self.webhook_secret = "whsec_test_fake"
        self.subscriptions = {}
        self.customer_subscriptions = {}
        self.invoices = {}
        self.prices = {}
        self.failing = set()
        self.calls = []
        self.canceled = []

    @property
    def configured(self):
        return bool(self.api_key)

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.failing:
            raise stripe.APIConnectionError("Stripe is unreachable")

    def construct_event(self, payload, sig_header):
        if sig_header != "valid_sig":
            raise stripe.SignatureVerificationError("No signatures found", sig_header)
        return json.loads(payload)

    def retrieve_subscription(self, subscription_id):
        self._call("retrieve_subscription", subscription_id)
        if subscription_id not in self.subscriptions:
            raise stripe.InvalidRequestError(
                f"No such subscription: {subscription_id}", "id"
            )
        return copy.deepcopy(self.subscriptions[subscription_id])

    def list_subscriptions(self, customer_id, limit=10):
        self._call("list_subscriptions", customer_id)
        return copy.deepcopy(self.customer_subscriptions.get(customer_id, []))[:limit]

    def cancel_at_period_end(self, subscription_id):
        self._call("cancel_at_period_end", subscription_id)
        self.canceled.append(subscription_id)
        sub = copy.deepcopy(self.subscriptions.get(subscription_id, {"id": subscription_id}))
        sub["cancel_at_period_end"] = True
        return sub

    def retrieve_price(self, price_id):
        self._call("retrieve_price", price_id)
        if price_id not in self.prices:
            raise stripe.InvalidRequestError(f"No such price: {price_id}", "id")
        return copy.deepcopy(self.prices[price_id])

    def list_invoices(self, customer_id, limit=10):
        self._call("list_invoices", customer_id)
        return copy.deepcopy(self.invoices.get(customer_id, []))[:limit]

    def latest_invoice(self, customer_id):
        invoices = self.list_invoices(customer_id, limit=1)
        return invoices[0] if invoices else None


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def gateway(app, monkeypatch):
    """Install a FakeGateway as the app's Stripe gateway for one test."""
    fake = FakeGateway()
    monkeypatch.setitem(app.extensions, GATEWAY_KEY, fake)
    return fake


@pytest.fixture
def user(db_session):
    """A free account already linked to a Stripe customer."""
    user = User(
        email="member@example.com",
        password_hash=generate_password_hash("member123"),
        full_name="Member User",
        stripe_customer_id="cus_member",
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def admin(db_session):
    admin = User(
        email="admin@example.com",
        password_hash=generate_password_hash("admin123"),
        full_name="Admin User",
        is_admin=True,
    )
    db_session.add(admin)
    db_session.commit()
    return admin


@pytest.fixture
def login(client):
    """Log the test client in as the given account (password = local part + 123)."""

    def _login(account):
        password = account.email.split("@")[0] + "123"
        resp = client.post("/auth/login", json={"email": account.email, "password": password})
        assert resp.status_code == 200, resp.data
        return resp

    return _login


@pytest.fixture
def make_event():
    """Build a Stripe event dict with a unique id and an increasing created time."""
    counter = itertools.count(1)

    def _make_event(event_type, obj, created=None, event_id=None):
        n = next(counter)
        return {
            "id": event_id or f"evt_test_{n:04d}",
            "type": event_type,
            "created": created if created is not None else BASE_EVENT_TS + n,
            "data": {"object": obj},
        }

    return _make_event


@pytest.fixture
def make_subscription():
    """Build a Stripe subscription dict with expanded prices."""

    def _make_subscription(sub_id="sub_member", customer="cus_member",
                           status="active", items=(("price_plus_monthly", 1),),
                           period_end=1769904000, metadata=None, trial_end=None,
                           period_end_on_item=False):
        sub = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "metadata": metadata or {},
            "trial_end": trial_end,
            "items": {
                "data": [
                    {"price": {"id": price_id}, "quantity": quantity}
                    for price_id, quantity in items
                ]
            },
        }
        if period_end_on_item:
            for item in sub["items"]["data"]:
                item["current_period_end"] = period_end
        else:
            sub["current_period_end"] = period_end
        return sub

    return _make_subscription


@pytest.fixture
def deliver(client, gateway):
    """POST a webhook event through the FakeGateway's signature check."""

    def _deliver(event, signature="valid_sig"):
        return client.post(
            "/stripe/webhooks",
            data=json.dumps(event),
            content_type="application/json",
            headers={"Stripe-Signature": signature},
        )

    return _deliver
