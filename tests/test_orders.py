"""Tests for the customer-facing orders endpoints."""

import json
from datetime import datetime, timezone

from werkzeug.security import generate_password_hash

from billing_app.models.order import Order
from billing_app.models.user import User


def _order(session, user_id, session_id, created_at, **fields):
    order = Order(
        user_id=user_id,
        type=fields.pop("type", "card"),
        stripe_session_id=session_id,
        created_at=created_at,
        **fields,
    )
    session.add(order)
    session.commit()
    return order


class TestMyOrders:

    def test_requires_login(self, client):
        assert client.get("/api/me/orders").status_code == 401

    def test_lists_own_orders_newest_first(self, client, user, login, db_session):
        old = _order(db_session, user.id, "cs_old", datetime(2026, 1, 1, tzinfo=timezone.utc))
        new = _order(
            db_session, user.id, "cs_new", datetime(2026, 1, 5, tzinfo=timezone.utc),
            fulfillment_status="shipped", tracking_url="https://track.example/1",
            delivery_window="Mon-Wed",
        )

        login(user)
        orders = json.loads(client.get("/api/me/orders").data)["orders"]

        assert [o["id"] for o in orders] == [new.id, old.id]
        assert orders[0]["fulfillment_status"] == "shipped"
        assert orders[0]["tracking_url"] == "https://track.example/1"
        assert orders[0]["delivery_window"] == "Mon-Wed"
        assert orders[1]["fulfillment_status"] == "order_placed"

    def test_excludes_other_accounts(self, client, user, login, db_session):
        other = User(email="other@example.com", password_hash=generate_password_hash("other123"))
        db_session.add(other)
        db_session.commit()
        _order(db_session, other.id, "cs_other", datetime(2026, 1, 2, tzinfo=timezone.utc))

        login(user)
        assert json.loads(client.get("/api/me/orders").data)["orders"] == []


class TestMyOrder:

    def test_returns_owned_order(self, client, user, login, db_session):
        order = _order(db_session, user.id, "cs_one", datetime(2026, 1, 3, tzinfo=timezone.utc))
        login(user)
        resp = client.get(f"/api/me/orders/{order.id}")
        assert resp.status_code == 200
        assert json.loads(resp.data)["order"]["stripe_session_id"] == "cs_one"

    def test_other_accounts_order_is_404(self, client, user, login, db_session):
        other = User(email="other@example.com")
        db_session.add(other)
        db_session.commit()
        order = _order(db_session, other.id, "cs_x", datetime(2026, 1, 3, tzinfo=timezone.utc))

        login(user)
        resp = client.get(f"/api/me/orders/{order.id}")
        assert resp.status_code == 404
