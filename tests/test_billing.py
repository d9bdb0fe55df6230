"""Tests for the billing summary and invoice endpoints.

Covers:
- Login required
- Local-only summary when Stripe isn't configured or no customer exists
- Tier 1: stored subscription id retrieved from Stripe
- Tier 2: customer subscription list (active/trialing preferred)
- Tier 3: period end from the latest invoice
- Stripe failures degrade to local values, never 500
- The summary never writes to the account
- No-store cache headers
- Invoice listing and limit clamping
"""

import json
from datetime import datetime, timezone

from billing_app.services.billing_service import get_billing_summary

NO_STORE_HEADERS = ("Cache-Control", "Pragma", "Expires", "Surrogate-Control")


class TestBillingSummaryEndpoint:

    def test_requires_login(self, client):
        resp = client.get("/api/billing/summary")
        assert resp.status_code == 401

    def test_returns_no_store_headers(self, client, gateway, user, login):
        login(user)
        resp = client.get("/api/billing/summary")
        assert resp.status_code == 200
        for header in NO_STORE_HEADERS:
            assert header in resp.headers
        assert "no-store" in resp.headers["Cache-Control"]

    def test_summary_payload_keys(self, client, gateway, user, login):
        login(user)
        data = json.loads(client.get("/api/billing/summary").data)
        for key in (
            "plan", "interval", "subscription_status", "current_period_end",
            "stripe_customer_id", "stripe_subscription_id", "stripe_configured",
            "customer_exists", "is_subscribed", "seat_count", "add_on_quantity",
            "source",
        ):
            assert key in data

    def test_stripe_values_win(self, client, gateway, user, login, db_session,
                               make_subscription):
        user.stripe_subscription_id = "sub_member"
        db_session.commit()
        gateway.subscriptions["sub_member"] = make_subscription(
            items=(("price_teams_quarterly", 1), ("price_extra_quarterly", 1)),
        )

        login(user)
        data = json.loads(client.get("/api/billing/summary").data)

        assert data["source"] == "stripe"
        assert data["plan"] == "teams"
        assert data["interval"] == "quarterly"
        assert data["seat_count"] == 2
        assert data["is_subscribed"] is True
        assert data["current_period_end"] == "2026-02-01T00:00:00+00:00"


class TestBillingSummaryTiers:

    def test_not_configured_returns_local(self, gateway, user):
        gateway.api_key = None
        summary = get_billing_summary(user, gateway, _table())
        assert summary["source"] == "local"
        assert summary["stripe_configured"] is False
        assert gateway.calls == []

    def test_no_customer_returns_local(self, gateway, db_session):
        from billing_app.models.user import User

        loner = User(email="loner@example.com")
        db_session.add(loner)
        db_session.commit()

        summary = get_billing_summary(loner, gateway, _table())
        assert summary["source"] == "local"
        assert summary["customer_exists"] is False
        assert gateway.calls == []

    def test_list_prefers_live_subscription(self, gateway, user, make_subscription):
        gateway.customer_subscriptions["cus_member"] = [
            make_subscription(sub_id="sub_old", status="canceled"),
            make_subscription(sub_id="sub_live", status="trialing",
                              items=(("price_plus_yearly", 1),)),
        ]

        summary = get_billing_summary(user, gateway, _table())
        assert summary["stripe_subscription_id"] == "sub_live"
        assert summary["subscription_status"] == "trialing"
        assert summary["interval"] == "yearly"

    def test_list_falls_back_to_most_recent(self, gateway, user, make_subscription):
        gateway.customer_subscriptions["cus_member"] = [
            make_subscription(sub_id="sub_recent", status="canceled"),
            make_subscription(sub_id="sub_older", status="incomplete_expired"),
        ]
        summary = get_billing_summary(user, gateway, _table())
        assert summary["stripe_subscription_id"] == "sub_recent"
        assert summary["is_subscribed"] is False

    def test_retrieve_failure_falls_through_to_list(self, gateway, user, db_session,
                                                    make_subscription):
        user.stripe_subscription_id = "sub_gone"
        db_session.commit()
        gateway.customer_subscriptions["cus_member"] = [make_subscription(sub_id="sub_new")]

        summary = get_billing_summary(user, gateway, _table())
        assert summary["stripe_subscription_id"] == "sub_new"

    def test_invoice_only_fallback_for_period_end(self, gateway, user):
        gateway.customer_subscriptions["cus_member"] = []
        gateway.invoices["cus_member"] = [
            {"id": "in_1", "lines": {"data": [{"period": {"end": 1772323200}}]}},
        ]

        summary = get_billing_summary(user, gateway, _table())
        assert summary["current_period_end"] == "2026-03-01T00:00:00+00:00"
        assert summary["source"] == "stripe"
        assert summary["plan"] == "free"

    def test_subscription_without_period_end_uses_invoice(self, gateway, user,
                                                          make_subscription):
        sub = make_subscription(period_end=None)
        gateway.customer_subscriptions["cus_member"] = [sub]
        gateway.invoices["cus_member"] = [
            {"id": "in_1", "lines": {"data": [{"period": {"end": 1772323200}}]}},
        ]

        summary = get_billing_summary(user, gateway, _table())
        assert summary["plan"] == "plus"
        assert summary["current_period_end"] == "2026-03-01T00:00:00+00:00"

    def test_stripe_down_degrades_to_local(self, gateway, user, db_session):
        user.plan = "plus"
        user.current_period_end = datetime(2026, 4, 1, tzinfo=timezone.utc)
        db_session.commit()
        gateway.failing.update({"retrieve_subscription", "list_subscriptions", "list_invoices"})

        summary = get_billing_summary(user, gateway, _table())
        assert summary["source"] == "local"
        assert summary["plan"] == "plus"
        assert summary["current_period_end"] == "2026-04-01T00:00:00+00:00"

    def test_summary_never_writes_account(self, gateway, user, db_session,
                                          make_subscription):
        gateway.customer_subscriptions["cus_member"] = [
            make_subscription(items=(("price_teams_monthly", 1),)),
        ]
        get_billing_summary(user, gateway, _table())
        db_session.expire_all()
        assert user.plan == "free"
        assert user.is_subscribed is False


class TestInvoicesEndpoint:

    def test_lists_invoices(self, client, gateway, user, login):
        gateway.invoices["cus_member"] = [
            {
                "id": "in_2", "number": "INV-2", "status": "paid", "currency": "gbp",
                "total": 1299, "amount_paid": 1299, "amount_due": 1299,
                "created": 1767225600, "hosted_invoice_url": "https://pay.example/in_2",
                "invoice_pdf": None,
            },
        ]
        login(user)
        resp = client.get("/api/billing/invoices")
        assert resp.status_code == 200
        assert "no-store" in resp.headers["Cache-Control"]
        invoices = json.loads(resp.data)["invoices"]
        assert invoices[0]["id"] == "in_2"
        assert invoices[0]["created"] == "2026-01-01T00:00:00+00:00"

    def test_limit_is_clamped(self, client, gateway, user, login):
        gateway.invoices["cus_member"] = [{"id": f"in_{i}"} for i in range(40)]
        login(user)
        data = json.loads(client.get("/api/billing/invoices?limit=500").data)
        assert len(data["invoices"]) == 25
        data = json.loads(client.get("/api/billing/invoices?limit=0").data)
        assert len(data["invoices"]) == 1

    def test_stripe_failure_returns_502(self, client, gateway, user, login):
        gateway.failing.add("list_invoices")
        login(user)
        resp = client.get("/api/billing/invoices")
        assert resp.status_code == 502

    def test_no_customer_returns_empty_list(self, client, gateway, admin, login):
        login(admin)
        data = json.loads(client.get("/api/billing/invoices").data)
        assert data["invoices"] == []


def _table():
    from flask import current_app

    return current_app.extensions["entitlement_table"]
