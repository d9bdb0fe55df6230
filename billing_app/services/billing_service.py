"""Billing service — shared Stripe data helpers and pull reconciliation.

Responsible for:
- Converting Stripe timestamps and locating a subscription's period end
- Logging billing audit events
- Building the billing summary for an account, pulling fresh state from
  Stripe when the webhook-fed snapshot may be stale

The summary path is read-only: it never writes to the account snapshot,
and every Stripe failure degrades to the locally stored values.
"""

import logging
from datetime import datetime, timezone

from billing_app.extensions import db
from billing_app.models.audit import AuditEvent
from billing_app.services.entitlements import (
    compute_is_subscribed,
    extract_entitlement,
    line_items,
    plan_key_from_metadata,
)

logger = logging.getLogger(__name__)

# Stripe statuses that count as a live subscription when choosing from a list
LIVE_STATUSES = ("active", "trialing")


def from_timestamp(ts):
    """Unix seconds -> aware UTC datetime (None for empty/invalid input)."""
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def as_utc(dt):
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def isoformat(dt):
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def extract_period_end(sub_data):
    """Extract current_period_end from a Stripe subscription object.

    In newer Stripe API versions, current_period_end has moved from the
    subscription top level to items.data[0].current_period_end.
    This helper checks both locations.

    Returns a timezone-aware datetime or None.
    """
    if not sub_data:
        return None

    # Try top-level first (older API versions / webhook payloads)
    ts = sub_data.get("current_period_end")

    # Fall back to items.data[0].current_period_end (newer API)
    if not ts:
        items = line_items(sub_data)
        if items:
            ts = items[0].get("current_period_end")

    return from_timestamp(ts)


def invoice_period_end(invoice):
    """Billing period end off the first line item of an invoice."""
    if not invoice:
        return None
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    period = lines[0].get("period") or {}
    return from_timestamp(period.get("end"))


def invoice_subscription_id(invoice):
    """Subscription id of an invoice (top level, or parent details on newer APIs)."""
    sub_id = invoice.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def log_billing_audit(user_id, action, metadata=None, actor_user_id=None):
    """Log a billing-related audit event.

    Actor is None when the change was initiated by a Stripe event.
    """
    event = AuditEvent(
        user_id=user_id,
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()


# ──────────────────────────────────────────────
# Pull reconciliation (billing summary)
# ──────────────────────────────────────────────

def _local_summary(user, gateway):
    return {
        "stripe_configured": gateway.configured,
        "customer_exists": bool(user.stripe_customer_id),
        "plan": user.plan or "free",
        "interval": user.plan_interval or "monthly",
        "subscription_status": user.subscription_status or "free",
        "is_subscribed": bool(user.is_subscribed),
        "current_period_end": isoformat(user.current_period_end),
        "seat_count": user.seat_count or 1,
        "add_on_quantity": user.add_on_quantity or 0,
        "stripe_customer_id": user.stripe_customer_id,
        "stripe_subscription_id": user.stripe_subscription_id,
        "source": "local",
    }


def _fetch_subscription(user, gateway):
    """Tiers 1 and 2: stored subscription id, then the customer's list."""
    if user.stripe_subscription_id:
        try:
            sub = gateway.retrieve_subscription(user.stripe_subscription_id)
            if sub:
                return sub
        except Exception as e:
            logger.warning(
                f"Billing summary: retrieve {user.stripe_subscription_id} failed "
                f"for user {user.id}: {e}"
            )

    try:
        subs = gateway.list_subscriptions(user.stripe_customer_id)
    except Exception as e:
        logger.warning(
            f"Billing summary: list subscriptions failed for customer "
            f"{user.stripe_customer_id}: {e}"
        )
        return None

    for sub in subs:
        if sub.get("status") in LIVE_STATUSES:
            return sub
    return subs[0] if subs else None


def _fetch_invoice_period_end(user, gateway):
    """Tier 3: period end off the latest invoice's first line."""
    try:
        invoice = gateway.latest_invoice(user.stripe_customer_id)
    except Exception as e:
        logger.warning(
            f"Billing summary: invoice lookup failed for customer "
            f"{user.stripe_customer_id}: {e}"
        )
        return None
    return invoice_period_end(invoice)


def get_billing_summary(user, gateway, table):
    """Best currently-knowable billing state for an account.

    Stripe values win over the stored snapshot where Stripe answers;
    anything Stripe can't supply falls back to the snapshot. Never raises.
    """
    summary = _local_summary(user, gateway)

    if not gateway.configured or not user.stripe_customer_id:
        return summary

    subscription = _fetch_subscription(user, gateway)
    period_end = None

    if subscription:
        summary["source"] = "stripe"
        status = subscription.get("status")
        if status:
            summary["subscription_status"] = status
            summary["is_subscribed"] = compute_is_subscribed(status)
        summary["stripe_subscription_id"] = (
            subscription.get("id") or summary["stripe_subscription_id"]
        )

        entitlement = extract_entitlement(
            line_items(subscription),
            table,
            plan_key_from_metadata(subscription.get("metadata") or {}),
        )
        if entitlement.known:
            summary["plan"] = entitlement.plan
            summary["interval"] = entitlement.interval
            summary["seat_count"] = entitlement.seat_count
            summary["add_on_quantity"] = entitlement.add_on_quantity

        period_end = extract_period_end(subscription)

    if period_end is None:
        period_end = _fetch_invoice_period_end(user, gateway)
        if period_end is not None:
            summary["source"] = "stripe"

    if period_end is not None:
        summary["current_period_end"] = period_end.isoformat()

    return summary


def list_invoices(user, gateway, limit=10):
    """Recent invoices for the account, shaped for the client.

    Returns [] when Stripe isn't configured or the account has no customer.
    Raises stripe.StripeError on API failures.
    """
    if not gateway.configured or not user.stripe_customer_id:
        return []

    invoices = gateway.list_invoices(user.stripe_customer_id, limit=limit)
    return [
        {
            "id": inv.get("id"),
            "number": inv.get("number"),
            "status": inv.get("status"),
            "currency": inv.get("currency"),
            "total": inv.get("total"),
            "amount_paid": inv.get("amount_paid"),
            "amount_due": inv.get("amount_due"),
            "created": isoformat(from_timestamp(inv.get("created"))),
            "hosted_invoice_url": inv.get("hosted_invoice_url"),
            "invoice_pdf": inv.get("invoice_pdf"),
        }
        for inv in invoices
    ]
