"""Ledger service — order ledger writes and reads.

Responsible for:
- Create-or-update of orders keyed by Checkout Session id or subscription id
- Collapsing duplicate subscription rows seeded by different events
- Shaping orders for the customer-facing and admin endpoints
- Admin fulfilment / tracking updates

Upserts insert inside a SAVEPOINT and fall back to re-reading the row when
a concurrent writer won the unique key, so no in-process locking is needed.
Only fields with a value are written; None means "leave as is".
"""

import logging

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from billing_app.extensions import db
from billing_app.models.order import Order
from billing_app.models.user import User
from billing_app.services.billing_service import isoformat, log_billing_audit

logger = logging.getLogger(__name__)

KEY_FIELDS = ("stripe_session_id", "stripe_subscription_id")

# Fields callers may set through upserts; "metadata" maps to Order.metadata_
_WRITABLE = {
    "user_id", "type", "stripe_session_id", "stripe_subscription_id",
    "stripe_customer_id", "quantity", "amount_total", "currency", "status",
    "fulfillment_status", "tracking_url", "delivery_name", "delivery_address",
    "delivery_window", "trial_end", "current_period_end", "metadata",
}


def _apply(order, updates):
    for name, value in updates.items():
        if value is None or name not in _WRITABLE:
            continue
        if name == "metadata":
            order.metadata_ = dict(value)
        else:
            setattr(order, name, value)


def _find_by(key_field, key_value):
    if key_field not in KEY_FIELDS:
        raise ValueError(f"Unsupported ledger key: {key_field}")
    return Order.query.filter(getattr(Order, key_field) == key_value).first()


def _insert(fields):
    """Insert a new order in a savepoint. Returns None if the key was taken."""
    order = Order()
    _apply(order, fields)
    try:
        with db.session.begin_nested():
            db.session.add(order)
    except IntegrityError:
        logger.info("Ledger insert lost a race on a unique key; re-reading")
        return None
    return order


def upsert_order(key_field, key_value, updates, insert_defaults=None):
    """Create or update the order identified by key_field == key_value.

    Args:
        key_field:       "stripe_session_id" or "stripe_subscription_id".
        key_value:       The Stripe id.
        updates:         Fields to write (None values are skipped).
        insert_defaults: Fields applied only when the row is created.

    Returns the Order (flushed).
    """
    if not key_value:
        raise ValueError(f"{key_field} is required for a ledger upsert")

    order = _find_by(key_field, key_value)
    if order is None:
        fields = dict(insert_defaults or {})
        fields.update({k: v for k, v in updates.items() if v is not None})
        fields[key_field] = key_value
        order = _insert(fields)
        if order is not None:
            return order
        order = _find_by(key_field, key_value)

    _apply(order, updates)
    db.session.flush()
    return order


def _find_orphan(session_id, customer_id, by_customer=False):
    """A session-seeded subscription row that never learned its subscription id.

    Matching by customer alone is only safe for events that start a
    subscription; anything else could belong to an older subscription.
    """
    if session_id:
        order = Order.query.filter_by(stripe_session_id=session_id).first()
        if order is not None and order.stripe_subscription_id is None:
            return order
    if customer_id and by_customer:
        return (
            Order.query
            .filter_by(
                stripe_customer_id=customer_id,
                type="subscription",
                stripe_subscription_id=None,
            )
            .order_by(Order.created_at.desc())
            .first()
        )
    return None


def collapse_duplicates(keep, subscription_id, session_id=None):
    """Delete every other order sharing the subscription id or session id.

    Bulk delete, so a row already removed by a concurrent request is simply
    not matched. Returns the number of rows deleted.
    """
    clauses = [Order.stripe_subscription_id == subscription_id]
    if session_id:
        clauses.append(Order.stripe_session_id == session_id)

    deleted = (
        Order.query
        .filter(Order.id != keep.id)
        .filter(or_(*clauses))
        .delete(synchronize_session=False)
    )
    if deleted:
        logger.info(
            f"Collapsed {deleted} duplicate ledger row(s) into order {keep.id} "
            f"(sub={subscription_id}, session={session_id})"
        )
    return deleted


def upsert_subscription_order(subscription_id, updates, session_id=None,
                              customer_id=None, adopt_orphan=False):
    """Upsert the single ledger row for a subscription, then collapse duplicates.

    checkout.session.completed (keyed by session id, maybe before the
    subscription id exists) and customer.subscription.created (keyed by
    subscription id) can each seed a row for the same purchase. When no row
    holds the subscription id yet, an orphan row seeded by the session is
    adopted instead of inserting. With adopt_orphan, the customer's newest
    session-only subscription row is adopted as a last resort.
    """
    order = _find_by("stripe_subscription_id", subscription_id)

    if order is None:
        order = _find_orphan(session_id, customer_id, by_customer=adopt_orphan)
        if order is not None:
            logger.info(
                f"Adopting session-seeded order {order.id} for sub={subscription_id}"
            )
            order.stripe_subscription_id = subscription_id
            db.session.flush()

    if order is None:
        defaults = {"type": "subscription", "stripe_customer_id": customer_id}
        order = upsert_order(
            "stripe_subscription_id", subscription_id, {}, insert_defaults=defaults
        )

    # Remove competitors before this row takes over their session id.
    collapse_duplicates(order, subscription_id, session_id)

    fields = dict(updates)
    fields["stripe_session_id"] = session_id
    fields.setdefault("type", "subscription")
    fields.setdefault("stripe_customer_id", customer_id)
    _apply(order, fields)
    db.session.flush()
    return order


def _find_unclaimed_subscription(customer_id):
    """The customer's newest live subscription row with no checkout session."""
    return (
        Order.query
        .filter(
            Order.stripe_customer_id == customer_id,
            Order.type == "subscription",
            Order.stripe_session_id.is_(None),
            Order.stripe_subscription_id.isnot(None),
            Order.status != "canceled",
        )
        .order_by(Order.created_at.desc())
        .first()
    )


def seed_subscription_checkout(session_id, customer_id, updates):
    """Record a subscription checkout that arrived without a subscription id.

    If customer.subscription.created already wrote the row, the session is
    attached to it; otherwise a row keyed by session id is seeded for the
    subscription events to adopt. A row that already holds a subscription id
    keeps its status.
    """
    order = _find_by("stripe_session_id", session_id)
    if order is None and customer_id:
        order = _find_unclaimed_subscription(customer_id)
        if order is not None:
            logger.info(
                f"Attaching checkout {session_id} to order {order.id} "
                f"(sub={order.stripe_subscription_id})"
            )
            order.stripe_session_id = session_id

    if order is None:
        return upsert_order("stripe_session_id", session_id, updates)

    fields = dict(updates)
    if order.stripe_subscription_id:
        fields.pop("status", None)
    _apply(order, fields)
    db.session.flush()
    return order


def update_subscription_order_status(subscription_id, status):
    """Set the status of an existing subscription row. Never inserts."""
    if not subscription_id:
        return None
    order = _find_by("stripe_subscription_id", subscription_id)
    if order is None:
        return None
    order.status = status
    db.session.flush()
    return order


# ──────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────

def serialize_order(order):
    """Shape a ledger row for the client.

    fulfillment_status / delivery fields only mean something for card
    orders; delivery name and address fall back to checkout metadata.
    """
    metadata = order.metadata_ or {}
    is_card = order.type == "card"

    return {
        "id": order.id,
        "type": order.type,
        "status": order.status,
        "quantity": (order.quantity or 1) if is_card else None,
        "amount_total": order.amount_total,
        "currency": order.currency or "gbp",
        "stripe_session_id": order.stripe_session_id,
        "stripe_subscription_id": order.stripe_subscription_id,
        "created_at": isoformat(order.created_at),
        "updated_at": isoformat(order.updated_at),
        # shipping / admin fields
        "fulfillment_status": (order.fulfillment_status or "order_placed") if is_card else None,
        "tracking_url": order.tracking_url,
        "delivery_name": order.delivery_name or metadata.get("deliveryName"),
        "delivery_address": order.delivery_address or metadata.get("deliveryAddress"),
        "delivery_window": order.delivery_window,
        # subscription fields
        "trial_end": isoformat(order.trial_end),
        "current_period_end": isoformat(order.current_period_end),
        "metadata": metadata,
    }


def list_orders_for_user(user_id):
    """All ledger rows owned by a user, newest first (id breaks exact ties)."""
    return (
        Order.query
        .filter_by(user_id=user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def get_order_for_user(user_id, order_id):
    return Order.query.filter_by(id=order_id, user_id=user_id).first()


def list_orders_admin(type_=None, status=None, fulfillment_status=None,
                      q=None, limit=50):
    """Cross-account ledger listing for the admin console."""
    query = Order.query
    if type_:
        query = query.filter(Order.type == type_)
    if status:
        query = query.filter(Order.status == status)
    if fulfillment_status:
        query = query.filter(Order.fulfillment_status == fulfillment_status)

    if q:
        q = q.strip()
        user = User.query.filter(
            or_(db.func.lower(User.email) == q.lower(), User.id == q)
        ).first()
        if user is None:
            return []
        query = query.filter(Order.user_id == user.id)

    return (
        query
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .all()
    )


# ──────────────────────────────────────────────
# Admin mutations
# ──────────────────────────────────────────────

def update_fulfillment_status(order_id, fulfillment_status, actor_user_id=None):
    """Advance a card order's fulfilment status.

    Raises ValueError for an unknown status or a non-card order; nothing is
    written in that case. Returns the Order, or None if it doesn't exist.
    """
    if fulfillment_status not in Order.FULFILLMENT_STATUSES:
        raise ValueError("Invalid fulfillment_status")

    order = db.session.get(Order, order_id)
    if order is None:
        return None
    if order.type != "card":
        raise ValueError("Fulfillment status applies to card orders only")

    old_status = order.fulfillment_status
    order.fulfillment_status = fulfillment_status
    log_billing_audit(order.user_id, "order.fulfillment_updated", {
        "order_id": order.id,
        "old_status": old_status,
        "new_status": fulfillment_status,
    }, actor_user_id=actor_user_id)
    db.session.commit()
    return order


def update_tracking(order_id, tracking_url=None, delivery_window=None,
                    actor_user_id=None):
    """Set tracking URL and/or delivery window. Returns the Order or None."""
    order = db.session.get(Order, order_id)
    if order is None:
        return None

    if isinstance(tracking_url, str):
        order.tracking_url = tracking_url.strip()
    if isinstance(delivery_window, str):
        order.delivery_window = delivery_window.strip()

    log_billing_audit(order.user_id, "order.tracking_updated", {
        "order_id": order.id,
        "tracking_url": order.tracking_url,
        "delivery_window": order.delivery_window,
    }, actor_user_id=actor_user_id)
    db.session.commit()
    return order
