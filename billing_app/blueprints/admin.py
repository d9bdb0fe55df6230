"""Admin blueprint — /admin/orders/*

Operator console API over the order ledger.
All routes protected by @admin_required decorator.

Routes:
- GET   /admin/orders                              — list / filter orders
- PATCH /admin/orders/<id>/status                  — set card fulfilment status
- PATCH /admin/orders/<id>/tracking                — set tracking url / delivery window
- POST  /admin/orders/<id>/cancel-subscription     — cancel at period end in Stripe
"""

import logging

import stripe
from flask import Blueprint, abort, jsonify, request
from flask_login import current_user

from billing_app.decorators import admin_required
from billing_app.extensions import db, stripe_gateway
from billing_app.models.order import Order
from billing_app.models.user import User
from billing_app.services import ledger_service
from billing_app.services.billing_service import (
    extract_period_end,
    isoformat,
    log_billing_audit,
)

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

STATUS_LABELS = {
    "order_placed": "Order placed",
    "designing_card": "Designing your card",
    "packaged": "Packaged",
    "shipped": "Shipped",
}


def _notify_customer(order, subject, template, context):
    """Best-effort customer email; failures are logged only."""
    user = db.session.get(User, order.user_id) if order.user_id else None
    if user is None or not user.email:
        return False
    try:
        from billing_app.services.email_service import send_email

        send_email(
            to=user.email,
            subject=subject,
            template=template,
            context={"name": user.full_name, **context},
        )
        return True
    except Exception as e:
        logger.error(f"Failed to notify {user.email} about order {order.id}: {e}")
        return False


# ──────────────────────────────────────────────
# GET /admin/orders
# ──────────────────────────────────────────────

@admin_bp.route("/orders")
@admin_required
def order_list():
    """Orders across all accounts, newest first.

    Filters: type, status, fulfillment_status, q (email or user id), limit.
    """
    limit = request.args.get("limit", 50, type=int)
    limit = max(1, min(limit, 200))

    orders = ledger_service.list_orders_admin(
        type_=request.args.get("type") or None,
        status=request.args.get("status") or None,
        fulfillment_status=request.args.get("fulfillment_status") or None,
        q=request.args.get("q") or None,
        limit=limit,
    )
    return jsonify({"orders": [ledger_service.serialize_order(o) for o in orders]})


# ──────────────────────────────────────────────
# PATCH /admin/orders/<id>/status
# ──────────────────────────────────────────────

@admin_bp.route("/orders/<order_id>/status", methods=["PATCH"])
@admin_required
def order_status(order_id):
    """Advance a card order's fulfilment status."""
    data = request.get_json(silent=True) or {}
    new_status = data.get("fulfillment_status")

    try:
        order = ledger_service.update_fulfillment_status(
            order_id, new_status, actor_user_id=current_user.id
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    if order is None:
        abort(404)

    notified = False
    if data.get("notify"):
        notified = _notify_customer(
            order,
            subject="Your order has been updated",
            template="emails/order_update.html",
            context={"status_label": STATUS_LABELS.get(new_status, new_status)},
        )

    return jsonify({"order": ledger_service.serialize_order(order), "notified": notified})


# ──────────────────────────────────────────────
# PATCH /admin/orders/<id>/tracking
# ──────────────────────────────────────────────

@admin_bp.route("/orders/<order_id>/tracking", methods=["PATCH"])
@admin_required
def order_tracking(order_id):
    data = request.get_json(silent=True) or {}

    order = ledger_service.update_tracking(
        order_id,
        tracking_url=data.get("tracking_url"),
        delivery_window=data.get("delivery_window"),
        actor_user_id=current_user.id,
    )
    if order is None:
        abort(404)

    notified = False
    if data.get("notify") and order.tracking_url:
        notified = _notify_customer(
            order,
            subject="Your order is on its way",
            template="emails/order_shipped.html",
            context={
                "tracking_url": order.tracking_url,
                "delivery_window": order.delivery_window,
            },
        )

    return jsonify({"order": ledger_service.serialize_order(order), "notified": notified})


# ──────────────────────────────────────────────
# POST /admin/orders/<id>/cancel-subscription
# ──────────────────────────────────────────────

@admin_bp.route("/orders/<order_id>/cancel-subscription", methods=["POST"])
@admin_required
def order_cancel_subscription(order_id):
    """Cancel the order's subscription at the end of the current period.

    The account and ledger are updated later by the resulting
    customer.subscription.updated / .deleted webhooks.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        abort(404)

    if order.type != "subscription" or not order.stripe_subscription_id:
        return jsonify({"error": "Order has no Stripe subscription"}), 400

    gateway = stripe_gateway()
    if not gateway.configured:
        return jsonify({"error": "Stripe is not configured"}), 503

    try:
        sub = gateway.cancel_at_period_end(order.stripe_subscription_id)
    except stripe.StripeError as e:
        logger.error(f"Cancel failed for sub={order.stripe_subscription_id}: {e}")
        return jsonify({"error": "Stripe request failed"}), 502

    log_billing_audit(order.user_id, "subscription.cancel_requested", {
        "order_id": order.id,
        "stripe_subscription_id": order.stripe_subscription_id,
    }, actor_user_id=current_user.id)
    db.session.commit()

    return jsonify({
        "ok": True,
        "stripe_subscription_id": order.stripe_subscription_id,
        "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
        "current_period_end": isoformat(extract_period_end(sub)),
    })
