"""Billing blueprint — /api/billing/*

Read-only billing views for the signed-in account.

Routes:
- GET /api/billing/summary   — plan, status and period end, pulled fresh from Stripe
- GET /api/billing/invoices  — recent Stripe invoices (?limit=1..25)

Responses are never cached: a stale summary right after checkout is exactly
what the pull path exists to avoid.
"""

import logging

import stripe
from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from billing_app.extensions import entitlement_table, stripe_gateway
from billing_app.services.billing_service import get_billing_summary, list_invoices

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/api/billing")


def _no_store(response):
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    response.headers["Surrogate-Control"] = "no-store"
    return response


# ──────────────────────────────────────────────
# GET /api/billing/summary
# ──────────────────────────────────────────────

@billing_bp.route("/summary")
@login_required
def summary():
    """Billing summary for the current account. Never fails on Stripe errors."""
    data = get_billing_summary(current_user, stripe_gateway(), entitlement_table())
    return _no_store(jsonify(data))


# ──────────────────────────────────────────────
# GET /api/billing/invoices
# ──────────────────────────────────────────────

@billing_bp.route("/invoices")
@login_required
def invoices():
    limit = request.args.get("limit", 10, type=int)
    limit = max(1, min(limit, 25))

    try:
        data = list_invoices(current_user, stripe_gateway(), limit=limit)
    except stripe.StripeError as e:
        logger.error(f"Invoice listing failed for user {current_user.id}: {e}")
        return _no_store(jsonify({"error": "Could not load invoices"})), 502

    return _no_store(jsonify({"invoices": data}))
