"""Orders blueprint — /api/me/orders

The signed-in account's own ledger entries.
"""

from flask import Blueprint, abort, jsonify
from flask_login import current_user, login_required

from billing_app.services.ledger_service import (
    get_order_for_user,
    list_orders_for_user,
    serialize_order,
)

orders_bp = Blueprint("orders", __name__, url_prefix="/api/me")


@orders_bp.route("/orders")
@login_required
def my_orders():
    """Caller's orders, newest first."""
    orders = list_orders_for_user(current_user.id)
    return jsonify({"orders": [serialize_order(o) for o in orders]})


@orders_bp.route("/orders/<order_id>")
@login_required
def my_order(order_id):
    order = get_order_for_user(current_user.id, order_id)
    if order is None:
        abort(404)
    return jsonify({"order": serialize_order(order)})
