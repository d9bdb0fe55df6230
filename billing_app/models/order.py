"""Order ledger model.

One row per card purchase (keyed by Checkout Session id) or per
subscription lifecycle (keyed by Stripe subscription id). Both keys are
unique when present; NULLs do not collide, so a session-seeded row and a
subscription-seeded row can coexist briefly until ledger_service collapses
them.

The ledger references its owner via user_id only; User holds no
back-reference collection.
"""

import uuid
from datetime import datetime, timezone

from billing_app.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    TYPES = ["card", "subscription"]
    STATUSES = ["pending", "paid", "active", "canceled", "failed"]
    FULFILLMENT_STATUSES = ["order_placed", "designing_card", "packaged", "shipped"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True, index=True
    )
    type = db.Column(db.String(20), nullable=False, index=True)  # card | subscription

    # --- Stripe keys ---
    stripe_session_id = db.Column(db.String(255), unique=True, nullable=True)
    stripe_subscription_id = db.Column(db.String(255), unique=True, nullable=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)

    quantity = db.Column(db.Integer, default=1)
    amount_total = db.Column(db.Integer, nullable=True)  # minor units (pence)
    currency = db.Column(db.String(10), default="gbp")
    status = db.Column(
        db.String(20), nullable=False, default="pending", index=True
    )  # pending | paid | active | canceled | failed

    # --- Admin-managed fulfilment (card orders only) ---
    fulfillment_status = db.Column(
        db.String(30), nullable=True, index=True
    )  # order_placed | designing_card | packaged | shipped
    tracking_url = db.Column(db.String(1024), nullable=True)
    delivery_name = db.Column(db.String(255), nullable=True)
    delivery_address = db.Column(db.Text, nullable=True)
    delivery_window = db.Column(db.String(255), nullable=True)

    # --- Subscription-specific ---
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)

    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # named metadata_ to avoid clashing with SQLAlchemy's Model.metadata
    # Client-side microsecond timestamp; newest-first listings sort on it
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.Index("ix_orders_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return f"<Order {self.type} ({self.status})>"
