"""Stripe event model (delivery log).

Every verified webhook event is recorded by its Stripe event ID together
with the outcome of processing it. An event already recorded as
"processed" is acknowledged without reprocessing; a "failed" one is
reprocessed on redelivery. Failures are acknowledged to Stripe anyway, so
this table is where they become visible.
"""

import uuid

from billing_app.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    STATUSES = ["processed", "failed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    status = db.Column(db.String(20), nullable=False, default="processed")
    error = db.Column(db.Text, nullable=True)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type}, {self.status})>"
