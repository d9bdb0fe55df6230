"""User model.

Stores authentication credentials plus the account entitlement snapshot
(plan, interval, subscription status, period end, seats). The snapshot
columns are written only by services.account_service in response to Stripe
events; nothing else patches them.

Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from billing_app.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    PLANS = ["free", "plus", "teams"]
    INTERVALS = ["monthly", "quarterly", "yearly"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=True)  # null for OAuth-only accounts
    full_name = db.Column(db.String(255))
    is_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)

    # --- Stripe identity (unique when present, NULLs never collide) ---
    stripe_customer_id = db.Column(db.String(255), unique=True, nullable=True)
    stripe_subscription_id = db.Column(db.String(255), unique=True, nullable=True)

    # --- Entitlement snapshot ---
    plan = db.Column(db.String(20), nullable=False, default="free")  # free | plus | teams
    plan_interval = db.Column(
        db.String(20), nullable=False, default="monthly"
    )  # monthly | quarterly | yearly
    subscription_status = db.Column(
        db.String(50), nullable=False, default="free"
    )  # mirror of Stripe status, not validated
    is_subscribed = db.Column(db.Boolean, nullable=False, default=False)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_expires = db.Column(db.DateTime(timezone=True), nullable=True)
    seat_count = db.Column(db.Integer, nullable=False, default=1)
    add_on_quantity = db.Column(db.Integer, nullable=False, default=0)

    # created timestamp of the newest Stripe event applied to the snapshot
    billing_event_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_reminders_sent = db.Column(db.JSON, default=list)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    audit_events = db.relationship(
        "AuditEvent",
        foreign_keys="AuditEvent.actor_user_id",
        back_populates="actor",
        lazy="dynamic",
    )

    def __repr__(self):
        return f"<User {self.email} ({self.plan}/{self.subscription_status})>"
