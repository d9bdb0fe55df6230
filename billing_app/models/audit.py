"""Audit event model.

Logs billing reconciliation steps and admin ledger changes for the
activity feed and debugging.
"""

import uuid

from billing_app.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # account the event is about
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )  # None for Stripe-initiated changes
    action = db.Column(db.String(255), nullable=False)  # e.g. "subscription.updated"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    actor = db.relationship(
        "User", foreign_keys=[actor_user_id], back_populates="audit_events"
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
