"""Stripe service — webhook event routing.

Responsible for:
- Verifying webhook signatures
- Dispatching verified events to per-type handlers
- Recording every event's outcome in the stripe_events table

Every handler is idempotent on its own and derives what it writes from the
event (or a fresh retrieval of the subscription it names), never from what
earlier events left behind. Handler errors are logged, recorded as a failed
event and swallowed: Stripe always gets a 200 so it doesn't redeliver in a
loop.
"""

import logging

import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError

from billing_app.extensions import db
from billing_app.models.stripe_event import StripeEvent
from billing_app.services.account_service import (
    apply_subscription_state,
    mark_payment_failed,
    reset_to_free,
    resolve_user,
)
from billing_app.services.billing_service import (
    extract_period_end,
    from_timestamp,
    invoice_period_end,
    invoice_subscription_id,
    log_billing_audit,
)
from billing_app.services.entitlements import (
    compute_is_subscribed,
    extract_entitlement,
    line_items,
    plan_key_from_metadata,
)
from billing_app.services.ledger_service import (
    seed_subscription_checkout,
    update_subscription_order_status,
    upsert_order,
    upsert_subscription_order,
)

logger = logging.getLogger(__name__)


def _id(value):
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _to_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _format_amount(amount_minor):
    if amount_minor is None:
        return None
    return f"{amount_minor / 100:.2f}"


def verify_webhook_signature(payload, sig_header, gateway):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified event as a dict.
    Raises stripe.SignatureVerificationError on invalid signature.
    """
    return gateway.construct_event(payload, sig_header)


# ──────────────────────────────────────────────
# Email side effects (never fail the event)
# ──────────────────────────────────────────────

def _send_card_order_emails(session, user):
    """Confirmation to the buyer, notification to the operator."""
    try:
        from billing_app.services.email_service import send_email

        details = session.get("customer_details") or {}
        buyer_email = details.get("email") or (user.email if user else None)
        currency = session.get("currency") or "gbp"
        amount = _format_amount(session.get("amount_total"))
        quantity = _to_int((session.get("metadata") or {}).get("quantity"), 1)

        operator_email = current_app.config.get("ORDER_NOTIFY_EMAIL")
        if operator_email:
            send_email(
                to=operator_email,
                subject=f"New card order - {amount} {currency.upper()}" if amount else "New card order",
                template="emails/order_notification.html",
                context={
                    "customer_email": buyer_email,
                    "amount": amount,
                    "currency": currency,
                    "quantity": quantity,
                    "session_id": session.get("id"),
                },
            )

        if buyer_email and amount:
            send_email(
                to=buyer_email,
                subject="Your order confirmation",
                template="emails/order_confirmation.html",
                context={"amount": amount, "currency": currency},
            )
    except Exception as e:
        logger.error(f"Failed to send order emails for session {session.get('id')}: {e}")


def _send_trial_warning(user, subscription):
    try:
        from billing_app.services.email_service import send_email

        trial_end = from_timestamp(subscription.get("trial_end"))
        send_email(
            to=user.email,
            subject="Your free trial is ending soon",
            template="emails/trial_ending.html",
            context={
                "name": user.full_name,
                "trial_end": trial_end.strftime("%d %B %Y") if trial_end else None,
            },
        )
        logger.info(f"Sent trial ending warning to {user.email}")
    except Exception as e:
        logger.error(f"Failed to send trial warning to user {user.id}: {e}")


# ──────────────────────────────────────────────
# Event router
# ──────────────────────────────────────────────

class EventRouter:
    """Dispatches verified Stripe events to handlers.

    Collaborators are injected: a StripeGateway for re-fetching
    subscriptions and the EntitlementTable for price mapping.
    """

    def __init__(self, gateway, table):
        self.gateway = gateway
        self.table = table
        self.handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "customer.subscription.trial_will_end": self._handle_trial_will_end,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    def dispatch(self, event):
        """Run the handler for an event. Raises whatever the handler raises."""
        handler = self.handlers.get(event.get("type"))
        if handler is None:
            logger.info(f"Unhandled Stripe event type {event.get('type')} ({event.get('id')})")
            return False
        handler(event)
        return True

    # ── shared subscription sync ──

    def _retrieve_subscription(self, subscription_id):
        """Fresh copy of a subscription, or None if Stripe can't be reached."""
        try:
            return self.gateway.retrieve_subscription(subscription_id)
        except stripe.StripeError as e:
            logger.warning(f"Could not retrieve subscription {subscription_id}: {e}")
            return None

    def _sync_subscription(self, sub, event_at, user=None, plan_key=None,
                           session=None, ledger_updates=None,
                           period_end_fallback=None, adopt_orphan=False):
        """Apply one subscription snapshot to the account and the ledger.

        adopt_orphan lets the ledger claim the customer's session-only row;
        only events that start a subscription pass it.
        """
        subscription_id = sub.get("id")
        customer_id = _id(sub.get("customer"))
        status = sub.get("status")
        sub_metadata = sub.get("metadata") or {}

        entitlement = extract_entitlement(
            line_items(sub),
            self.table,
            plan_key or plan_key_from_metadata(sub_metadata),
        )
        period_end = extract_period_end(sub) or period_end_fallback
        trial_end = from_timestamp(sub.get("trial_end"))

        if user is None:
            user = resolve_user(sub_metadata.get("userId"), customer_id)

        if user is not None:
            apply_subscription_state(
                user,
                status,
                entitlement=entitlement,
                current_period_end=period_end,
                subscription_id=subscription_id,
                stripe_customer_id=customer_id,
                event_at=event_at,
            )
        else:
            logger.warning(
                f"No account for sub={subscription_id} customer={customer_id}; "
                f"ledger only"
            )

        updates = {
            "user_id": user.id if user else None,
            "type": "subscription",
            "status": "active" if compute_is_subscribed(status) else "pending",
            "current_period_end": period_end,
            "trial_end": trial_end,
        }
        if session is not None:
            updates.update({
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
                "metadata": session.get("metadata") or None,
            })
        updates.update(ledger_updates or {})

        upsert_subscription_order(
            subscription_id,
            updates,
            session_id=session.get("id") if session is not None else None,
            customer_id=customer_id,
            adopt_orphan=adopt_orphan,
        )

        log_billing_audit(user.id if user else None, "subscription.synced", {
            "stripe_subscription_id": subscription_id,
            "status": status,
            "plan": entitlement.plan,
            "interval": entitlement.interval,
            "seat_count": entitlement.seat_count,
        })
        return user

    # ── checkout.session.completed ──

    def _handle_checkout_completed(self, event):
        session = event["data"]["object"]
        metadata = session.get("metadata") or {}
        mode = session.get("mode")
        customer_id = _id(session.get("customer"))

        user = resolve_user(
            metadata.get("userId") or session.get("client_reference_id"),
            customer_id,
        )
        if user is None:
            logger.warning(f"No account found for checkout session {session.get('id')}")

        if mode == "payment":
            self._record_card_order(session, user, customer_id)
        elif mode == "subscription":
            self._record_subscription_checkout(
                session, user, customer_id, from_timestamp(event.get("created"))
            )
        else:
            logger.info(f"Ignoring checkout session {session.get('id')} with mode={mode}")

    def _record_card_order(self, session, user, customer_id):
        metadata = session.get("metadata") or {}
        order = upsert_order(
            "stripe_session_id",
            session["id"],
            {
                "user_id": user.id if user else None,
                "type": "card",
                "stripe_customer_id": customer_id,
                "quantity": _to_int(metadata.get("quantity"), 1),
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency") or "gbp",
                "status": "paid" if session.get("payment_status") == "paid" else "pending",
                "delivery_name": metadata.get("deliveryName"),
                "delivery_address": metadata.get("deliveryAddress"),
                "metadata": metadata,
            },
            insert_defaults={"fulfillment_status": "order_placed"},
        )
        log_billing_audit(user.id if user else None, "order.card_recorded", {
            "order_id": order.id,
            "stripe_session_id": session["id"],
            "status": order.status,
        })
        logger.info(f"Card order upserted by session={session['id']}, user={order.user_id}")

        _send_card_order_emails(session, user)

    def _record_subscription_checkout(self, session, user, customer_id, event_at):
        metadata = session.get("metadata") or {}
        subscription_id = _id(session.get("subscription"))

        if not subscription_id:
            # Subscription not attached yet; join the row that
            # customer.subscription.created wrote, or seed one for it to adopt.
            seed_subscription_checkout(session["id"], customer_id, {
                "user_id": user.id if user else None,
                "type": "subscription",
                "stripe_customer_id": customer_id,
                "status": "pending",
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency") or "gbp",
                "metadata": metadata,
            })
            logger.info(f"Subscription checkout {session['id']} seeded without sub id")
            return

        sub = self._retrieve_subscription(subscription_id)
        if sub is None:
            upsert_subscription_order(
                subscription_id,
                {
                    "user_id": user.id if user else None,
                    "status": "pending",
                    "amount_total": session.get("amount_total"),
                    "currency": session.get("currency") or "gbp",
                    "metadata": metadata,
                },
                session_id=session["id"],
                customer_id=customer_id,
                adopt_orphan=True,
            )
            return

        self._sync_subscription(
            sub,
            event_at,
            user=user,
            plan_key=plan_key_from_metadata(metadata),
            session=session,
            adopt_orphan=True,
        )

    # ── customer.subscription.* ──

    def _handle_subscription_changed(self, event):
        payload = event["data"]["object"]
        sub = self._retrieve_subscription(payload.get("id"))
        if sub is None:
            logger.info(f"Falling back to event payload for sub={payload.get('id')}")
            sub = payload
        self._sync_subscription(
            sub,
            from_timestamp(event.get("created")),
            adopt_orphan=event.get("type") == "customer.subscription.created",
        )

    def _handle_subscription_deleted(self, event):
        sub = event["data"]["object"]
        subscription_id = sub.get("id")
        customer_id = _id(sub.get("customer"))

        user = resolve_user((sub.get("metadata") or {}).get("userId"), customer_id)
        if user is not None:
            reset_to_free(user, event_at=from_timestamp(event.get("created")))
        else:
            logger.warning(f"subscription.deleted: no account for customer={customer_id}")

        upsert_subscription_order(
            subscription_id,
            {"user_id": user.id if user else None, "status": "canceled"},
            customer_id=customer_id,
        )
        log_billing_audit(user.id if user else None, "subscription.deleted", {
            "stripe_subscription_id": subscription_id,
        })

    def _handle_trial_will_end(self, event):
        sub = event["data"]["object"]
        user = resolve_user(
            (sub.get("metadata") or {}).get("userId"), _id(sub.get("customer"))
        )
        if user is None or user.subscription_status != "trialing":
            return
        _send_trial_warning(user, sub)

    # ── invoice.* ──

    def _handle_invoice_paid(self, event):
        invoice = event["data"]["object"]
        customer_id = _id(invoice.get("customer"))
        subscription_id = invoice_subscription_id(invoice)
        event_at = from_timestamp(event.get("created"))

        if not subscription_id:
            logger.info(f"Invoice {invoice.get('id')} is not for a subscription; skipping")
            return

        ledger_updates = {
            "status": "active",
            "amount_total": invoice.get("amount_paid"),
            "currency": invoice.get("currency"),
        }
        period_end = invoice_period_end(invoice)
        user = resolve_user(None, customer_id)

        sub = self._retrieve_subscription(subscription_id)
        if sub is not None:
            self._sync_subscription(
                sub,
                event_at,
                user=user,
                ledger_updates=ledger_updates,
                period_end_fallback=period_end,
            )
            return

        # Stripe unreachable: the invoice alone says the subscription is paid.
        if user is not None:
            apply_subscription_state(
                user,
                "active",
                current_period_end=period_end,
                subscription_id=subscription_id,
                stripe_customer_id=customer_id,
                event_at=event_at,
            )
        else:
            logger.warning(f"invoice.paid: no account for customer={customer_id}")

        ledger_updates["user_id"] = user.id if user else None
        ledger_updates["current_period_end"] = period_end
        upsert_subscription_order(
            subscription_id, ledger_updates, customer_id=customer_id
        )

    def _handle_payment_failed(self, event):
        invoice = event["data"]["object"]
        customer_id = _id(invoice.get("customer"))
        subscription_id = invoice_subscription_id(invoice)

        user = resolve_user(None, customer_id)
        if user is None:
            logger.warning(f"invoice.payment_failed: no account for customer={customer_id}")
        else:
            mark_payment_failed(
                user,
                subscription_id=subscription_id,
                event_at=from_timestamp(event.get("created")),
            )

        update_subscription_order_status(subscription_id, "failed")
        log_billing_audit(user.id if user else None, "invoice.payment_failed", {
            "stripe_subscription_id": subscription_id,
            "amount_due": invoice.get("amount_due"),
        })


# ──────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────

def _record_event(event_id, event_type, status, error=None):
    """Upsert the stripe_events row for this delivery."""
    record = StripeEvent.query.filter_by(stripe_event_id=event_id).first()
    if record is None:
        record = StripeEvent(stripe_event_id=event_id, event_type=event_type)
        db.session.add(record)
    record.status = status
    record.error = error
    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event recorded it first.
        db.session.rollback()
        logger.info(f"Stripe event {event_id} already recorded by another request")


def handle_webhook_event(event, gateway, table):
    """Process a verified Stripe webhook event.

    Returns one of "processed", "already_processed", "failed". Never raises
    for handler errors: those are logged, rolled back and recorded.
    """
    event_id = event.get("id")
    event_type = event.get("type")

    if event_id:
        existing = StripeEvent.query.filter_by(stripe_event_id=event_id).first()
        if existing is not None and existing.status == "processed":
            logger.info(f"Duplicate webhook event {event_id}, skipping")
            return "already_processed"

    router = EventRouter(gateway, table)
    status, error = "processed", None

    try:
        router.dispatch(event)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        status, error = "failed", str(e)
        logger.error(
            f"Error handling {event_type} ({event_id}); acknowledged anyway: {e}",
            exc_info=True,
        )

    if event_id:
        _record_event(event_id, event_type, status, error)

    return status
