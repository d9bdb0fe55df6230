"""Account service — applies Stripe subscription state to the user snapshot.

Responsible for:
- Resolving the account an event belongs to (internal id first, then
  Stripe customer id)
- Partial-set updates: only fields with a known new value are written, so
  an event with an unmapped price never downgrades the plan
- Recomputing is_subscribed from the status of the event being applied
- Clearing trial_expires whenever the account becomes subscribed
- Forcing the free/canceled defaults when a subscription is deleted
- Ignoring writes from events older than the last one applied
"""

import logging

from billing_app.extensions import db
from billing_app.models.user import User
from billing_app.services.billing_service import as_utc
from billing_app.services.entitlements import compute_is_subscribed

logger = logging.getLogger(__name__)


def resolve_user(user_id=None, stripe_customer_id=None):
    """Find the account for an event.

    The internal id (from checkout / subscription metadata) is authoritative;
    the Stripe customer id is the fallback. Returns a User or None.
    """
    if user_id:
        user = db.session.get(User, str(user_id))
        if user is not None:
            return user
        logger.warning(f"Event metadata references unknown user {user_id}")

    if stripe_customer_id:
        return User.query.filter_by(stripe_customer_id=stripe_customer_id).first()
    return None


def _is_stale(user, event_at):
    """True if a newer event has already been applied to this account."""
    if event_at is None or user.billing_event_at is None:
        return False
    return as_utc(event_at) < as_utc(user.billing_event_at)


def _stamp(user, event_at):
    if event_at is not None:
        user.billing_event_at = event_at


def _link_customer(user, stripe_customer_id):
    """Attach a Stripe customer id unless another account already owns it."""
    if not stripe_customer_id or user.stripe_customer_id == stripe_customer_id:
        return
    owner = User.query.filter_by(stripe_customer_id=stripe_customer_id).first()
    if owner is not None and owner.id != user.id:
        logger.error(
            f"Stripe customer {stripe_customer_id} already linked to user "
            f"{owner.id}; not linking to {user.id}"
        )
        return
    user.stripe_customer_id = stripe_customer_id


def _link_subscription(user, subscription_id):
    if not subscription_id or user.stripe_subscription_id == subscription_id:
        return
    owner = User.query.filter_by(stripe_subscription_id=subscription_id).first()
    if owner is not None and owner.id != user.id:
        logger.error(
            f"Subscription {subscription_id} already linked to user {owner.id}; "
            f"not linking to {user.id}"
        )
        return
    user.stripe_subscription_id = subscription_id


def apply_subscription_state(user, status, entitlement=None,
                             current_period_end=None, subscription_id=None,
                             stripe_customer_id=None, event_at=None):
    """Write a subscription snapshot onto the account.

    Args:
        user:               The resolved User.
        status:             Stripe subscription status of this event.
        entitlement:        Entitlement from the extractor; unknown plan /
                            interval leave the stored values alone.
        current_period_end: Aware datetime or None (None = keep).
        subscription_id:    Stripe subscription id or None (None = keep).
        stripe_customer_id: Stripe customer id or None (None = keep).
        event_at:           Creation time of the source event.

    Returns True if the account was written, False if the event was stale.
    """
    if _is_stale(user, event_at):
        logger.info(
            f"Ignoring stale billing event for user {user.id}: "
            f"{event_at} < {user.billing_event_at}"
        )
        return False

    _link_customer(user, stripe_customer_id)
    _link_subscription(user, subscription_id)

    if status:
        user.subscription_status = status
    user.is_subscribed = compute_is_subscribed(status)
    if user.is_subscribed:
        user.trial_expires = None

    if entitlement is not None and entitlement.known:
        user.plan = entitlement.plan
        user.plan_interval = entitlement.interval
        user.seat_count = entitlement.seat_count
        user.add_on_quantity = entitlement.add_on_quantity

    if current_period_end is not None:
        user.current_period_end = current_period_end

    _stamp(user, event_at)
    db.session.flush()
    return True


def reset_to_free(user, event_at=None):
    """Force the free/canceled defaults after a subscription is deleted."""
    if _is_stale(user, event_at):
        logger.info(f"Ignoring stale subscription deletion for user {user.id}")
        return False

    user.plan = "free"
    user.plan_interval = "monthly"
    user.subscription_status = "canceled"
    user.is_subscribed = False
    user.seat_count = 1
    user.add_on_quantity = 0
    user.stripe_subscription_id = None
    user.current_period_end = None
    user.trial_expires = None
    user.trial_reminders_sent = []

    _stamp(user, event_at)
    db.session.flush()
    return True


def mark_payment_failed(user, subscription_id=None, event_at=None):
    """A failed invoice payment revokes access until Stripe says otherwise."""
    if _is_stale(user, event_at):
        logger.info(f"Ignoring stale payment failure for user {user.id}")
        return False

    _link_subscription(user, subscription_id)
    user.subscription_status = "past_due"
    user.is_subscribed = False

    _stamp(user, event_at)
    db.session.flush()
    return True
