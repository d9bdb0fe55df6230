"""Stripe gateway — the only module that talks to the Stripe API.

Wraps the handful of calls the reconciliation engine needs so that the
event router and billing summary can be handed a fake in tests. All
results come back as plain dicts.

Raises stripe.StripeError on API failures; callers decide whether
that degrades or propagates.
"""

import logging

import stripe

logger = logging.getLogger(__name__)


def _plain(obj):
    """Convert a StripeObject into plain dicts (no-op for dicts)."""
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return obj


class StripeGateway:
    """Thin wrapper around the stripe SDK, bound to one secret key."""

    def __init__(self, api_key=None, webhook_secret=None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    @property
    def configured(self):
        return bool(self.api_key)

    # ──────────────────────────────────────────────
    # Webhooks
    # ──────────────────────────────────────────────

    def construct_event(self, payload, sig_header):
        """Verify the signature and construct the event.

        Raises stripe.SignatureVerificationError on invalid signature
        and ValueError on an unparseable payload.
        """
        event = stripe.Webhook.construct_event(
            payload, sig_header, self.webhook_secret
        )
        return _plain(event)

    # ──────────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────────

    def retrieve_subscription(self, subscription_id):
        sub = stripe.Subscription.retrieve(
            subscription_id,
            expand=["items.data.price"],
            api_key=self.api_key,
        )
        return _plain(sub)

    def list_subscriptions(self, customer_id, limit=10):
        subs = stripe.Subscription.list(
            customer=customer_id,
            status="all",
            limit=limit,
            api_key=self.api_key,
        )
        return [_plain(s) for s in (_plain(subs).get("data") or [])]

    def cancel_at_period_end(self, subscription_id):
        sub = stripe.Subscription.modify(
            subscription_id,
            cancel_at_period_end=True,
            api_key=self.api_key,
        )
        return _plain(sub)

    def retrieve_price(self, price_id):
        price = stripe.Price.retrieve(
            price_id, expand=["product"], api_key=self.api_key
        )
        return _plain(price)

    # ──────────────────────────────────────────────
    # Invoices
    # ──────────────────────────────────────────────

    def list_invoices(self, customer_id, limit=10):
        invoices = stripe.Invoice.list(
            customer=customer_id,
            limit=limit,
            api_key=self.api_key,
        )
        return [_plain(i) for i in (_plain(invoices).get("data") or [])]

    def latest_invoice(self, customer_id):
        """Most recent invoice for a customer, or None."""
        invoices = self.list_invoices(customer_id, limit=1)
        return invoices[0] if invoices else None
