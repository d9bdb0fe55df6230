"""Entitlement table and extractor.

Maps Stripe price IDs to {plan, interval} and works out what a subscription
entitles the account to from its line items:

- The first line item whose price is a known base plan price decides
  plan + interval.
- If no item matches, a "<plan>-<interval>" key from checkout metadata is
  used when both halves are valid.
- Otherwise plan/interval stay None, meaning "unknown, leave the account
  as it is" (never "reset to free").
- Quantities of add-on (extra profile) items are summed; teams seat count
  is 1 + add-ons.

The table is built once in create_app() from config and passed in
explicitly; extract_entitlement() is pure and never raises.
"""

from dataclasses import dataclass, field

PAID_PLANS = ("plus", "teams")
INTERVALS = ("monthly", "quarterly", "yearly")

# Stripe statuses that grant app access
SUBSCRIBED_STATUSES = ("active", "trialing", "past_due", "unpaid")

_BASE_PRICE_KEYS = {
    ("plus", "monthly"): "STRIPE_PRICE_PLUS_MONTHLY",
    ("plus", "quarterly"): "STRIPE_PRICE_PLUS_QUARTERLY",
    ("plus", "yearly"): "STRIPE_PRICE_PLUS_YEARLY",
    ("teams", "monthly"): "STRIPE_PRICE_TEAMS_MONTHLY",
    ("teams", "quarterly"): "STRIPE_PRICE_TEAMS_QUARTERLY",
    ("teams", "yearly"): "STRIPE_PRICE_TEAMS_YEARLY",
}

_ADDON_PRICE_KEYS = (
    "STRIPE_PRICE_EXTRA_PROFILE_MONTHLY",
    "STRIPE_PRICE_EXTRA_PROFILE_QUARTERLY",
    "STRIPE_PRICE_EXTRA_PROFILE_YEARLY",
)


@dataclass(frozen=True)
class EntitlementTable:
    """Static price configuration: base prices and add-on prices."""

    prices: dict = field(default_factory=dict)  # price_id -> (plan, interval)
    addon_price_ids: frozenset = frozenset()

    @classmethod
    def from_config(cls, config):
        prices = {}
        for (plan, interval), key in _BASE_PRICE_KEYS.items():
            price_id = config.get(key)
            if price_id:
                prices[price_id] = (plan, interval)

        addons = {config.get(key) for key in _ADDON_PRICE_KEYS}
        addons.update(config.get("STRIPE_ADDON_PRICE_IDS") or [])
        addons.discard(None)
        addons.discard("")
        return cls(prices=prices, addon_price_ids=frozenset(addons))

    def lookup(self, price_id):
        """Return (plan, interval) for a base price ID, or None."""
        if not price_id:
            return None
        return self.prices.get(price_id)

    def is_addon(self, price_id):
        return bool(price_id) and price_id in self.addon_price_ids


@dataclass(frozen=True)
class Entitlement:
    plan: str = None
    interval: str = None
    add_on_quantity: int = 0
    seat_count: int = 1

    @property
    def known(self):
        return self.plan is not None and self.interval is not None


def parse_plan_key(plan_key):
    """Parse "plus-yearly" style keys. Returns (plan, interval) or None."""
    parts = str(plan_key or "").strip().lower().split("-")
    if len(parts) != 2:
        return None
    plan, interval = parts
    if plan not in PAID_PLANS or interval not in INTERVALS:
        return None
    return plan, interval


def line_items(subscription):
    """Return the list of line items from a subscription dict."""
    if not subscription:
        return []
    items = subscription.get("items") or {}
    if isinstance(items, dict):
        data = items.get("data")
    else:
        data = items
    return list(data or [])


def _price_id(item):
    price = item.get("price")
    if isinstance(price, dict):
        return price.get("id")
    if isinstance(price, str):
        return price
    return None


def _quantity(item):
    try:
        qty = int(item.get("quantity") or 0)
    except (TypeError, ValueError):
        return 0
    return max(qty, 0)


def extract_entitlement(items, table, plan_key=None):
    """Compute the entitlement carried by a subscription's line items.

    Args:
        items:    Stripe subscription items (list of dicts with "price" and
                  "quantity").
        table:    EntitlementTable.
        plan_key: Optional "<plan>-<interval>" fallback from metadata.
    """
    base = None
    add_on_quantity = 0

    for item in items or []:
        if not isinstance(item, dict):
            continue
        price_id = _price_id(item)
        if base is None:
            base = table.lookup(price_id)
            if base is not None:
                continue
        if table.is_addon(price_id):
            add_on_quantity += _quantity(item)

    if base is None:
        base = parse_plan_key(plan_key)

    plan, interval = base if base else (None, None)

    if plan == "teams":
        seat_count = max(1, 1 + add_on_quantity)
    else:
        seat_count = 1

    return Entitlement(
        plan=plan,
        interval=interval,
        add_on_quantity=add_on_quantity,
        seat_count=seat_count,
    )


def plan_key_from_metadata(*metadatas):
    """Pick the first planKey (or plan + interval pair) found in metadata dicts."""
    for metadata in metadatas:
        if not metadata:
            continue
        if metadata.get("planKey"):
            return metadata["planKey"]
        if metadata.get("plan") and metadata.get("interval"):
            return f"{metadata['plan']}-{metadata['interval']}"
    return None


def compute_is_subscribed(status):
    """Map a Stripe subscription status to the app-access boolean."""
    return status in SUBSCRIBED_STATUSES
