# Models package: import all models here so Alembic can discover them.

from billing_app.models.user import User  # noqa: F401
from billing_app.models.order import Order  # noqa: F401
from billing_app.models.stripe_event import StripeEvent  # noqa: F401
from billing_app.models.audit import AuditEvent  # noqa: F401
