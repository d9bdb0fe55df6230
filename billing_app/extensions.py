"""
Deferred extension instances.

Created here, bound to the app in create_app() via init_app().
The Stripe gateway and entitlement table are built once per app and kept
on app.extensions; use the accessors below instead of module globals.
"""

from flask import current_app, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # No global limit; applied per route
    storage_uri="memory://",
)

GATEWAY_KEY = "stripe_gateway"
ENTITLEMENT_TABLE_KEY = "entitlement_table"


def stripe_gateway():
    """Return the StripeGateway bound to the current app."""
    return current_app.extensions[GATEWAY_KEY]


def entitlement_table():
    """Return the EntitlementTable built from the current app's config."""
    return current_app.extensions[ENTITLEMENT_TABLE_KEY]


@login_manager.user_loader
def load_user(user_id):
    """Load user by ID from session. Imports lazily to avoid circular deps."""
    from billing_app.models.user import User

    return db.session.get(User, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    """JSON API: no login redirect, just 401."""
    return jsonify({"error": "Unauthorized"}), 401
