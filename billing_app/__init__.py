import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from billing_app.config import config_by_name
from billing_app.extensions import (
    ENTITLEMENT_TABLE_KEY,
    GATEWAY_KEY,
    csrf,
    db,
    limiter,
    login_manager,
    migrate,
)


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Stripe collaborators (built once, injected via app.extensions) ---
    from billing_app.services.entitlements import EntitlementTable
    from billing_app.services.stripe_gateway import StripeGateway

    app.extensions[GATEWAY_KEY] = StripeGateway(
        api_key=app.config.get("STRIPE_SECRET_KEY"),
        webhook_secret=app.config.get("STRIPE_WEBHOOK_SECRET"),
    )
    app.extensions[ENTITLEMENT_TABLE_KEY] = EntitlementTable.from_config(app.config)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from billing_app import models  # noqa: F401

    # --- Register blueprints ---
    from billing_app.blueprints.auth import auth_bp
    from billing_app.blueprints.billing import billing_bp
    from billing_app.blueprints.orders import orders_bp
    from billing_app.blueprints.admin import admin_bp
    from billing_app.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF: raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Error handlers (JSON API) ---
    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"error": "Bad request"}), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": "Unauthorized"}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(429)
    def too_many_requests(e):
        return jsonify({"error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API: nothing should load from our responses
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@billing.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create (or promote) an admin account.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from billing_app.models.user import User

        email = email.lower().strip()
        existing = User.query.filter_by(email=email).first()
        if existing:
            if not existing.is_admin:
                existing.is_admin = True
                db.session.commit()
                click.echo(f"Promoted existing user to admin: {email}")
            else:
                click.echo(f"Admin user already exists: {email}")
            return

        admin = User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name="Admin",
            is_admin=True,
        )
        db.session.add(admin)
        db.session.commit()

        click.echo("")
        click.echo("=" * 60)
        click.echo(f"Created admin user: {email} / {password}")
        click.echo("=" * 60)

    @app.cli.command("verify-stripe-prices")
    def verify_stripe_prices():
        """Verify configured Stripe price IDs exist and are usable (same mode as key).

        Checks every base plan price and add-on price in the entitlement table.
        Run with prod env vars to confirm Live prices; run with test vars for Test mode.
        """
        import stripe

        from billing_app.extensions import entitlement_table, stripe_gateway

        gateway = stripe_gateway()
        table = entitlement_table()

        if not gateway.configured:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if gateway.api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")
        click.echo("")

        labels = {
            price_id: f"{plan}-{interval}"
            for price_id, (plan, interval) in table.prices.items()
        }
        labels.update({price_id: "add-on" for price_id in table.addon_price_ids})

        if not labels:
            click.echo("No price IDs configured.")
            return

        for price_id, label in sorted(labels.items(), key=lambda kv: kv[1]):
            try:
                price = gateway.retrieve_price(price_id)
            except stripe.StripeError as e:
                click.echo(f"  {label}: {price_id}")
                click.echo(f"    ERROR: {e}")
                continue

            product = price.get("product")
            product_active = product.get("active", "?") if isinstance(product, dict) else "?"
            livemode = price.get("livemode", "?")
            click.echo(f"  {label}: {price_id}")
            click.echo(f"    exists=True, livemode={livemode}, product_active={product_active}")
            if livemode is True and key_mode != "Live":
                click.echo("    WARNING: This price is Live but your key is Test.")
            elif livemode is False and key_mode == "Live":
                click.echo("    WARNING: This price is Test but your key is Live.")

    @app.cli.command("send-trial-reminders")
    @click.option("--dry-run", is_flag=True, help="Show what would be sent without actually sending.")
    def send_trial_reminders(dry_run):
        """Email accounts whose free trial ends soon.

        Sends a first reminder inside TRIAL_FIRST_REMINDER_DAYS and a final
        warning inside TRIAL_FINAL_WARNING_DAYS, each at most once.

        Usage:
            flask send-trial-reminders
            flask send-trial-reminders --dry-run
        """
        from billing_app.services.trial_reminder_service import process_trial_reminders
        process_trial_reminders(dry_run=dry_run)
