"""Auth blueprint — /auth/*

Minimal JSON session auth for the billing API: login, logout, whoami.
Accounts are created by the operator (`flask seed-admin`) or by the host
application; there is no self-service registration here.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from billing_app.extensions import db, limiter
from billing_app.models.audit import AuditEvent
from billing_app.models.user import User

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_payload(user):
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "is_admin": bool(user.is_admin),
        "plan": user.plan,
        "is_subscribed": bool(user.is_subscribed),
    }


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    """Email + password login. Accepts JSON or form data."""
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    user = User.query.filter_by(email=email).first()

    if (
        user is None
        or not user.password_hash
        or not check_password_hash(user.password_hash, password)
    ):
        return jsonify({"error": "Invalid email or password."}), 401

    if not user.is_active:
        return jsonify({"error": "Your account has been deactivated."}), 403

    login_user(user, remember=bool(data.get("remember")))

    db.session.add(AuditEvent(
        user_id=user.id,
        actor_user_id=user.id,
        action="user.login",
        metadata_={"email": email},
    ))
    db.session.commit()

    return jsonify({"user": _user_payload(user)})


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


# ──────────────────────────────────────────────
# GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"user": _user_payload(current_user)})


# ──────────────────────────────────────────────
# GET /auth/csrf
# ──────────────────────────────────────────────

@auth_bp.route("/csrf")
def csrf_token():
    """CSRF token for the SPA; send it back in the X-CSRFToken header."""
    return jsonify({"csrf_token": generate_csrf()})
