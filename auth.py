"""Email/password accounts and session helpers.

Routes:
- POST /api/auth/register
- POST /api/auth/login
- POST /api/auth/logout
- GET  /api/auth/me
- POST /api/auth/verify-email
- POST /api/auth/resend-verification
- POST /api/auth/forgot-password
- POST /api/auth/reset-password
- POST /api/auth/kyc

Sessions are Flask sessions keyed by `user_id`. Every other blueprint uses
`require_user()` / `require_permission()` from here:

    user, err = require_user()
    if err:
        return err
"""

import os
import re
import secrets
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request, session as flask_session
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db, limiter
from ledger import credit_points, record_transaction
from mailer import send_password_reset_email, send_verification_email
from models_users import (
    KYC_APPROVED,
    KYC_PENDING,
    USER_STATUS_ACTIVE,
    USER_STATUS_BANNED,
    USER_STATUS_SUSPENDED,
    User,
    generate_referral_code,
)
from models_wallet import TX_BONUS
from rbac import has_permission


auth_api = Blueprint("auth_api", __name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")

RESET_TOKEN_TTL = timedelta(hours=1)


# -------------------------------
# Session helpers (used by every blueprint)
# -------------------------------

def current_user() -> User | None:
    user_id = flask_session.get("user_id")
    if not user_id:
        return None
    return db.session.get(User, user_id)


def require_user():
    """Return (user, None) for a usable session, else (None, error_response)."""
    user = current_user()
    if not user:
        return None, (jsonify({"success": False, "error": "Unauthorized"}), 401)
    if user.status in {USER_STATUS_BANNED, USER_STATUS_SUSPENDED}:
        flask_session.clear()
        return None, (jsonify({"success": False, "error": "Account is not active"}), 403)
    return user, None


def require_permission(permission: str):
    user, err = require_user()
    if err:
        return None, err
    if not has_permission(user.role, permission):
        return None, (jsonify({"success": False, "error": "Forbidden"}), 403)
    return user, None


def validate_password(password: str) -> str | None:
    if len(password) < 8:
        return "Password must be at least 8 characters"
    if not _PASSWORD_RE.match(password):
        return "Password must contain at least one uppercase letter, one lowercase letter, and one number"
    return None


def _unique_referral_code() -> str:
    while True:
        code = generate_referral_code()
        if not User.query.filter_by(referral_code=code).first():
            return code


def _login(user: User) -> None:
    flask_session.clear()
    flask_session["user_id"] = user.id
    flask_session.permanent = True


# -------------------------------
# Routes
# -------------------------------

@auth_api.post("/api/auth/register")
@limiter.limit("10 per hour")
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    name = (data.get("name") or "").strip()
    referral_code = (data.get("referral_code") or "").strip().upper()

    if not _EMAIL_RE.match(email):
        return jsonify({"success": False, "error": "Invalid email address"}), 400
    pw_error = validate_password(password)
    if pw_error:
        return jsonify({"success": False, "error": pw_error}), 400
    if len(name) < 2:
        return jsonify({"success": False, "error": "Name must be at least 2 characters"}), 400

    if User.query.filter_by(email=email).first():
        return jsonify({"success": False, "error": "Email already registered"}), 409

    referrer = None
    if referral_code:
        referrer = User.query.filter_by(referral_code=referral_code).first()

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        name=name,
        referral_code=_unique_referral_code(),
        referred_by_id=referrer.id if referrer else None,
        verify_token=secrets.token_urlsafe(32),
    )
    db.session.add(user)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Registration failed for %s", email)
        return jsonify({"success": False, "error": "An error occurred during registration"}), 500

    send_verification_email(user.email, user.name, user.verify_token)
    current_app.logger.info("Registered user %s (referred_by=%s)", user.id, user.referred_by_id)

    return jsonify({
        "success": True,
        "message": "Registration successful! Please check your email to verify your account.",
        "user_id": user.id,
    }), 201


@auth_api.post("/api/auth/login")
@limiter.limit("20 per minute")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first() if email else None
    if not user or not check_password_hash(user.password_hash, password):
        return jsonify({"success": False, "error": "Invalid email or password"}), 401
    if user.status != USER_STATUS_ACTIVE:
        return jsonify({"success": False, "error": f"Account is {user.status.lower()}"}), 403

    user.last_login_at = datetime.utcnow()
    db.session.commit()
    _login(user)
    return jsonify({"success": True, "user": user.to_dict()})


@auth_api.post("/api/auth/logout")
def logout():
    flask_session.clear()
    return jsonify({"success": True})


@auth_api.get("/api/auth/me")
def me():
    user, err = require_user()
    if err:
        return err
    return jsonify({"success": True, "user": user.to_dict()})


@auth_api.post("/api/auth/verify-email")
def verify_email():
    data = request.get_json(silent=True) or {}
    token = (data.get("token") or "").strip()
    if not token:
        return jsonify({"success": False, "error": "Token is required"}), 400

    user = User.query.filter_by(verify_token=token).first()
    if not user:
        return jsonify({"success": False, "error": "Invalid or expired token"}), 400

    user.email_verified_at = datetime.utcnow()
    user.verify_token = None

    welcome_bonus = int(os.getenv("WELCOME_BONUS_POINTS", "0") or 0)
    if welcome_bonus > 0:
        credit_points(user, welcome_bonus)
        record_transaction(user.id, TX_BONUS, welcome_bonus, "Welcome bonus", reference=f"welcome_{user.id}")

    db.session.commit()
    return jsonify({"success": True, "message": "Email verified"})


@auth_api.post("/api/auth/resend-verification")
@limiter.limit("5 per hour")
def resend_verification():
    user, err = require_user()
    if err:
        return err
    if user.email_verified_at:
        return jsonify({"success": False, "error": "Email already verified"}), 400

    user.verify_token = secrets.token_urlsafe(32)
    db.session.commit()
    send_verification_email(user.email, user.name, user.verify_token)
    return jsonify({"success": True})


@auth_api.post("/api/auth/forgot-password")
@limiter.limit("5 per hour")
def forgot_password():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()

    user = User.query.filter_by(email=email).first() if email else None
    if user:
        user.reset_token = secrets.token_urlsafe(32)
        user.reset_token_expires_at = datetime.utcnow() + RESET_TOKEN_TTL
        db.session.commit()
        send_password_reset_email(user.email, user.name, user.reset_token)

    # Same answer whether or not the account exists.
    return jsonify({"success": True, "message": "If that email is registered, a reset link has been sent."})


@auth_api.post("/api/auth/reset-password")
def reset_password():
    data = request.get_json(silent=True) or {}
    token = (data.get("token") or "").strip()
    password = data.get("password") or ""

    user = User.query.filter_by(reset_token=token).first() if token else None
    if not user or not user.reset_token_expires_at or user.reset_token_expires_at < datetime.utcnow():
        return jsonify({"success": False, "error": "Invalid or expired token"}), 400

    pw_error = validate_password(password)
    if pw_error:
        return jsonify({"success": False, "error": pw_error}), 400

    user.password_hash = generate_password_hash(password)
    user.reset_token = None
    user.reset_token_expires_at = None
    db.session.commit()
    return jsonify({"success": True, "message": "Password updated"})


@auth_api.post("/api/auth/kyc")
@limiter.limit("5 per day")
def submit_kyc():
    user, err = require_user()
    if err:
        return err
    if user.kyc_status in {KYC_PENDING, KYC_APPROVED}:
        return jsonify({"success": False, "error": f"KYC is already {user.kyc_status.lower()}"}), 400

    data = request.get_json(silent=True) or {}
    country = (data.get("country") or "").strip().upper()
    if len(country) != 2:
        return jsonify({"success": False, "error": "A two-letter country code is required"}), 400

    user.country = country
    user.kyc_status = KYC_PENDING
    db.session.commit()
    return jsonify({"success": True, "user": user.to_dict()})
