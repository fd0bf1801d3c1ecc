"""Membership packages and subscriptions.

Routes:
- GET  /api/packages
- GET  /api/packages/subscription
- POST /api/packages/subscription      {"tier": "BASIC"}
- PUT  /api/admin/packages/<id>        (packages.edit)

Subscriptions are paid in points. Buying the current tier again extends it;
buying a lower tier while a higher one is still running is refused.
"""

import json
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request

from auth import require_permission, require_user
from extensions import db, limiter
from ledger import debit_points, record_transaction
from models_notifications import NOTIF_SYSTEM
from models_users import PACKAGE_FREE, PACKAGE_ORDER, Package, User, package_rank
from models_wallet import TX_PURCHASE
from notifications import notify


packages_api = Blueprint("packages_api", __name__)


def effective_tier(user: User, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    if user.package_tier != PACKAGE_FREE and user.package_expires_at and user.package_expires_at <= now:
        return PACKAGE_FREE
    return user.package_tier or PACKAGE_FREE


def active_package(user: User, now: datetime | None = None) -> Package | None:
    return Package.query.filter_by(tier=effective_tier(user, now)).first()


def expire_package_if_due(user: User, now: datetime | None = None) -> bool:
    """Drop a lapsed paid tier back to FREE. Returns True when the user changed; caller commits."""
    if effective_tier(user, now) == user.package_tier:
        return False
    previous = user.package_tier
    user.package_tier = PACKAGE_FREE
    user.package_expires_at = None
    notify(user.id, "Package Expired", f"Your {previous} package has expired. You are now on the FREE plan.", NOTIF_SYSTEM)
    return True


@packages_api.get("/api/packages")
def list_packages():
    rows = Package.query.filter_by(is_active=True).all()
    rows.sort(key=lambda p: package_rank(p.tier))
    return jsonify({"success": True, "packages": [p.to_dict() for p in rows]})


@packages_api.get("/api/packages/subscription")
def get_subscription():
    user, err = require_user()
    if err:
        return err

    tier = effective_tier(user)
    pkg = Package.query.filter_by(tier=tier).first()
    return jsonify({
        "success": True,
        "current_package": {
            "tier": tier,
            "name": pkg.name if pkg else tier,
            "expires_at": user.package_expires_at.isoformat() if tier != PACKAGE_FREE and user.package_expires_at else None,
            "features": pkg.features if pkg else [],
            "daily_task_limit": pkg.daily_task_limit if pkg else 5,
            "withdrawal_fee_discount": pkg.withdrawal_fee_discount if pkg else 0.0,
            "min_withdrawal": pkg.min_withdrawal if pkg else 5.0,
            "xp_multiplier": pkg.xp_multiplier if pkg else 1.0,
        },
    })


@packages_api.post("/api/packages/subscription")
@limiter.limit("10 per hour")
def subscribe():
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    tier = (data.get("tier") or "").strip().upper()
    if tier not in PACKAGE_ORDER or tier == PACKAGE_FREE:
        return jsonify({"success": False, "error": "Invalid package tier"}), 400

    pkg = Package.query.filter_by(tier=tier, is_active=True).first()
    if not pkg:
        return jsonify({"success": False, "error": "Package not available"}), 404

    now = datetime.utcnow()
    current = effective_tier(user, now)
    if package_rank(tier) < package_rank(current):
        return jsonify({"success": False, "error": "You cannot downgrade while a higher package is active"}), 400

    if not debit_points(user, pkg.price_points):
        return jsonify({"success": False, "error": "Insufficient balance"}), 400

    # Renewing the same tier stacks on the remaining time.
    start = user.package_expires_at if tier == current and user.package_expires_at and user.package_expires_at > now else now
    user.package_tier = tier
    user.package_expires_at = start + timedelta(days=int(pkg.duration_days or 30))

    record_transaction(
        user.id, TX_PURCHASE, -int(pkg.price_points), f"{pkg.name} package subscription",
        reference=f"package_{tier}", metadata={"tier": tier, "expires_at": user.package_expires_at.isoformat()},
    )
    notify(
        user.id,
        "Package Activated",
        f"Your {pkg.name} package is active until {user.package_expires_at:%Y-%m-%d}.",
        NOTIF_SYSTEM,
        {"tier": tier},
    )
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Subscription to %s failed for user %s", tier, user.id)
        return jsonify({"success": False, "error": "Failed to activate package"}), 500

    current_app.logger.info("User %s subscribed to %s until %s", user.id, tier, user.package_expires_at)
    return jsonify({"success": True, "user": user.to_dict(), "package": pkg.to_dict()})


@packages_api.put("/api/admin/packages/<int:package_id>")
def admin_update_package(package_id: int):
    _, err = require_permission("packages.edit")
    if err:
        return err

    pkg = Package.query.get(package_id)
    if not pkg:
        return jsonify({"success": False, "error": "Package not found"}), 404

    data = request.get_json(silent=True) or {}
    try:
        if "name" in data:
            pkg.name = (data.get("name") or "").strip() or pkg.name
        if "description" in data:
            pkg.description = (data.get("description") or "").strip() or None
        if "price_points" in data:
            pkg.price_points = max(0, int(data["price_points"]))
        if "duration_days" in data:
            pkg.duration_days = max(1, int(data["duration_days"]))
        if "daily_task_limit" in data:
            pkg.daily_task_limit = max(-1, int(data["daily_task_limit"]))
        if "withdrawal_fee_discount" in data:
            pkg.withdrawal_fee_discount = max(0.0, float(data["withdrawal_fee_discount"]))
        if "min_withdrawal" in data:
            pkg.min_withdrawal = max(0.0, float(data["min_withdrawal"]))
        if "xp_multiplier" in data:
            pkg.xp_multiplier = max(0.0, float(data["xp_multiplier"]))
        if "is_active" in data:
            pkg.is_active = bool(data["is_active"])
    except (TypeError, ValueError):
        db.session.rollback()
        return jsonify({"success": False, "error": "Invalid package values"}), 400

    if "features" in data:
        features = data.get("features")
        if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
            db.session.rollback()
            return jsonify({"success": False, "error": "features must be a list of strings"}), 400
        pkg.features_json = json.dumps(features)

    db.session.commit()
    return jsonify({"success": True, "package": pkg.to_dict()})
