"""Admin referral settings + overview.

Routes:
- GET /api/admin/referrals
- GET /api/admin/referrals/settings
- PUT /api/admin/referrals/settings   (replaces the whole level table)

commission_value units:
- PERCENTAGE: percent of the points the referred user earned (0..100).
- FLAT_RATE: whole points credited per qualifying event. Fractions are floored.
  This is a point amount, not dollars: $0.05 is entered as 50.
"""

import math

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func

from auth import require_permission
from extensions import db
from ledger import points_to_usd
from models_referrals import (
    COMMISSION_PERCENTAGE,
    COMMISSION_TYPES,
    COMMISSION_VALUE_UNITS,
    MAX_REFERRAL_LEVELS,
    ReferralEarning,
    ReferralLevel,
)
from models_users import User
from referrals import get_level_rules


admin_referrals = Blueprint("admin_referrals", __name__)


@admin_referrals.get("/api/admin/referrals")
def api_admin_referral_overview():
    _, err = require_permission("referrals.view")
    if err:
        return err

    referred_users = User.query.filter(User.referred_by_id.isnot(None)).count()
    total_points = db.session.query(func.coalesce(func.sum(ReferralEarning.points), 0)).scalar() or 0
    by_level = (
        db.session.query(ReferralEarning.level, func.coalesce(func.sum(ReferralEarning.points), 0))
        .group_by(ReferralEarning.level)
        .order_by(ReferralEarning.level.asc())
        .all()
    )

    top = (
        db.session.query(User, func.count(ReferralEarning.id), func.coalesce(func.sum(ReferralEarning.points), 0))
        .join(ReferralEarning, ReferralEarning.user_id == User.id)
        .group_by(User.id)
        .order_by(func.sum(ReferralEarning.points).desc())
        .limit(10)
        .all()
    )

    return jsonify({
        "success": True,
        "referred_users": referred_users,
        "total_commission_points": int(total_points),
        "total_commission_usd": points_to_usd(total_points),
        "by_level": [{"level": lvl, "points": int(pts or 0)} for lvl, pts in by_level],
        "top_referrers": [
            {"user": u.to_dict(private=False), "commissions": int(cnt), "points": int(pts or 0)}
            for u, cnt, pts in top
        ],
    })


@admin_referrals.get("/api/admin/referrals/settings")
def api_admin_get_referral_settings():
    _, err = require_permission("referrals.view")
    if err:
        return err

    rows = ReferralLevel.query.order_by(ReferralLevel.level.asc()).all()
    return jsonify({
        "success": True,
        "levels": [r.to_dict() for r in rows],
        "effective": get_level_rules(),
        "value_units": COMMISSION_VALUE_UNITS,
    })


def _validate_levels(levels) -> tuple[list[dict] | None, str | None]:
    if not isinstance(levels, list) or not levels:
        return None, "levels must be a non-empty list"

    seen = set()
    out = []
    for item in levels:
        if not isinstance(item, dict):
            return None, "each level must be an object"
        try:
            level = int(item.get("level"))
            value = float(item.get("commission_value"))
        except (TypeError, ValueError):
            return None, "level and commission_value must be numbers"
        ctype = (item.get("commission_type") or COMMISSION_PERCENTAGE).strip().upper()

        if level < 1 or level > MAX_REFERRAL_LEVELS:
            return None, f"level must be between 1 and {MAX_REFERRAL_LEVELS}"
        if level in seen:
            return None, f"duplicate level {level}"
        if ctype not in COMMISSION_TYPES:
            return None, "commission_type must be PERCENTAGE or FLAT_RATE"
        if not math.isfinite(value) or value < 0:
            return None, "commission_value must be >= 0"
        if ctype == COMMISSION_PERCENTAGE and value > 100:
            return None, "percentage commission must be between 0 and 100"

        seen.add(level)
        out.append({
            "level": level,
            "commission_type": ctype,
            "commission_value": value,
            "description": (item.get("description") or "").strip() or None,
            "is_active": bool(item.get("is_active", True)),
        })
    return sorted(out, key=lambda x: x["level"]), None


@admin_referrals.put("/api/admin/referrals/settings")
def api_admin_save_referral_settings():
    admin, err = require_permission("referrals.configure")
    if err:
        return err

    data = request.get_json(silent=True) or {}
    levels, error = _validate_levels(data.get("levels"))
    if error:
        return jsonify({"success": False, "error": error}), 400

    ReferralLevel.query.delete()
    for item in levels:
        db.session.add(ReferralLevel(**item))
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to save referral settings")
        return jsonify({"success": False, "error": "Database error while saving referral settings"}), 500

    current_app.logger.info(
        "Referral settings replaced by admin %s: %s",
        admin.id,
        [(l["level"], l["commission_type"], l["commission_value"]) for l in levels],
    )
    rows = ReferralLevel.query.order_by(ReferralLevel.level.asc()).all()
    return jsonify({"success": True, "levels": [r.to_dict() for r in rows], "value_units": COMMISSION_VALUE_UNITS})
