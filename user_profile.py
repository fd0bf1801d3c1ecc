"""User profile.

Routes:
- GET   /api/profile
- PATCH /api/profile   {"name", "avatar", "phone", "country", "language", "timezone",
                        "notifications_enabled", "email_notifications"}

Only the listed fields are editable; balances, role, tier and KYC state go
through their own flows. An empty PATCH is a 400.
"""

import re
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func

from auth import require_user
from extensions import db
from mailer import app_url
from models_achievements import UserAchievement
from models_tasks import COMPLETED_SUBMISSION_STATUSES, TaskSubmission
from models_users import KYC_APPROVED, POINTS_PER_USD, User, xp_for_level
from packages import active_package, effective_tier


profile_api = Blueprint("profile_api", __name__)

LANGUAGES = ("en", "bn", "hi", "ar", "es", "fr", "de", "zh")

_PHONE_RE = re.compile(r"^\+?[\d\s-]{10,15}$")
_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")


def _level_progress(user: User) -> dict:
    level = int(user.level or 1)
    floor_xp = xp_for_level(level)
    needed = max(1, xp_for_level(level + 1) - floor_xp)
    into = max(0, int(user.xp or 0) - floor_xp)
    return {
        "level": level,
        "xp": int(user.xp or 0),
        "xp_progress": into,
        "xp_needed": needed,
        "xp_percentage": min(100, round(into * 100 / needed)),
    }


def _today_activity(user: User) -> dict:
    day_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    count, points, xp = (
        db.session.query(
            func.count(TaskSubmission.id),
            func.coalesce(func.sum(TaskSubmission.points_earned), 0),
            func.coalesce(func.sum(TaskSubmission.xp_earned), 0),
        )
        .filter(
            TaskSubmission.user_id == user.id,
            TaskSubmission.status.in_(COMPLETED_SUBMISSION_STATUSES),
            TaskSubmission.reviewed_at >= day_start,
        )
        .one()
    )
    return {"tasks_completed": int(count), "points_earned": int(points), "xp_earned": int(xp)}


@profile_api.get("/api/profile")
def get_profile():
    user, err = require_user()
    if err:
        return err

    tasks_completed = TaskSubmission.query.filter(
        TaskSubmission.user_id == user.id,
        TaskSubmission.status.in_(COMPLETED_SUBMISSION_STATUSES),
    ).count()
    referrals_count = User.query.filter(User.referred_by_id == user.id).count()
    achievements_count = UserAchievement.query.filter_by(user_id=user.id, is_completed=True).count()
    pkg = active_package(user)
    tier = effective_tier(user)

    stats = _level_progress(user)
    stats.update({
        "points_balance": int(user.points_balance or 0),
        "cash_balance": round(int(user.points_balance or 0) / POINTS_PER_USD, 4),
        "total_earnings": float(user.total_earnings or 0),
        "tasks_completed": tasks_completed,
        "referrals_count": referrals_count,
        "achievements_count": achievements_count,
        "streak": int(user.streak or 0),
    })

    return jsonify({
        "success": True,
        "profile": {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "avatar": user.avatar,
            "phone": user.phone,
            "country": user.country,
            "language": user.language or "en",
            "timezone": user.timezone or "UTC",
            "created_at": user.created_at.isoformat() if user.created_at else None,
        },
        "stats": stats,
        "package": {
            "tier": tier,
            "name": pkg.name if pkg else tier,
            "expires_at": user.package_expires_at.isoformat() if user.package_expires_at and tier == user.package_tier else None,
            "features": pkg.features if pkg else [],
            "daily_task_limit": pkg.daily_task_limit if pkg else None,
        },
        "referral": {
            "code": user.referral_code,
            "link": f"{app_url()}/register?ref={user.referral_code}",
        },
        "verification": {
            "kyc_status": user.kyc_status,
            "is_email_verified": user.email_verified_at is not None,
            "is_fully_verified": user.kyc_status == KYC_APPROVED and user.email_verified_at is not None,
        },
        "preferences": {
            "notifications_enabled": bool(user.notifications_enabled),
            "email_notifications": bool(user.email_notifications),
        },
        "today_activity": _today_activity(user),
    })


def _apply_profile_update(user: User, data: dict) -> tuple[list[str], str | None]:
    """Validate every field first, then apply. Returns (changed_fields, error)."""
    updates = {}

    if "name" in data:
        name = data.get("name")
        if not isinstance(name, str) or not 2 <= len(name.strip()) <= 50:
            return [], "Name must be 2-50 characters"
        updates["name"] = name.strip()

    if "avatar" in data:
        avatar = data.get("avatar") or None
        if avatar is not None and (not isinstance(avatar, str) or not avatar.startswith(("https://", "http://")) or len(avatar) > 500):
            return [], "Avatar must be an http(s) URL"
        updates["avatar"] = avatar

    if "phone" in data:
        phone = data.get("phone") or None
        if phone is not None and (not isinstance(phone, str) or not _PHONE_RE.match(phone)):
            return [], "Invalid phone number format"
        updates["phone"] = phone

    if "country" in data:
        country = (data.get("country") or "").strip().upper() or None
        if country is not None and not _COUNTRY_RE.match(country):
            return [], "Country must be a two-letter code"
        updates["country"] = country

    if "language" in data:
        if data.get("language") not in LANGUAGES:
            return [], "Invalid language code"
        updates["language"] = data["language"]

    if "timezone" in data:
        tz = data.get("timezone")
        if not isinstance(tz, str) or not tz.strip() or len(tz) > 50:
            return [], "Invalid timezone"
        updates["timezone"] = tz.strip()

    for flag in ("notifications_enabled", "email_notifications"):
        if flag in data:
            if not isinstance(data.get(flag), bool):
                return [], f"{flag} must be true or false"
            updates[flag] = data[flag]

    if not updates:
        return [], "No valid fields to update"
    for field, value in updates.items():
        setattr(user, field, value)
    return sorted(updates), None


@profile_api.patch("/api/profile")
def update_profile():
    user, err = require_user()
    if err:
        return err

    changed, error = _apply_profile_update(user, request.get_json(silent=True) or {})
    if error:
        return jsonify({"success": False, "error": error}), 400

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Profile update failed for user %s", user.id)
        return jsonify({"success": False, "error": "Failed to update profile"}), 500

    return jsonify({
        "success": True,
        "message": "Profile updated successfully",
        "updated": changed,
        "profile": user.to_dict(),
    })
