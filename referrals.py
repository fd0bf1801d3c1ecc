"""Referral program: multi-level commissions + user-facing stats.

Routes:
- GET /api/referrals

Commission cascade (process_referral_commissions):
- Active ReferralLevel rows, ordered by level; when none exist a single
  level-1 rule of 10% applies.
- Walk referred_by upwards for level 1 .. min(10, number of rules); stop at
  the first user without a referrer or the first level without a rule.
- PERCENTAGE pays floor(points * value / 100); FLAT_RATE pays floor(value).
- Each positive commission credits the referrer and writes one Transaction,
  one ReferralEarning and one Notification.
- Failures are logged and rolled back; they never propagate to the caller.
"""

import math

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func

from auth import require_user
from extensions import db
from ledger import credit_points, points_to_usd, record_transaction
from mailer import app_url
from models_notifications import NOTIF_REFERRAL
from models_referrals import (
    COMMISSION_FLAT_RATE,
    COMMISSION_PERCENTAGE,
    MAX_REFERRAL_LEVELS,
    ReferralEarning,
    ReferralLevel,
)
from models_users import User
from models_wallet import TX_REFERRAL
from notifications import notify


referrals_api = Blueprint("referrals_api", __name__)

DEFAULT_LEVEL_RULES = [
    {"level": 1, "commission_type": COMMISSION_PERCENTAGE, "commission_value": 10.0},
]


def get_level_rules() -> list[dict]:
    """Active commission rules as plain dicts, falling back to the default table."""
    rows = ReferralLevel.query.filter_by(is_active=True).order_by(ReferralLevel.level.asc()).all()
    if not rows:
        return [dict(r) for r in DEFAULT_LEVEL_RULES]
    return [
        {"level": r.level, "commission_type": r.commission_type, "commission_value": r.commission_value}
        for r in rows
    ]


def compute_commission(points_earned: int, rule: dict) -> int:
    """Points owed for one level. Never negative; bad config yields 0."""
    try:
        value = float(rule.get("commission_value"))
        points_earned = int(points_earned or 0)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value) or value <= 0 or points_earned <= 0:
        return 0

    if rule.get("commission_type") == COMMISSION_FLAT_RATE:
        commission = math.floor(value)
    else:
        commission = math.floor(points_earned * value / 100)
    return max(0, int(commission))


def _describe_rule(rule: dict) -> str:
    if rule.get("commission_type") == COMMISSION_FLAT_RATE:
        return f"{rule.get('commission_value')} points flat"
    return f"{rule.get('commission_value')}%"


def process_referral_commissions(user_id: int, points_earned: int, source_id, source_type: str = "TASK") -> int:
    """Pay the upline of `user_id` for `points_earned`. Returns the number of credits written."""
    credited = 0
    try:
        rules = get_level_rules()
        rules_by_level = {int(r["level"]): r for r in rules}
        max_level = min(MAX_REFERRAL_LEVELS, len(rules))

        current = db.session.get(User, user_id)
        for level in range(1, max_level + 1):
            if current is None or not current.referred_by_id:
                break
            rule = rules_by_level.get(level)
            if rule is None:
                break

            referrer = db.session.get(User, current.referred_by_id)
            if referrer is None:
                break

            commission = compute_commission(points_earned, rule)
            if commission > 0:
                credit_points(referrer, commission)
                record_transaction(
                    referrer.id,
                    TX_REFERRAL,
                    commission,
                    f"Level {level} referral commission ({_describe_rule(rule)})",
                    reference=f"referral_{user_id}_{source_id}",
                    metadata={
                        "referred_user_id": user_id,
                        "source_type": source_type,
                        "source_id": source_id,
                        "level": level,
                        "commission_type": rule.get("commission_type"),
                        "commission_value": rule.get("commission_value"),
                    },
                )
                db.session.add(ReferralEarning(
                    user_id=referrer.id,
                    referred_user_id=user_id,
                    level=level,
                    points=commission,
                    amount=points_to_usd(commission),
                    source_type=source_type,
                    source_id=str(source_id) if source_id is not None else None,
                ))
                notify(
                    referrer.id,
                    "Referral Commission!",
                    f"You earned {commission} points from your level {level} referral's activity!",
                    NOTIF_REFERRAL,
                    {"commission": commission, "level": level, "referred_user_id": user_id},
                )
                credited += 1

            current = referrer

        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Error processing referral commissions for user %s", user_id)
        return 0
    return credited


@referrals_api.get("/api/referrals")
def referral_stats():
    user, err = require_user()
    if err:
        return err

    level1 = User.query.filter_by(referred_by_id=user.id).all()
    level1_ids = [u.id for u in level1]
    level2_ids = []
    if level1_ids:
        level2_ids = [row[0] for row in db.session.query(User.id).filter(User.referred_by_id.in_(level1_ids)).all()]
    level3_count = 0
    if level2_ids:
        level3_count = User.query.filter(User.referred_by_id.in_(level2_ids)).count()

    by_level = (
        db.session.query(
            ReferralEarning.level,
            func.coalesce(func.sum(ReferralEarning.points), 0),
            func.count(ReferralEarning.id),
        )
        .filter(ReferralEarning.user_id == user.id)
        .group_by(ReferralEarning.level)
        .all()
    )
    earnings_by_level = {int(level): {"points": int(pts or 0), "count": int(cnt or 0)} for level, pts, cnt in by_level}
    total_points = sum(v["points"] for v in earnings_by_level.values())

    recent = (
        ReferralEarning.query.filter_by(user_id=user.id)
        .order_by(ReferralEarning.created_at.desc())
        .limit(20)
        .all()
    )

    return jsonify({
        "success": True,
        "referral_code": user.referral_code,
        "referral_link": f"{app_url()}/register?ref={user.referral_code}",
        "commission_rates": get_level_rules(),
        "counts": {"level1": len(level1_ids), "level2": len(level2_ids), "level3": level3_count},
        "direct_referrals": [u.to_dict(private=False) for u in level1[:50]],
        "earnings": {
            "total_points": total_points,
            "total_usd": points_to_usd(total_points),
            "by_level": earnings_by_level,
        },
        "recent_earnings": [e.to_dict() for e in recent],
    })
