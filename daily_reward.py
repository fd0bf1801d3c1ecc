"""Daily check-in reward on a 7-day cycle.

- GET  /api/daily-reward
- POST /api/daily-reward

Days are UTC calendar days. Missing more than one day resets the streak.
"""

from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify

from achievements import sync_achievements
from auth import require_user
from extensions import db, limiter
from ledger import add_xp, credit_points, record_transaction
from models_notifications import NOTIF_ACHIEVEMENT, NOTIF_SYSTEM
from models_users import User
from models_wallet import TX_CHECKIN
from notifications import notify
from packages import active_package


daily_reward_api = Blueprint("daily_reward_api", __name__)

DAILY_REWARDS = [
    {"day": 1, "points": 50, "xp": 10},
    {"day": 2, "points": 75, "xp": 15},
    {"day": 3, "points": 100, "xp": 20},
    {"day": 4, "points": 125, "xp": 25},
    {"day": 5, "points": 150, "xp": 30},
    {"day": 6, "points": 200, "xp": 40},
    {"day": 7, "points": 300, "xp": 60},
]


def _utc_day(dt: datetime) -> datetime:
    return datetime(dt.year, dt.month, dt.day)


def _compute_status(user: User, now: datetime) -> dict:
    today = _utc_day(now)
    streak = int(user.streak or 0)
    can_claim = True

    if user.last_check_in is not None:
        days_since = (today - _utc_day(user.last_check_in)).days
        if days_since <= 0:
            can_claim = False
        elif days_since > 1:
            streak = 0

    # An already-claimed day still shows the day that was just paid.
    next_idx = streak % len(DAILY_REWARDS)
    seconds_remaining = 0 if can_claim else int((today + timedelta(days=1) - now).total_seconds())
    return {
        "can_claim": can_claim,
        "current_streak": streak,
        "next_reward": DAILY_REWARDS[next_idx],
        "seconds_until_next": max(0, seconds_remaining),
        "rewards": [
            {**r, "is_claimed": i < next_idx, "is_next": i == next_idx}
            for i, r in enumerate(DAILY_REWARDS)
        ],
        "last_check_in": user.last_check_in.isoformat() if user.last_check_in else None,
    }


@daily_reward_api.get("/api/daily-reward")
def daily_reward_status():
    user, err = require_user()
    if err:
        return err
    return jsonify({"success": True, **_compute_status(user, datetime.utcnow())})


@daily_reward_api.post("/api/daily-reward")
@limiter.limit("10 per hour")
def claim_daily_reward():
    user, err = require_user()
    if err:
        return err

    now = datetime.utcnow()
    st = _compute_status(user, now)
    if not st["can_claim"]:
        return jsonify({
            "success": False,
            "error": "Daily reward already claimed today",
            "seconds_until_next": st["seconds_until_next"],
        }), 429

    reward = st["next_reward"]
    pkg = active_package(user, now)
    multiplier = float(pkg.xp_multiplier) if pkg and pkg.xp_multiplier else 1.0
    points = int(reward["points"])
    xp = int(round(reward["xp"] * multiplier))
    new_streak = st["current_streak"] + 1

    credit_points(user, points)
    previous_level, new_level = add_xp(user, xp)
    user.streak = new_streak
    user.last_check_in = now

    record_transaction(
        user.id,
        TX_CHECKIN,
        points,
        f"Daily reward (Day {reward['day']})",
        reference=f"daily_{user.id}_{now:%Y%m%d}",
        metadata={"day": reward["day"], "streak": new_streak},
    )
    notify(
        user.id,
        "Daily Reward Claimed!",
        f"You earned {points} points and {xp} XP! Day {reward['day']} streak.",
        NOTIF_SYSTEM,
        {"points": points, "xp": xp, "day": reward["day"]},
    )
    if new_level > previous_level:
        notify(
            user.id,
            "Level Up!",
            f"Congratulations! You've reached level {new_level}!",
            NOTIF_ACHIEVEMENT,
            {"new_level": new_level, "previous_level": previous_level},
        )
    unlocked = sync_achievements(user)

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Daily reward claim failed for user %s", user.id)
        return jsonify({"success": False, "error": "Failed to claim daily reward"}), 500

    return jsonify({
        "success": True,
        "reward": {"day": reward["day"], "points": points, "xp": xp},
        "streak": new_streak,
        "level": new_level,
        "leveled_up": new_level > previous_level,
        "points_balance": user.points_balance,
        "achievements_unlocked": [a.name for a in unlocked],
    })
