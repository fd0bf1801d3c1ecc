"""Achievements: progress against thresholds and one-time unlock rewards.

Routes:
- GET /api/achievements

`sync_achievements()` is called by the features that move a counter (task
rewards, course completion, daily check-in) and by the listing route, so
counters nothing hooks into (referrals, withdrawals) catch up on the next read.
Like the ledger helpers it only stages changes; the caller commits.
"""

from datetime import datetime

from flask import Blueprint, current_app, jsonify

from auth import require_user
from extensions import db
from ledger import add_xp, credit_points, record_transaction
from models_achievements import (
    ACH_COURSES,
    ACH_LEVEL,
    ACH_POINTS,
    ACH_REFERRALS,
    ACH_STREAK,
    ACH_TASKS,
    ACH_WITHDRAWALS,
    ACH_XP,
    Achievement,
    UserAchievement,
)
from models_courses import CourseEnrollment
from models_notifications import NOTIF_ACHIEVEMENT
from models_tasks import COMPLETED_SUBMISSION_STATUSES, TaskSubmission
from models_users import POINTS_PER_USD, User
from models_wallet import TX_BONUS, WITHDRAWAL_COMPLETED, Withdrawal
from notifications import notify


achievements_api = Blueprint("achievements_api", __name__)


def achievement_progress(user: User) -> dict[str, int]:
    return {
        ACH_TASKS: TaskSubmission.query.filter(
            TaskSubmission.user_id == user.id,
            TaskSubmission.status.in_(COMPLETED_SUBMISSION_STATUSES),
        ).count(),
        ACH_REFERRALS: User.query.filter(User.referred_by_id == user.id).count(),
        ACH_WITHDRAWALS: Withdrawal.query.filter_by(user_id=user.id, status=WITHDRAWAL_COMPLETED).count(),
        ACH_COURSES: CourseEnrollment.query.filter(
            CourseEnrollment.user_id == user.id,
            CourseEnrollment.completed_at.isnot(None),
        ).count(),
        ACH_LEVEL: int(user.level or 1),
        ACH_XP: int(user.xp or 0),
        ACH_POINTS: int(round(float(user.total_earnings or 0) * POINTS_PER_USD)),
        ACH_STREAK: int(user.streak or 0),
    }


def _unlock(user: User, achievement: Achievement, row: UserAchievement, now: datetime):
    row.is_completed = True
    row.completed_at = now
    row.progress = achievement.threshold

    points = max(0, int(achievement.points_reward or 0))
    if points:
        credit_points(user, points)
        record_transaction(
            user.id,
            TX_BONUS,
            points,
            f"Achievement unlocked: {achievement.name}",
            reference=f"achievement_{achievement.id}_{user.id}",
            metadata={"achievement_id": achievement.id},
        )
    add_xp(user, int(achievement.xp_reward or 0))
    notify(
        user.id,
        "Achievement Unlocked!",
        f'You unlocked "{achievement.name}"' + (f" and earned {points} points" if points else ""),
        NOTIF_ACHIEVEMENT,
        {"achievement_id": achievement.id, "points": points, "xp": int(achievement.xp_reward or 0)},
    )


def sync_achievements(user: User) -> list[Achievement]:
    """Update progress rows and unlock every achievement the user now meets. Returns the new unlocks."""
    achievements = (
        Achievement.query.filter_by(is_active=True)
        .order_by(Achievement.type.asc(), Achievement.threshold.asc())
        .all()
    )
    if not achievements:
        return []

    rows = {ua.achievement_id: ua for ua in UserAchievement.query.filter_by(user_id=user.id).all()}
    now = datetime.utcnow()
    unlocked = []

    # Unlock rewards add xp and points, which can cross further thresholds.
    changed = True
    while changed:
        changed = False
        progress = achievement_progress(user)
        for achievement in achievements:
            row = rows.get(achievement.id)
            if row is not None and row.is_completed:
                continue
            current = progress.get(achievement.type, 0)
            if row is None:
                if current <= 0:
                    continue
                row = UserAchievement(user_id=user.id, achievement_id=achievement.id)
                db.session.add(row)
                rows[achievement.id] = row
            row.progress = min(current, int(achievement.threshold or 0))
            if current >= max(1, int(achievement.threshold or 0)):
                _unlock(user, achievement, row, now)
                unlocked.append(achievement)
                changed = True
    return unlocked


@achievements_api.get("/api/achievements")
def list_achievements():
    user, err = require_user()
    if err:
        return err

    try:
        sync_achievements(user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Achievement sync failed for user %s", user.id)
        return jsonify({"success": False, "error": "Failed to load achievements"}), 500

    achievements = (
        Achievement.query.filter_by(is_active=True)
        .order_by(Achievement.type.asc(), Achievement.threshold.asc())
        .all()
    )
    rows = {ua.achievement_id: ua for ua in UserAchievement.query.filter_by(user_id=user.id).all()}
    progress = achievement_progress(user)

    items = []
    grouped: dict[str, list] = {}
    for a in achievements:
        row = rows.get(a.id)
        threshold = max(1, int(a.threshold or 0))
        current = progress.get(a.type, 0)
        item = a.to_dict()
        item.update({
            "progress": {
                "current": current,
                "target": threshold,
                "percentage": min(100, round(current * 100 / threshold)),
            },
            "is_unlocked": bool(row and row.is_completed),
            "completed_at": row.completed_at.isoformat() if row and row.completed_at else None,
        })
        items.append(item)
        grouped.setdefault(a.type, []).append(item)

    unlocked = [i for i in items if i["is_unlocked"]]
    recent = sorted(unlocked, key=lambda i: i["completed_at"] or "", reverse=True)[:5]
    return jsonify({
        "success": True,
        "achievements": items,
        "grouped": grouped,
        "types": list(grouped.keys()),
        "summary": {
            "total": len(items),
            "unlocked": len(unlocked),
            "percentage": round(len(unlocked) * 100 / len(items)) if items else 0,
            "points_earned": sum(int(i["points_reward"] or 0) for i in unlocked),
        },
        "recent_unlocks": [
            {"id": i["id"], "name": i["name"], "icon": i["icon"], "completed_at": i["completed_at"]}
            for i in recent
        ],
    })
