from flask import Blueprint, jsonify, request
from sqlalchemy import func
from sqlalchemy.orm import aliased

from auth import current_user
from extensions import db
from models_users import POINTS_PER_USD, USER_STATUS_ACTIVE, User
from rbac import ROLE_USER


leaderboard_api = Blueprint("leaderboard_api", __name__)

LEADERBOARD_TYPES = ("earnings", "xp", "referrals")


def _entry(rank: int, user: User, value) -> dict:
    return {
        "rank": rank,
        "user_id": user.id,
        "name": user.name or "Anonymous",
        "level": user.level,
        "package_tier": user.package_tier,
        "value": value,
    }


def _value_for(user: User, board: str) -> int:
    if board == "xp":
        return int(user.xp or 0)
    if board == "referrals":
        return User.query.filter_by(referred_by_id=user.id).count()
    return int(round(float(user.total_earnings or 0) * POINTS_PER_USD))


@leaderboard_api.get("/api/leaderboard")
def get_leaderboard():
    board = (request.args.get("type") or "earnings").strip().lower()
    if board == "points":
        board = "earnings"
    if board not in LEADERBOARD_TYPES:
        return jsonify({"success": False, "error": "type must be earnings, xp or referrals"}), 400
    try:
        limit = max(1, min(int(request.args.get("limit", 50)), 100))
    except (TypeError, ValueError):
        limit = 50

    base = User.query.filter(User.role == ROLE_USER, User.status == USER_STATUS_ACTIVE)

    if board == "referrals":
        referrer = aliased(User)
        counts = (
            db.session.query(User.referred_by_id, func.count(User.id).label("cnt"))
            .filter(User.referred_by_id.isnot(None))
            .group_by(User.referred_by_id)
            .subquery()
        )
        rows = (
            db.session.query(referrer, counts.c.cnt)
            .join(counts, counts.c.referred_by_id == referrer.id)
            .filter(referrer.role == ROLE_USER, referrer.status == USER_STATUS_ACTIVE)
            .order_by(counts.c.cnt.desc(), referrer.id.asc())
            .limit(limit)
            .all()
        )
        entries = [_entry(i + 1, u, int(cnt)) for i, (u, cnt) in enumerate(rows)]
    else:
        order = User.xp.desc() if board == "xp" else User.total_earnings.desc()
        users = base.order_by(order, User.id.asc()).limit(limit).all()
        entries = [_entry(i + 1, u, _value_for(u, board)) for i, u in enumerate(users)]

    me = current_user()
    my_rank = None
    if me is not None:
        mine = next((e for e in entries if e["user_id"] == me.id), None)
        if mine:
            my_rank = {"rank": mine["rank"], "value": mine["value"], "is_in_top": True}
        else:
            my_rank = {"rank": None, "value": _value_for(me, board), "is_in_top": False}

    return jsonify({"success": True, "type": board, "leaderboard": entries, "current_user": my_rank})
