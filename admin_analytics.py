"""Admin dashboard counters and daily activity series."""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from auth import require_permission
from extensions import db
from models_lottery import LOTTERY_ACTIVE, Lottery
from models_marketplace import DISPUTE_FINAL_STATUSES, LISTING_ACTIVE, MarketplaceDispute, MarketplaceListing
from models_tasks import SUBMISSION_PENDING, TASK_STATUS_ACTIVE, Task, TaskSubmission
from models_users import KYC_PENDING, USER_STATUS_ACTIVE, USER_STATUS_BANNED, User
from models_wallet import (
    TX_EARNING,
    TX_REFERRAL,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_PENDING,
    WITHDRAWAL_PROCESSING,
    Transaction,
    Withdrawal,
)
from rbac import ROLE_USER


admin_analytics = Blueprint("admin_analytics", __name__)


def _sum(column, *filters) -> float:
    return float(db.session.query(func.coalesce(func.sum(column), 0)).filter(*filters).scalar() or 0)


@admin_analytics.get("/api/admin/dashboard")
def api_admin_dashboard():
    _, err = require_permission("dashboard.view")
    if err:
        return err

    now = datetime.utcnow()
    day_start = datetime(now.year, now.month, now.day)
    players = User.query.filter(User.role == ROLE_USER)

    return jsonify({
        "success": True,
        "users": {
            "total": players.count(),
            "active": players.filter(User.status == USER_STATUS_ACTIVE).count(),
            "banned": players.filter(User.status == USER_STATUS_BANNED).count(),
            "new_today": players.filter(User.created_at >= day_start).count(),
            "pending_kyc": players.filter(User.kyc_status == KYC_PENDING).count(),
        },
        "tasks": {
            "active": Task.query.filter_by(status=TASK_STATUS_ACTIVE).count(),
            "pending_reviews": TaskSubmission.query.filter(
                TaskSubmission.status == SUBMISSION_PENDING,
                TaskSubmission.submitted_at.isnot(None),
            ).count(),
            "submissions_today": TaskSubmission.query.filter(TaskSubmission.created_at >= day_start).count(),
        },
        "withdrawals": {
            "pending_count": Withdrawal.query.filter(
                Withdrawal.status.in_([WITHDRAWAL_PENDING, WITHDRAWAL_PROCESSING])
            ).count(),
            "pending_amount": _sum(Withdrawal.amount, Withdrawal.status.in_([WITHDRAWAL_PENDING, WITHDRAWAL_PROCESSING])),
            "completed_amount": _sum(Withdrawal.amount, Withdrawal.status == WITHDRAWAL_COMPLETED),
        },
        "points": {
            "outstanding": int(_sum(User.points_balance, User.role == ROLE_USER)),
            "earned_today": int(_sum(
                Transaction.points,
                Transaction.type.in_([TX_EARNING, TX_REFERRAL]),
                Transaction.created_at >= day_start,
            )),
        },
        "marketplace": {
            "active_listings": MarketplaceListing.query.filter_by(status=LISTING_ACTIVE).count(),
            "open_disputes": MarketplaceDispute.query.filter(
                MarketplaceDispute.status.notin_(DISPUTE_FINAL_STATUSES)
            ).count(),
        },
        "lottery": {
            "active": Lottery.query.filter_by(status=LOTTERY_ACTIVE).count(),
        },
    })


@admin_analytics.get("/api/admin/analytics/daily")
def api_admin_daily_series():
    _, err = require_permission("analytics.view")
    if err:
        return err

    try:
        days = int(request.args.get("days") or 14)
    except ValueError:
        days = 14
    days = max(1, min(days, 90))
    since = datetime.utcnow() - timedelta(days=days)

    signup_day = func.date(User.created_at)
    signups = (
        db.session.query(signup_day, func.count(User.id))
        .filter(User.created_at >= since, User.role == ROLE_USER)
        .group_by(signup_day)
        .all()
    )
    tx_day = func.date(Transaction.created_at)
    earned = (
        db.session.query(tx_day, func.coalesce(func.sum(Transaction.points), 0))
        .filter(Transaction.created_at >= since, Transaction.type.in_([TX_EARNING, TX_REFERRAL]))
        .group_by(tx_day)
        .all()
    )

    # shape into {day: {"signups": n, "points_earned": n}}
    out: dict[str, dict] = {}
    for day, cnt in signups:
        out.setdefault(str(day), {"signups": 0, "points_earned": 0})["signups"] = int(cnt or 0)
    for day, pts in earned:
        out.setdefault(str(day), {"signups": 0, "points_earned": 0})["points_earned"] = int(pts or 0)

    return jsonify({"success": True, "since": since.isoformat() + "Z", "days": days, "data": out})
