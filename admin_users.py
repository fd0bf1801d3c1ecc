"""Admin user management.

Routes:
- GET  /api/admin/users?q=&status=&role=&page=
- GET  /api/admin/users/<id>
- POST /api/admin/users/<id>/ban        {"reason": "..."}
- POST /api/admin/users/<id>/unban
- POST /api/admin/users/<id>/kyc        {"action": "approve"|"reject", "reason": "..."}
- POST /api/admin/users/<id>/balance    {"points": 500 | -500, "reason": "..."}
"""

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_

from auth import require_permission
from extensions import db
from ledger import credit_points, debit_points, record_transaction
from models_notifications import NOTIF_SYSTEM, NOTIF_WALLET
from models_tasks import TaskSubmission
from models_users import (
    KYC_APPROVED,
    KYC_PENDING,
    KYC_REJECTED,
    USER_STATUS_ACTIVE,
    USER_STATUS_BANNED,
    User,
)
from models_wallet import TX_BONUS, TX_PENALTY, Transaction, Withdrawal
from notifications import notify
from rbac import ROLE_SUPER_ADMIN


admin_users = Blueprint("admin_users", __name__)


@admin_users.get("/api/admin/users")
def api_admin_list_users():
    _, err = require_permission("users.view")
    if err:
        return err

    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = max(1, min(int(request.args.get("limit", 50)), 200))
    except (TypeError, ValueError):
        page, limit = 1, 50

    search = (request.args.get("q") or "").strip()
    status = (request.args.get("status") or "").strip().upper()
    role = (request.args.get("role") or "").strip().upper()
    kyc = (request.args.get("kyc_status") or "").strip().upper()

    q = User.query
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.email.ilike(like), User.name.ilike(like), User.referral_code == search.upper()))
    if status:
        q = q.filter(User.status == status)
    if role:
        q = q.filter(User.role == role)
    if kyc:
        q = q.filter(User.kyc_status == kyc)

    total = q.count()
    rows = q.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({
        "success": True,
        "users": [u.to_dict() for u in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    })


@admin_users.get("/api/admin/users/<int:user_id>")
def api_admin_get_user(user_id: int):
    _, err = require_permission("users.view")
    if err:
        return err

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({"success": False, "error": "User not found"}), 404

    submissions = db.session.query(func.count(TaskSubmission.id)).filter(TaskSubmission.user_id == user.id).scalar() or 0
    recent_tx = (
        Transaction.query.filter_by(user_id=user.id)
        .order_by(Transaction.created_at.desc())
        .limit(20)
        .all()
    )
    withdrawals = Withdrawal.query.filter_by(user_id=user.id).order_by(Withdrawal.created_at.desc()).limit(20).all()
    return jsonify({
        "success": True,
        "user": user.to_dict(),
        "stats": {
            "submissions": int(submissions),
            "referrals": User.query.filter_by(referred_by_id=user.id).count(),
        },
        "recent_transactions": [t.to_dict() for t in recent_tx],
        "withdrawals": [w.to_dict() for w in withdrawals],
    })


@admin_users.post("/api/admin/users/<int:user_id>/ban")
def api_admin_ban_user(user_id: int):
    admin, err = require_permission("users.ban")
    if err:
        return err

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({"success": False, "error": "User not found"}), 404
    if user.id == admin.id:
        return jsonify({"success": False, "error": "You cannot ban yourself"}), 400
    if user.role == ROLE_SUPER_ADMIN:
        return jsonify({"success": False, "error": "Super admins cannot be banned"}), 403

    reason = ((request.get_json(silent=True) or {}).get("reason") or "").strip()
    user.status = USER_STATUS_BANNED
    db.session.commit()

    current_app.logger.warning("User %s banned by admin %s: %s", user.id, admin.id, reason or "-")
    return jsonify({"success": True, "user": user.to_dict()})


@admin_users.post("/api/admin/users/<int:user_id>/unban")
def api_admin_unban_user(user_id: int):
    admin, err = require_permission("users.ban")
    if err:
        return err

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({"success": False, "error": "User not found"}), 404
    if user.status == USER_STATUS_ACTIVE:
        return jsonify({"success": False, "error": "User is not banned"}), 400

    user.status = USER_STATUS_ACTIVE
    notify(user.id, "Account Restored", "Your account has been reactivated.", NOTIF_SYSTEM)
    db.session.commit()

    current_app.logger.info("User %s unbanned by admin %s", user.id, admin.id)
    return jsonify({"success": True, "user": user.to_dict()})


@admin_users.post("/api/admin/users/<int:user_id>/kyc")
def api_admin_review_kyc(user_id: int):
    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip().lower()
    if action not in ("approve", "reject"):
        return jsonify({"success": False, "error": "action must be approve or reject"}), 400

    admin, err = require_permission(f"kyc.{action}")
    if err:
        return err

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({"success": False, "error": "User not found"}), 404
    if user.kyc_status != KYC_PENDING:
        return jsonify({"success": False, "error": "No pending KYC submission"}), 400

    if action == "approve":
        user.kyc_status = KYC_APPROVED
        notify(user.id, "KYC Approved", "Your identity verification has been approved.", NOTIF_SYSTEM)
    else:
        reason = (data.get("reason") or "").strip()
        if not reason:
            return jsonify({"success": False, "error": "Rejection reason is required"}), 400
        user.kyc_status = KYC_REJECTED
        notify(user.id, "KYC Rejected", f"Your identity verification was rejected: {reason}", NOTIF_SYSTEM)
    db.session.commit()

    current_app.logger.info("KYC for user %s %sd by admin %s", user.id, action, admin.id)
    return jsonify({"success": True, "user": user.to_dict()})


@admin_users.post("/api/admin/users/<int:user_id>/balance")
def api_admin_adjust_balance(user_id: int):
    admin, err = require_permission("users.adjust_balance")
    if err:
        return err

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({"success": False, "error": "User not found"}), 404

    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip()
    try:
        points = int(data.get("points"))
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "points must be an integer"}), 400
    if points == 0:
        return jsonify({"success": False, "error": "points must be non-zero"}), 400
    if not reason:
        return jsonify({"success": False, "error": "A reason is required"}), 400

    if points > 0:
        credit_points(user, points, count_as_earning=False)
        tx_type, title = TX_BONUS, "Balance Credited"
    else:
        if not debit_points(user, -points):
            return jsonify({"success": False, "error": "Adjustment would make the balance negative"}), 400
        tx_type, title = TX_PENALTY, "Balance Debited"

    record_transaction(
        user.id, tx_type, points, f"Admin adjustment: {reason}",
        reference=f"admin_adjust_{admin.id}", metadata={"admin_id": admin.id},
    )
    notify(user.id, title, f"{abs(points)} points. Reason: {reason}", NOTIF_WALLET, {"points": points})
    db.session.commit()

    current_app.logger.info("Admin %s adjusted user %s balance by %d (%s)", admin.id, user.id, points, reason)
    return jsonify({"success": True, "user": user.to_dict()})
