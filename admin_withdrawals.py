"""Admin withdrawals queue + APIs."""

import csv
import io
from datetime import datetime

from flask import Blueprint, Response, current_app, jsonify, request

from auth import require_permission
from extensions import db
from models_notifications import NOTIF_WALLET
from models_users import User
from models_wallet import (
    PAYMENT_METHODS,
    TX_STATUS_COMPLETED,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_PENDING,
    WITHDRAWAL_PROCESSING,
    WITHDRAWAL_REJECTED,
    WITHDRAWAL_STATUSES,
    Transaction,
    Withdrawal,
)
from notifications import notify
from wallet import refund_withdrawal


admin_withdrawals = Blueprint("admin_withdrawals", __name__)


def _filtered_query():
    status = (request.args.get("status") or "").strip().upper()
    method = (request.args.get("method") or "").strip().upper()
    user_id = request.args.get("user_id")

    q = Withdrawal.query
    if status in WITHDRAWAL_STATUSES:
        q = q.filter(Withdrawal.status == status)
    if method in PAYMENT_METHODS:
        q = q.filter(Withdrawal.method == method)
    if user_id and str(user_id).isdigit():
        q = q.filter(Withdrawal.user_id == int(user_id))
    return q


def _with_user(w: Withdrawal) -> dict:
    out = w.to_dict()
    user = db.session.get(User, w.user_id)
    out["user"] = {"id": user.id, "email": user.email, "name": user.name, "kyc_status": user.kyc_status} if user else None
    return out


@admin_withdrawals.get("/api/admin/withdrawals")
def api_admin_list_withdrawals():
    _, err = require_permission("withdrawals.view")
    if err:
        return err

    rows = _filtered_query().order_by(Withdrawal.created_at.desc()).limit(500).all()
    pending = Withdrawal.query.filter_by(status=WITHDRAWAL_PENDING).count()
    return jsonify({"success": True, "withdrawals": [_with_user(w) for w in rows], "pending_count": pending})


@admin_withdrawals.get("/api/admin/withdrawals/<int:withdrawal_id>")
def api_admin_get_withdrawal(withdrawal_id: int):
    _, err = require_permission("withdrawals.view")
    if err:
        return err

    w = Withdrawal.query.get(withdrawal_id)
    if not w:
        return jsonify({"success": False, "error": "Not found"}), 404
    return jsonify({"success": True, "withdrawal": _with_user(w)})


@admin_withdrawals.post("/api/admin/withdrawals/<int:withdrawal_id>/process")
def api_admin_process(withdrawal_id: int):
    admin, err = require_permission("withdrawals.process")
    if err:
        return err

    w = Withdrawal.query.get(withdrawal_id)
    if not w:
        return jsonify({"success": False, "error": "Not found"}), 404
    if w.status != WITHDRAWAL_PENDING:
        return jsonify({"success": False, "error": "Only pending withdrawals can be processed"}), 400

    w.status = WITHDRAWAL_PROCESSING
    w.processed_by = admin.id
    db.session.commit()
    return jsonify({"success": True, "withdrawal": w.to_dict()})


@admin_withdrawals.post("/api/admin/withdrawals/<int:withdrawal_id>/approve")
def api_admin_approve(withdrawal_id: int):
    admin, err = require_permission("withdrawals.approve")
    if err:
        return err

    w = Withdrawal.query.get(withdrawal_id)
    if not w:
        return jsonify({"success": False, "error": "Not found"}), 404
    if w.status not in (WITHDRAWAL_PENDING, WITHDRAWAL_PROCESSING):
        return jsonify({"success": False, "error": f"Cannot approve a {w.status.lower()} withdrawal"}), 400

    data = request.get_json(silent=True) or {}
    w.status = WITHDRAWAL_COMPLETED
    w.processed_by = admin.id
    w.processed_at = datetime.utcnow()
    w.transaction_ref = (data.get("transaction_ref") or "").strip() or None

    user = db.session.get(User, w.user_id)
    if user is not None:
        user.total_withdrawals = float(user.total_withdrawals or 0) + float(w.amount)
    if w.transaction_id:
        tx = db.session.get(Transaction, w.transaction_id)
        if tx is not None:
            tx.status = TX_STATUS_COMPLETED
    notify(
        w.user_id,
        "Withdrawal Completed",
        f"Your withdrawal of ${w.amount:.2f} via {w.method} has been sent (net ${w.net_amount:.2f}).",
        NOTIF_WALLET,
        {"withdrawal_id": w.id},
    )
    db.session.commit()

    current_app.logger.info("Withdrawal %s approved by admin %s", w.id, admin.id)
    return jsonify({"success": True, "withdrawal": w.to_dict()})


@admin_withdrawals.post("/api/admin/withdrawals/<int:withdrawal_id>/reject")
def api_admin_reject(withdrawal_id: int):
    admin, err = require_permission("withdrawals.reject")
    if err:
        return err

    w = Withdrawal.query.get(withdrawal_id)
    if not w:
        return jsonify({"success": False, "error": "Not found"}), 404
    if w.status not in (WITHDRAWAL_PENDING, WITHDRAWAL_PROCESSING):
        return jsonify({"success": False, "error": f"Cannot reject a {w.status.lower()} withdrawal"}), 400

    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip()
    if not reason:
        return jsonify({"success": False, "error": "Rejection reason is required"}), 400

    refund_withdrawal(w, WITHDRAWAL_REJECTED, reason)
    w.processed_by = admin.id
    notify(
        w.user_id,
        "Withdrawal Rejected",
        f"Your withdrawal of ${w.amount:.2f} was rejected: {reason}. {w.points} points were returned to your balance.",
        NOTIF_WALLET,
        {"withdrawal_id": w.id},
    )
    db.session.commit()

    current_app.logger.info("Withdrawal %s rejected by admin %s", w.id, admin.id)
    return jsonify({"success": True, "withdrawal": w.to_dict()})


@admin_withdrawals.get("/api/admin/withdrawals/export.csv")
def api_admin_export_csv():
    _, err = require_permission("analytics.export")
    if err:
        return err

    rows = _filtered_query().order_by(Withdrawal.created_at.desc()).limit(5000).all()

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["id", "user_id", "amount", "fee", "net_amount", "points", "method", "status", "transaction_ref", "created_at", "processed_at"])
    for w in rows:
        writer.writerow([
            w.id, w.user_id, w.amount, w.fee, w.net_amount, w.points, w.method, w.status,
            w.transaction_ref or "",
            w.created_at.isoformat() if w.created_at else "",
            w.processed_at.isoformat() if w.processed_at else "",
        ])
    return Response(buf.getvalue(), mimetype="text/csv")
