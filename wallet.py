"""Wallet, ledger history and withdrawal requests.

Routes:
- GET  /api/wallet
- GET  /api/transactions?type=EARNING&page=1
- GET  /api/withdrawals
- POST /api/withdrawals          {"amount": 25.0, "method": "PAYPAL", "account_details": {...}}
- POST /api/withdrawals/<id>/cancel
- GET  /api/payment-methods

Withdrawal points are held (debited) when the request is created. A rejected
or cancelled request gives them back through a REFUND transaction.
"""

import json
import math
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func

from auth import require_user
from extensions import db, limiter
from ledger import credit_points, debit_points, record_transaction
from models_notifications import NOTIF_WALLET
from models_users import KYC_APPROVED, POINTS_PER_USD, Package, User
from models_wallet import (
    PAYMENT_METHODS,
    TX_REFUND,
    TX_STATUS_CANCELLED,
    TX_STATUS_PENDING,
    TX_TYPES,
    TX_WITHDRAWAL,
    WITHDRAWAL_CANCELLED,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_PENDING,
    WITHDRAWAL_PROCESSING,
    Transaction,
    Withdrawal,
)
from notifications import notify
from packages import active_package


wallet_api = Blueprint("wallet_api", __name__)

KYC_REQUIRED_ABOVE_USD = 100.0
WITHDRAWAL_COOLDOWN = timedelta(hours=24)


def _get_withdrawal_config() -> dict:
    return {
        "kyc_required_above": KYC_REQUIRED_ABOVE_USD,
        "cooldown_hours": int(WITHDRAWAL_COOLDOWN.total_seconds() // 3600),
        "methods": {
            m: {"fee_percent": pct, "fixed_fee": fixed, "min_amount": minimum}
            for m, (pct, fixed, minimum) in PAYMENT_METHODS.items()
        },
    }


def calculate_fee(amount: float, method: str, package: Package | None) -> float:
    pct, fixed, _ = PAYMENT_METHODS[method]
    discount = float(package.withdrawal_fee_discount or 0) if package else 0.0
    fee_pct = max(0.0, pct - discount)
    return round(amount * fee_pct / 100 + fixed, 2)


def withdrawal_eligibility(user: User, amount: float, method: str, now: datetime | None = None) -> dict:
    """Return {"ok": bool, "reason_code": str, "message": str} for a withdrawal request."""
    now = now or datetime.utcnow()

    if method not in PAYMENT_METHODS:
        return {"ok": False, "reason_code": "INVALID_METHOD", "message": "Invalid payment method"}
    if not math.isfinite(amount) or amount <= 0:
        return {"ok": False, "reason_code": "INVALID_AMOUNT", "message": "Invalid withdrawal amount"}

    _, _, method_min = PAYMENT_METHODS[method]
    if amount < method_min:
        return {"ok": False, "reason_code": "BELOW_METHOD_MIN",
                "message": f"Minimum withdrawal for {method} is ${method_min:g}"}

    if amount > KYC_REQUIRED_ABOVE_USD and user.kyc_status != KYC_APPROVED:
        return {"ok": False, "reason_code": "KYC_REQUIRED",
                "message": f"KYC verification required for withdrawals over ${KYC_REQUIRED_ABOVE_USD:g}"}

    pkg = active_package(user, now)
    pkg_min = float(pkg.min_withdrawal) if pkg and pkg.min_withdrawal is not None else 5.0
    if amount < pkg_min:
        return {"ok": False, "reason_code": "BELOW_PACKAGE_MIN",
                "message": f"Minimum withdrawal for your package is ${pkg_min:g}"}

    last = (
        Withdrawal.query.filter(
            Withdrawal.user_id == user.id,
            Withdrawal.status.in_([WITHDRAWAL_PENDING, WITHDRAWAL_PROCESSING, WITHDRAWAL_COMPLETED]),
        )
        .order_by(Withdrawal.created_at.desc())
        .first()
    )
    if last and now - last.created_at < WITHDRAWAL_COOLDOWN:
        wait = WITHDRAWAL_COOLDOWN - (now - last.created_at)
        hours = max(1, math.ceil(wait.total_seconds() / 3600))
        return {"ok": False, "reason_code": "COOLDOWN",
                "message": f"Please wait {hours} more hours before requesting another withdrawal"}

    if math.ceil(amount * POINTS_PER_USD) > int(user.points_balance or 0):
        return {"ok": False, "reason_code": "INSUFFICIENT_BALANCE", "message": "Insufficient balance"}

    return {"ok": True, "reason_code": "OK", "message": "Eligible", "package": pkg}


def _page_args():
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = max(1, min(int(request.args.get("limit", 20)), 100))
    except (TypeError, ValueError):
        page, limit = 1, 20
    return page, limit


@wallet_api.get("/api/wallet")
def wallet_summary():
    user, err = require_user()
    if err:
        return err

    pending_amount = (
        db.session.query(func.coalesce(func.sum(Withdrawal.amount), 0.0))
        .filter(Withdrawal.user_id == user.id, Withdrawal.status.in_([WITHDRAWAL_PENDING, WITHDRAWAL_PROCESSING]))
        .scalar()
        or 0.0
    )
    recent = (
        Transaction.query.filter_by(user_id=user.id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(10)
        .all()
    )
    points = int(user.points_balance or 0)
    return jsonify({
        "success": True,
        "wallet": {
            "points_balance": points,
            "points_value_usd": round(points / POINTS_PER_USD, 2),
            "cash_balance": float(user.cash_balance or 0),
            "total_earnings": float(user.total_earnings or 0),
            "total_withdrawals": float(user.total_withdrawals or 0),
            "pending_withdrawals": float(pending_amount),
            "points_per_usd": POINTS_PER_USD,
        },
        "recent_transactions": [t.to_dict() for t in recent],
    })


@wallet_api.get("/api/transactions")
def list_transactions():
    user, err = require_user()
    if err:
        return err

    page, limit = _page_args()
    tx_type = (request.args.get("type") or "").strip().upper()

    q = Transaction.query.filter_by(user_id=user.id)
    if tx_type in TX_TYPES:
        q = q.filter(Transaction.type == tx_type)

    total = q.count()
    rows = q.order_by(Transaction.created_at.desc(), Transaction.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()
    return jsonify({
        "success": True,
        "transactions": [t.to_dict() for t in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    })


@wallet_api.get("/api/payment-methods")
def payment_methods():
    return jsonify({"success": True, **_get_withdrawal_config()})


@wallet_api.get("/api/withdrawals")
def list_withdrawals():
    user, err = require_user()
    if err:
        return err

    page, limit = _page_args()
    q = Withdrawal.query.filter_by(user_id=user.id)
    total = q.count()
    rows = q.order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()

    sums = dict(
        db.session.query(Withdrawal.status, func.coalesce(func.sum(Withdrawal.amount), 0.0))
        .filter(Withdrawal.user_id == user.id)
        .group_by(Withdrawal.status)
        .all()
    )
    return jsonify({
        "success": True,
        "withdrawals": [w.to_dict() for w in rows],
        "summary": {
            "total_withdrawn": float(sums.get(WITHDRAWAL_COMPLETED, 0.0)),
            "pending": float(sums.get(WITHDRAWAL_PENDING, 0.0)) + float(sums.get(WITHDRAWAL_PROCESSING, 0.0)),
        },
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    })


@wallet_api.post("/api/withdrawals")
@limiter.limit("10 per hour")
def create_withdrawal():
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    method = (data.get("method") or "").strip().upper()
    account_details = data.get("account_details") or {}
    try:
        amount = round(float(data.get("amount")), 2)
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "Invalid withdrawal amount"}), 400

    if not isinstance(account_details, dict) or not str(account_details.get("account_number") or "").strip():
        return jsonify({"success": False, "error": "Account details are required"}), 400

    elig = withdrawal_eligibility(user, amount, method)
    if not elig["ok"]:
        return jsonify({"success": False, "error": elig["message"], "reason_code": elig["reason_code"]}), 400

    points_needed = math.ceil(amount * POINTS_PER_USD)
    fee = calculate_fee(amount, method, elig.get("package"))
    net_amount = round(amount - fee, 2)

    if not debit_points(user, points_needed):
        return jsonify({"success": False, "error": "Insufficient balance"}), 400

    tx = record_transaction(
        user.id,
        TX_WITHDRAWAL,
        -points_needed,
        f"Withdrawal request via {method}",
        amount=-amount,
        status=TX_STATUS_PENDING,
        metadata={"method": method, "fee": fee, "net_amount": net_amount},
    )
    db.session.flush()

    withdrawal = Withdrawal(
        user_id=user.id,
        amount=amount,
        fee=fee,
        net_amount=net_amount,
        points=points_needed,
        method=method,
        account_details_json=json.dumps(account_details),
        status=WITHDRAWAL_PENDING,
        transaction_id=tx.id,
    )
    db.session.add(withdrawal)
    notify(
        user.id,
        "Withdrawal Requested",
        f"Your withdrawal of ${amount:.2f} via {method} is pending review.",
        NOTIF_WALLET,
        {"amount": amount, "method": method},
    )
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create withdrawal for user %s", user.id)
        return jsonify({"success": False, "error": "Failed to create withdrawal"}), 500

    tx.reference = f"withdrawal_{withdrawal.id}"
    db.session.commit()

    current_app.logger.info("Withdrawal %s requested: user=%s amount=%.2f method=%s", withdrawal.id, user.id, amount, method)
    return jsonify({"success": True, "withdrawal": withdrawal.to_dict(), "points_balance": user.points_balance}), 201


def refund_withdrawal(withdrawal: Withdrawal, status: str, reason: str | None = None) -> None:
    """Return held points and close out the pending ledger row. The caller commits."""
    user = db.session.get(User, withdrawal.user_id)
    withdrawal.status = status
    withdrawal.rejection_reason = reason
    withdrawal.processed_at = datetime.utcnow()

    if withdrawal.transaction_id:
        tx = db.session.get(Transaction, withdrawal.transaction_id)
        if tx is not None:
            tx.status = TX_STATUS_CANCELLED
    if user is not None and withdrawal.points:
        credit_points(user, withdrawal.points, count_as_earning=False)
        record_transaction(
            user.id,
            TX_REFUND,
            withdrawal.points,
            f"Refund for withdrawal #{withdrawal.id}" + (f": {reason}" if reason else ""),
            reference=f"withdrawal_refund_{withdrawal.id}",
            metadata={"withdrawal_id": withdrawal.id},
        )


@wallet_api.post("/api/withdrawals/<int:withdrawal_id>/cancel")
def cancel_withdrawal(withdrawal_id: int):
    user, err = require_user()
    if err:
        return err

    withdrawal = Withdrawal.query.filter_by(id=withdrawal_id, user_id=user.id).first()
    if not withdrawal:
        return jsonify({"success": False, "error": "Withdrawal not found"}), 404
    if withdrawal.status != WITHDRAWAL_PENDING:
        return jsonify({"success": False, "error": "Only pending withdrawals can be cancelled"}), 400

    refund_withdrawal(withdrawal, WITHDRAWAL_CANCELLED, "Cancelled by user")
    db.session.commit()
    return jsonify({"success": True, "withdrawal": withdrawal.to_dict(), "points_balance": user.points_balance})
