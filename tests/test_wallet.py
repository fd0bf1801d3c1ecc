"""Withdrawals: eligibility, point hold, user cancel, admin approve/reject.

Invariants:
    - Requesting a withdrawal debits ceil(amount * 1000) points immediately
    - Reject and cancel return exactly the held points through a REFUND transaction
    - Approve never touches points_balance; it only closes the pending ledger row
"""

from datetime import datetime, timedelta

import pytest

from extensions import db
from models_users import KYC_APPROVED, Package, User
from models_wallet import (
    TX_REFUND,
    TX_STATUS_CANCELLED,
    TX_STATUS_COMPLETED,
    TX_STATUS_PENDING,
    TX_WITHDRAWAL,
    WITHDRAWAL_CANCELLED,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_PENDING,
    WITHDRAWAL_REJECTED,
    Transaction,
    Withdrawal,
)
from wallet import calculate_fee, withdrawal_eligibility

ACCOUNT = {"account_number": "01700000000", "account_name": "Test"}


def _request(client, amount=20.0, method="PAYPAL", account_details=ACCOUNT):
    return client.post("/api/withdrawals", json={
        "amount": amount, "method": method, "account_details": account_details,
    })


def test_request_holds_points_and_writes_pending_transaction(client, login, make_user, free_package):
    user = login(make_user(points=50000))

    res = _request(client, amount=20.0)

    assert res.status_code == 201
    body = res.get_json()
    assert body["points_balance"] == 30000
    w = db.session.get(Withdrawal, body["withdrawal"]["id"])
    assert w.status == WITHDRAWAL_PENDING
    assert w.points == 20000
    assert w.fee == 0.5
    assert w.net_amount == 19.5
    tx = Transaction.query.filter_by(user_id=user.id, type=TX_WITHDRAWAL).one()
    assert tx.points == -20000
    assert tx.status == TX_STATUS_PENDING
    assert tx.reference == f"withdrawal_{w.id}"


@pytest.mark.parametrize("payload,code", [
    ({"amount": 20.0, "method": "CHEQUE"}, "INVALID_METHOD"),
    ({"amount": 5.0, "method": "BINANCE"}, "BELOW_METHOD_MIN"),
    ({"amount": 150.0, "method": "PAYPAL"}, "KYC_REQUIRED"),
    ({"amount": 40.0, "method": "PAYPAL"}, "INSUFFICIENT_BALANCE"),
])
def test_request_rejections(client, login, make_user, free_package, payload, code):
    login(make_user(points=30000))

    res = _request(client, **payload)

    assert res.status_code == 400
    assert res.get_json()["reason_code"] == code
    assert Withdrawal.query.count() == 0


def test_account_details_required(client, login, make_user, free_package):
    login(make_user(points=30000))
    assert _request(client, account_details={}).status_code == 400
    assert _request(client, amount="lots").status_code == 400


def test_package_minimum_applies(make_user, free_package):
    free_package.min_withdrawal = 15.0
    db.session.commit()
    user = make_user(points=100000)

    result = withdrawal_eligibility(user, 12.0, "PAYPAL")

    assert result["reason_code"] == "BELOW_PACKAGE_MIN"


def test_cooldown_between_requests(make_user, free_package):
    user = make_user(points=100000)
    db.session.add(Withdrawal(
        user_id=user.id, amount=10, fee=0, net_amount=10, points=10000, method="BKASH",
        account_details_json="{}", status=WITHDRAWAL_PENDING, created_at=datetime.utcnow() - timedelta(hours=2),
    ))
    db.session.commit()

    assert withdrawal_eligibility(user, 10.0, "BKASH")["reason_code"] == "COOLDOWN"
    later = datetime.utcnow() + timedelta(hours=23)
    assert withdrawal_eligibility(user, 10.0, "BKASH", now=later)["ok"] is True


def test_kyc_approved_users_can_withdraw_large_amounts(make_user, free_package):
    user = make_user(points=500000, kyc_status=KYC_APPROVED)
    assert withdrawal_eligibility(user, 200.0, "BINANCE")["ok"] is True


def test_fee_uses_package_discount():
    basic = Package(tier="BASIC", name="Basic", withdrawal_fee_discount=0.5)
    assert calculate_fee(20.0, "PAYPAL", None) == 0.5
    assert calculate_fee(20.0, "PAYPAL", basic) == 0.4
    generous = Package(tier="X", name="X", withdrawal_fee_discount=5.0)
    assert calculate_fee(20.0, "PAYPAL", generous) == 0.0


def test_user_cancel_refunds(client, login, make_user, free_package):
    user = login(make_user(points=25000))
    wid = _request(client, amount=20.0).get_json()["withdrawal"]["id"]

    res = client.post(f"/api/withdrawals/{wid}/cancel")

    assert res.status_code == 200
    assert db.session.get(User, user.id).points_balance == 25000
    assert db.session.get(Withdrawal, wid).status == WITHDRAWAL_CANCELLED
    refund = Transaction.query.filter_by(user_id=user.id, type=TX_REFUND).one()
    assert refund.points == 20000
    held = Transaction.query.filter_by(user_id=user.id, type=TX_WITHDRAWAL).one()
    assert held.status == TX_STATUS_CANCELLED

    assert client.post(f"/api/withdrawals/{wid}/cancel").status_code == 400


def test_admin_reject_refunds_and_requires_reason(client, login, make_user, admin, free_package):
    user = login(make_user(points=20000))
    wid = _request(client, amount=20.0).get_json()["withdrawal"]["id"]
    assert db.session.get(User, user.id).points_balance == 0

    login(admin)
    assert client.post(f"/api/admin/withdrawals/{wid}/reject", json={}).status_code == 400
    res = client.post(f"/api/admin/withdrawals/{wid}/reject", json={"reason": "Wrong account"})

    assert res.status_code == 200
    w = db.session.get(Withdrawal, wid)
    assert w.status == WITHDRAWAL_REJECTED
    assert w.rejection_reason == "Wrong account"
    assert db.session.get(User, user.id).points_balance == 20000
    assert db.session.get(User, user.id).total_earnings == 0

    assert client.post(f"/api/admin/withdrawals/{wid}/approve").status_code == 400


def test_admin_approve_completes(client, login, make_user, admin, free_package):
    user = login(make_user(points=20000))
    wid = _request(client, amount=20.0).get_json()["withdrawal"]["id"]

    login(admin)
    assert client.post(f"/api/admin/withdrawals/{wid}/process").status_code == 200
    res = client.post(f"/api/admin/withdrawals/{wid}/approve", json={"transaction_ref": "PP-123"})

    assert res.status_code == 200
    w = db.session.get(Withdrawal, wid)
    assert w.status == WITHDRAWAL_COMPLETED
    assert w.transaction_ref == "PP-123"
    fresh = db.session.get(User, user.id)
    assert fresh.points_balance == 0
    assert fresh.total_withdrawals == 20.0
    assert db.session.get(Transaction, w.transaction_id).status == TX_STATUS_COMPLETED


def test_admin_export_csv(client, login, make_user, admin, free_package):
    login(make_user(points=20000))
    _request(client, amount=20.0)
    login(admin)

    res = client.get("/api/admin/withdrawals/export.csv")

    assert res.status_code == 200
    assert res.mimetype == "text/csv"
    lines = res.get_data(as_text=True).strip().splitlines()
    assert lines[0].startswith("id,user_id,amount")
    assert len(lines) == 2


def test_wallet_summary_shows_pending(client, login, make_user, free_package):
    login(make_user(points=30000))
    _request(client, amount=20.0)

    wallet = client.get("/api/wallet").get_json()["wallet"]

    assert wallet["points_balance"] == 10000
    assert wallet["pending_withdrawals"] == 20.0
