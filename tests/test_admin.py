"""Admin console: permissions, users, KYC, balance adjustments, referral settings, notifications.

Invariants:
    - Each admin route checks one permission; USER has none, SUPER_ADMIN has all
    - Referral settings are replaced as a whole and validated before anything is written
    - Manual balance adjustments never drive a balance negative
"""

import pytest

from extensions import db
from models_notifications import Notification
from models_referrals import COMMISSION_FLAT_RATE, ReferralLevel
from models_users import KYC_APPROVED, KYC_PENDING, KYC_REJECTED, USER_STATUS_ACTIVE, USER_STATUS_BANNED, User
from models_wallet import TX_BONUS, TX_PENALTY, Transaction
from notifications import notify
from rbac import (
    ALL_PERMISSIONS,
    ROLE_FINANCE_ADMIN,
    ROLE_MODERATOR,
    ROLE_PERMISSIONS,
    ROLE_SUPPORT_ADMIN,
    ROLE_USER,
    has_permission,
)


def test_role_table_only_uses_known_permissions():
    for role, perms in ROLE_PERMISSIONS.items():
        assert set(perms) <= set(ALL_PERMISSIONS), role
    assert not any(has_permission(ROLE_USER, p) for p in ALL_PERMISSIONS)
    assert has_permission(ROLE_FINANCE_ADMIN, "withdrawals.approve")
    assert not has_permission(ROLE_MODERATOR, "withdrawals.approve")
    assert not has_permission(None, "dashboard.view")


@pytest.mark.parametrize("role,status", [(ROLE_USER, 403), (ROLE_MODERATOR, 200), (ROLE_FINANCE_ADMIN, 200)])
def test_dashboard_permission(client, login, make_user, role, status):
    login(make_user(role=role))
    assert client.get("/api/admin/dashboard").status_code == status


def test_dashboard_counts(client, login, admin, make_user):
    make_user()
    make_user(status=USER_STATUS_BANNED)
    make_user(kyc_status=KYC_PENDING)
    login(admin)

    body = client.get("/api/admin/dashboard").get_json()

    assert body["users"]["total"] == 3
    assert body["users"]["banned"] == 1
    assert body["users"]["pending_kyc"] == 1


def test_daily_analytics(client, login, admin, make_user):
    make_user()
    login(admin)

    body = client.get("/api/admin/analytics/daily?days=7").get_json()

    assert body["success"] is True


def test_ban_and_unban(client, login, admin, make_user):
    target = make_user()
    login(admin)

    assert client.post(f"/api/admin/users/{admin.id}/ban").status_code == 400
    assert client.post(f"/api/admin/users/{target.id}/ban", json={"reason": "spam"}).status_code == 200
    assert db.session.get(User, target.id).status == USER_STATUS_BANNED

    assert client.post(f"/api/admin/users/{target.id}/unban").status_code == 200
    assert db.session.get(User, target.id).status == USER_STATUS_ACTIVE
    assert client.post(f"/api/admin/users/{target.id}/unban").status_code == 400


def test_super_admin_cannot_be_banned(client, login, make_user, admin):
    support = login(make_user(role=ROLE_SUPPORT_ADMIN))
    assert support.role == ROLE_SUPPORT_ADMIN
    assert client.post(f"/api/admin/users/{admin.id}/ban").status_code == 403


def test_kyc_review(client, login, admin, make_user):
    a = make_user(kyc_status=KYC_PENDING)
    b = make_user(kyc_status=KYC_PENDING)
    login(admin)

    assert client.post(f"/api/admin/users/{a.id}/kyc", json={"action": "approve"}).status_code == 200
    assert db.session.get(User, a.id).kyc_status == KYC_APPROVED
    assert client.post(f"/api/admin/users/{a.id}/kyc", json={"action": "approve"}).status_code == 400

    assert client.post(f"/api/admin/users/{b.id}/kyc", json={"action": "reject"}).status_code == 400
    assert client.post(f"/api/admin/users/{b.id}/kyc", json={"action": "reject", "reason": "Blurry"}).status_code == 200
    assert db.session.get(User, b.id).kyc_status == KYC_REJECTED


def test_balance_adjustment(client, login, admin, make_user):
    user = make_user(points=100)
    login(admin)
    url = f"/api/admin/users/{user.id}/balance"

    assert client.post(url, json={"points": 50}).status_code == 400
    assert client.post(url, json={"points": 50, "reason": "Contest prize"}).status_code == 200
    assert client.post(url, json={"points": -500, "reason": "Fraud"}).status_code == 400
    assert client.post(url, json={"points": -30, "reason": "Chargeback"}).status_code == 200

    assert db.session.get(User, user.id).points_balance == 120
    assert Transaction.query.filter_by(user_id=user.id, type=TX_BONUS).one().points == 50
    assert Transaction.query.filter_by(user_id=user.id, type=TX_PENALTY).one().points == -30


def test_user_detail_and_search(client, login, admin, make_user):
    user = make_user(name="Findable Person")
    login(admin)

    listing = client.get("/api/admin/users?q=Findable").get_json()
    assert [u["id"] for u in listing["users"]] == [user.id]

    detail = client.get(f"/api/admin/users/{user.id}")
    assert detail.status_code == 200
    assert client.get("/api/admin/users/99999").status_code == 404


def test_save_referral_settings(client, login, admin):
    login(admin)

    res = client.put("/api/admin/referrals/settings", json={"levels": [
        {"level": 2, "commission_type": "percentage", "commission_value": 5},
        {"level": 1, "commission_value": 12.5},
        {"level": 3, "commission_type": COMMISSION_FLAT_RATE, "commission_value": 40},
    ]})

    assert res.status_code == 200
    levels = res.get_json()["levels"]
    assert [l["level"] for l in levels] == [1, 2, 3]
    assert levels[0]["commission_value"] == 12.5
    assert levels[2]["commission_type"] == COMMISSION_FLAT_RATE
    assert levels[2]["value_unit"] == "points"
    assert levels[0]["value_unit"] == "percent_of_points"
    assert res.get_json()["value_units"][COMMISSION_FLAT_RATE] == "points"


@pytest.mark.parametrize("levels", [
    [],
    [{"level": 0, "commission_value": 5}],
    [{"level": 11, "commission_value": 5}],
    [{"level": 1, "commission_value": 5}, {"level": 1, "commission_value": 3}],
    [{"level": 1, "commission_value": -1}],
    [{"level": 1, "commission_value": 150}],
    [{"level": 1, "commission_value": "NaN"}],
    [{"level": 1, "commission_type": "BOGUS", "commission_value": 5}],
])
def test_invalid_referral_settings_change_nothing(client, login, admin, percent_levels, levels):
    percent_levels(10)
    login(admin)

    res = client.put("/api/admin/referrals/settings", json={"levels": levels})

    assert res.status_code == 400
    assert [(r.level, r.commission_value) for r in ReferralLevel.query.all()] == [(1, 10)]


def test_referral_settings_show_default_when_empty(client, login, admin):
    login(admin)
    body = client.get("/api/admin/referrals/settings").get_json()
    assert body["levels"] == []
    assert body["effective"][0]["commission_value"] == 10.0
    assert body["value_units"] == {"PERCENTAGE": "percent_of_points", "FLAT_RATE": "points"}


def test_send_and_broadcast_notifications(client, login, admin, make_user):
    a = make_user()
    make_user()
    make_user(status=USER_STATUS_BANNED)
    login(admin)

    sent = client.post("/api/admin/notifications/send", json={"user_id": a.id, "title": "Hi", "message": "Hello"})
    assert sent.status_code == 201
    assert client.post("/api/admin/notifications/send", json={"user_id": a.id, "title": "", "message": "x"}).status_code == 400

    res = client.post("/api/admin/notifications/broadcast", json={"title": "News", "message": "New tasks"})
    assert res.get_json()["sent"] == 2
    assert Notification.query.filter_by(user_id=a.id).count() == 2


def test_user_notification_inbox(client, login, make_user):
    user = login(make_user())
    first = notify(user.id, "One", "first")
    notify(user.id, "Two", "second")
    db.session.commit()

    body = client.get("/api/notifications").get_json()
    assert body["unread_count"] == 2

    assert client.post(f"/api/notifications/{first.id}/read").status_code == 200
    assert client.get("/api/notifications?unread=1").get_json()["pagination"]["total"] == 1
    assert client.post("/api/notifications/read-all").get_json()["updated"] == 1
    assert client.delete(f"/api/notifications/{first.id}").status_code == 200
