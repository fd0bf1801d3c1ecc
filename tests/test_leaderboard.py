"""Leaderboards rank active regular users only."""

from models_users import USER_STATUS_BANNED
from rbac import ROLE_SUPER_ADMIN


def test_earnings_board_orders_and_excludes(client, make_user):
    low = make_user(total_earnings=1.0)
    high = make_user(total_earnings=5.5)
    make_user(total_earnings=100.0, status=USER_STATUS_BANNED)
    make_user(total_earnings=200.0, role=ROLE_SUPER_ADMIN, email="boss@example.com")

    body = client.get("/api/leaderboard?type=points").get_json()

    assert body["type"] == "earnings"
    assert [e["user_id"] for e in body["leaderboard"]] == [high.id, low.id]
    assert body["leaderboard"][0]["value"] == 5500
    assert body["current_user"] is None


def test_referral_board_counts_direct_referrals(client, login, make_user):
    a = make_user()
    b = make_user()
    make_user(referred_by=a)
    make_user(referred_by=a)
    make_user(referred_by=b)
    login(b)

    body = client.get("/api/leaderboard?type=referrals").get_json()

    assert [(e["user_id"], e["value"]) for e in body["leaderboard"]] == [(a.id, 2), (b.id, 1)]
    assert body["current_user"] == {"rank": 2, "value": 1, "is_in_top": True}


def test_xp_board_and_bad_type(client, make_user):
    make_user(xp=10)
    top = make_user(xp=500)

    assert client.get("/api/leaderboard?type=xp").get_json()["leaderboard"][0]["user_id"] == top.id
    assert client.get("/api/leaderboard?type=gold").status_code == 400
