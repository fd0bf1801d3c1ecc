"""Daily check-in cycle.

Invariants:
    - One claim per UTC day; a second claim the same day is refused with 429
    - Consecutive days walk the 7-day table, day 8 wraps back to day 1
    - Missing a day resets the streak before paying day 1
"""

from datetime import datetime, timedelta

from daily_reward import DAILY_REWARDS, _compute_status
from extensions import db
from models_users import Package, User
from models_wallet import TX_CHECKIN, Transaction


def test_first_claim_pays_day_one(client, login, make_user):
    user = login(make_user())

    res = client.post("/api/daily-reward")

    assert res.status_code == 200
    body = res.get_json()
    assert body["reward"] == {"day": 1, "points": 50, "xp": 10}
    assert body["streak"] == 1
    fresh = db.session.get(User, user.id)
    assert fresh.points_balance == 50
    assert fresh.xp == 10
    tx = Transaction.query.filter_by(user_id=user.id, type=TX_CHECKIN).one()
    assert tx.reference == f"daily_{user.id}_{datetime.utcnow():%Y%m%d}"


def test_second_claim_same_day_is_refused(client, login, make_user):
    login(make_user())
    client.post("/api/daily-reward")

    res = client.post("/api/daily-reward")

    assert res.status_code == 429
    assert res.get_json()["seconds_until_next"] > 0
    assert client.get("/api/daily-reward").get_json()["can_claim"] is False


def test_consecutive_day_continues_streak(client, login, make_user):
    user = login(make_user(streak=3, last_check_in=datetime.utcnow() - timedelta(days=1)))

    body = client.post("/api/daily-reward").get_json()

    assert body["reward"]["day"] == 4
    assert body["streak"] == 4
    assert db.session.get(User, user.id).points_balance == 125


def test_missed_day_resets_streak(client, login, make_user):
    login(make_user(streak=5, last_check_in=datetime.utcnow() - timedelta(days=3)))

    body = client.post("/api/daily-reward").get_json()

    assert body["reward"]["day"] == 1
    assert body["streak"] == 1


def test_cycle_wraps_after_seven_days():
    now = datetime(2024, 5, 10, 12, 0)
    user = User(streak=7, last_check_in=now - timedelta(days=1))

    status = _compute_status(user, now)

    assert status["can_claim"] is True
    assert status["next_reward"] == DAILY_REWARDS[0]


def test_claim_just_after_midnight_counts_as_new_day():
    now = datetime(2024, 5, 10, 0, 5)
    user = User(streak=1, last_check_in=datetime(2024, 5, 9, 23, 55))

    status = _compute_status(user, now)

    assert status["can_claim"] is True
    assert status["next_reward"]["day"] == 2


def test_package_multiplies_xp(client, login, make_user):
    db.session.add(Package(tier="BASIC", name="Basic", price_points=4990, xp_multiplier=1.5))
    db.session.commit()
    login(make_user(package_tier="BASIC", package_expires_at=datetime.utcnow() + timedelta(days=10)))

    body = client.post("/api/daily-reward").get_json()

    assert body["reward"]["xp"] == 15
    assert body["reward"]["points"] == 50
