"""Achievements: progress tracking and one-time unlock rewards.

Invariants:
    - An achievement unlocks once, when its counter reaches the threshold
    - Each unlock credits points_reward with one BONUS transaction and adds xp_reward
    - Rewards that push another counter over its threshold unlock that one in the same sync
    - Task rewards and the daily check-in report the achievements they unlocked
"""

import pytest

from achievements import sync_achievements
from extensions import db
from models_achievements import (
    ACH_LEVEL,
    ACH_REFERRALS,
    ACH_STREAK,
    ACH_TASKS,
    Achievement,
    UserAchievement,
)
from models_notifications import NOTIF_ACHIEVEMENT, Notification
from models_tasks import TASK_STATUS_ACTIVE, Task
from models_users import User
from models_wallet import TX_BONUS, Transaction


@pytest.fixture
def make_achievement(app):
    def _make(name, type, threshold=1, **fields):
        achievement = Achievement(name=name, type=type, threshold=threshold, **fields)
        db.session.add(achievement)
        db.session.commit()
        return achievement

    return _make


def test_sync_without_achievements_is_a_no_op(make_user):
    assert sync_achievements(make_user()) == []


def test_unlock_pays_once(make_user, make_achievement):
    ach = make_achievement("First Referral", ACH_REFERRALS, points_reward=100, xp_reward=25)
    user = make_user()
    make_user(referred_by=user)

    unlocked = sync_achievements(user)
    db.session.commit()

    assert [a.id for a in unlocked] == [ach.id]
    fresh = db.session.get(User, user.id)
    assert fresh.points_balance == 100
    assert fresh.xp == 25
    tx = Transaction.query.filter_by(user_id=user.id, type=TX_BONUS).one()
    assert tx.reference == f"achievement_{ach.id}_{user.id}"
    assert Notification.query.filter_by(user_id=user.id, type=NOTIF_ACHIEVEMENT).count() == 1

    assert sync_achievements(user) == []
    db.session.commit()
    assert db.session.get(User, user.id).points_balance == 100


def test_progress_below_threshold_is_recorded(make_user, make_achievement):
    ach = make_achievement("Team Builder", ACH_REFERRALS, threshold=5)
    user = make_user()
    make_user(referred_by=user)
    make_user(referred_by=user)

    assert sync_achievements(user) == []
    db.session.commit()

    row = UserAchievement.query.filter_by(user_id=user.id, achievement_id=ach.id).one()
    assert row.progress == 2
    assert row.is_completed is False


def test_no_row_without_progress(make_user, make_achievement):
    make_achievement("First Task", ACH_TASKS)
    user = make_user()

    sync_achievements(user)
    db.session.commit()

    assert UserAchievement.query.count() == 0


def test_reward_xp_unlocks_level_achievement_in_same_sync(make_user, make_achievement):
    make_achievement("First Referral", ACH_REFERRALS, xp_reward=100)
    make_achievement("Level 2", ACH_LEVEL, threshold=2)
    user = make_user()
    make_user(referred_by=user)

    unlocked = sync_achievements(user)
    db.session.commit()

    assert sorted(a.name for a in unlocked) == ["First Referral", "Level 2"]
    assert db.session.get(User, user.id).level == 2


def test_listing_reports_summary(client, login, make_user, make_achievement):
    make_achievement("First Referral", ACH_REFERRALS, points_reward=40)
    make_achievement("Task Hunter", ACH_TASKS, threshold=10)
    user = login(make_user())
    make_user(referred_by=user)

    res = client.get("/api/achievements")

    assert res.status_code == 200
    body = res.get_json()
    assert body["summary"] == {"total": 2, "unlocked": 1, "percentage": 50, "points_earned": 40}
    assert sorted(body["types"]) == [ACH_REFERRALS, ACH_TASKS]
    by_name = {a["name"]: a for a in body["achievements"]}
    assert by_name["First Referral"]["is_unlocked"] is True
    assert by_name["Task Hunter"]["progress"] == {"current": 0, "target": 10, "percentage": 0}
    assert [r["name"] for r in body["recent_unlocks"]] == ["First Referral"]


def test_listing_requires_login(client):
    assert client.get("/api/achievements").status_code == 401


def test_task_reward_unlocks_first_task(client, login, make_user, make_achievement):
    make_achievement("First Task", ACH_TASKS, points_reward=50)
    user = login(make_user())
    task = Task(title="Watch a video", description="Watch it.", type="VIDEO",
                status=TASK_STATUS_ACTIVE, points_reward=100, xp_reward=10)
    db.session.add(task)
    db.session.commit()

    sub_id = client.post(f"/api/tasks/{task.id}/start").get_json()["submission"]["id"]
    res = client.post(f"/api/tasks/{task.id}/submit", json={"submission_id": sub_id})

    assert res.status_code == 200
    assert res.get_json()["rewards"]["achievements_unlocked"] == ["First Task"]
    assert db.session.get(User, user.id).points_balance == 150


def test_check_in_unlocks_streak_achievement(client, login, make_user, make_achievement):
    make_achievement("Day One", ACH_STREAK, points_reward=30)
    user = login(make_user())

    res = client.post("/api/daily-reward")

    assert res.status_code == 200
    assert res.get_json()["achievements_unlocked"] == ["Day One"]
    assert db.session.get(User, user.id).points_balance == 50 + 30
