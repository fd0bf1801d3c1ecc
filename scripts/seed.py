#!/usr/bin/env python3
"""Seed packages, referral levels, a super admin, starter tasks, achievements and a course.

Run from the repository root:
  python -m scripts.seed

Safe to run repeatedly; existing rows are left alone.

Environment:
- ADMIN_EMAIL / ADMIN_PASSWORD   super admin account (skipped when unset)
"""

import json
import os

from werkzeug.security import generate_password_hash

from app import app
from extensions import db
from models_achievements import ACH_REFERRALS, ACH_TASKS, ACH_WITHDRAWALS, Achievement
from models_courses import COURSE_PUBLISHED, Course, CourseLesson
from models_referrals import COMMISSION_PERCENTAGE, ReferralLevel
from models_tasks import TASK_STATUS_ACTIVE, Task
from models_users import KYC_APPROVED, Package, User, generate_referral_code
from rbac import ROLE_SUPER_ADMIN


PACKAGES = [
    {
        "tier": "FREE", "name": "Free", "description": "Get started with basic features",
        "price_points": 0, "daily_task_limit": 5, "withdrawal_fee_discount": 0.0,
        "min_withdrawal": 50.0, "xp_multiplier": 1.0,
        "features": ["5 tasks per day", "Standard withdrawals", "Basic support"],
    },
    {
        "tier": "BASIC", "name": "Basic", "description": "More tasks, better rewards",
        "price_points": 4990, "daily_task_limit": 15, "withdrawal_fee_discount": 0.5,
        "min_withdrawal": 30.0, "xp_multiplier": 1.5,
        "features": ["15 tasks per day", "Lower withdrawal fees", "1.5x XP bonus"],
    },
    {
        "tier": "STANDARD", "name": "Standard", "description": "For serious earners",
        "price_points": 9990, "daily_task_limit": 30, "withdrawal_fee_discount": 1.0,
        "min_withdrawal": 20.0, "xp_multiplier": 2.0,
        "features": ["30 tasks per day", "Minimal fees", "Priority support", "2x XP bonus"],
    },
    {
        "tier": "PREMIUM", "name": "Premium", "description": "Maximum earning potential",
        "price_points": 19990, "daily_task_limit": -1, "withdrawal_fee_discount": 1.5,
        "min_withdrawal": 10.0, "xp_multiplier": 3.0,
        "features": ["Unlimited tasks", "Lowest fees", "VIP support", "3x XP bonus"],
    },
]

REFERRAL_LEVELS = [
    (1, 10.0, "Direct referrals - 10% commission"),
    (2, 5.0, "Second level - 5% commission"),
    (3, 2.0, "Third level - 2% commission"),
]

TASKS = [
    {
        "title": "Watch: Getting Started", "description": "Watch the platform introduction video.",
        "type": "VIDEO", "points_reward": 50, "xp_reward": 10, "daily_limit": 1,
        "duration": 120, "auto_approve": True,
    },
    {
        "title": "Read Article: Crypto Basics", "description": "Learn about cryptocurrency basics and earn while you learn!",
        "type": "ARTICLE", "points_reward": 75, "xp_reward": 15, "daily_limit": 5,
        "duration": 300, "auto_approve": True,
    },
    {
        "title": "Complete Quiz: Web3 Knowledge", "description": "Test your Web3 knowledge.",
        "type": "QUIZ", "points_reward": 150, "xp_reward": 25, "daily_limit": 2, "auto_approve": True,
        "questions": [
            {"question": "What is a blockchain?", "options": ["A shared ledger", "A database index", "A CPU"], "correct_answer": 0},
            {"question": "What runs on-chain code?", "options": ["Cookies", "Smart contracts", "Cron"], "correct_answer": 1},
        ],
    },
    {
        "title": "Follow us on Twitter", "description": "Follow the official account and submit your handle.",
        "type": "SOCIAL", "points_reward": 200, "xp_reward": 30, "total_limit": 1000,
        "task_link": "https://twitter.com/",
    },
]

ACHIEVEMENTS = [
    ("First Task", "Complete your first task", "target", ACH_TASKS, 1, 50, 10),
    ("Task Beginner", "Complete 10 tasks", "clipboard", ACH_TASKS, 10, 200, 50),
    ("Task Pro", "Complete 50 tasks", "trophy", ACH_TASKS, 50, 500, 150),
    ("First Referral", "Refer your first friend", "users", ACH_REFERRALS, 1, 100, 25),
    ("Referral Star", "Refer 5 friends", "star", ACH_REFERRALS, 5, 500, 100),
    ("First Withdrawal", "Make your first withdrawal", "wallet", ACH_WITHDRAWALS, 1, 100, 25),
]

COURSE = {
    "title": "Earning 101", "description": "How tasks, referrals and withdrawals work.",
    "category": "Getting Started", "reward_points": 100, "xp_reward": 20,
    "lessons": [
        ("Welcome", "What you can earn and how points convert to cash.", 5, True),
        ("Tasks and limits", "Task types, daily limits and review.", 8, False),
        ("Getting paid", "Withdrawal methods, fees and KYC.", 6, False),
    ],
}


def seed_packages() -> int:
    created = 0
    for row in PACKAGES:
        if Package.query.filter_by(tier=row["tier"]).first():
            continue
        fields = {k: v for k, v in row.items() if k != "features"}
        db.session.add(Package(duration_days=30, features_json=json.dumps(row["features"]), **fields))
        created += 1
    db.session.commit()
    return created


def seed_referral_levels() -> int:
    if ReferralLevel.query.count():
        return 0
    for level, value, description in REFERRAL_LEVELS:
        db.session.add(ReferralLevel(
            level=level,
            commission_type=COMMISSION_PERCENTAGE,
            commission_value=value,
            description=description,
        ))
    db.session.commit()
    return len(REFERRAL_LEVELS)


def seed_admin(email: str | None, password: str | None) -> bool:
    email = (email or "").strip().lower()
    if not email or not password:
        return False
    if User.query.filter_by(email=email).first():
        return False
    db.session.add(User(
        email=email,
        password_hash=generate_password_hash(password),
        name="Super Admin",
        role=ROLE_SUPER_ADMIN,
        referral_code=generate_referral_code(),
        kyc_status=KYC_APPROVED,
    ))
    db.session.commit()
    return True


def seed_tasks() -> int:
    if Task.query.count():
        return 0
    for row in TASKS:
        fields = {k: v for k, v in row.items() if k != "questions"}
        task = Task(status=TASK_STATUS_ACTIVE, **fields)
        if "questions" in row:
            task.questions_json = json.dumps(row["questions"])
        db.session.add(task)
    db.session.commit()
    return len(TASKS)


def seed_achievements() -> int:
    created = 0
    for name, description, icon, ach_type, threshold, points, xp in ACHIEVEMENTS:
        if Achievement.query.filter_by(name=name).first():
            continue
        db.session.add(Achievement(
            name=name, description=description, icon=icon, type=ach_type,
            threshold=threshold, points_reward=points, xp_reward=xp,
        ))
        created += 1
    db.session.commit()
    return created


def seed_course() -> bool:
    if Course.query.filter_by(title=COURSE["title"]).first():
        return False
    fields = {k: v for k, v in COURSE.items() if k != "lessons"}
    course = Course(status=COURSE_PUBLISHED, **fields)
    for position, (title, content, duration, is_free) in enumerate(COURSE["lessons"], start=1):
        course.lessons.append(CourseLesson(
            title=title, content=content, duration=duration, position=position, is_free=is_free,
        ))
    course.refresh_totals()
    db.session.add(course)
    db.session.commit()
    return True


def main():
    with app.app_context():
        result = {
            "packages": seed_packages(),
            "referral_levels": seed_referral_levels(),
            "admin": seed_admin(os.getenv("ADMIN_EMAIL"), os.getenv("ADMIN_PASSWORD")),
            "tasks": seed_tasks(),
            "achievements": seed_achievements(),
            "course": seed_course(),
        }
    print({"ok": True, **result})


if __name__ == "__main__":
    main()
