"""Shared fixtures: Flask app on in-memory SQLite, test client, user factories.

Invariants:
    - Every test gets empty tables (drop_all/create_all inside one app context)
    - Rate limiting is off so route tests never trip per-IP limits
    - Requests made through `client` reuse the fixture's app context, so
      db.session objects seen by the test and by the handler are the same

Design Decisions:
    - Env vars are set before `app` is imported: app.py reads config at import
    - Login goes straight into the session cookie; password hashing is only
      exercised by the auth tests
"""

import itertools
import os
import sys
from pathlib import Path

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATELIMIT_ENABLED"] = "0"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ.pop("SMTP_HOST", None)
os.environ.pop("USE_SERVER_SIDE_SESSIONS", None)

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest  # noqa: E402
from werkzeug.security import generate_password_hash  # noqa: E402

from app import app as flask_app  # noqa: E402
from extensions import db  # noqa: E402
from models_referrals import COMMISSION_PERCENTAGE, ReferralLevel  # noqa: E402
from models_users import Package, User  # noqa: E402
from rbac import ROLE_SUPER_ADMIN  # noqa: E402

TEST_PASSWORD = "Passw0rd!"


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Factory: make_user(points=0, referred_by=None, **fields) -> committed User."""
    seq = itertools.count(1)

    def _make(points: int = 0, referred_by: User | None = None, password: str | None = None, **fields):
        n = next(seq)
        user = User(
            email=fields.pop("email", f"user{n}@example.com"),
            name=fields.pop("name", f"User {n}"),
            password_hash=generate_password_hash(password) if password else "x",
            referral_code=fields.pop("referral_code", f"REF{n:05d}"),
            points_balance=points,
            referred_by_id=referred_by.id if referred_by else None,
            **fields,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def login(client):
    def _login(user: User):
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
        return user

    return _login


@pytest.fixture
def admin(make_user):
    return make_user(role=ROLE_SUPER_ADMIN, email="admin@example.com", name="Admin")


@pytest.fixture
def referral_chain(make_user):
    """chain(depth) -> [earner, level1, level2, ...] where each user was referred by the next."""

    def _chain(depth: int) -> list[User]:
        top = make_user()
        users = [top]
        for _ in range(depth):
            users.append(make_user(referred_by=users[-1]))
        users.reverse()
        return users

    return _chain


@pytest.fixture
def set_levels(app):
    """set_levels([(type, value), ...]) replaces the referral table; index 0 is level 1."""

    def _set(rules):
        ReferralLevel.query.delete()
        for idx, (ctype, value) in enumerate(rules, start=1):
            db.session.add(ReferralLevel(level=idx, commission_type=ctype, commission_value=value))
        db.session.commit()

    return _set


@pytest.fixture
def percent_levels(set_levels):
    def _set(*values):
        set_levels([(COMMISSION_PERCENTAGE, v) for v in values])

    return _set


@pytest.fixture
def free_package(app):
    pkg = Package(
        tier="FREE", name="Free", price_points=0, duration_days=30,
        daily_task_limit=5, withdrawal_fee_discount=0.0, min_withdrawal=5.0, xp_multiplier=1.0,
    )
    db.session.add(pkg)
    db.session.commit()
    return pkg
