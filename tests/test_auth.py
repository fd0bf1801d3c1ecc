"""Registration, login, email verification, password reset and KYC submission."""

from datetime import datetime, timedelta

from extensions import db
from models_users import KYC_APPROVED, KYC_PENDING, USER_STATUS_BANNED, User
from models_wallet import TX_BONUS, Transaction

TEST_PASSWORD = "Passw0rd!"


def _register(client, **overrides):
    payload = {"email": "new@example.com", "password": TEST_PASSWORD, "name": "New User"}
    payload.update(overrides)
    return client.post("/api/auth/register", json=payload)


def test_register_creates_user_with_referrer(client, make_user):
    referrer = make_user()

    res = _register(client, referral_code=referrer.referral_code.lower())

    assert res.status_code == 201
    user = db.session.get(User, res.get_json()["user_id"])
    assert user.referred_by_id == referrer.id
    assert user.verify_token
    assert user.referral_code != referrer.referral_code


def test_register_ignores_unknown_referral_code(client):
    res = _register(client, referral_code="NOPE")
    assert res.status_code == 201
    assert db.session.get(User, res.get_json()["user_id"]).referred_by_id is None


def test_register_validation(client, make_user):
    make_user(email="taken@example.com")
    assert _register(client, email="not-an-email").status_code == 400
    assert _register(client, password="short1A").status_code == 400
    assert _register(client, password="alllowercase1").status_code == 400
    assert _register(client, name="x").status_code == 400
    assert _register(client, email="taken@example.com").status_code == 409


def test_login_and_me(client, make_user):
    user = make_user(password=TEST_PASSWORD, email="me@example.com")

    bad = client.post("/api/auth/login", json={"email": "me@example.com", "password": "wrong"})
    assert bad.status_code == 401

    res = client.post("/api/auth/login", json={"email": "ME@example.com", "password": TEST_PASSWORD})
    assert res.status_code == 200
    assert res.get_json()["user"]["id"] == user.id

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.get_json()["user"]["email"] == "me@example.com"

    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401


def test_banned_user_cannot_login_or_use_session(client, make_user, login):
    user = make_user(password=TEST_PASSWORD, email="b@example.com", status=USER_STATUS_BANNED)

    res = client.post("/api/auth/login", json={"email": "b@example.com", "password": TEST_PASSWORD})
    assert res.status_code == 403

    login(user)
    assert client.get("/api/auth/me").status_code == 403


def test_verify_email_pays_welcome_bonus(client, monkeypatch):
    monkeypatch.setenv("WELCOME_BONUS_POINTS", "500")
    user_id = _register(client).get_json()["user_id"]
    token = db.session.get(User, user_id).verify_token

    res = client.post("/api/auth/verify-email", json={"token": token})

    assert res.status_code == 200
    user = db.session.get(User, user_id)
    assert user.email_verified_at is not None
    assert user.verify_token is None
    assert user.points_balance == 500
    assert Transaction.query.filter_by(user_id=user_id, type=TX_BONUS).count() == 1

    again = client.post("/api/auth/verify-email", json={"token": token})
    assert again.status_code == 400


def test_password_reset_flow(client, make_user):
    user = make_user(password=TEST_PASSWORD, email="r@example.com")

    res = client.post("/api/auth/forgot-password", json={"email": "r@example.com"})
    assert res.status_code == 200
    token = db.session.get(User, user.id).reset_token
    assert token

    weak = client.post("/api/auth/reset-password", json={"token": token, "password": "weak"})
    assert weak.status_code == 400

    ok = client.post("/api/auth/reset-password", json={"token": token, "password": "N3wPassword"})
    assert ok.status_code == 200

    login = client.post("/api/auth/login", json={"email": "r@example.com", "password": "N3wPassword"})
    assert login.status_code == 200


def test_forgot_password_does_not_reveal_accounts(client):
    res = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert res.status_code == 200
    assert res.get_json()["success"] is True


def test_expired_reset_token_is_rejected(client, make_user):
    user = make_user(reset_token="tok", reset_token_expires_at=datetime.utcnow() - timedelta(minutes=1))
    res = client.post("/api/auth/reset-password", json={"token": "tok", "password": "N3wPassword"})
    assert res.status_code == 400
    assert db.session.get(User, user.id).reset_token == "tok"


def test_kyc_submission(client, login, make_user):
    user = login(make_user())

    assert client.post("/api/auth/kyc", json={"country": "USA"}).status_code == 400

    res = client.post("/api/auth/kyc", json={"country": "de"})
    assert res.status_code == 200
    assert db.session.get(User, user.id).kyc_status == KYC_PENDING
    assert db.session.get(User, user.id).country == "DE"

    assert client.post("/api/auth/kyc", json={"country": "DE"}).status_code == 400


def test_kyc_already_approved(client, login, make_user):
    login(make_user(kyc_status=KYC_APPROVED))
    assert client.post("/api/auth/kyc", json={"country": "FR"}).status_code == 400
