"""Scheduled worker pass: activation, draws at draw_date, package expiry."""

from datetime import datetime, timedelta

from extensions import db
from lottery import purchase_tickets
from lottery_worker import run_once
from models_lottery import LOTTERY_ACTIVE, LOTTERY_CANCELLED, LOTTERY_COMPLETED, LOTTERY_UPCOMING, Lottery
from models_users import User


def _lottery(status, start, draw, title="Draw"):
    lottery = Lottery(
        title=title, start_date=start, end_date=draw, draw_date=draw,
        ticket_price=10, status=status,
    )
    lottery.prizes = [{"position": 1, "amount": 100, "description": "Top"}]
    db.session.add(lottery)
    db.session.commit()
    return lottery


def test_run_once(app, make_user):
    now = datetime.utcnow()
    upcoming = _lottery(LOTTERY_UPCOMING, now - timedelta(minutes=1), now + timedelta(days=1), "soon")
    empty = _lottery(LOTTERY_ACTIVE, now - timedelta(days=2), now - timedelta(minutes=1), "empty")
    due = _lottery(LOTTERY_ACTIVE, now - timedelta(days=2), now + timedelta(hours=1), "due")
    buyer = make_user(points=100)
    purchase_tickets(buyer, due, 1)
    due.draw_date = now - timedelta(minutes=1)
    expired = make_user(package_tier="BASIC", package_expires_at=now - timedelta(hours=1))
    db.session.commit()

    result = run_once()

    assert result == {"activated": 1, "drawn": 2, "packages_expired": 1}
    assert db.session.get(Lottery, upcoming.id).status == LOTTERY_ACTIVE
    assert db.session.get(Lottery, empty.id).status == LOTTERY_CANCELLED
    assert db.session.get(Lottery, due.id).status == LOTTERY_COMPLETED
    assert db.session.get(User, buyer.id).points_balance == 190
    assert db.session.get(User, expired.id).package_tier == "FREE"
