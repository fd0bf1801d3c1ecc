"""Lottery purchase, draw and cancel.

Invariants:
    - M prizes and T >= M tickets produce exactly M winners on M distinct tickets
    - T < M tickets: every ticket wins, remaining prizes are unawarded
    - Cancel refunds exactly tickets_sold * ticket_price in total
    - Completed and cancelled lotteries reject every further transition

Design Decisions:
    - Draws take an injected random.Random so results are reproducible
"""

import random
from datetime import datetime, timedelta

import pytest

from extensions import db
from lottery import LotteryActionError, cancel_lottery, draw_lottery, purchase_tickets
from models_lottery import (
    LOTTERY_ACTIVE,
    LOTTERY_CANCELLED,
    LOTTERY_COMPLETED,
    LOTTERY_UPCOMING,
    Lottery,
    LotteryTicket,
)
from models_users import User
from models_wallet import TX_LOTTERY_WIN, TX_REFUND, Transaction


@pytest.fixture
def make_lottery(app):
    def _make(prizes=(1000,), ticket_price=100, status=LOTTERY_ACTIVE, **fields):
        now = datetime.utcnow()
        lottery = Lottery(
            title=fields.pop("title", "Weekly Draw"),
            start_date=fields.pop("start_date", now - timedelta(days=1)),
            end_date=fields.pop("end_date", now + timedelta(days=1)),
            draw_date=fields.pop("draw_date", now + timedelta(days=1)),
            ticket_price=ticket_price,
            status=status,
            **fields,
        )
        lottery.prizes = [
            {"position": i, "amount": amount, "description": f"Prize #{i}"}
            for i, amount in enumerate(prizes, start=1)
        ]
        db.session.add(lottery)
        db.session.commit()
        return lottery

    return _make


@pytest.fixture
def sell(make_user):
    """sell(lottery, n) buys n tickets spread over fresh users (at most 10 each)."""

    def _sell(lottery, n):
        buyers = []
        while n > 0:
            qty = min(10, n)
            user = make_user(points=lottery.ticket_price * qty)
            purchase_tickets(user, lottery, qty)
            buyers.append(user)
            n -= qty
        return buyers

    return _sell


@pytest.mark.parametrize("prizes,tickets", [(1, 1), (3, 3), (3, 25), (5, 40)])
def test_draw_picks_distinct_winning_tickets(make_lottery, sell, prizes, tickets):
    lottery = make_lottery(prizes=[500 * (i + 1) for i in range(prizes)])
    sell(lottery, tickets)

    winners = draw_lottery(lottery, rng=random.Random(tickets))

    assert len(winners) == prizes
    assert len({w["ticket_id"] for w in winners}) == prizes
    assert [w["position"] for w in winners] == list(range(1, prizes + 1))
    assert LotteryTicket.query.filter_by(lottery_id=lottery.id, is_winner=True).count() == prizes
    assert lottery.status == LOTTERY_COMPLETED
    assert lottery.drawn_at is not None


def test_fewer_tickets_than_prizes_awards_only_sold_tickets(make_lottery, sell):
    lottery = make_lottery(prizes=[3000, 2000, 1000])
    sell(lottery, 2)

    winners = draw_lottery(lottery, rng=random.Random(1))

    assert len(winners) == 2
    assert [w["position"] for w in winners] == [1, 2]
    assert sum(w["amount"] for w in winners) == 5000


def test_winners_are_credited(make_lottery, make_user):
    lottery = make_lottery(prizes=[750], ticket_price=10)
    user = make_user(points=10)
    purchase_tickets(user, lottery, 1)

    draw_lottery(lottery, rng=random.Random(0))

    assert db.session.get(User, user.id).points_balance == 750
    tx = Transaction.query.filter_by(user_id=user.id, type=TX_LOTTERY_WIN).one()
    assert tx.points == 750


def test_draw_is_deterministic_for_a_seeded_rng(make_lottery, sell):
    a = make_lottery(prizes=[1, 1, 1], title="A")
    sell(a, 20)
    b_ids = [t.id for t in LotteryTicket.query.filter_by(lottery_id=a.id).order_by(LotteryTicket.id).all()]

    winners = draw_lottery(a, rng=random.Random(42))

    expected = list(b_ids)
    random.Random(42).shuffle(expected)
    assert [w["ticket_id"] for w in winners] == expected[:3]


def test_draw_requires_active_with_tickets(make_lottery, sell):
    empty = make_lottery()
    with pytest.raises(LotteryActionError):
        draw_lottery(empty)

    upcoming = make_lottery(status=LOTTERY_UPCOMING)
    with pytest.raises(LotteryActionError):
        draw_lottery(upcoming)


@pytest.mark.parametrize("tickets", [0, 1, 7, 23])
def test_cancel_refunds_every_ticket(make_lottery, sell, tickets):
    lottery = make_lottery(ticket_price=250)
    buyers = sell(lottery, tickets)

    refunded = cancel_lottery(lottery)

    assert refunded == lottery.tickets_sold * lottery.ticket_price == tickets * 250
    assert lottery.status == LOTTERY_CANCELLED
    refund_total = sum(
        tx.points for tx in Transaction.query.filter_by(type=TX_REFUND).all()
    )
    assert refund_total == tickets * 250
    for buyer in buyers:
        owned = LotteryTicket.query.filter_by(lottery_id=lottery.id, user_id=buyer.id).count()
        assert db.session.get(User, buyer.id).points_balance == owned * 250


@pytest.mark.parametrize("final_status", [LOTTERY_COMPLETED, LOTTERY_CANCELLED])
def test_finished_lotteries_cannot_be_cancelled_or_drawn(make_lottery, final_status):
    lottery = make_lottery(status=final_status)
    with pytest.raises(LotteryActionError):
        cancel_lottery(lottery)
    with pytest.raises(LotteryActionError):
        draw_lottery(lottery)


def test_purchase_debits_and_numbers_tickets(make_lottery, make_user):
    lottery = make_lottery(ticket_price=100)
    user = make_user(points=500)

    tickets = purchase_tickets(user, lottery, 3, [[1, 2, 3, 4, 5, 6]])

    assert user.points_balance == 200
    assert lottery.tickets_sold == 3
    assert [t.ticket_number for t in tickets] == [
        f"L{lottery.id:04d}-000001", f"L{lottery.id:04d}-000002", f"L{lottery.id:04d}-000003",
    ]
    assert tickets[0].numbers == [1, 2, 3, 4, 5, 6]
    assert all(len(set(t.numbers)) == 6 for t in tickets)


@pytest.mark.parametrize("quantity,selected,points", [
    (0, None, 10000),
    (11, None, 10000),
    (1, [[1, 2, 3]], 10000),
    (1, [[1, 1, 2, 3, 4, 5]], 10000),
    (1, [[0, 2, 3, 4, 5, 50]], 10000),
    (2, None, 150),
])
def test_purchase_rejects_bad_requests(make_lottery, make_user, quantity, selected, points):
    lottery = make_lottery(ticket_price=100)
    user = make_user(points=points)

    with pytest.raises(LotteryActionError):
        purchase_tickets(user, lottery, quantity, selected)
    db.session.rollback()

    assert db.session.get(User, user.id).points_balance == points
    assert LotteryTicket.query.count() == 0


def test_purchase_respects_ticket_limits(make_lottery, make_user):
    lottery = make_lottery(ticket_price=1, max_tickets=5, max_tickets_per_user=3)
    a = make_user(points=100)
    b = make_user(points=100)

    purchase_tickets(a, lottery, 3)
    with pytest.raises(LotteryActionError, match="only buy 3"):
        purchase_tickets(a, lottery, 1)
    db.session.rollback()

    purchase_tickets(b, lottery, 2)
    with pytest.raises(LotteryActionError, match="Not enough tickets"):
        purchase_tickets(make_user(points=100), lottery, 1)


def test_purchase_after_end_date_is_rejected(make_lottery, make_user):
    lottery = make_lottery()
    lottery.end_date = datetime.utcnow() - timedelta(minutes=1)
    db.session.commit()

    with pytest.raises(LotteryActionError, match="ended"):
        purchase_tickets(make_user(points=1000), lottery, 1)


def test_buy_tickets_route(client, login, make_lottery, make_user):
    lottery = make_lottery(ticket_price=100)
    login(make_user(points=300))

    res = client.post(f"/api/lottery/{lottery.id}/tickets", json={"quantity": 2})

    assert res.status_code == 200
    body = res.get_json()
    assert body["total_cost"] == 200
    assert body["points_balance"] == 100
    assert len(body["tickets"]) == 2


def test_buy_tickets_route_requires_login(client, make_lottery):
    lottery = make_lottery()
    res = client.post(f"/api/lottery/{lottery.id}/tickets", json={"quantity": 1})
    assert res.status_code == 401


@pytest.mark.parametrize("quantity", [0, -3, 11])
def test_buy_tickets_route_rejects_out_of_range_quantity(client, login, make_lottery, make_user, quantity):
    lottery = make_lottery(ticket_price=100)
    user = login(make_user(points=5000))

    res = client.post(f"/api/lottery/{lottery.id}/tickets", json={"quantity": quantity})

    assert res.status_code == 400
    assert "1-10 tickets" in res.get_json()["error"]
    assert db.session.get(User, user.id).points_balance == 5000
    assert LotteryTicket.query.count() == 0


def test_buy_tickets_route_defaults_to_one_ticket(client, login, make_lottery, make_user):
    lottery = make_lottery(ticket_price=100)
    login(make_user(points=100))

    res = client.post(f"/api/lottery/{lottery.id}/tickets", json={})

    assert res.status_code == 200
    assert len(res.get_json()["tickets"]) == 1


def test_admin_cancel_route_reports_refund(client, login, admin, make_lottery, sell):
    lottery = make_lottery(ticket_price=40)
    sell(lottery, 4)
    login(admin)

    res = client.patch(f"/api/admin/lottery/{lottery.id}", json={"action": "cancel"})

    assert res.status_code == 200
    assert res.get_json()["refunded_points"] == 160

    again = client.patch(f"/api/admin/lottery/{lottery.id}", json={"action": "cancel"})
    assert again.status_code == 400


def test_admin_routes_require_permission(client, login, make_user, make_lottery):
    lottery = make_lottery()
    login(make_user())
    res = client.patch(f"/api/admin/lottery/{lottery.id}", json={"action": "draw"})
    assert res.status_code == 403


def _upcoming_lottery(make_lottery, ticket_price=10):
    return make_lottery(
        ticket_price=ticket_price,
        status=LOTTERY_UPCOMING,
        start_date=datetime(2099, 1, 1),
        end_date=datetime(2099, 1, 2),
        draw_date=datetime(2099, 1, 3),
    )


@pytest.mark.parametrize("payload", [
    {"ticket_price": -50},
    {"ticket_price": 0},
    {"end_date": "2098-01-01T00:00:00"},
    {"start_date": "2099-01-05T00:00:00"},
    {"draw_date": "2099-01-01T12:00:00"},
    {"ticket_price": -50, "end_date": "2098-01-01T00:00:00"},
    {"title": "Renamed", "max_tickets_per_user": 0},
])
def test_admin_update_rejects_invalid_merged_values(client, login, admin, make_lottery, payload):
    lottery = _upcoming_lottery(make_lottery)
    login(admin)

    res = client.patch(f"/api/admin/lottery/{lottery.id}", json=payload)

    assert res.status_code == 400
    db.session.expire_all()
    fresh = db.session.get(Lottery, lottery.id)
    assert fresh.ticket_price == 10
    assert fresh.title == "Weekly Draw"
    assert fresh.start_date == datetime(2099, 1, 1)
    assert fresh.end_date == datetime(2099, 1, 2)
    assert fresh.draw_date == datetime(2099, 1, 3)


def test_admin_update_accepts_consistent_changes(client, login, admin, make_lottery):
    lottery = _upcoming_lottery(make_lottery)
    login(admin)

    res = client.patch(f"/api/admin/lottery/{lottery.id}", json={
        "ticket_price": 25,
        "end_date": "2099-01-10T00:00:00",
        "draw_date": "2099-01-10T00:00:00",
    })

    assert res.status_code == 200
    body = res.get_json()["lottery"]
    assert body["ticket_price"] == 25
    assert body["end_date"].startswith("2099-01-10")
