"""Lottery: ticket purchase for users, draw / cancel / activate for admins.

Routes:
- GET  /api/lottery                 (upcoming + active by default; ?include_ended=1)
- GET  /api/lottery/<id>
- GET  /api/lottery/my-tickets
- POST /api/lottery/<id>/tickets    {"quantity": 1..10, "selected_numbers": [[...6 ints...], ...]}

The state transitions live in plain functions so the admin blueprint and the
draw worker share them:
- activate_lottery: UPCOMING -> ACTIVE
- draw_lottery:     ACTIVE (>= 1 ticket) -> COMPLETED, winners credited
- cancel_lottery:   UPCOMING/ACTIVE -> CANCELLED, every ticket refunded

Each function stages all of its writes and commits once.
"""

import json
import random
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from auth import current_user, require_user
from extensions import db, limiter
from ledger import credit_points, debit_points, record_transaction
from models_lottery import (
    LOTTERY_ACTIVE,
    LOTTERY_CANCELLED,
    LOTTERY_COMPLETED,
    LOTTERY_UPCOMING,
    MAX_TICKETS_PER_PURCHASE,
    TICKET_NUMBER_COUNT,
    TICKET_NUMBER_MAX,
    Lottery,
    LotteryTicket,
)
from models_notifications import NOTIF_LOTTERY, NOTIF_SYSTEM
from models_users import User
from models_wallet import TX_LOTTERY_WIN, TX_PURCHASE, TX_REFUND
from notifications import notify


lottery_api = Blueprint("lottery_api", __name__)


class LotteryActionError(Exception):
    """A lottery state transition that is not allowed right now."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# -------------------------------
# Ticket helpers
# -------------------------------

def generate_ticket_number(lottery_id: int, sequence: int) -> str:
    return f"L{int(lottery_id):04d}-{int(sequence):06d}"


def generate_random_numbers(rng: random.Random | None = None) -> list[int]:
    rng = rng or random
    return sorted(rng.sample(range(1, TICKET_NUMBER_MAX + 1), TICKET_NUMBER_COUNT))


def _valid_numbers(numbers) -> bool:
    if not isinstance(numbers, list) or len(numbers) != TICKET_NUMBER_COUNT:
        return False
    if not all(isinstance(n, int) and not isinstance(n, bool) for n in numbers):
        return False
    return len(set(numbers)) == TICKET_NUMBER_COUNT and all(1 <= n <= TICKET_NUMBER_MAX for n in numbers)


# -------------------------------
# State transitions
# -------------------------------

def activate_lottery(lottery: Lottery) -> Lottery:
    if lottery.status != LOTTERY_UPCOMING:
        raise LotteryActionError("Only upcoming lotteries can be activated")
    lottery.status = LOTTERY_ACTIVE
    db.session.commit()
    return lottery


def draw_lottery(lottery: Lottery, rng: random.Random | None = None) -> list[dict]:
    """Pick winners uniformly at random and pay them out.

    With N prizes and T tickets the first min(N, T) tickets of a shuffled list
    win the prizes in position order. Returns the stored winners list.
    """
    if lottery.status != LOTTERY_ACTIVE:
        raise LotteryActionError("Lottery must be active to draw")

    tickets = LotteryTicket.query.filter_by(lottery_id=lottery.id).order_by(LotteryTicket.id.asc()).all()
    if not tickets:
        raise LotteryActionError("No tickets sold")

    prizes = lottery.prizes
    shuffled = list(tickets)
    (rng or random).shuffle(shuffled)

    winners = []
    for prize, ticket in zip(prizes, shuffled):
        amount = max(0, int(prize.get("amount") or 0))
        position = int(prize.get("position") or len(winners) + 1)
        description = prize.get("description") or f"Prize #{position}"

        ticket.is_winner = True
        ticket.prize_amount = amount

        user = db.session.get(User, ticket.user_id)
        if user is not None and amount > 0:
            credit_points(user, amount)
            record_transaction(
                user.id,
                TX_LOTTERY_WIN,
                amount,
                f'Lottery prize #{position} in "{lottery.title}"',
                reference=f"lottery_win_{lottery.id}_{ticket.id}",
                metadata={"lottery_id": lottery.id, "ticket_id": ticket.id, "position": position},
            )
        notify(
            ticket.user_id,
            f"You Won {description}!",
            f'Congratulations! Your ticket {ticket.ticket_number} won {amount} points in "{lottery.title}".',
            NOTIF_LOTTERY,
            {"lottery_id": lottery.id, "ticket_id": ticket.id, "position": position, "amount": amount},
        )
        winners.append({"position": position, "ticket_id": ticket.id, "user_id": ticket.user_id, "amount": amount})

    lottery.winners = winners
    lottery.status = LOTTERY_COMPLETED
    lottery.drawn_at = datetime.utcnow()
    db.session.commit()

    current_app.logger.info("Lottery %s drawn: %d tickets, %d winners", lottery.id, len(tickets), len(winners))
    return winners


def cancel_lottery(lottery: Lottery) -> int:
    """Cancel and refund the ticket price of every sold ticket. Returns points refunded."""
    if lottery.status in {LOTTERY_COMPLETED, LOTTERY_CANCELLED}:
        raise LotteryActionError(f"Cannot cancel a {lottery.status.lower()} lottery")

    price = int(lottery.ticket_price or 0)
    tickets = LotteryTicket.query.filter_by(lottery_id=lottery.id).order_by(LotteryTicket.id.asc()).all()
    users = {}
    refunded = 0
    for ticket in tickets:
        user = users.get(ticket.user_id)
        if user is None:
            user = db.session.get(User, ticket.user_id)
            users[ticket.user_id] = user
        if user is None or price <= 0:
            continue

        credit_points(user, price, count_as_earning=False)
        record_transaction(
            user.id,
            TX_REFUND,
            price,
            f'Refund for cancelled lottery "{lottery.title}"',
            reference=f"lottery_refund_{lottery.id}_{ticket.id}",
            metadata={"lottery_id": lottery.id, "ticket_id": ticket.id},
        )
        notify(
            user.id,
            "Lottery Cancelled - Refund",
            f'"{lottery.title}" was cancelled. {price} points for ticket {ticket.ticket_number} have been refunded.',
            NOTIF_LOTTERY,
            {"lottery_id": lottery.id, "ticket_id": ticket.id, "refund": price},
        )
        refunded += price

    lottery.status = LOTTERY_CANCELLED
    db.session.commit()

    current_app.logger.info("Lottery %s cancelled: %d tickets refunded (%d points)", lottery.id, len(tickets), refunded)
    return refunded


def purchase_tickets(user: User, lottery: Lottery, quantity: int, selected_numbers=None) -> list[LotteryTicket]:
    if quantity < 1 or quantity > MAX_TICKETS_PER_PURCHASE:
        raise LotteryActionError(f"You can buy 1-{MAX_TICKETS_PER_PURCHASE} tickets at a time")
    if lottery.status != LOTTERY_ACTIVE:
        raise LotteryActionError("This lottery is not currently active")
    if datetime.utcnow() > lottery.end_date:
        raise LotteryActionError("This lottery has ended")

    sold = LotteryTicket.query.filter_by(lottery_id=lottery.id).count()
    if lottery.max_tickets and sold + quantity > lottery.max_tickets:
        raise LotteryActionError("Not enough tickets available")

    owned = LotteryTicket.query.filter_by(lottery_id=lottery.id, user_id=user.id).count()
    if owned + quantity > int(lottery.max_tickets_per_user or 0):
        raise LotteryActionError(
            f"You can only buy {lottery.max_tickets_per_user} tickets for this lottery. You already have {owned}."
        )

    selected_numbers = selected_numbers or []
    if not isinstance(selected_numbers, list):
        raise LotteryActionError("selected_numbers must be a list")
    for numbers in selected_numbers:
        if numbers is not None and not _valid_numbers(numbers):
            raise LotteryActionError(
                f"Each ticket needs {TICKET_NUMBER_COUNT} distinct numbers between 1 and {TICKET_NUMBER_MAX}"
            )

    total_cost = int(lottery.ticket_price) * quantity
    if not debit_points(user, total_cost):
        raise LotteryActionError("Insufficient points balance")

    tickets = []
    for i in range(quantity):
        picked = selected_numbers[i] if i < len(selected_numbers) and selected_numbers[i] else None
        numbers = sorted(picked) if picked else generate_random_numbers()
        ticket = LotteryTicket(
            lottery_id=lottery.id,
            user_id=user.id,
            ticket_number=generate_ticket_number(lottery.id, sold + i + 1),
            numbers_json=json.dumps(numbers),
        )
        db.session.add(ticket)
        tickets.append(ticket)

    lottery.tickets_sold = int(lottery.tickets_sold or 0) + quantity
    record_transaction(
        user.id,
        TX_PURCHASE,
        -total_cost,
        f'Purchased {quantity} lottery ticket(s) for "{lottery.title}"',
        reference=f"lottery_{lottery.id}_{int(datetime.utcnow().timestamp() * 1000)}",
        metadata={"lottery_id": lottery.id, "quantity": quantity, "ticket_price": lottery.ticket_price},
    )
    notify(
        user.id,
        "Lottery Tickets Purchased",
        f'You bought {quantity} ticket(s) for "{lottery.title}". Good luck!',
        NOTIF_SYSTEM,
        {"lottery_id": lottery.id, "quantity": quantity},
    )
    db.session.commit()
    return tickets


# -------------------------------
# Routes
# -------------------------------

def _lottery_payload(lottery: Lottery, user: User | None) -> dict:
    out = lottery.to_dict()
    if lottery.status != LOTTERY_COMPLETED:
        out["winners"] = None
    out["can_buy_ticket"] = (
        lottery.status == LOTTERY_ACTIVE
        and (not lottery.max_tickets or lottery.tickets_sold < lottery.max_tickets)
    )
    out["seconds_until_draw"] = max(0, int((lottery.draw_date - datetime.utcnow()).total_seconds()))
    if user is not None:
        mine = LotteryTicket.query.filter_by(lottery_id=lottery.id, user_id=user.id).all()
        out["user_tickets"] = {"count": len(mine), "tickets": [t.ticket_number for t in mine]}
    return out


def _recent_winners(limit: int = 10) -> list[dict]:
    rows = (
        db.session.query(LotteryTicket, User.name, Lottery.title)
        .join(User, User.id == LotteryTicket.user_id)
        .join(Lottery, Lottery.id == LotteryTicket.lottery_id)
        .filter(LotteryTicket.is_winner.is_(True))
        .order_by(Lottery.drawn_at.desc(), LotteryTicket.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "user_name": name or "Anonymous",
            "lottery_title": title,
            "prize_amount": t.prize_amount,
            "ticket_number": t.ticket_number,
        }
        for t, name, title in rows
    ]


@lottery_api.get("/api/lottery")
def list_lotteries():
    user = current_user()
    status = (request.args.get("status") or "").strip().upper()
    include_ended = request.args.get("include_ended") in {"1", "true"}

    q = Lottery.query
    if status:
        q = q.filter(Lottery.status == status)
    elif not include_ended:
        q = q.filter(Lottery.status.in_([LOTTERY_UPCOMING, LOTTERY_ACTIVE]))

    lotteries = q.order_by(Lottery.draw_date.asc()).all()
    return jsonify({
        "success": True,
        "lotteries": [_lottery_payload(l, user) for l in lotteries],
        "recent_winners": _recent_winners(),
    })


@lottery_api.get("/api/lottery/<int:lottery_id>")
def get_lottery(lottery_id: int):
    lottery = Lottery.query.get(lottery_id)
    if not lottery:
        return jsonify({"success": False, "error": "Lottery not found"}), 404
    return jsonify({"success": True, "lottery": _lottery_payload(lottery, current_user())})


@lottery_api.get("/api/lottery/my-tickets")
def my_tickets():
    user, err = require_user()
    if err:
        return err

    tickets = (
        LotteryTicket.query.filter_by(user_id=user.id)
        .order_by(LotteryTicket.created_at.desc(), LotteryTicket.id.desc())
        .limit(200)
        .all()
    )
    return jsonify({"success": True, "tickets": [t.to_dict() for t in tickets]})


@lottery_api.post("/api/lottery/<int:lottery_id>/tickets")
@limiter.limit("30 per minute")
def buy_tickets(lottery_id: int):
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    try:
        raw_quantity = data.get("quantity")
        quantity = 1 if raw_quantity is None else int(raw_quantity)
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "quantity must be an integer"}), 400

    lottery = Lottery.query.get(lottery_id)
    if not lottery:
        return jsonify({"success": False, "error": "Lottery not found"}), 404

    try:
        tickets = purchase_tickets(user, lottery, quantity, data.get("selected_numbers"))
    except LotteryActionError as e:
        db.session.rollback()
        return jsonify({"success": False, "error": e.message}), e.status_code

    return jsonify({
        "success": True,
        "tickets": [t.to_dict() for t in tickets],
        "total_cost": int(lottery.ticket_price) * quantity,
        "points_balance": user.points_balance,
    })
