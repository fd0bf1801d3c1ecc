"""Lottery models.

Prizes and winners are stored as JSON lists on the lottery row:
- prizes:  [{"position": 1, "amount": 5000, "description": "Grand prize"}, ...]
- winners: [{"position": 1, "ticket_id": 7, "user_id": 3, "amount": 5000}, ...]
"""

import json
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from extensions import db


LOTTERY_UPCOMING = "UPCOMING"
LOTTERY_ACTIVE = "ACTIVE"
LOTTERY_COMPLETED = "COMPLETED"
LOTTERY_CANCELLED = "CANCELLED"

LOTTERY_STATUSES = {LOTTERY_UPCOMING, LOTTERY_ACTIVE, LOTTERY_COMPLETED, LOTTERY_CANCELLED}

TICKET_NUMBER_COUNT = 6
TICKET_NUMBER_MAX = 49
MAX_TICKETS_PER_PURCHASE = 10


def _load_list(raw):
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    return value if isinstance(value, list) else []


class Lottery(db.Model):
    __tablename__ = "lotteries"

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    draw_date = Column(DateTime, nullable=False)
    ticket_price = Column(Integer, nullable=False)  # points
    max_tickets = Column(Integer, nullable=True)
    max_tickets_per_user = Column(Integer, nullable=False, default=10)
    tickets_sold = Column(Integer, nullable=False, default=0)
    prizes_json = Column(Text, nullable=False, default="[]")
    winners_json = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=LOTTERY_UPCOMING)
    drawn_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    tickets = relationship("LotteryTicket", back_populates="lottery", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_lotteries_status", "status"),
        Index("idx_lotteries_draw_date", "draw_date"),
    )

    @property
    def prizes(self):
        return sorted(_load_list(self.prizes_json), key=lambda p: int(p.get("position") or 0))

    @prizes.setter
    def prizes(self, value):
        self.prizes_json = json.dumps(value or [])

    @property
    def winners(self):
        return _load_list(self.winners_json)

    @winners.setter
    def winners(self, value):
        self.winners_json = json.dumps(value) if value is not None else None

    @property
    def total_prize_pool(self) -> int:
        return sum(int(p.get("amount") or 0) for p in self.prizes)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "draw_date": self.draw_date.isoformat() if self.draw_date else None,
            "ticket_price": self.ticket_price,
            "max_tickets": self.max_tickets,
            "max_tickets_per_user": self.max_tickets_per_user,
            "tickets_sold": self.tickets_sold,
            "prizes": self.prizes,
            "total_prize_pool": self.total_prize_pool,
            "winners": self.winners,
            "status": self.status,
            "drawn_at": self.drawn_at.isoformat() if self.drawn_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class LotteryTicket(db.Model):
    __tablename__ = "lottery_tickets"

    id = Column(Integer, primary_key=True)
    lottery_id = Column(Integer, ForeignKey("lotteries.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    ticket_number = Column(String(32), unique=True, nullable=False)
    numbers_json = Column(String(64), nullable=False)
    is_winner = Column(Boolean, nullable=False, default=False)
    prize_amount = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    lottery = relationship("Lottery", back_populates="tickets")

    __table_args__ = (
        Index("idx_lottery_tickets_lottery_user", "lottery_id", "user_id"),
    )

    @property
    def numbers(self):
        return _load_list(self.numbers_json)

    def to_dict(self):
        return {
            "id": self.id,
            "lottery_id": self.lottery_id,
            "user_id": self.user_id,
            "ticket_number": self.ticket_number,
            "numbers": self.numbers,
            "is_winner": self.is_winner,
            "prize_amount": self.prize_amount,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
