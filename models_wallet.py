"""Ledger + withdrawal models.

Every balance change writes one Transaction row. Withdrawals hold their points
at request time; a rejected withdrawal refunds the held points.
"""

import json
from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, Text

from extensions import db


TX_EARNING = "EARNING"
TX_WITHDRAWAL = "WITHDRAWAL"
TX_BONUS = "BONUS"
TX_REFERRAL = "REFERRAL"
TX_PURCHASE = "PURCHASE"
TX_REFUND = "REFUND"
TX_PENALTY = "PENALTY"
TX_GIFT = "GIFT"
TX_LOTTERY_WIN = "LOTTERY_WIN"
TX_CHECKIN = "CHECKIN"

TX_TYPES = {
    TX_EARNING, TX_WITHDRAWAL, TX_BONUS, TX_REFERRAL, TX_PURCHASE,
    TX_REFUND, TX_PENALTY, TX_GIFT, TX_LOTTERY_WIN, TX_CHECKIN,
}

TX_STATUS_PENDING = "PENDING"
TX_STATUS_COMPLETED = "COMPLETED"
TX_STATUS_FAILED = "FAILED"
TX_STATUS_CANCELLED = "CANCELLED"

WITHDRAWAL_PENDING = "PENDING"
WITHDRAWAL_PROCESSING = "PROCESSING"
WITHDRAWAL_COMPLETED = "COMPLETED"
WITHDRAWAL_REJECTED = "REJECTED"
WITHDRAWAL_CANCELLED = "CANCELLED"

WITHDRAWAL_STATUSES = {
    WITHDRAWAL_PENDING, WITHDRAWAL_PROCESSING, WITHDRAWAL_COMPLETED,
    WITHDRAWAL_REJECTED, WITHDRAWAL_CANCELLED,
}

# method -> (fee percentage, fixed fee USD, minimum USD)
PAYMENT_METHODS = {
    "BKASH": (1.5, 0.0, 5.0),
    "NAGAD": (1.5, 0.0, 5.0),
    "ROCKET": (1.8, 0.0, 5.0),
    "BINANCE": (0.5, 0.0, 20.0),
    "PAYPAL": (2.5, 0.0, 10.0),
}


def _load_json(raw):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


class Transaction(db.Model):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=TX_STATUS_COMPLETED)
    points = Column(Integer, nullable=False, default=0)
    amount = Column(Float, nullable=False, default=0.0)  # USD equivalent
    description = Column(String(500), nullable=True)
    reference = Column(String(120), nullable=True, index=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_tx_user_created", "user_id", "created_at"),
        Index("idx_tx_type", "type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "status": self.status,
            "points": self.points,
            "amount": self.amount,
            "description": self.description,
            "reference": self.reference,
            "metadata": _load_json(self.metadata_json),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Withdrawal(db.Model):
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    fee = Column(Float, nullable=False, default=0.0)
    net_amount = Column(Float, nullable=False)
    points = Column(Integer, nullable=False, default=0)
    method = Column(String(20), nullable=False)
    account_details_json = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=WITHDRAWAL_PENDING)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    transaction_ref = Column(String(120), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_withdrawals_status", "status"),
        Index("idx_withdrawals_user_created", "user_id", "created_at"),
    )

    @property
    def account_details(self):
        return _load_json(self.account_details_json) or {}

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": self.amount,
            "fee": self.fee,
            "net_amount": self.net_amount,
            "points": self.points,
            "method": self.method,
            "account_details": self.account_details,
            "status": self.status,
            "processed_by": self.processed_by,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "transaction_ref": self.transaction_ref,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
