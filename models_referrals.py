from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String

from extensions import db


COMMISSION_PERCENTAGE = "PERCENTAGE"
COMMISSION_FLAT_RATE = "FLAT_RATE"
COMMISSION_TYPES = {COMMISSION_PERCENTAGE, COMMISSION_FLAT_RATE}

MAX_REFERRAL_LEVELS = 10

# commission_value unit per type. FLAT_RATE is whole points, not dollars.
COMMISSION_VALUE_UNITS = {
    COMMISSION_PERCENTAGE: "percent_of_points",
    COMMISSION_FLAT_RATE: "points",
}


class ReferralLevel(db.Model):
    __tablename__ = "referral_levels"

    id = Column(Integer, primary_key=True)
    level = Column(Integer, unique=True, nullable=False)
    commission_type = Column(String(20), nullable=False, default=COMMISSION_PERCENTAGE)
    # PERCENTAGE: percent of the points earned. FLAT_RATE: fixed points per event.
    commission_value = Column(Float, nullable=False, default=0.0)
    description = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "level": self.level,
            "commission_type": self.commission_type,
            "commission_value": self.commission_value,
            "value_unit": COMMISSION_VALUE_UNITS.get(self.commission_type),
            "description": self.description,
            "is_active": self.is_active,
        }


class ReferralEarning(db.Model):
    """One row per commission credited to an upline member."""

    __tablename__ = "referral_earnings"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    referred_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    level = Column(Integer, nullable=False)
    points = Column(Integer, nullable=False, default=0)
    amount = Column(Float, nullable=False, default=0.0)
    source_type = Column(String(20), nullable=False, default="TASK")
    source_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_ref_earnings_user_created", "user_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "referred_user_id": self.referred_user_id,
            "level": self.level,
            "points": self.points,
            "amount": self.amount,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
