"""Account models: users and subscription packages.

Balances:
- points_balance is the spendable balance (1000 points = $1).
- cash_balance / total_earnings / total_withdrawals are USD aggregates used by
  the wallet summary and leaderboard.
"""

import json
import secrets
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from extensions import db
from rbac import ROLE_USER, is_admin_role


POINTS_PER_USD = 1000

USER_STATUS_ACTIVE = "ACTIVE"
USER_STATUS_SUSPENDED = "SUSPENDED"
USER_STATUS_BANNED = "BANNED"

KYC_NOT_SUBMITTED = "NOT_SUBMITTED"
KYC_PENDING = "PENDING"
KYC_APPROVED = "APPROVED"
KYC_REJECTED = "REJECTED"

PACKAGE_FREE = "FREE"
PACKAGE_BASIC = "BASIC"
PACKAGE_STANDARD = "STANDARD"
PACKAGE_PREMIUM = "PREMIUM"

# Ordering used when a task requires a minimum package.
PACKAGE_ORDER = [PACKAGE_FREE, PACKAGE_BASIC, PACKAGE_STANDARD, PACKAGE_PREMIUM]

# XP needed to reach level N+1 (index 0 -> level 2). Past the table each level costs 10000 more.
_LEVEL_THRESHOLDS = [100, 250, 500, 1000, 2000, 4000, 7000, 11000, 16000, 22000]


def compute_level_from_xp(xp: int) -> int:
    xp = int(xp or 0)
    level = 1
    for t in _LEVEL_THRESHOLDS:
        if xp >= t:
            level += 1
        else:
            return level
    extra = _LEVEL_THRESHOLDS[-1]
    while xp >= extra + 10000:
        extra += 10000
        level += 1
    return level


def xp_for_level(level: int) -> int:
    """Total xp at which `level` starts."""
    level = int(level or 1)
    if level <= 1:
        return 0
    if level - 2 < len(_LEVEL_THRESHOLDS):
        return _LEVEL_THRESHOLDS[level - 2]
    return _LEVEL_THRESHOLDS[-1] + (level - 1 - len(_LEVEL_THRESHOLDS)) * 10000


def package_rank(tier: str) -> int:
    try:
        return PACKAGE_ORDER.index(tier)
    except ValueError:
        return 0


def generate_referral_code() -> str:
    return secrets.token_hex(4).upper()


class User(db.Model):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(120), nullable=False)
    role = Column(String(30), nullable=False, default=ROLE_USER)
    status = Column(String(20), nullable=False, default=USER_STATUS_ACTIVE)
    country = Column(String(2), nullable=True)
    avatar = Column(String(500), nullable=True)
    phone = Column(String(20), nullable=True)
    language = Column(String(5), nullable=False, default="en")
    timezone = Column(String(50), nullable=False, default="UTC")
    notifications_enabled = Column(Boolean, nullable=False, default=True)
    email_notifications = Column(Boolean, nullable=False, default=True)

    points_balance = Column(Integer, nullable=False, default=0)
    cash_balance = Column(Float, nullable=False, default=0.0)
    total_earnings = Column(Float, nullable=False, default=0.0)
    total_withdrawals = Column(Float, nullable=False, default=0.0)

    xp = Column(Integer, nullable=False, default=0)
    level = Column(Integer, nullable=False, default=1)
    streak = Column(Integer, nullable=False, default=0)
    last_check_in = Column(DateTime, nullable=True)

    package_tier = Column(String(20), nullable=False, default=PACKAGE_FREE)
    package_expires_at = Column(DateTime, nullable=True)
    kyc_status = Column(String(20), nullable=False, default=KYC_NOT_SUBMITTED)

    referral_code = Column(String(20), unique=True, nullable=False, index=True)
    referred_by_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    email_verified_at = Column(DateTime, nullable=True)
    verify_token = Column(String(64), nullable=True, index=True)
    reset_token = Column(String(64), nullable=True, index=True)
    reset_token_expires_at = Column(DateTime, nullable=True)

    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    referred_by = relationship("User", remote_side=[id], backref="referrals")

    __table_args__ = (
        Index("idx_users_created", "created_at"),
        Index("idx_users_role", "role"),
    )

    @property
    def is_admin(self) -> bool:
        return is_admin_role(self.role)

    def to_dict(self, private: bool = True):
        out = {
            "id": self.id,
            "name": self.name,
            "avatar": self.avatar,
            "level": self.level,
            "xp": self.xp,
            "package_tier": self.package_tier,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if private:
            out.update({
                "email": self.email,
                "role": self.role,
                "status": self.status,
                "country": self.country,
                "phone": self.phone,
                "language": self.language or "en",
                "timezone": self.timezone or "UTC",
                "notifications_enabled": bool(self.notifications_enabled),
                "email_notifications": bool(self.email_notifications),
                "points_balance": int(self.points_balance or 0),
                "cash_balance": float(self.cash_balance or 0),
                "total_earnings": float(self.total_earnings or 0),
                "total_withdrawals": float(self.total_withdrawals or 0),
                "streak": self.streak,
                "last_check_in": self.last_check_in.isoformat() if self.last_check_in else None,
                "package_expires_at": self.package_expires_at.isoformat() if self.package_expires_at else None,
                "kyc_status": self.kyc_status,
                "referral_code": self.referral_code,
                "referred_by_id": self.referred_by_id,
                "email_verified": self.email_verified_at is not None,
            })
        return out


class Package(db.Model):
    __tablename__ = "packages"

    id = Column(Integer, primary_key=True)
    tier = Column(String(20), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price_points = Column(Integer, nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)
    daily_task_limit = Column(Integer, nullable=False, default=5)  # -1 = unlimited
    withdrawal_fee_discount = Column(Float, nullable=False, default=0.0)  # percentage points off method fee
    min_withdrawal = Column(Float, nullable=False, default=5.0)  # USD
    xp_multiplier = Column(Float, nullable=False, default=1.0)
    features_json = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def features(self):
        if not self.features_json:
            return []
        try:
            return json.loads(self.features_json)
        except ValueError:
            return []

    def to_dict(self):
        return {
            "id": self.id,
            "tier": self.tier,
            "name": self.name,
            "description": self.description,
            "price_points": self.price_points,
            "duration_days": self.duration_days,
            "daily_task_limit": self.daily_task_limit,
            "withdrawal_fee_discount": self.withdrawal_fee_discount,
            "min_withdrawal": self.min_withdrawal,
            "xp_multiplier": self.xp_multiplier,
            "features": self.features,
            "is_active": self.is_active,
        }
