from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint

from extensions import db


# Achievement.type -> the counter it is measured against.
ACH_TASKS = "tasks"
ACH_REFERRALS = "referrals"
ACH_WITHDRAWALS = "withdrawals"
ACH_COURSES = "courses"
ACH_LEVEL = "level"
ACH_XP = "xp"
ACH_POINTS = "points"
ACH_STREAK = "streak"
ACHIEVEMENT_TYPES = (ACH_TASKS, ACH_REFERRALS, ACH_WITHDRAWALS, ACH_COURSES, ACH_LEVEL, ACH_XP, ACH_POINTS, ACH_STREAK)


class Achievement(db.Model):
    __tablename__ = "achievements"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(String(255), nullable=True)
    icon = Column(String(50), nullable=True)
    type = Column(String(20), nullable=False)
    threshold = Column(Integer, nullable=False, default=1)
    points_reward = Column(Integer, nullable=False, default=0)
    xp_reward = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_achievements_type_threshold", "type", "threshold"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "type": self.type,
            "threshold": self.threshold,
            "points_reward": self.points_reward,
            "xp_reward": self.xp_reward,
        }


class UserAchievement(db.Model):
    __tablename__ = "user_achievements"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    achievement_id = Column(Integer, ForeignKey("achievements.id"), nullable=False, index=True)
    progress = Column(Integer, nullable=False, default=0)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="uq_user_achievements"),
    )
