"""Task system models.

Lifecycle:
- A user starts a task -> PENDING submission (at most one PENDING per user/task).
- Submitting proof either auto-approves (AUTO_APPROVED, rewards credited at once)
  or leaves it PENDING for an admin to APPROVE / REJECT.
- Completed submissions stay as history; daily/total limits count them.
"""

import json
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from extensions import db


TASK_STATUS_DRAFT = "DRAFT"
TASK_STATUS_ACTIVE = "ACTIVE"
TASK_STATUS_PAUSED = "PAUSED"
TASK_STATUS_COMPLETED = "COMPLETED"
TASK_STATUS_EXPIRED = "EXPIRED"

TASK_STATUSES = {TASK_STATUS_DRAFT, TASK_STATUS_ACTIVE, TASK_STATUS_PAUSED, TASK_STATUS_COMPLETED, TASK_STATUS_EXPIRED}

TASK_TYPES = {"VIDEO", "ARTICLE", "QUIZ", "SURVEY", "SOCIAL", "PROXY", "OFFERWALL", "CUSTOM"}

# Types that never need a human reviewer.
AUTO_APPROVE_TYPES = {"VIDEO", "ARTICLE", "QUIZ"}

SUBMISSION_PENDING = "PENDING"
SUBMISSION_APPROVED = "APPROVED"
SUBMISSION_REJECTED = "REJECTED"
SUBMISSION_AUTO_APPROVED = "AUTO_APPROVED"

COMPLETED_SUBMISSION_STATUSES = (SUBMISSION_APPROVED, SUBMISSION_AUTO_APPROVED)


def _load_json(raw, default=None):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


class Task(db.Model):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="CUSTOM")
    status = Column(String(20), nullable=False, default=TASK_STATUS_DRAFT)
    task_link = Column(String(500), nullable=True)

    points_reward = Column(Integer, nullable=False, default=0)
    xp_reward = Column(Integer, nullable=False, default=0)

    daily_limit = Column(Integer, nullable=True)  # per user per day, defaults to 1
    total_limit = Column(Integer, nullable=True)  # across all users
    completed_count = Column(Integer, nullable=False, default=0)
    cooldown_minutes = Column(Integer, nullable=True)

    min_level = Column(Integer, nullable=False, default=1)
    required_package = Column(String(20), nullable=True)
    countries_json = Column(Text, nullable=True)

    duration = Column(Integer, nullable=True)  # seconds the user must spend before submitting
    auto_approve = Column(Boolean, nullable=False, default=False)
    questions_json = Column(Text, nullable=True)

    starts_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    submissions = relationship("TaskSubmission", back_populates="task", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_tasks_status", "status"),
        Index("idx_tasks_created", "created_at"),
    )

    @property
    def questions(self):
        return _load_json(self.questions_json, [])

    @property
    def countries(self):
        return _load_json(self.countries_json, [])

    def to_dict(self, include_answers: bool = True):
        questions = self.questions
        if not include_answers:
            questions = [{k: v for k, v in q.items() if k != "correct_answer"} for q in questions]
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "status": self.status,
            "task_link": self.task_link,
            "points_reward": self.points_reward,
            "xp_reward": self.xp_reward,
            "daily_limit": self.daily_limit,
            "total_limit": self.total_limit,
            "completed_count": self.completed_count,
            "cooldown_minutes": self.cooldown_minutes,
            "min_level": self.min_level,
            "required_package": self.required_package,
            "countries": self.countries,
            "duration": self.duration,
            "auto_approve": self.auto_approve,
            "questions": questions,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class TaskSubmission(db.Model):
    __tablename__ = "task_submissions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=SUBMISSION_PENDING)
    proof = Column(Text, nullable=True)
    answers_json = Column(Text, nullable=True)
    score = Column(Integer, nullable=True)
    points_earned = Column(Integer, nullable=False, default=0)
    xp_earned = Column(Integer, nullable=False, default=0)

    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    submitted_at = Column(DateTime, nullable=True)

    task = relationship("Task", back_populates="submissions")

    __table_args__ = (
        Index("idx_task_submissions_status", "status"),
        Index("idx_task_submissions_user_task", "user_id", "task_id"),
        Index("idx_task_submissions_created", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "task_id": self.task_id,
            "status": self.status,
            "proof": self.proof,
            "answers": _load_json(self.answers_json),
            "score": self.score,
            "points_earned": self.points_earned,
            "xp_earned": self.xp_earned,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }
