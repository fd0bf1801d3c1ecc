"""Learning courses: courses, ordered lessons and per-user enrollments.

Enrollment progress is the share of the course's lessons the user has marked
complete, 0..100. Reaching 100 stamps completed_at once and pays the course
reward.
"""

import json
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
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from extensions import db


COURSE_DRAFT = "DRAFT"
COURSE_PUBLISHED = "PUBLISHED"
COURSE_ARCHIVED = "ARCHIVED"
COURSE_STATUSES = {COURSE_DRAFT, COURSE_PUBLISHED, COURSE_ARCHIVED}

DIFFICULTY_BEGINNER = "BEGINNER"
DIFFICULTY_INTERMEDIATE = "INTERMEDIATE"
DIFFICULTY_ADVANCED = "ADVANCED"
DIFFICULTIES = {DIFFICULTY_BEGINNER, DIFFICULTY_INTERMEDIATE, DIFFICULTY_ADVANCED}


class Course(db.Model):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    thumbnail = Column(String(500), nullable=True)
    category = Column(String(50), nullable=False, default="General")
    difficulty = Column(String(20), nullable=False, default=DIFFICULTY_BEGINNER)
    status = Column(String(20), nullable=False, default=COURSE_DRAFT)

    is_free = Column(Boolean, nullable=False, default=True)
    price_points = Column(Integer, nullable=False, default=0)
    reward_points = Column(Integer, nullable=False, default=0)
    xp_reward = Column(Integer, nullable=False, default=0)

    total_duration = Column(Integer, nullable=False, default=0)  # minutes
    total_lessons = Column(Integer, nullable=False, default=0)
    enrollment_count = Column(Integer, nullable=False, default=0)
    rating = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    lessons = relationship(
        "CourseLesson",
        back_populates="course",
        cascade="all, delete-orphan",
        order_by="CourseLesson.position",
    )

    __table_args__ = (
        Index("idx_courses_status_created", "status", "created_at"),
        Index("idx_courses_category", "category"),
    )

    def refresh_totals(self):
        self.total_lessons = len(self.lessons)
        self.total_duration = sum(int(l.duration or 0) for l in self.lessons)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "thumbnail_url": self.thumbnail,
            "category": self.category,
            "difficulty": self.difficulty,
            "status": self.status,
            "is_free": self.is_free,
            "price_points": self.price_points,
            "reward_points": self.reward_points,
            "xp_reward": self.xp_reward,
            "duration": self.total_duration,
            "lessons_count": self.total_lessons,
            "enrollments_count": self.enrollment_count,
            "rating": self.rating,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CourseLesson(db.Model):
    __tablename__ = "course_lessons"

    id = Column(Integer, primary_key=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    video_url = Column(String(500), nullable=True)
    duration = Column(Integer, nullable=False, default=0)  # minutes
    position = Column(Integer, nullable=False, default=1)  # 1-based
    is_free = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    course = relationship("Course", back_populates="lessons")

    __table_args__ = (
        UniqueConstraint("course_id", "position", name="uq_course_lessons_position"),
    )

    def to_dict(self, with_content: bool = False):
        out = {
            "id": self.id,
            "course_id": self.course_id,
            "title": self.title,
            "description": self.description,
            "duration": self.duration,
            "order": self.position,
            "is_free": self.is_free,
        }
        if with_content:
            out["content"] = self.content
            out["video_url"] = self.video_url
        return out


class CourseEnrollment(db.Model):
    __tablename__ = "course_enrollments"

    id = Column(Integer, primary_key=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    progress = Column(Integer, nullable=False, default=0)
    completed_lessons_json = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("course_id", "user_id", name="uq_course_enrollments_user"),
    )

    @property
    def completed_lesson_ids(self) -> list[int]:
        if not self.completed_lessons_json:
            return []
        try:
            return [int(x) for x in json.loads(self.completed_lessons_json)]
        except (TypeError, ValueError):
            return []

    @completed_lesson_ids.setter
    def completed_lesson_ids(self, ids):
        self.completed_lessons_json = json.dumps(sorted(set(int(x) for x in ids)))

    def to_dict(self, total_lessons: int | None = None):
        return {
            "id": self.id,
            "course_id": self.course_id,
            "enrolled_at": self.created_at.isoformat() if self.created_at else None,
            "progress": self.progress,
            "completed_lessons": len(self.completed_lesson_ids),
            "total_lessons": total_lessons,
            "is_completed": self.completed_at is not None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
