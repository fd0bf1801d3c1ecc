"""Social feed: posts, likes and comments.

likes_count / comments_count are denormalised counters kept in step by the
feed routes; deleting a post removes its likes and comments with it.
"""

import json
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from extensions import db


MAX_POST_LENGTH = 2000
MAX_COMMENT_LENGTH = 500
MAX_POST_IMAGES = 4


class Post(db.Model):
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    images_json = Column(Text, nullable=True)
    is_public = Column(Boolean, nullable=False, default=True)
    is_pinned = Column(Boolean, nullable=False, default=False)
    likes_count = Column(Integer, nullable=False, default=0)
    comments_count = Column(Integer, nullable=False, default=0)
    shares_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    likes = relationship("PostLike", cascade="all, delete-orphan")
    comments = relationship(
        "PostComment",
        cascade="all, delete-orphan",
        order_by="PostComment.created_at.desc()",
    )

    __table_args__ = (
        Index("idx_posts_public_pinned_created", "is_public", "is_pinned", "created_at"),
    )

    @property
    def images(self) -> list[str]:
        if not self.images_json:
            return []
        try:
            return json.loads(self.images_json)
        except ValueError:
            return []

    @images.setter
    def images(self, value):
        self.images_json = json.dumps(list(value or []))

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "images": self.images,
            "is_public": self.is_public,
            "is_pinned": self.is_pinned,
            "likes_count": self.likes_count,
            "comments_count": self.comments_count,
            "shares_count": self.shares_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PostLike(db.Model):
    __tablename__ = "post_likes"

    id = Column(Integer, primary_key=True)
    post_id = Column(Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("post_id", "user_id", name="uq_post_likes_user"),
    )


class PostComment(db.Model):
    __tablename__ = "post_comments"

    id = Column(Integer, primary_key=True)
    post_id = Column(Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "post_id": self.post_id,
            "user_id": self.user_id,
            "content": self.content,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
