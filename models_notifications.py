from datetime import datetime
import json

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from extensions import db


NOTIF_SYSTEM = "SYSTEM"
NOTIF_TASK = "TASK"
NOTIF_WALLET = "WALLET"
NOTIF_REFERRAL = "REFERRAL"
NOTIF_PROMOTION = "PROMOTION"
NOTIF_ACHIEVEMENT = "ACHIEVEMENT"
NOTIF_LOTTERY = "LOTTERY"
NOTIF_SOCIAL = "SOCIAL"

NOTIF_TYPES = {
    NOTIF_SYSTEM, NOTIF_TASK, NOTIF_WALLET, NOTIF_REFERRAL,
    NOTIF_PROMOTION, NOTIF_ACHIEVEMENT, NOTIF_LOTTERY, NOTIF_SOCIAL,
}


class Notification(db.Model):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False, default=NOTIF_SYSTEM)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    data_json = Column(Text, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
        Index("idx_notifications_created", "created_at"),
    )

    def to_dict(self):
        data = None
        if self.data_json:
            try:
                data = json.loads(self.data_json)
            except ValueError:
                data = None
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": data,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
