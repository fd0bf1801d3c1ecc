"""Peer-to-peer marketplace: listings, purchases and disputes.

Prices are USD; settlement moves points (price * 1000) from buyer to seller
minus the platform fee.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from extensions import db


PLATFORM_FEE_PERCENT = 5.0

LISTING_ACTIVE = "ACTIVE"
LISTING_SOLD = "SOLD"
LISTING_CANCELLED = "CANCELLED"
LISTING_EXPIRED = "EXPIRED"
LISTING_STATUSES = {LISTING_ACTIVE, LISTING_SOLD, LISTING_CANCELLED, LISTING_EXPIRED}

PURCHASE_COMPLETED = "COMPLETED"
PURCHASE_REFUNDED = "REFUNDED"

DISPUTE_OPEN = "OPEN"
DISPUTE_IN_REVIEW = "IN_REVIEW"
DISPUTE_ESCALATED = "ESCALATED"
DISPUTE_RESOLVED_BUYER = "RESOLVED_BUYER"
DISPUTE_RESOLVED_SELLER = "RESOLVED_SELLER"
DISPUTE_CLOSED = "CLOSED"

DISPUTE_FINAL_STATUSES = {DISPUTE_RESOLVED_BUYER, DISPUTE_RESOLVED_SELLER, DISPUTE_CLOSED}

DISPUTE_REASONS = {
    "ITEM_NOT_RECEIVED",
    "NOT_AS_DESCRIBED",
    "DAMAGED_ITEM",
    "WRONG_ITEM",
    "SELLER_UNRESPONSIVE",
    "BUYER_UNRESPONSIVE",
    "PAYMENT_ISSUE",
    "OTHER",
}


class MarketplaceListing(db.Model):
    __tablename__ = "marketplace_listings"

    id = Column(Integer, primary_key=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(50), nullable=True)
    price = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default=LISTING_ACTIVE)
    views = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    purchases = relationship("MarketplacePurchase", back_populates="listing")

    __table_args__ = (
        Index("idx_listings_status_created", "status", "created_at"),
        Index("idx_listings_category", "category"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "price": self.price,
            "status": self.status,
            "views": self.views,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class MarketplacePurchase(db.Model):
    __tablename__ = "marketplace_purchases"

    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey("marketplace_listings.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    fee = Column(Float, nullable=False, default=0.0)
    seller_amount = Column(Float, nullable=False)
    points = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=PURCHASE_COMPLETED)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    listing = relationship("MarketplaceListing", back_populates="purchases")
    disputes = relationship("MarketplaceDispute", back_populates="purchase")

    def to_dict(self):
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.listing.seller_id if self.listing else None,
            "title": self.listing.title if self.listing else None,
            "amount": self.amount,
            "fee": self.fee,
            "seller_amount": self.seller_amount,
            "points": self.points,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class MarketplaceDispute(db.Model):
    __tablename__ = "marketplace_disputes"

    id = Column(Integer, primary_key=True)
    purchase_id = Column(Integer, ForeignKey("marketplace_purchases.id"), nullable=False, index=True)
    initiator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    initiator_type = Column(String(10), nullable=False)  # BUYER / SELLER
    reason = Column(String(40), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=DISPUTE_OPEN)
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=True)
    resolution = Column(Text, nullable=True)
    resolved_amount = Column(Float, nullable=True)
    admin_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    purchase = relationship("MarketplacePurchase", back_populates="disputes")
    messages = relationship(
        "DisputeMessage",
        back_populates="dispute",
        cascade="all, delete-orphan",
        order_by="DisputeMessage.created_at",
    )

    __table_args__ = (
        Index("idx_disputes_status", "status"),
    )

    def to_dict(self, with_messages: bool = False):
        out = {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "initiator_id": self.initiator_id,
            "initiator_type": self.initiator_type,
            "reason": self.reason,
            "description": self.description,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "resolution": self.resolution,
            "resolved_amount": self.resolved_amount,
            "admin_notes": self.admin_notes,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if with_messages:
            out["messages"] = [m.to_dict() for m in self.messages]
        return out


class DisputeMessage(db.Model):
    __tablename__ = "dispute_messages"

    id = Column(Integer, primary_key=True)
    dispute_id = Column(Integer, ForeignKey("marketplace_disputes.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # NULL = system
    sender_type = Column(String(10), nullable=False)  # BUYER / SELLER / ADMIN / SYSTEM
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    dispute = relationship("MarketplaceDispute", back_populates="messages")

    def to_dict(self):
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "sender_type": self.sender_type,
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
