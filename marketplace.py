"""Peer-to-peer marketplace: listings, orders and disputes.

Routes:
- GET  /api/marketplace/listings?category=&q=&page=
- POST /api/marketplace/listings
- GET  /api/marketplace/listings/<id>
- POST /api/marketplace/listings/<id>/cancel
- GET  /api/marketplace/orders?role=buyer|seller
- POST /api/marketplace/orders                 {"listing_id": 1}
- GET  /api/marketplace/disputes?role=&status=
- POST /api/marketplace/disputes               {"purchase_id", "reason", "description"}
- GET  /api/marketplace/disputes/<id>
- POST /api/marketplace/disputes/<id>/messages {"message"}
"""

import math

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import or_

from auth import require_user
from extensions import db, limiter
from ledger import credit_points, debit_points, record_transaction
from models_marketplace import (
    DISPUTE_FINAL_STATUSES,
    DISPUTE_OPEN,
    DISPUTE_REASONS,
    LISTING_ACTIVE,
    LISTING_CANCELLED,
    LISTING_SOLD,
    PLATFORM_FEE_PERCENT,
    PURCHASE_COMPLETED,
    DisputeMessage,
    MarketplaceDispute,
    MarketplaceListing,
    MarketplacePurchase,
)
from models_notifications import NOTIF_SYSTEM, NOTIF_WALLET
from models_users import POINTS_PER_USD, User
from models_wallet import TX_EARNING, TX_PURCHASE
from notifications import notify


marketplace_api = Blueprint("marketplace_api", __name__)

MAX_LISTING_PRICE = 10000.0


def _page_args():
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = max(1, min(int(request.args.get("limit", 20)), 100))
    except (TypeError, ValueError):
        page, limit = 1, 20
    return page, limit


def _pagination(page, limit, total):
    return {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit}


def _party_role(purchase: MarketplacePurchase, user_id: int) -> str | None:
    if purchase.buyer_id == user_id:
        return "BUYER"
    if purchase.listing and purchase.listing.seller_id == user_id:
        return "SELLER"
    return None


# --- listings ---------------------------------------------------------------

@marketplace_api.get("/api/marketplace/listings")
def list_listings():
    page, limit = _page_args()
    category = (request.args.get("category") or "").strip()
    search = (request.args.get("q") or "").strip()

    q = MarketplaceListing.query.filter(MarketplaceListing.status == LISTING_ACTIVE)
    if category:
        q = q.filter(MarketplaceListing.category == category)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(MarketplaceListing.title.ilike(like), MarketplaceListing.description.ilike(like)))

    total = q.count()
    rows = q.order_by(MarketplaceListing.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"success": True, "listings": [l.to_dict() for l in rows], "pagination": _pagination(page, limit, total)})


@marketplace_api.post("/api/marketplace/listings")
@limiter.limit("20 per hour")
def create_listing():
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    if len(title) < 3 or len(title) > 200:
        return jsonify({"success": False, "error": "Title must be between 3 and 200 characters"}), 400
    if len(description) < 10:
        return jsonify({"success": False, "error": "Description must be at least 10 characters"}), 400
    try:
        price = round(float(data.get("price")), 2)
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "Invalid price"}), 400
    if not math.isfinite(price) or price <= 0 or price > MAX_LISTING_PRICE:
        return jsonify({"success": False, "error": f"Price must be between $0.01 and ${MAX_LISTING_PRICE:,.0f}"}), 400

    listing = MarketplaceListing(
        seller_id=user.id,
        title=title,
        description=description,
        category=(data.get("category") or "").strip() or None,
        price=price,
        status=LISTING_ACTIVE,
    )
    db.session.add(listing)
    db.session.commit()
    return jsonify({"success": True, "listing": listing.to_dict()}), 201


@marketplace_api.get("/api/marketplace/listings/<int:listing_id>")
def get_listing(listing_id: int):
    listing = MarketplaceListing.query.get(listing_id)
    if not listing or listing.status == LISTING_CANCELLED:
        return jsonify({"success": False, "error": "Listing not found"}), 404

    listing.views = int(listing.views or 0) + 1
    db.session.commit()

    seller = db.session.get(User, listing.seller_id)
    out = listing.to_dict()
    out["seller"] = {"id": seller.id, "name": seller.name, "level": seller.level} if seller else None
    return jsonify({"success": True, "listing": out})


@marketplace_api.post("/api/marketplace/listings/<int:listing_id>/cancel")
def cancel_listing(listing_id: int):
    user, err = require_user()
    if err:
        return err

    listing = MarketplaceListing.query.get(listing_id)
    if not listing or listing.seller_id != user.id:
        return jsonify({"success": False, "error": "Listing not found"}), 404
    if listing.status != LISTING_ACTIVE:
        return jsonify({"success": False, "error": "Only active listings can be cancelled"}), 400

    listing.status = LISTING_CANCELLED
    db.session.commit()
    return jsonify({"success": True, "listing": listing.to_dict()})


# --- orders -----------------------------------------------------------------

@marketplace_api.get("/api/marketplace/orders")
def list_orders():
    user, err = require_user()
    if err:
        return err

    page, limit = _page_args()
    role = (request.args.get("role") or "buyer").strip().lower()
    q = MarketplacePurchase.query
    if role == "seller":
        q = q.join(MarketplaceListing).filter(MarketplaceListing.seller_id == user.id)
    else:
        q = q.filter(MarketplacePurchase.buyer_id == user.id)

    total = q.count()
    rows = q.order_by(MarketplacePurchase.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return jsonify({"success": True, "purchases": [p.to_dict() for p in rows], "pagination": _pagination(page, limit, total)})


@marketplace_api.post("/api/marketplace/orders")
@limiter.limit("30 per hour")
def create_order():
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    try:
        listing_id = int(data.get("listing_id"))
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "Listing ID is required"}), 400

    listing = MarketplaceListing.query.get(listing_id)
    if not listing:
        return jsonify({"success": False, "error": "Listing not found"}), 404
    if listing.status != LISTING_ACTIVE:
        return jsonify({"success": False, "error": "This listing is not available for purchase"}), 400
    if listing.seller_id == user.id:
        return jsonify({"success": False, "error": "You cannot purchase your own listing"}), 400

    seller = db.session.get(User, listing.seller_id)
    if seller is None:
        return jsonify({"success": False, "error": "Listing not found"}), 404

    total_cost = math.ceil(listing.price * POINTS_PER_USD)
    fee = round(listing.price * PLATFORM_FEE_PERCENT / 100, 2)
    seller_amount = round(listing.price - fee, 2)
    seller_points = math.ceil(seller_amount * POINTS_PER_USD)

    if not debit_points(user, total_cost):
        return jsonify({"success": False, "error": "Insufficient balance"}), 400

    purchase = MarketplacePurchase(
        listing_id=listing.id,
        buyer_id=user.id,
        amount=listing.price,
        fee=fee,
        seller_amount=seller_amount,
        points=total_cost,
        status=PURCHASE_COMPLETED,
    )
    db.session.add(purchase)
    credit_points(seller, seller_points)
    record_transaction(
        user.id, TX_PURCHASE, -total_cost, f"Purchased: {listing.title}",
        amount=-listing.price, reference=f"purchase_{listing.id}", metadata={"listing_id": listing.id},
    )
    record_transaction(
        seller.id, TX_EARNING, seller_points, f"Sale: {listing.title}",
        amount=seller_amount, reference=f"sale_{listing.id}",
        metadata={"listing_id": listing.id, "buyer_id": user.id, "platform_fee": fee},
    )
    listing.status = LISTING_SOLD
    db.session.flush()
    notify(
        seller.id,
        "Item Sold!",
        f'Your listing "{listing.title}" has been purchased for ${listing.price:.2f}.',
        NOTIF_WALLET,
        {"purchase_id": purchase.id, "listing_id": listing.id},
    )
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Purchase of listing %s by user %s failed", listing_id, user.id)
        return jsonify({"success": False, "error": "Failed to complete purchase"}), 500

    return jsonify({"success": True, "message": "Purchase completed successfully", "purchase": purchase.to_dict()}), 201


# --- disputes ---------------------------------------------------------------

@marketplace_api.get("/api/marketplace/disputes")
def list_disputes():
    user, err = require_user()
    if err:
        return err

    role = (request.args.get("role") or "").strip().lower()
    status = (request.args.get("status") or "").strip().upper()

    as_buyer = MarketplacePurchase.buyer_id == user.id
    as_seller = MarketplaceListing.seller_id == user.id
    if role == "buyer":
        party = as_buyer
    elif role == "seller":
        party = as_seller
    else:
        party = or_(as_buyer, as_seller)

    q = (
        MarketplaceDispute.query
        .join(MarketplacePurchase, MarketplaceDispute.purchase_id == MarketplacePurchase.id)
        .join(MarketplaceListing, MarketplacePurchase.listing_id == MarketplaceListing.id)
        .filter(party)
    )
    if status:
        q = q.filter(MarketplaceDispute.status == status)

    rows = q.order_by(MarketplaceDispute.created_at.desc()).limit(100).all()
    return jsonify({"success": True, "disputes": [d.to_dict() for d in rows]})


@marketplace_api.post("/api/marketplace/disputes")
@limiter.limit("10 per hour")
def open_dispute():
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip().upper()
    description = (data.get("description") or "").strip()
    try:
        purchase_id = int(data.get("purchase_id"))
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "Purchase ID is required"}), 400

    if reason not in DISPUTE_REASONS:
        return jsonify({"success": False, "error": "Invalid dispute reason"}), 400
    if len(description) < 20:
        return jsonify({"success": False, "error": "Description must be at least 20 characters"}), 400

    purchase = MarketplacePurchase.query.get(purchase_id)
    if not purchase:
        return jsonify({"success": False, "error": "Purchase not found"}), 404

    initiator_type = _party_role(purchase, user.id)
    if initiator_type is None:
        return jsonify({"success": False, "error": "You are not a party to this purchase"}), 403

    existing = MarketplaceDispute.query.filter(
        MarketplaceDispute.purchase_id == purchase.id,
        MarketplaceDispute.status.notin_(DISPUTE_FINAL_STATUSES),
    ).first()
    if existing:
        return jsonify({"success": False, "error": "An active dispute already exists for this purchase", "dispute_id": existing.id}), 409

    dispute = MarketplaceDispute(
        purchase_id=purchase.id,
        initiator_id=user.id,
        initiator_type=initiator_type,
        reason=reason,
        description=description,
        status=DISPUTE_OPEN,
    )
    db.session.add(dispute)
    db.session.flush()
    db.session.add(DisputeMessage(
        dispute_id=dispute.id,
        sender_id=None,
        sender_type="SYSTEM",
        message=f"Dispute opened by {initiator_type.lower()}: {reason.replace('_', ' ').lower()}",
    ))

    other_id = purchase.listing.seller_id if initiator_type == "BUYER" else purchase.buyer_id
    notify(
        other_id,
        "Dispute Opened",
        f'A dispute was opened on your order for "{purchase.listing.title}".',
        NOTIF_SYSTEM,
        {"dispute_id": dispute.id, "purchase_id": purchase.id},
    )
    db.session.commit()

    current_app.logger.info("Dispute %s opened on purchase %s by user %s", dispute.id, purchase.id, user.id)
    return jsonify({"success": True, "dispute": dispute.to_dict(with_messages=True)}), 201


@marketplace_api.get("/api/marketplace/disputes/<int:dispute_id>")
def get_dispute(dispute_id: int):
    user, err = require_user()
    if err:
        return err

    dispute = MarketplaceDispute.query.get(dispute_id)
    if not dispute or _party_role(dispute.purchase, user.id) is None:
        return jsonify({"success": False, "error": "Dispute not found"}), 404
    return jsonify({"success": True, "dispute": dispute.to_dict(with_messages=True)})


@marketplace_api.post("/api/marketplace/disputes/<int:dispute_id>/messages")
def post_dispute_message(dispute_id: int):
    user, err = require_user()
    if err:
        return err

    dispute = MarketplaceDispute.query.get(dispute_id)
    role = _party_role(dispute.purchase, user.id) if dispute else None
    if role is None:
        return jsonify({"success": False, "error": "Dispute not found"}), 404
    if dispute.status in DISPUTE_FINAL_STATUSES:
        return jsonify({"success": False, "error": "This dispute is closed"}), 400

    message = ((request.get_json(silent=True) or {}).get("message") or "").strip()
    if not message:
        return jsonify({"success": False, "error": "Message is required"}), 400

    msg = DisputeMessage(dispute_id=dispute.id, sender_id=user.id, sender_type=role, message=message[:2000])
    db.session.add(msg)
    db.session.commit()
    return jsonify({"success": True, "message": msg.to_dict()}), 201
