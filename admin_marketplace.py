"""Admin dispute handling and listing moderation.

Routes:
- GET  /api/admin/disputes?status=
- GET  /api/admin/disputes/<id>
- POST /api/admin/disputes/<id>   {"action": "message"|"assign"|"escalate"|"resolve"|"close", ...}
- GET  /api/admin/marketplace/listings?status=
- POST /api/admin/marketplace/listings/<id>   {"action": "deactivate"|"reactivate"}
"""

from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from auth import require_permission
from extensions import db
from ledger import credit_points, record_transaction
from models_marketplace import (
    DISPUTE_CLOSED,
    DISPUTE_ESCALATED,
    DISPUTE_FINAL_STATUSES,
    DISPUTE_IN_REVIEW,
    DISPUTE_RESOLVED_BUYER,
    DISPUTE_RESOLVED_SELLER,
    LISTING_ACTIVE,
    LISTING_CANCELLED,
    LISTING_STATUSES,
    PURCHASE_REFUNDED,
    DisputeMessage,
    MarketplaceDispute,
    MarketplaceListing,
)
from models_notifications import NOTIF_SYSTEM
from models_users import POINTS_PER_USD, User
from models_wallet import TX_REFUND
from notifications import notify


admin_marketplace = Blueprint("admin_marketplace", __name__)


def _system_message(dispute: MarketplaceDispute, text: str) -> None:
    db.session.add(DisputeMessage(dispute_id=dispute.id, sender_id=None, sender_type="SYSTEM", message=text))


def _notify_parties(dispute: MarketplaceDispute, title: str, message: str, data: dict | None = None) -> None:
    purchase = dispute.purchase
    payload = {"dispute_id": dispute.id, **(data or {})}
    notify(purchase.buyer_id, title, message, NOTIF_SYSTEM, payload)
    notify(purchase.listing.seller_id, title, message, NOTIF_SYSTEM, payload)


def _dispute_detail(dispute: MarketplaceDispute) -> dict:
    out = dispute.to_dict(with_messages=True)
    purchase = dispute.purchase
    out["purchase"] = purchase.to_dict()
    buyer = db.session.get(User, purchase.buyer_id)
    seller = db.session.get(User, purchase.listing.seller_id)
    out["buyer"] = {"id": buyer.id, "name": buyer.name, "email": buyer.email} if buyer else None
    out["seller"] = {"id": seller.id, "name": seller.name, "email": seller.email} if seller else None
    return out


@admin_marketplace.get("/api/admin/disputes")
def api_admin_list_disputes():
    _, err = require_permission("marketplace.disputes")
    if err:
        return err

    status = (request.args.get("status") or "").strip().upper()
    q = MarketplaceDispute.query
    if status:
        q = q.filter(MarketplaceDispute.status == status)
    rows = q.order_by(MarketplaceDispute.created_at.desc()).limit(200).all()

    counts = {
        s: MarketplaceDispute.query.filter_by(status=s).count()
        for s in ("OPEN", DISPUTE_IN_REVIEW, DISPUTE_ESCALATED)
    }
    return jsonify({"success": True, "disputes": [d.to_dict() for d in rows], "counts": counts})


@admin_marketplace.get("/api/admin/disputes/<int:dispute_id>")
def api_admin_get_dispute(dispute_id: int):
    _, err = require_permission("marketplace.disputes")
    if err:
        return err

    dispute = MarketplaceDispute.query.get(dispute_id)
    if not dispute:
        return jsonify({"success": False, "error": "Dispute not found"}), 404
    return jsonify({"success": True, "dispute": _dispute_detail(dispute)})


@admin_marketplace.post("/api/admin/disputes/<int:dispute_id>")
def api_admin_dispute_action(dispute_id: int):
    admin, err = require_permission("marketplace.disputes")
    if err:
        return err

    dispute = MarketplaceDispute.query.get(dispute_id)
    if not dispute:
        return jsonify({"success": False, "error": "Dispute not found"}), 404

    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip().lower()
    admin_notes = (data.get("admin_notes") or "").strip()
    title = dispute.purchase.listing.title

    if dispute.status in DISPUTE_FINAL_STATUSES:
        return jsonify({"success": False, "error": "This dispute is already closed"}), 400

    if action == "message":
        message = (data.get("message") or "").strip()
        if not message:
            return jsonify({"success": False, "error": "Message is required"}), 400
        msg = DisputeMessage(dispute_id=dispute.id, sender_id=admin.id, sender_type="ADMIN", message=message[:2000])
        db.session.add(msg)
        _notify_parties(dispute, "Admin Response in Dispute", f'Support admin responded in your dispute for "{title}"')
        db.session.commit()
        return jsonify({"success": True, "message": msg.to_dict()})

    if action == "assign":
        dispute.assigned_to = admin.id
        dispute.status = DISPUTE_IN_REVIEW
        _system_message(dispute, "Dispute has been assigned to a support admin and is now under review.")
        db.session.commit()
        return jsonify({"success": True, "message": "Dispute assigned successfully", "status": dispute.status})

    if action == "escalate":
        dispute.status = DISPUTE_ESCALATED
        dispute.admin_notes = admin_notes or dispute.admin_notes
        _system_message(dispute, "Dispute has been escalated for senior review.")
        db.session.commit()
        return jsonify({"success": True, "message": "Dispute escalated successfully", "status": dispute.status})

    if action == "resolve":
        resolution = (data.get("resolution") or "").strip()
        in_favor_of = (data.get("in_favor_of") or "").strip().upper()
        if not resolution:
            return jsonify({"success": False, "error": "Resolution is required"}), 400
        if in_favor_of not in ("BUYER", "SELLER"):
            return jsonify({"success": False, "error": "in_favor_of must be BUYER or SELLER"}), 400

        refund_amount = 0.0
        if in_favor_of == "BUYER" and data.get("resolved_amount") not in (None, ""):
            try:
                refund_amount = round(float(data.get("resolved_amount")), 2)
            except (TypeError, ValueError):
                return jsonify({"success": False, "error": "Invalid resolved_amount"}), 400
            if refund_amount < 0 or refund_amount > dispute.purchase.amount:
                return jsonify({"success": False, "error": "resolved_amount must be between 0 and the purchase amount"}), 400

        dispute.status = DISPUTE_RESOLVED_BUYER if in_favor_of == "BUYER" else DISPUTE_RESOLVED_SELLER
        dispute.resolution = resolution
        dispute.resolved_amount = refund_amount
        dispute.admin_notes = admin_notes or dispute.admin_notes
        dispute.resolved_at = datetime.utcnow()

        purchase = dispute.purchase
        if refund_amount > 0:
            buyer = db.session.get(User, purchase.buyer_id)
            refund_points = round(refund_amount * POINTS_PER_USD)
            credit_points(buyer, refund_points, count_as_earning=False)
            record_transaction(
                buyer.id, TX_REFUND, refund_points, f'Refund from dispute resolution for "{title}"',
                amount=refund_amount, reference=f"dispute_refund_{dispute.id}",
                metadata={"dispute_id": dispute.id, "purchase_id": purchase.id},
            )
            purchase.status = PURCHASE_REFUNDED

        refund_note = f" ${refund_amount:.2f} has been refunded to the buyer." if refund_amount > 0 else ""
        _system_message(dispute, f"Dispute has been resolved in favor of the {in_favor_of.lower()}.{refund_note} Resolution: {resolution}")
        _notify_parties(
            dispute,
            "Dispute Resolved",
            f'The dispute for "{title}" has been resolved in favor of the {in_favor_of.lower()}.{refund_note}',
            {"in_favor_of": in_favor_of, "refund_amount": refund_amount},
        )
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Failed to resolve dispute %s", dispute_id)
            return jsonify({"success": False, "error": "Failed to resolve dispute"}), 500

        current_app.logger.info("Dispute %s resolved for %s by admin %s (refund %.2f)", dispute.id, in_favor_of, admin.id, refund_amount)
        return jsonify({"success": True, "message": "Dispute resolved successfully", "status": dispute.status})

    if action == "close":
        dispute.status = DISPUTE_CLOSED
        dispute.admin_notes = admin_notes or dispute.admin_notes
        dispute.resolved_at = datetime.utcnow()
        _system_message(dispute, "Dispute has been closed.")
        _notify_parties(dispute, "Dispute Closed", f'The dispute for "{title}" has been closed.')
        db.session.commit()
        return jsonify({"success": True, "message": "Dispute closed", "status": dispute.status})

    return jsonify({"success": False, "error": "Invalid action"}), 400


@admin_marketplace.get("/api/admin/marketplace/listings")
def api_admin_list_listings():
    _, err = require_permission("marketplace.view")
    if err:
        return err

    status = (request.args.get("status") or "").strip().upper()
    q = MarketplaceListing.query
    if status in LISTING_STATUSES:
        q = q.filter(MarketplaceListing.status == status)
    rows = q.order_by(MarketplaceListing.created_at.desc()).limit(500).all()
    return jsonify({"success": True, "listings": [l.to_dict() for l in rows]})


@admin_marketplace.post("/api/admin/marketplace/listings/<int:listing_id>")
def api_admin_moderate_listing(listing_id: int):
    admin, err = require_permission("marketplace.manage")
    if err:
        return err

    listing = MarketplaceListing.query.get(listing_id)
    if not listing:
        return jsonify({"success": False, "error": "Listing not found"}), 404

    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip().lower()
    if action == "deactivate":
        if listing.status != LISTING_ACTIVE:
            return jsonify({"success": False, "error": "Only active listings can be deactivated"}), 400
        listing.status = LISTING_CANCELLED
        reason = (data.get("reason") or "").strip()
        notify(
            listing.seller_id,
            "Listing Removed",
            f'Your listing "{listing.title}" was removed by a moderator.' + (f" Reason: {reason}" if reason else ""),
            NOTIF_SYSTEM,
            {"listing_id": listing.id},
        )
    elif action == "reactivate":
        if listing.status != LISTING_CANCELLED:
            return jsonify({"success": False, "error": "Only cancelled listings can be reactivated"}), 400
        listing.status = LISTING_ACTIVE
    else:
        return jsonify({"success": False, "error": "Invalid action"}), 400

    db.session.commit()
    current_app.logger.info("Listing %s %sd by admin %s", listing.id, action, admin.id)
    return jsonify({"success": True, "listing": listing.to_dict()})
