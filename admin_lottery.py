"""Admin lottery management.

Routes:
- GET   /api/admin/lottery
- POST  /api/admin/lottery
- GET   /api/admin/lottery/<id>
- PATCH /api/admin/lottery/<id>   {"action": "activate" | "draw" | "cancel"} or field updates
- DELETE /api/admin/lottery/<id>  (only without tickets)
"""

from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func

from auth import require_permission
from extensions import db
from lottery import LotteryActionError, activate_lottery, cancel_lottery, draw_lottery
from models_lottery import (
    LOTTERY_ACTIVE,
    LOTTERY_STATUSES,
    LOTTERY_UPCOMING,
    Lottery,
    LotteryTicket,
)
from models_users import User


admin_lottery = Blueprint("admin_lottery", __name__)


def _parse_dt(value) -> datetime | None:
    if not value:
        return None
    try:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1]
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt.replace(tzinfo=None)


def _parse_prizes(raw) -> tuple[list[dict] | None, str | None]:
    if not isinstance(raw, list) or not raw:
        return None, "At least one prize is required"
    prizes = []
    for idx, p in enumerate(raw, start=1):
        if not isinstance(p, dict):
            return None, "Each prize must be an object"
        try:
            amount = int(p.get("amount"))
            position = int(p.get("position") or idx)
        except (TypeError, ValueError):
            return None, "Prize amount must be an integer"
        if amount < 0:
            return None, "Prize amount must be >= 0"
        prizes.append({
            "position": position,
            "amount": amount,
            "description": (p.get("description") or "").strip() or f"Prize #{position}",
        })
    positions = [p["position"] for p in prizes]
    if len(set(positions)) != len(positions):
        return None, "Prize positions must be unique"
    return sorted(prizes, key=lambda p: p["position"]), None


@admin_lottery.get("/api/admin/lottery")
def api_admin_list_lotteries():
    _, err = require_permission("settings.view")
    if err:
        return err

    status = (request.args.get("status") or "").strip().upper()
    q = Lottery.query
    if status in LOTTERY_STATUSES:
        q = q.filter(Lottery.status == status)

    lotteries = q.order_by(Lottery.created_at.desc()).limit(200).all()
    return jsonify({"success": True, "lotteries": [l.to_dict() for l in lotteries]})


@admin_lottery.post("/api/admin/lottery")
def api_admin_create_lottery():
    admin, err = require_permission("settings.edit")
    if err:
        return err

    data = request.get_json(silent=True) or {}
    title = (data.get("title") or "").strip()
    start_date = _parse_dt(data.get("start_date"))
    end_date = _parse_dt(data.get("end_date"))
    draw_date = _parse_dt(data.get("draw_date"))

    if not title or not start_date or not end_date or not draw_date:
        return jsonify({"success": False, "error": "title, start_date, end_date and draw_date are required"}), 400
    error = _check_schedule(start_date, end_date, draw_date)
    if error:
        return jsonify({"success": False, "error": error}), 400

    ticket_price, error = _parse_ticket_price(data.get("ticket_price"))
    if error:
        return jsonify({"success": False, "error": error}), 400

    try:
        max_tickets = int(data["max_tickets"]) if data.get("max_tickets") else None
        max_per_user = int(data.get("max_tickets_per_user") or 10)
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "ticket limits must be integers"}), 400
    if (max_tickets is not None and max_tickets < 1) or max_per_user < 1:
        return jsonify({"success": False, "error": "ticket limits must be >= 1"}), 400

    prizes, error = _parse_prizes(data.get("prizes"))
    if error:
        return jsonify({"success": False, "error": error}), 400

    lottery = Lottery(
        title=title,
        description=(data.get("description") or "").strip() or None,
        start_date=start_date,
        end_date=end_date,
        draw_date=draw_date,
        ticket_price=ticket_price,
        max_tickets=max_tickets,
        max_tickets_per_user=max_per_user,
        status=LOTTERY_ACTIVE if start_date <= datetime.utcnow() else LOTTERY_UPCOMING,
    )
    lottery.prizes = prizes
    db.session.add(lottery)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create lottery")
        return jsonify({"success": False, "error": "Database error while creating lottery"}), 500

    current_app.logger.info("Lottery %s created by admin %s", lottery.id, admin.id)
    return jsonify({"success": True, "lottery": lottery.to_dict()}), 201


@admin_lottery.get("/api/admin/lottery/<int:lottery_id>")
def api_admin_get_lottery(lottery_id: int):
    _, err = require_permission("settings.view")
    if err:
        return err

    lottery = Lottery.query.get(lottery_id)
    if not lottery:
        return jsonify({"success": False, "error": "Lottery not found"}), 404

    participants = (
        db.session.query(User.id, User.name, User.email, func.count(LotteryTicket.id))
        .join(LotteryTicket, LotteryTicket.user_id == User.id)
        .filter(LotteryTicket.lottery_id == lottery.id)
        .group_by(User.id, User.name, User.email)
        .order_by(func.count(LotteryTicket.id).desc())
        .all()
    )
    return jsonify({
        "success": True,
        "lottery": lottery.to_dict(),
        "participants": [
            {"user_id": uid, "name": name, "email": email, "tickets": int(cnt)}
            for uid, name, email, cnt in participants
        ],
    })


def _check_schedule(start_date: datetime, end_date: datetime, draw_date: datetime) -> str | None:
    if end_date <= start_date:
        return "end_date must be after start_date"
    if draw_date < end_date:
        return "draw_date must not be before end_date"
    return None


def _parse_ticket_price(raw) -> tuple[int | None, str | None]:
    try:
        price = int(raw)
    except (TypeError, ValueError):
        return None, "ticket_price must be an integer"
    if price <= 0:
        return None, "ticket_price must be > 0"
    return price, None


def _apply_lottery_update(lottery: Lottery, data: dict):
    """Validate the merged lottery before touching the row; nothing is written on a 400."""
    if lottery.status not in {LOTTERY_UPCOMING, LOTTERY_ACTIVE}:
        return jsonify({"success": False, "error": "Finished lotteries cannot be edited"}), 400

    dates = {f: getattr(lottery, f) for f in ("start_date", "end_date", "draw_date")}
    for field in dates:
        if field in data:
            dt = _parse_dt(data.get(field))
            if not dt:
                return jsonify({"success": False, "error": f"Invalid {field}"}), 400
            dates[field] = dt
    error = _check_schedule(dates["start_date"], dates["end_date"], dates["draw_date"])
    if error:
        return jsonify({"success": False, "error": error}), 400

    prizes = None
    if "prizes" in data:
        prizes, error = _parse_prizes(data.get("prizes"))
        if error:
            return jsonify({"success": False, "error": error}), 400

    max_per_user = None
    if "max_tickets_per_user" in data:
        try:
            max_per_user = int(data.get("max_tickets_per_user"))
        except (TypeError, ValueError):
            return jsonify({"success": False, "error": "max_tickets_per_user must be an integer"}), 400
        if max_per_user < 1:
            return jsonify({"success": False, "error": "ticket limits must be >= 1"}), 400

    # Ticket price is fixed once tickets are sold so refunds stay exact.
    ticket_price = None
    if "ticket_price" in data:
        if lottery.tickets_sold:
            return jsonify({"success": False, "error": "ticket_price cannot change after tickets are sold"}), 400
        ticket_price, error = _parse_ticket_price(data.get("ticket_price"))
        if error:
            return jsonify({"success": False, "error": error}), 400

    if "title" in data:
        lottery.title = (data.get("title") or "").strip() or lottery.title
    if "description" in data:
        lottery.description = (data.get("description") or "").strip() or None
    for field, dt in dates.items():
        setattr(lottery, field, dt)
    if prizes is not None:
        lottery.prizes = prizes
    if max_per_user is not None:
        lottery.max_tickets_per_user = max_per_user
    if ticket_price is not None:
        lottery.ticket_price = ticket_price

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update lottery %s", lottery.id)
        return jsonify({"success": False, "error": "Database error while updating lottery"}), 500
    return jsonify({"success": True, "lottery": lottery.to_dict()})


@admin_lottery.patch("/api/admin/lottery/<int:lottery_id>")
def api_admin_update_lottery(lottery_id: int):
    admin, err = require_permission("settings.edit")
    if err:
        return err

    lottery = Lottery.query.get(lottery_id)
    if not lottery:
        return jsonify({"success": False, "error": "Lottery not found"}), 404

    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip().lower()
    if not action:
        return _apply_lottery_update(lottery, data)

    try:
        if action == "activate":
            activate_lottery(lottery)
            return jsonify({"success": True, "message": "Lottery activated", "lottery": lottery.to_dict()})
        if action == "draw":
            winners = draw_lottery(lottery)
            current_app.logger.info("Lottery %s drawn by admin %s", lottery.id, admin.id)
            return jsonify({"success": True, "message": "Lottery drawn", "winners": winners, "lottery": lottery.to_dict()})
        if action == "cancel":
            refunded = cancel_lottery(lottery)
            current_app.logger.info("Lottery %s cancelled by admin %s", lottery.id, admin.id)
            return jsonify({
                "success": True,
                "message": "Lottery cancelled and tickets refunded",
                "refunded_points": refunded,
                "lottery": lottery.to_dict(),
            })
    except LotteryActionError as e:
        db.session.rollback()
        return jsonify({"success": False, "error": e.message}), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Lottery %s action %s failed", lottery_id, action)
        return jsonify({"success": False, "error": "Failed to update lottery"}), 500

    return jsonify({"success": False, "error": "Invalid action"}), 400


@admin_lottery.delete("/api/admin/lottery/<int:lottery_id>")
def api_admin_delete_lottery(lottery_id: int):
    _, err = require_permission("settings.edit")
    if err:
        return err

    lottery = Lottery.query.get(lottery_id)
    if not lottery:
        return jsonify({"success": False, "error": "Lottery not found"}), 404
    if LotteryTicket.query.filter_by(lottery_id=lottery.id).count():
        return jsonify({"success": False, "error": "Lotteries with tickets must be cancelled instead"}), 400

    db.session.delete(lottery)
    db.session.commit()
    return jsonify({"success": True})
