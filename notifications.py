"""In-app notifications.

Routes:
- GET  /api/notifications?unread=1&page=1
- POST /api/notifications/<id>/read
- POST /api/notifications/read-all
- DELETE /api/notifications/<id>
- POST /api/admin/notifications/send       (notifications.send)
- POST /api/admin/notifications/broadcast  (notifications.send; skips users with notifications turned off)

`notify()` is the single helper every feature uses to create a notification;
it stages the row on the session and the caller commits.
"""

import json

from flask import Blueprint, current_app, jsonify, request

from auth import require_permission, require_user
from extensions import db
from models_notifications import NOTIF_SYSTEM, NOTIF_TYPES, Notification
from models_users import USER_STATUS_ACTIVE, User
from rbac import ROLE_USER


notifications_api = Blueprint("notifications_api", __name__)


def notify(user_id: int, title: str, message: str, notif_type: str = NOTIF_SYSTEM, data: dict | None = None) -> Notification:
    n = Notification(
        user_id=user_id,
        type=notif_type,
        title=(title or "")[:200],
        message=message or "",
        data_json=json.dumps(data, separators=(",", ":")) if data is not None else None,
    )
    db.session.add(n)
    return n


def _page_args(default_limit: int = 20, max_limit: int = 100):
    try:
        page = max(1, int(request.args.get("page", 1)))
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(request.args.get("limit", default_limit))
    except (TypeError, ValueError):
        limit = default_limit
    limit = max(1, min(limit, max_limit))
    return page, limit


@notifications_api.get("/api/notifications")
def list_notifications():
    user, err = require_user()
    if err:
        return err

    page, limit = _page_args()
    q = Notification.query.filter_by(user_id=user.id)
    if request.args.get("unread") in {"1", "true"}:
        q = q.filter(Notification.is_read.is_(False))

    total = q.count()
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()
    unread_count = Notification.query.filter_by(user_id=user.id, is_read=False).count()

    return jsonify({
        "success": True,
        "notifications": [n.to_dict() for n in rows],
        "unread_count": unread_count,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    })


@notifications_api.post("/api/notifications/<int:notification_id>/read")
def mark_notification_read(notification_id: int):
    user, err = require_user()
    if err:
        return err

    n = Notification.query.filter_by(id=notification_id, user_id=user.id).first()
    if not n:
        return jsonify({"success": False, "error": "Notification not found"}), 404

    n.is_read = True
    db.session.commit()
    return jsonify({"success": True, "notification": n.to_dict()})


@notifications_api.post("/api/notifications/read-all")
def mark_all_read():
    user, err = require_user()
    if err:
        return err

    updated = Notification.query.filter_by(user_id=user.id, is_read=False) \
        .update({Notification.is_read: True}, synchronize_session=False)
    db.session.commit()
    return jsonify({"success": True, "updated": int(updated or 0)})


@notifications_api.delete("/api/notifications/<int:notification_id>")
def delete_notification(notification_id: int):
    user, err = require_user()
    if err:
        return err

    n = Notification.query.filter_by(id=notification_id, user_id=user.id).first()
    if not n:
        return jsonify({"success": False, "error": "Notification not found"}), 404

    db.session.delete(n)
    db.session.commit()
    return jsonify({"success": True})


# -------------------------------
# Admin
# -------------------------------

def _admin_payload():
    data = request.get_json(silent=True) or {}
    title = (data.get("title") or "").strip()
    message = (data.get("message") or "").strip()
    notif_type = (data.get("type") or NOTIF_SYSTEM).strip().upper()
    if not title or not message:
        return None, (jsonify({"success": False, "error": "title and message are required"}), 400)
    if notif_type not in NOTIF_TYPES:
        return None, (jsonify({"success": False, "error": "Invalid notification type"}), 400)
    return (title, message, notif_type, data), None


@notifications_api.post("/api/admin/notifications/send")
def admin_send_notification():
    _, err = require_permission("notifications.send")
    if err:
        return err

    payload, err = _admin_payload()
    if err:
        return err
    title, message, notif_type, data = payload

    try:
        user_id = int(data.get("user_id"))
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "user_id is required"}), 400
    if db.session.get(User, user_id) is None:
        return jsonify({"success": False, "error": "User not found"}), 404

    n = notify(user_id, title, message, notif_type)
    db.session.commit()
    return jsonify({"success": True, "notification": n.to_dict()}), 201


@notifications_api.post("/api/admin/notifications/broadcast")
def admin_broadcast_notification():
    admin, err = require_permission("notifications.send")
    if err:
        return err

    payload, err = _admin_payload()
    if err:
        return err
    title, message, notif_type, _ = payload

    user_ids = [
        uid for (uid,) in db.session.query(User.id)
        .filter(User.role == ROLE_USER, User.status == USER_STATUS_ACTIVE, User.notifications_enabled.is_(True))
        .all()
    ]
    for uid in user_ids:
        notify(uid, title, message, notif_type)
    db.session.commit()

    current_app.logger.info("Admin %s broadcast notification to %d users", admin.id, len(user_ids))
    return jsonify({"success": True, "sent": len(user_ids)})
