"""Admin task + submission APIs.

Routes:
- GET    /api/admin/tasks
- POST   /api/admin/tasks
- GET    /api/admin/tasks/<id>
- PUT    /api/admin/tasks/<id>
- POST   /api/admin/tasks/<id>            (PUT variant for proxies that mishandle PUT)
- DELETE /api/admin/tasks/<id>
- POST   /api/admin/tasks/<id>/duplicate
- GET    /api/admin/submissions
- POST   /api/admin/submissions/<id>/approve
- POST   /api/admin/submissions/<id>/reject

Approving a submission credits the user exactly like an auto-approved submit,
then runs the referral cascade after the commit.
"""

import json
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from auth import require_permission
from extensions import db
from models_notifications import NOTIF_TASK
from models_tasks import (
    SUBMISSION_APPROVED,
    SUBMISSION_AUTO_APPROVED,
    SUBMISSION_PENDING,
    SUBMISSION_REJECTED,
    TASK_STATUS_DRAFT,
    TASK_STATUSES,
    TASK_TYPES,
    Task,
    TaskSubmission,
)
from models_users import PACKAGE_ORDER, User
from notifications import notify
from referrals import process_referral_commissions
from tasks import award_submission


admin_tasks = Blueprint("admin_tasks", __name__)


def _parse_dt(value):
    if not value:
        return None
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1]
    return datetime.fromisoformat(s).replace(tzinfo=None)


def _optional_int(value):
    if value is None or value == "":
        return None
    return int(value)


def _validate_questions(questions):
    if questions is None:
        return None
    if not isinstance(questions, list):
        raise ValueError("questions must be a list")
    for q in questions:
        if not isinstance(q, dict) or not q.get("question") or not isinstance(q.get("options"), list):
            raise ValueError("each question needs question text and an options list")
        answer = q.get("correct_answer")
        if not isinstance(answer, int) or not (0 <= answer < len(q["options"])):
            raise ValueError("correct_answer must index into options")
    return questions


@admin_tasks.get("/api/admin/tasks")
def api_admin_list_tasks():
    _, err = require_permission("tasks.view")
    if err:
        return err

    status = (request.args.get("status") or "").strip().upper()
    task_type = (request.args.get("type") or "").strip().upper()
    search = (request.args.get("search") or "").strip()

    q = Task.query
    if status in TASK_STATUSES:
        q = q.filter(Task.status == status)
    if task_type in TASK_TYPES:
        q = q.filter(Task.type == task_type)
    if search:
        q = q.filter(Task.title.ilike(f"%{search}%"))

    tasks = q.order_by(Task.created_at.desc()).limit(500).all()

    pending_counts = dict(
        db.session.query(TaskSubmission.task_id, db.func.count(TaskSubmission.id))
        .filter(TaskSubmission.status == SUBMISSION_PENDING, TaskSubmission.submitted_at.isnot(None))
        .group_by(TaskSubmission.task_id)
        .all()
    )
    out = []
    for t in tasks:
        item = t.to_dict()
        item["pending_reviews"] = int(pending_counts.get(t.id, 0))
        out.append(item)
    return jsonify({"success": True, "tasks": out})


@admin_tasks.post("/api/admin/tasks")
def api_admin_create_task():
    admin, err = require_permission("tasks.create")
    if err:
        return err

    data = request.get_json(silent=True) or {}
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    task_type = (data.get("type") or "").strip().upper()

    if not title or not description:
        return jsonify({"success": False, "error": "title and description are required"}), 400
    if task_type not in TASK_TYPES:
        return jsonify({"success": False, "error": f"type must be one of {', '.join(sorted(TASK_TYPES))}"}), 400

    task = Task(title=title, description=description, type=task_type, status=TASK_STATUS_DRAFT)
    db.session.add(task)
    resp = _apply_task_update(task, data, created_by=admin.id)
    if resp[1] == 200:
        return resp[0], 201
    return resp


@admin_tasks.get("/api/admin/tasks/<int:task_id>")
def api_admin_get_task(task_id: int):
    _, err = require_permission("tasks.view")
    if err:
        return err

    task = Task.query.get(task_id)
    if not task:
        return jsonify({"success": False, "error": "Task not found"}), 404

    by_status = dict(
        db.session.query(TaskSubmission.status, db.func.count(TaskSubmission.id))
        .filter(TaskSubmission.task_id == task.id)
        .group_by(TaskSubmission.status)
        .all()
    )
    return jsonify({"success": True, "task": task.to_dict(), "submission_counts": by_status})


@admin_tasks.put("/api/admin/tasks/<int:task_id>")
def api_admin_update_task(task_id: int):
    _, err = require_permission("tasks.edit")
    if err:
        return err

    task = Task.query.get(task_id)
    if not task:
        return jsonify({"success": False, "error": "Task not found"}), 404

    data = request.get_json(silent=True) or {}
    return _apply_task_update(task, data)


@admin_tasks.post("/api/admin/tasks/<int:task_id>")
def api_admin_update_task_post(task_id: int):
    """POST variant of update for hosts/proxies that mishandle PUT."""
    return api_admin_update_task(task_id)


def _apply_task_update(task: Task, data: dict, created_by: int | None = None):
    """Apply validated updates to a task and commit."""

    try:
        if "title" in data:
            task.title = (data.get("title") or "").strip() or task.title
        if "description" in data:
            task.description = (data.get("description") or "").strip() or task.description
        if "type" in data:
            task_type = (data.get("type") or "").strip().upper()
            if task_type not in TASK_TYPES:
                raise ValueError("invalid task type")
            task.type = task_type
        if "status" in data:
            status = (data.get("status") or "").strip().upper()
            if status not in TASK_STATUSES:
                raise ValueError("invalid task status")
            task.status = status
        if "task_link" in data:
            task.task_link = (data.get("task_link") or "").strip() or None

        for field in ("points_reward", "xp_reward"):
            if field in data:
                value = int(data.get(field))
                if value < 0:
                    raise ValueError(f"{field} must be >= 0")
                setattr(task, field, value)

        for field in ("daily_limit", "total_limit", "cooldown_minutes", "duration"):
            if field in data:
                value = _optional_int(data.get(field))
                if value is not None and value < 0:
                    raise ValueError(f"{field} must be >= 0")
                setattr(task, field, value)

        if "min_level" in data:
            task.min_level = max(1, int(data.get("min_level") or 1))
        if "required_package" in data:
            tier = (data.get("required_package") or "").strip().upper() or None
            if tier is not None and tier not in PACKAGE_ORDER:
                raise ValueError("invalid required_package")
            task.required_package = tier
        if "countries" in data:
            countries = [str(c).strip().upper() for c in (data.get("countries") or []) if str(c).strip()]
            task.countries_json = json.dumps(countries) if countries else None
        if "auto_approve" in data:
            task.auto_approve = bool(data.get("auto_approve"))
        if "questions" in data:
            questions = _validate_questions(data.get("questions"))
            task.questions_json = json.dumps(questions) if questions else None
        for field in ("starts_at", "expires_at"):
            if field in data:
                setattr(task, field, _parse_dt(data.get(field)))
    except (TypeError, ValueError) as e:
        db.session.rollback()
        return jsonify({"success": False, "error": str(e) or "Invalid task data"}), 400

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Database error while saving task")
        return jsonify({"success": False, "error": "Database error while saving task"}), 500

    if created_by is not None:
        current_app.logger.info("Task %s created by admin %s", task.id, created_by)
    return jsonify({"success": True, "task": task.to_dict()}), 200


@admin_tasks.delete("/api/admin/tasks/<int:task_id>")
def api_admin_delete_task(task_id: int):
    _, err = require_permission("tasks.delete")
    if err:
        return err

    task = Task.query.get(task_id)
    if not task:
        return jsonify({"success": False, "error": "Task not found"}), 404

    db.session.delete(task)
    db.session.commit()
    return jsonify({"success": True})


@admin_tasks.post("/api/admin/tasks/<int:task_id>/duplicate")
def api_admin_duplicate_task(task_id: int):
    _, err = require_permission("tasks.create")
    if err:
        return err

    task = Task.query.get(task_id)
    if not task:
        return jsonify({"success": False, "error": "Task not found"}), 404

    copy = Task(
        title=f"{task.title} (Copy)",
        description=task.description,
        type=task.type,
        status=TASK_STATUS_DRAFT,
        task_link=task.task_link,
        points_reward=task.points_reward,
        xp_reward=task.xp_reward,
        daily_limit=task.daily_limit,
        total_limit=task.total_limit,
        cooldown_minutes=task.cooldown_minutes,
        min_level=task.min_level,
        required_package=task.required_package,
        countries_json=task.countries_json,
        duration=task.duration,
        auto_approve=task.auto_approve,
        questions_json=task.questions_json,
    )
    db.session.add(copy)
    db.session.commit()
    return jsonify({"success": True, "task": copy.to_dict()}), 201


@admin_tasks.get("/api/admin/submissions")
def api_admin_list_submissions():
    _, err = require_permission("submissions.view")
    if err:
        return err

    status = (request.args.get("status") or "").strip().upper()
    user_id = request.args.get("user_id")
    task_id = request.args.get("task_id")

    q = TaskSubmission.query
    if status in {SUBMISSION_PENDING, SUBMISSION_APPROVED, SUBMISSION_REJECTED, SUBMISSION_AUTO_APPROVED}:
        q = q.filter(TaskSubmission.status == status)
    if status == SUBMISSION_PENDING:
        # Started-but-not-submitted rows are not reviewable yet.
        q = q.filter(TaskSubmission.submitted_at.isnot(None))

    try:
        if user_id:
            q = q.filter(TaskSubmission.user_id == int(user_id))
        if task_id:
            q = q.filter(TaskSubmission.task_id == int(task_id))
    except ValueError:
        return jsonify({"success": False, "error": "Invalid filter"}), 400

    subs = q.order_by(TaskSubmission.created_at.desc()).limit(500).all()

    # Attach task title and user name for the review queue.
    task_ids = {s.task_id for s in subs}
    user_ids = {s.user_id for s in subs}
    task_map = {t.id: t for t in Task.query.filter(Task.id.in_(task_ids)).all()} if task_ids else {}
    user_map = {u.id: u for u in User.query.filter(User.id.in_(user_ids)).all()} if user_ids else {}

    out = []
    for s in subs:
        item = s.to_dict()
        t = task_map.get(s.task_id)
        u = user_map.get(s.user_id)
        if t:
            item["task"] = {"id": t.id, "title": t.title, "type": t.type, "points_reward": t.points_reward}
        if u:
            item["user"] = {"id": u.id, "name": u.name, "email": u.email}
        out.append(item)

    return jsonify({"success": True, "submissions": out})


@admin_tasks.post("/api/admin/submissions/<int:submission_id>/approve")
def api_admin_approve_submission(submission_id: int):
    admin, err = require_permission("submissions.approve")
    if err:
        return err

    submission = TaskSubmission.query.get(submission_id)
    if not submission:
        return jsonify({"success": False, "error": "Submission not found"}), 404
    if submission.status != SUBMISSION_PENDING:
        return jsonify({"success": False, "error": f"Submission is already {submission.status.lower()}"}), 400

    task = Task.query.get(submission.task_id)
    user = db.session.get(User, submission.user_id)
    if not task or not user:
        return jsonify({"success": False, "error": "Task or user not found"}), 404

    rewards = award_submission(submission, task, user, SUBMISSION_APPROVED, reviewer_id=admin.id)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to approve submission %s", submission_id)
        return jsonify({"success": False, "error": "Database error while approving submission"}), 500

    process_referral_commissions(user.id, rewards["points"], task.id)

    return jsonify({"success": True, "submission": submission.to_dict(), "rewards": rewards})


@admin_tasks.post("/api/admin/submissions/<int:submission_id>/reject")
def api_admin_reject_submission(submission_id: int):
    admin, err = require_permission("submissions.reject")
    if err:
        return err

    submission = TaskSubmission.query.get(submission_id)
    if not submission:
        return jsonify({"success": False, "error": "Submission not found"}), 404
    if submission.status != SUBMISSION_PENDING:
        return jsonify({"success": False, "error": f"Submission is already {submission.status.lower()}"}), 400

    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None

    submission.status = SUBMISSION_REJECTED
    submission.rejection_reason = reason
    submission.reviewed_by = admin.id
    submission.reviewed_at = datetime.utcnow()

    task = Task.query.get(submission.task_id)
    notify(
        submission.user_id,
        "Submission Rejected",
        f'Your submission for "{task.title if task else "a task"}" was rejected.' + (f" Reason: {reason}" if reason else ""),
        NOTIF_TASK,
        {"task_id": submission.task_id, "submission_id": submission.id},
    )
    db.session.commit()

    return jsonify({"success": True, "submission": submission.to_dict()})
