"""User-facing task APIs.

Routes:
- GET  /api/tasks                 (available tasks for the signed-in user)
- GET  /api/tasks/<id>
- POST /api/tasks/<id>/start      -> PENDING submission (existing one is returned)
- POST /api/tasks/<id>/submit     {"submission_id", "proof", "answers"}
- GET  /api/tasks/history

Assumptions:
- At most one PENDING submission per (user, task); starting again returns it.
- Daily limit defaults to 1 completion per task per UTC day.
- VIDEO / ARTICLE / QUIZ tasks and tasks flagged auto_approve are rewarded on
  submit; everything else waits for an admin (see admin_tasks.py).
- Rewards are committed first; the referral cascade runs afterwards and can
  never undo them.
"""

import json
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import and_, func

from achievements import sync_achievements
from auth import require_user
from extensions import db, limiter
from ledger import add_xp, credit_points, record_transaction
from models_notifications import NOTIF_ACHIEVEMENT, NOTIF_TASK
from models_tasks import (
    AUTO_APPROVE_TYPES,
    COMPLETED_SUBMISSION_STATUSES,
    SUBMISSION_AUTO_APPROVED,
    SUBMISSION_PENDING,
    TASK_STATUS_ACTIVE,
    Task,
    TaskSubmission,
)
from models_users import User, package_rank
from models_wallet import TX_EARNING
from notifications import notify
from packages import active_package, effective_tier
from referrals import process_referral_commissions


tasks_api = Blueprint("tasks_api", __name__)

# Fraction of the task duration that must pass between start and submit.
REQUIRED_DURATION_RATIO = 0.8


def _utc_day_start(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day)


def _completions_today(user_id: int, now: datetime, task_id: int | None = None) -> int:
    q = TaskSubmission.query.filter(
        TaskSubmission.user_id == user_id,
        TaskSubmission.created_at >= _utc_day_start(now),
        TaskSubmission.status.in_(COMPLETED_SUBMISSION_STATUSES + (SUBMISSION_PENDING,)),
    )
    if task_id is not None:
        q = q.filter(TaskSubmission.task_id == task_id)
    return q.count()


def check_task_eligibility(task: Task, user: User, now: datetime) -> tuple[str | None, int]:
    """Return (reason, http_status) when the user may not start the task, else (None, 200)."""
    if task.status != TASK_STATUS_ACTIVE:
        return "Task is not available", 400
    if task.expires_at and now > task.expires_at:
        return "Task has expired", 400
    if task.starts_at and now < task.starts_at:
        return "Task has not started yet", 400
    if int(user.level or 1) < int(task.min_level or 1):
        return f"Minimum level {task.min_level} required", 403
    if task.required_package and package_rank(effective_tier(user, now)) < package_rank(task.required_package):
        return f"{task.required_package} package or higher required", 403
    countries = task.countries
    if countries and user.country and user.country not in countries:
        return "Task not available in your country", 403
    if task.total_limit and int(task.completed_count or 0) >= int(task.total_limit):
        return "Task limit has been reached", 400
    if _completions_today(user.id, now, task.id) >= int(task.daily_limit or 1):
        return "Daily limit reached for this task", 400

    pkg = active_package(user)
    if pkg and pkg.daily_task_limit is not None and pkg.daily_task_limit >= 0:
        if _completions_today(user.id, now) >= pkg.daily_task_limit:
            return f"Your {pkg.name} package allows {pkg.daily_task_limit} tasks per day", 400

    if task.cooldown_minutes and task.cooldown_minutes > 0:
        since = now - timedelta(minutes=task.cooldown_minutes)
        recent = TaskSubmission.query.filter(
            TaskSubmission.task_id == task.id,
            TaskSubmission.user_id == user.id,
            TaskSubmission.created_at >= since,
        ).order_by(TaskSubmission.created_at.desc()).first()
        if recent:
            wait = recent.created_at + timedelta(minutes=task.cooldown_minutes) - now
            minutes = max(1, int((wait.total_seconds() + 59) // 60))
            return f"Please wait {minutes} more minutes before starting again", 400
    return None, 200


def score_quiz(task: Task, answers) -> int | None:
    questions = task.questions
    if task.type != "QUIZ" or not questions or not isinstance(answers, list):
        return None
    correct = 0
    for idx, q in enumerate(questions):
        if idx < len(answers) and answers[idx] == q.get("correct_answer"):
            correct += 1
    return round(correct * 100 / len(questions))


def award_submission(submission: TaskSubmission, task: Task, user: User, status: str, reviewer_id: int | None = None) -> dict:
    """Stage the rewards for a completed submission. The caller commits.

    Credits points and xp, writes the EARNING transaction, bumps the task's
    completed_count, handles level-up and notifies the user.
    """
    pkg = active_package(user)
    multiplier = float(pkg.xp_multiplier) if pkg and pkg.xp_multiplier else 1.0
    points = max(0, int(task.points_reward or 0))
    xp = max(0, int(round(int(task.xp_reward or 0) * multiplier)))

    now = datetime.utcnow()
    submission.status = status
    submission.points_earned = points
    submission.xp_earned = xp
    submission.reviewed_at = now
    submission.reviewed_by = reviewer_id
    submission.rejection_reason = None

    credit_points(user, points)
    previous_level, new_level = add_xp(user, xp)

    record_transaction(
        user.id,
        TX_EARNING,
        points,
        f"Completed task: {task.title}",
        reference=f"task_{task.id}_{submission.id}",
        metadata={"task_id": task.id, "task_type": task.type, "submission_id": submission.id},
    )
    task.completed_count = int(task.completed_count or 0) + 1

    if new_level > previous_level:
        notify(
            user.id,
            "Level Up!",
            f"Congratulations! You've reached level {new_level}!",
            NOTIF_ACHIEVEMENT,
            {"new_level": new_level, "previous_level": previous_level},
        )
    notify(
        user.id,
        "Task Completed!",
        f'You earned {points} points from "{task.title}"',
        NOTIF_TASK,
        {"task_id": task.id, "points": points, "xp": xp},
    )
    unlocked = sync_achievements(user)
    return {
        "points": points,
        "xp": xp,
        "level": int(user.level or 1),
        "leveled_up": new_level > previous_level,
        "achievements_unlocked": [a.name for a in unlocked],
    }


def _task_summary(task: Task) -> dict:
    return task.to_dict(include_answers=False)


@tasks_api.get("/api/tasks")
def get_tasks():
    user, err = require_user()
    if err:
        return err

    now = datetime.utcnow()
    task_type = (request.args.get("type") or "").strip().upper()
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = max(1, min(int(request.args.get("limit", 20)), 100))
    except (TypeError, ValueError):
        page, limit = 1, 20

    q = Task.query.filter(
        Task.status == TASK_STATUS_ACTIVE,
        Task.min_level <= int(user.level or 1),
        (Task.starts_at.is_(None)) | (Task.starts_at <= now),
        (Task.expires_at.is_(None)) | (Task.expires_at > now),
    )
    if task_type:
        q = q.filter(Task.type == task_type)

    total = q.count()
    tasks = q.order_by(Task.created_at.desc()).offset((page - 1) * limit).limit(limit).all()

    task_ids = [t.id for t in tasks]
    done_today = {}
    if task_ids:
        rows = (
            db.session.query(TaskSubmission.task_id, func.count(TaskSubmission.id))
            .filter(
                and_(
                    TaskSubmission.user_id == user.id,
                    TaskSubmission.task_id.in_(task_ids),
                    TaskSubmission.created_at >= _utc_day_start(now),
                    TaskSubmission.status.in_(COMPLETED_SUBMISSION_STATUSES),
                )
            )
            .group_by(TaskSubmission.task_id)
            .all()
        )
        done_today = {tid: int(cnt) for tid, cnt in rows}

    items = []
    for t in tasks:
        reason, _ = check_task_eligibility(t, user, now)
        items.append({
            **_task_summary(t),
            "completed_today": done_today.get(t.id, 0),
            "can_start": reason is None,
            "reason": reason,
        })

    return jsonify({
        "success": True,
        "tasks": items,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    })


@tasks_api.get("/api/tasks/<int:task_id>")
def get_task(task_id: int):
    user, err = require_user()
    if err:
        return err

    task = Task.query.get(task_id)
    if not task or task.status != TASK_STATUS_ACTIVE:
        return jsonify({"success": False, "error": "Task not found"}), 404

    reason, _ = check_task_eligibility(task, user, datetime.utcnow())
    pending = TaskSubmission.query.filter_by(task_id=task.id, user_id=user.id, status=SUBMISSION_PENDING).first()
    return jsonify({
        "success": True,
        "task": _task_summary(task),
        "can_start": reason is None,
        "reason": reason,
        "pending_submission": pending.to_dict() if pending else None,
    })


@tasks_api.post("/api/tasks/<int:task_id>/start")
@limiter.limit("60 per minute")
def start_task(task_id: int):
    user, err = require_user()
    if err:
        return err

    task = Task.query.get(task_id)
    if not task:
        return jsonify({"success": False, "error": "Task not found"}), 404

    existing = TaskSubmission.query.filter_by(task_id=task.id, user_id=user.id, status=SUBMISSION_PENDING).first()
    if existing and task.status == TASK_STATUS_ACTIVE:
        return jsonify({
            "success": True,
            "submission": existing.to_dict(),
            "task": _task_summary(task),
            "message": "You already have an active submission for this task",
        })

    reason, status = check_task_eligibility(task, user, datetime.utcnow())
    if reason:
        return jsonify({"success": False, "error": reason}), status

    submission = TaskSubmission(task_id=task.id, user_id=user.id, status=SUBMISSION_PENDING)
    db.session.add(submission)
    db.session.commit()

    return jsonify({
        "success": True,
        "submission": submission.to_dict(),
        "task": _task_summary(task),
        "message": "Task started successfully",
    })


@tasks_api.post("/api/tasks/<int:task_id>/submit")
@limiter.limit("60 per minute")
def submit_task(task_id: int):
    user, err = require_user()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    proof = (data.get("proof") or "").strip() or None
    answers = data.get("answers")

    task = Task.query.get(task_id)
    if not task:
        return jsonify({"success": False, "error": "Task not found"}), 404

    q = TaskSubmission.query.filter_by(task_id=task.id, user_id=user.id, status=SUBMISSION_PENDING)
    if data.get("submission_id") is not None:
        try:
            q = q.filter(TaskSubmission.id == int(data.get("submission_id")))
        except (TypeError, ValueError):
            return jsonify({"success": False, "error": "Invalid submission_id"}), 400
    submission = q.first()
    if not submission:
        return jsonify({"success": False, "error": "No pending submission found. Please start the task first."}), 400
    if submission.submitted_at is not None:
        return jsonify({"success": False, "error": "Submission is already awaiting review"}), 400

    now = datetime.utcnow()
    if task.duration:
        elapsed = int((now - submission.created_at).total_seconds())
        required = int(task.duration * REQUIRED_DURATION_RATIO)
        if elapsed < required:
            return jsonify({
                "success": False,
                "error": f"Please complete the task. {required - elapsed} seconds remaining.",
                "seconds_remaining": required - elapsed,
            }), 400

    score = score_quiz(task, answers)
    submission.proof = proof
    submission.answers_json = json.dumps(answers) if answers is not None else None
    submission.score = score
    submission.submitted_at = now

    auto = bool(task.auto_approve) or task.type in AUTO_APPROVE_TYPES
    if not auto:
        db.session.commit()
        return jsonify({
            "success": True,
            "status": "pending_review",
            "submission": submission.to_dict(),
            "message": "Your submission has been received and is pending review.",
        })

    rewards = award_submission(submission, task, user, SUBMISSION_AUTO_APPROVED)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to complete submission %s", submission.id)
        return jsonify({"success": False, "error": "Failed to submit task"}), 500

    process_referral_commissions(user.id, rewards["points"], task.id)

    return jsonify({
        "success": True,
        "status": "approved",
        "submission": submission.to_dict(),
        "rewards": rewards,
        "score": score,
        "points_balance": user.points_balance,
        "message": "Task completed successfully!",
    })


@tasks_api.get("/api/tasks/history")
def task_history():
    user, err = require_user()
    if err:
        return err

    subs = (
        TaskSubmission.query.filter_by(user_id=user.id)
        .order_by(TaskSubmission.created_at.desc(), TaskSubmission.id.desc())
        .limit(100)
        .all()
    )
    task_ids = {s.task_id for s in subs}
    tasks = Task.query.filter(Task.id.in_(task_ids)).all() if task_ids else []
    task_map = {t.id: t for t in tasks}

    out = []
    for s in subs:
        item = s.to_dict()
        t = task_map.get(s.task_id)
        if t:
            item["task"] = {"id": t.id, "title": t.title, "type": t.type, "points_reward": t.points_reward}
        out.append(item)
    return jsonify({"success": True, "submissions": out})
