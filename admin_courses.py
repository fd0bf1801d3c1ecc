"""Admin course management.

Routes:
- GET    /api/admin/courses?status=
- POST   /api/admin/courses                  {"title", ..., "lessons": [...]}
- PATCH  /api/admin/courses/<id>
- POST   /api/admin/courses/<id>/lessons     (appended after the last lesson)
- DELETE /api/admin/courses/<id>             (only without enrollments)

A course can only be PUBLISHED once it has at least one lesson.
"""

from flask import Blueprint, current_app, jsonify, request

from auth import require_permission
from extensions import db
from models_courses import (
    COURSE_DRAFT,
    COURSE_PUBLISHED,
    COURSE_STATUSES,
    DIFFICULTIES,
    DIFFICULTY_BEGINNER,
    Course,
    CourseEnrollment,
    CourseLesson,
)


admin_courses = Blueprint("admin_courses", __name__)

_INT_FIELDS = ("price_points", "reward_points", "xp_reward")


def _parse_lesson(raw, position: int) -> tuple[CourseLesson | None, str | None]:
    if not isinstance(raw, dict):
        return None, "Each lesson must be an object"
    title = (raw.get("title") or "").strip()
    if not title:
        return None, "Lesson title is required"
    try:
        duration = int(raw.get("duration") or 0)
    except (TypeError, ValueError):
        return None, "Lesson duration must be an integer"
    if duration < 0:
        return None, "Lesson duration must be >= 0"
    return CourseLesson(
        title=title[:200],
        description=(raw.get("description") or "").strip() or None,
        content=raw.get("content") or None,
        video_url=(raw.get("video_url") or "").strip() or None,
        duration=duration,
        position=position,
        is_free=bool(raw.get("is_free", False)),
    ), None


def _apply_course_fields(course: Course, data: dict) -> str | None:
    if "title" in data:
        title = (data.get("title") or "").strip()
        if len(title) < 3 or len(title) > 200:
            return "Title must be between 3 and 200 characters"
        course.title = title
    if "description" in data:
        course.description = (data.get("description") or "").strip() or None
    if "thumbnail_url" in data:
        course.thumbnail = (data.get("thumbnail_url") or "").strip() or None
    if "category" in data:
        course.category = (data.get("category") or "").strip() or "General"
    if "difficulty" in data:
        difficulty = (data.get("difficulty") or "").strip().upper()
        if difficulty not in DIFFICULTIES:
            return "Invalid difficulty"
        course.difficulty = difficulty
    if "is_free" in data:
        course.is_free = bool(data.get("is_free"))
    for field in _INT_FIELDS:
        if field in data:
            try:
                value = int(data.get(field) or 0)
            except (TypeError, ValueError):
                return f"{field} must be an integer"
            if value < 0:
                return f"{field} must be >= 0"
            setattr(course, field, value)
    return None


def _set_status(course: Course, raw) -> str | None:
    status = (raw or "").strip().upper()
    if status not in COURSE_STATUSES:
        return "Invalid status"
    if status == COURSE_PUBLISHED and not course.lessons:
        return "A course needs at least one lesson before it is published"
    course.status = status
    return None


@admin_courses.get("/api/admin/courses")
def api_admin_list_courses():
    _, err = require_permission("courses.view")
    if err:
        return err

    status = (request.args.get("status") or "").strip().upper()
    q = Course.query
    if status in COURSE_STATUSES:
        q = q.filter(Course.status == status)
    courses = q.order_by(Course.created_at.desc()).limit(200).all()
    return jsonify({"success": True, "courses": [c.to_dict() for c in courses]})


@admin_courses.post("/api/admin/courses")
def api_admin_create_course():
    admin, err = require_permission("courses.manage")
    if err:
        return err

    data = request.get_json(silent=True) or {}
    if not (data.get("title") or "").strip():
        return jsonify({"success": False, "error": "title is required"}), 400

    course = Course(difficulty=DIFFICULTY_BEGINNER, status=COURSE_DRAFT)
    error = _apply_course_fields(course, data)
    if error:
        return jsonify({"success": False, "error": error}), 400

    raw_lessons = data.get("lessons") or []
    if not isinstance(raw_lessons, list):
        return jsonify({"success": False, "error": "lessons must be a list"}), 400
    for position, raw in enumerate(raw_lessons, start=1):
        lesson, error = _parse_lesson(raw, position)
        if error:
            return jsonify({"success": False, "error": error}), 400
        course.lessons.append(lesson)
    course.refresh_totals()

    if data.get("status"):
        error = _set_status(course, data.get("status"))
        if error:
            return jsonify({"success": False, "error": error}), 400

    db.session.add(course)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create course")
        return jsonify({"success": False, "error": "Database error while creating course"}), 500

    current_app.logger.info("Course %s created by admin %s", course.id, admin.id)
    return jsonify({"success": True, "course": course.to_dict(), "lessons": [l.to_dict() for l in course.lessons]}), 201


@admin_courses.patch("/api/admin/courses/<int:course_id>")
def api_admin_update_course(course_id: int):
    _, err = require_permission("courses.manage")
    if err:
        return err

    course = db.session.get(Course, course_id)
    if not course:
        return jsonify({"success": False, "error": "Course not found"}), 404

    data = request.get_json(silent=True) or {}
    error = _apply_course_fields(course, data)
    if not error and "status" in data:
        error = _set_status(course, data.get("status"))
    if error:
        db.session.rollback()
        return jsonify({"success": False, "error": error}), 400

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update course %s", course_id)
        return jsonify({"success": False, "error": "Database error while updating course"}), 500
    return jsonify({"success": True, "course": course.to_dict()})


@admin_courses.post("/api/admin/courses/<int:course_id>/lessons")
def api_admin_add_lesson(course_id: int):
    _, err = require_permission("courses.manage")
    if err:
        return err

    course = db.session.get(Course, course_id)
    if not course:
        return jsonify({"success": False, "error": "Course not found"}), 404

    position = max((int(l.position or 0) for l in course.lessons), default=0) + 1
    lesson, error = _parse_lesson(request.get_json(silent=True) or {}, position)
    if error:
        return jsonify({"success": False, "error": error}), 400

    course.lessons.append(lesson)
    course.refresh_totals()
    db.session.commit()
    return jsonify({"success": True, "lesson": lesson.to_dict(with_content=True), "course": course.to_dict()}), 201


@admin_courses.delete("/api/admin/courses/<int:course_id>")
def api_admin_delete_course(course_id: int):
    _, err = require_permission("courses.manage")
    if err:
        return err

    course = db.session.get(Course, course_id)
    if not course:
        return jsonify({"success": False, "error": "Course not found"}), 404
    if CourseEnrollment.query.filter_by(course_id=course.id).count():
        return jsonify({"success": False, "error": "Courses with enrollments must be archived instead"}), 400

    db.session.delete(course)
    db.session.commit()
    return jsonify({"success": True})
