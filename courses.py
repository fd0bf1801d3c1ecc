"""Learning courses.

Routes:
- GET  /api/courses?category=&difficulty=&search=&page=&limit=
- GET  /api/courses/<id>
- POST /api/courses/<id>/enroll
- GET  /api/courses/<id>/lessons/<lesson_id>
- POST /api/courses/<id>/lessons/<lesson_id>/complete

Only PUBLISHED courses are visible. Lesson 1 and lessons flagged is_free can be
read without enrolling; everything else needs an enrollment. Paid courses cost
price_points at enrollment. Finishing the last lesson pays reward_points and
xp_reward once, and the points go through the referral cascade like task
earnings.
"""

import math
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_

from achievements import sync_achievements
from auth import current_user, require_user
from extensions import db, limiter
from ledger import add_xp, credit_points, debit_points, record_transaction
from models_courses import COURSE_PUBLISHED, Course, CourseEnrollment, CourseLesson
from models_notifications import NOTIF_ACHIEVEMENT, NOTIF_SYSTEM
from models_wallet import TX_EARNING, TX_PURCHASE
from notifications import notify
from referrals import process_referral_commissions


courses_api = Blueprint("courses_api", __name__)


def _page_args():
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = max(1, min(int(request.args.get("limit", 20)), 100))
    except (TypeError, ValueError):
        page, limit = 1, 20
    return page, limit


def _published_course(course_id: int) -> Course | None:
    course = db.session.get(Course, course_id)
    if not course or course.status != COURSE_PUBLISHED:
        return None
    return course


def _enrollment(course_id: int, user_id: int) -> CourseEnrollment | None:
    return CourseEnrollment.query.filter_by(course_id=course_id, user_id=user_id).first()


def lesson_is_locked(lesson: CourseLesson, enrolled: bool) -> bool:
    return not enrolled and not lesson.is_free and int(lesson.position or 1) > 1


@courses_api.get("/api/courses")
def list_courses():
    page, limit = _page_args()
    category = (request.args.get("category") or "").strip()
    difficulty = (request.args.get("difficulty") or "").strip().upper()
    search = (request.args.get("search") or "").strip()

    q = Course.query.filter(Course.status == COURSE_PUBLISHED)
    if category:
        q = q.filter(Course.category == category)
    if difficulty:
        q = q.filter(Course.difficulty == difficulty)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Course.title.ilike(like), Course.description.ilike(like)))

    total = q.count()
    courses = q.order_by(Course.created_at.desc(), Course.id.desc()).offset((page - 1) * limit).limit(limit).all()

    enrollments = {}
    user = current_user()
    if user and courses:
        rows = CourseEnrollment.query.filter(
            CourseEnrollment.user_id == user.id,
            CourseEnrollment.course_id.in_([c.id for c in courses]),
        ).all()
        enrollments = {e.course_id: e for e in rows}

    items = []
    for c in courses:
        e = enrollments.get(c.id)
        item = c.to_dict()
        item.update({
            "is_enrolled": e is not None,
            "progress": e.progress if e else 0,
            "is_completed": bool(e and e.completed_at),
        })
        items.append(item)

    categories = (
        db.session.query(Course.category, func.count(Course.id))
        .filter(Course.status == COURSE_PUBLISHED)
        .group_by(Course.category)
        .order_by(Course.category.asc())
        .all()
    )

    return jsonify({
        "success": True,
        "courses": items,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        "categories": [{"name": name, "count": int(cnt)} for name, cnt in categories],
    })


@courses_api.get("/api/courses/<int:course_id>")
def get_course(course_id: int):
    course = _published_course(course_id)
    if not course:
        return jsonify({"success": False, "error": "Course not found"}), 404

    user = current_user()
    enrollment = _enrollment(course.id, user.id) if user else None
    done = set(enrollment.completed_lesson_ids) if enrollment else set()

    lessons = []
    for lesson in course.lessons:
        item = lesson.to_dict()
        item["is_completed"] = lesson.id in done
        item["is_locked"] = lesson_is_locked(lesson, enrollment is not None)
        lessons.append(item)

    return jsonify({
        "success": True,
        "course": course.to_dict(),
        "lessons": lessons,
        "enrollment": enrollment.to_dict(total_lessons=len(course.lessons)) if enrollment else None,
    })


@courses_api.post("/api/courses/<int:course_id>/enroll")
@limiter.limit("30 per minute")
def enroll(course_id: int):
    user, err = require_user()
    if err:
        return err

    course = _published_course(course_id)
    if not course:
        return jsonify({"success": False, "error": "Course not found"}), 404
    if _enrollment(course.id, user.id):
        return jsonify({"success": False, "error": "Already enrolled in this course"}), 400

    price = 0 if course.is_free else max(0, int(course.price_points or 0))
    if price:
        if not debit_points(user, price):
            return jsonify({"success": False, "error": "Insufficient points balance"}), 400
        record_transaction(
            user.id,
            TX_PURCHASE,
            -price,
            f'Enrolled in course: "{course.title}"',
            reference=f"course_enroll_{course.id}_{user.id}",
            metadata={"course_id": course.id},
        )

    enrollment = CourseEnrollment(course_id=course.id, user_id=user.id, progress=0)
    enrollment.completed_lesson_ids = []
    db.session.add(enrollment)
    course.enrollment_count = int(course.enrollment_count or 0) + 1
    notify(
        user.id,
        "Course Enrolled",
        f'You have enrolled in "{course.title}". Start learning now!',
        NOTIF_SYSTEM,
        {"course_id": course.id},
    )
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Enrollment failed for user %s course %s", user.id, course.id)
        return jsonify({"success": False, "error": "Failed to enroll in course"}), 500

    return jsonify({
        "success": True,
        "enrollment": enrollment.to_dict(total_lessons=len(course.lessons)),
        "points_balance": user.points_balance,
        "message": "Successfully enrolled in course",
    }), 201


@courses_api.get("/api/courses/<int:course_id>/lessons/<int:lesson_id>")
def get_lesson(course_id: int, lesson_id: int):
    course = _published_course(course_id)
    lesson = db.session.get(CourseLesson, lesson_id)
    if not course or not lesson or lesson.course_id != course.id:
        return jsonify({"success": False, "error": "Lesson not found"}), 404

    user = current_user()
    enrollment = _enrollment(course.id, user.id) if user else None
    if lesson_is_locked(lesson, enrollment is not None):
        return jsonify({"success": False, "error": "Please enroll in this course to access this lesson"}), 403

    position = int(lesson.position or 1)
    siblings = {l.position: l for l in course.lessons}
    prev_lesson = siblings.get(position - 1)
    next_lesson = siblings.get(position + 1)

    return jsonify({
        "success": True,
        "lesson": lesson.to_dict(with_content=True),
        "course": {"id": course.id, "title": course.title, "total_lessons": len(course.lessons)},
        "progress": {
            "is_enrolled": enrollment is not None,
            "is_completed": bool(enrollment and lesson.id in enrollment.completed_lesson_ids),
        },
        "navigation": {
            "prev": {"id": prev_lesson.id, "title": prev_lesson.title} if prev_lesson else None,
            "next": {"id": next_lesson.id, "title": next_lesson.title} if next_lesson else None,
        },
    })


def complete_lesson_for(user, course: Course, lesson: CourseLesson, enrollment: CourseEnrollment) -> dict:
    """Stage one lesson completion and, on the last lesson, the course reward. The caller commits."""
    lesson_ids = {l.id for l in course.lessons}
    done = set(enrollment.completed_lesson_ids) & lesson_ids
    done.add(lesson.id)
    enrollment.completed_lesson_ids = done

    total = len(lesson_ids) or 1
    enrollment.progress = min(100, round(len(done) * 100 / total))

    course_completed = enrollment.progress >= 100 and enrollment.completed_at is None
    reward_points = 0
    unlocked = []
    if course_completed:
        enrollment.completed_at = datetime.utcnow()
        reward_points = max(0, int(course.reward_points or 0))
        if reward_points:
            credit_points(user, reward_points)
            record_transaction(
                user.id,
                TX_EARNING,
                reward_points,
                f'Completed course: "{course.title}"',
                reference=f"course_reward_{course.id}_{user.id}",
                metadata={"course_id": course.id},
            )
        add_xp(user, int(course.xp_reward or 0))
        notify(
            user.id,
            "Course Completed!",
            f'Congratulations! You\'ve completed "{course.title}"!',
            NOTIF_ACHIEVEMENT,
            {"course_id": course.id, "points": reward_points},
        )
        unlocked = sync_achievements(user)

    return {
        "course_progress": enrollment.progress,
        "completed_lessons": len(done),
        "total_lessons": total,
        "course_completed": course_completed,
        "reward_points": reward_points,
        "achievements_unlocked": [a.name for a in unlocked],
    }


@courses_api.post("/api/courses/<int:course_id>/lessons/<int:lesson_id>/complete")
@limiter.limit("60 per minute")
def complete_lesson(course_id: int, lesson_id: int):
    user, err = require_user()
    if err:
        return err

    enrollment = _enrollment(course_id, user.id)
    if not enrollment:
        return jsonify({"success": False, "error": "Please enroll in this course first"}), 403

    course = db.session.get(Course, course_id)
    lesson = db.session.get(CourseLesson, lesson_id)
    if not course or not lesson or lesson.course_id != course.id:
        return jsonify({"success": False, "error": "Lesson not found"}), 404

    if lesson.id in enrollment.completed_lesson_ids:
        return jsonify({
            "success": True,
            "message": "Lesson already completed",
            "course_progress": enrollment.progress,
            "completed_lessons": len(enrollment.completed_lesson_ids),
        })

    result = complete_lesson_for(user, course, lesson, enrollment)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Lesson completion failed for user %s lesson %s", user.id, lesson.id)
        return jsonify({"success": False, "error": "Failed to complete lesson"}), 500

    if result["reward_points"]:
        process_referral_commissions(user.id, result["reward_points"], f"course_{course.id}", "COURSE")

    result.update({
        "success": True,
        "points_balance": user.points_balance,
        "message": "Congratulations! You've completed the course!" if result["course_completed"] else "Lesson completed!",
    })
    return jsonify(result)
