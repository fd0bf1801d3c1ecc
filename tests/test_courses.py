"""Courses: catalogue, lesson locks, enrollment, completion rewards, admin management.

Invariants:
    - Only PUBLISHED courses are listed or readable
    - Lesson 1 and is_free lessons are open; the rest need an enrollment
    - Paid enrollment debits price_points with one PURCHASE transaction; a short balance enrolls nobody
    - Finishing the last lesson pays reward_points once and runs the referral cascade
    - A course cannot be published without lessons or deleted once it has enrollments

Design Decisions:
    - Courses are built straight on the session; only the admin tests go through the routes
"""

import pytest

from extensions import db
from models_courses import COURSE_DRAFT, COURSE_PUBLISHED, Course, CourseEnrollment, CourseLesson
from models_referrals import ReferralEarning
from models_users import User
from models_wallet import TX_EARNING, TX_PURCHASE, Transaction
from rbac import ROLE_CONTENT_ADMIN, ROLE_MODERATOR


@pytest.fixture
def make_course(app):
    def _make(lessons: int = 3, free_positions=(), **fields):
        course = Course(
            title=fields.pop("title", "Earning 101"),
            category=fields.pop("category", "Basics"),
            status=fields.pop("status", COURSE_PUBLISHED),
            **fields,
        )
        for pos in range(1, lessons + 1):
            course.lessons.append(CourseLesson(
                title=f"Lesson {pos}", content=f"Body {pos}", duration=5,
                position=pos, is_free=pos in free_positions,
            ))
        course.refresh_totals()
        db.session.add(course)
        db.session.commit()
        return course

    return _make


def _enroll(client, course):
    return client.post(f"/api/courses/{course.id}/enroll")


def _complete(client, course, lesson):
    return client.post(f"/api/courses/{course.id}/lessons/{lesson.id}/complete")


def test_list_shows_published_courses_only(client, make_course):
    make_course(title="Published one")
    make_course(title="Hidden draft", status=COURSE_DRAFT)

    res = client.get("/api/courses")

    assert res.status_code == 200
    body = res.get_json()
    assert [c["title"] for c in body["courses"]] == ["Published one"]
    assert body["courses"][0]["is_enrolled"] is False
    assert body["categories"] == [{"name": "Basics", "count": 1}]
    assert body["pagination"]["total"] == 1


def test_draft_course_is_not_found(client, make_course):
    course = make_course(status=COURSE_DRAFT)

    assert client.get(f"/api/courses/{course.id}").status_code == 404


def test_detail_marks_locked_lessons(client, make_course):
    course = make_course(lessons=3, free_positions=(3,))

    res = client.get(f"/api/courses/{course.id}")

    assert res.status_code == 200
    body = res.get_json()
    assert [l["is_locked"] for l in body["lessons"]] == [False, True, False]
    assert body["enrollment"] is None
    assert body["course"]["lessons_count"] == 3
    assert body["course"]["duration"] == 15


def test_locked_lesson_needs_enrollment(client, login, make_user, make_course):
    course = make_course(lessons=2)
    first, second = course.lessons

    assert client.get(f"/api/courses/{course.id}/lessons/{second.id}").status_code == 403

    opened = client.get(f"/api/courses/{course.id}/lessons/{first.id}")
    assert opened.status_code == 200
    body = opened.get_json()
    assert body["lesson"]["content"] == "Body 1"
    assert body["navigation"]["prev"] is None
    assert body["navigation"]["next"]["id"] == second.id

    login(make_user())
    _enroll(client, course)
    assert client.get(f"/api/courses/{course.id}/lessons/{second.id}").status_code == 200


def test_lesson_from_another_course_is_not_found(client, make_course):
    course = make_course(lessons=1)
    other = make_course(lessons=1, title="Other course")

    res = client.get(f"/api/courses/{course.id}/lessons/{other.lessons[0].id}")

    assert res.status_code == 404


def test_enroll_free_course(client, login, make_user, make_course):
    user = login(make_user(points=100))
    course = make_course()

    res = _enroll(client, course)

    assert res.status_code == 201
    assert res.get_json()["enrollment"]["progress"] == 0
    assert db.session.get(Course, course.id).enrollment_count == 1
    assert db.session.get(User, user.id).points_balance == 100

    again = _enroll(client, course)
    assert again.status_code == 400
    assert again.get_json()["error"] == "Already enrolled in this course"


def test_enroll_requires_login(client, make_course):
    assert _enroll(client, make_course()).status_code == 401


def test_paid_course_with_short_balance_enrolls_nobody(client, login, make_user, make_course):
    user = login(make_user(points=300))
    course = make_course(is_free=False, price_points=500)

    res = _enroll(client, course)

    assert res.status_code == 400
    assert res.get_json()["error"] == "Insufficient points balance"
    assert CourseEnrollment.query.count() == 0
    assert db.session.get(User, user.id).points_balance == 300


def test_paid_course_debits_price(client, login, make_user, make_course):
    user = login(make_user(points=800))
    course = make_course(is_free=False, price_points=500)

    res = _enroll(client, course)

    assert res.status_code == 201
    assert res.get_json()["points_balance"] == 300
    tx = Transaction.query.filter_by(user_id=user.id, type=TX_PURCHASE).one()
    assert tx.points == -500
    assert tx.reference == f"course_enroll_{course.id}_{user.id}"


def test_complete_needs_enrollment(client, login, make_user, make_course):
    login(make_user())
    course = make_course(lessons=1)

    assert _complete(client, course, course.lessons[0]).status_code == 403


def test_completing_every_lesson_pays_reward_once(client, login, make_user, make_course):
    user = login(make_user())
    course = make_course(lessons=3, reward_points=100, xp_reward=20)
    _enroll(client, course)
    lessons = list(course.lessons)

    progress = [_complete(client, course, lesson).get_json() for lesson in lessons]

    assert [p["course_progress"] for p in progress] == [33, 67, 100]
    assert [p["course_completed"] for p in progress] == [False, False, True]
    assert progress[-1]["reward_points"] == 100
    fresh = db.session.get(User, user.id)
    assert fresh.points_balance == 100
    assert fresh.xp == 20
    tx = Transaction.query.filter_by(user_id=user.id, type=TX_EARNING).one()
    assert tx.reference == f"course_reward_{course.id}_{user.id}"
    assert CourseEnrollment.query.filter_by(user_id=user.id).one().completed_at is not None

    repeat = _complete(client, course, lessons[-1])
    assert repeat.status_code == 200
    assert repeat.get_json()["message"] == "Lesson already completed"
    assert db.session.get(User, user.id).points_balance == 100


def test_course_reward_pays_upline(client, login, referral_chain, percent_levels, make_course):
    percent_levels(10)
    earner, upline = referral_chain(1)
    login(earner)
    course = make_course(lessons=1, reward_points=100)
    _enroll(client, course)

    _complete(client, course, course.lessons[0])

    earning = ReferralEarning.query.one()
    assert earning.source_type == "COURSE"
    assert earning.source_id == f"course_{course.id}"
    assert db.session.get(User, upline.id).points_balance == 10


def test_admin_creates_and_publishes_course(client, login, admin):
    login(admin)

    res = client.post("/api/admin/courses", json={
        "title": "Referral basics",
        "difficulty": "intermediate",
        "reward_points": 50,
        "status": "PUBLISHED",
        "lessons": [{"title": "Intro", "duration": 4, "is_free": True}, {"title": "Tiers", "duration": 6}],
    })

    assert res.status_code == 201
    body = res.get_json()
    assert body["course"]["status"] == COURSE_PUBLISHED
    assert body["course"]["difficulty"] == "INTERMEDIATE"
    assert body["course"]["lessons_count"] == 2
    assert body["course"]["duration"] == 10
    assert [l["order"] for l in body["lessons"]] == [1, 2]


def test_publishing_without_lessons_is_refused(client, login, admin):
    login(admin)

    res = client.post("/api/admin/courses", json={"title": "Empty course", "status": "PUBLISHED"})

    assert res.status_code == 400
    assert "at least one lesson" in res.get_json()["error"]
    assert Course.query.count() == 0


def test_invalid_update_leaves_course_unchanged(client, login, admin, make_course):
    login(admin)
    course = make_course(title="Stable title")

    res = client.patch(f"/api/admin/courses/{course.id}", json={"title": "New title", "difficulty": "EXPERT"})

    assert res.status_code == 400
    assert db.session.get(Course, course.id).title == "Stable title"


def test_added_lesson_goes_last(client, login, admin, make_course):
    login(admin)
    course = make_course(lessons=2)

    res = client.post(f"/api/admin/courses/{course.id}/lessons", json={"title": "Wrap-up", "duration": 7})

    assert res.status_code == 201
    body = res.get_json()
    assert body["lesson"]["order"] == 3
    assert body["course"]["lessons_count"] == 3
    assert body["course"]["duration"] == 17


def test_course_with_enrollments_cannot_be_deleted(client, login, admin, make_user, make_course):
    course = make_course()
    spare = make_course(title="Spare course")
    login(make_user())
    _enroll(client, course)
    login(admin)

    assert client.delete(f"/api/admin/courses/{course.id}").status_code == 400
    assert client.delete(f"/api/admin/courses/{spare.id}").status_code == 200
    assert db.session.get(Course, spare.id) is None
    assert CourseLesson.query.filter_by(course_id=spare.id).count() == 0


@pytest.mark.parametrize("role, expected", [(ROLE_CONTENT_ADMIN, 201), (ROLE_MODERATOR, 403)])
def test_course_management_permission(client, login, make_user, role, expected):
    login(make_user(role=role))

    res = client.post("/api/admin/courses", json={"title": "Permission check"})

    assert res.status_code == expected
