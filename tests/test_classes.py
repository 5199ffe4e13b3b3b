from datetime import date, time

import pytest

from eduoffice.classes import services as classes
from eduoffice.errors import ConflictError, InvalidStateError, ValidationFailure
from eduoffice.extensions import db
from eduoffice.models import ClassSession, Student


@pytest.fixture
def cm(branches, make_user, actor_for):
    north, _ = branches
    return actor_for(make_user("cm_north", role="CM", branch_ids=[north.id], primary=north.id))


def test_create_class_and_generate_sessions(cm):
    created = classes.create_class(
        cm, "Scratch K1", start_date=date(2026, 9, 7), start_time=time(8, 0), end_time=time(9, 30)
    )
    sessions = classes.generate_sessions(cm, created["id"], 3)
    assert [s["session_number"] for s in sessions] == [1, 2, 3]
    assert [s["session_date"] for s in sessions] == ["2026-09-07", "2026-09-14", "2026-09-21"]

    more = classes.generate_sessions(cm, created["id"], 2)
    assert [s["session_number"] for s in more] == [4, 5]
    assert more[0]["session_date"] == "2026-09-28"


def test_class_times_must_be_ordered(cm):
    with pytest.raises(ValidationFailure):
        classes.create_class(cm, "Broken", start_time=time(10, 0), end_time=time(9, 0))


def test_reschedule_shifts_following_sessions(cm, make_class, make_session, branches):
    classroom = make_class(branches[0].id)
    rows = [make_session(classroom, n, date(2026, 9, 7) + (n - 1) * (date(2026, 9, 14) - date(2026, 9, 7))) for n in (1, 2, 3)]

    moved = classes.reschedule_session(cm, rows[1].id, date(2026, 9, 16), reason="Teacher sick")
    assert moved["delta_days"] == 2
    assert moved["updated"] == 2
    dates = [s.session_date for s in ClassSession.query.order_by(ClassSession.session_number)]
    assert dates == [date(2026, 9, 7), date(2026, 9, 16), date(2026, 9, 23)]
    assert db.session.get(ClassSession, rows[1].id).original_date == date(2026, 9, 14)

    with pytest.raises(ValidationFailure):
        classes.reschedule_session(cm, rows[1].id, date(2026, 9, 16))


def test_enrollment_activates_student_and_blocks_duplicates(cm, branches, make_class, make_student):
    classroom = make_class(branches[0].id, max_students=1)
    first = make_student(branches[0].id, "HN-00001", status="pending")
    second = make_student(branches[0].id, "HN-00002")

    result = classes.add_student_to_class(cm, classroom.id, first.id)
    assert result["student_status"] == "active"
    with pytest.raises(ConflictError):
        classes.add_student_to_class(cm, classroom.id, first.id)
    with pytest.raises(InvalidStateError):
        classes.add_student_to_class(cm, classroom.id, second.id)

    classes.remove_student_from_class(cm, classroom.id, first.id)
    assert classes.get_class(cm, classroom.id)["student_count"] == 0
    assert db.session.get(Student, first.id).status == "active"
