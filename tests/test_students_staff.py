from datetime import date, datetime

import pytest

from eduoffice.errors import ConflictError, InvalidStateError, ValidationFailure
from eduoffice.staff import services as staff
from eduoffice.students import services as students


@pytest.fixture
def ec(branches, make_user, actor_for):
    north, _ = branches
    return actor_for(make_user("ec_north", role="EC", branch_ids=[north.id], primary=north.id))


def test_student_status_change_is_logged(ec):
    created = students.create_student(ec, "Hoang Lan", parent_phone="0909000000")
    assert created["student_code"] == "HN-00001"

    changed = students.change_status(ec, created["id"], "reserved", reason="Exams", reserve_until=date(2026, 12, 31))
    assert changed == {"student_id": created["id"], "old_status": "pending", "new_status": "reserved"}

    history = students.status_history(ec, created["id"])
    assert [(h["old_status"], h["new_status"]) for h in history] == [("pending", "reserved")]
    assert students.get_student(ec, created["id"])["reserve_until"] == "2026-12-31"


def test_derived_fields_cannot_be_edited(ec):
    created = students.create_student(ec, "Hoang Lan")
    with pytest.raises(ValidationFailure):
        students.update_student(ec, created["id"], {"remaining_sessions": 99})
    updated = students.update_student(ec, created["id"], {"school": "Le Loi"})
    assert updated["school"] == "Le Loi"


def test_unknown_status_is_rejected(ec):
    created = students.create_student(ec, "Hoang Lan")
    with pytest.raises(ValidationFailure):
        students.change_status(ec, created["id"], "vanished")


def test_checkin_once_per_day(ec):
    morning = datetime(2026, 10, 19, 7, 45)
    row = staff.check_in(ec, now=morning)
    assert row["checkin_date"] == "2026-10-19"
    with pytest.raises(ConflictError):
        staff.check_in(ec, now=morning.replace(hour=9))

    out = staff.check_out(ec, now=morning.replace(hour=17, minute=45))
    assert out["worked_minutes"] == 600
    with pytest.raises(ConflictError):
        staff.check_out(ec, now=morning.replace(hour=18))


def test_checkout_without_checkin(ec):
    with pytest.raises(InvalidStateError):
        staff.check_out(ec, now=datetime(2026, 10, 20, 17, 0))


def test_checkin_list_scope(ec, branches, make_user, actor_for):
    north, _ = branches
    manager = actor_for(make_user("om_north", role="OM", branch_ids=[north.id], primary=north.id))
    day = datetime(2026, 10, 19, 8, 0)
    staff.check_in(ec, now=day)
    staff.check_in(manager, now=day)

    assert len(staff.list_checkins(ec, day.date())) == 1
    assert len(staff.list_checkins(manager, day.date())) == 2
