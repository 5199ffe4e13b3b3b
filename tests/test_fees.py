from datetime import date, datetime, timedelta

import pytest

from eduoffice.errors import InvalidStateError, PermissionDenied, ValidationFailure
from eduoffice.extensions import db
from eduoffice.fees import services as fees
from eduoffice.models import (
    ClassStudent,
    Level,
    Promotion,
    Revenue,
    Student,
    StudentLevelHistory,
    StudentRenewal,
    Subject,
)
from eduoffice.utils.dates import month_bounds


TODAY = date(2026, 10, 19)


@pytest.fixture
def accountant(branches, make_user, actor_for):
    north, _ = branches
    return actor_for(make_user("acc_north", role="ACCOUNTANT", branch_ids=[north.id], primary=north.id))


@pytest.fixture
def student(branches, make_student):
    north, _ = branches
    return make_student(north.id, "HN-00001", status="active", fee_end_date=TODAY + timedelta(days=10))


def test_month_bounds_cover_the_whole_month():
    assert month_bounds("2026-02") == (date(2026, 2, 1), date(2026, 2, 28))
    assert month_bounds("2028-02") == (date(2028, 2, 1), date(2028, 2, 29))
    assert month_bounds("2026-12") == (date(2026, 12, 1), date(2026, 12, 31))


def test_renewal_end_date_clamps_to_month_end(accountant, branches, make_student, make_package):
    north, _ = branches
    pupil = make_student(north.id, "HN-00003", fee_end_date=date(2027, 1, 31))
    package = make_package(months=1, sessions_count=8, base_price=400_000)
    result, _ = fees.create_renewal(accountant, pupil.id, package.id, today=TODAY)
    assert result["new_fee_end_date"] == "2027-02-28"


def test_renewal_accounting(accountant, student, make_package):
    package = make_package(months=3, sessions_count=24, base_price=1_000_000)
    promo = Promotion(name="Autumn", discount_type="percent", discount_value=10)
    db.session.add(promo)
    db.session.commit()

    result, events = fees.create_renewal(
        accountant,
        student.id,
        package.id,
        promotion_id=promo.id,
        scholarship_months=2,
        deposit_amount=300_000,
        today=TODAY,
    )

    assert result["original_price"] == 1_000_000
    assert result["discount_amount"] == 100_000
    assert result["final_price"] == 900_000
    assert result["paid_amount"] == 300_000
    assert result["remaining_amount"] == 600_000
    assert result["sessions_added"] == 32
    assert result["new_fee_end_date"] == "2027-03-29"

    refreshed = db.session.get(Student, student.id)
    assert refreshed.fee_status == "active"
    assert refreshed.remaining_sessions == 32
    assert refreshed.fee_total == 900_000
    assert refreshed.package_id == package.id
    assert Revenue.query.filter_by(student_id=student.id, revenue_type="renewal_deposit").one().amount == 300_000
    assert len(events) == 1


def test_expired_student_renews_from_today(accountant, branches, make_student, make_package):
    north, _ = branches
    lapsed = make_student(north.id, "HN-00002", fee_end_date=TODAY - timedelta(days=40))
    package = make_package(months=1, sessions_count=8, base_price=400_000)

    result, _ = fees.create_renewal(accountant, lapsed.id, package.id, today=TODAY)
    assert result["new_fee_end_date"] == date(2026, 11, 19).isoformat()


def test_promotion_cap_and_inactive_promotions(app):
    capped = Promotion(name="Capped", discount_type="percent", discount_value=10, max_discount=50_000, is_active=True)
    inactive = Promotion(name="Old", discount_type="percent", discount_value=50, is_active=False)
    fixed = Promotion(name="Fixed", discount_type="amount", discount_value=200_000, is_active=True)
    assert fees.promotion_discount(capped, 1_000_000) == 50_000
    assert fees.promotion_discount(inactive, 1_000_000) == 0
    assert fees.promotion_discount(fixed, 1_000_000) == 200_000
    assert fees.promotion_discount(None, 1_000_000) == 0


def test_promotion_outside_its_window_gives_no_discount(accountant, student, make_package):
    package = make_package(months=1, sessions_count=8, base_price=400_000)
    expired = Promotion(
        name="Spring",
        discount_type="percent",
        discount_value=20,
        start_date=date(2025, 1, 1),
        end_date=date(2025, 1, 31),
    )
    upcoming = Promotion(name="Winter", discount_type="amount", discount_value=50_000, start_date=date(2026, 12, 1))
    db.session.add_all([expired, upcoming])
    db.session.commit()

    assert fees.promotion_discount(expired, 400_000, date(2025, 1, 15)) == 80_000
    assert fees.promotion_discount(upcoming, 400_000, TODAY) == 0

    result, _ = fees.create_renewal(accountant, student.id, package.id, promotion_id=expired.id, today=TODAY)
    assert result["discount_amount"] == 0
    assert result["final_price"] == 400_000


def test_failed_renewal_leaves_student_untouched(accountant, student, make_package, monkeypatch):
    package = make_package(months=1, sessions_count=8, base_price=400_000)
    student.remaining_sessions = 3
    db.session.commit()

    def broken_audit(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(fees, "add_audit_log", broken_audit)
    with pytest.raises(RuntimeError):
        fees.create_renewal(accountant, student.id, package.id, deposit_amount=100_000, today=TODAY)

    assert StudentRenewal.query.count() == 0
    assert Revenue.query.count() == 0
    refreshed = db.session.get(Student, student.id)
    assert refreshed.remaining_sessions == 3
    assert refreshed.fee_end_date == TODAY + timedelta(days=10)
    assert refreshed.package_id is None


def test_new_renewal_enrolls_student_in_class(accountant, branches, student, make_class, make_package):
    north, _ = branches
    classroom = make_class(north.id, class_name="Robotics B2")
    package = make_package(months=1, sessions_count=8, base_price=400_000)

    fees.create_renewal(accountant, student.id, package.id, renewal_type="new", new_class_id=classroom.id, today=TODAY)

    enrollment = ClassStudent.query.filter_by(class_id=classroom.id, student_id=student.id).one()
    assert enrollment.status == "active"
    assert StudentRenewal.query.one().new_class_id == classroom.id


def test_new_renewal_into_other_branch_class_is_denied(accountant, branches, student, make_class, make_package):
    _, south = branches
    classroom = make_class(south.id, class_name="South Robotics")
    package = make_package(months=1, sessions_count=8, base_price=400_000)

    with pytest.raises(PermissionDenied):
        fees.create_renewal(accountant, student.id, package.id, renewal_type="new", new_class_id=classroom.id, today=TODAY)
    assert StudentRenewal.query.count() == 0
    assert ClassStudent.query.count() == 0


def test_unknown_package_is_invalid_state(accountant, student):
    with pytest.raises(InvalidStateError):
        fees.create_renewal(accountant, student.id, 999, today=TODAY)
    assert StudentRenewal.query.count() == 0


def test_branch_price_override(app, branches, make_user, actor_for, make_package, make_student):
    north, south = branches
    admin = actor_for(make_user("root", role="ADMIN", system_wide=True))
    package = make_package(base_price=1_000_000)

    fees.set_branch_price(admin, package.id, north.id, 1_200_000)
    assert fees.get_price_for_branch(package.id, north.id)["price"] == 1_200_000
    assert fees.get_price_for_branch(package.id, south.id)["price"] == 1_000_000

    pupil = make_student(north.id, "HN-00009")
    result, _ = fees.create_renewal(admin, pupil.id, package.id, today=TODAY)
    assert result["original_price"] == 1_200_000


def test_calculate_sessions_adds_bonus_months(app, make_package):
    package = make_package(sessions_count=24)
    calc = fees.calculate_sessions(package.id, None, scholarship_months=2)
    assert calc["total_sessions"] == 32
    assert calc["bonus_sessions"] == 8
    with pytest.raises(ValidationFailure):
        fees.calculate_sessions(package.id, None, scholarship_months=-1)


def test_confirm_payment_moves_fee_status(accountant, student):
    student.fee_total = 900_000
    db.session.commit()

    first = fees.confirm_payment(accountant, student.id, 300_000, method="cash")
    assert first["previous_revenue"] == 0
    assert first["fee_status"] == "partial"

    second = fees.confirm_payment(accountant, student.id, 600_000, method="transfer")
    assert second["new_revenue"] == 900_000
    assert second["fee_status"] == "paid"
    assert Revenue.query.filter_by(student_id=student.id).count() == 2

    with pytest.raises(ValidationFailure):
        fees.confirm_payment(accountant, student.id, 0)


def test_decrement_session_sequence(accountant, student):
    student.remaining_sessions = 5
    db.session.commit()

    statuses = [fees.decrement_session(student.id, accountant)["fee_status"] for _ in range(5)]
    assert statuses == ["expiring_soon", "expiring_soon", "expiring_soon", "expiring_soon", "expired"]

    noop = fees.decrement_session(student.id, accountant)
    assert noop["consumed"] is False
    refreshed = db.session.get(Student, student.id)
    assert refreshed.remaining_sessions == 0
    assert refreshed.used_sessions == 5


def test_level_rolls_over_after_fifteen_sessions(accountant, student):
    subject = Subject(name="Robotics")
    db.session.add(subject)
    db.session.flush()
    first = Level(subject_id=subject.id, name="Basic", order_index=1)
    second = Level(subject_id=subject.id, name="Advanced", order_index=2)
    db.session.add_all([first, second])
    db.session.flush()
    student.level_id = first.id
    student.current_level_id = first.id
    student.level_sessions_completed = 14
    student.remaining_sessions = 10
    db.session.add(StudentLevelHistory(student_id=student.id, level_id=first.id, status="in_progress"))
    db.session.commit()

    result = fees.decrement_session(student.id, accountant, today=TODAY)
    assert result["level_completed"] is True
    assert result["current_level_id"] == second.id

    history = StudentLevelHistory.query.filter_by(student_id=student.id).order_by(StudentLevelHistory.id).all()
    assert [(h.level_id, h.status) for h in history] == [(first.id, "completed"), (second.id, "in_progress")]
    assert history[0].sessions_completed == 15
    assert db.session.get(Student, student.id).level_sessions_completed == 0


def test_renewal_buckets_for_month(accountant, branches, make_student, make_package):
    north, _ = branches
    make_student(north.id, "HN-00011", status="active", fee_end_date=date(2026, 11, 25))
    make_student(north.id, "HN-00012", status="active", fee_end_date=date(2026, 11, 3))
    renewing = make_student(north.id, "HN-00013", status="active", fee_end_date=date(2026, 11, 20))
    package = make_package(months=1, sessions_count=8, base_price=400_000)
    fees.create_renewal(accountant, renewing.id, package.id, today=date(2026, 11, 10))

    buckets = fees.students_for_renewal(accountant, "2026-11", today=date(2026, 11, 10))
    assert [s["student_code"] for s in buckets["expiring"]] == ["HN-00011"]
    assert [s["student_code"] for s in buckets["expired"]] == ["HN-00012"]
    assert [s["student_code"] for s in buckets["renewed"]] == ["HN-00013"]

    report = fees.renewal_report(accountant, datetime.utcnow().strftime("%Y-%m"))
    assert report["total_count"] == 1
