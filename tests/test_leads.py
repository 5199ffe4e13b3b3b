from datetime import date, time

import pytest

from eduoffice.errors import ConflictError, NotFoundError, ValidationFailure
from eduoffice.extensions import db
from eduoffice.leads import services as leads_services
from eduoffice.models import AuditLog, Lead, Revenue, Student, TrialStudent


@pytest.fixture
def sales(branches, make_user, actor_for):
    north, _ = branches
    return actor_for(make_user("ec_north", role="EC", branch_ids=[north.id], primary=north.id))


def _create(actor, phone="0901234567", names=("Minh",), **kwargs):
    result, _ = leads_services.create_leads(
        actor,
        customer_name="Tran Mai",
        customer_phone=phone,
        students=[{"name": n} for n in names],
        **kwargs,
    )
    return result


def test_duplicate_phone_is_rejected_with_existing_lead(sales):
    first = _create(sales)
    with pytest.raises(ConflictError) as excinfo:
        _create(sales)
    assert excinfo.value.payload["code"] == first["codes"][0]
    assert Lead.query.count() == 1


def test_cancelled_lead_does_not_block_its_phone(sales):
    first = _create(sales)
    leads_services.update_lead(sales, first["ids"][0], {"status": "cancelled"})
    second = _create(sales)
    assert second["codes"] == ["HN-00002"]


def test_codes_are_sequential_per_branch_prefix(sales):
    codes = [_create(sales, phone=f"09000000{i:02d}")["codes"][0] for i in range(3)]
    assert codes == ["HN-00001", "HN-00002", "HN-00003"]


def test_siblings_share_contact_and_note(sales):
    result = _create(sales, names=("Minh", "Lan"), note="Call after 6pm")
    assert result["count"] == 2
    leads = Lead.query.order_by(Lead.id).all()
    assert {l.customer_phone for l in leads} == {"0901234567"}
    assert [l.student_name for l in leads] == ["Minh", "Lan"]
    assert all(l.note == "Call after 6pm [Siblings: 2 students]" for l in leads)
    assert len(set(result["codes"])) == 2


def test_scheduled_status_needs_date_and_time(sales):
    assert _create(sales, phone="0911111111", scheduled_date=date(2026, 10, 20))["status"] == "new"
    scheduled = _create(sales, phone="0922222222", scheduled_date=date(2026, 10, 20), scheduled_time=time(9, 0))
    assert scheduled["status"] == "scheduled"


def test_create_requires_a_student_name(sales):
    with pytest.raises(ValidationFailure):
        leads_services.create_leads(sales, "Tran Mai", "0901234567", students=[{"name": "  "}])


def test_new_lead_event_is_returned_for_dispatch(sales):
    _, events = leads_services.create_leads(sales, "Tran Mai", "0901234567", students=[{"name": "Minh"}])
    assert len(events) == 1
    assert "HN-00001" in events[0]["message"]


def test_attended_then_trial_counters(sales, branches, make_class):
    north, _ = branches
    lead_id = _create(sales, scheduled_date=date(2026, 10, 20), scheduled_time=time(9, 0))["ids"][0]

    data = leads_services.mark_attended(sales, lead_id, rating=4)
    assert data["status"] == "attended"
    assert data["rating"] == 4

    classroom = make_class(north.id)
    trial = leads_services.assign_trial_class(sales, lead_id, classroom.id, max_sessions=2)
    assert trial["status"] == "trial"
    assert db.session.get(TrialStudent, trial["trial_student_id"]).code == "TR-HN-00001"

    assert leads_services.mark_attended(sales, lead_id)["trial_sessions_attended"] == 1
    done = leads_services.complete_session(sales, lead_id)
    assert done["status"] == "waiting"
    assert done["trial_sessions_attended"] == 2
    assert done["trial_completed"] is True


def test_no_show(sales):
    lead_id = _create(sales)["ids"][0]
    assert leads_services.mark_no_show(sales, lead_id)["status"] == "no_show"


def test_convert_creates_pending_student_and_revenue(sales, make_package):
    package = make_package()
    lead_id = _create(sales, expected_revenue=1_000_000)["ids"][0]

    result, events = leads_services.convert_to_student(
        sales,
        lead_id,
        {"package_id": package.id, "deposit_amount": 300_000, "start_date": date(2026, 11, 1)},
    )

    student = db.session.get(Student, result["student_id"])
    assert student.status == "pending"
    assert student.student_code == "HN-00001"
    assert student.fee_status == "partial"
    assert student.remaining_amount == 700_000
    assert student.remaining_sessions == 24
    assert student.fee_end_date == date(2027, 2, 1)
    assert student.lead_id == lead_id
    assert Revenue.query.filter_by(student_id=student.id).one().amount == 300_000
    assert AuditLog.query.filter_by(lead_id=lead_id, action="converted").count() == 1

    lead = db.session.get(Lead, lead_id)
    assert lead.status == "converted"
    assert lead.converted_student_id == student.id
    assert len(events) == 1


def test_second_conversion_is_conflict(sales):
    lead_id = _create(sales)["ids"][0]
    leads_services.convert_to_student(sales, lead_id)
    with pytest.raises(ConflictError):
        leads_services.convert_to_student(sales, lead_id)
    assert Student.query.count() == 1


def test_conversion_rolls_back_when_closing_the_lead_fails(sales, monkeypatch):
    lead_id = _create(sales)["ids"][0]

    def boom(lead, student):
        raise RuntimeError("lead update failed")

    monkeypatch.setattr(leads_services, "_mark_converted", boom)
    with pytest.raises(RuntimeError):
        leads_services.convert_to_student(sales, lead_id, {"paid_amount": 500_000})

    assert Student.query.count() == 0
    assert Revenue.query.count() == 0
    assert db.session.get(Lead, lead_id).status == "new"


def test_converted_lead_rejects_state_changes(sales, branches, make_class):
    lead_id = _create(sales)["ids"][0]
    leads_services.convert_to_student(sales, lead_id)

    with pytest.raises(ConflictError):
        leads_services.mark_no_show(sales, lead_id)
    with pytest.raises(ConflictError):
        leads_services.complete_session(sales, lead_id)
    with pytest.raises(ConflictError):
        leads_services.delete_lead(sales, lead_id)
    assert leads_services.mark_attended(sales, lead_id)["status"] == "converted"


def test_ec_only_sees_own_leads(sales, branches, make_user, actor_for):
    north, _ = branches
    other = actor_for(make_user("ec_other", role="EC", branch_ids=[north.id], primary=north.id))
    head = actor_for(make_user("hoec", role="HOEC", branch_ids=[north.id], primary=north.id))
    _create(sales, phone="0900000001")
    _create(other, phone="0900000002")

    assert leads_services.leads_query(sales, {}).count() == 1
    assert leads_services.leads_query(head, {}).count() == 2
    assert leads_services.lead_stats(head)["new"] == 2


def test_call_logs(sales):
    lead_id = _create(sales)["ids"][0]
    leads_services.add_call_log(sales, lead_id, "no_answer", duration_seconds=15)
    logs = leads_services.list_call_logs(sales, lead_id)
    assert [l["result"] for l in logs] == ["no_answer"]


def test_missing_lead_is_not_found(sales):
    with pytest.raises(NotFoundError):
        leads_services.get_lead(sales, 999)


def test_trial_followups_lists_students_with_two_sessions(sales, branches, make_class):
    north, _ = branches
    lead_id = _create(sales)["ids"][0]
    trial_id = leads_services.assign_trial_class(sales, lead_id, make_class(north.id).id)["trial_student_id"]
    trial = db.session.get(TrialStudent, trial_id)
    trial.sessions_attended = 2
    db.session.commit()

    items, events = leads_services.trial_followups()
    assert [i["trial_student_id"] for i in items] == [trial_id]
    assert len(events) == 1
