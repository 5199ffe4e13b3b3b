import pytest

from eduoffice.extensions import db
from eduoffice.fees.services import set_branch_price
from eduoffice.models import Package


@pytest.fixture
def login(client):
    def _login(username, password="secret123"):
        resp = client.post("/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.json
        return {"Authorization": f"Bearer {resp.json['data']['token']}"}

    return _login


def test_class_attendance_flow_over_http(client, login, branches, make_user):
    north, _ = branches
    make_user("cm_north", role="CM", branch_ids=[north.id], primary=north.id, password="secret123")
    headers = login("cm_north")

    created = client.post(
        "/classes/",
        json={"class_name": "Robotics A1", "start_date": "2026-09-07", "start_time": "08:00", "end_time": "09:30"},
        headers=headers,
    )
    assert created.status_code == 201, created.json
    class_id = created.json["data"]["id"]

    sessions = client.post(f"/classes/{class_id}/sessions/generate", json={"count": 2}, headers=headers)
    assert sessions.status_code == 201, sessions.json
    session_id = sessions.json["data"][0]["id"]

    student = client.post("/students/", json={"full_name": "Nguyen An"}, headers=headers)
    assert student.status_code == 201, student.json
    student_id = student.json["data"]["id"]

    enrolled = client.post(f"/classes/{class_id}/students", json={"student_id": student_id}, headers=headers)
    assert enrolled.status_code == 201, enrolled.json

    marked = client.post(
        f"/attendance/sessions/{session_id}",
        json={"records": [{"student_id": student_id, "status": "late"}]},
        headers=headers,
    )
    assert marked.status_code == 200, marked.json
    assert marked.json["data"]["attendance_submitted"] is True

    report = client.get(f"/attendance/classes/{class_id}/report", headers=headers)
    assert report.json["data"]["students"][0]["late"] == 1

    listing = client.get("/students/?limit=10", headers=headers)
    assert listing.json["pagination"] == {"page": 1, "limit": 10, "total": 1, "totalPages": 1}


def test_fees_endpoints_check_capabilities(client, login, branches, make_user, make_student, app):
    north, _ = branches
    make_user("teacher_a", role="TEACHER", branch_ids=[north.id], primary=north.id, password="secret123")
    make_user("acc_north", role="ACCOUNTANT", branch_ids=[north.id], primary=north.id, password="secret123")
    pupil = make_student(north.id, "HN-00001", status="active")
    package = Package(name="1 month", months=1, sessions_count=8, base_price=400_000)
    db.session.add(package)
    db.session.commit()
    body = {"student_id": pupil.id, "package_id": package.id, "deposit_amount": 100_000}

    denied = client.post("/fees/renewals", json=body, headers=login("teacher_a"))
    assert denied.status_code == 403

    created = client.post("/fees/renewals", json=body, headers=login("acc_north"))
    assert created.status_code == 201, created.json
    assert created.json["data"]["remaining_amount"] == 300_000

    bad_month = client.get("/fees/renewals/report?month=2026-13", headers=login("acc_north"))
    assert bad_month.status_code == 400


def test_missing_records_are_not_found(client, login, branches, make_user):
    north, _ = branches
    make_user("om_north", role="OM", branch_ids=[north.id], primary=north.id, password="secret123")
    resp = client.get("/leads/4242", headers=login("om_north"))
    assert resp.status_code == 404
    assert resp.json["error"] == "not_found"


def test_promotion_programs_over_http(client, login, branches, make_user):
    north, _ = branches
    make_user("acc_north", role="ACCOUNTANT", branch_ids=[north.id], primary=north.id, password="secret123")
    make_user("teacher_a", role="TEACHER", branch_ids=[north.id], primary=north.id, password="secret123")
    acc = login("acc_north")

    created = client.post(
        "/fees/promotions",
        json={"code": "aut26", "name": "Autumn", "discount_type": "percent", "discount_value": 10, "max_discount": 50000},
        headers=acc,
    )
    assert created.status_code == 201, created.json
    promotion_id = created.json["data"]["id"]
    assert created.json["data"]["code"] == "AUT26"
    client.post(
        "/fees/promotions",
        json={"name": "Last summer", "discount_type": "amount", "discount_value": 100000, "end_date": "2025-08-31"},
        headers=acc,
    )

    duplicate = client.post("/fees/promotions", json={"code": "AUT26", "name": "Copy"}, headers=acc)
    assert duplicate.status_code == 409

    assert client.post("/fees/promotions", json={"name": "Nope"}, headers=login("teacher_a")).status_code == 403

    active = client.get("/fees/promotions/active", headers=login("teacher_a"))
    assert [p["name"] for p in active.json["data"]] == ["Autumn"]
    assert len(client.get("/fees/promotions", headers=acc).json["data"]) == 2

    updated = client.put(f"/fees/promotions/{promotion_id}", json={"is_active": False}, headers=acc)
    assert updated.status_code == 200, updated.json
    assert updated.json["data"]["is_active"] is False
    assert client.get("/fees/promotions/active", headers=acc).json["data"] == []

    bad_window = client.put(
        f"/fees/promotions/{promotion_id}",
        json={"start_date": "2026-10-01", "end_date": "2026-09-01"},
        headers=acc,
    )
    assert bad_window.status_code == 400


def test_price_lookup_stays_in_callers_branch(client, login, branches, make_user, make_package, actor_for):
    north, south = branches
    admin = make_user("root", role="ADMIN", system_wide=True)
    make_user("acc_north", role="ACCOUNTANT", branch_ids=[north.id], primary=north.id, password="secret123")
    package = make_package(base_price=1_000_000)
    set_branch_price(actor_for(admin), package.id, north.id, 1_100_000)
    set_branch_price(actor_for(admin), package.id, south.id, 900_000)

    resp = client.get(f"/fees/packages/{package.id}/price?branch_id={south.id}", headers=login("acc_north"))
    assert resp.status_code == 200
    assert resp.json["data"]["branch_id"] == north.id
    assert resp.json["data"]["price"] == 1_100_000
