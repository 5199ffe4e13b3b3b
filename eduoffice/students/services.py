from datetime import datetime

from flask import current_app
from sqlalchemy import or_

from eduoffice.errors import NotFoundError, ValidationFailure
from eduoffice.extensions import db
from eduoffice.models import (
    STUDENT_STATUSES,
    ClassStudent,
    Package,
    Student,
    StudentLevelHistory,
    StudentStatusLog,
)
from eduoffice.utils.authz import branch_code, ensure_branch_access, resolve_branch_scope, resolve_create_branch
from eduoffice.utils.dates import iso
from eduoffice.utils.sequences import allocate_code
from eduoffice.utils.transactions import atomic


STUDENT_CODE_FALLBACK_PREFIX = "HS"

# Caller-editable fields. Derived fee/session counters are excluded on purpose.
EDITABLE_FIELDS = (
    "full_name",
    "birth_year",
    "gender",
    "school",
    "parent_name",
    "parent_phone",
    "parent_email",
    "address",
    "subject_id",
    "level_id",
    "sessions_per_week",
    "start_date",
    "note",
    "sale_id",
)


def student_to_dict(student):
    return {
        "id": student.id,
        "branch_id": student.branch_id,
        "student_code": student.student_code,
        "full_name": student.full_name,
        "birth_year": student.birth_year,
        "gender": student.gender,
        "school": student.school,
        "parent_name": student.parent_name,
        "parent_phone": student.parent_phone,
        "parent_email": student.parent_email,
        "address": student.address,
        "subject_id": student.subject_id,
        "level_id": student.level_id,
        "current_level_id": student.current_level_id,
        "sessions_per_week": student.sessions_per_week,
        "start_date": iso(student.start_date),
        "package_id": student.package_id,
        "fee_original": student.fee_original,
        "discount_amount": student.discount_amount,
        "fee_total": student.fee_total,
        "paid_amount": student.paid_amount,
        "actual_revenue": student.actual_revenue,
        "remaining_amount": student.remaining_amount,
        "scholarship_months": student.scholarship_months,
        "total_sessions": student.total_sessions,
        "used_sessions": student.used_sessions,
        "remaining_sessions": student.remaining_sessions,
        "level_sessions_completed": student.level_sessions_completed,
        "fee_status": student.fee_status,
        "payment_status": student.payment_status,
        "fee_end_date": iso(student.fee_end_date),
        "status": student.status,
        "status_reason": student.status_reason,
        "status_changed_at": iso(student.status_changed_at),
        "reserve_until": iso(student.reserve_until),
        "expected_return_date": iso(student.expected_return_date),
        "refund_amount": student.refund_amount,
        "note": student.note,
        "sale_id": student.sale_id,
        "lead_id": student.lead_id,
        "created_at": iso(student.created_at),
    }


def _get_student(actor, student_id):
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found.")
    if student.branch_id is not None:
        ensure_branch_access(actor, student.branch_id)
    return student


def create_student(actor, full_name, branch_id=None, status="pending", **fields):
    if not (full_name or "").strip():
        raise ValidationFailure("full_name is required.")
    if status not in STUDENT_STATUSES:
        raise ValidationFailure(f"Invalid student status: {status}.")
    if fields.get("package_id") and db.session.get(Package, fields["package_id"]) is None:
        raise NotFoundError("Package not found.")
    target_branch = resolve_create_branch(actor, branch_id)

    with atomic():
        student = Student(
            branch_id=target_branch,
            student_code=allocate_code("student", branch_code(target_branch, default=STUDENT_CODE_FALLBACK_PREFIX)),
            full_name=full_name.strip(),
            status=status,
            sale_id=fields.pop("sale_id", None) or actor.id,
            package_id=fields.pop("package_id", None),
        )
        for key in EDITABLE_FIELDS:
            if fields.get(key) is not None:
                setattr(student, key, fields[key])
        student.current_level_id = student.level_id
        db.session.add(student)
        db.session.flush()
        if student.level_id:
            db.session.add(
                StudentLevelHistory(
                    student_id=student.id,
                    level_id=student.level_id,
                    status="in_progress",
                    started_at=student.start_date or datetime.utcnow().date(),
                )
            )

    current_app.logger.info("Student %s created", student.student_code)
    return {"id": student.id, "student_code": student.student_code, "status": student.status}


def get_student(actor, student_id):
    student = _get_student(actor, student_id)
    data = student_to_dict(student)
    data["classes"] = [
        {"class_id": e.class_id, "class_name": e.classroom.class_name, "status": e.status}
        for e in ClassStudent.query.filter_by(student_id=student.id).all()
    ]
    return data


def students_query(actor, filters):
    query = Student.query
    scope = resolve_branch_scope(actor, filters.get("branch_id"))
    if scope is not None:
        query = query.filter(Student.branch_id == scope)
    if filters.get("status"):
        query = query.filter(Student.status == filters["status"])
    if filters.get("fee_status"):
        query = query.filter(Student.fee_status == filters["fee_status"])
    if filters.get("sale_id"):
        query = query.filter(Student.sale_id == filters["sale_id"])
    if filters.get("class_id"):
        query = query.join(ClassStudent, ClassStudent.student_id == Student.id).filter(
            ClassStudent.class_id == filters["class_id"], ClassStudent.status == "active"
        )
    if filters.get("search"):
        term = f"%{filters['search'].strip()}%"
        query = query.filter(
            or_(
                Student.student_code.ilike(term),
                Student.full_name.ilike(term),
                Student.parent_name.ilike(term),
                Student.parent_phone.ilike(term),
            )
        )
    return query.order_by(Student.id.desc())


def update_student(actor, student_id, changes):
    student = _get_student(actor, student_id)
    forbidden = {"fee_status", "payment_status", "actual_revenue", "remaining_sessions", "status"} & set(changes)
    if forbidden:
        raise ValidationFailure(f"Fields cannot be set directly: {', '.join(sorted(forbidden))}.")
    with atomic():
        for key in EDITABLE_FIELDS:
            if key in changes and changes[key] is not None:
                setattr(student, key, changes[key])
    return student_to_dict(student)


def change_status(actor, student_id, status, reason=None, reserve_until=None, expected_return_date=None, refund_amount=None):
    student = _get_student(actor, student_id)
    if status not in STUDENT_STATUSES:
        raise ValidationFailure(f"Invalid student status: {status}.")
    if refund_amount is not None and refund_amount < 0:
        raise ValidationFailure("refund_amount cannot be negative.")

    old_status = student.status
    with atomic():
        student.status = status
        student.status_reason = reason
        student.status_changed_at = datetime.utcnow()
        if reserve_until is not None:
            student.reserve_until = reserve_until
        if expected_return_date is not None:
            student.expected_return_date = expected_return_date
        if refund_amount is not None:
            student.refund_amount = refund_amount
        db.session.add(
            StudentStatusLog(
                student_id=student.id,
                old_status=old_status,
                new_status=status,
                reason=reason,
                changed_by=actor.id,
            )
        )

    current_app.logger.info("Student %s status %s -> %s", student.student_code, old_status, status)
    return {"student_id": student.id, "old_status": old_status, "new_status": status}


def status_history(actor, student_id):
    student = _get_student(actor, student_id)
    rows = (
        StudentStatusLog.query.filter_by(student_id=student.id)
        .order_by(StudentStatusLog.created_at.desc(), StudentStatusLog.id.desc())
        .all()
    )
    return [
        {
            "id": r.id,
            "old_status": r.old_status,
            "new_status": r.new_status,
            "reason": r.reason,
            "changed_by": r.changed_by,
            "created_at": iso(r.created_at),
        }
        for r in rows
    ]


def level_history(actor, student_id):
    student = _get_student(actor, student_id)
    rows = (
        StudentLevelHistory.query.filter_by(student_id=student.id)
        .order_by(StudentLevelHistory.id.asc())
        .all()
    )
    return [
        {
            "id": r.id,
            "level_id": r.level_id,
            "level_name": r.level.name if r.level else None,
            "status": r.status,
            "sessions_completed": r.sessions_completed,
            "started_at": iso(r.started_at),
            "completed_at": iso(r.completed_at),
        }
        for r in rows
    ]
