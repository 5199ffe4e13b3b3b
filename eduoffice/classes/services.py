from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from eduoffice.errors import ConflictError, InvalidStateError, NotFoundError, ValidationFailure
from eduoffice.extensions import db
from eduoffice.models import Classroom, ClassSession, ClassStudent, Student, User
from eduoffice.utils.authz import ensure_branch_access, resolve_branch_scope, resolve_create_branch
from eduoffice.utils.dates import iso
from eduoffice.utils.transactions import atomic


DEFAULT_SESSION_BATCH = 15


def _hhmm(value):
    return value.strftime("%H:%M") if value else None


def class_to_dict(classroom, with_counts=False):
    data = {
        "id": classroom.id,
        "branch_id": classroom.branch_id,
        "class_code": classroom.class_code,
        "class_name": classroom.class_name,
        "subject_id": classroom.subject_id,
        "level_id": classroom.level_id,
        "teacher_id": classroom.teacher_id,
        "cm_id": classroom.cm_id,
        "room": classroom.room,
        "start_date": iso(classroom.start_date),
        "start_time": _hhmm(classroom.start_time),
        "end_time": _hhmm(classroom.end_time),
        "total_sessions": classroom.total_sessions,
        "max_students": classroom.max_students,
        "status": classroom.status,
    }
    if with_counts:
        data["student_count"] = ClassStudent.query.filter_by(class_id=classroom.id, status="active").count()
        data["session_count"] = ClassSession.query.filter_by(class_id=classroom.id).count()
    return data


def session_to_dict(session):
    return {
        "id": session.id,
        "class_id": session.class_id,
        "session_number": session.session_number,
        "session_date": iso(session.session_date),
        "start_time": _hhmm(session.start_time),
        "end_time": _hhmm(session.end_time),
        "teacher_id": session.teacher_id,
        "substitute_teacher_id": session.substitute_teacher_id,
        "status": session.status,
        "attendance_submitted": session.attendance_submitted,
        "original_date": iso(session.original_date),
        "reschedule_reason": session.reschedule_reason,
        "cancel_reason": session.cancel_reason,
    }


def _get_class(actor, class_id):
    classroom = db.session.get(Classroom, class_id)
    if classroom is None:
        raise NotFoundError("Class not found.")
    ensure_branch_access(actor, classroom.branch_id)
    return classroom


def _get_session(actor, session_id):
    session = db.session.get(ClassSession, session_id)
    if session is None:
        raise NotFoundError("Session not found.")
    ensure_branch_access(actor, session.classroom.branch_id)
    return session


def create_class(actor, class_name, branch_id=None, **fields):
    if not (class_name or "").strip():
        raise ValidationFailure("class_name is required.")
    target_branch = resolve_create_branch(actor, branch_id)
    if fields.get("start_time") and fields.get("end_time") and fields["end_time"] <= fields["start_time"]:
        raise ValidationFailure("end_time must be after start_time.")
    if fields.get("teacher_id") and db.session.get(User, fields["teacher_id"]) is None:
        raise NotFoundError("Teacher not found.")

    with atomic():
        classroom = Classroom(branch_id=target_branch, class_name=class_name.strip())
        for key in (
            "class_code",
            "subject_id",
            "level_id",
            "teacher_id",
            "cm_id",
            "room",
            "start_date",
            "start_time",
            "end_time",
            "total_sessions",
            "max_students",
        ):
            if fields.get(key) is not None:
                setattr(classroom, key, fields[key])
        db.session.add(classroom)
        db.session.flush()
    return class_to_dict(classroom)


def get_class(actor, class_id):
    classroom = _get_class(actor, class_id)
    data = class_to_dict(classroom, with_counts=True)
    data["students"] = [
        {
            "student_id": e.student_id,
            "student_code": e.student.student_code,
            "full_name": e.student.full_name,
            "enrolled_at": iso(e.enrolled_at),
        }
        for e in ClassStudent.query.filter_by(class_id=classroom.id, status="active").all()
    ]
    return data


def classes_query(actor, filters):
    query = Classroom.query
    scope = resolve_branch_scope(actor, filters.get("branch_id"))
    if scope is not None:
        query = query.filter(Classroom.branch_id == scope)
    if filters.get("status"):
        query = query.filter(Classroom.status == filters["status"])
    if filters.get("teacher_id"):
        query = query.filter(Classroom.teacher_id == filters["teacher_id"])
    if filters.get("search"):
        term = f"%{filters['search'].strip()}%"
        query = query.filter(Classroom.class_name.ilike(term) | Classroom.class_code.ilike(term))
    return query.order_by(Classroom.id.desc())


def add_student_to_class(actor, class_id, student_id):
    classroom = _get_class(actor, class_id)
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found.")
    ensure_branch_access(actor, student.branch_id)

    enrollment = ClassStudent.query.filter_by(class_id=classroom.id, student_id=student.id).first()
    if enrollment is not None and enrollment.status == "active":
        raise ConflictError("Student is already enrolled in this class.")
    if classroom.max_students:
        active = ClassStudent.query.filter_by(class_id=classroom.id, status="active").count()
        if active >= classroom.max_students:
            raise InvalidStateError("Class is full.")

    with atomic():
        if enrollment is None:
            enrollment = ClassStudent(class_id=classroom.id, student_id=student.id, status="active")
            db.session.add(enrollment)
        else:
            enrollment.status = "active"
        if student.status in ("pending", "waiting"):
            student.status = "active"
        db.session.flush()
    return {"class_id": classroom.id, "student_id": student.id, "enrollment_id": enrollment.id, "student_status": student.status}


def remove_student_from_class(actor, class_id, student_id):
    classroom = _get_class(actor, class_id)
    enrollment = ClassStudent.query.filter_by(class_id=classroom.id, student_id=student_id, status="active").first()
    if enrollment is None:
        raise NotFoundError("Student is not enrolled in this class.")
    with atomic():
        enrollment.status = "removed"
    return {"class_id": classroom.id, "student_id": student_id, "status": "removed"}


def generate_sessions(actor, class_id, count=DEFAULT_SESSION_BATCH, start_date=None):
    """Append ``count`` weekly sessions after the last generated one.

    Numbering continues from the current maximum; times and teacher are
    copied from the class.
    """
    classroom = _get_class(actor, class_id) if actor is not None else db.session.get(Classroom, class_id)
    if classroom is None:
        raise NotFoundError("Class not found.")
    if not count or count < 1:
        raise ValidationFailure("count must be at least 1.")

    last = ClassSession.query.filter_by(class_id=classroom.id).order_by(ClassSession.session_number.desc()).first()
    if start_date is None:
        if last is not None:
            start_date = last.session_date + timedelta(weeks=1)
        else:
            start_date = classroom.start_date
    if start_date is None:
        raise InvalidStateError("Class has no start date.")
    max_number = db.session.query(func.max(ClassSession.session_number)).filter_by(class_id=classroom.id).scalar() or 0

    with atomic():
        created = []
        for offset in range(count):
            session = ClassSession(
                class_id=classroom.id,
                session_number=max_number + offset + 1,
                session_date=start_date + timedelta(weeks=offset),
                start_time=classroom.start_time,
                end_time=classroom.end_time,
                teacher_id=classroom.teacher_id,
                status="scheduled",
            )
            db.session.add(session)
            created.append(session)
        db.session.flush()

    current_app.logger.info("Generated %s sessions for class %s", len(created), classroom.id)
    return [session_to_dict(s) for s in created]


def list_sessions(actor, class_id, from_date=None, to_date=None):
    classroom = _get_class(actor, class_id)
    query = ClassSession.query.filter_by(class_id=classroom.id)
    if from_date:
        query = query.filter(ClassSession.session_date >= from_date)
    if to_date:
        query = query.filter(ClassSession.session_date <= to_date)
    return [session_to_dict(s) for s in query.order_by(ClassSession.session_number.asc()).all()]


def reschedule_session(actor, session_id, new_date, reason=None, shift_following=True):
    session = _get_session(actor, session_id)
    if session.status == "cancelled":
        raise InvalidStateError("Cancelled sessions cannot be rescheduled.")
    delta = (new_date - session.session_date).days
    if delta == 0:
        raise ValidationFailure("The new date is the same as the current date.")

    with atomic():
        moved = [session]
        if shift_following:
            moved += (
                ClassSession.query.filter(
                    ClassSession.class_id == session.class_id,
                    ClassSession.session_number > session.session_number,
                    ClassSession.status == "scheduled",
                )
                .order_by(ClassSession.session_number.asc())
                .all()
            )
        for row in moved:
            if row.original_date is None:
                row.original_date = row.session_date
            row.session_date = row.session_date + timedelta(days=delta)
        session.reschedule_reason = reason

    return {"session_id": session.id, "delta_days": delta, "updated": len(moved), "new_date": iso(session.session_date)}


def cancel_session(actor, session_id, reason=None):
    session = _get_session(actor, session_id)
    if session.attendance_submitted:
        raise InvalidStateError("Attendance was already submitted for this session.")
    with atomic():
        session.status = "cancelled"
        session.cancel_reason = reason
    return session_to_dict(session)


def assign_substitute(actor, session_id, teacher_id):
    session = _get_session(actor, session_id)
    if teacher_id is not None and db.session.get(User, teacher_id) is None:
        raise NotFoundError("Teacher not found.")
    with atomic():
        session.substitute_teacher_id = teacher_id
    return session_to_dict(session)
