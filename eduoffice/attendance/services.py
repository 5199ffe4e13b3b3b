from datetime import datetime, timedelta
from html import escape

from flask import current_app
from sqlalchemy import case, func

from eduoffice.errors import InvalidStateError, NotFoundError, PermissionDenied, ValidationFailure
from eduoffice.extensions import db
from eduoffice.models import (
    ATTENDANCE_STATUSES,
    Attendance,
    Classroom,
    ClassSession,
    ClassStudent,
    Student,
    TrialClassStudent,
    TrialStudent,
)
from eduoffice.utils.authz import ensure_branch_access, resolve_branch_scope
from eduoffice.utils.dates import iso
from eduoffice.utils.transactions import atomic


WARNING_THRESHOLD = 3
WINDOW_OPENS_BEFORE = timedelta(minutes=5)
WINDOW_CLOSES_AFTER = timedelta(minutes=15)
WARNING_STATUSES = ("late", "absent")
TRIAL_ATTENDED_STATUSES = ("present", "late")

# Client-side labels accepted on input.
STATUS_ALIASES = {"on_time": "present"}


def normalize_status(value):
    status = STATUS_ALIASES.get((value or "").strip().lower(), (value or "").strip().lower())
    if status not in ATTENDANCE_STATUSES:
        raise ValidationFailure(f"Invalid attendance status: {value}.")
    return status


def _get_session(session_id):
    session = db.session.get(ClassSession, session_id)
    if session is None:
        raise NotFoundError("Session not found.")
    return session


def _is_assigned_teacher(session, classroom, actor):
    return actor.id in {classroom.teacher_id, session.teacher_id, session.substitute_teacher_id}


def attendance_window(session):
    start_time = session.start_time or session.classroom.start_time
    end_time = session.end_time or session.classroom.end_time
    if start_time is None or end_time is None:
        return None, None
    opens_at = datetime.combine(session.session_date, start_time) - WINDOW_OPENS_BEFORE
    closes_at = datetime.combine(session.session_date, end_time) + WINDOW_CLOSES_AFTER
    return opens_at, closes_at


def can_mark_attendance(session, actor, now=None):
    """Return ``{"allowed": bool, "reason": str | None, "code": str | None}``.

    Blanket roles may always mark in their branches. Teachers may mark only
    sessions they teach, from 5 minutes before the start until 15 minutes
    after the end, evaluated against the stored times at call time.
    """
    classroom = session.classroom
    if not actor.can_access_branch(classroom.branch_id):
        return {"allowed": False, "code": "branch", "reason": "This class belongs to a branch you cannot access."}
    if session.status == "cancelled":
        return {"allowed": False, "code": "cancelled", "reason": "This session was cancelled."}
    if actor.can("attendance.mark_any"):
        return {"allowed": True, "code": None, "reason": None}
    if not _is_assigned_teacher(session, classroom, actor):
        return {"allowed": False, "code": "not_assigned", "reason": "You are not the teacher of this session."}

    now = now or datetime.now()
    opens_at, closes_at = attendance_window(session)
    if opens_at is None:
        return {"allowed": False, "code": "no_schedule", "reason": "This session has no scheduled time."}
    if now < opens_at:
        return {
            "allowed": False,
            "code": "window_not_open",
            "reason": f"Attendance opens at {opens_at.strftime('%H:%M')} on {opens_at.date().isoformat()}.",
        }
    if now > closes_at:
        return {
            "allowed": False,
            "code": "window_closed",
            "reason": f"Attendance closed at {closes_at.strftime('%H:%M')} on {closes_at.date().isoformat()}.",
        }
    return {"allowed": True, "code": None, "reason": None}


def check_can_mark(actor, session_id, now=None):
    session = _get_session(session_id)
    decision = can_mark_attendance(session, actor, now=now)
    decision["session_id"] = session.id
    return decision


def _ensure_can_mark(session, actor, now):
    decision = can_mark_attendance(session, actor, now=now)
    if decision["allowed"]:
        return
    if decision["code"] in ("branch", "not_assigned"):
        raise PermissionDenied(decision["reason"])
    raise InvalidStateError(decision["reason"], payload={"code": decision["code"]})


def _clean_records(records):
    if not records:
        raise ValidationFailure("records must contain at least one entry.")
    cleaned = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValidationFailure(f"Record #{index + 1} must be an object.")
        student_id = record.get("student_id")
        trial_student_id = record.get("trial_student_id")
        if bool(student_id) == bool(trial_student_id):
            raise ValidationFailure(f"Record #{index + 1} needs exactly one of student_id or trial_student_id.")
        cleaned.append(
            {
                "student_id": int(student_id) if student_id else None,
                "trial_student_id": int(trial_student_id) if trial_student_id else None,
                "status": normalize_status(record.get("status")),
                "note": record.get("note"),
            }
        )
    return cleaned


def class_tallies(class_id, student_id):
    """Late/absent counts for one student across the sessions of one class."""
    rows = (
        db.session.query(Attendance.status, func.count(Attendance.id))
        .join(ClassSession, ClassSession.id == Attendance.session_id)
        .filter(ClassSession.class_id == class_id, Attendance.student_id == student_id)
        .filter(Attendance.status.in_(WARNING_STATUSES))
        .group_by(Attendance.status)
        .all()
    )
    counts = {status: count for status, count in rows}
    late = counts.get("late", 0)
    absent = counts.get("absent", 0)
    return {"late_count": late, "absent_count": absent, "total": late + absent}


def recount_trial_sessions(trial_student_id):
    attended = (
        Attendance.query.filter(
            Attendance.trial_student_id == trial_student_id,
            Attendance.status.in_(TRIAL_ATTENDED_STATUSES),
        ).count()
    )
    trial = db.session.get(TrialStudent, trial_student_id)
    if trial is not None:
        trial.sessions_attended = attended
    return attended


def _upsert(session, record, marked_by):
    if record["student_id"]:
        row = Attendance.query.filter_by(session_id=session.id, student_id=record["student_id"]).first()
    else:
        row = Attendance.query.filter_by(session_id=session.id, trial_student_id=record["trial_student_id"]).first()

    if row is None:
        row = Attendance(
            session_id=session.id,
            student_id=record["student_id"],
            trial_student_id=record["trial_student_id"],
        )
        db.session.add(row)
    row.status = record["status"]
    row.note = record["note"]
    row.marked_by = marked_by
    db.session.flush()
    return row


def _warning(student, classroom, session, tallies):
    return {
        "student_id": student.id,
        "student_code": student.student_code,
        "student_name": student.full_name,
        "parent_name": student.parent_name,
        "parent_phone": student.parent_phone,
        "parent_email": student.parent_email,
        "class_id": classroom.id,
        "class_name": classroom.class_name,
        "session_id": session.id,
        "session_number": session.session_number,
        "session_date": iso(session.session_date),
        "late_count": tallies["late_count"],
        "absent_count": tallies["absent_count"],
        "total": tallies["total"],
    }


def warning_message(warning):
    return "\n".join(
        [
            "<b>Attendance warning</b>",
            f"Student: {escape(warning['student_name'])} ({escape(warning['student_code'])})",
            f"Class: {escape(warning['class_name'])}, session #{warning['session_number']} on {warning['session_date']}",
            f"Late: {warning['late_count']}, absent: {warning['absent_count']}",
            f"Parent: {escape(warning['parent_name'] or '')} - {escape(warning['parent_phone'] or '')}",
        ]
    )


def mark_attendance(actor, session_id, records, now=None):
    """Upsert attendance for a session and return ``(result, events)``.

    Each record is keyed on (session, student) or (session, trial student).
    Late/absent writes recount the student's tallies for this class and
    yield one warning per student at or above the threshold.
    """
    session = _get_session(session_id)
    _ensure_can_mark(session, actor, now)
    cleaned = _clean_records(records)

    classroom = session.classroom
    student_ids = {r["student_id"] for r in cleaned if r["student_id"]}
    trial_ids = {r["trial_student_id"] for r in cleaned if r["trial_student_id"]}
    students = {s.id: s for s in Student.query.filter(Student.id.in_(student_ids)).all()} if student_ids else {}
    missing = student_ids - set(students)
    if missing:
        raise NotFoundError("Student not found.", payload={"student_ids": sorted(missing)})
    for student in students.values():
        if student.branch_id != classroom.branch_id:
            raise PermissionDenied(
                "Student belongs to another branch.",
                payload={"student_id": student.id, "branch_id": student.branch_id},
            )
    if trial_ids:
        trials = {t.id: t for t in TrialStudent.query.filter(TrialStudent.id.in_(trial_ids)).all()}
        if trial_ids - set(trials):
            raise NotFoundError("Trial student not found.", payload={"trial_student_ids": sorted(trial_ids - set(trials))})
        for trial in trials.values():
            if trial.branch_id is not None and trial.branch_id != classroom.branch_id:
                raise PermissionDenied(
                    "Trial student belongs to another branch.",
                    payload={"trial_student_id": trial.id, "branch_id": trial.branch_id},
                )

    # Only the class roster can be marked: active enrollments and trial seats.
    if student_ids:
        enrolled = {
            row.student_id
            for row in ClassStudent.query.filter(
                ClassStudent.class_id == classroom.id,
                ClassStudent.student_id.in_(student_ids),
                ClassStudent.status == "active",
            ).all()
        }
        if student_ids - enrolled:
            raise ValidationFailure(
                "Some students are not enrolled in this class.",
                payload={"student_ids": sorted(student_ids - enrolled)},
            )
    if trial_ids:
        seated = {
            row.trial_student_id
            for row in TrialClassStudent.query.filter(
                TrialClassStudent.class_id == classroom.id,
                TrialClassStudent.trial_student_id.in_(trial_ids),
            ).all()
        }
        if trial_ids - seated:
            raise ValidationFailure(
                "Some trial students are not assigned to this class.",
                payload={"trial_student_ids": sorted(trial_ids - seated)},
            )

    warnings = {}
    with atomic():
        for record in cleaned:
            _upsert(session, record, actor.id)
            if record["student_id"] and record["status"] in WARNING_STATUSES:
                tallies = class_tallies(classroom.id, record["student_id"])
                if tallies["total"] >= WARNING_THRESHOLD:
                    warnings[record["student_id"]] = _warning(students[record["student_id"]], classroom, session, tallies)
            if record["trial_student_id"] and record["status"] in TRIAL_ATTENDED_STATUSES:
                recount_trial_sessions(record["trial_student_id"])
        session.attendance_submitted = True

    warning_list = list(warnings.values())
    for warning in warning_list:
        current_app.logger.warning(
            "Attendance warning: student %s in class %s (late %s, absent %s)",
            warning["student_code"],
            warning["class_name"],
            warning["late_count"],
            warning["absent_count"],
        )
    result = {
        "session_id": session.id,
        "saved": len(cleaned),
        "attendance_submitted": True,
        "warnings": warning_list,
    }
    events = [{"channel": "telegram", "message": warning_message(w)} for w in warning_list]
    return result, events


def session_roster(actor, session_id):
    """Regular and trial students of the session's class with any stored attendance."""
    session = _get_session(session_id)
    classroom = session.classroom
    ensure_branch_access(actor, classroom.branch_id)

    marks = {}
    trial_marks = {}
    for row in Attendance.query.filter_by(session_id=session.id).all():
        if row.student_id:
            marks[row.student_id] = row
        else:
            trial_marks[row.trial_student_id] = row

    students = []
    enrollments = (
        ClassStudent.query.filter_by(class_id=classroom.id, status="active")
        .join(Student, Student.id == ClassStudent.student_id)
        .order_by(Student.full_name.asc())
        .all()
    )
    for enrollment in enrollments:
        mark = marks.get(enrollment.student_id)
        students.append(
            {
                "student_id": enrollment.student_id,
                "student_code": enrollment.student.student_code,
                "full_name": enrollment.student.full_name,
                "status": mark.status if mark else None,
                "note": mark.note if mark else None,
            }
        )

    trials = []
    for link in TrialClassStudent.query.filter_by(class_id=classroom.id).all():
        trial = link.trial_student
        if trial is None or trial.status != "active":
            continue
        mark = trial_marks.get(trial.id)
        trials.append(
            {
                "trial_student_id": trial.id,
                "code": trial.code,
                "full_name": trial.full_name,
                "sessions_attended": trial.sessions_attended,
                "max_sessions": trial.max_sessions,
                "status": mark.status if mark else None,
                "note": mark.note if mark else None,
            }
        )

    return {
        "session_id": session.id,
        "class_id": classroom.id,
        "class_name": classroom.class_name,
        "session_date": iso(session.session_date),
        "attendance_submitted": session.attendance_submitted,
        "students": students,
        "trial_students": trials,
    }


def _status_sums():
    return [
        func.coalesce(func.sum(case((Attendance.status == status, 1), else_=0)), 0).label(status)
        for status in ATTENDANCE_STATUSES
    ]


def class_report(actor, class_id):
    classroom = db.session.get(Classroom, class_id)
    if classroom is None:
        raise NotFoundError("Class not found.")
    ensure_branch_access(actor, classroom.branch_id)

    sums = (
        db.session.query(Attendance.student_id, *_status_sums())
        .join(ClassSession, ClassSession.id == Attendance.session_id)
        .filter(ClassSession.class_id == classroom.id, Attendance.student_id.isnot(None))
        .group_by(Attendance.student_id)
        .all()
    )
    by_student = {row.student_id: row for row in sums}

    enrollments = (
        ClassStudent.query.filter_by(class_id=classroom.id, status="active")
        .join(Student, Student.id == ClassStudent.student_id)
        .order_by(Student.full_name.asc())
        .all()
    )
    rows = []
    for enrollment in enrollments:
        counts = by_student.get(enrollment.student_id)
        item = {
            "student_id": enrollment.student_id,
            "student_code": enrollment.student.student_code,
            "full_name": enrollment.student.full_name,
        }
        for status in ATTENDANCE_STATUSES:
            item[status] = int(getattr(counts, status)) if counts is not None else 0
        rows.append(item)

    sessions_done = ClassSession.query.filter_by(class_id=classroom.id, attendance_submitted=True).count()
    return {"class_id": classroom.id, "class_name": classroom.class_name, "sessions_marked": sessions_done, "students": rows}


def students_with_warnings(actor, branch_id=None):
    """Active enrollments at or above the late+absent threshold, worst first."""
    late = func.coalesce(func.sum(case((Attendance.status == "late", 1), else_=0)), 0)
    absent = func.coalesce(func.sum(case((Attendance.status == "absent", 1), else_=0)), 0)
    query = (
        db.session.query(ClassStudent, late.label("late_count"), absent.label("absent_count"))
        .join(Classroom, Classroom.id == ClassStudent.class_id)
        .join(ClassSession, ClassSession.class_id == ClassStudent.class_id)
        .join(
            Attendance,
            (Attendance.session_id == ClassSession.id) & (Attendance.student_id == ClassStudent.student_id),
        )
        .filter(ClassStudent.status == "active")
        .group_by(ClassStudent.id)
        .having((late + absent) >= WARNING_THRESHOLD)
    )
    scope = resolve_branch_scope(actor, branch_id)
    if scope is not None:
        query = query.filter(Classroom.branch_id == scope)

    items = []
    for enrollment, late_count, absent_count in query.all():
        student = enrollment.student
        items.append(
            {
                "student_id": student.id,
                "student_code": student.student_code,
                "full_name": student.full_name,
                "parent_name": student.parent_name,
                "parent_phone": student.parent_phone,
                "class_id": enrollment.class_id,
                "class_name": enrollment.classroom.class_name,
                "late_count": int(late_count),
                "absent_count": int(absent_count),
                "total": int(late_count) + int(absent_count),
            }
        )
    items.sort(key=lambda i: (-i["total"], -i["absent_count"], i["full_name"]))
    return items


def student_attendance(actor, student_id, class_id=None):
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found.")
    if student.branch_id is not None:
        ensure_branch_access(actor, student.branch_id)

    query = (
        db.session.query(Attendance, ClassSession)
        .join(ClassSession, ClassSession.id == Attendance.session_id)
        .filter(Attendance.student_id == student.id)
    )
    if class_id:
        query = query.filter(ClassSession.class_id == class_id)
    rows = query.order_by(ClassSession.session_date.desc()).all()
    return [
        {
            "session_id": session.id,
            "class_id": session.class_id,
            "session_number": session.session_number,
            "session_date": iso(session.session_date),
            "status": mark.status,
            "note": mark.note,
        }
        for mark, session in rows
    ]
