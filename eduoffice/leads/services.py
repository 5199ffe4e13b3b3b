from datetime import datetime, time, timedelta
from html import escape

from dateutil.relativedelta import relativedelta
from flask import current_app
from sqlalchemy import func, or_

from eduoffice.errors import ConflictError, NotFoundError, PermissionDenied, ValidationFailure
from eduoffice.extensions import db
from eduoffice.fees.services import calculate_sessions_for_package, fee_status_for_payment
from eduoffice.models import (
    LEAD_STATUSES,
    Classroom,
    Lead,
    LeadCallLog,
    Package,
    Revenue,
    Student,
    StudentLevelHistory,
    TrialClassStudent,
    TrialStudent,
)
from eduoffice.utils.audit import add_audit_log
from eduoffice.utils.authz import branch_code, ensure_branch_access, resolve_branch_scope, resolve_create_branch
from eduoffice.utils.dates import iso
from eduoffice.utils.sequences import allocate_code, lock_key
from eduoffice.utils.transactions import atomic


DEFAULT_TRIAL_MAX_SESSIONS = 3
LEAD_CODE_FALLBACK_PREFIX = "LD"
STUDENT_CODE_FALLBACK_PREFIX = "HS"


def lead_to_dict(lead):
    return {
        "id": lead.id,
        "code": lead.code,
        "branch_id": lead.branch_id,
        "customer_name": lead.customer_name,
        "customer_phone": lead.customer_phone,
        "customer_email": lead.customer_email,
        "student_name": lead.student_name,
        "student_birth_year": lead.student_birth_year,
        "subject_id": lead.subject_id,
        "level_id": lead.level_id,
        "scheduled_date": iso(lead.scheduled_date),
        "scheduled_time": lead.scheduled_time.strftime("%H:%M") if lead.scheduled_time else None,
        "status": lead.status,
        "trial_class_id": lead.trial_class_id,
        "trial_sessions_attended": lead.trial_sessions_attended,
        "trial_sessions_max": lead.trial_sessions_max,
        "rating": lead.rating,
        "feedback": lead.feedback,
        "sale_id": lead.sale_id,
        "source": lead.source,
        "note": lead.note,
        "expected_revenue": lead.expected_revenue,
        "actual_revenue": lead.actual_revenue,
        "converted_student_id": lead.converted_student_id,
        "converted_at": iso(lead.converted_at),
        "created_at": iso(lead.created_at),
    }


def _get_lead(lead_id, actor):
    lead = db.session.get(Lead, lead_id)
    if lead is None:
        raise NotFoundError("Lead not found.")
    if lead.branch_id is not None:
        ensure_branch_access(actor, lead.branch_id)
    return lead


def _ensure_not_converted(lead):
    if lead.status == "converted":
        raise ConflictError(
            f"Lead {lead.code} was already converted.",
            payload={"lead_id": lead.id, "converted_student_id": lead.converted_student_id},
        )


def find_by_phone(phone, branch_scope=None):
    query = Lead.query.filter(Lead.customer_phone == phone)
    if branch_scope is not None:
        query = query.filter(Lead.branch_id == branch_scope)
    return query.order_by(Lead.created_at.desc(), Lead.id.desc()).first()


def check_duplicate_phone(actor, phone, branch_id=None):
    phone = (phone or "").strip()
    if not phone:
        raise ValidationFailure("phone is required.")
    lead = find_by_phone(phone, resolve_branch_scope(actor, branch_id))
    return lead_to_dict(lead) if lead else None


def _new_leads_message(leads, actor_id):
    first = leads[0]
    lines = [
        "<b>New lead</b>" if len(leads) == 1 else f"<b>New leads ({len(leads)} students)</b>",
        f"Parent: {escape(first.customer_name)} - {escape(first.customer_phone)}",
    ]
    for lead in leads:
        lines.append(f"{escape(lead.code)}: {escape(lead.student_name)}")
    if first.scheduled_date:
        when = first.scheduled_date.isoformat()
        if first.scheduled_time:
            when += " " + first.scheduled_time.strftime("%H:%M")
        lines.append(f"Scheduled: {when}")
    if first.source:
        lines.append(f"Source: {escape(first.source)}")
    lines.append(f"Created by user #{actor_id}")
    return "\n".join(lines)


def create_leads(
    actor,
    customer_name,
    customer_phone,
    students,
    customer_email=None,
    scheduled_date=None,
    scheduled_time=None,
    subject_id=None,
    level_id=None,
    source=None,
    note=None,
    expected_revenue=0,
    sale_id=None,
    branch_id=None,
):
    """Create one lead per student of a family.

    Returns ``(result, events)``; events are dispatched by the caller once the
    transaction is committed.
    """
    customer_name = (customer_name or "").strip()
    customer_phone = (customer_phone or "").strip()
    if not customer_name or not customer_phone:
        raise ValidationFailure("Customer name and phone are required.")

    students = [s for s in students or [] if (s.get("name") or "").strip()]
    if not students:
        raise ValidationFailure("At least one student name is required.")

    target_branch = resolve_create_branch(actor, branch_id)
    prefix = branch_code(target_branch, default=LEAD_CODE_FALLBACK_PREFIX)
    status = "scheduled" if scheduled_date and scheduled_time else "new"
    if len(students) > 1:
        note = f"{note or ''} [Siblings: {len(students)} students]".strip()

    with atomic():
        # The phone check and the inserts run under one lock per phone number.
        lock_key(f"lead-phone:{customer_phone}")
        existing = find_by_phone(customer_phone)
        if existing is not None and existing.status != "cancelled":
            raise ConflictError(
                f"Phone number already registered (lead {existing.code}).",
                payload=lead_to_dict(existing),
            )

        leads = []
        for item in students:
            lead = Lead(
                branch_id=target_branch,
                code=allocate_code("lead", prefix),
                customer_name=customer_name,
                customer_phone=customer_phone,
                customer_email=customer_email,
                student_name=item["name"].strip(),
                student_birth_year=item.get("birth_year"),
                subject_id=item.get("subject_id") or subject_id,
                level_id=item.get("level_id") or level_id,
                scheduled_date=scheduled_date,
                scheduled_time=scheduled_time,
                status=status,
                sale_id=sale_id or actor.id,
                source=source,
                note=note,
                expected_revenue=float(expected_revenue or 0),
                trial_sessions_max=DEFAULT_TRIAL_MAX_SESSIONS,
            )
            db.session.add(lead)
            leads.append(lead)
        db.session.flush()

    current_app.logger.info("Leads created: %s", ", ".join(l.code for l in leads))
    result = {
        "ids": [l.id for l in leads],
        "codes": [l.code for l in leads],
        "status": status,
        "count": len(leads),
    }
    events = [{"channel": "telegram", "message": _new_leads_message(leads, actor.id)}]
    return result, events


def get_lead(actor, lead_id):
    lead = _get_lead(lead_id, actor)
    data = lead_to_dict(lead)
    data["call_logs"] = [call_log_to_dict(c) for c in sorted(lead.call_logs, key=lambda c: c.called_at, reverse=True)]
    return data


def leads_query(actor, filters):
    query = Lead.query
    scope = resolve_branch_scope(actor, filters.get("branch_id"))
    if scope is not None:
        query = query.filter(Lead.branch_id == scope)
    if not actor.can("leads.view_all"):
        query = query.filter(Lead.sale_id == actor.id)
    elif filters.get("sale_id"):
        query = query.filter(Lead.sale_id == filters["sale_id"])

    if filters.get("status"):
        query = query.filter(Lead.status == filters["status"])
    if filters.get("source"):
        query = query.filter(Lead.source == filters["source"])
    if filters.get("from_date"):
        query = query.filter(Lead.created_at >= datetime.combine(filters["from_date"], time.min))
    if filters.get("to_date"):
        query = query.filter(Lead.created_at < datetime.combine(filters["to_date"] + timedelta(days=1), time.min))
    if filters.get("search"):
        term = f"%{filters['search'].strip()}%"
        query = query.filter(
            or_(
                Lead.code.ilike(term),
                Lead.customer_name.ilike(term),
                Lead.customer_phone.ilike(term),
                Lead.student_name.ilike(term),
            )
        )
    return query.order_by(Lead.created_at.desc(), Lead.id.desc())


def lead_stats(actor, branch_id=None):
    query = db.session.query(Lead.status, func.count(Lead.id))
    scope = resolve_branch_scope(actor, branch_id)
    if scope is not None:
        query = query.filter(Lead.branch_id == scope)
    if not actor.can("leads.view_all"):
        query = query.filter(Lead.sale_id == actor.id)
    counts = {status: 0 for status in LEAD_STATUSES}
    for status, count in query.group_by(Lead.status).all():
        counts[status] = count
    counts["total"] = sum(counts[s] for s in LEAD_STATUSES)
    return counts


UPDATABLE_FIELDS = (
    "customer_name",
    "customer_email",
    "student_name",
    "student_birth_year",
    "subject_id",
    "level_id",
    "scheduled_date",
    "scheduled_time",
    "source",
    "note",
    "expected_revenue",
    "sale_id",
    "rating",
    "feedback",
)


def update_lead(actor, lead_id, changes):
    lead = _get_lead(lead_id, actor)
    status = changes.get("status")
    if status is not None:
        if status not in LEAD_STATUSES:
            raise ValidationFailure(f"Invalid lead status: {status}.")
        if status == "converted":
            raise ValidationFailure("Use the convert operation to convert a lead.")
        if status != lead.status:
            _ensure_not_converted(lead)

    with atomic():
        for field in UPDATABLE_FIELDS:
            if field in changes and changes[field] is not None:
                setattr(lead, field, changes[field])
        if status is not None:
            lead.status = status
    return lead_to_dict(lead)


def delete_lead(actor, lead_id):
    lead = _get_lead(lead_id, actor)
    if lead.status == "converted":
        raise ConflictError("Converted leads cannot be deleted.")
    with atomic():
        TrialStudent.query.filter_by(lead_id=lead.id).update({"lead_id": None})
        db.session.delete(lead)
    return {"id": lead_id}


def schedule_lead(actor, lead_id, scheduled_date, scheduled_time, note=None):
    lead = _get_lead(lead_id, actor)
    _ensure_not_converted(lead)
    with atomic():
        lead.scheduled_date = scheduled_date
        lead.scheduled_time = scheduled_time
        lead.status = "scheduled"
        if note:
            lead.note = note
    return lead_to_dict(lead)


def mark_attended(actor, lead_id, rating=None, feedback=None):
    lead = _get_lead(lead_id, actor)
    if lead.status == "converted":
        return lead_to_dict(lead)

    with atomic():
        if lead.status == "trial":
            lead.trial_sessions_attended = (lead.trial_sessions_attended or 0) + 1
        elif lead.status in ("scheduled", "new"):
            lead.status = "attended"
        if rating is not None:
            lead.rating = rating
        if feedback:
            lead.feedback = feedback
    return lead_to_dict(lead)


def mark_no_show(actor, lead_id):
    lead = _get_lead(lead_id, actor)
    _ensure_not_converted(lead)
    with atomic():
        lead.status = "no_show"
    return lead_to_dict(lead)


def assign_trial_class(actor, lead_id, class_id, max_sessions=DEFAULT_TRIAL_MAX_SESSIONS):
    lead = _get_lead(lead_id, actor)
    _ensure_not_converted(lead)
    if not max_sessions or max_sessions < 1:
        raise ValidationFailure("max_sessions must be at least 1.")
    classroom = db.session.get(Classroom, class_id)
    if classroom is None:
        raise NotFoundError("Class not found.")
    ensure_branch_access(actor, classroom.branch_id)

    with atomic():
        lead.trial_class_id = classroom.id
        lead.trial_sessions_max = max_sessions
        lead.status = "trial"

        trial = TrialStudent.query.filter_by(lead_id=lead.id).first()
        if trial is None:
            prefix = "TR-" + branch_code(lead.branch_id or classroom.branch_id, default=STUDENT_CODE_FALLBACK_PREFIX)
            trial = TrialStudent(
                branch_id=lead.branch_id or classroom.branch_id,
                code=allocate_code("trial", prefix),
                lead_id=lead.id,
                full_name=lead.student_name,
                birth_year=lead.student_birth_year,
                parent_name=lead.customer_name,
                parent_phone=lead.customer_phone,
                subject_id=lead.subject_id,
                sale_id=lead.sale_id,
            )
            db.session.add(trial)
        trial.max_sessions = max_sessions
        trial.status = "active"
        db.session.flush()

        enrolled = TrialClassStudent.query.filter_by(class_id=classroom.id, trial_student_id=trial.id).first()
        if enrolled is None:
            db.session.add(TrialClassStudent(class_id=classroom.id, trial_student_id=trial.id))

    data = lead_to_dict(lead)
    data["trial_student_id"] = trial.id
    return data


def complete_session(actor, lead_id):
    lead = _get_lead(lead_id, actor)
    _ensure_not_converted(lead)
    with atomic():
        lead.trial_sessions_attended = (lead.trial_sessions_attended or 0) + 1
        lead.status = "waiting"

    data = lead_to_dict(lead)
    data["trial_completed"] = lead.trial_sessions_attended >= (lead.trial_sessions_max or DEFAULT_TRIAL_MAX_SESSIONS)
    return data


def _mark_converted(lead, student):
    lead.status = "converted"
    lead.converted_student_id = student.id
    lead.converted_at = datetime.utcnow()
    lead.fee_total = student.fee_total
    lead.deposit_amount = student.deposit_amount
    lead.actual_revenue = student.actual_revenue
    db.session.flush()


def convert_to_student(actor, lead_id, overrides=None):
    """Create the enrolled Student for a lead and close the lead, atomically."""
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    lead = _get_lead(lead_id, actor)
    _ensure_not_converted(lead)

    package = None
    if overrides.get("package_id"):
        package = db.session.get(Package, overrides["package_id"])
        if package is None:
            raise NotFoundError("Package not found.")

    fee_original = float(overrides.get("fee_original", lead.expected_revenue or 0))
    discount = float(overrides.get("discount_amount", 0))
    fee_total = float(overrides.get("fee_total", lead.fee_total or max(0.0, fee_original - discount)))
    deposit = float(overrides.get("deposit_amount", 0))
    paid = float(overrides.get("paid_amount", 0))
    if min(fee_original, discount, fee_total, deposit, paid) < 0:
        raise ValidationFailure("Amounts cannot be negative.")
    total_paid = deposit + paid
    scholarship_months = int(overrides.get("scholarship_months", 0))
    start_date = overrides.get("start_date")

    total_sessions = overrides.get("total_sessions")
    if total_sessions is None:
        total_sessions = calculate_sessions_for_package(package, scholarship_months) if package else 0
    fee_end_date = overrides.get("fee_end_date")
    if fee_end_date is None and package is not None and start_date is not None:
        fee_end_date = start_date + relativedelta(months=package.months + scholarship_months)

    branch_id = lead.branch_id or resolve_create_branch(actor, overrides.get("branch_id"))
    level_id = overrides.get("level_id", lead.level_id)
    fee_status = fee_status_for_payment(total_paid, fee_total)

    with atomic():
        student = Student(
            branch_id=branch_id,
            student_code=allocate_code("student", branch_code(branch_id, default=STUDENT_CODE_FALLBACK_PREFIX)),
            full_name=overrides.get("full_name", lead.student_name),
            birth_year=overrides.get("birth_year", lead.student_birth_year),
            gender=overrides.get("gender"),
            school=overrides.get("school"),
            parent_name=overrides.get("parent_name", lead.customer_name),
            parent_phone=overrides.get("parent_phone", lead.customer_phone),
            parent_email=overrides.get("parent_email", lead.customer_email),
            address=overrides.get("address"),
            subject_id=overrides.get("subject_id", lead.subject_id),
            level_id=level_id,
            current_level_id=level_id,
            sessions_per_week=int(overrides.get("sessions_per_week", 2)),
            start_date=start_date,
            package_id=package.id if package else None,
            fee_original=fee_original,
            discount_amount=discount,
            fee_total=fee_total,
            deposit_amount=deposit,
            paid_amount=total_paid,
            actual_revenue=total_paid,
            remaining_amount=max(0.0, fee_total - total_paid),
            scholarship_months=scholarship_months,
            total_sessions=total_sessions,
            remaining_sessions=total_sessions,
            fee_status=fee_status,
            payment_status=fee_status,
            fee_end_date=fee_end_date,
            status="pending",
            note=overrides.get("note", lead.note),
            sale_id=overrides.get("sale_id", lead.sale_id),
            lead_id=lead.id,
        )
        db.session.add(student)
        db.session.flush()

        if level_id:
            db.session.add(
                StudentLevelHistory(
                    student_id=student.id,
                    level_id=level_id,
                    status="in_progress",
                    started_at=start_date or datetime.utcnow().date(),
                )
            )
        if total_paid > 0:
            db.session.add(
                Revenue(
                    branch_id=branch_id,
                    student_id=student.id,
                    ec_id=student.sale_id,
                    amount=total_paid,
                    revenue_type="tuition",
                    payment_method=overrides.get("payment_method"),
                    note=f"Enrollment payment (lead {lead.code})",
                    created_by=actor.id,
                )
            )
        add_audit_log(
            actor.id,
            "lead",
            details={"lead_code": lead.code, "student_code": student.student_code},
            student_id=student.id,
            lead_id=lead.id,
            branch_id=branch_id,
            action="converted",
        )
        _mark_converted(lead, student)

    current_app.logger.info("Lead %s converted to student %s", lead.code, student.student_code)
    result = {
        "lead_id": lead.id,
        "student_id": student.id,
        "student_code": student.student_code,
        "status": student.status,
        "fee_status": student.fee_status,
        "remaining_sessions": student.remaining_sessions,
        "fee_end_date": iso(student.fee_end_date),
    }
    message = "\n".join(
        [
            "<b>Lead converted</b>",
            f"{escape(lead.code)} -> {escape(student.student_code)}: {escape(student.full_name)}",
            f"Parent: {escape(student.parent_name or '')} - {escape(student.parent_phone or '')}",
            f"Paid: {total_paid:,.0f} / {fee_total:,.0f}",
        ]
    )
    return result, [{"channel": "telegram", "message": message}]


def call_log_to_dict(row):
    return {
        "id": row.id,
        "lead_id": row.lead_id,
        "user_id": row.user_id,
        "result": row.result,
        "duration_seconds": row.duration_seconds,
        "note": row.note,
        "called_at": iso(row.called_at),
    }


def add_call_log(actor, lead_id, result, duration_seconds=0, note=None):
    lead = _get_lead(lead_id, actor)
    if not actor.can("leads.view_all") and lead.sale_id not in (None, actor.id):
        raise PermissionDenied("Only the lead owner can log calls.")
    with atomic():
        row = LeadCallLog(
            lead_id=lead.id,
            user_id=actor.id,
            result=result,
            duration_seconds=duration_seconds or 0,
            note=note,
        )
        db.session.add(row)
        db.session.flush()
    return call_log_to_dict(row)


def list_call_logs(actor, lead_id):
    lead = _get_lead(lead_id, actor)
    rows = LeadCallLog.query.filter_by(lead_id=lead.id).order_by(LeadCallLog.called_at.desc()).all()
    return [call_log_to_dict(r) for r in rows]


TRIAL_FOLLOWUP_MIN_SESSIONS = 2


def trial_followups(min_sessions=TRIAL_FOLLOWUP_MIN_SESSIONS, branch_id=None):
    """Active trial students who sat enough sessions to be called back.

    Returns ``(items, events)`` with a single summary event when there is
    anything to report.
    """
    query = TrialStudent.query.filter(
        TrialStudent.status == "active",
        TrialStudent.sessions_attended >= min_sessions,
    )
    if branch_id:
        query = query.filter(TrialStudent.branch_id == branch_id)
    rows = query.order_by(TrialStudent.sessions_attended.desc(), TrialStudent.id.asc()).all()

    items = []
    for trial in rows:
        lead = db.session.get(Lead, trial.lead_id) if trial.lead_id else None
        if lead is not None and lead.status == "converted":
            continue
        items.append(
            {
                "trial_student_id": trial.id,
                "code": trial.code,
                "full_name": trial.full_name,
                "parent_name": trial.parent_name,
                "parent_phone": trial.parent_phone,
                "sessions_attended": trial.sessions_attended,
                "max_sessions": trial.max_sessions,
                "lead_code": lead.code if lead else None,
                "sale_id": trial.sale_id,
            }
        )
    if not items:
        return items, []

    lines = [f"<b>Trial follow-up ({len(items)})</b>"]
    for item in items:
        lines.append(
            f"{escape(item['code'])}: {escape(item['full_name'])} "
            f"{item['sessions_attended']}/{item['max_sessions']} - {escape(item['parent_phone'] or '')}"
        )
    return items, [{"channel": "telegram", "message": "\n".join(lines)}]
