from datetime import date, datetime

from sqlalchemy.exc import IntegrityError

from eduoffice.errors import ConflictError, InvalidStateError
from eduoffice.extensions import db
from eduoffice.models import StaffCheckin
from eduoffice.utils.authz import resolve_branch_scope, resolve_create_branch
from eduoffice.utils.dates import iso
from eduoffice.utils.transactions import atomic


def checkin_to_dict(row):
    worked = None
    if row.checkout_time and row.checkin_time:
        worked = int((row.checkout_time - row.checkin_time).total_seconds() // 60)
    return {
        "id": row.id,
        "user_id": row.user_id,
        "full_name": row.user.full_name or row.user.username if row.user else None,
        "branch_id": row.branch_id,
        "checkin_date": iso(row.checkin_date),
        "checkin_time": iso(row.checkin_time),
        "checkout_time": iso(row.checkout_time),
        "worked_minutes": worked,
        "note": row.note,
    }


def check_in(actor, branch_id=None, note=None, now=None):
    now = now or datetime.now()
    existing = StaffCheckin.query.filter_by(user_id=actor.id, checkin_date=now.date()).first()
    if existing is not None:
        raise ConflictError("You have already checked in today.", payload=checkin_to_dict(existing))

    target_branch = resolve_create_branch(actor, branch_id) if (branch_id or actor.branch_ids) else None
    try:
        with atomic():
            row = StaffCheckin(
                user_id=actor.id,
                branch_id=target_branch,
                checkin_date=now.date(),
                checkin_time=now,
                note=note,
            )
            db.session.add(row)
            db.session.flush()
    except IntegrityError as exc:
        raise ConflictError("You have already checked in today.") from exc
    return checkin_to_dict(row)


def check_out(actor, note=None, now=None):
    now = now or datetime.now()
    row = StaffCheckin.query.filter_by(user_id=actor.id, checkin_date=now.date()).first()
    if row is None:
        raise InvalidStateError("You have not checked in today.")
    if row.checkout_time is not None:
        raise ConflictError("You have already checked out today.", payload=checkin_to_dict(row))
    with atomic():
        row.checkout_time = now
        if note:
            row.note = f"{row.note}\n{note}" if row.note else note
    return checkin_to_dict(row)


def list_checkins(actor, day=None, branch_id=None):
    day = day or date.today()
    query = StaffCheckin.query.filter_by(checkin_date=day)
    if actor.can("checkins.view_all"):
        scope = resolve_branch_scope(actor, branch_id)
        if scope is not None:
            query = query.filter(StaffCheckin.branch_id == scope)
    else:
        query = query.filter(StaffCheckin.user_id == actor.id)
    return [checkin_to_dict(r) for r in query.order_by(StaffCheckin.checkin_time.asc()).all()]
