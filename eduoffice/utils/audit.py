import json

from eduoffice.extensions import db
from eduoffice.models import AuditLog


def add_audit_log(user_id, type_event, details=None, student_id=None, lead_id=None, branch_id=None, action=None):
    """Queue an audit row in the current transaction; the caller commits."""
    if isinstance(details, dict):
        details = json.dumps(details, default=str, ensure_ascii=False)
    row = AuditLog(
        user_id=user_id,
        type_event=type_event,
        details=details,
        student_id=student_id,
        lead_id=lead_id,
        branch_id=branch_id,
        action=action,
    )
    db.session.add(row)
    return row
