from flask import Blueprint, request
from flask_login import login_required

from eduoffice.attendance import services
from eduoffice.attendance.forms import AttendanceRecordForm
from eduoffice.utils.authz import acting_user
from eduoffice.utils.notifier import dispatch_events
from eduoffice.utils.responses import int_arg, ok
from eduoffice.utils.validation import form_data, json_body, json_list, validate_form


attendance_bp = Blueprint("attendance", __name__, url_prefix="/attendance")


@attendance_bp.route("/sessions/<int:session_id>/can-mark")
@login_required
def can_mark(session_id):
    return ok(services.check_can_mark(acting_user(), session_id))


@attendance_bp.route("/sessions/<int:session_id>")
@login_required
def session_roster(session_id):
    return ok(services.session_roster(acting_user(), session_id))


@attendance_bp.route("/sessions/<int:session_id>", methods=["POST"])
@login_required
def mark_attendance(session_id):
    body = json_body()
    records = [form_data(validate_form(AttendanceRecordForm, item)) for item in json_list(body, "records")]
    result, events = services.mark_attendance(acting_user(), session_id, records)
    dispatch_events(events)
    return ok(result)


@attendance_bp.route("/classes/<int:class_id>/report")
@login_required
def class_report(class_id):
    return ok(services.class_report(acting_user(), class_id))


@attendance_bp.route("/warnings")
@login_required
def warnings():
    return ok(services.students_with_warnings(acting_user(), int_arg(request.args, "branch_id")))


@attendance_bp.route("/students/<int:student_id>")
@login_required
def student_attendance(student_id):
    return ok(services.student_attendance(acting_user(), student_id, int_arg(request.args, "class_id")))
