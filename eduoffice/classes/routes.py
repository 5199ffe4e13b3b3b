from flask import Blueprint, request
from flask_login import login_required

from eduoffice.classes import services
from eduoffice.classes.forms import CancelSessionForm, ClassForm, EnrollForm, GenerateSessionsForm, RescheduleForm, SubstituteForm
from eduoffice.errors import ValidationFailure
from eduoffice.utils.authz import acting_user, capability_required
from eduoffice.utils.dates import parse_date
from eduoffice.utils.pagination import page_args, paginate
from eduoffice.utils.responses import int_arg, ok, ok_page
from eduoffice.utils.validation import form_data, json_body, validate_form


classes_bp = Blueprint("classes", __name__, url_prefix="/classes")


@classes_bp.route("/")
@login_required
def list_classes():
    filters = {
        "branch_id": int_arg(request.args, "branch_id"),
        "teacher_id": int_arg(request.args, "teacher_id"),
        "status": request.args.get("status"),
        "search": request.args.get("search"),
    }
    page, limit = page_args(request.args)
    query = services.classes_query(acting_user(), filters)
    return ok_page(paginate(query, page, limit, services.class_to_dict))


@classes_bp.route("/", methods=["POST"])
@login_required
@capability_required("classes.manage")
def create_class():
    data = form_data(validate_form(ClassForm))
    class_name = data.pop("class_name")
    branch_id = data.pop("branch_id")
    return ok(services.create_class(acting_user(), class_name, branch_id=branch_id, **data), 201)


@classes_bp.route("/<int:class_id>")
@login_required
def get_class(class_id):
    return ok(services.get_class(acting_user(), class_id))


@classes_bp.route("/<int:class_id>/students", methods=["POST"])
@login_required
@capability_required("classes.manage")
def add_student(class_id):
    data = form_data(validate_form(EnrollForm))
    return ok(services.add_student_to_class(acting_user(), class_id, data["student_id"]), 201)


@classes_bp.route("/<int:class_id>/students/<int:student_id>", methods=["DELETE"])
@login_required
@capability_required("classes.manage")
def remove_student(class_id, student_id):
    return ok(services.remove_student_from_class(acting_user(), class_id, student_id))


@classes_bp.route("/<int:class_id>/sessions")
@login_required
def list_sessions(class_id):
    try:
        from_date = parse_date(request.args.get("from_date"))
        to_date = parse_date(request.args.get("to_date"))
    except ValueError as exc:
        raise ValidationFailure("Dates must use the YYYY-MM-DD format.") from exc
    return ok(services.list_sessions(acting_user(), class_id, from_date, to_date))


@classes_bp.route("/<int:class_id>/sessions/generate", methods=["POST"])
@login_required
@capability_required("classes.manage")
def generate_sessions(class_id):
    data = form_data(validate_form(GenerateSessionsForm))
    count = data.get("count") or services.DEFAULT_SESSION_BATCH
    return ok(services.generate_sessions(acting_user(), class_id, count, data.get("start_date")), 201)


@classes_bp.route("/sessions/<int:session_id>/reschedule", methods=["POST"])
@login_required
@capability_required("classes.manage")
def reschedule_session(session_id):
    body = json_body()
    data = form_data(validate_form(RescheduleForm, body))
    shift = data["shift_following"] if "shift_following" in body else True
    return ok(services.reschedule_session(acting_user(), session_id, data["new_date"], data.get("reason"), shift))


@classes_bp.route("/sessions/<int:session_id>/cancel", methods=["POST"])
@login_required
@capability_required("classes.manage")
def cancel_session(session_id):
    data = form_data(validate_form(CancelSessionForm))
    return ok(services.cancel_session(acting_user(), session_id, data.get("reason")))


@classes_bp.route("/sessions/<int:session_id>/substitute", methods=["POST"])
@login_required
@capability_required("classes.manage")
def assign_substitute(session_id):
    data = form_data(validate_form(SubstituteForm))
    return ok(services.assign_substitute(acting_user(), session_id, data.get("teacher_id")))
