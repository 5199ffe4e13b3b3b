from flask import Blueprint, request
from flask_login import login_required

from eduoffice.errors import ValidationFailure
from eduoffice.fees.services import decrement_session
from eduoffice.students import services
from eduoffice.students.forms import StatusChangeForm, StudentForm, StudentUpdateForm
from eduoffice.utils.authz import acting_user, capability_required
from eduoffice.utils.pagination import page_args, paginate
from eduoffice.utils.responses import int_arg, ok, ok_page
from eduoffice.utils.validation import form_data, json_body, validate_form


students_bp = Blueprint("students", __name__, url_prefix="/students")


@students_bp.route("/")
@login_required
def list_students():
    filters = {
        "branch_id": int_arg(request.args, "branch_id"),
        "class_id": int_arg(request.args, "class_id"),
        "sale_id": int_arg(request.args, "sale_id"),
        "status": request.args.get("status"),
        "fee_status": request.args.get("fee_status"),
        "search": request.args.get("search"),
    }
    page, limit = page_args(request.args)
    query = services.students_query(acting_user(), filters)
    return ok_page(paginate(query, page, limit, services.student_to_dict))


@students_bp.route("/", methods=["POST"])
@login_required
@capability_required("students.manage")
def create_student():
    data = form_data(validate_form(StudentForm))
    full_name = data.pop("full_name")
    branch_id = data.pop("branch_id")
    return ok(services.create_student(acting_user(), full_name, branch_id=branch_id, **data), 201)


@students_bp.route("/<int:student_id>")
@login_required
def get_student(student_id):
    return ok(services.get_student(acting_user(), student_id))


@students_bp.route("/<int:student_id>", methods=["PUT"])
@login_required
@capability_required("students.manage")
def update_student(student_id):
    body = json_body()
    protected = sorted({"fee_status", "payment_status", "actual_revenue", "remaining_sessions", "status"} & set(body))
    if protected:
        raise ValidationFailure(f"Fields cannot be set directly: {', '.join(protected)}.")
    changes = {k: v for k, v in form_data(validate_form(StudentUpdateForm, body)).items() if v is not None}
    changes.pop("branch_id", None)
    changes.pop("package_id", None)
    return ok(services.update_student(acting_user(), student_id, changes))


@students_bp.route("/<int:student_id>/status", methods=["POST"])
@login_required
@capability_required("students.manage")
def change_status(student_id):
    data = form_data(validate_form(StatusChangeForm))
    return ok(
        services.change_status(
            acting_user(),
            student_id,
            data["status"],
            reason=data.get("reason"),
            reserve_until=data.get("reserve_until"),
            expected_return_date=data.get("expected_return_date"),
            refund_amount=data.get("refund_amount"),
        )
    )


@students_bp.route("/<int:student_id>/status-history")
@login_required
def status_history(student_id):
    return ok(services.status_history(acting_user(), student_id))


@students_bp.route("/<int:student_id>/level-history")
@login_required
def level_history(student_id):
    return ok(services.level_history(acting_user(), student_id))


@students_bp.route("/<int:student_id>/consume-session", methods=["POST"])
@login_required
@capability_required("students.manage", "classes.manage")
def consume_session(student_id):
    return ok(decrement_session(student_id, actor=acting_user()))
