from flask import Blueprint, request
from flask_login import login_required

from eduoffice.errors import ValidationFailure
from eduoffice.staff import services
from eduoffice.utils.authz import acting_user
from eduoffice.utils.dates import parse_date
from eduoffice.utils.responses import int_arg, ok
from eduoffice.utils.validation import json_body


staff_bp = Blueprint("staff", __name__, url_prefix="/staff")


@staff_bp.route("/checkin", methods=["POST"])
@login_required
def checkin():
    body = json_body()
    branch_id = body.get("branch_id")
    if branch_id is not None and not isinstance(branch_id, int):
        raise ValidationFailure("branch_id must be an integer.")
    return ok(services.check_in(acting_user(), branch_id=branch_id, note=body.get("note")), 201)


@staff_bp.route("/checkout", methods=["POST"])
@login_required
def checkout():
    return ok(services.check_out(acting_user(), note=json_body().get("note")))


@staff_bp.route("/checkins")
@login_required
def list_checkins():
    try:
        day = parse_date(request.args.get("date"))
    except ValueError as exc:
        raise ValidationFailure("date must use the YYYY-MM-DD format.") from exc
    return ok(services.list_checkins(acting_user(), day, int_arg(request.args, "branch_id")))
