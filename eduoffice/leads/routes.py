from flask import Blueprint, request
from flask_login import login_required

from eduoffice.errors import ValidationFailure
from eduoffice.leads import services
from eduoffice.leads.forms import (
    AssignTrialForm,
    AttendedForm,
    CallLogForm,
    ConvertForm,
    LeadCreateForm,
    LeadStudentForm,
    LeadUpdateForm,
    ScheduleForm,
)
from eduoffice.utils.authz import acting_user, capability_required
from eduoffice.utils.dates import parse_date
from eduoffice.utils.notifier import dispatch_events
from eduoffice.utils.pagination import page_args, paginate
from eduoffice.utils.responses import int_arg, ok, ok_page
from eduoffice.utils.validation import form_data, json_body, json_list, validate_form


leads_bp = Blueprint("leads", __name__, url_prefix="/leads")


@leads_bp.route("/")
@login_required
@capability_required("leads.manage")
def list_leads():
    try:
        filters = {
            "branch_id": int_arg(request.args, "branch_id"),
            "sale_id": int_arg(request.args, "sale_id"),
            "status": request.args.get("status"),
            "source": request.args.get("source"),
            "search": request.args.get("search"),
            "from_date": parse_date(request.args.get("from_date")),
            "to_date": parse_date(request.args.get("to_date")),
        }
    except ValueError as exc:
        raise ValidationFailure("Dates must use the YYYY-MM-DD format.") from exc
    page, limit = page_args(request.args)
    query = services.leads_query(acting_user(), filters)
    return ok_page(paginate(query, page, limit, services.lead_to_dict))


@leads_bp.route("/", methods=["POST"])
@login_required
@capability_required("leads.manage")
def create_lead():
    body = json_body()
    form = validate_form(LeadCreateForm, body)
    data = form_data(form)

    students = []
    for item in json_list(body, "students"):
        students.append(form_data(validate_form(LeadStudentForm, item)))
    if not students and data.get("student_name"):
        students.append({"name": data["student_name"], "birth_year": data.get("student_birth_year")})

    result, events = services.create_leads(
        acting_user(),
        customer_name=data["customer_name"],
        customer_phone=data["customer_phone"],
        students=students,
        customer_email=data.get("customer_email"),
        scheduled_date=data.get("scheduled_date"),
        scheduled_time=data.get("scheduled_time"),
        subject_id=data.get("subject_id"),
        level_id=data.get("level_id"),
        source=data.get("source"),
        note=data.get("note"),
        expected_revenue=data.get("expected_revenue") or 0,
        sale_id=data.get("sale_id"),
        branch_id=data.get("branch_id"),
    )
    dispatch_events(events)
    return ok(result, 201)


@leads_bp.route("/stats")
@login_required
@capability_required("leads.manage")
def lead_stats():
    return ok(services.lead_stats(acting_user(), int_arg(request.args, "branch_id")))


@leads_bp.route("/check-phone")
@login_required
@capability_required("leads.manage")
def check_phone():
    phone = request.args.get("phone", "")
    lead = services.check_duplicate_phone(acting_user(), phone, int_arg(request.args, "branch_id"))
    return ok({"exists": lead is not None, "lead": lead})


@leads_bp.route("/<int:lead_id>")
@login_required
@capability_required("leads.manage")
def get_lead(lead_id):
    return ok(services.get_lead(acting_user(), lead_id))


@leads_bp.route("/<int:lead_id>", methods=["PUT"])
@login_required
@capability_required("leads.manage")
def update_lead(lead_id):
    form = validate_form(LeadUpdateForm)
    changes = {k: v for k, v in form_data(form).items() if v is not None}
    return ok(services.update_lead(acting_user(), lead_id, changes))


@leads_bp.route("/<int:lead_id>", methods=["DELETE"])
@login_required
@capability_required("leads.manage")
def delete_lead(lead_id):
    return ok(services.delete_lead(acting_user(), lead_id))


@leads_bp.route("/<int:lead_id>/schedule", methods=["POST"])
@login_required
@capability_required("leads.manage")
def schedule_lead(lead_id):
    data = form_data(validate_form(ScheduleForm))
    return ok(services.schedule_lead(acting_user(), lead_id, data["scheduled_date"], data["scheduled_time"], data.get("note")))


@leads_bp.route("/<int:lead_id>/attended", methods=["POST"])
@login_required
@capability_required("leads.manage")
def mark_attended(lead_id):
    data = form_data(validate_form(AttendedForm))
    return ok(services.mark_attended(acting_user(), lead_id, rating=data.get("rating"), feedback=data.get("feedback")))


@leads_bp.route("/<int:lead_id>/no-show", methods=["POST"])
@login_required
@capability_required("leads.manage")
def mark_no_show(lead_id):
    return ok(services.mark_no_show(acting_user(), lead_id))


@leads_bp.route("/<int:lead_id>/assign-trial", methods=["POST"])
@login_required
@capability_required("leads.manage")
def assign_trial(lead_id):
    data = form_data(validate_form(AssignTrialForm))
    max_sessions = data.get("max_sessions") or services.DEFAULT_TRIAL_MAX_SESSIONS
    return ok(services.assign_trial_class(acting_user(), lead_id, data["class_id"], max_sessions))


@leads_bp.route("/<int:lead_id>/complete-session", methods=["POST"])
@login_required
@capability_required("leads.manage")
def complete_session(lead_id):
    return ok(services.complete_session(acting_user(), lead_id))


@leads_bp.route("/<int:lead_id>/convert", methods=["POST"])
@login_required
@capability_required("leads.manage")
def convert_lead(lead_id):
    overrides = form_data(validate_form(ConvertForm))
    result, events = services.convert_to_student(acting_user(), lead_id, overrides)
    dispatch_events(events)
    return ok(result, 201)


@leads_bp.route("/<int:lead_id>/call-logs")
@login_required
@capability_required("leads.manage")
def list_call_logs(lead_id):
    return ok(services.list_call_logs(acting_user(), lead_id))


@leads_bp.route("/<int:lead_id>/call-logs", methods=["POST"])
@login_required
@capability_required("leads.manage")
def add_call_log(lead_id):
    data = form_data(validate_form(CallLogForm))
    return ok(services.add_call_log(acting_user(), lead_id, data["result"], data.get("duration_seconds") or 0, data.get("note")), 201)
