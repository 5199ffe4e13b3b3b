from flask import Blueprint, request
from flask_login import login_required

from eduoffice.errors import ValidationFailure
from eduoffice.fees import services
from eduoffice.fees.forms import BranchPriceForm, PaymentForm, PromotionForm, PromotionUpdateForm, RenewalForm
from eduoffice.utils.authz import acting_user, capability_required, resolve_branch_scope
from eduoffice.utils.notifier import dispatch_events
from eduoffice.utils.responses import int_arg, ok
from eduoffice.utils.validation import form_data, validate_form


fees_bp = Blueprint("fees", __name__, url_prefix="/fees")


def _month_arg():
    month = (request.args.get("month") or "").strip()
    parts = month.split("-")
    if len(parts) != 2 or not all(p.isdigit() for p in parts) or not 1 <= int(parts[1]) <= 12:
        raise ValidationFailure("month must use the YYYY-MM format.")
    return month


def _branch_for(actor):
    return resolve_branch_scope(actor, int_arg(request.args, "branch_id"))


@fees_bp.route("/packages")
@login_required
def list_packages():
    return ok(services.list_packages(_branch_for(acting_user())))


@fees_bp.route("/packages/<int:package_id>/price")
@login_required
def get_price(package_id):
    return ok(services.get_price_for_branch(package_id, _branch_for(acting_user())))


@fees_bp.route("/packages/<int:package_id>/price", methods=["PUT"])
@login_required
@capability_required("fees.manage")
def set_price(package_id):
    data = form_data(validate_form(BranchPriceForm))
    return ok(services.set_branch_price(acting_user(), package_id, data["branch_id"], data.get("price")))


@fees_bp.route("/packages/<int:package_id>/sessions")
@login_required
def calculate_sessions(package_id):
    months = int_arg(request.args, "scholarship_months") or 0
    return ok(services.calculate_sessions(package_id, _branch_for(acting_user()), months))


@fees_bp.route("/renewals", methods=["POST"])
@login_required
@capability_required("fees.manage")
def create_renewal():
    data = form_data(validate_form(RenewalForm))
    result, events = services.create_renewal(
        acting_user(),
        data["student_id"],
        data["package_id"],
        promotion_id=data.get("promotion_id"),
        scholarship_months=data.get("scholarship_months"),
        deposit_amount=data.get("deposit_amount") or 0,
        paid_amount=data.get("paid_amount"),
        renewal_type=data.get("renewal_type") or "renew",
        new_class_id=data.get("new_class_id"),
        note=data.get("note"),
    )
    dispatch_events(events)
    return ok(result, 201)


@fees_bp.route("/renewals/students/<int:student_id>")
@login_required
@capability_required("fees.manage")
def renewal_history(student_id):
    return ok(services.renewal_history(acting_user(), student_id))


@fees_bp.route("/renewals/report")
@login_required
@capability_required("fees.manage")
def renewal_report():
    return ok(services.renewal_report(acting_user(), _month_arg(), int_arg(request.args, "branch_id")))


@fees_bp.route("/renewals/due")
@login_required
@capability_required("fees.manage")
def renewals_due():
    return ok(services.students_for_renewal(acting_user(), _month_arg(), int_arg(request.args, "branch_id")))


@fees_bp.route("/payments", methods=["POST"])
@login_required
@capability_required("payments.confirm")
def confirm_payment():
    data = form_data(validate_form(PaymentForm))
    result = services.confirm_payment(
        acting_user(),
        data["student_id"],
        data["amount"],
        method=data.get("method"),
        proof_url=data.get("proof_url"),
        note=data.get("note"),
    )
    return ok(result, 201)


@fees_bp.route("/promotions")
@login_required
@capability_required("fees.manage")
def list_promotions():
    return ok(services.list_promotions())


@fees_bp.route("/promotions/active")
@login_required
def active_promotions():
    return ok(services.list_promotions(active_only=True))


@fees_bp.route("/promotions", methods=["POST"])
@login_required
@capability_required("fees.manage")
def create_promotion():
    data = form_data(validate_form(PromotionForm))
    name = data.pop("name")
    return ok(services.create_promotion(acting_user(), name, **{k: v for k, v in data.items() if v is not None}), 201)


@fees_bp.route("/promotions/<int:promotion_id>", methods=["PUT"])
@login_required
@capability_required("fees.manage")
def update_promotion(promotion_id):
    changes = {k: v for k, v in form_data(validate_form(PromotionUpdateForm)).items() if v is not None}
    return ok(services.update_promotion(acting_user(), promotion_id, changes))
