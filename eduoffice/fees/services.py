from datetime import date, datetime
from html import escape

from dateutil.relativedelta import relativedelta
from flask import current_app
from sqlalchemy import func, or_

from eduoffice.errors import ConflictError, InvalidStateError, NotFoundError, ValidationFailure
from eduoffice.extensions import db
from eduoffice.models import (
    DISCOUNT_TYPES,
    BranchPackage,
    Classroom,
    ClassStudent,
    Level,
    Package,
    Promotion,
    Revenue,
    Student,
    StudentLevelHistory,
    StudentRenewal,
)
from eduoffice.utils.audit import add_audit_log
from eduoffice.utils.authz import ensure_branch_access, resolve_branch_scope
from eduoffice.utils.dates import iso, month_bounds
from eduoffice.utils.transactions import atomic


SESSIONS_PER_SCHOLARSHIP_MONTH = 4
EXPIRING_SOON_SESSIONS = 4
LEVEL_SESSION_THRESHOLD = 15
RENEWAL_TYPES = ("renew", "new")


def fee_status_for_payment(actual_revenue, fee_total):
    if fee_total > 0 and actual_revenue >= fee_total:
        return "paid"
    if actual_revenue <= 0:
        return "pending"
    return "partial"


def fee_status_for_sessions(remaining_sessions):
    if remaining_sessions <= 0:
        return "expired"
    if remaining_sessions <= EXPIRING_SOON_SESSIONS:
        return "expiring_soon"
    return "active"


def _get_package(package_id):
    package = db.session.get(Package, package_id)
    if package is None:
        raise NotFoundError("Package not found.")
    return package


def _get_student(student_id, actor=None, lock=False):
    if lock:
        student = Student.query.filter_by(id=student_id).with_for_update().first()
    else:
        student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student not found.")
    if actor is not None and student.branch_id is not None:
        ensure_branch_access(actor, student.branch_id)
    return student


def package_price(package, branch_id):
    override = None
    if branch_id is not None:
        override = (
            BranchPackage.query.filter_by(package_id=package.id, branch_id=branch_id, is_active=True)
            .filter(BranchPackage.price.isnot(None))
            .first()
        )
    return float(override.price if override is not None else package.base_price or 0)


def get_price_for_branch(package_id, branch_id):
    """Branch override when one exists, else the package base price."""
    package = _get_package(package_id)
    return {
        "package_id": package.id,
        "branch_id": branch_id,
        "price": package_price(package, branch_id),
        "base_price": float(package.base_price or 0),
        "months": package.months,
        "sessions_count": package.sessions_count,
        "default_scholarship_months": package.default_scholarship_months or 0,
    }


def calculate_sessions_for_package(package, scholarship_months=0):
    return (package.sessions_count or 0) + int(scholarship_months or 0) * SESSIONS_PER_SCHOLARSHIP_MONTH


def calculate_sessions(package_id, branch_id, scholarship_months=0):
    package = _get_package(package_id)
    if scholarship_months is not None and scholarship_months < 0:
        raise ValidationFailure("scholarship_months cannot be negative.")
    return {
        "package_id": package.id,
        "branch_id": branch_id,
        "base_sessions": package.sessions_count or 0,
        "bonus_sessions": int(scholarship_months or 0) * SESSIONS_PER_SCHOLARSHIP_MONTH,
        "total_sessions": calculate_sessions_for_package(package, scholarship_months),
    }


def set_branch_price(actor, package_id, branch_id, price):
    package = _get_package(package_id)
    ensure_branch_access(actor, branch_id)
    if price is not None and price < 0:
        raise ValidationFailure("price cannot be negative.")
    with atomic():
        row = BranchPackage.query.filter_by(package_id=package.id, branch_id=branch_id).first()
        if row is None:
            row = BranchPackage(package_id=package.id, branch_id=branch_id)
            db.session.add(row)
        row.price = price
        row.is_active = True
    return get_price_for_branch(package.id, branch_id)


def list_packages(branch_id=None):
    packages = Package.query.filter_by(is_active=True).order_by(Package.months.asc(), Package.id.asc()).all()
    out = []
    for package in packages:
        out.append(
            {
                "id": package.id,
                "code": package.code,
                "name": package.name,
                "months": package.months,
                "sessions_count": package.sessions_count,
                "base_price": float(package.base_price or 0),
                "price": package_price(package, branch_id),
                "default_scholarship_months": package.default_scholarship_months or 0,
            }
        )
    return out


def promotion_running(promotion, today):
    if not promotion.is_active:
        return False
    if promotion.start_date and today < promotion.start_date:
        return False
    return not (promotion.end_date and today > promotion.end_date)


def promotion_discount(promotion, price, today=None):
    """Discount ``promotion`` gives on ``price``; 0 when it is inactive or out of its date window."""
    if promotion is None:
        return 0.0
    today = today or date.today()
    if not promotion_running(promotion, today):
        current_app.logger.warning("Promotion %s is not running on %s; no discount applied", promotion.id, today)
        return 0.0
    if promotion.discount_type == "percent":
        discount = float(round(price * (promotion.discount_value or 0) / 100))
        if promotion.max_discount:
            discount = min(discount, float(promotion.max_discount))
    else:
        discount = float(promotion.discount_value or 0)
    return max(0.0, discount)


PROMOTION_FIELDS = (
    "code",
    "name",
    "description",
    "discount_type",
    "discount_value",
    "max_discount",
    "start_date",
    "end_date",
    "is_active",
)


def promotion_to_dict(promotion):
    return {
        "id": promotion.id,
        "code": promotion.code,
        "name": promotion.name,
        "description": promotion.description,
        "discount_type": promotion.discount_type,
        "discount_value": promotion.discount_value,
        "max_discount": promotion.max_discount,
        "start_date": iso(promotion.start_date),
        "end_date": iso(promotion.end_date),
        "is_active": promotion.is_active,
        "created_by": promotion.created_by,
        "created_by_name": promotion.creator.full_name if promotion.creator else None,
        "created_at": iso(promotion.created_at),
    }


def _check_promotion(promotion):
    if not (promotion.name or "").strip():
        raise ValidationFailure("name is required.")
    if promotion.discount_type not in DISCOUNT_TYPES:
        raise ValidationFailure(f"Invalid discount type: {promotion.discount_type}.")
    value = promotion.discount_value or 0
    if value < 0 or (promotion.discount_type == "percent" and value > 100):
        raise ValidationFailure("discount_value is out of range.")
    if promotion.max_discount is not None and promotion.max_discount < 0:
        raise ValidationFailure("max_discount cannot be negative.")
    if promotion.start_date and promotion.end_date and promotion.end_date < promotion.start_date:
        raise ValidationFailure("end_date must not be before start_date.")
    if promotion.code:
        clash = Promotion.query.filter(Promotion.code == promotion.code)
        if promotion.id is not None:
            clash = clash.filter(Promotion.id != promotion.id)
        if clash.first() is not None:
            raise ConflictError(f"Promotion code {promotion.code} is already used.")


def list_promotions(active_only=False, today=None):
    """All promotions, or only those running on ``today`` when ``active_only``."""
    query = Promotion.query
    if active_only:
        today = today or date.today()
        query = query.filter(
            Promotion.is_active.is_(True),
            or_(Promotion.start_date.is_(None), Promotion.start_date <= today),
            or_(Promotion.end_date.is_(None), Promotion.end_date >= today),
        ).order_by(Promotion.name.asc())
    else:
        query = query.order_by(Promotion.is_active.desc(), Promotion.created_at.desc(), Promotion.id.desc())
    return [promotion_to_dict(p) for p in query.all()]


def create_promotion(actor, name, discount_type="percent", discount_value=0, **fields):
    promotion = Promotion(
        name=(name or "").strip(),
        discount_type=discount_type or "percent",
        discount_value=float(discount_value or 0),
        is_active=True,
        created_by=actor.id,
    )
    for key in PROMOTION_FIELDS:
        if fields.get(key) is not None:
            setattr(promotion, key, fields[key])
    if promotion.code:
        promotion.code = promotion.code.strip().upper()
    _check_promotion(promotion)

    with atomic():
        db.session.add(promotion)
        db.session.flush()
        add_audit_log(actor.id, "promotion", details={"promotion_id": promotion.id, "name": promotion.name}, action="create")
    current_app.logger.info("Promotion %s created", promotion.name)
    return promotion_to_dict(promotion)


def update_promotion(actor, promotion_id, changes):
    promotion = db.session.get(Promotion, promotion_id)
    if promotion is None:
        raise NotFoundError("Promotion not found.")
    with atomic():
        for key in PROMOTION_FIELDS:
            if key in changes and changes[key] is not None:
                setattr(promotion, key, changes[key])
        if promotion.code:
            promotion.code = promotion.code.strip().upper()
        _check_promotion(promotion)
        add_audit_log(actor.id, "promotion", details={"promotion_id": promotion.id, "changes": sorted(changes)}, action="update")
    return promotion_to_dict(promotion)


def renewal_to_dict(row):
    return {
        "id": row.id,
        "student_id": row.student_id,
        "package_id": row.package_id,
        "package_name": row.package.name if row.package else None,
        "renewal_type": row.renewal_type,
        "new_class_id": row.new_class_id,
        "promotion_id": row.promotion_id,
        "original_price": row.original_price,
        "discount_amount": row.discount_amount,
        "final_price": row.final_price,
        "scholarship_months": row.scholarship_months,
        "deposit_amount": row.deposit_amount,
        "paid_amount": row.paid_amount,
        "remaining_amount": row.remaining_amount,
        "sessions_added": row.sessions_added,
        "previous_fee_end_date": iso(row.previous_fee_end_date),
        "new_fee_end_date": iso(row.new_fee_end_date),
        "note": row.note,
        "created_by": row.created_by,
        "created_at": iso(row.created_at),
    }


def create_renewal(
    actor,
    student_id,
    package_id,
    promotion_id=None,
    scholarship_months=None,
    deposit_amount=0,
    paid_amount=None,
    renewal_type="renew",
    new_class_id=None,
    note=None,
    today=None,
):
    """Renew a student's package.

    Scholarship months only extend the duration; they never lower the price.
    The renewal row, the student balance update, the optional class enrollment
    and the deposit ledger entry are written in one transaction.
    """
    today = today or date.today()
    student = _get_student(student_id, actor)

    package = db.session.get(Package, package_id)
    if package is None:
        raise InvalidStateError("Cannot renew against a package that does not exist.")
    if renewal_type not in RENEWAL_TYPES:
        raise ValidationFailure(f"Invalid renewal type: {renewal_type}.")
    if scholarship_months is None:
        scholarship_months = package.default_scholarship_months or 0
    deposit_amount = float(deposit_amount or 0)
    if scholarship_months < 0 or deposit_amount < 0 or (paid_amount is not None and paid_amount < 0):
        raise ValidationFailure("Amounts and scholarship months cannot be negative.")

    classroom = None
    if renewal_type == "new" and new_class_id:
        classroom = db.session.get(Classroom, new_class_id)
        if classroom is None:
            raise NotFoundError("Class not found.")
        ensure_branch_access(actor, classroom.branch_id)

    promotion = None
    if promotion_id:
        promotion = db.session.get(Promotion, promotion_id)
        if promotion is None:
            current_app.logger.warning("Renewal for student %s references unknown promotion %s", student.id, promotion_id)

    price = package_price(package, student.branch_id)
    discount = promotion_discount(promotion, price, today)
    final_price = max(0.0, price - discount)
    actual_paid = float(paid_amount) if paid_amount else deposit_amount
    remaining = max(0.0, final_price - actual_paid)

    total_months = (package.months or 0) + scholarship_months
    current_expiry = student.fee_end_date
    base_date = current_expiry if current_expiry and current_expiry > today else today
    new_fee_end_date = base_date + relativedelta(months=total_months)
    sessions_added = calculate_sessions_for_package(package, scholarship_months)

    with atomic():
        renewal = StudentRenewal(
            student_id=student.id,
            package_id=package.id,
            renewal_type=renewal_type,
            new_class_id=classroom.id if classroom else None,
            promotion_id=promotion.id if promotion else None,
            original_price=price,
            discount_amount=discount,
            final_price=final_price,
            scholarship_months=scholarship_months,
            deposit_amount=deposit_amount,
            paid_amount=actual_paid,
            remaining_amount=remaining,
            sessions_added=sessions_added,
            previous_fee_end_date=current_expiry,
            new_fee_end_date=new_fee_end_date,
            note=note,
            created_by=actor.id,
        )
        db.session.add(renewal)

        student.package_id = package.id
        student.fee_end_date = new_fee_end_date
        student.fee_original = (student.fee_original or 0) + price
        student.discount_amount = (student.discount_amount or 0) + discount
        student.fee_total = (student.fee_total or 0) + final_price
        student.paid_amount = (student.paid_amount or 0) + actual_paid
        student.remaining_amount = (student.remaining_amount or 0) + remaining
        student.scholarship_months = (student.scholarship_months or 0) + scholarship_months
        student.total_sessions = (student.total_sessions or 0) + sessions_added
        student.remaining_sessions = max(0, student.remaining_sessions or 0) + sessions_added
        student.fee_status = "active"

        if classroom is not None:
            enrollment = ClassStudent.query.filter_by(class_id=classroom.id, student_id=student.id).first()
            if enrollment is None:
                db.session.add(ClassStudent(class_id=classroom.id, student_id=student.id, status="active"))
            elif enrollment.status != "active":
                enrollment.status = "active"

        if deposit_amount > 0:
            db.session.add(
                Revenue(
                    branch_id=student.branch_id,
                    student_id=student.id,
                    ec_id=student.sale_id,
                    amount=deposit_amount,
                    revenue_type="renewal_deposit",
                    note=f"Renewal deposit ({package.name})",
                    created_by=actor.id,
                )
            )
        db.session.flush()
        add_audit_log(
            actor.id,
            "renewal",
            details={"renewal_id": renewal.id, "package": package.name, "final_price": final_price},
            student_id=student.id,
            branch_id=student.branch_id,
            action=renewal_type,
        )

    current_app.logger.info("Renewal %s created for student %s", renewal.id, student.student_code)
    result = {
        "renewal_id": renewal.id,
        "student_id": student.id,
        "original_price": price,
        "discount_amount": discount,
        "final_price": final_price,
        "paid_amount": actual_paid,
        "remaining_amount": remaining,
        "sessions_added": sessions_added,
        "new_fee_end_date": new_fee_end_date.isoformat(),
    }
    message = "\n".join(
        [
            "<b>Fee renewal</b>",
            f"{escape(student.student_code)}: {escape(student.full_name)}",
            f"Package: {escape(package.name)} (+{scholarship_months} bonus months)",
            f"Final price: {final_price:,.0f}, paid: {actual_paid:,.0f}, remaining: {remaining:,.0f}",
            f"Valid until: {new_fee_end_date.isoformat()}",
        ]
    )
    return result, [{"channel": "telegram", "message": message}]


def confirm_payment(actor, student_id, amount, method=None, proof_url=None, note=None):
    if amount is None or amount <= 0:
        raise ValidationFailure("amount must be greater than 0.")
    _get_student(student_id, actor)

    with atomic():
        student = _get_student(student_id, lock=True)
        previous = float(student.actual_revenue or 0)
        student.actual_revenue = previous + float(amount)
        status = fee_status_for_payment(student.actual_revenue, float(student.fee_total or 0))
        student.fee_status = status
        student.payment_status = status
        student.remaining_amount = max(0.0, float(student.fee_total or 0) - student.actual_revenue)
        db.session.add(
            Revenue(
                branch_id=student.branch_id,
                student_id=student.id,
                ec_id=student.sale_id,
                amount=float(amount),
                revenue_type="tuition",
                payment_method=method,
                proof_url=proof_url,
                note=note,
                created_by=actor.id,
            )
        )
        add_audit_log(
            actor.id,
            "payment",
            details={"amount": float(amount), "method": method},
            student_id=student.id,
            branch_id=student.branch_id,
            action="confirmed",
        )

    current_app.logger.info("Payment of %s confirmed for student %s", amount, student.student_code)
    return {
        "student_id": student.id,
        "previous_revenue": previous,
        "new_revenue": student.actual_revenue,
        "fee_total": float(student.fee_total or 0),
        "fee_status": student.fee_status,
    }


def _next_level(level):
    query = Level.query.filter(Level.order_index > level.order_index, Level.is_active.is_(True))
    if level.subject_id is not None:
        query = query.filter(Level.subject_id == level.subject_id)
    return query.order_by(Level.order_index.asc(), Level.id.asc()).first()


def complete_level(student, today=None):
    """Close the running level and open the next one. Runs inside the caller's transaction."""
    today = today or date.today()
    completed_sessions = student.level_sessions_completed
    current = StudentLevelHistory.query.filter_by(student_id=student.id, status="in_progress").first()
    if current is not None:
        current.status = "completed"
        current.completed_at = today
        current.sessions_completed = completed_sessions

    level_id = student.current_level_id or student.level_id
    level = db.session.get(Level, level_id) if level_id else None
    next_level = _next_level(level) if level is not None else None
    if next_level is None:
        current_app.logger.info("Student %s finished the last level", student.student_code)
        return None

    student.current_level_id = next_level.id
    student.level_sessions_completed = 0
    db.session.add(
        StudentLevelHistory(
            student_id=student.id,
            level_id=next_level.id,
            status="in_progress",
            started_at=today,
        )
    )
    return next_level


def decrement_session(student_id, actor=None, today=None):
    """Consume one session. Guarded: a student at 0 remaining is left untouched."""
    _get_student(student_id, actor)
    with atomic():
        student = _get_student(student_id, lock=True)
        if (student.remaining_sessions or 0) <= 0:
            return {
                "student_id": student.id,
                "consumed": False,
                "remaining_sessions": student.remaining_sessions or 0,
                "used_sessions": student.used_sessions or 0,
                "fee_status": student.fee_status,
                "level_completed": False,
            }

        student.remaining_sessions -= 1
        student.used_sessions = (student.used_sessions or 0) + 1
        student.level_sessions_completed = (student.level_sessions_completed or 0) + 1
        student.fee_status = fee_status_for_sessions(student.remaining_sessions)

        next_level = None
        level_completed = student.level_sessions_completed >= LEVEL_SESSION_THRESHOLD
        if level_completed:
            next_level = complete_level(student, today=today)

    return {
        "student_id": student.id,
        "consumed": True,
        "remaining_sessions": student.remaining_sessions,
        "used_sessions": student.used_sessions,
        "level_sessions_completed": student.level_sessions_completed,
        "fee_status": student.fee_status,
        "level_completed": level_completed,
        "current_level_id": next_level.id if next_level else student.current_level_id,
    }


def renewal_history(actor, student_id):
    student = _get_student(student_id, actor)
    rows = (
        StudentRenewal.query.filter_by(student_id=student.id)
        .order_by(StudentRenewal.created_at.desc(), StudentRenewal.id.desc())
        .all()
    )
    return [renewal_to_dict(r) for r in rows]


def renewal_report(actor, month, branch_id=None):
    start, end = month_bounds(month)
    query = db.session.query(
        StudentRenewal.renewal_type,
        func.count(StudentRenewal.id),
        func.coalesce(func.sum(StudentRenewal.final_price), 0),
        func.coalesce(func.sum(StudentRenewal.paid_amount), 0),
        func.coalesce(func.sum(StudentRenewal.remaining_amount), 0),
    ).join(Student, Student.id == StudentRenewal.student_id)
    scope = resolve_branch_scope(actor, branch_id)
    if scope is not None:
        query = query.filter(Student.branch_id == scope)
    query = query.filter(
        StudentRenewal.created_at >= datetime.combine(start, datetime.min.time()),
        StudentRenewal.created_at <= datetime.combine(end, datetime.max.time()),
    )
    by_type = {}
    for renewal_type, count, final_total, paid_total, remaining_total in query.group_by(StudentRenewal.renewal_type):
        by_type[renewal_type] = {
            "count": count,
            "final_price": float(final_total),
            "paid_amount": float(paid_total),
            "remaining_amount": float(remaining_total),
        }
    return {
        "month": month,
        "by_type": by_type,
        "total_count": sum(v["count"] for v in by_type.values()),
        "total_final_price": sum(v["final_price"] for v in by_type.values()),
        "total_paid": sum(v["paid_amount"] for v in by_type.values()),
    }


def students_for_renewal(actor, month, branch_id=None, today=None):
    """Students whose fee expiry falls in ``month``, bucketed expiring / expired / renewed."""
    today = today or date.today()
    start, end = month_bounds(month)
    query = Student.query.filter(
        Student.fee_end_date.isnot(None),
        Student.fee_end_date >= start,
        Student.fee_end_date <= end,
        Student.status.in_(("active", "paused", "reserved", "expired")),
    )
    scope = resolve_branch_scope(actor, branch_id)
    if scope is not None:
        query = query.filter(Student.branch_id == scope)

    def _item(student, fee_end_date):
        return {
            "id": student.id,
            "student_code": student.student_code,
            "full_name": student.full_name,
            "parent_phone": student.parent_phone,
            "fee_end_date": iso(fee_end_date),
            "current_fee_end_date": iso(student.fee_end_date),
            "remaining_sessions": student.remaining_sessions,
            "fee_status": student.fee_status,
        }

    renewed_query = (
        db.session.query(StudentRenewal, Student)
        .join(Student, Student.id == StudentRenewal.student_id)
        .filter(StudentRenewal.previous_fee_end_date >= start, StudentRenewal.previous_fee_end_date <= end)
    )
    if scope is not None:
        renewed_query = renewed_query.filter(Student.branch_id == scope)

    renewed, seen = [], set()
    for renewal, student in renewed_query.order_by(StudentRenewal.previous_fee_end_date.asc()).all():
        if student.id in seen:
            continue
        seen.add(student.id)
        renewed.append(_item(student, renewal.previous_fee_end_date))

    expiring, expired = [], []
    for student in query.order_by(Student.fee_end_date.asc()).all():
        if student.id in seen:
            continue
        bucket = expired if student.fee_end_date < today else expiring
        bucket.append(_item(student, student.fee_end_date))

    return {"month": month, "expiring": expiring, "expired": expired, "renewed": renewed}
