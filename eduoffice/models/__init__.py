from datetime import datetime

from flask_login import UserMixin
from sqlalchemy import UniqueConstraint

from eduoffice.extensions import db, login_manager


LEAD_STATUSES = ("new", "scheduled", "attended", "trial", "waiting", "converted", "cancelled", "no_show")
STUDENT_STATUSES = (
    "pending",
    "waiting",
    "active",
    "paused",
    "expired",
    "quit_paid",
    "quit_refund",
    "reserved",
    "graduated",
)
FEE_STATUSES = ("active", "expiring_soon", "expired", "paid", "partial", "pending")
ATTENDANCE_STATUSES = ("present", "late", "excused", "absent")
DISCOUNT_TYPES = ("percent", "amount")


class Branch(db.Model):
    __tablename__ = "branches"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=True)
    name = db.Column(db.String(120), nullable=False)
    address = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), nullable=True)
    full_name = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(30), nullable=False, default="EC")
    is_system_wide = db.Column(db.Boolean, default=False, nullable=False)
    primary_branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    primary_branch = db.relationship("Branch", lazy=True)
    manager = db.relationship("User", remote_side=[id], lazy=True)
    branch_links = db.relationship("UserBranch", backref="user", lazy=True, cascade="all, delete-orphan")


class UserBranch(db.Model):
    __tablename__ = "user_branches"
    __table_args__ = (UniqueConstraint("user_id", "branch_id", name="uq_user_branch"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False)
    is_primary = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    branch = db.relationship("Branch", lazy=True)


class Subject(db.Model):
    __tablename__ = "subjects"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), nullable=True)
    name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)


class Level(db.Model):
    __tablename__ = "levels"

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey("subjects.id"), nullable=True)
    code = db.Column(db.String(30), nullable=True)
    name = db.Column(db.String(120), nullable=False)
    order_index = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    subject = db.relationship("Subject", lazy=True)


class Lead(db.Model):
    __tablename__ = "leads"

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    code = db.Column(db.String(40), unique=True, nullable=False)
    customer_name = db.Column(db.String(160), nullable=False)
    customer_phone = db.Column(db.String(40), nullable=False, index=True)
    customer_email = db.Column(db.String(120), nullable=True)
    student_name = db.Column(db.String(160), nullable=False)
    student_birth_year = db.Column(db.Integer, nullable=True)
    subject_id = db.Column(db.Integer, db.ForeignKey("subjects.id"), nullable=True)
    level_id = db.Column(db.Integer, db.ForeignKey("levels.id"), nullable=True)
    scheduled_date = db.Column(db.Date, nullable=True)
    scheduled_time = db.Column(db.Time, nullable=True)
    status = db.Column(db.String(20), default="new", nullable=False, index=True)
    trial_class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=True)
    trial_sessions_attended = db.Column(db.Integer, default=0, nullable=False)
    trial_sessions_max = db.Column(db.Integer, default=3, nullable=False)
    rating = db.Column(db.Integer, nullable=True)
    feedback = db.Column(db.Text, nullable=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    source = db.Column(db.String(60), nullable=True)
    note = db.Column(db.Text, nullable=True)
    expected_revenue = db.Column(db.Float, default=0, nullable=False)
    actual_revenue = db.Column(db.Float, default=0, nullable=False)
    deposit_amount = db.Column(db.Float, default=0, nullable=False)
    fee_total = db.Column(db.Float, default=0, nullable=False)
    converted_student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=True)
    converted_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    branch = db.relationship("Branch", lazy=True)
    subject = db.relationship("Subject", lazy=True)
    level = db.relationship("Level", lazy=True)
    sale = db.relationship("User", lazy=True)
    trial_class = db.relationship("Classroom", lazy=True)
    call_logs = db.relationship("LeadCallLog", backref="lead", lazy=True, cascade="all, delete-orphan")


class LeadCallLog(db.Model):
    __tablename__ = "lead_call_logs"

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    result = db.Column(db.String(60), nullable=False)
    duration_seconds = db.Column(db.Integer, default=0, nullable=False)
    note = db.Column(db.Text, nullable=True)
    called_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    user = db.relationship("User", lazy=True)


class Student(db.Model):
    __tablename__ = "students"

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    student_code = db.Column(db.String(40), unique=True, nullable=False)
    full_name = db.Column(db.String(160), nullable=False)
    birth_year = db.Column(db.Integer, nullable=True)
    gender = db.Column(db.String(20), nullable=True)
    school = db.Column(db.String(160), nullable=True)
    parent_name = db.Column(db.String(160), nullable=True)
    parent_phone = db.Column(db.String(40), nullable=True)
    parent_email = db.Column(db.String(120), nullable=True)
    address = db.Column(db.Text, nullable=True)
    subject_id = db.Column(db.Integer, db.ForeignKey("subjects.id"), nullable=True)
    level_id = db.Column(db.Integer, db.ForeignKey("levels.id"), nullable=True)
    current_level_id = db.Column(db.Integer, db.ForeignKey("levels.id"), nullable=True)
    sessions_per_week = db.Column(db.Integer, default=2, nullable=False)
    start_date = db.Column(db.Date, nullable=True)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=True)
    fee_original = db.Column(db.Float, default=0, nullable=False)
    discount_amount = db.Column(db.Float, default=0, nullable=False)
    fee_total = db.Column(db.Float, default=0, nullable=False)
    deposit_amount = db.Column(db.Float, default=0, nullable=False)
    paid_amount = db.Column(db.Float, default=0, nullable=False)
    actual_revenue = db.Column(db.Float, default=0, nullable=False)
    remaining_amount = db.Column(db.Float, default=0, nullable=False)
    scholarship_months = db.Column(db.Integer, default=0, nullable=False)
    total_sessions = db.Column(db.Integer, default=0, nullable=False)
    used_sessions = db.Column(db.Integer, default=0, nullable=False)
    remaining_sessions = db.Column(db.Integer, default=0, nullable=False)
    level_sessions_completed = db.Column(db.Integer, default=0, nullable=False)
    fee_status = db.Column(db.String(20), default="pending", nullable=False)
    payment_status = db.Column(db.String(20), default="pending", nullable=False)
    fee_end_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), default="pending", nullable=False, index=True)
    status_reason = db.Column(db.Text, nullable=True)
    status_changed_at = db.Column(db.DateTime, nullable=True)
    reserve_until = db.Column(db.Date, nullable=True)
    expected_return_date = db.Column(db.Date, nullable=True)
    refund_amount = db.Column(db.Float, nullable=True)
    note = db.Column(db.Text, nullable=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    lead_id = db.Column(db.Integer, nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    branch = db.relationship("Branch", lazy=True)
    subject = db.relationship("Subject", lazy=True)
    level = db.relationship("Level", foreign_keys=[level_id], lazy=True)
    current_level = db.relationship("Level", foreign_keys=[current_level_id], lazy=True)
    package = db.relationship("Package", lazy=True)
    sale = db.relationship("User", lazy=True)


class StudentStatusLog(db.Model):
    __tablename__ = "student_status_logs"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=False, index=True)
    old_status = db.Column(db.String(20), nullable=True)
    new_status = db.Column(db.String(20), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class StudentLevelHistory(db.Model):
    __tablename__ = "student_level_history"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=False, index=True)
    level_id = db.Column(db.Integer, db.ForeignKey("levels.id"), nullable=False)
    status = db.Column(db.String(20), default="in_progress", nullable=False)
    sessions_completed = db.Column(db.Integer, default=0, nullable=False)
    started_at = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.Date, nullable=True)

    level = db.relationship("Level", lazy=True)


class Classroom(db.Model):
    __tablename__ = "classes"

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False)
    class_code = db.Column(db.String(40), nullable=True)
    class_name = db.Column(db.String(160), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey("subjects.id"), nullable=True)
    level_id = db.Column(db.Integer, db.ForeignKey("levels.id"), nullable=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cm_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    room = db.Column(db.String(60), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    total_sessions = db.Column(db.Integer, default=15, nullable=False)
    max_students = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), default="active", nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    branch = db.relationship("Branch", lazy=True)
    teacher = db.relationship("User", foreign_keys=[teacher_id], lazy=True)
    sessions = db.relationship("ClassSession", backref="classroom", lazy=True, order_by="ClassSession.session_number")


class ClassStudent(db.Model):
    __tablename__ = "class_students"
    __table_args__ = (UniqueConstraint("class_id", "student_id", name="uq_class_student"),)

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=False)
    status = db.Column(db.String(20), default="active", nullable=False)
    enrolled_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    classroom = db.relationship("Classroom", lazy=True)
    student = db.relationship("Student", lazy=True)


class ClassSession(db.Model):
    __tablename__ = "sessions"
    __table_args__ = (UniqueConstraint("class_id", "session_number", name="uq_class_session_number"),)

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=False, index=True)
    session_number = db.Column(db.Integer, nullable=False)
    session_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    substitute_teacher_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    status = db.Column(db.String(20), default="scheduled", nullable=False)
    attendance_submitted = db.Column(db.Boolean, default=False, nullable=False)
    original_date = db.Column(db.Date, nullable=True)
    reschedule_reason = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class TrialStudent(db.Model):
    __tablename__ = "trial_students"

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    code = db.Column(db.String(40), unique=True, nullable=False)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id"), nullable=True, index=True)
    full_name = db.Column(db.String(160), nullable=False)
    birth_year = db.Column(db.Integer, nullable=True)
    parent_name = db.Column(db.String(160), nullable=True)
    parent_phone = db.Column(db.String(40), nullable=True)
    subject_id = db.Column(db.Integer, db.ForeignKey("subjects.id"), nullable=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    status = db.Column(db.String(20), default="active", nullable=False)
    sessions_attended = db.Column(db.Integer, default=0, nullable=False)
    max_sessions = db.Column(db.Integer, default=3, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class TrialClassStudent(db.Model):
    __tablename__ = "trial_class_students"
    __table_args__ = (UniqueConstraint("class_id", "trial_student_id", name="uq_trial_class_student"),)

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=False)
    trial_student_id = db.Column(db.Integer, db.ForeignKey("trial_students.id"), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    trial_student = db.relationship("TrialStudent", lazy=True)


class Attendance(db.Model):
    __tablename__ = "attendance"
    __table_args__ = (
        UniqueConstraint("session_id", "student_id", name="uq_attendance_session_student"),
        UniqueConstraint("session_id", "trial_student_id", name="uq_attendance_session_trial"),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("sessions.id"), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=True, index=True)
    trial_student_id = db.Column(db.Integer, db.ForeignKey("trial_students.id"), nullable=True)
    status = db.Column(db.String(20), nullable=False)
    note = db.Column(db.Text, nullable=True)
    marked_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    session = db.relationship("ClassSession", lazy=True)


class Package(db.Model):
    __tablename__ = "packages"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), nullable=True)
    name = db.Column(db.String(120), nullable=False)
    months = db.Column(db.Integer, default=1, nullable=False)
    sessions_count = db.Column(db.Integer, default=0, nullable=False)
    base_price = db.Column(db.Float, default=0, nullable=False)
    default_scholarship_months = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)


class BranchPackage(db.Model):
    __tablename__ = "branch_packages"
    __table_args__ = (UniqueConstraint("package_id", "branch_id", name="uq_branch_package"),)

    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False)
    price = db.Column(db.Float, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)


class Promotion(db.Model):
    __tablename__ = "promotions"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), nullable=True)
    name = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)
    discount_type = db.Column(db.String(20), default="percent", nullable=False)
    discount_value = db.Column(db.Float, default=0, nullable=False)
    max_discount = db.Column(db.Float, nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    creator = db.relationship("User", foreign_keys=[created_by], lazy=True)


class StudentRenewal(db.Model):
    __tablename__ = "student_renewals"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey("packages.id"), nullable=False)
    renewal_type = db.Column(db.String(20), default="renew", nullable=False)
    new_class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey("promotions.id"), nullable=True)
    original_price = db.Column(db.Float, default=0, nullable=False)
    discount_amount = db.Column(db.Float, default=0, nullable=False)
    final_price = db.Column(db.Float, default=0, nullable=False)
    scholarship_months = db.Column(db.Integer, default=0, nullable=False)
    deposit_amount = db.Column(db.Float, default=0, nullable=False)
    paid_amount = db.Column(db.Float, default=0, nullable=False)
    remaining_amount = db.Column(db.Float, default=0, nullable=False)
    sessions_added = db.Column(db.Integer, default=0, nullable=False)
    previous_fee_end_date = db.Column(db.Date, nullable=True)
    new_fee_end_date = db.Column(db.Date, nullable=False)
    note = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    package = db.relationship("Package", lazy=True)


class Revenue(db.Model):
    __tablename__ = "revenues"

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=True, index=True)
    ec_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    amount = db.Column(db.Float, nullable=False)
    revenue_type = db.Column(db.String(30), default="tuition", nullable=False)
    payment_method = db.Column(db.String(30), nullable=True)
    proof_url = db.Column(db.String(255), nullable=True)
    note = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class CodeSequence(db.Model):
    __tablename__ = "code_sequences"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(80), unique=True, nullable=False)
    last_value = db.Column(db.Integer, default=0, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id"), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    type_event = db.Column(db.String(80), nullable=False)
    action = db.Column(db.String(80), nullable=True)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class NotificationLog(db.Model):
    __tablename__ = "notification_logs"

    id = db.Column(db.Integer, primary_key=True)
    channel = db.Column(db.String(20), nullable=False)
    destination = db.Column(db.String(255), nullable=True)
    subject = db.Column(db.String(255), nullable=True)
    message = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(30), nullable=False)
    error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class StaffCheckin(db.Model):
    __tablename__ = "staff_checkins"
    __table_args__ = (UniqueConstraint("user_id", "checkin_date", name="uq_staff_checkin_day"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    checkin_date = db.Column(db.Date, nullable=False)
    checkin_time = db.Column(db.DateTime, nullable=False)
    checkout_time = db.Column(db.DateTime, nullable=True)
    note = db.Column(db.Text, nullable=True)

    user = db.relationship("User", lazy=True)


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))
