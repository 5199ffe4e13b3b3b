from wtforms import DateField, FloatField, IntegerField, SelectField, StringField, TextAreaField, TimeField
from wtforms.validators import DataRequired, Email, Length, NumberRange, Optional

from eduoffice.models import LEAD_STATUSES
from eduoffice.utils.validation import ApiForm


class LeadCreateForm(ApiForm):
    branch_id = IntegerField("Branch", validators=[Optional()])
    customer_name = StringField("Parent name", validators=[DataRequired(), Length(max=160)])
    customer_phone = StringField("Parent phone", validators=[DataRequired(), Length(min=6, max=40)])
    customer_email = StringField("Parent email", validators=[Optional(), Email(), Length(max=120)])
    # Legacy single-student payload
    student_name = StringField("Student name", validators=[Optional(), Length(max=160)])
    student_birth_year = IntegerField("Birth year", validators=[Optional(), NumberRange(min=1950, max=2100)])
    subject_id = IntegerField("Subject", validators=[Optional()])
    level_id = IntegerField("Level", validators=[Optional()])
    scheduled_date = DateField("Date", validators=[Optional()])
    scheduled_time = TimeField("Time", validators=[Optional()])
    source = StringField("Source", validators=[Optional(), Length(max=60)])
    note = TextAreaField("Note", validators=[Optional()])
    expected_revenue = FloatField("Expected revenue", validators=[Optional(), NumberRange(min=0)])
    sale_id = IntegerField("Sales owner", validators=[Optional()])


class LeadStudentForm(ApiForm):
    name = StringField("Student name", validators=[DataRequired(), Length(max=160)])
    birth_year = IntegerField("Birth year", validators=[Optional(), NumberRange(min=1950, max=2100)])
    subject_id = IntegerField("Subject", validators=[Optional()])
    level_id = IntegerField("Level", validators=[Optional()])


class LeadUpdateForm(ApiForm):
    customer_name = StringField("Parent name", validators=[Optional(), Length(max=160)])
    customer_email = StringField("Parent email", validators=[Optional(), Email(), Length(max=120)])
    student_name = StringField("Student name", validators=[Optional(), Length(max=160)])
    student_birth_year = IntegerField("Birth year", validators=[Optional(), NumberRange(min=1950, max=2100)])
    subject_id = IntegerField("Subject", validators=[Optional()])
    level_id = IntegerField("Level", validators=[Optional()])
    scheduled_date = DateField("Date", validators=[Optional()])
    scheduled_time = TimeField("Time", validators=[Optional()])
    source = StringField("Source", validators=[Optional(), Length(max=60)])
    note = TextAreaField("Note", validators=[Optional()])
    expected_revenue = FloatField("Expected revenue", validators=[Optional(), NumberRange(min=0)])
    sale_id = IntegerField("Sales owner", validators=[Optional()])
    rating = IntegerField("Rating", validators=[Optional(), NumberRange(min=1, max=5)])
    feedback = TextAreaField("Feedback", validators=[Optional()])
    status = SelectField("Status", choices=[(s, s) for s in LEAD_STATUSES], validate_choice=False, validators=[Optional()])


class ScheduleForm(ApiForm):
    scheduled_date = DateField("Date", validators=[DataRequired()])
    scheduled_time = TimeField("Time", validators=[DataRequired()])
    note = TextAreaField("Note", validators=[Optional()])


class AttendedForm(ApiForm):
    rating = IntegerField("Rating", validators=[Optional(), NumberRange(min=1, max=5)])
    feedback = TextAreaField("Feedback", validators=[Optional()])


class AssignTrialForm(ApiForm):
    class_id = IntegerField("Class", validators=[DataRequired()])
    max_sessions = IntegerField("Max trial sessions", validators=[Optional(), NumberRange(min=1, max=20)])


class ConvertForm(ApiForm):
    branch_id = IntegerField("Branch", validators=[Optional()])
    full_name = StringField("Student name", validators=[Optional(), Length(max=160)])
    birth_year = IntegerField("Birth year", validators=[Optional(), NumberRange(min=1950, max=2100)])
    gender = StringField("Gender", validators=[Optional(), Length(max=20)])
    school = StringField("School", validators=[Optional(), Length(max=160)])
    parent_name = StringField("Parent name", validators=[Optional(), Length(max=160)])
    parent_phone = StringField("Parent phone", validators=[Optional(), Length(max=40)])
    parent_email = StringField("Parent email", validators=[Optional(), Email(), Length(max=120)])
    address = TextAreaField("Address", validators=[Optional()])
    subject_id = IntegerField("Subject", validators=[Optional()])
    level_id = IntegerField("Level", validators=[Optional()])
    package_id = IntegerField("Package", validators=[Optional()])
    sessions_per_week = IntegerField("Sessions per week", validators=[Optional(), NumberRange(min=1, max=7)])
    start_date = DateField("Start date", validators=[Optional()])
    fee_original = FloatField("Original fee", validators=[Optional(), NumberRange(min=0)])
    discount_amount = FloatField("Discount", validators=[Optional(), NumberRange(min=0)])
    fee_total = FloatField("Fee total", validators=[Optional(), NumberRange(min=0)])
    deposit_amount = FloatField("Deposit", validators=[Optional(), NumberRange(min=0)])
    paid_amount = FloatField("Paid", validators=[Optional(), NumberRange(min=0)])
    scholarship_months = IntegerField("Scholarship months", validators=[Optional(), NumberRange(min=0)])
    total_sessions = IntegerField("Total sessions", validators=[Optional(), NumberRange(min=0)])
    payment_method = StringField("Payment method", validators=[Optional(), Length(max=30)])
    note = TextAreaField("Note", validators=[Optional()])
    sale_id = IntegerField("Sales owner", validators=[Optional()])


class CallLogForm(ApiForm):
    result = StringField("Result", validators=[DataRequired(), Length(max=60)])
    duration_seconds = IntegerField("Duration", validators=[Optional(), NumberRange(min=0)])
    note = TextAreaField("Note", validators=[Optional()])
