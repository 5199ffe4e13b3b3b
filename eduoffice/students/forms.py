from wtforms import DateField, FloatField, IntegerField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Email, Length, NumberRange, Optional

from eduoffice.models import STUDENT_STATUSES
from eduoffice.utils.validation import ApiForm


class StudentForm(ApiForm):
    branch_id = IntegerField("Branch", validators=[Optional()])
    full_name = StringField("Full name", validators=[DataRequired(), Length(max=160)])
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
    note = TextAreaField("Note", validators=[Optional()])
    sale_id = IntegerField("Sales owner", validators=[Optional()])


class StudentUpdateForm(StudentForm):
    full_name = StringField("Full name", validators=[Optional(), Length(max=160)])


class StatusChangeForm(ApiForm):
    status = SelectField("Status", choices=[(s, s) for s in STUDENT_STATUSES], validators=[DataRequired()])
    reason = TextAreaField("Reason", validators=[Optional(), Length(max=2000)])
    reserve_until = DateField("Reserved until", validators=[Optional()])
    expected_return_date = DateField("Expected return", validators=[Optional()])
    refund_amount = FloatField("Refund", validators=[Optional(), NumberRange(min=0)])
