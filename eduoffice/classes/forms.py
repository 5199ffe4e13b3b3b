from wtforms import BooleanField, DateField, IntegerField, StringField, TextAreaField, TimeField
from wtforms.validators import DataRequired, Length, NumberRange, Optional

from eduoffice.utils.validation import ApiForm


class ClassForm(ApiForm):
    branch_id = IntegerField("Branch", validators=[Optional()])
    class_code = StringField("Code", validators=[Optional(), Length(max=40)])
    class_name = StringField("Name", validators=[DataRequired(), Length(max=160)])
    subject_id = IntegerField("Subject", validators=[Optional()])
    level_id = IntegerField("Level", validators=[Optional()])
    teacher_id = IntegerField("Teacher", validators=[Optional()])
    cm_id = IntegerField("Class manager", validators=[Optional()])
    room = StringField("Room", validators=[Optional(), Length(max=60)])
    start_date = DateField("Start date", validators=[Optional()])
    start_time = TimeField("Start time", validators=[Optional()])
    end_time = TimeField("End time", validators=[Optional()])
    total_sessions = IntegerField("Total sessions", validators=[Optional(), NumberRange(min=1, max=500)])
    max_students = IntegerField("Max students", validators=[Optional(), NumberRange(min=1, max=200)])


class EnrollForm(ApiForm):
    student_id = IntegerField("Student", validators=[DataRequired()])


class GenerateSessionsForm(ApiForm):
    count = IntegerField("Count", validators=[Optional(), NumberRange(min=1, max=200)])
    start_date = DateField("Start date", validators=[Optional()])


class RescheduleForm(ApiForm):
    new_date = DateField("New date", validators=[DataRequired()])
    reason = TextAreaField("Reason", validators=[Optional(), Length(max=1000)])
    shift_following = BooleanField("Shift following sessions", default=True)


class CancelSessionForm(ApiForm):
    reason = TextAreaField("Reason", validators=[Optional(), Length(max=1000)])


class SubstituteForm(ApiForm):
    teacher_id = IntegerField("Teacher", validators=[Optional()])
