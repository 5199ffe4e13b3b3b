from wtforms import IntegerField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, Optional

from eduoffice.utils.validation import ApiForm


class AttendanceRecordForm(ApiForm):
    student_id = IntegerField("Student", validators=[Optional()])
    trial_student_id = IntegerField("Trial student", validators=[Optional()])
    status = StringField("Status", validators=[DataRequired(), Length(max=20)])
    note = TextAreaField("Note", validators=[Optional(), Length(max=1000)])
