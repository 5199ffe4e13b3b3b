from wtforms import PasswordField, StringField
from wtforms.validators import DataRequired, Length

from eduoffice.utils.validation import ApiForm


class LoginForm(ApiForm):
    username = StringField("Username", validators=[DataRequired(), Length(min=3, max=80)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=6, max=128)])
