from wtforms import BooleanField, DateField, FloatField, IntegerField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, NumberRange, Optional

from eduoffice.utils.validation import ApiForm


class BranchPriceForm(ApiForm):
    branch_id = IntegerField("Branch", validators=[DataRequired()])
    price = FloatField("Price", validators=[Optional(), NumberRange(min=0)])


class RenewalForm(ApiForm):
    student_id = IntegerField("Student", validators=[DataRequired()])
    package_id = IntegerField("Package", validators=[DataRequired()])
    promotion_id = IntegerField("Promotion", validators=[Optional()])
    scholarship_months = IntegerField("Scholarship months", validators=[Optional(), NumberRange(min=0, max=24)])
    deposit_amount = FloatField("Deposit", validators=[Optional(), NumberRange(min=0)])
    paid_amount = FloatField("Paid", validators=[Optional(), NumberRange(min=0)])
    renewal_type = SelectField("Type", choices=[("renew", "renew"), ("new", "new")], validators=[Optional()])
    new_class_id = IntegerField("New class", validators=[Optional()])
    note = TextAreaField("Note", validators=[Optional(), Length(max=2000)])


class PaymentForm(ApiForm):
    student_id = IntegerField("Student", validators=[DataRequired()])
    amount = FloatField("Amount", validators=[DataRequired(), NumberRange(min=1)])
    method = StringField("Method", validators=[Optional(), Length(max=30)])
    proof_url = StringField("Proof", validators=[Optional(), Length(max=255)])
    note = TextAreaField("Note", validators=[Optional(), Length(max=2000)])


class PromotionForm(ApiForm):
    code = StringField("Code", validators=[Optional(), Length(max=40)])
    name = StringField("Name", validators=[DataRequired(), Length(max=160)])
    description = TextAreaField("Description", validators=[Optional(), Length(max=2000)])
    discount_type = SelectField("Discount type", choices=[("percent", "percent"), ("amount", "amount")], validators=[Optional()])
    discount_value = FloatField("Discount", validators=[Optional(), NumberRange(min=0)])
    max_discount = FloatField("Max discount", validators=[Optional(), NumberRange(min=0)])
    start_date = DateField("Start date", validators=[Optional()])
    end_date = DateField("End date", validators=[Optional()])
    is_active = BooleanField("Active", validators=[Optional()])


class PromotionUpdateForm(PromotionForm):
    name = StringField("Name", validators=[Optional(), Length(max=160)])
