from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from flask import Blueprint, current_app, jsonify
from flask_login import login_required

from eduoffice.extensions import db, limiter
from eduoffice.auth.forms import LoginForm
from eduoffice.models import User
from eduoffice.utils.audit import add_audit_log
from eduoffice.utils.authz import acting_user
from eduoffice.utils.responses import ok
from eduoffice.utils.tokens import issue_token
from eduoffice.utils.validation import validate_form


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")
password_hasher = PasswordHasher()


def _invalid_credentials():
    return (
        jsonify({"success": False, "error": "invalid_credentials", "message": "Invalid username or password."}),
        401,
    )


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    form = validate_form(LoginForm)
    user = User.query.filter_by(username=form.username.data.strip()).first()
    if not user or not user.is_active:
        return _invalid_credentials()
    try:
        password_hasher.verify(user.password_hash, form.password.data)
    except (VerifyMismatchError, InvalidHashError):
        current_app.logger.info("Failed login for %s", user.username)
        return _invalid_credentials()

    if password_hasher.check_needs_rehash(user.password_hash):
        user.password_hash = password_hasher.hash(form.password.data)
    add_audit_log(user.id, "login", "API login", branch_id=user.primary_branch_id, action="login")
    db.session.commit()
    return ok(
        {
            "token": issue_token(user),
            "expires_in": current_app.config.get("TOKEN_MAX_AGE"),
            "user": {
                "id": user.id,
                "username": user.username,
                "full_name": user.full_name,
                "role": user.role,
            },
        }
    )


@auth_bp.route("/me")
@login_required
def me():
    return ok(acting_user().to_dict())
