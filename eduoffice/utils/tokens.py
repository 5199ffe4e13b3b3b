from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer


def _token_serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="api-token")


def issue_token(user):
    return _token_serializer().dumps({"uid": user.id})


def read_token(token):
    """Return the user id carried by ``token`` or None when it is invalid or expired."""
    max_age = int(current_app.config.get("TOKEN_MAX_AGE") or 0) or None
    try:
        data = _token_serializer().loads(token, max_age=max_age)
    except (BadSignature, SignatureExpired):
        return None
    try:
        return int(data.get("uid"))
    except (AttributeError, TypeError, ValueError):
        return None
