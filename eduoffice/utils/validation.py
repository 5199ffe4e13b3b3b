from flask import request
from flask_wtf import FlaskForm
from werkzeug.datastructures import ImmutableMultiDict

from eduoffice.errors import ValidationFailure


class ApiForm(FlaskForm):
    """FlaskForm fed from JSON request bodies (token API, no CSRF field)."""

    class Meta:
        csrf = False


def _as_formdata(data):
    flat = {}
    for key, value in (data or {}).items():
        if value is None or isinstance(value, (list, dict)):
            continue
        if isinstance(value, bool):
            flat[key] = "true" if value else "false"
        else:
            flat[key] = str(value)
    return ImmutableMultiDict(flat)


def _first_errors(errors):
    out = {}
    for name, messages in errors.items():
        if isinstance(messages, dict):
            out[name] = _first_errors(messages)
        elif messages:
            out[name] = messages[0]
    return out


def json_body():
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def json_list(body, key):
    items = body.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationFailure(f"{key} must be a list.")
    return items


def validate_form(form_cls, data=None):
    """Validate ``data`` (defaults to the JSON body) and return the bound form."""
    if data is None:
        data = json_body()
    if not isinstance(data, dict):
        raise ValidationFailure("Each item must be an object.")
    form = form_cls(formdata=_as_formdata(data))
    if not form.validate():
        raise ValidationFailure("Invalid input.", payload={"fields": _first_errors(form.errors)})
    return form


def form_data(form):
    """Field values keyed by name; fields absent from the body come back as None."""
    return {field.name: (field.data if field.raw_data else None) for field in form}
