"""Shared request parsing for the JSON API blueprints."""
import re
from typing import Type, TypeVar

from flask import request, send_file
from flask_wtf import FlaskForm
from io import BytesIO
from werkzeug.datastructures import MultiDict

from utils.docx_template import has_xml_invalid
from utils.errors import ValidationError

F = TypeVar("F", bound=FlaskForm)

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")


class ApiForm(FlaskForm):
    """FlaskForm fed from JSON or multipart bodies; CSRF is enforced per request in the app factory."""

    class Meta:
        csrf = False


def snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"\1_\2", key).lower()


def _json_formdata(body: dict) -> MultiDict:
    """camelCase JSON keys onto snake_case form fields; nested values are left to the view."""
    data = MultiDict()
    for key, value in body.items():
        if value is None or isinstance(value, (dict, list)):
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        data.add(snake_case(str(key)), str(value))
    return data


def load_form(form_cls: Type[F], **kwargs) -> F:
    if request.is_json and "formdata" not in kwargs:
        kwargs["formdata"] = _json_formdata(json_body())
    form = form_cls(**kwargs)
    if not form.validate_on_submit():
        raise ValidationError("Validation failed", errors=form.errors)
    return form


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    return data


def int_arg(name: str, default: int, minimum: int = 1, maximum: int = 100) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    return min(max(value, minimum), maximum)


def bool_arg(name: str) -> bool:
    return (request.args.get(name) or "").lower() in ("1", "true", "yes")


def string_map(value, field: str = "fieldValues") -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{field} must be an object")
    values = {str(k): "" if v is None else str(v) for k, v in value.items()}
    rejected = sorted(k for k, v in values.items() if has_xml_invalid(k) or has_xml_invalid(v))
    if rejected:
        raise ValidationError(f"{field} contains control characters", errors={field: rejected})
    return values


def send_bytes(data: bytes, mimetype: str, filename: str, as_attachment: bool = True):
    response = send_file(BytesIO(data), mimetype=mimetype, as_attachment=as_attachment, download_name=filename)
    response.headers["Content-Length"] = str(len(data))
    return response
