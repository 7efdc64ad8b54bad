"""
Request body helpers shared by the intent-dispatching routes.

The pages post either HTML forms or JSON. Both end up as a plain dict that
is validated against a discriminated union of action models.
"""
from typing import Any, TypeVar
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from pydantic import TypeAdapter, ValidationError


T = TypeVar("T")

# Form fields that may repeat (multi-select checkboxes)
LIST_FIELDS = ("providerIds", "provider_ids")


async def read_payload(request: Request) -> dict[str, Any]:
    """
    Read a JSON or form body into a dict.

    Repeated form fields listed in LIST_FIELDS are collected into lists;
    for every other field the last value wins.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.json()
        if not isinstance(body, dict):
            raise RequestValidationError(
                [{"loc": ("body",), "msg": "Expected a JSON object", "type": "type_error"}]
            )
        return body

    form = await request.form()
    payload: dict[str, Any] = {}
    for key in form.keys():
        if key in LIST_FIELDS:
            payload[key] = [v for v in form.getlist(key) if isinstance(v, str)]
        else:
            payload[key] = form.get(key)
    return payload


def parse_action(adapter: TypeAdapter[T], payload: dict[str, Any]) -> T:
    """
    Validate ``payload`` against an intent union.

    Raises:
        RequestValidationError: rendered as 400 ``{field: message}``
    """
    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False)) from exc
