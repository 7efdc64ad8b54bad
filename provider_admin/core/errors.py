"""
Application error types and their HTTP rendering.

Services raise these; main.py registers the handlers below so routes do
not have to translate them one by one.
"""
from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from provider_admin.features.notifications.toast import Toast, redirect_with_toast


class AppError(Exception):
    """Base class for errors raised by the service layer."""


class FieldValidationError(AppError):
    """
    One or more form fields are invalid (duplicate email, bad provider group, ...).
    Rendered as 400 with ``{field: message}``.
    """

    def __init__(self, field_errors: dict[str, str]):
        super().__init__(", ".join(f"{k}: {v}" for k, v in field_errors.items()))
        self.field_errors = field_errors


class ActionForbidden(AppError):
    """The caller's roles do not allow this action. Rendered as 403."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TargetNotFound(AppError):
    """Target missing or outside the caller's scope. Rendered as 404."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message)
        self.message = message


class RuleViolation(AppError):
    """
    A business rule refused the action (last admin, self action, NPIs still
    assigned, ...). Rendered as a redirect back to the page with an error toast.
    """

    def __init__(self, title: str, description: str):
        super().__init__(f"{title}: {description}")
        self.title = title
        self.description = description


async def field_validation_handler(_request: Request, exc: FieldValidationError) -> Response:
    return JSONResponse(status_code=400, content=jsonable_encoder(exc.field_errors))


async def action_forbidden_handler(_request: Request, exc: ActionForbidden) -> Response:
    return JSONResponse(status_code=403, content={"error": exc.message})


async def target_not_found_handler(_request: Request, exc: TargetNotFound) -> Response:
    return JSONResponse(status_code=404, content={"error": exc.message})


async def rule_violation_handler(request: Request, exc: RuleViolation) -> Response:
    return redirect_with_toast(
        request.url.path,
        Toast(type="error", title=exc.title, description=exc.description),
    )
