"""
Redirect-with-toast helpers.

A toast rides along with a 303 redirect in a short-lived signed cookie and
is popped by the next page load.
"""
from datetime import datetime, timedelta, timezone
from typing import Literal
import jwt
from pydantic import BaseModel, ValidationError
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from provider_admin.core import config
from provider_admin.utils import get_logger


log = get_logger(__name__)

TOAST_COOKIE = "toast"
TOAST_TTL_SECONDS = 60


class Toast(BaseModel):
    """Transient notification shown once after a redirect."""
    type: Literal["success", "error", "message"] = "message"
    title: str
    description: str


def redirect_with_toast(url: str, toast: Toast) -> RedirectResponse:
    """303 redirect to ``url`` carrying ``toast`` in a signed cookie."""
    response = RedirectResponse(url=url, status_code=303)
    payload = {
        "toast": toast.model_dump(),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=TOAST_TTL_SECONDS),
    }
    token = jwt.encode(payload, config.SESSION_SECRET, algorithm="HS256")
    response.set_cookie(TOAST_COOKIE, token, max_age=TOAST_TTL_SECONDS, httponly=True, samesite="lax")
    return response


def pop_toast(request: Request, response: Response) -> Toast | None:
    """
    Read the pending toast, if any, and clear its cookie on ``response``.

    A tampered or expired cookie is dropped silently; toasts are cosmetic.
    """
    token = request.cookies.get(TOAST_COOKIE)
    if not token:
        return None
    response.delete_cookie(TOAST_COOKIE)
    try:
        payload = jwt.decode(token, config.SESSION_SECRET, algorithms=["HS256"])
        return Toast.model_validate(payload.get("toast"))
    except (jwt.InvalidTokenError, ValidationError):
        log.debug("Discarding unreadable toast cookie")
        return None
