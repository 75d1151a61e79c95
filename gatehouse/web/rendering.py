from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from gatehouse.api.schemas import Envelope, ErrorBody
from gatehouse.service.runtime import get_runtime

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    402: "payment_required",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    405: "validation_error",
    410: "gone",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def is_htmx(request: Request) -> bool:
    return request.headers.get("HX-Request") == "true"


def is_api_request(request: Request) -> bool:
    """True when the caller expects JSON rather than a page.

    htmx requests always get HTML fragments, even when they send JSON.
    """
    if is_htmx(request):
        return False
    accept = request.headers.get("accept", "")
    content_type = request.headers.get("content-type", "")
    if "application/json" in accept or "application/json" in content_type:
        return True
    return request.url.path.startswith("/api/")


def json_error(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build the ``{"status": "error", "error": {...}}`` envelope."""
    error_code = code or _STATUS_TO_CODE.get(status_code, "server_error")
    envelope = Envelope(
        status="error", error=ErrorBody(code=error_code, message=message, details=details)
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def json_ok(data: Any, status_code: int = 200) -> JSONResponse:
    envelope = Envelope(status="ok", data=data)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def redirect(request: Request, url: str) -> Response:
    """303 redirect, or an ``HX-Redirect`` header for htmx callers."""
    if is_htmx(request):
        return Response(status_code=200, headers={"HX-Redirect": url})
    return RedirectResponse(url, status_code=303)


def render(
    request: Request,
    name: str,
    context: Optional[Dict[str, Any]] = None,
    *,
    status_code: int = 200,
) -> Response:
    """Render a page with the CSRF token, current user and flash slots filled in."""
    runtime = get_runtime()
    auth = getattr(request.state, "auth", None)
    ctx: Dict[str, Any] = {
        "app_name": runtime.settings.app_name,
        "csrf_token": runtime.csrf.ensure_token(request),
        "csrf_field": runtime.policy.csrf_field,
        "current_user": auth.user if auth else None,
        "current_path": request.url.path,
        "form": {},
        "errors": {},
        "flash": None,
    }
    ctx.update(context or {})
    response = templates.TemplateResponse(request, name, ctx, status_code=status_code)
    runtime.csrf.commit(request, response)
    return response


def flash(kind: str, message: str) -> Dict[str, str]:
    return {"type": kind, "message": message}
