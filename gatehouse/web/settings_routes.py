from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, Response

from gatehouse.api.schemas import UserResponse
from gatehouse.logging import get_logger
from gatehouse.service.errors import AuthenticationError, ValidationError
from gatehouse.service.runtime import get_runtime
from gatehouse.service.sessions import clear_session_cookie
from gatehouse.storage.models import User
from gatehouse.web.gates import csrf_protect, subscribed, verified
from gatehouse.web.rendering import flash, json_ok, redirect, render

logger = get_logger(__name__)

router = APIRouter(tags=["account"])

PASSWORD_CHANGE_FAILED_MESSAGE = "Failed to change password. Please try again later."


def _field(form, name: str, *, strip: bool = True) -> str:
    value = form.get(name)
    if not isinstance(value, str):
        return ""
    return value.strip() if strip else value


@router.get("/dashboard", response_class=HTMLResponse)
async def dashboard(request: Request, user: User = Depends(verified)):
    return render(request, "dashboard.html", {"user": user})


# profile
def _render_profile(
    request: Request,
    user: User,
    *,
    form: Optional[Dict[str, str]] = None,
    errors: Optional[Dict[str, str]] = None,
    message: Optional[Dict[str, str]] = None,
) -> Response:
    if form is None:
        form = {
            "name": user.name,
            "company_name": user.company_name or "",
            "phone": user.phone or "",
        }
    return render(
        request,
        "settings_profile.html",
        {"user": user, "form": form, "errors": errors or {}, "flash": message},
    )


@router.get("/settings", response_class=HTMLResponse)
async def show_settings(request: Request, user: User = Depends(verified)):
    message = None
    if request.query_params.get("updated") == "1":
        message = flash("success", "Your profile has been updated.")
    return _render_profile(request, user, message=message)


@router.post("/settings", dependencies=[Depends(csrf_protect)])
async def update_settings(request: Request, user: User = Depends(verified)):
    runtime = get_runtime()
    form = await request.form()
    values = {
        "name": _field(form, "name"),
        "company_name": _field(form, "company_name"),
        "phone": _field(form, "phone"),
    }
    try:
        runtime.users.update_profile(
            user.id,
            name=values["name"],
            company_name=values["company_name"] or None,
            phone=values["phone"] or None,
        )
    except ValidationError as exc:
        return _render_profile(request, user, form=values, errors=exc.fields)
    return redirect(request, "/settings?updated=1")


# password
def _render_password(
    request: Request,
    *,
    errors: Optional[Dict[str, str]] = None,
    message: Optional[Dict[str, str]] = None,
) -> Response:
    return render(
        request,
        "settings_password.html",
        {"errors": errors or {}, "flash": message},
    )


@router.get("/settings/password", response_class=HTMLResponse)
async def show_change_password(request: Request, user: User = Depends(verified)):
    return _render_password(request)


@router.post("/settings/password", dependencies=[Depends(csrf_protect)])
async def change_password(request: Request, user: User = Depends(verified)):
    """Change the password after re-checking the current one.

    Every session of the user is revoked, including the one making this
    request, so the response signs the browser out too.
    """
    runtime = get_runtime()
    form = await request.form()
    current = _field(form, "current_password", strip=False)
    new = _field(form, "new_password", strip=False)
    confirm = _field(form, "new_password_confirm", strip=False)

    errors: Dict[str, str] = {}
    if not current:
        errors["current_password"] = "Current password is required"
    if not new:
        errors["new_password"] = "New password is required"
    elif len(new) < 8:
        errors["new_password"] = "Password must be at least 8 characters"
    if not confirm:
        errors["new_password_confirm"] = "Please confirm your new password"
    elif new != confirm:
        errors["new_password_confirm"] = "Passwords do not match"
    if errors:
        return _render_password(request, errors=errors)

    try:
        await runtime.users.change_password(user.id, current, new)
    except (AuthenticationError, ValidationError) as exc:
        return _render_password(request, errors=exc.fields)
    except Exception as exc:
        logger.exception(
            "password_change_failed",
            user_id=user.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _render_password(
            request, message=flash("error", PASSWORD_CHANGE_FAILED_MESSAGE)
        )
    response = redirect(request, "/login?reset=1")
    clear_session_cookie(response, runtime.policy)
    return response


@router.get("/settings/billing", response_class=HTMLResponse)
async def billing(request: Request, user: User = Depends(verified)):
    message = None
    if request.query_params.get("upgrade") == "1":
        message = flash("info", "An active subscription is required to use that page.")
    return render(request, "settings_billing.html", {"user": user, "flash": message})


@router.get("/reports", response_class=HTMLResponse)
async def reports(request: Request, user: User = Depends(subscribed)):
    """Paid-plan landing page; unsubscribed users are sent to billing."""
    return render(request, "reports.html", {"user": user})


@router.get("/api/me")
async def me(user: User = Depends(verified)):
    return json_ok(UserResponse.from_user(user).model_dump(mode="json"))
