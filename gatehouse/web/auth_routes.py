from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, Response

from gatehouse.logging import get_logger, redact_email
from gatehouse.service.errors import (
    ConflictError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from gatehouse.service.runtime import Runtime, check_rate_limit, get_runtime
from gatehouse.service.sessions import clear_session_cookie, set_session_cookie
from gatehouse.service.users import is_valid_email, normalize_email
from gatehouse.storage.models import User
from gatehouse.web.gates import (
    AuthState,
    authenticated,
    csrf_protect,
    optional_user,
    safe_return_to,
)
from gatehouse.web.rendering import flash, redirect, render

logger = get_logger(__name__)

router = APIRouter(tags=["auth"])

RATE_LIMITED_MESSAGE = "Too many attempts. Please wait a minute and try again."
RESEND_SENT_MESSAGE = "If an account exists with that email, a verification link has been sent."
REMINDER_SENT_MESSAGE = "A new verification link has been sent to your email."
VERIFY_MISSING_MESSAGE = "Invalid verification link. Please check your email for the correct link."
VERIFY_INVALID_MESSAGE = (
    "This verification link has expired or is invalid. Please request a new verification email."
)
VERIFY_ALREADY_MESSAGE = "Your email is already verified. You can sign in to your account."
VERIFY_SUCCESS_MESSAGE = "Your email has been verified! You can now sign in to your account."
VERIFY_ERROR_MESSAGE = "An error occurred while verifying your email. Please try again later."
RESET_MISSING_MESSAGE = "Invalid reset link. Please check your email for the correct link."
RESET_INVALID_MESSAGE = (
    "This reset link has expired or is invalid. Please request a new password reset."
)

_LOGIN_FLASHES = {
    "registered": "Account created successfully! Please sign in.",
    "reset": "Password reset successfully! Please sign in with your new password.",
    "logout": "You have been signed out.",
    "verified": "Your email has been verified. Please sign in.",
}


def _field(form, name: str, *, strip: bool = True) -> str:
    value = form.get(name)
    if not isinstance(value, str):
        return ""
    return value.strip() if strip else value


def _client_info(request: Request) -> Dict[str, Optional[str]]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_addr": request.client.host if request.client else None,
    }


async def _throttled(
    runtime: Runtime, request: Request, action: str, email: str, limit: int
) -> Optional[int]:
    """Seconds to wait when the email's or the client's bucket is empty, else ``None``."""
    client = request.client.host if request.client else "unknown"
    buckets = (
        (f"{action}:{email or 'anonymous'}", limit),
        (f"{action}:client:{client}", runtime.settings.client_rate_limit_per_minute),
    )
    for key, key_limit in buckets:
        allowed, _, retry_after = await check_rate_limit(
            runtime, key, key_limit, 60, return_remaining=True
        )
        if not allowed:
            logger.warning(
                "rate_limited",
                action=action,
                email_redacted=redact_email(email),
                client=client,
            )
            return max(1, retry_after)
    return None


def _retry_after(response: Response, seconds: int) -> Response:
    response.headers["Retry-After"] = str(seconds)
    return response


def _start_session_response(
    runtime: Runtime, request: Request, token: str, target: str
) -> Response:
    response = redirect(request, target)
    set_session_cookie(response, token, runtime.policy)
    runtime.csrf.refresh_token(response, request)
    return response


# registration
def _render_register(
    request: Request,
    *,
    form: Optional[Dict[str, str]] = None,
    errors: Optional[Dict[str, str]] = None,
    message: Optional[Dict[str, str]] = None,
    status_code: int = 200,
) -> Response:
    runtime = get_runtime()
    form = form or {}
    return render(
        request,
        "register.html",
        {
            "form": form,
            "errors": errors or {},
            "flash": message,
            "invite_codes_enabled": runtime.invites.is_enabled(),
            "return_to": safe_return_to(
                form.get("return_to") or request.query_params.get("return_to"), ""
            ),
        },
        status_code=status_code,
    )


def _signup_closed(request: Request) -> Response:
    return render(
        request,
        "error.html",
        {
            "status_code": 403,
            "title": "Registration closed",
            "message": "New registrations are currently closed.",
        },
        status_code=403,
    )


@router.get("/register", response_class=HTMLResponse)
async def show_register(request: Request, auth: AuthState = Depends(optional_user)):
    runtime = get_runtime()
    if auth.user is not None:
        return redirect(request, runtime.settings.default_landing_path)
    if not runtime.settings.allow_signup:
        return _signup_closed(request)
    return _render_register(request)


@router.post(
    "/register",
    response_class=HTMLResponse,
    dependencies=[Depends(optional_user), Depends(csrf_protect)],
)
async def register(request: Request):
    """Create an account, email a verification link and sign the user in.

    Field errors re-render the form; a signed-in session is created even
    though the address is unverified, so the verification reminder is the
    first gated page the user sees.
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        return _signup_closed(request)
    form = await request.form()
    values = {
        "name": _field(form, "name"),
        "email": normalize_email(_field(form, "email")),
        "company_name": _field(form, "company_name"),
        "invite_code": _field(form, "invite_code"),
        "return_to": _field(form, "return_to"),
    }
    password = _field(form, "password", strip=False)
    password_confirm = _field(form, "password_confirm", strip=False)

    errors: Dict[str, str] = {}
    if not values["name"]:
        errors["name"] = "Name is required"
    if not values["email"]:
        errors["email"] = "Email is required"
    elif not is_valid_email(values["email"]):
        errors["email"] = "Please enter a valid email address"
    if not password:
        errors["password"] = "Password is required"
    elif len(password) < 8:
        errors["password"] = "Password must be at least 8 characters"
    if not password_confirm:
        errors["password_confirm"] = "Please confirm your password"
    elif password != password_confirm:
        errors["password_confirm"] = "Passwords do not match"
    if _field(form, "terms") != "on":
        errors["terms"] = "You must accept the Terms of Service"
    if runtime.invites.is_enabled():
        if not values["invite_code"]:
            errors["invite_code"] = "Invite code is required"
        elif not runtime.invites.validate(values["invite_code"]):
            errors["invite_code"] = "Invalid invite code"
    if errors:
        return _render_register(request, form=values, errors=errors)

    wait = await _throttled(
        runtime, request, "signup", values["email"], runtime.settings.signup_rate_limit_per_minute
    )
    if wait:
        return _retry_after(
            _render_register(
                request,
                form=values,
                message=flash("error", RATE_LIMITED_MESSAGE),
                status_code=429,
            ),
            wait,
        )

    try:
        user = await runtime.users.register(
            values["email"],
            password,
            values["name"],
            company_name=values["company_name"] or None,
            invite_code=values["invite_code"] if runtime.invites.is_enabled() else None,
        )
    except ConflictError:
        return _render_register(
            request,
            form=values,
            errors={"email": "An account with this email already exists"},
        )
    except ValidationError as exc:
        return _render_register(
            request, form=values, message=flash("error", exc.message)
        )
    except Exception as exc:
        logger.exception(
            "registration_failed", error_type=type(exc).__name__, error=str(exc)
        )
        return _render_register(
            request,
            form=values,
            message=flash("error", "Registration failed. Please try again later."),
        )

    try:
        runtime.users.send_verification(user)
    except Exception as exc:
        logger.error(
            "verification_token_failed",
            user_id=user.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    try:
        await runtime.sessions.invalidate_session(
            request.cookies.get(runtime.policy.session_name)
        )
        issued = await runtime.sessions.create_session(user.id, **_client_info(request))
    except Exception as exc:
        logger.error(
            "auto_login_failed",
            user_id=user.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return redirect(request, "/login?registered=1")
    target = safe_return_to(values["return_to"], runtime.settings.default_landing_path)
    return _start_session_response(runtime, request, issued.token, target)


# login / logout
def _render_login(
    request: Request,
    *,
    form: Optional[Dict[str, str]] = None,
    errors: Optional[Dict[str, str]] = None,
    message: Optional[Dict[str, str]] = None,
    status_code: int = 200,
) -> Response:
    form = form or {}
    return render(
        request,
        "login.html",
        {
            "form": form,
            "errors": errors or {},
            "flash": message,
            "return_to": safe_return_to(
                form.get("return_to") or request.query_params.get("return_to"), ""
            ),
        },
        status_code=status_code,
    )


@router.get("/login", response_class=HTMLResponse)
async def show_login(request: Request, auth: AuthState = Depends(optional_user)):
    runtime = get_runtime()
    return_to = request.query_params.get("return_to")
    if auth.user is not None:
        return redirect(
            request, safe_return_to(return_to, runtime.settings.default_landing_path)
        )
    message = None
    for key, text in _LOGIN_FLASHES.items():
        if request.query_params.get(key) == "1":
            message = flash("success", text)
            break
    return _render_login(request, message=message)


@router.post(
    "/login",
    response_class=HTMLResponse,
    dependencies=[Depends(optional_user), Depends(csrf_protect)],
)
async def login(request: Request):
    """Check credentials and start a session.

    Unknown emails and wrong passwords produce byte-identical responses.
    """
    runtime = get_runtime()
    form = await request.form()
    values = {
        "email": normalize_email(_field(form, "email")),
        "return_to": _field(form, "return_to"),
    }
    password = _field(form, "password", strip=False)
    errors: Dict[str, str] = {}
    if not values["email"]:
        errors["email"] = "Email is required"
    if not password:
        errors["password"] = "Password is required"
    if errors:
        return _render_login(request, form=values, errors=errors)

    wait = await _throttled(
        runtime, request, "login", values["email"], runtime.settings.login_rate_limit_per_minute
    )
    if wait:
        return _retry_after(
            _render_login(
                request,
                form=values,
                message=flash("error", RATE_LIMITED_MESSAGE),
                status_code=429,
            ),
            wait,
        )

    try:
        result = await runtime.users.login(
            values["email"],
            password,
            replaces=request.cookies.get(runtime.policy.session_name),
            **_client_info(request),
        )
    except ServiceError as exc:
        if exc.status_code == 401:
            return _render_login(
                request, form=values, message=flash("error", "Invalid email or password")
            )
        logger.error("login_error", error_code=exc.error_code, message=exc.message)
        return _render_login(
            request,
            form=values,
            message=flash("error", "Login failed. Please try again later."),
        )
    except Exception as exc:
        logger.exception("login_error", error_type=type(exc).__name__, error=str(exc))
        return _render_login(
            request,
            form=values,
            message=flash("error", "Login failed. Please try again later."),
        )
    target = safe_return_to(values["return_to"], runtime.settings.default_landing_path)
    return _start_session_response(runtime, request, result.token, target)


@router.post("/logout", dependencies=[Depends(csrf_protect)])
async def logout(request: Request, auth: AuthState = Depends(optional_user)):
    runtime = get_runtime()
    token = request.cookies.get(runtime.policy.session_name)
    try:
        await runtime.users.logout(token)
    except Exception as exc:
        logger.error(
            "logout_invalidate_failed", error_type=type(exc).__name__, error=str(exc)
        )
    if auth.user is not None:
        logger.info("user_logged_out", user_id=auth.user.id)
    response = redirect(request, "/login?logout=1")
    clear_session_cookie(response, runtime.policy)
    return response


# email verification
def _render_verify_result(request: Request, *, success: bool, message: str) -> Response:
    return render(
        request,
        "verify_email.html",
        {"success": success, "message": message, "can_resend": not success},
    )


@router.get("/verify-email", response_class=HTMLResponse)
async def verify_email(request: Request, auth: AuthState = Depends(optional_user)):
    token = request.query_params.get("token", "").strip()
    if not token:
        return _render_verify_result(request, success=False, message=VERIFY_MISSING_MESSAGE)
    runtime = get_runtime()
    try:
        runtime.users.verify_email(token)
    except NotFoundError:
        return _render_verify_result(request, success=False, message=VERIFY_INVALID_MESSAGE)
    except ConflictError:
        return _render_verify_result(request, success=True, message=VERIFY_ALREADY_MESSAGE)
    except Exception as exc:
        logger.exception(
            "email_verification_failed", error_type=type(exc).__name__, error=str(exc)
        )
        return _render_verify_result(request, success=False, message=VERIFY_ERROR_MESSAGE)
    return _render_verify_result(request, success=True, message=VERIFY_SUCCESS_MESSAGE)


def _render_resend(
    request: Request,
    *,
    form: Optional[Dict[str, str]] = None,
    errors: Optional[Dict[str, str]] = None,
    message: Optional[Dict[str, str]] = None,
    success: bool = False,
    status_code: int = 200,
) -> Response:
    return render(
        request,
        "resend_verification.html",
        {
            "form": form or {},
            "errors": errors or {},
            "flash": message,
            "success": success,
        },
        status_code=status_code,
    )


@router.get("/resend-verification", response_class=HTMLResponse)
async def show_resend_verification(
    request: Request, auth: AuthState = Depends(optional_user)
):
    return _render_resend(request)


@router.post(
    "/resend-verification",
    response_class=HTMLResponse,
    dependencies=[Depends(optional_user), Depends(csrf_protect)],
)
async def resend_verification(request: Request):
    """Same answer for every well-formed email, whether or not it has an account."""
    runtime = get_runtime()
    form = await request.form()
    email = normalize_email(_field(form, "email"))
    if not email:
        return _render_resend(request, form={"email": email}, errors={"email": "Email is required"})
    if not is_valid_email(email):
        return _render_resend(
            request,
            form={"email": email},
            errors={"email": "Please enter a valid email address"},
        )
    wait = await _throttled(
        runtime, request, "resend", email, runtime.settings.reset_rate_limit_per_minute
    )
    if wait:
        return _retry_after(
            _render_resend(
                request,
                form={"email": email},
                message=flash("error", RATE_LIMITED_MESSAGE),
                status_code=429,
            ),
            wait,
        )
    try:
        runtime.users.resend_verification_email(email)
    except Exception as exc:
        logger.error(
            "verification_resend_failed", error_type=type(exc).__name__, error=str(exc)
        )
    return _render_resend(
        request, message=flash("success", RESEND_SENT_MESSAGE), success=True
    )


@router.get("/verify-email-reminder", response_class=HTMLResponse)
async def verify_email_reminder(request: Request, user: User = Depends(authenticated)):
    runtime = get_runtime()
    if user.email_verified:
        return redirect(request, runtime.settings.default_landing_path)
    sent = request.query_params.get("sent") == "1"
    return render(
        request,
        "verify_email_reminder.html",
        {
            "user": user,
            "flash": flash("success", REMINDER_SENT_MESSAGE) if sent else None,
        },
    )


@router.post("/verify-email-reminder/resend", dependencies=[Depends(csrf_protect)])
async def verify_email_reminder_resend(
    request: Request, user: User = Depends(authenticated)
):
    runtime = get_runtime()
    if user.email_verified:
        return redirect(request, runtime.settings.default_landing_path)
    wait = await _throttled(
        runtime, request, "resend", user.email, runtime.settings.reset_rate_limit_per_minute
    )
    if wait:
        return _retry_after(
            render(
                request,
                "verify_email_reminder.html",
                {"user": user, "flash": flash("error", RATE_LIMITED_MESSAGE)},
                status_code=429,
            ),
            wait,
        )
    try:
        runtime.users.send_verification(user)
    except Exception as exc:
        logger.error(
            "verification_resend_failed",
            user_id=user.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
    return redirect(request, "/verify-email-reminder?sent=1")


# password reset
@router.get("/forgot-password", response_class=HTMLResponse)
async def show_forgot_password(request: Request, auth: AuthState = Depends(optional_user)):
    return render(request, "forgot_password.html")


@router.post(
    "/forgot-password",
    response_class=HTMLResponse,
    dependencies=[Depends(optional_user), Depends(csrf_protect)],
)
async def forgot_password(request: Request):
    runtime = get_runtime()
    form = await request.form()
    email = normalize_email(_field(form, "email"))
    errors: Dict[str, str] = {}
    if not email:
        errors["email"] = "Email is required"
    elif not is_valid_email(email):
        errors["email"] = "Please enter a valid email address"
    if errors:
        return render(
            request, "forgot_password.html", {"form": {"email": email}, "errors": errors}
        )
    wait = await _throttled(
        runtime, request, "reset", email, runtime.settings.reset_rate_limit_per_minute
    )
    if wait:
        return _retry_after(
            render(
                request,
                "forgot_password.html",
                {"form": {"email": email}, "flash": flash("error", RATE_LIMITED_MESSAGE)},
                status_code=429,
            ),
            wait,
        )
    try:
        runtime.users.request_password_reset(email)
    except Exception as exc:
        logger.error(
            "password_reset_request_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
    return render(request, "forgot_password_sent.html")


def _render_reset_invalid(request: Request, message: str) -> Response:
    return render(request, "reset_password_invalid.html", {"message": message})


@router.get("/reset-password", response_class=HTMLResponse)
async def show_reset_password(request: Request, auth: AuthState = Depends(optional_user)):
    token = request.query_params.get("token", "").strip()
    if not token:
        return _render_reset_invalid(request, RESET_MISSING_MESSAGE)
    runtime = get_runtime()
    try:
        runtime.users.validate_password_reset_token(token)
    except NotFoundError:
        return _render_reset_invalid(request, RESET_INVALID_MESSAGE)
    return render(request, "reset_password.html", {"token": token})


@router.post(
    "/reset-password",
    response_class=HTMLResponse,
    dependencies=[Depends(optional_user), Depends(csrf_protect)],
)
async def reset_password(request: Request):
    """Consume the reset token, store the new password and sign out everywhere."""
    runtime = get_runtime()
    form = await request.form()
    token = _field(form, "token")
    password = _field(form, "password", strip=False)
    password_confirm = _field(form, "password_confirm", strip=False)
    if not token:
        return _render_reset_invalid(request, RESET_MISSING_MESSAGE)

    errors: Dict[str, str] = {}
    if not password:
        errors["password"] = "Password is required"
    elif len(password) < 8:
        errors["password"] = "Password must be at least 8 characters"
    if not password_confirm:
        errors["password_confirm"] = "Please confirm your password"
    elif password != password_confirm:
        errors["password_confirm"] = "Passwords do not match"
    if errors:
        return render(request, "reset_password.html", {"token": token, "errors": errors})

    try:
        await runtime.users.reset_password(token, password)
    except NotFoundError:
        return _render_reset_invalid(request, RESET_INVALID_MESSAGE)
    except ValidationError as exc:
        return render(
            request,
            "reset_password.html",
            {"token": token, "flash": flash("error", exc.message)},
        )
    response = redirect(request, "/login?reset=1")
    clear_session_cookie(response, runtime.policy)
    return response
