"""Request gates shared by every page and API route.

A gate is an ``async`` callable taking the :class:`~fastapi.Request`. It
either returns a value (the auth state, the current user) or refuses the
request by raising :class:`GateRejected` with the response to send instead.
:class:`Stack` chains gates into one FastAPI dependency::

    @router.get("/dashboard")
    async def dashboard(request: Request, user: User = Depends(verified)):
        ...

Gates never redirect an anonymous user to a page that itself requires
login, and the verification reminder is mounted under ``authenticated``
rather than ``verified``, so no chain can loop.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote, urlsplit

from fastapi import Request
from fastapi.responses import Response

from gatehouse.logging import get_logger
from gatehouse.service.csrf import CSRFError
from gatehouse.service.errors import (
    AuthenticationError,
    ForbiddenError,
    PaymentRequiredError,
    ServiceError,
)
from gatehouse.service.runtime import get_runtime
from gatehouse.storage.models import User
from gatehouse.web.rendering import is_api_request, json_error, redirect

logger = get_logger(__name__)

LOGIN_PATH = "/login"
VERIFY_REMINDER_PATH = "/verify-email-reminder"
UPGRADE_PATH = "/settings/billing?upgrade=1"

Gate = Callable[[Request], Awaitable[Any]]


@dataclass(frozen=True)
class AuthState:
    user: Optional[User]
    session_token: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


class GateRejected(Exception):
    """Raised by a gate to short-circuit the request with ``response``."""

    def __init__(self, response: Response, reason: str) -> None:
        super().__init__(reason)
        self.response = response
        self.reason = reason


class Stack:
    """Run gates left to right and return the last gate's result."""

    def __init__(self, *gates: Gate) -> None:
        if not gates:
            raise ValueError("Stack needs at least one gate")
        self.gates = gates

    async def __call__(self, request: Request) -> Any:
        result: Any = None
        for gate in self.gates:
            result = await gate(request)
        return result

    def __repr__(self) -> str:
        names = ", ".join(getattr(g, "__name__", repr(g)) for g in self.gates)
        return f"Stack({names})"


def is_safe_redirect_url(url: Optional[str]) -> bool:
    """Accept only same-site absolute paths such as ``/settings?tab=profile``."""
    if not url or not url.startswith("/"):
        return False
    if url.startswith("//") or url.startswith("/\\"):
        return False
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in url):
        return False
    parts = urlsplit(url)
    return not parts.scheme and not parts.netloc


def safe_return_to(url: Optional[str], default: str) -> str:
    return url if is_safe_redirect_url(url) else default


def login_url_for(request: Request) -> str:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    if not is_safe_redirect_url(target):
        return LOGIN_PATH
    return f"{LOGIN_PATH}?return_to={quote(target, safe='/')}"


def _reject(request: Request, error: ServiceError, *, location: str, reason: str):
    """API clients get ``error`` as a JSON envelope; browsers are sent to ``location``."""
    if is_api_request(request):
        response = json_error(error.status_code, error.message, code=error.error_code)
    else:
        response = redirect(request, location)
    raise GateRejected(response, reason)


async def with_user(request: Request) -> AuthState:
    """Attach the session's user, if any, to ``request.state.auth``. Never blocks."""
    runtime = get_runtime()
    token = request.cookies.get(runtime.policy.session_name)
    user: Optional[User] = None
    if token:
        try:
            user = await runtime.sessions.resolve_session(token)
        except Exception as exc:
            logger.error(
                "session_resolve_failed",
                path=request.url.path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            if user is None:
                request.state.clear_session_cookie = True
    state = AuthState(user=user, session_token=token if user else None)
    request.state.auth = state
    return state


def current_auth(request: Request) -> AuthState:
    state = getattr(request.state, "auth", None)
    if state is None:
        raise RuntimeError("with_user must run before any gate that reads the user")
    return state


async def require_user(request: Request) -> User:
    state = current_auth(request)
    if state.user is None:
        _reject(
            request,
            AuthenticationError("Authentication required"),
            location=login_url_for(request),
            reason="anonymous",
        )
    return state.user


async def require_email_verified(request: Request) -> User:
    user = await require_user(request)
    if not user.email_verified:
        _reject(
            request,
            ForbiddenError("Email verification required"),
            location=VERIFY_REMINDER_PATH,
            reason="email_unverified",
        )
    return user


async def require_active_subscription(request: Request) -> User:
    user = await require_user(request)
    if not user.has_active_subscription:
        _reject(
            request,
            PaymentRequiredError("An active subscription is required"),
            location=UPGRADE_PATH,
            reason="subscription_inactive",
        )
    return user


async def csrf_protect(request: Request) -> None:
    """Reject state-changing requests whose CSRF token does not match the cookie."""
    runtime = get_runtime()
    submitted = request.headers.get(runtime.policy.csrf_header)
    if not submitted:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            value = form.get(runtime.policy.csrf_field)
            submitted = value if isinstance(value, str) else None
    if not runtime.csrf.validate_request(request, submitted):
        logger.warning(
            "csrf_validation_failed",
            path=request.url.path,
            method=request.method,
            had_token=bool(submitted),
        )
        raise CSRFError()


optional_user = Stack(with_user)
authenticated = Stack(with_user, require_user)
verified = Stack(with_user, require_user, require_email_verified)
subscribed = Stack(
    with_user, require_user, require_email_verified, require_active_subscription
)
