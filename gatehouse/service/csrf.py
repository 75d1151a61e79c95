from __future__ import annotations

import hmac
from typing import Optional

from starlette.requests import Request
from starlette.responses import Response

from gatehouse.config import CookiePolicy
from gatehouse.service.tokens import TokenIssuer, TokenKind

CSRF_FAILURE_MESSAGE = (
    "Your form session expired. Please go back, refresh the page and try again."
)
_MAX_TOKEN_LENGTH = 128


class CSRFError(Exception):
    """A state-changing request arrived without a matching double-submit token."""

    status_code = 403
    error_code = "csrf_failed"

    def __init__(self, message: str = CSRF_FAILURE_MESSAGE) -> None:
        super().__init__(message)
        self.message = message


class CSRFGuard:
    """Double-submit cookie protection.

    A random token lives in a readable cookie and is echoed back in a form
    field (or the ``X-CSRF-Token`` header for htmx). No server-side state is
    kept; validation is a constant-time comparison of the two copies.
    """

    def __init__(self, policy: CookiePolicy, issuer: TokenIssuer) -> None:
        self.policy = policy
        self.issuer = issuer

    def _set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            self.policy.csrf_name,
            token,
            max_age=self.policy.csrf_max_age,
            path=self.policy.path,
            secure=self.policy.secure,
            httponly=False,
            samesite="strict",
        )

    def ensure_token(self, request: Request, response: Optional[Response] = None) -> str:
        """Return the token to embed in a form, issuing one when needed.

        The value is memoised on ``request.state`` so several forms in one
        render share it. A newly issued token is written to ``response`` when
        given, otherwise it waits for :meth:`commit`.
        """
        existing = getattr(request.state, "csrf_token", None)
        if existing:
            if response is not None:
                self.commit(request, response)
            return existing
        cookie = request.cookies.get(self.policy.csrf_name)
        if cookie and len(cookie) <= _MAX_TOKEN_LENGTH:
            request.state.csrf_token = cookie
            return cookie
        token = self.issuer.issue(TokenKind.CSRF)
        request.state.csrf_token = token
        request.state.csrf_pending = True
        if response is not None:
            self.commit(request, response)
        return token

    def commit(self, request: Request, response: Response) -> None:
        if getattr(request.state, "csrf_pending", False):
            self._set_cookie(response, request.state.csrf_token)
            request.state.csrf_pending = False

    def validate_request(self, request: Request, submitted: Optional[str]) -> bool:
        cookie = request.cookies.get(self.policy.csrf_name)
        if not cookie or not submitted:
            return False
        return hmac.compare_digest(cookie.encode("utf-8"), submitted.encode("utf-8"))

    def refresh_token(self, response: Response, request: Optional[Request] = None) -> str:
        """Rotate the token, e.g. right after the session changes hands."""
        token = self.issuer.issue(TokenKind.CSRF)
        self._set_cookie(response, token)
        if request is not None:
            request.state.csrf_token = token
            request.state.csrf_pending = False
        return token
