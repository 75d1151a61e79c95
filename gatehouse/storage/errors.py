from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a store-level uniqueness or foreign-key rule is violated.

    ``detail["field"]`` names the offending column when one applies, e.g.
    ``{"field": "email"}`` for a duplicate account.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
