"""
iam/errors.py -- Typed error kinds raised by the identity engine.

Flow and service code raises IAMError subclasses; it never raises
HTTPException. api/main.py registers one exception handler that turns any
IAMError into the standard error envelope:

    {"error": {"code": "...", "message": "...", "detail": {...}}}

Kinds and their default HTTP status:
  ValidationError     400  malformed or semantically invalid input
  NotFoundError       404  entity absent (or in another tenant)
  ConflictError       409  duplicate or already-in-that-state
  BusinessRuleError   400  policy refusal; status set per code (403/410/429)
  AuthorizationError  401  bad credentials; 403 when authenticated but denied
  InternalError       500  collaborator failure; cause hidden unless DEBUG

Layer rule: no imports from the rest of the project.
"""

from __future__ import annotations

from typing import Any


class IAMError(Exception):
    """Base class for every error the engine raises on purpose."""

    status_code: int = 400
    default_code: str = "error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(IAMError):
    status_code = 400
    default_code = "validation_error"


class NotFoundError(IAMError):
    status_code = 404
    default_code = "not_found"


class ConflictError(IAMError):
    status_code = 409
    default_code = "conflict"


class BusinessRuleError(IAMError):
    status_code = 400
    default_code = "business_rule"


class AuthorizationError(IAMError):
    status_code = 401
    default_code = "unauthorized"


class InternalError(IAMError):
    """A collaborator failed (notification send, provider call, store).

    `cause` is kept for logging; the HTTP layer only shows it in DEBUG mode.
    """

    status_code = 500
    default_code = "internal_error"

    def __init__(self, message: str, code: str | None = None, *, cause: BaseException | None = None, **kwargs):
        super().__init__(message, code, **kwargs)
        self.cause = cause
