"""Classified failures raised by the data-access layer.

Every error carries a user-facing ``message`` and, where the backend supplied
one, the underlying ``detail`` for diagnostics. ``code`` is stable and is what
API clients should branch on.
"""
from typing import Optional


class SurveyError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class AuthorizationRequired(SurveyError):
    code = "authorization_required"
    status_code = 401


class PermissionDenied(SurveyError):
    code = "permission_denied"
    status_code = 403


class NotFound(SurveyError):
    code = "not_found"
    status_code = 404


class UniquenessConflict(SurveyError):
    code = "conflict"
    status_code = 409


class ReferentialViolation(SurveyError):
    code = "referential_violation"
    status_code = 422


class LimitExceeded(SurveyError):
    code = "limit_exceeded"
    status_code = 409


class BackendError(SurveyError):
    code = "backend_error"
    status_code = 500

    def __init__(self, detail: str, message: Optional[str] = None):
        super().__init__(message or f"Database error: {detail}", detail)


class AuthError(SurveyError):
    code = "auth_error"
    status_code = 400


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401


class InvalidInput(SurveyError):
    code = "invalid_input"
    status_code = 422

    def __init__(self, message: str, detail=None, fields=None):
        super().__init__(message, detail)
        self.fields = fields or {}
