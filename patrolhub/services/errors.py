"""
Typed errors raised by the patrol services.
Rendered as JSON by the handler registered in main.create_app.
"""
from typing import Optional, Dict, Any


class PatrolError(Exception):
    status_code = 500
    kind = "error"
    default_code = "ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PatrolError):
    """Malformed input: bad coordinates, bad time format, zero-length window."""
    status_code = 400
    kind = "validation"
    default_code = "VALIDATION_ERROR"


class ConflictError(PatrolError):
    """Business rule violation on a well-formed request."""
    status_code = 409
    kind = "conflict"
    default_code = "CONFLICT"


class NotFoundError(PatrolError):
    """Referenced guard, checkpoint or shift is missing or inactive."""
    status_code = 404
    kind = "not_found"
    default_code = "NOT_FOUND"


class DependencyFailure(PatrolError):
    """Store transaction failed; nothing from the operation was persisted."""
    status_code = 500
    kind = "dependency"
    default_code = "STORE_FAILURE"
