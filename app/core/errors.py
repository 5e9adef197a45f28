"""
Domain errors raised by the policy stores.

Each error carries the HTTP status the API layer renders it with and the
codes that caused the rejection, so editing UIs can point at the offending
row.
"""
from typing import Iterable


class AccessEngineError(Exception):
    """Base class for all policy errors."""
    status_code = 400
    kind = "Error"

    def __init__(self, message: str, codes: Iterable[str] | None = None):
        super().__init__(message)
        self.message = message
        self.codes = sorted(set(codes)) if codes else []

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message, "codes": self.codes}


class NotFoundError(AccessEngineError):
    status_code = 404
    kind = "NotFound"


class ProtectedEntityError(AccessEngineError):
    status_code = 403
    kind = "ProtectedEntity"


class PolicyValidationError(AccessEngineError):
    status_code = 400
    kind = "ValidationError"


class ConflictError(AccessEngineError):
    status_code = 409
    kind = "Conflict"
