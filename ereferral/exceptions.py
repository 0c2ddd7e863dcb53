"""
Error taxonomy for the compliance layer.

Every business error derives from BaseAppException and carries:
- type:        error class identifier (not_found / policy_violation / ...)
- code:        specific rule or condition (STORNO_WINDOW_EXCEEDED, ...)
- message:     human readable reason
- detail:      optional extra data (dict / list / None)
- http_status: status code used by the API layer

Services raise; the exception handler in ``ereferral.main`` renders the response.
"""

from __future__ import annotations


class BaseAppException(Exception):
    """Base class of all business errors."""

    type = "error"
    code = "UNKNOWN_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"type": self.type, "code": self.code, "message": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class NotFound(BaseAppException):
    """Referenced entity does not exist. Never retried automatically."""

    type = "not_found"
    code = "NOT_FOUND"
    http_status = 404


class PolicyViolation(BaseAppException):
    """A compliance rule rejected the request before any mutation."""

    type = "policy_violation"
    code = "POLICY_VIOLATION"
    http_status = 403


class InvalidTransition(PolicyViolation):
    """The entity's current status does not accept the requested event."""

    code = "INVALID_TRANSITION"
    http_status = 409


class Conflict(BaseAppException):
    """Ownership of the referral is already held."""

    type = "conflict"
    code = "ALREADY_TAKEN_OVER"
    http_status = 409


class TransientFailure(BaseAppException):
    """
    The Central System rejected the call or could not be reached.

    Callers must re-read the document before retrying: the remote side may
    already have applied the change.
    """

    type = "transient_failure"
    code = "CENTRAL_SYSTEM_UNAVAILABLE"
    http_status = 503
    retryable = True


class UnsignedDependency(BaseAppException):
    """Billing or reversing work that has not been signed or issued yet."""

    type = "unsigned_dependency"
    code = "UNSIGNED_DEPENDENCY"
    http_status = 409
