"""
Service Errors

Every failure raised by the order and payment services carries a stable
`kind` string and the HTTP status it is reported with.
"""

from typing import Any, Optional


class ServiceError(Exception):
    kind = "internal_error"
    status_code = 500

    def __init__(self, detail: str, extra: Optional[Any] = None):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.kind, "detail": self.detail}
        if self.extra is not None:
            body["errors"] = self.extra
        return body


class ValidationError(ServiceError):
    """Missing or malformed input the caller can fix."""
    kind = "validation_error"
    status_code = 400


class NotFoundError(ServiceError):
    kind = "not_found"
    status_code = 404


class ConflictError(ServiceError):
    """The action was already performed (e.g. paying a paid order)."""
    kind = "conflict"
    status_code = 409


class ForbiddenError(ServiceError):
    kind = "forbidden"
    status_code = 403


class RetryableError(ServiceError):
    """The payment provider timed out or failed transiently."""
    kind = "retryable"
    status_code = 503


class InternalError(ServiceError):
    kind = "internal_error"
    status_code = 500
