from pydantic import BaseModel
from typing import Optional


class ProblemDetail(BaseModel):
    """RFC 7807 compliant error response."""

    type: str = "about:blank"
    title: str
    detail: Optional[str] = None
    status: int
    instance: Optional[str] = None
    code: str


class DomainException(Exception):
    """Base class for domain-specific exceptions."""

    status_code = 500
    title = "Internal Server Error"
    default_code = "internal_error"
    retryable = False

    def __init__(
        self,
        detail: str | None = None,
        *,
        code: str | None = None,
        title: str | None = None,
        type_: str = "about:blank",
    ) -> None:
        super().__init__(detail or self.title)
        self.detail = detail
        self.code = code or self.default_code
        if title is not None:
            self.title = title
        self.type = type_


class AuthError(DomainException):
    """Caller is not authenticated as the owner of the resource."""

    status_code = 401
    title = "Not authenticated"
    default_code = "auth_required"


class ValidationError(DomainException):
    status_code = 400
    title = "Invalid request"
    default_code = "validation_error"


class NotFoundError(DomainException):
    status_code = 404
    title = "Not found"
    default_code = "not_found"


class ConflictError(DomainException):
    """A concurrent session or a concurrent rating write won the race.

    The caller should start over with a fresh ``open()``.
    """

    status_code = 409
    title = "Conflict"
    default_code = "conflict"


class TransientError(DomainException):
    """Storage was unreachable or timed out; safe to retry."""

    status_code = 503
    title = "Service temporarily unavailable"
    default_code = "transient_error"
    retryable = True


class FatalError(DomainException):
    status_code = 500
    title = "Internal Server Error"
    default_code = "fatal_error"


class SetNotFound(NotFoundError):
    def __init__(self, set_id: str) -> None:
        super().__init__(f"set '{set_id}' not found", code="set_not_found")
        self.set_id = set_id
