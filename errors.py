"""
Error taxonomy for the Fix My Area API.

Every error the services raise on purpose derives from ``FixMyAreaError`` and
carries the HTTP status it maps to, so the exception handlers in ``main`` can
render the response envelope without a lookup table.
"""

from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError


class FixMyAreaError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(FixMyAreaError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation error", errors: Optional[List[str]] = None):
        self.errors = errors or [message]
        super().__init__(message, details={"errors": self.errors})


class AuthenticationError(FixMyAreaError):
    status_code = 401
    code = "AUTH_REQUIRED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class PermissionDeniedError(FixMyAreaError):
    status_code = 403
    code = "PERMISSION_DENIED"

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message)


class NotFoundError(FixMyAreaError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Optional[str] = None, message: Optional[str] = None):
        self.resource = resource
        self.resource_id = resource_id
        details = {"resource": resource}
        if resource_id is not None:
            details["id"] = resource_id
        super().__init__(message or f"{resource} not found", details=details)


class ConflictError(FixMyAreaError):
    status_code = 409
    code = "CONFLICT"


class DuplicateVoteError(ConflictError):
    """The (voter, issue) pair already has a ledger row."""

    def __init__(self, voter_id: str, issue_id: str):
        self.voter_id = voter_id
        self.issue_id = issue_id
        super().__init__("Vote already recorded", details={"userId": voter_id, "issueId": issue_id})


class RateLimitedError(FixMyAreaError):
    status_code = 429
    code = "RATE_LIMITED"


class TransientError(FixMyAreaError):
    status_code = 503
    code = "TRANSIENT"

    def __init__(self, message: str = "Service temporarily unavailable, please retry"):
        super().__init__(message)


class CommitUnknownError(FixMyAreaError):
    """The commit may or may not have landed; repeating the work is unsafe."""

    status_code = 503
    code = "COMMIT_UNKNOWN"

    def __init__(self, message: str = "The change may have been saved, please refresh before retrying"):
        super().__init__(message)


def _field_message(err: Dict[str, Any]) -> str:
    loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
    msg = err.get("msg", "Invalid value")
    return f"{loc}: {msg}" if loc else msg


def from_pydantic(exc: PydanticValidationError) -> ValidationError:
    return ValidationError("Validation error", [_field_message(e) for e in exc.errors()])


def messages_from_errors(errors) -> List[str]:
    return [_field_message(e) for e in errors]
