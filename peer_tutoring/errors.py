"""Domain error codes for tutoring sessions.

Every error carries a code, a user-safe message and the HTTP status the
exception handler in main.py renders it with.
"""

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    DUPLICATE_ENROLLMENT = "DUPLICATE_ENROLLMENT"
    NOT_ENROLLED = "NOT_ENROLLED"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"


class TutoringError(Exception):
    """Base domain error with code and user-safe message."""

    code = ErrorCode.BAD_REQUEST
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(TutoringError):
    """Raised when input is malformed or out of range.

    `errors` keeps each violated rule; the message joins all of them.
    """

    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, errors) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))


class BadRequestError(TutoringError):
    """Client-facing error for rule violations reported by the session entity."""

    code = ErrorCode.BAD_REQUEST


class UnauthorizedError(TutoringError):
    """Raised when the actor's role or ownership does not allow an action."""

    code = ErrorCode.UNAUTHORIZED
    status_code = 403

    def __init__(self, message: str = "Not authorized to perform this action") -> None:
        super().__init__(message)


class NotFoundError(TutoringError):
    """Raised when a session, tutor or user does not exist."""

    code = ErrorCode.NOT_FOUND
    status_code = 404


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__("Session not found")
        self.session_id = session_id


class RosterError(TutoringError):
    """Base for participant roster rule violations."""


class CapacityExceededError(RosterError):
    code = ErrorCode.CAPACITY_EXCEEDED

    def __init__(self) -> None:
        super().__init__("Session is at full capacity")


class DuplicateEnrollmentError(RosterError):
    code = ErrorCode.DUPLICATE_ENROLLMENT

    def __init__(self) -> None:
        super().__init__("User is already enrolled in this session")


class NotEnrolledError(RosterError):
    code = ErrorCode.NOT_ENROLLED

    def __init__(self) -> None:
        super().__init__("User is not enrolled in this session")


class ConcurrentUpdateError(TutoringError):
    """Raised when optimistic retries on a session are exhausted."""

    code = ErrorCode.CONCURRENT_UPDATE
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__("Session was modified concurrently, please retry")
        self.session_id = session_id
