from typing import Optional


class DirectoryError(Exception):
    """Base class for failures talking to the assignment directory service."""


class UnreachableError(DirectoryError):
    """No network, DNS failure, refused connection or timeout. Transient."""


class ServerError(DirectoryError):
    """The server answered, but rejected the request or sent a malformed body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidAssignmentError(DirectoryError):
    """The referenced assignment is unknown or expired on the server."""

    def __init__(self, assignment_id: str, status_code: Optional[int] = None):
        super().__init__(f"Assignment {assignment_id} is no longer valid")
        self.assignment_id = assignment_id
        self.status_code = status_code


class CacheCorruptError(Exception):
    """A locally stored document failed validation."""

    def __init__(self, key: str, reason: str = ""):
        super().__init__(f"Corrupt state entry {key}: {reason}" if reason else f"Corrupt state entry {key}")
        self.key = key
        self.reason = reason


class AnswerValidationError(ValueError):
    pass


class SessionStateError(RuntimeError):
    pass
