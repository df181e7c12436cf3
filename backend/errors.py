"""
Error taxonomy for the lending engine.

Every failure the engine reports is a LendingError subclass carrying an
ErrorType, the HTTP status the API layer answers with, and a details dict
with whatever the client needs to render the case.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(Enum):
    """Standard error kinds"""
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    ALREADY_TERMINAL = "already_terminal"


class LendingError(Exception):
    """Base exception for the lending engine"""

    error_type = ErrorType.INVALID_INPUT
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "type": self.error_type.value,
            "details": self.details,
        }


class Unauthorized(LendingError):
    """Actor lacks the role required for the mutation."""
    error_type = ErrorType.UNAUTHORIZED
    status_code = 403


class NotFound(LendingError):
    error_type = ErrorType.NOT_FOUND
    status_code = 404


class InvalidInput(LendingError):
    error_type = ErrorType.INVALID_INPUT
    status_code = 400


class Conflict(LendingError):
    error_type = ErrorType.CONFLICT
    status_code = 409


class AlreadyTerminal(LendingError):
    """Mutation attempted on a request or loan that has already resolved."""
    error_type = ErrorType.ALREADY_TERMINAL
    status_code = 409


class InvalidLevel(InvalidInput):
    pass


class SelfTrust(InvalidInput):
    pass


class InvalidRange(InvalidInput):
    pass


class ItemNotVisible(NotFound):
    pass


class DuplicatePending(Conflict):
    pass


class ItemAlreadyOnLoan(Conflict):
    pass


class AlreadyReturned(AlreadyTerminal):
    pass


class IllegalTransition(AlreadyTerminal):
    pass
