"""Domain error codes and exceptions for the ticketing core.

Every error carries the HTTP status it maps to; handlers in main.py turn
them into ``{"error": ..., "code": ...}`` responses.
"""

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_REQUEST = "INVALID_REQUEST"

    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    TICKET_TIER_NOT_FOUND = "TICKET_TIER_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"

    NOT_ORGANIZER = "NOT_ORGANIZER"
    NOT_EVENT_OWNER = "NOT_EVENT_OWNER"
    NOT_TRANSACTION_OWNER = "NOT_TRANSACTION_OWNER"

    INSUFFICIENT_SEATS = "INSUFFICIENT_SEATS"
    COUPON_LIMIT_REACHED = "COUPON_LIMIT_REACHED"
    INVALID_STATUS = "INVALID_STATUS"
    LEDGER_INVARIANT = "LEDGER_INVARIANT"

    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"
    COUPON_INACTIVE = "COUPON_INACTIVE"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_EVENT_MISMATCH = "COUPON_EVENT_MISMATCH"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    status_code = 500

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class UnauthorizedError(DomainError):
    """Raised when no actor can be resolved for the request."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(ErrorCode.UNAUTHORIZED, message)


class NotFoundError(DomainError):
    """Raised when a referenced record does not exist."""

    status_code = 404


class ForbiddenError(DomainError):
    """Raised when the actor has the wrong role or does not own the record."""

    status_code = 403


class ConflictError(DomainError):
    """Raised when a status precondition or a capacity limit is violated."""

    status_code = 409


class InvalidInputError(DomainError):
    """Raised for requests that are well-formed but cannot be honoured."""

    status_code = 400


class LedgerInvariantError(ConflictError):
    """Raised when a compensation would drive a counter out of range."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.LEDGER_INVARIANT, message)
