"""
Ledger Errors

Every rejection the ledger can produce has a stable numeric code.
These codes are the external contract: consumers that already depend
on them must keep working, so codes are never renumbered or reused.

    100  UNAUTHORIZED          caller is not the required identity
    101  INVALID_OBSERVATION   a field violates a length or range bound
    102  ALREADY_EXISTS        (species, timestamp) already recorded
    103  INVALID_QUERY_PARAMS  malformed pagination or lookup request
    104  NOT_FOUND             referenced observation does not exist
    105  PAUSED                mutating call while the ledger is paused
    106  CAPACITY_EXCEEDED     location bucket is full
"""

from enum import IntEnum


class ErrorCode(IntEnum):
    """Stable error codes. You can add more later, never renumber."""
    UNAUTHORIZED = 100
    INVALID_OBSERVATION = 101
    ALREADY_EXISTS = 102
    INVALID_QUERY_PARAMS = 103
    NOT_FOUND = 104
    PAUSED = 105
    CAPACITY_EXCEEDED = 106


class LedgerError(Exception):
    """Base exception for ledger rejections. Carries a stable code."""
    code: ErrorCode


class Unauthorized(LedgerError):
    """Caller is not the admin, validator, or eligible corrector."""
    code = ErrorCode.UNAUTHORIZED


class InvalidObservation(LedgerError):
    """A candidate observation field is out of bounds."""
    code = ErrorCode.INVALID_OBSERVATION


class AlreadyExists(LedgerError):
    """An observation for this (species, timestamp) is already recorded."""
    code = ErrorCode.ALREADY_EXISTS


class InvalidQueryParams(LedgerError):
    """Pagination or lookup parameters are malformed."""
    code = ErrorCode.INVALID_QUERY_PARAMS


class NotFound(LedgerError):
    """The referenced observation does not exist."""
    code = ErrorCode.NOT_FOUND


class Paused(LedgerError):
    """Admissions are rejected while the ledger is paused."""
    code = ErrorCode.PAUSED


class CapacityExceeded(LedgerError):
    """A location bucket has reached its maximum length."""
    code = ErrorCode.CAPACITY_EXCEEDED


class ChainError(Exception):
    """
    Raised when the event chain is inconsistent.

    This is NOT a caller rejection. It means the stored history
    cannot be trusted and the ledger must not be served from it.
    """
    pass
