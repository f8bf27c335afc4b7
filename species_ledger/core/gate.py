"""
Admission Gate

Pure checks run before any mutation is attempted.

Check order is part of the contract (callers key off the error code):
    1. authorization  -> Unauthorized
    2. pause state    -> Paused
    3. field bounds   -> InvalidObservation
An unauthorized caller gets Unauthorized even for a garbage payload.
"""

from typing import Optional

from ..schemas import ObservationCandidate
from .errors import InvalidObservation, Paused, Unauthorized
from .state import LedgerState


MAX_SPECIES_NAME_LEN = 50
MAX_LOCATION_DESC_LEN = 100
MAX_METADATA_LEN = 1024
MAX_EVIDENCE_HASH_BYTES = 32
MAX_CONFIDENCE_SCORE = 100


def require_validator(state: LedgerState, caller: str) -> None:
    if caller != state.authorized_validator:
        raise Unauthorized("Caller is not the authorized validator")


def require_admin(state: LedgerState, caller: str) -> None:
    if caller != state.admin:
        raise Unauthorized("Caller is not the ledger admin")


def require_not_paused(state: LedgerState) -> None:
    if state.paused:
        raise Paused("Ledger is paused")


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_text(value, max_len: Optional[int] = None) -> bool:
    """A string within max_len characters that encodes as UTF-8 (no lone surrogates)."""
    if not isinstance(value, str):
        return False
    if max_len is not None and len(value) > max_len:
        return False
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def check_bounds(candidate: ObservationCandidate) -> None:
    """
    Field-size and range constraints.

    Raises InvalidObservation naming the first offending field.
    """
    if not _is_text(candidate.species, MAX_SPECIES_NAME_LEN):
        raise InvalidObservation(f"species must be a string of at most {MAX_SPECIES_NAME_LEN} characters")

    if not _is_text(candidate.location_desc, MAX_LOCATION_DESC_LEN):
        raise InvalidObservation(
            f"location_desc must be a string of at most {MAX_LOCATION_DESC_LEN} characters"
        )

    if not _is_text(candidate.metadata, MAX_METADATA_LEN):
        raise InvalidObservation(f"metadata must be a string of at most {MAX_METADATA_LEN} characters")

    if not _is_int(candidate.confidence_score) or not 0 <= candidate.confidence_score <= MAX_CONFIDENCE_SCORE:
        raise InvalidObservation(f"confidence_score must be an integer in 0..{MAX_CONFIDENCE_SCORE}")

    # Unsigned / fixed-size fields
    if not _is_int(candidate.timestamp) or candidate.timestamp < 0:
        raise InvalidObservation("timestamp must be a non-negative integer")

    if not _is_int(candidate.location_lat) or not _is_int(candidate.location_lon):
        raise InvalidObservation("coordinates must be fixed-point integers scaled by 1e6")

    if (
        not isinstance(candidate.evidence_hash, (bytes, bytearray))
        or len(candidate.evidence_hash) > MAX_EVIDENCE_HASH_BYTES
    ):
        raise InvalidObservation(f"evidence_hash must be at most {MAX_EVIDENCE_HASH_BYTES} bytes")

    if not _is_text(candidate.contributor):
        raise InvalidObservation("contributor must be an identity string")


def check_admission(state: LedgerState, caller: str, candidate: ObservationCandidate) -> None:
    """Run the full gate in contract order."""
    require_validator(state, caller)
    require_not_paused(state)
    check_bounds(candidate)
