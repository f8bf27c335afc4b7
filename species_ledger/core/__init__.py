# Core ledger services
from .errors import (
    ErrorCode,
    LedgerError,
    Unauthorized,
    InvalidObservation,
    AlreadyExists,
    InvalidQueryParams,
    NotFound,
    Paused,
    CapacityExceeded,
    ChainError,
)
from .hasher import Hasher, CanonicalSerializationError
from .signing import Signer, SigningService, KeyPair
from .state import LedgerState
from .ledger import SpeciesLedger, MAX_PAGE_SIZE
from .contract import LedgerContract, LedgerResult

__all__ = [
    "ErrorCode",
    "LedgerError",
    "Unauthorized",
    "InvalidObservation",
    "AlreadyExists",
    "InvalidQueryParams",
    "NotFound",
    "Paused",
    "CapacityExceeded",
    "ChainError",
    "Hasher",
    "CanonicalSerializationError",
    "Signer",
    "SigningService",
    "KeyPair",
    "LedgerState",
    "SpeciesLedger",
    "MAX_PAGE_SIZE",
    "LedgerContract",
    "LedgerResult",
]
