# Canonical Schemas for the Species Observation Ledger
# Observations, derived aggregates, corrections, and the event outbox.

from .observation import COORDINATE_SCALE, Observation, ObservationCandidate
from .aggregates import RegionAggregate, SpeciesAggregate
from .correction import Correction
from .events import (
    LedgerEvent,
    EventType,
    LedgerInitializedPayload,
    ObservationAddedPayload,
    CorrectionAddedPayload,
    PauseChangedPayload,
    AdminTransferredPayload,
    ValidatorAuthorizedPayload,
)

__all__ = [
    # Observation
    "COORDINATE_SCALE",
    "Observation",
    "ObservationCandidate",
    # Aggregates
    "SpeciesAggregate",
    "RegionAggregate",
    # Correction
    "Correction",
    # Events
    "LedgerEvent",
    "EventType",
    "LedgerInitializedPayload",
    "ObservationAddedPayload",
    "CorrectionAddedPayload",
    "PauseChangedPayload",
    "AdminTransferredPayload",
    "ValidatorAuthorizedPayload",
]
