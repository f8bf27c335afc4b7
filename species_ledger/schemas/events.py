"""
Canonical Event Schema

Every successful mutation produces exactly one event.
Events are the ledger's outbox: an external indexer consumes them,
and the ledger itself can be rebuilt by replaying them.

Each event:
- Is sequence-numbered (0, 1, 2, ...)
- Is hashed over its canonical body
- Is chained to the previous event hash
- Is signed by the ledger operator key
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """
    All possible event types.
    You can add more later, never remove.
    """
    # Genesis (MUST be sequence 0)
    LEDGER_INITIALIZED = "LEDGER_INITIALIZED"

    # Observation lifecycle
    OBSERVATION_ADDED = "OBSERVATION_ADDED"
    CORRECTION_ADDED = "CORRECTION_ADDED"

    # Administration
    LEDGER_PAUSED = "LEDGER_PAUSED"
    LEDGER_UNPAUSED = "LEDGER_UNPAUSED"
    ADMIN_TRANSFERRED = "ADMIN_TRANSFERRED"
    VALIDATOR_AUTHORIZED = "VALIDATOR_AUTHORIZED"


# ============================================================
# Event Payloads
# ============================================================

class LedgerInitializedPayload(BaseModel):
    """Identities the ledger was deployed with."""
    admin: str
    authorized_validator: str
    schema_version: int = 1


class ObservationAddedPayload(BaseModel):
    """
    Everything needed to replay an admission.

    The derived keys are included so an indexer does not need to
    re-derive them, but replay always recomputes and checks them.
    """
    observation_id: int
    species: str
    timestamp: int
    location_lat: int
    location_lon: int
    location_desc: str
    evidence_hash: str = Field(..., description="Hex-encoded fingerprint")
    metadata: str
    confidence_score: int
    contributor: str
    validator: str
    location_hash: str
    region_hash: str
    schema_version: int = 1


class CorrectionAddedPayload(BaseModel):
    observation_id: int
    note: str
    corrector: str
    timestamp: int
    schema_version: int = 1


class PauseChangedPayload(BaseModel):
    """Payload for both LEDGER_PAUSED and LEDGER_UNPAUSED."""
    changed_by: str
    paused: bool
    schema_version: int = 1


class AdminTransferredPayload(BaseModel):
    previous_admin: str
    new_admin: str
    schema_version: int = 1


class ValidatorAuthorizedPayload(BaseModel):
    previous_validator: str
    new_validator: str
    authorized_by: str
    schema_version: int = 1


PAYLOAD_TYPES: dict[EventType, type[BaseModel]] = {
    EventType.LEDGER_INITIALIZED: LedgerInitializedPayload,
    EventType.OBSERVATION_ADDED: ObservationAddedPayload,
    EventType.CORRECTION_ADDED: CorrectionAddedPayload,
    EventType.LEDGER_PAUSED: PauseChangedPayload,
    EventType.LEDGER_UNPAUSED: PauseChangedPayload,
    EventType.ADMIN_TRANSFERRED: AdminTransferredPayload,
    EventType.VALIDATOR_AUTHORIZED: ValidatorAuthorizedPayload,
}


# ============================================================
# The Event Envelope
# ============================================================

class LedgerEvent(BaseModel):
    """
    The immutable event record.

    previous_event_hash is None ONLY for genesis (sequence 0).
    """
    event_id: UUID
    sequence_number: int = Field(..., ge=0)
    event_type: EventType
    entity_id: str = Field(
        ...,
        description="What the event is about: 'ledger' or 'observation:<id>'"
    )
    caller: str = Field(..., description="Identity that performed the operation")
    payload: dict[str, Any]

    previous_event_hash: Optional[str] = None
    event_hash: str
    signature: str = Field(..., description="Ed25519 signature of event_hash by the operator key")

    created_at: datetime

    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 0

    def parsed_payload(self) -> BaseModel:
        """Parse the payload into its typed model."""
        return PAYLOAD_TYPES[self.event_type].model_validate(self.payload)

    def validate_chain_rules(self) -> None:
        """
        Validate chain linkage rules.

        Raises ValueError if rules are violated.
        """
        if self.sequence_number == 0:
            if self.previous_event_hash is not None:
                raise ValueError(
                    f"Genesis event (sequence 0) must have previous_event_hash=None, "
                    f"got: {self.previous_event_hash}"
                )
            if self.event_type != EventType.LEDGER_INITIALIZED:
                raise ValueError(
                    f"Genesis event must be LEDGER_INITIALIZED, got {self.event_type.value}"
                )
        else:
            if self.previous_event_hash is None:
                raise ValueError(
                    f"Non-genesis event (sequence {self.sequence_number}) must have "
                    f"previous_event_hash set, got None"
                )
            if len(self.previous_event_hash) != 64:
                raise ValueError(
                    f"previous_event_hash must be 64 hex characters, "
                    f"got {len(self.previous_event_hash)}"
                )
            if self.event_type == EventType.LEDGER_INITIALIZED:
                raise ValueError("LEDGER_INITIALIZED may only appear at sequence 0")
