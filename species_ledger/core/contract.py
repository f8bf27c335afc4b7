"""
Ledger Contract - Tagged Result Envelope

Wraps SpeciesLedger so that every operation returns
LedgerResult{ok, value} instead of raising:

    ok=True   value is the result (None for an absent lookup)
    ok=False  value is the numeric error code

Only LedgerError rejections become envelopes. ChainError and store
failures still propagate: they are faults, not answers.
"""

from typing import Any, Callable, Optional

from pydantic import BaseModel

from .errors import LedgerError
from .ledger import SpeciesLedger


class LedgerResult(BaseModel):
    ok: bool
    value: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "LedgerResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, code: int) -> "LedgerResult":
        return cls(ok=False, value=int(code))


def _call(operation: Callable[..., Any], *args: Any) -> LedgerResult:
    try:
        return LedgerResult.success(operation(*args))
    except LedgerError as e:
        return LedgerResult.failure(e.code)


class LedgerContract:
    """Envelope facade over one SpeciesLedger."""

    def __init__(self, ledger: Optional[SpeciesLedger] = None):
        self.ledger = ledger or SpeciesLedger.deploy("deployer", "validator")

    # Mutations

    def add_observation(
        self,
        caller: str,
        species: str,
        timestamp: int,
        location_lat: int,
        location_lon: int,
        location_desc: str,
        evidence_hash: bytes,
        metadata: str,
        confidence_score: int,
        contributor: str,
    ) -> LedgerResult:
        return _call(
            self.ledger.add_observation,
            caller,
            species,
            timestamp,
            location_lat,
            location_lon,
            location_desc,
            evidence_hash,
            metadata,
            confidence_score,
            contributor,
        )

    def add_correction(self, caller: str, observation_id: int, note: str) -> LedgerResult:
        return _call(self.ledger.add_correction, caller, observation_id, note)

    def pause(self, caller: str) -> LedgerResult:
        return _call(self.ledger.pause, caller)

    def unpause(self, caller: str) -> LedgerResult:
        return _call(self.ledger.unpause, caller)

    def transfer_admin(self, caller: str, new_admin: str) -> LedgerResult:
        return _call(self.ledger.transfer_admin, caller, new_admin)

    def set_authorized_validator(self, caller: str, new_validator: str) -> LedgerResult:
        return _call(self.ledger.set_authorized_validator, caller, new_validator)

    # Queries

    def get_observation(self, observation_id: int) -> LedgerResult:
        return _call(self.ledger.get_observation, observation_id)

    def get_species_aggregate(self, species: str) -> LedgerResult:
        return _call(self.ledger.get_species_aggregate, species)

    def get_region_aggregate(self, region_hash: str) -> LedgerResult:
        return _call(self.ledger.get_region_aggregate, region_hash)

    def get_correction(self, observation_id: int) -> LedgerResult:
        return _call(self.ledger.get_correction, observation_id)

    def get_total_observations(self) -> LedgerResult:
        return _call(self.ledger.get_total_observations)

    def is_paused(self) -> LedgerResult:
        return _call(self.ledger.is_paused)

    def get_admin(self) -> LedgerResult:
        return _call(self.ledger.get_admin)

    def get_authorized_validator(self) -> LedgerResult:
        return _call(self.ledger.get_authorized_validator)

    def get_paginated_observations(self, start: int, limit: int) -> LedgerResult:
        return _call(self.ledger.get_paginated_observations, start, limit)
