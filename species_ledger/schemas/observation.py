"""
Canonical Observation Schema

An observation is one verified species sighting.
Once admitted it never changes. Corrections are recorded beside it,
never inside it.

Coordinates are fixed-point integers scaled by 1e6:
    40.712345  ->  40712345
"""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


COORDINATE_SCALE = 1_000_000


@dataclass(frozen=True)
class ObservationCandidate:
    """
    Raw admission payload, exactly as the validator submitted it.

    Deliberately unvalidated: the admission gate decides what is
    acceptable so that rejections come back with the right code
    in the right order.
    """
    species: Any
    timestamp: Any
    location_lat: Any
    location_lon: Any
    location_desc: Any
    evidence_hash: Any
    metadata: Any
    confidence_score: Any
    contributor: Any


class Observation(BaseModel):
    """
    An admitted observation.

    Frozen: the ledger is the only owner and nothing may edit it.
    """
    model_config = ConfigDict(frozen=True)

    observation_id: int = Field(..., ge=1, description="Sequential id, starting at 1")
    species: str
    timestamp: int = Field(..., description="Unix seconds")
    location_lat: int = Field(..., description="Latitude scaled by 1e6")
    location_lon: int = Field(..., description="Longitude scaled by 1e6")
    location_desc: str
    evidence_hash: bytes = Field(..., description="Evidence fingerprint")
    contributor: str
    validator: str = Field(..., description="Identity that admitted this observation")
    metadata: str
    confidence_score: int = Field(..., ge=0, le=100)

    @field_validator("evidence_hash", mode="before")
    @classmethod
    def _parse_hex(cls, value: Any) -> Any:
        # Events and JSON carry the fingerprint as hex
        if isinstance(value, str):
            return bytes.fromhex(value)
        return value

    @field_serializer("evidence_hash")
    def _dump_hex(self, value: bytes) -> str:
        return value.hex()

    @property
    def latitude(self) -> float:
        """Latitude in degrees (display only, never hashed)."""
        return self.location_lat / COORDINATE_SCALE

    @property
    def longitude(self) -> float:
        """Longitude in degrees (display only, never hashed)."""
        return self.location_lon / COORDINATE_SCALE
