"""
Aggregate Schemas

Aggregates are derived, not declared.
They are recomputed on every admission and only the latest value survives.
"""

from pydantic import BaseModel, ConfigDict, Field


class SpeciesAggregate(BaseModel):
    """
    Running summary for one species.

    avg_confidence is a floored running mean, updated left to right in
    submission order. It drifts from the exact mean when scores vary.
    """
    model_config = ConfigDict(frozen=True)

    total_observations: int = 0
    last_observed: int = 0
    avg_confidence: int = 0
    population_trend: int = Field(
        default=0,
        description="+1 if the latest admission moved last_observed forward, else -1",
    )


class RegionAggregate(BaseModel):
    """
    Running summary for one region (keyed by the location description hash).

    species_count is carried forward and never incremented.
    Consumers depend on that behavior, so it stays.
    """
    model_config = ConfigDict(frozen=True)

    species_count: int = 0
    total_observations: int = 0
    biodiversity_index: int = 0
