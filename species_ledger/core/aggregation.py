"""
Aggregation Engine

Incremental aggregate updates. Pure functions: given the current value
(or None) and the admitted observation, return the next value.

The species average is a floored running mean:
    avg_n = (avg_{n-1} * (n - 1) + score_n) // n
This is NOT the exact mean. Repeated flooring drifts, and that drift is
part of the recorded history, so it must be reproduced exactly:
    95, 90, 100  ->  95, 92, 94   (exact mean would be 95)
"""

from typing import Optional

from ..schemas import RegionAggregate, SpeciesAggregate


def next_species_aggregate(
    current: Optional[SpeciesAggregate],
    timestamp: int,
    confidence_score: int,
) -> SpeciesAggregate:
    current = current or SpeciesAggregate()
    new_total = current.total_observations + 1
    new_avg = (current.avg_confidence * (new_total - 1) + confidence_score) // new_total
    # Ties resolve to -1
    new_trend = 1 if timestamp > current.last_observed else -1

    return SpeciesAggregate(
        total_observations=new_total,
        last_observed=timestamp,
        avg_confidence=new_avg,
        population_trend=new_trend,
    )


def next_region_aggregate(current: Optional[RegionAggregate]) -> RegionAggregate:
    current = current or RegionAggregate()
    return RegionAggregate(
        species_count=current.species_count,
        total_observations=current.total_observations + 1,
        biodiversity_index=current.biodiversity_index + 1,
    )
