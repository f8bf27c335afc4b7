"""
Ledger State

The single explicit state object every operation works on.
Nothing in the ledger reaches for ambient globals: admin, validator,
pause flag, counters, the store and all indexes live here.

Mutation happens in exactly two ways:
- StagedAdmission.apply()  (one admission, all writes together)
- the small setters used by corrections and admin operations

Both run only after the operation's event has been committed.
"""

from dataclasses import dataclass, field

from ..schemas import Correction, Observation, RegionAggregate, SpeciesAggregate


SpeciesKey = tuple[str, int]


@dataclass
class LedgerState:
    """Process-wide lifecycle state plus every keyed collection."""
    admin: str
    authorized_validator: str
    paused: bool = False
    next_observation_id: int = 1
    total_observations: int = 0

    observations: dict[int, Observation] = field(default_factory=dict)
    species_index: dict[SpeciesKey, int] = field(default_factory=dict)
    location_buckets: dict[str, tuple[int, ...]] = field(default_factory=dict)
    species_aggregates: dict[str, SpeciesAggregate] = field(default_factory=dict)
    region_aggregates: dict[str, RegionAggregate] = field(default_factory=dict)
    corrections: dict[int, Correction] = field(default_factory=dict)

    @property
    def max_observation_id(self) -> int:
        """Highest id assigned so far (0 on an empty ledger)."""
        return self.next_observation_id - 1


@dataclass(frozen=True)
class StagedAdmission:
    """
    Every write one admission will make, computed up front.

    Nothing is written until apply(). If anything fails before that
    (a full bucket, a store error) the state is untouched.
    """
    observation: Observation
    species_key: SpeciesKey
    location_hash: str
    bucket: tuple[int, ...]
    region_hash: str
    species_aggregate: SpeciesAggregate
    region_aggregate: RegionAggregate

    def apply(self, state: LedgerState) -> None:
        obs_id = self.observation.observation_id
        if obs_id != state.next_observation_id:
            raise RuntimeError(
                f"Staged admission for id {obs_id} is stale; "
                f"next id is {state.next_observation_id}"
            )

        state.observations[obs_id] = self.observation
        state.species_index[self.species_key] = obs_id
        state.location_buckets[self.location_hash] = self.bucket
        state.species_aggregates[self.observation.species] = self.species_aggregate
        state.region_aggregates[self.region_hash] = self.region_aggregate
        state.next_observation_id = obs_id + 1
        state.total_observations += 1
