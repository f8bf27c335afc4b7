"""
Index Maintenance

Two indexes sit beside the observation store:

- species index:   (species, timestamp) -> observation id
  The ONLY duplicate-prevention mechanism. Same species at a nearby
  timestamp is a different observation; that is intended.

- location buckets: location hash -> ordered ids, capped at 1000.
  Append-only, never reordered or deduplicated. A full bucket rejects
  the append (CapacityExceeded) instead of evicting or truncating.
"""

from .errors import AlreadyExists, CapacityExceeded
from .state import LedgerState, SpeciesKey


MAX_BUCKET_LENGTH = 1000


def species_key(species: str, timestamp: int) -> SpeciesKey:
    return (species, timestamp)


def check_duplicate(state: LedgerState, species: str, timestamp: int) -> None:
    if species_key(species, timestamp) in state.species_index:
        raise AlreadyExists(f"Observation for {species!r} at {timestamp} already exists")


def append_to_bucket(
    bucket: tuple[int, ...],
    observation_id: int,
    max_length: int = MAX_BUCKET_LENGTH,
) -> tuple[int, ...]:
    """Return the bucket with the id appended. Never mutates the input."""
    if len(bucket) >= max_length:
        raise CapacityExceeded(
            f"Location bucket is full ({max_length} observations)"
        )
    return bucket + (observation_id,)
