"""
Species Ledger - The Heart of the System

The authoritative ledger for verified species observations.
Observations are admitted, never edited. Corrections are annotations.

The ledger:
- Gates admissions (authorization -> pause -> field bounds)
- Rejects (species, timestamp) duplicates
- Stores observations and maintains the species index and location buckets
- Updates the species and region aggregates
- Records corrections beside observations
- Runs the admin lifecycle (pause, unpause, admin transfer, validator change)
- Answers point, range and aggregate queries

Rules (enforced in code):
- Only the authorized validator may admit observations
- Nothing is admitted while paused
- Ids start at 1 and increase by 1; rejected attempts do not consume an id
- At most one observation per (species, timestamp)
- A location bucket never exceeds 1000 ids
- Only the original validator or the admin may correct an observation
- Only the admin may change lifecycle state

TRANSACTION MODEL:
Every mutation runs under one process-wide lock and goes through the
same three steps:
1. Check and stage: compute every write up front, touching nothing
2. Commit the operation's event to the EventStore
3. Apply the staged writes
A rejection in step 1 or a store failure in step 2 leaves the state
exactly as it was. Queries take the same lock, so they never see a
half-applied admission.

The event stream is also the ledger's history: load_from_store()
rebuilds the full state by replaying it.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional, TYPE_CHECKING
from uuid import uuid4

from pydantic import BaseModel

from ..observability import get_logger, get_metrics
from ..schemas import (
    AdminTransferredPayload,
    Correction,
    CorrectionAddedPayload,
    EventType,
    LedgerEvent,
    LedgerInitializedPayload,
    Observation,
    ObservationAddedPayload,
    ObservationCandidate,
    PauseChangedPayload,
    RegionAggregate,
    SpeciesAggregate,
    ValidatorAuthorizedPayload,
)
from .aggregation import next_region_aggregate, next_species_aggregate
from .errors import ChainError, InvalidQueryParams, LedgerError, NotFound, Unauthorized
from .gate import check_admission, require_admin
from .hasher import Hasher
from .indexes import append_to_bucket, check_duplicate, species_key
from .signing import Signer, SigningService
from .state import LedgerState, StagedAdmission

if TYPE_CHECKING:
    from ..db.store import EventStore

logger = get_logger(__name__)


MAX_PAGE_SIZE = 100
LEDGER_ENTITY = "ledger"


def _unix_now() -> int:
    return int(time.time())


def _observation_entity(observation_id: int) -> str:
    return f"observation:{observation_id}"


class SpeciesLedger:
    """
    The species observation ledger.

    Create a new ledger with deploy(), or rebuild one from an existing
    event store with load_from_store().

    Mutating methods raise LedgerError subclasses on rejection. Use
    LedgerContract for the tagged {ok, value} result envelope.
    """

    def __init__(
        self,
        state: LedgerState,
        event_store: Optional["EventStore"] = None,
        signing_service: Optional[SigningService] = None,
        clock: Optional[Callable[[], int]] = None,
        verify_signatures: bool = True,
    ):
        """
        Args:
            state: Initial ledger state
            event_store: Where events are committed. Defaults to InMemoryEventStore.
            signing_service: Operator key. Defaults to an ephemeral key.
            clock: Returns the current Unix time in seconds (correction timestamps)
            verify_signatures: Check event signatures during integrity checks
        """
        if event_store is None:
            from ..db.store import InMemoryEventStore
            event_store = InMemoryEventStore()

        self._state = state
        self._event_store = event_store
        self._signing = signing_service or SigningService.ephemeral()
        self._clock = clock or _unix_now
        self._verify_key = self._signing.public_key if verify_signatures else None
        self._lock = threading.RLock()

        # Chain state cache (source of truth is the EventStore)
        self._last_hash: Optional[str] = None
        self._next_sequence: int = 0

    # ================================================================
    # CONSTRUCTION
    # ================================================================

    @classmethod
    def deploy(
        cls,
        admin: str,
        authorized_validator: str,
        event_store: Optional["EventStore"] = None,
        signing_service: Optional[SigningService] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> "SpeciesLedger":
        """
        Create a new ledger and commit its genesis event.

        Raises:
            ChainError: If the event store already holds a ledger
        """
        ledger = cls(
            LedgerState(admin=admin, authorized_validator=authorized_validator),
            event_store=event_store,
            signing_service=signing_service,
            clock=clock,
        )

        if ledger._event_store.get_event_count() > 0:
            raise ChainError(
                "Event store already holds a ledger. Use load_from_store() instead."
            )

        with ledger._lock:
            ledger._record(
                EventType.LEDGER_INITIALIZED,
                LEDGER_ENTITY,
                admin,
                LedgerInitializedPayload(admin=admin, authorized_validator=authorized_validator),
                apply=lambda: None,
            )

        logger.info("Ledger deployed", admin=admin, authorized_validator=authorized_validator)
        return ledger

    @classmethod
    def load_from_store(
        cls,
        event_store: "EventStore",
        signing_service: Optional[SigningService] = None,
        clock: Optional[Callable[[], int]] = None,
        verify: bool = True,
        verify_signatures: bool = True,
    ) -> "SpeciesLedger":
        """
        Rebuild a ledger by replaying its event store.

        Every event is re-executed against the rebuilt state with the
        same rules that admitted it, so ids, buckets and aggregates come
        out exactly as they were.

        Args:
            verify: Verify sequence, linkage and hashes before replaying
            verify_signatures: Also verify every signature against
                signing_service's public key

        Raises:
            ChainError: If the store is empty, tampered with, or replays
                to a different state than it recorded
        """
        events = event_store.list_all()
        if not events:
            raise ChainError("Event store is empty. Use deploy() to create a ledger.")

        signing_service = signing_service or SigningService.ephemeral()
        verify_key = signing_service.public_key if verify_signatures else None

        if verify:
            cls._verify_event_chain(events, verify_key)

        genesis_event = events[0]
        if genesis_event.event_type != EventType.LEDGER_INITIALIZED:
            raise ChainError(
                f"First event must be LEDGER_INITIALIZED, got {genesis_event.event_type.value}"
            )
        genesis = genesis_event.parsed_payload()

        ledger = cls(
            LedgerState(admin=genesis.admin, authorized_validator=genesis.authorized_validator),
            event_store=event_store,
            signing_service=signing_service,
            clock=clock,
            verify_signatures=verify_signatures,
        )

        for event in events[1:]:
            ledger._replay_event(event)

        ledger._last_hash = events[-1].event_hash
        ledger._next_sequence = events[-1].sequence_number + 1

        logger.info(
            "Ledger loaded from store",
            event_count=len(events),
            total_observations=ledger._state.total_observations,
        )
        return ledger

    # ================================================================
    # PROPERTIES
    # ================================================================

    @property
    def event_store(self) -> "EventStore":
        return self._event_store

    @property
    def signing_public_key(self) -> str:
        return self._signing.public_key

    @property
    def last_event_hash(self) -> Optional[str]:
        return self._last_hash

    @property
    def next_sequence_number(self) -> int:
        return self._next_sequence

    @property
    def event_count(self) -> int:
        return self._next_sequence

    # ================================================================
    # EVENT COMMIT
    # ================================================================

    def _record(
        self,
        event_type: EventType,
        entity_id: str,
        caller: str,
        payload: BaseModel,
        apply: Callable[[], None],
    ) -> LedgerEvent:
        """
        Commit one event, then apply the staged state change.

        Must be called with self._lock held and only after every check
        for the operation has passed.
        """
        body = payload.model_dump(mode="json")
        start = time.perf_counter()

        with self._event_store.begin_append() as ctx:
            sequence_number = ctx.head.next_sequence
            if sequence_number != self._next_sequence:
                raise ChainError(
                    f"Event store head is at sequence {sequence_number} but this ledger "
                    f"expected {self._next_sequence}. Another writer appended to the store; "
                    "reload the ledger before writing."
                )

            if sequence_number == 0:
                previous_hash = None
            else:
                if ctx.head.last_event_hash is None:
                    raise ChainError(
                        f"Cannot create event with sequence {sequence_number}: "
                        "previous event hash is missing but this is not genesis"
                    )
                previous_hash = ctx.head.last_event_hash

            event_hash = Hasher.hash_event(event_type, entity_id, caller, body, previous_hash)

            event = LedgerEvent(
                event_id=uuid4(),
                sequence_number=sequence_number,
                event_type=event_type,
                entity_id=entity_id,
                caller=caller,
                payload=body,
                previous_event_hash=previous_hash,
                event_hash=event_hash,
                signature=self._signing.sign_event(event_hash),
                created_at=datetime.now(timezone.utc),
            )
            event.validate_chain_rules()

            ctx.commit(event)

        apply()
        self._last_hash = event.event_hash
        self._next_sequence = event.sequence_number + 1

        get_metrics().record_commit((time.perf_counter() - start) * 1000)
        return event

    def _reject(self, operation: str, error: LedgerError, caller: str, **fields) -> None:
        get_metrics().record_rejection(error.code)
        logger.warning(
            f"{operation} rejected: {error}",
            operation=operation,
            code=int(error.code),
            error=type(error).__name__,
            caller=caller,
            **fields,
        )

    # ================================================================
    # ADMISSION
    # ================================================================

    def _stage_admission(self, candidate: ObservationCandidate, validator: str) -> StagedAdmission:
        """
        Compute every write an admission makes. Writes nothing.

        Raises:
            CapacityExceeded: If the location bucket is full
        """
        state = self._state
        observation_id = state.next_observation_id

        location_hash = Hasher.location_hash(candidate.location_lat, candidate.location_lon)
        bucket = append_to_bucket(state.location_buckets.get(location_hash, ()), observation_id)
        region_hash = Hasher.region_hash(candidate.location_desc)

        observation = Observation(
            observation_id=observation_id,
            species=candidate.species,
            timestamp=candidate.timestamp,
            location_lat=candidate.location_lat,
            location_lon=candidate.location_lon,
            location_desc=candidate.location_desc,
            evidence_hash=bytes(candidate.evidence_hash),
            contributor=candidate.contributor,
            validator=validator,
            metadata=candidate.metadata,
            confidence_score=candidate.confidence_score,
        )

        return StagedAdmission(
            observation=observation,
            species_key=species_key(candidate.species, candidate.timestamp),
            location_hash=location_hash,
            bucket=bucket,
            region_hash=region_hash,
            species_aggregate=next_species_aggregate(
                state.species_aggregates.get(candidate.species),
                candidate.timestamp,
                candidate.confidence_score,
            ),
            region_aggregate=next_region_aggregate(state.region_aggregates.get(region_hash)),
        )

    def _check_and_stage(self, caller: str, candidate: ObservationCandidate) -> StagedAdmission:
        check_admission(self._state, caller, candidate)
        check_duplicate(self._state, candidate.species, candidate.timestamp)
        return self._stage_admission(candidate, validator=caller)

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
    ) -> int:
        """
        Admit a verified observation.

        Returns:
            The new observation id

        Raises:
            Unauthorized: caller is not the authorized validator
            Paused: the ledger is paused
            InvalidObservation: a field is out of bounds
            AlreadyExists: (species, timestamp) is already recorded
            CapacityExceeded: the location bucket is full
        """
        candidate = ObservationCandidate(
            species=species,
            timestamp=timestamp,
            location_lat=location_lat,
            location_lon=location_lon,
            location_desc=location_desc,
            evidence_hash=evidence_hash,
            metadata=metadata,
            confidence_score=confidence_score,
            contributor=contributor,
        )

        with self._lock:
            try:
                staged = self._check_and_stage(caller, candidate)
            except LedgerError as e:
                self._reject("add_observation", e, caller, species=str(species), observation_timestamp=str(timestamp))
                raise

            observation = staged.observation
            self._record(
                EventType.OBSERVATION_ADDED,
                _observation_entity(observation.observation_id),
                caller,
                ObservationAddedPayload(
                    **observation.model_dump(),
                    location_hash=staged.location_hash,
                    region_hash=staged.region_hash,
                ),
                apply=lambda: staged.apply(self._state),
            )

        get_metrics().record_admission()
        logger.info(
            "Observation admitted",
            observation_id=observation.observation_id,
            species=observation.species,
            observation_timestamp=observation.timestamp,
            region_hash=staged.region_hash,
        )
        return observation.observation_id

    # ================================================================
    # CORRECTIONS
    # ================================================================

    def _check_correction(self, caller: str, observation_id: int) -> None:
        observation = self._state.observations.get(observation_id)
        if observation is None:
            raise NotFound(f"Observation {observation_id} does not exist")
        if caller != observation.validator and caller != self._state.admin:
            raise Unauthorized(
                "Only the observation's validator or the admin may correct it"
            )

    def add_correction(self, caller: str, observation_id: int, note: str) -> bool:
        """
        Attach (or replace) the correction for an observation.

        The observation itself, the indexes and the aggregates are untouched.

        Raises:
            NotFound: no observation with that id
            Unauthorized: caller is neither its validator nor the admin
        """
        with self._lock:
            try:
                self._check_correction(caller, observation_id)
            except LedgerError as e:
                self._reject("add_correction", e, caller, observation_id=str(observation_id))
                raise

            correction = Correction(note=note, corrector=caller, timestamp=self._clock())

            def apply() -> None:
                self._state.corrections[observation_id] = correction

            self._record(
                EventType.CORRECTION_ADDED,
                _observation_entity(observation_id),
                caller,
                CorrectionAddedPayload(observation_id=observation_id, **correction.model_dump()),
                apply=apply,
            )

        get_metrics().record_correction()
        logger.info("Correction recorded", observation_id=observation_id, corrector=caller)
        return True

    # ================================================================
    # ADMIN / LIFECYCLE
    # ================================================================

    def _require_admin(self, caller: str, operation: str) -> None:
        try:
            require_admin(self._state, caller)
        except LedgerError as e:
            self._reject(operation, e, caller)
            raise

    def _set_paused(self, caller: str, paused: bool) -> bool:
        operation = "pause" if paused else "unpause"
        with self._lock:
            self._require_admin(caller, operation)

            def apply() -> None:
                self._state.paused = paused

            self._record(
                EventType.LEDGER_PAUSED if paused else EventType.LEDGER_UNPAUSED,
                LEDGER_ENTITY,
                caller,
                PauseChangedPayload(changed_by=caller, paused=paused),
                apply=apply,
            )

        get_metrics().record_admin_operation()
        logger.info("Ledger paused" if paused else "Ledger unpaused", admin=caller)
        return True

    def pause(self, caller: str) -> bool:
        """Stop admissions. Idempotent. Admin only."""
        return self._set_paused(caller, True)

    def unpause(self, caller: str) -> bool:
        """Resume admissions. Idempotent. Admin only."""
        return self._set_paused(caller, False)

    def transfer_admin(self, caller: str, new_admin: str) -> bool:
        """Hand the admin role to another identity. No checks on new_admin."""
        with self._lock:
            self._require_admin(caller, "transfer_admin")
            previous_admin = self._state.admin

            def apply() -> None:
                self._state.admin = new_admin

            self._record(
                EventType.ADMIN_TRANSFERRED,
                LEDGER_ENTITY,
                caller,
                AdminTransferredPayload(previous_admin=previous_admin, new_admin=new_admin),
                apply=apply,
            )

        get_metrics().record_admin_operation()
        logger.info("Admin transferred", previous_admin=previous_admin, new_admin=new_admin)
        return True

    def set_authorized_validator(self, caller: str, new_validator: str) -> bool:
        """Replace the identity the admission gate accepts. Admin only."""
        with self._lock:
            self._require_admin(caller, "set_authorized_validator")
            previous_validator = self._state.authorized_validator

            def apply() -> None:
                self._state.authorized_validator = new_validator

            self._record(
                EventType.VALIDATOR_AUTHORIZED,
                LEDGER_ENTITY,
                caller,
                ValidatorAuthorizedPayload(
                    previous_validator=previous_validator,
                    new_validator=new_validator,
                    authorized_by=caller,
                ),
                apply=apply,
            )

        get_metrics().record_admin_operation()
        logger.info(
            "Authorized validator changed",
            previous_validator=previous_validator,
            new_validator=new_validator,
        )
        return True

    # ================================================================
    # QUERIES
    # Read-only, no authorization, committed state only.
    # ================================================================

    def get_observation(self, observation_id: int) -> Optional[Observation]:
        with self._lock:
            return self._state.observations.get(observation_id)

    def get_species_aggregate(self, species: str) -> Optional[SpeciesAggregate]:
        with self._lock:
            return self._state.species_aggregates.get(species)

    def get_region_aggregate(self, region_hash: str) -> Optional[RegionAggregate]:
        with self._lock:
            return self._state.region_aggregates.get(region_hash)

    def get_correction(self, observation_id: int) -> Optional[Correction]:
        with self._lock:
            return self._state.corrections.get(observation_id)

    def get_total_observations(self) -> int:
        with self._lock:
            return self._state.total_observations

    def is_paused(self) -> bool:
        with self._lock:
            return self._state.paused

    def get_admin(self) -> str:
        with self._lock:
            return self._state.admin

    def get_authorized_validator(self) -> str:
        with self._lock:
            return self._state.authorized_validator

    def get_paginated_observations(self, start: int, limit: int) -> list[Observation]:
        """
        Observations with ids start .. start + limit - 1, clipped to the
        highest assigned id.

        Raises:
            InvalidQueryParams: limit outside 1..MAX_PAGE_SIZE, start < 1,
                or start beyond the highest assigned id
        """
        with self._lock:
            max_id = self._state.max_observation_id
            try:
                if not isinstance(limit, int) or isinstance(limit, bool) or not 1 <= limit <= MAX_PAGE_SIZE:
                    raise InvalidQueryParams(f"limit must be between 1 and {MAX_PAGE_SIZE}")
                if not isinstance(start, int) or isinstance(start, bool) or start < 1:
                    raise InvalidQueryParams("start must be a positive observation id")
                if start > max_id:
                    raise InvalidQueryParams(f"start {start} exceeds the highest observation id {max_id}")
            except InvalidQueryParams as e:
                self._reject("get_paginated_observations", e, caller="", start=str(start), limit=str(limit))
                raise

            end = min(start + limit - 1, max_id)
            return [self._state.observations[i] for i in range(start, end + 1)]

    def find_observation_id(self, species: str, timestamp: int) -> Optional[int]:
        """Species index lookup."""
        with self._lock:
            return self._state.species_index.get(species_key(species, timestamp))

    def get_location_bucket(self, location_lat: int, location_lon: int) -> list[int]:
        """Ids recorded at exactly these coordinates, in admission order."""
        with self._lock:
            return list(
                self._state.location_buckets.get(Hasher.location_hash(location_lat, location_lon), ())
            )

    @staticmethod
    def region_hash_for(location_desc: str) -> str:
        """The region key get_region_aggregate expects for a description."""
        return Hasher.region_hash(location_desc)

    def get_events(self, since: int = -1, limit: Optional[int] = None) -> list[LedgerEvent]:
        """Outbox events after the given sequence number."""
        return self._event_store.list_since(since, limit)

    # ================================================================
    # REPLAY
    # ================================================================

    def _replay_event(self, event: LedgerEvent) -> None:
        """
        Re-execute one recorded event against the current state.

        Rejections here mean the history is not one this ledger could
        have produced, so they surface as ChainError.
        """
        payload = event.parsed_payload()
        state = self._state

        try:
            if event.event_type == EventType.OBSERVATION_ADDED:
                candidate = ObservationCandidate(
                    species=payload.species,
                    timestamp=payload.timestamp,
                    location_lat=payload.location_lat,
                    location_lon=payload.location_lon,
                    location_desc=payload.location_desc,
                    evidence_hash=bytes.fromhex(payload.evidence_hash),
                    metadata=payload.metadata,
                    confidence_score=payload.confidence_score,
                    contributor=payload.contributor,
                )
                if payload.validator != event.caller:
                    raise ChainError(
                        f"Event {event.sequence_number}: validator {payload.validator!r} "
                        f"does not match caller {event.caller!r}"
                    )
                staged = self._check_and_stage(event.caller, candidate)
                if (
                    staged.observation.observation_id != payload.observation_id
                    or staged.location_hash != payload.location_hash
                    or staged.region_hash != payload.region_hash
                ):
                    raise ChainError(
                        f"Event {event.sequence_number}: replayed admission does not match "
                        f"recorded observation {payload.observation_id}"
                    )
                staged.apply(state)

            elif event.event_type == EventType.CORRECTION_ADDED:
                self._check_correction(event.caller, payload.observation_id)
                state.corrections[payload.observation_id] = Correction(
                    note=payload.note,
                    corrector=payload.corrector,
                    timestamp=payload.timestamp,
                )

            elif event.event_type in (EventType.LEDGER_PAUSED, EventType.LEDGER_UNPAUSED):
                require_admin(state, event.caller)
                state.paused = event.event_type == EventType.LEDGER_PAUSED

            elif event.event_type == EventType.ADMIN_TRANSFERRED:
                require_admin(state, event.caller)
                state.admin = payload.new_admin

            elif event.event_type == EventType.VALIDATOR_AUTHORIZED:
                require_admin(state, event.caller)
                state.authorized_validator = payload.new_validator

            else:
                raise ChainError(
                    f"Event {event.sequence_number}: unexpected {event.event_type.value} during replay"
                )

        except LedgerError as e:
            raise ChainError(
                f"Event {event.sequence_number} ({event.event_type.value}) fails replay: "
                f"{type(e).__name__}: {e}"
            ) from e

    # ================================================================
    # CHAIN VERIFICATION
    # ================================================================

    def verify_chain_integrity(self) -> bool:
        """
        Verify the stored event chain end to end.

        Run periodically as a health check.
        """
        try:
            self._verify_event_chain(self._event_store.list_all(), self._verify_key)
        except ChainError as e:
            logger.error("Chain integrity check failed", error=str(e))
            return False
        return True

    @staticmethod
    def _verify_event_chain(events: list[LedgerEvent], verify_key: Optional[str] = None) -> None:
        """
        Verify sequence, genesis rules, linkage, hashes and (optionally)
        signatures of a complete event chain.

        Raises ChainError on the first violation.
        """
        prev_hash = None

        for expected_sequence, event in enumerate(events):
            if event.sequence_number != expected_sequence:
                raise ChainError(
                    f"Sequence number gap or out-of-order event. "
                    f"Expected {expected_sequence}, got {event.sequence_number}"
                )

            try:
                event.validate_chain_rules()
            except ValueError as e:
                raise ChainError(str(e)) from e

            if event.previous_event_hash != prev_hash:
                raise ChainError(
                    f"Chain linkage broken at sequence {expected_sequence}. "
                    f"Expected previous hash '{prev_hash[:16] if prev_hash else 'None'}...', "
                    f"got '{event.previous_event_hash[:16] if event.previous_event_hash else 'None'}...'"
                )

            if not Hasher.verify_event_hash(event, prev_hash):
                raise ChainError(f"Hash verification failed at sequence {expected_sequence}")

            if verify_key is not None and not Signer.verify(
                event.event_hash, event.signature, verify_key
            ):
                raise ChainError(f"Signature verification failed at sequence {expected_sequence}")

            prev_hash = event.event_hash
