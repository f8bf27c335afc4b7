"""
Tests for the Species Observation Ledger

Covers the full observation lifecycle:
1. Gate an admission (authorization -> pause -> bounds)
2. Admit, index and aggregate
3. Correct
4. Pause / transfer / re-authorize
5. Query and paginate
6. Replay the event stream and verify the chain
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from species_ledger.core import (
    AlreadyExists,
    CapacityExceeded,
    ChainError,
    Hasher,
    InvalidObservation,
    InvalidQueryParams,
    NotFound,
    Paused,
    SigningService,
    SpeciesLedger,
    Unauthorized,
)
from species_ledger.core.indexes import MAX_BUCKET_LENGTH, append_to_bucket
from species_ledger.db import EventStoreError, InMemoryEventStore
from species_ledger.observability import get_metrics
from species_ledger.schemas import (
    EventType,
    LedgerEvent,
    ObservationAddedPayload,
    RegionAggregate,
    SpeciesAggregate,
)

from conftest import ADMIN, EVIDENCE, VALIDATOR, FixedClock, observation


class TestAdmissionGate:
    """Check order: authorization, then pause, then bounds."""

    def test_unauthorized_caller_rejected(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.add_observation("user", **observation())

    def test_unauthorized_wins_over_invalid_fields(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.add_observation("user", **observation(species="x" * 51, confidence_score=500))

    def test_unauthorized_wins_over_pause(self, ledger):
        ledger.pause(ADMIN)
        with pytest.raises(Unauthorized):
            ledger.add_observation("user", **observation())

    def test_pause_wins_over_invalid_fields(self, ledger):
        ledger.pause(ADMIN)
        with pytest.raises(Paused):
            ledger.add_observation(VALIDATOR, **observation(species="x" * 51))

    def test_admin_is_not_a_validator(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.add_observation(ADMIN, **observation())

    def test_species_length_boundary(self, ledger):
        assert ledger.add_observation(VALIDATOR, **observation(species="x" * 50)) == 1
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(species="y" * 51))

    @pytest.mark.parametrize("field", ["species", "location_desc", "metadata", "contributor"])
    def test_text_that_is_not_utf8_encodable(self, ledger, field):
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(**{field: "Park \ud800"}))
        assert ledger.get_total_observations() == 0
        assert ledger.event_count == 1

    def test_location_desc_length_boundary(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(location_desc="d" * 100))
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(timestamp=2, location_desc="d" * 101))

    def test_metadata_length_boundary(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(metadata="m" * 1024))
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(timestamp=2, metadata="m" * 1025))

    @pytest.mark.parametrize("score", [-1, 101, 1000])
    def test_confidence_out_of_range(self, ledger, score):
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(confidence_score=score))

    @pytest.mark.parametrize("score", [0, 100])
    def test_confidence_bounds_inclusive(self, ledger, score):
        assert ledger.add_observation(VALIDATOR, **observation(confidence_score=score)) == 1

    def test_negative_timestamp_rejected(self, ledger):
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(timestamp=-1))

    def test_float_coordinates_rejected(self, ledger):
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(location_lat=40.712776))

    def test_oversized_evidence_hash_rejected(self, ledger):
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(evidence_hash=b"\x00" * 33))

    def test_empty_strings_are_valid(self, ledger):
        obs_id = ledger.add_observation(
            VALIDATOR, **observation(species="", location_desc="", metadata="", evidence_hash=b"")
        )
        assert ledger.get_observation(obs_id).species == ""


class TestAdmission:

    def test_first_observation_gets_id_one(self, ledger):
        assert ledger.add_observation(VALIDATOR, **observation()) == 1

    def test_ids_are_sequential(self, ledger):
        ids = [ledger.add_observation(VALIDATOR, **observation(timestamp=ts)) for ts in (10, 20, 30)]
        assert ids == [1, 2, 3]
        assert ledger.get_total_observations() == 3

    def test_rejected_attempt_does_not_consume_id(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(timestamp=10))
        with pytest.raises(InvalidObservation):
            ledger.add_observation(VALIDATOR, **observation(timestamp=20, confidence_score=101))
        with pytest.raises(AlreadyExists):
            ledger.add_observation(VALIDATOR, **observation(timestamp=10))

        assert ledger.add_observation(VALIDATOR, **observation(timestamp=30)) == 2
        assert ledger.get_total_observations() == 2

    def test_stored_fields(self, ledger):
        obs_id = ledger.add_observation(VALIDATOR, **observation())
        obs = ledger.get_observation(obs_id)

        assert obs.observation_id == obs_id
        assert obs.species == "Bald Eagle"
        assert obs.timestamp == 1627849200
        assert obs.location_lat == 40_712_776
        assert obs.location_lon == -74_005_974
        assert obs.evidence_hash == EVIDENCE
        assert obs.contributor == "birder-1"
        assert obs.validator == VALIDATOR
        assert obs.confidence_score == 95
        assert obs.latitude == pytest.approx(40.712776)
        assert obs.longitude == pytest.approx(-74.005974)

    def test_observation_is_immutable(self, ledger):
        obs = ledger.get_observation(ledger.add_observation(VALIDATOR, **observation()))
        with pytest.raises(Exception):
            obs.species = "Osprey"

    def test_admission_updates_species_index(self, ledger):
        obs_id = ledger.add_observation(VALIDATOR, **observation())
        assert ledger.find_observation_id("Bald Eagle", 1627849200) == obs_id
        assert ledger.find_observation_id("Bald Eagle", 1627849201) is None

    def test_missing_lookups_return_none(self, ledger):
        assert ledger.get_observation(1) is None
        assert ledger.get_species_aggregate("Bald Eagle") is None
        assert ledger.get_region_aggregate("00" * 32) is None
        assert ledger.get_correction(1) is None


class TestDuplicates:

    def test_same_species_and_timestamp_rejected(self, ledger):
        ledger.add_observation(VALIDATOR, **observation())
        with pytest.raises(AlreadyExists):
            ledger.add_observation(VALIDATOR, **observation(location_desc="Elsewhere", confidence_score=10))

    def test_same_species_different_timestamp_admitted(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(timestamp=100))
        assert ledger.add_observation(VALIDATOR, **observation(timestamp=101)) == 2

    def test_different_species_same_timestamp_admitted(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(species="Bald Eagle"))
        assert ledger.add_observation(VALIDATOR, **observation(species="Osprey")) == 2

    def test_duplicate_leaves_aggregates_untouched(self, ledger):
        ledger.add_observation(VALIDATOR, **observation())
        before = ledger.get_species_aggregate("Bald Eagle")
        with pytest.raises(AlreadyExists):
            ledger.add_observation(VALIDATOR, **observation(confidence_score=0))
        assert ledger.get_species_aggregate("Bald Eagle") == before


class TestAggregates:

    def _admit_scores(self, ledger, species, scores):
        averages = []
        for i, score in enumerate(scores):
            ledger.add_observation(
                VALIDATOR, **observation(species=species, timestamp=1000 + i, confidence_score=score)
            )
            averages.append(ledger.get_species_aggregate(species).avg_confidence)
        return averages

    def test_first_observation_aggregate(self, ledger):
        ledger.add_observation(VALIDATOR, **observation())
        assert ledger.get_species_aggregate("Bald Eagle") == SpeciesAggregate(
            total_observations=1,
            last_observed=1627849200,
            avg_confidence=95,
            population_trend=1,
        )

    def test_running_average(self, ledger):
        assert self._admit_scores(ledger, "Gray Wolf", [80, 90, 100]) == [80, 85, 90]

    def test_running_average_floors_each_step(self, ledger):
        # The exact mean is 95; the floored running mean drifts to 94
        assert self._admit_scores(ledger, "Red Fox", [95, 90, 100]) == [95, 92, 94]

    def test_population_trend_follows_timestamp_order(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(timestamp=100))
        assert ledger.get_species_aggregate("Bald Eagle").population_trend == 1

        ledger.add_observation(VALIDATOR, **observation(timestamp=50))
        agg = ledger.get_species_aggregate("Bald Eagle")
        assert agg.population_trend == -1
        assert agg.last_observed == 50

        ledger.add_observation(VALIDATOR, **observation(timestamp=200))
        assert ledger.get_species_aggregate("Bald Eagle").population_trend == 1

    def test_species_are_aggregated_separately(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(species="Osprey", confidence_score=10))
        ledger.add_observation(VALIDATOR, **observation(species="Heron", confidence_score=90))
        assert ledger.get_species_aggregate("Osprey").avg_confidence == 10
        assert ledger.get_species_aggregate("Heron").avg_confidence == 90

    def test_region_aggregate(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(species="Osprey"))
        ledger.add_observation(VALIDATOR, **observation(species="Heron"))

        region = ledger.get_region_aggregate(SpeciesLedger.region_hash_for("New York Central Park"))
        assert region == RegionAggregate(species_count=0, total_observations=2, biodiversity_index=2)

    def test_region_is_keyed_by_description_not_coordinates(self, ledger):
        ledger.add_observation(VALIDATOR, **observation(timestamp=1, location_lat=1, location_lon=1))
        ledger.add_observation(VALIDATOR, **observation(timestamp=2, location_lat=2, location_lon=2))

        region = ledger.get_region_aggregate(SpeciesLedger.region_hash_for("New York Central Park"))
        assert region.total_observations == 2
        assert ledger.get_location_bucket(1, 1) == [1]
        assert ledger.get_location_bucket(2, 2) == [2]


class TestLocationBuckets:

    def test_bucket_keeps_admission_order(self, ledger):
        for ts in (5, 3, 9):
            ledger.add_observation(VALIDATOR, **observation(timestamp=ts))
        assert ledger.get_location_bucket(40_712_776, -74_005_974) == [1, 2, 3]

    def test_empty_bucket(self, ledger):
        assert ledger.get_location_bucket(0, 0) == []

    def test_append_to_full_bucket_raises(self):
        with pytest.raises(CapacityExceeded):
            append_to_bucket((1, 2, 3), 4, max_length=3)

    def test_append_does_not_mutate_input(self):
        bucket = (1, 2)
        assert append_to_bucket(bucket, 3) == (1, 2, 3)
        assert bucket == (1, 2)

    def test_full_bucket_rejects_admission_without_side_effects(self, ledger):
        for ts in range(MAX_BUCKET_LENGTH):
            ledger.add_observation(VALIDATOR, **observation(timestamp=ts))

        events_before = ledger.event_count
        species_before = ledger.get_species_aggregate("Bald Eagle")
        region_hash = SpeciesLedger.region_hash_for("New York Central Park")
        region_before = ledger.get_region_aggregate(region_hash)

        with pytest.raises(CapacityExceeded):
            ledger.add_observation(VALIDATOR, **observation(timestamp=MAX_BUCKET_LENGTH))

        assert ledger.get_total_observations() == MAX_BUCKET_LENGTH
        assert ledger.event_count == events_before
        assert ledger.get_species_aggregate("Bald Eagle") == species_before
        assert ledger.get_region_aggregate(region_hash) == region_before
        assert ledger.find_observation_id("Bald Eagle", MAX_BUCKET_LENGTH) is None
        assert len(ledger.get_location_bucket(40_712_776, -74_005_974)) == MAX_BUCKET_LENGTH

        # Other locations are unaffected
        assert ledger.add_observation(
            VALIDATOR, **observation(timestamp=MAX_BUCKET_LENGTH, location_lat=0)
        ) == MAX_BUCKET_LENGTH + 1


class TestCorrections:

    @pytest.fixture
    def obs_id(self, ledger):
        return ledger.add_observation(VALIDATOR, **observation())

    def test_validator_can_correct(self, ledger, obs_id, clock):
        assert ledger.add_correction(VALIDATOR, obs_id, "Misidentified") is True
        correction = ledger.get_correction(obs_id)
        assert correction.note == "Misidentified"
        assert correction.corrector == VALIDATOR
        assert correction.timestamp == clock.now

    def test_admin_can_correct(self, ledger, obs_id):
        assert ledger.add_correction(ADMIN, obs_id, "Admin note") is True
        assert ledger.get_correction(obs_id).corrector == ADMIN

    def test_other_caller_rejected(self, ledger, obs_id):
        with pytest.raises(Unauthorized):
            ledger.add_correction("user", obs_id, "Nope")
        assert ledger.get_correction(obs_id) is None

    def test_missing_observation_is_not_found_for_anyone(self, ledger):
        with pytest.raises(NotFound):
            ledger.add_correction("user", 99, "Nope")
        with pytest.raises(NotFound):
            ledger.add_correction(ADMIN, 99, "Nope")

    def test_original_validator_keeps_rights_after_rotation(self, ledger, obs_id):
        ledger.set_authorized_validator(ADMIN, "validator-2")
        assert ledger.add_correction(VALIDATOR, obs_id, "Still mine") is True
        with pytest.raises(Unauthorized):
            ledger.add_correction("validator-2", obs_id, "Not mine")

    def test_newer_correction_replaces_older(self, ledger, obs_id, clock):
        ledger.add_correction(VALIDATOR, obs_id, "First")
        clock.now += 60
        ledger.add_correction(ADMIN, obs_id, "Second")

        correction = ledger.get_correction(obs_id)
        assert correction.note == "Second"
        assert correction.corrector == ADMIN
        assert correction.timestamp == clock.now

    def test_correction_allowed_while_paused(self, ledger, obs_id):
        ledger.pause(ADMIN)
        assert ledger.add_correction(VALIDATOR, obs_id, "During pause") is True

    def test_correction_leaves_observation_and_aggregates(self, ledger, obs_id):
        obs_before = ledger.get_observation(obs_id)
        agg_before = ledger.get_species_aggregate("Bald Eagle")
        ledger.add_correction(VALIDATOR, obs_id, "Note")
        assert ledger.get_observation(obs_id) == obs_before
        assert ledger.get_species_aggregate("Bald Eagle") == agg_before
        assert ledger.get_total_observations() == 1


class TestAdminLifecycle:

    def test_deploy_defaults(self, ledger):
        assert ledger.get_admin() == ADMIN
        assert ledger.get_authorized_validator() == VALIDATOR
        assert ledger.is_paused() is False
        assert ledger.get_total_observations() == 0

    def test_pause_and_unpause(self, ledger):
        assert ledger.pause(ADMIN) is True
        assert ledger.is_paused() is True
        with pytest.raises(Paused):
            ledger.add_observation(VALIDATOR, **observation())

        assert ledger.unpause(ADMIN) is True
        assert ledger.is_paused() is False
        assert ledger.add_observation(VALIDATOR, **observation()) == 1

    def test_pause_is_idempotent(self, ledger):
        ledger.pause(ADMIN)
        assert ledger.pause(ADMIN) is True
        assert ledger.is_paused() is True

    def test_unpause_when_not_paused(self, ledger):
        assert ledger.unpause(ADMIN) is True
        assert ledger.is_paused() is False

    @pytest.mark.parametrize("operation", ["pause", "unpause"])
    def test_non_admin_cannot_toggle_pause(self, ledger, operation):
        with pytest.raises(Unauthorized):
            getattr(ledger, operation)(VALIDATOR)

    def test_transfer_admin(self, ledger):
        assert ledger.transfer_admin(ADMIN, "new-admin") is True
        assert ledger.get_admin() == "new-admin"

        with pytest.raises(Unauthorized):
            ledger.pause(ADMIN)
        assert ledger.pause("new-admin") is True

    def test_non_admin_cannot_transfer(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.transfer_admin(VALIDATOR, VALIDATOR)
        assert ledger.get_admin() == ADMIN

    def test_set_authorized_validator(self, ledger):
        assert ledger.set_authorized_validator(ADMIN, "validator-2") is True
        assert ledger.get_authorized_validator() == "validator-2"

        with pytest.raises(Unauthorized):
            ledger.add_observation(VALIDATOR, **observation())
        assert ledger.add_observation("validator-2", **observation()) == 1
        assert ledger.get_observation(1).validator == "validator-2"

    def test_non_admin_cannot_set_validator(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.set_authorized_validator(VALIDATOR, "mallory")


class TestPagination:

    @pytest.fixture
    def populated(self, ledger):
        for ts in (10, 20, 30):
            ledger.add_observation(VALIDATOR, **observation(timestamp=ts))
        return ledger

    def _ids(self, page):
        return [obs.observation_id for obs in page]

    def test_page_within_range(self, populated):
        assert self._ids(populated.get_paginated_observations(1, 2)) == [1, 2]

    def test_page_clipped_to_max_id(self, populated):
        assert self._ids(populated.get_paginated_observations(2, 100)) == [2, 3]

    def test_last_single_item(self, populated):
        assert self._ids(populated.get_paginated_observations(3, 1)) == [3]

    @pytest.mark.parametrize("start,limit", [
        (1, 0),
        (1, -5),
        (1, 101),
        (0, 1),
        (-1, 1),
        (4, 1),
    ])
    def test_invalid_params(self, populated, start, limit):
        with pytest.raises(InvalidQueryParams):
            populated.get_paginated_observations(start, limit)

    def test_empty_ledger_has_no_valid_start(self, ledger):
        with pytest.raises(InvalidQueryParams):
            ledger.get_paginated_observations(1, 10)

    def test_rejections_are_counted(self, ledger):
        with pytest.raises(InvalidQueryParams):
            ledger.get_paginated_observations(1, 10)
        assert get_metrics().rejections_by_code == {103: 1}


class _FailingStore(InMemoryEventStore):
    """Store whose next commit fails."""

    def __init__(self):
        super().__init__()
        self.fail_next = False

    def _do_commit(self, ctx, event):
        if self.fail_next:
            self.fail_next = False
            self._do_rollback(ctx)
            raise EventStoreError("disk full")
        return super()._do_commit(ctx, event)


class TestEventOutbox:

    @pytest.fixture
    def signing(self):
        return SigningService.ephemeral()

    @pytest.fixture
    def store(self):
        return InMemoryEventStore()

    @pytest.fixture
    def busy_ledger(self, store, signing, clock):
        ledger = SpeciesLedger.deploy(ADMIN, VALIDATOR, event_store=store, signing_service=signing, clock=clock)
        ledger.add_observation(VALIDATOR, **observation(timestamp=100, confidence_score=95))
        ledger.add_observation(VALIDATOR, **observation(timestamp=50, confidence_score=90))
        ledger.add_observation(VALIDATOR, **observation(species="Osprey", location_desc="Hudson"))
        ledger.add_correction(VALIDATOR, 2, "Juvenile, not adult")
        ledger.pause(ADMIN)
        ledger.set_authorized_validator(ADMIN, "validator-2")
        ledger.unpause(ADMIN)
        ledger.add_observation("validator-2", **observation(timestamp=300, confidence_score=100))
        ledger.transfer_admin(ADMIN, "new-admin")
        return ledger

    def test_genesis_event(self, store, signing):
        SpeciesLedger.deploy(ADMIN, VALIDATOR, event_store=store, signing_service=signing)
        (genesis,) = store.list_all()
        assert genesis.event_type == EventType.LEDGER_INITIALIZED
        assert genesis.sequence_number == 0
        assert genesis.previous_event_hash is None
        assert genesis.payload["admin"] == ADMIN
        assert genesis.payload["authorized_validator"] == VALIDATOR

    def test_one_event_per_successful_mutation(self, busy_ledger, store):
        types = [e.event_type for e in store.list_all()]
        assert types == [
            EventType.LEDGER_INITIALIZED,
            EventType.OBSERVATION_ADDED,
            EventType.OBSERVATION_ADDED,
            EventType.OBSERVATION_ADDED,
            EventType.CORRECTION_ADDED,
            EventType.LEDGER_PAUSED,
            EventType.VALIDATOR_AUTHORIZED,
            EventType.LEDGER_UNPAUSED,
            EventType.OBSERVATION_ADDED,
            EventType.ADMIN_TRANSFERRED,
        ]
        assert busy_ledger.event_count == 10

    def test_rejections_record_no_events(self, ledger):
        before = ledger.event_count
        with pytest.raises(Unauthorized):
            ledger.add_observation("user", **observation())
        with pytest.raises(Unauthorized):
            ledger.pause("user")
        with pytest.raises(NotFound):
            ledger.add_correction(VALIDATOR, 1, "x")
        assert ledger.event_count == before

    def test_observation_event_payload(self, ledger):
        ledger.add_observation(VALIDATOR, **observation())
        event = ledger.get_events(since=0)[0]
        payload = event.parsed_payload()

        assert isinstance(payload, ObservationAddedPayload)
        assert event.entity_id == "observation:1"
        assert event.caller == VALIDATOR
        assert payload.evidence_hash == EVIDENCE.hex()
        assert payload.location_hash == Hasher.location_hash(40_712_776, -74_005_974)
        assert payload.region_hash == Hasher.region_hash("New York Central Park")

    def test_events_are_chained(self, busy_ledger, store):
        events = store.list_all()
        for prev, event in zip(events, events[1:]):
            assert event.previous_event_hash == prev.event_hash
        assert busy_ledger.last_event_hash == events[-1].event_hash
        assert busy_ledger.verify_chain_integrity() is True

    def test_get_events_since(self, busy_ledger):
        events = busy_ledger.get_events(since=7)
        assert [e.sequence_number for e in events] == [8, 9]
        assert [e.sequence_number for e in busy_ledger.get_events(since=-1, limit=2)] == [0, 1]

    def test_store_failure_leaves_state_untouched(self):
        store = _FailingStore()
        ledger = SpeciesLedger.deploy(ADMIN, VALIDATOR, event_store=store)

        store.fail_next = True
        with pytest.raises(EventStoreError):
            ledger.add_observation(VALIDATOR, **observation())

        assert ledger.get_total_observations() == 0
        assert ledger.get_observation(1) is None
        assert ledger.find_observation_id("Bald Eagle", 1627849200) is None
        assert ledger.get_species_aggregate("Bald Eagle") is None
        assert ledger.event_count == 1

        assert ledger.add_observation(VALIDATOR, **observation()) == 1

    def test_deploy_on_populated_store_fails(self, busy_ledger, store):
        with pytest.raises(ChainError, match="already holds a ledger"):
            SpeciesLedger.deploy(ADMIN, VALIDATOR, event_store=store)

    def test_metrics_track_operations(self, busy_ledger):
        summary = get_metrics().get_summary()
        assert summary["admissions"] == 4
        assert summary["corrections"] == 1
        assert summary["admin_operations"] == 4
        assert summary["events_committed"] == 10


class TestReplay:

    @pytest.fixture
    def signing(self):
        return SigningService.ephemeral()

    @pytest.fixture
    def store(self):
        return InMemoryEventStore()

    @pytest.fixture
    def original(self, store, signing, clock):
        ledger = SpeciesLedger.deploy(ADMIN, VALIDATOR, event_store=store, signing_service=signing, clock=clock)
        for ts, score in ((100, 95), (50, 90), (200, 100)):
            ledger.add_observation(VALIDATOR, **observation(timestamp=ts, confidence_score=score))
        ledger.add_observation(VALIDATOR, **observation(species="Osprey", location_desc="Hudson"))
        ledger.add_correction(ADMIN, 1, "Second look")
        ledger.set_authorized_validator(ADMIN, "validator-2")
        ledger.pause(ADMIN)
        return ledger

    def test_replay_reproduces_state(self, original, store, signing):
        replayed = SpeciesLedger.load_from_store(store, signing_service=signing)

        assert replayed.get_total_observations() == original.get_total_observations()
        assert replayed.get_paginated_observations(1, 100) == original.get_paginated_observations(1, 100)
        for species in ("Bald Eagle", "Osprey"):
            assert replayed.get_species_aggregate(species) == original.get_species_aggregate(species)
        for desc in ("New York Central Park", "Hudson"):
            region_hash = SpeciesLedger.region_hash_for(desc)
            assert replayed.get_region_aggregate(region_hash) == original.get_region_aggregate(region_hash)
        assert replayed.get_correction(1) == original.get_correction(1)
        assert replayed.get_location_bucket(40_712_776, -74_005_974) == [1, 2, 3, 4]
        assert replayed.get_authorized_validator() == "validator-2"
        assert replayed.is_paused() is True
        assert replayed.last_event_hash == original.last_event_hash
        assert replayed.next_sequence_number == original.next_sequence_number

    def test_replayed_ledger_keeps_writing(self, original, store, signing):
        replayed = SpeciesLedger.load_from_store(store, signing_service=signing)
        replayed.unpause(ADMIN)
        assert replayed.add_observation("validator-2", **observation(timestamp=999)) == 5
        assert replayed.verify_chain_integrity() is True

    def test_stale_ledger_cannot_write_after_another_writer(self, original, store, signing):
        replayed = SpeciesLedger.load_from_store(store, signing_service=signing)
        replayed.unpause(ADMIN)

        with pytest.raises(ChainError, match="Another writer"):
            original.unpause(ADMIN)

    def test_empty_store_cannot_be_loaded(self):
        with pytest.raises(ChainError, match="empty"):
            SpeciesLedger.load_from_store(InMemoryEventStore())

    def test_tampered_payload_detected(self, original, store, signing):
        tampered = store._events[1].model_copy(
            update={"payload": {**store._events[1].payload, "confidence_score": 5}}
        )
        store._events[1] = tampered

        assert original.verify_chain_integrity() is False
        with pytest.raises(ChainError, match="Hash verification failed"):
            SpeciesLedger.load_from_store(store, signing_service=signing)

    def test_wrong_signing_key_detected(self, original, store):
        with pytest.raises(ChainError, match="Signature verification failed"):
            SpeciesLedger.load_from_store(store, signing_service=SigningService.ephemeral())

    def test_signatures_can_be_skipped(self, original, store):
        replayed = SpeciesLedger.load_from_store(
            store, signing_service=SigningService.ephemeral(), verify_signatures=False
        )
        assert replayed.get_total_observations() == 4

    def test_well_formed_but_unauthorized_history_rejected(self, original, store, signing):
        """A correctly hashed and signed event that the rules would never admit."""
        payload = ObservationAddedPayload(
            observation_id=5,
            species="Forged Bird",
            timestamp=1,
            location_lat=0,
            location_lon=0,
            location_desc="Nowhere",
            evidence_hash="",
            metadata="",
            confidence_score=100,
            contributor="mallory",
            validator="mallory",
            location_hash=Hasher.location_hash(0, 0),
            region_hash=Hasher.region_hash("Nowhere"),
        ).model_dump(mode="json")

        with store.begin_append() as ctx:
            prev = ctx.head.last_event_hash
            event_hash = Hasher.hash_event(EventType.OBSERVATION_ADDED, "observation:5", "mallory", payload, prev)
            ctx.commit(LedgerEvent(
                event_id=uuid4(),
                sequence_number=ctx.head.next_sequence,
                event_type=EventType.OBSERVATION_ADDED,
                entity_id="observation:5",
                caller="mallory",
                payload=payload,
                previous_event_hash=prev,
                event_hash=event_hash,
                signature=signing.sign_event(event_hash),
                created_at=datetime.now(timezone.utc),
            ))

        with pytest.raises(ChainError, match="Unauthorized"):
            SpeciesLedger.load_from_store(store, signing_service=signing)

    def test_correction_timestamp_comes_from_event(self, original, store, signing):
        later_clock = FixedClock(now=2_000_000_000)
        replayed = SpeciesLedger.load_from_store(store, signing_service=signing, clock=later_clock)
        assert replayed.get_correction(1).timestamp == original.get_correction(1).timestamp
