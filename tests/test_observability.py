"""
Tests for logging, metrics, health checks and runtime wiring.
"""

import json
import logging

import pytest

from species_ledger.config import LedgerSettings
from species_ledger.core import SigningService, SpeciesLedger
from species_ledger.db import InMemoryEventStore
from species_ledger.observability import (
    StructuredFormatter,
    TextFormatter,
    caller_id_var,
    check_health,
    get_logger,
    get_metrics,
    request_id_var,
    setup_logging,
)
from species_ledger.runtime import create_ledger

from conftest import ADMIN, VALIDATOR, observation


def _record(msg="Observation admitted", **extra) -> logging.LogRecord:
    record = logging.LogRecord("species_ledger.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:

    def test_json_fields(self):
        data = json.loads(StructuredFormatter().format(_record(observation_id=7, species="Osprey")))
        assert data["level"] == "INFO"
        assert data["logger"] == "species_ledger.test"
        assert data["message"] == "Observation admitted"
        assert data["observation_id"] == 7
        assert data["species"] == "Osprey"

    def test_request_id_included(self):
        token = request_id_var.set("abc12345")
        try:
            data = json.loads(StructuredFormatter().format(_record()))
        finally:
            request_id_var.reset(token)
        assert data["request_id"] == "abc12345"

    def test_unserializable_extra_is_stringified(self):
        data = json.loads(StructuredFormatter().format(_record(blob=b"\x00")))
        assert data["blob"] == str(b"\x00")

    def test_context_logger_moves_kwargs_to_extra(self, caplog):
        logger = get_logger("species_ledger.test")
        with caplog.at_level(logging.INFO, logger="species_ledger.test"):
            logger.info("Ledger paused", admin="deployer")
        assert caplog.records[-1].admin == "deployer"


    def test_text_format_appends_extras_and_context(self):
        tokens = (request_id_var.set("abc12345"), caller_id_var.set("validator"))
        try:
            line = TextFormatter().format(_record("Admission rejected", code=102))
        finally:
            caller_id_var.reset(tokens[1])
            request_id_var.reset(tokens[0])
        assert "[abc12345 validator]" in line
        assert line.endswith("species_ledger.test: Admission rejected code=102")

    def test_setup_logging_installs_one_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(level=logging.DEBUG, json_logs=True)
            setup_logging(level=logging.DEBUG, json_logs=True)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, StructuredFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)


class TestMetrics:

    def test_rejections_by_code(self, ledger):
        with pytest.raises(Exception):
            ledger.add_observation("user", **observation())
        with pytest.raises(Exception):
            ledger.pause(VALIDATOR)
        ledger.add_observation(VALIDATOR, **observation())
        with pytest.raises(Exception):
            ledger.add_observation(VALIDATOR, **observation())

        summary = get_metrics().get_summary()
        assert summary["rejections_by_code"] == {"100": 2, "102": 1}
        assert summary["admissions"] == 1
        assert summary["commit_latency_p50_ms"] is not None

    def test_empty_summary(self):
        summary = get_metrics().get_summary()
        assert summary["admissions"] == 0
        assert summary["commit_latency_p50_ms"] is None


class TestHealth:

    def test_healthy_ledger(self, ledger):
        status = check_health(ledger=ledger, event_store=ledger.event_store)
        assert status.healthy is True
        assert status.checks["event_store"]["event_count"] == 1

    def test_tampered_store_is_unhealthy(self, ledger):
        ledger.add_observation(VALIDATOR, **observation())
        store = ledger.event_store
        store._events[1] = store._events[1].model_copy(update={"caller": "mallory"})

        status = check_health(ledger=ledger, event_store=store)
        assert status.healthy is False
        assert status.checks["chain_integrity"]["valid"] is False

    def test_liveness_only(self):
        assert check_health().healthy is True


class TestRuntime:

    def test_empty_store_deploys_with_settings(self):
        store = InMemoryEventStore()
        ledger = create_ledger(
            store,
            LedgerSettings(admin="alice", authorized_validator="bob"),
            SigningService.ephemeral(),
        )
        assert ledger.get_admin() == "alice"
        assert ledger.get_authorized_validator() == "bob"
        assert store.get_event_count() == 1

    def test_populated_store_is_replayed(self):
        store = InMemoryEventStore()
        signing = SigningService.ephemeral()
        original = SpeciesLedger.deploy(ADMIN, VALIDATOR, event_store=store, signing_service=signing)
        original.add_observation(VALIDATOR, **observation())
        original.transfer_admin(ADMIN, "carol")

        # History wins over the configured identities
        reloaded = create_ledger(store, LedgerSettings(admin="ignored"), signing)
        assert reloaded.get_admin() == "carol"
        assert reloaded.get_total_observations() == 1
