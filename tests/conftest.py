import pytest

from species_ledger.core import SpeciesLedger
from species_ledger.observability import reset_metrics


ADMIN = "deployer"
VALIDATOR = "validator"
EVIDENCE = bytes.fromhex("ab" * 32)


def observation(**overrides) -> dict:
    """Keyword arguments for a valid add_observation call."""
    fields = {
        "species": "Bald Eagle",
        "timestamp": 1627849200,
        "location_lat": 40_712_776,
        "location_lon": -74_005_974,
        "location_desc": "New York Central Park",
        "evidence_hash": EVIDENCE,
        "metadata": "Spotted near the lake",
        "confidence_score": 95,
        "contributor": "birder-1",
    }
    fields.update(overrides)
    return fields


class FixedClock:
    """Settable Unix clock for correction timestamps."""

    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture(autouse=True)
def _fresh_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def ledger(clock):
    return SpeciesLedger.deploy(ADMIN, VALIDATOR, clock=clock)
