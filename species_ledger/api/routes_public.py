"""
Public API Routes

Read-only endpoints. No caller identity required.
Also serves the event feed the external indexer consumes.
"""

from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from ..core import LedgerResult, SpeciesLedger
from .deps import envelope_response, get_contract, get_ledger


router = APIRouter(prefix="/api/public", tags=["Public API"])


# ============================================================
# Response Models
# ============================================================

class LedgerStatus(BaseModel):
    total_observations: int
    paused: bool
    admin: str
    authorized_validator: str
    event_count: int


class IntegrityStatus(BaseModel):
    """
    Ledger integrity status.

    Covers the ENTIRE event chain, genesis to head.
    """
    ledger_integrity_valid: bool
    event_count: int
    last_event_hash: Optional[str] = None
    signing_public_key: str


class EventFeed(BaseModel):
    events: list[dict[str, Any]]
    next_since: int


# ============================================================
# Observations
# ============================================================

def _query_int(raw: str) -> Any:
    """Parse an integer query parameter, leaving anything else for the ledger to reject."""
    try:
        return int(raw)
    except ValueError:
        return raw


@router.get("/observations")
async def list_observations(request: Request, start: str = "1", limit: str = "20"):
    """Observations with ids start .. start + limit - 1 (limit at most 100)."""
    return envelope_response(
        get_contract(request).get_paginated_observations(_query_int(start), _query_int(limit))
    )


@router.get("/observations/{observation_id}")
async def get_observation(observation_id: int, request: Request):
    return envelope_response(get_contract(request).get_observation(observation_id))


@router.get("/observations/{observation_id}/correction")
async def get_correction(observation_id: int, request: Request):
    return envelope_response(get_contract(request).get_correction(observation_id))


# ============================================================
# Species / Regions / Locations
# ============================================================

@router.get("/species/{species}/aggregate")
async def get_species_aggregate(species: str, request: Request):
    return envelope_response(get_contract(request).get_species_aggregate(species))


@router.get("/species/{species}/observations/{timestamp}")
async def find_observation_id(species: str, timestamp: int, request: Request):
    """Observation id recorded for (species, timestamp), or null."""
    ledger = get_ledger(request)
    return envelope_response(LedgerResult.success(ledger.find_observation_id(species, timestamp)))


@router.get("/regions/hash")
async def region_hash(location_desc: str = Query(...)):
    """Region key for a location description."""
    return envelope_response(LedgerResult.success(SpeciesLedger.region_hash_for(location_desc)))


@router.get("/regions/{region_hash}/aggregate")
async def get_region_aggregate(region_hash: str, request: Request):
    return envelope_response(get_contract(request).get_region_aggregate(region_hash))


@router.get("/locations/bucket")
async def get_location_bucket(request: Request, lat: int = Query(...), lon: int = Query(...)):
    """Observation ids recorded at exactly these fixed-point coordinates."""
    ledger = get_ledger(request)
    return envelope_response(LedgerResult.success(ledger.get_location_bucket(lat, lon)))


# ============================================================
# Ledger state
# ============================================================

@router.get("/status", response_model=LedgerStatus)
async def get_status(request: Request):
    ledger = get_ledger(request)
    return LedgerStatus(
        total_observations=ledger.get_total_observations(),
        paused=ledger.is_paused(),
        admin=ledger.get_admin(),
        authorized_validator=ledger.get_authorized_validator(),
        event_count=ledger.event_count,
    )


@router.get("/integrity", response_model=IntegrityStatus)
async def get_integrity(request: Request):
    ledger = get_ledger(request)
    return IntegrityStatus(
        ledger_integrity_valid=ledger.verify_chain_integrity(),
        event_count=ledger.event_count,
        last_event_hash=ledger.last_event_hash,
        signing_public_key=ledger.signing_public_key,
    )


@router.get("/events", response_model=EventFeed)
async def get_events(
    request: Request,
    since: int = -1,
    limit: int = Query(100, ge=1, le=1000),
):
    """
    Events with sequence numbers greater than `since`, oldest first.

    Poll with the returned next_since to follow the ledger.
    """
    events = get_ledger(request).get_events(since, limit)
    return EventFeed(
        events=[e.model_dump(mode="json") for e in events],
        next_since=events[-1].sequence_number if events else since,
    )
