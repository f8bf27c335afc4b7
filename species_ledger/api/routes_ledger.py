"""
Command Routes

Write endpoints (no PATCH, no PUT, no DELETE):
- POST /api/ledger/observations                        - Admit an observation
- POST /api/ledger/observations/{id}/corrections       - Correct an observation
- POST /api/ledger/admin/pause                         - Pause admissions
- POST /api/ledger/admin/unpause                       - Resume admissions
- POST /api/ledger/admin/transfer                      - Transfer the admin role
- POST /api/ledger/admin/validator                     - Change the authorized validator

The caller is whoever X-Caller-Identity names.
"""

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from .deps import envelope_response, get_contract, require_caller


router = APIRouter(prefix="/api/ledger", tags=["Ledger Commands"])


# ============================================================
# Request Models
# ============================================================

class AddObservationRequest(BaseModel):
    """
    Observation submitted by the validator.

    Fields are untyped. The admission gate owns every type and bounds
    check, so a malformed or missing field comes back as code 101 after
    the authorization and pause checks.
    """
    species: Any = None
    timestamp: Any = Field(None, description="Unix seconds")
    location_lat: Any = Field(None, description="Latitude scaled by 1e6")
    location_lon: Any = Field(None, description="Longitude scaled by 1e6")
    location_desc: Any = None
    evidence_hash: Any = Field(None, description="Evidence fingerprint, hex")
    metadata: Any = ""
    confidence_score: Any = None
    contributor: Any = None


class AddCorrectionRequest(BaseModel):
    note: str


class TransferAdminRequest(BaseModel):
    new_admin: str


class SetValidatorRequest(BaseModel):
    new_validator: str


# ============================================================
# Endpoints
# ============================================================

@router.post("/observations")
async def add_observation(
    body: AddObservationRequest,
    request: Request,
    caller: str = Depends(require_caller),
):
    evidence_hash = body.evidence_hash
    if isinstance(evidence_hash, str):
        try:
            evidence_hash = bytes.fromhex(evidence_hash)
        except ValueError:
            # Left as text so the gate rejects it in order
            pass

    result = get_contract(request).add_observation(
        caller,
        body.species,
        body.timestamp,
        body.location_lat,
        body.location_lon,
        body.location_desc,
        evidence_hash,
        body.metadata,
        body.confidence_score,
        body.contributor,
    )
    return envelope_response(result)


@router.post("/observations/{observation_id}/corrections")
async def add_correction(
    observation_id: int,
    body: AddCorrectionRequest,
    request: Request,
    caller: str = Depends(require_caller),
):
    return envelope_response(get_contract(request).add_correction(caller, observation_id, body.note))


@router.post("/admin/pause")
async def pause(request: Request, caller: str = Depends(require_caller)):
    return envelope_response(get_contract(request).pause(caller))


@router.post("/admin/unpause")
async def unpause(request: Request, caller: str = Depends(require_caller)):
    return envelope_response(get_contract(request).unpause(caller))


@router.post("/admin/transfer")
async def transfer_admin(
    body: TransferAdminRequest,
    request: Request,
    caller: str = Depends(require_caller),
):
    return envelope_response(get_contract(request).transfer_admin(caller, body.new_admin))


@router.post("/admin/validator")
async def set_authorized_validator(
    body: SetValidatorRequest,
    request: Request,
    caller: str = Depends(require_caller),
):
    return envelope_response(get_contract(request).set_authorized_validator(caller, body.new_validator))
