"""
Shared API helpers.

Every ledger route answers with the LedgerResult envelope. Rejections
keep the envelope body and pick an HTTP status from the error code.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..core import ErrorCode, LedgerContract, LedgerResult, SpeciesLedger


HTTP_STATUS_BY_CODE: dict[int, int] = {
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.INVALID_OBSERVATION: 422,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.INVALID_QUERY_PARAMS: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.PAUSED: 423,
    ErrorCode.CAPACITY_EXCEEDED: 409,
}


def get_ledger(request: Request) -> SpeciesLedger:
    """Get ledger from app state."""
    return request.app.state.ledger


def get_contract(request: Request) -> LedgerContract:
    return LedgerContract(get_ledger(request))


def require_caller(x_caller_identity: Optional[str] = Header(None)) -> str:
    """
    Caller identity from the X-Caller-Identity header.

    Authenticating that header is the job of whatever sits in front of
    this service.
    """
    if not x_caller_identity:
        raise HTTPException(status_code=401, detail="Missing X-Caller-Identity header")
    return x_caller_identity


def envelope_response(result: LedgerResult) -> JSONResponse:
    status_code = 200 if result.ok else HTTP_STATUS_BY_CODE.get(result.value, 400)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))
