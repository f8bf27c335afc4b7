"""
Correction Schema

A correction annotates an observation. It does not alter it.
At most one correction is live per observation; a newer one replaces it.
"""

from pydantic import BaseModel, ConfigDict, Field


class Correction(BaseModel):
    model_config = ConfigDict(frozen=True)

    note: str
    corrector: str = Field(..., description="Validator or admin who filed the correction")
    timestamp: int = Field(..., description="Unix seconds when the correction was filed")
