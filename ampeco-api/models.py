"""
Pydantic models for the AMPECO Reports API.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class StationIn(BaseModel):
    chargePointId: int = Field(..., description="AMPECO charge point id")
    stationName: str = Field(..., min_length=1, description="Sheet / display name")


class MonthlyReportRequest(BaseModel):
    """Body of POST /api/ikrautas-report."""
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[str] = Field(None, alias="from", description="ISO window start (inclusive)")
    to: Optional[str] = Field(None, description="ISO window end (exclusive)")
    stations: List[StationIn] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    status: Optional[int] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str
