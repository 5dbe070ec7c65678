"""Pydantic models for API requests and responses."""

from __future__ import annotations

from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from hilal.visibility import MIN_RESOLUTION, Crescent, VisibilityCategory


class VisibilityQueryParams(BaseModel):
    """Validated query parameters for the ``/visibility`` endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    date_local: date = Field(..., alias="date", description="Civil date of the observation (YYYY-MM-DD)")
    crescent: Crescent = Field(Crescent.waxing, description="Evening (waxing) or morning (waning) crescent")
    resolution: Optional[float] = Field(
        None, ge=MIN_RESOLUTION, le=30.0, description="Grid step in degrees; server default when omitted"
    )


class MonthsQueryParams(BaseModel):
    """Validated query parameters for the ``/months`` endpoint."""

    start: Optional[date] = Field(None, description="Start date (YYYY-MM-DD); today when omitted")
    count: Optional[int] = Field(None, ge=1, le=60, description="Number of months to build")


class MonthEntryModel(BaseModel):
    name: str
    year: int
    gregorian_label: str = Field(..., description="Gregorian month of the conjunction, e.g. 'March 2026'")
    new_moon_utc: str = Field(..., description="Conjunction instant in UTC (ISO-8601)")
    map_dates: List[date] = Field(..., description="Conjunction day and the two following days")
    route_slug: str
    route: str = Field(..., description="Deep-link path, e.g. '/1447AH/Ramadan'")


class MonthsResponse(BaseModel):
    ok: bool = True
    months: List[MonthEntryModel]


class MonthResponse(BaseModel):
    ok: bool = True
    month: MonthEntryModel


class RouteResponse(BaseModel):
    ok: bool = True
    route: str


class VisibilityPointModel(BaseModel):
    lat: float
    lng: float
    category: VisibilityCategory
    arcv: float = Field(..., description="Arc of vision in degrees")
    crescent_width: float = Field(..., description="Crescent width in arc-minutes")
    q: float = Field(..., description="Yallop q value")
    observation_utc: Optional[str] = Field(None, description="Observation instant; null when the computation failed")
    moon_altitude: float
    moon_age: Optional[float] = Field(None, description="Hours since (waxing) or until (waning) the conjunction")


class VisibilityResponse(BaseModel):
    """One classified visibility grid."""

    ok: bool = True
    observation_date: date
    crescent: Crescent
    resolution: float
    policy: str
    new_moon_utc: Optional[str] = None
    next_new_moon_utc: Optional[str] = None
    day_label: Optional[str] = None
    month_label: Optional[str] = None
    points: List[VisibilityPointModel]


class MonthMapsResponse(BaseModel):
    ok: bool = True
    month: MonthEntryModel
    grids: List[VisibilityResponse]


class HealthResponse(BaseModel):
    """Health-check response."""

    ok: bool = True
    ephemeris_loaded: bool
    files: List[str]
    source: Literal["CSPICE-DE"] = "CSPICE-DE"


class ErrorResponse(BaseModel):
    """Error payload."""

    ok: bool = False
    code: str
    error: str
