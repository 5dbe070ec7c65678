"""FastAPI application exposing Islamic months and crescent visibility grids."""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from hilal.astro import EphemerisError, SpiceEphemeris, load_ephemeris, loaded_files
from hilal.ephemeris import EphemerisAcquisitionError, resolve_ephemeris_source
from hilal.errors import InvalidRequestError
from hilal.months import (
    IslamicMonthEntry,
    find_month_by_route,
    month_visibility_grids,
    nearest_month_route,
    upcoming_islamic_months,
)
from hilal.provider import EphemerisProvider
from hilal.settings import Settings, load_settings
from hilal.visibility import POLICIES, VisibilityGrid, VisibilityPolicy, calculate_visibility_grid
from models import (
    ErrorResponse,
    HealthResponse,
    MonthEntryModel,
    MonthMapsResponse,
    MonthResponse,
    MonthsQueryParams,
    MonthsResponse,
    RouteResponse,
    VisibilityPointModel,
    VisibilityQueryParams,
    VisibilityResponse,
)

SETTINGS = load_settings()

logging.basicConfig(level=SETTINGS.log_level, format="%(message)s")
LOGGER = logging.getLogger("hilal-api")

APP_DESCRIPTION = (
    "Islamic month boundaries and Yallop crescent visibility maps from JPL DE ephemerides"
)

PROVIDER: Optional[SpiceEphemeris] = None


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised in integration tests
    global PROVIDER, SETTINGS
    SETTINGS = load_settings()
    try:
        source_path = resolve_ephemeris_source(SETTINGS)
    except EphemerisAcquisitionError as exc:
        LOGGER.error(json.dumps({"event": "ephemeris_acquire_failed", "error": str(exc)}))
        raise
    LOGGER.info(json.dumps({"event": "startup", "ephemeris_source": str(source_path)}))
    try:
        load_ephemeris(str(source_path))
    except EphemerisError as exc:
        LOGGER.error(json.dumps({"event": "ephemeris_load_failed", "error": str(exc)}))
        raise
    PROVIDER = SpiceEphemeris(str(source_path))
    yield


app = FastAPI(
    title="Hilal API",
    description=APP_DESCRIPTION,
    version="1.0.0",
    lifespan=lifespan,
)

if SETTINGS.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(SETTINGS.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def get_provider() -> EphemerisProvider:
    if PROVIDER is None:
        raise EphemerisError("Ephemeris kernels have not been loaded")
    return PROVIDER


def get_policy() -> VisibilityPolicy:
    return POLICIES[SETTINGS.policy]


def _format_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _month_model(entry: IslamicMonthEntry) -> MonthEntryModel:
    return MonthEntryModel(
        name=entry.name,
        year=entry.year,
        gregorian_label=entry.gregorian_label,
        new_moon_utc=_format_utc(entry.new_moon_time),
        map_dates=list(entry.map_dates),
        route_slug=entry.route_slug,
        route=entry.route,
    )


def _grid_model(grid: VisibilityGrid, policy: VisibilityPolicy) -> VisibilityResponse:
    return VisibilityResponse(
        observation_date=grid.date,
        crescent=grid.crescent,
        resolution=grid.resolution,
        policy=policy.name,
        new_moon_utc=_format_utc(grid.new_moon_time),
        next_new_moon_utc=_format_utc(grid.next_new_moon_time),
        day_label=grid.day_label,
        month_label=grid.month_label,
        points=[
            VisibilityPointModel(
                lat=result.lat,
                lng=result.lng,
                category=result.category,
                arcv=result.arcv,
                crescent_width=result.crescent_width,
                q=result.q,
                observation_utc=_format_utc(result.observation_time),
                moon_altitude=result.moon_altitude,
                moon_age=result.moon_age,
            )
            for result in grid.results
        ],
    )


def _current_months(provider: EphemerisProvider) -> List[IslamicMonthEntry]:
    return upcoming_islamic_months(provider, datetime.now(UTC).date(), SETTINGS.month_count)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    payload = ErrorResponse(code=code, error=message)
    LOGGER.error(json.dumps({"event": "error", "code": code, "message": message}))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    messages = ", ".join(error["msg"] for error in exc.errors())
    return _error_response(422, "validation_error", messages)


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    # Constraints on the query models are enforced when the dependency builds them.
    messages = ", ".join(error["msg"] for error in exc.errors())
    return _error_response(422, "validation_error", messages)


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(request: Request, exc: InvalidRequestError) -> JSONResponse:
    return _error_response(400, "invalid_request", str(exc))


@app.exception_handler(EphemerisError)
async def ephemeris_exception_handler(request: Request, exc: EphemerisError) -> JSONResponse:
    return _error_response(500, "ephemeris_error", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        message = detail.get("error") or detail.get("message") or str(detail)
    elif isinstance(detail, list):
        message = ", ".join(str(item) for item in detail)
    else:
        message = str(detail)
    return _error_response(exc.status_code, f"http_{exc.status_code}", message)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled exception", exc_info=exc)
    return _error_response(500, "internal_error", "Unhandled server error")


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    files = loaded_files()
    return HealthResponse(ok=True, ephemeris_loaded=bool(files), files=files)


@app.get("/months", response_model=MonthsResponse, responses={400: {"model": ErrorResponse}})
def months_endpoint(
    params: MonthsQueryParams = Depends(),
    provider: EphemerisProvider = Depends(get_provider),
) -> MonthsResponse:
    start = params.start or datetime.now(UTC).date()
    entries = upcoming_islamic_months(provider, start, params.count or SETTINGS.month_count)
    return MonthsResponse(months=[_month_model(entry) for entry in entries])


@app.get("/months/nearest", response_model=RouteResponse)
def nearest_month_endpoint(provider: EphemerisProvider = Depends(get_provider)) -> RouteResponse:
    return RouteResponse(route=nearest_month_route(_current_months(provider)))


@app.get(
    "/months/{year}/{slug}",
    response_model=MonthResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def month_endpoint(
    year: str, slug: str, provider: EphemerisProvider = Depends(get_provider)
) -> MonthResponse:
    entry = find_month_by_route(year, slug, _current_months(provider))
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No upcoming month matches /{year}/{slug}")
    return MonthResponse(month=_month_model(entry))


@app.get(
    "/months/{year}/{slug}/maps",
    response_model=MonthMapsResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def month_maps_endpoint(
    year: str,
    slug: str,
    provider: EphemerisProvider = Depends(get_provider),
    policy: VisibilityPolicy = Depends(get_policy),
) -> MonthMapsResponse:
    entry = find_month_by_route(year, slug, _current_months(provider))
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No upcoming month matches /{year}/{slug}")
    grids = month_visibility_grids(
        provider, entry, SETTINGS.grid_resolution, policy=policy, n_jobs=SETTINGS.n_jobs
    )
    return MonthMapsResponse(
        month=_month_model(entry), grids=[_grid_model(grid, policy) for grid in grids]
    )


@app.get(
    "/visibility",
    response_model=VisibilityResponse,
    responses={400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
def visibility_endpoint(
    params: VisibilityQueryParams = Depends(),
    provider: EphemerisProvider = Depends(get_provider),
    policy: VisibilityPolicy = Depends(get_policy),
) -> VisibilityResponse:
    start_time = time.perf_counter()
    grid = calculate_visibility_grid(
        provider,
        params.date_local,
        params.crescent,
        params.resolution or SETTINGS.grid_resolution,
        policy=policy,
        n_jobs=SETTINGS.n_jobs,
    )
    response = _grid_model(grid, policy)
    LOGGER.info(
        json.dumps(
            {
                "event": "visibility",
                "date": params.date_local.isoformat(),
                "crescent": params.crescent.value,
                "resolution": grid.resolution,
                "points": len(response.points),
                "duration_ms": round((time.perf_counter() - start_time) * 1000.0, 3),
            }
        )
    )
    return response
