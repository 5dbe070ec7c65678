"""Global crescent visibility grids using the Yallop criterion."""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from joblib import Parallel, delayed

from .errors import InvalidRequestError
from .provider import Body, Direction, EphemerisProvider

__all__ = [
    "Crescent",
    "VisibilityCategory",
    "CATEGORY_DESCRIPTIONS",
    "VisibilityPolicy",
    "RELAXED_POLICY",
    "YALLOP_1997_POLICY",
    "POLICIES",
    "GridPoint",
    "VisibilityResult",
    "VisibilityGrid",
    "grid_points",
    "crescent_width",
    "yallop_q",
    "classify_q",
    "compute_point_visibility",
    "calculate_visibility_grid",
    "find_previous_new_moon",
    "find_next_new_moon",
    "determine_crescent_type",
    "local_category",
]

LOGGER = logging.getLogger(__name__)

LAT_RANGE = (-65.0, 65.0)
LNG_RANGE = (-180.0, 180.0)
DEFAULT_RESOLUTION = 4.0
# Finest step served; 0.5 degrees is already about 190,000 points.
MIN_RESOLUTION = 0.5

MOON_RADIUS_KM = 1737.4
AU_KM = 149_597_870.7
BELOW_HORIZON_Q = -999.0

ANCHOR_SEARCH_DAYS = 1.0
# The depression instant must fall in the same night as the anchoring
# sunset or sunrise; a later crossing belongs to another day.
TWILIGHT_WINDOW = timedelta(hours=12)


class Crescent(str, Enum):
    """Which crescent is observed: evening after sunset or morning before sunrise."""

    waxing = "waxing"
    waning = "waning"


class VisibilityCategory(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"


CATEGORY_DESCRIPTIONS: Dict[VisibilityCategory, str] = {
    VisibilityCategory.A: "Easily visible with the naked eye",
    VisibilityCategory.B: "Visible with the naked eye in perfect conditions",
    VisibilityCategory.C: "Need optical aid to find, then visible with the naked eye",
    VisibilityCategory.D: "Only visible with optical aid",
    VisibilityCategory.E: "Not visible",
}


@dataclass(frozen=True)
class VisibilityPolicy:
    """Category thresholds on q and the sun depression of the observation instant.

    ``thresholds`` are the lower bounds (exclusive) of categories A, B, C and D,
    in strictly descending order.
    """

    name: str
    thresholds: Tuple[float, float, float, float]
    sun_altitude: float

    def __post_init__(self) -> None:
        if len(self.thresholds) != 4 or any(
            upper <= lower for upper, lower in zip(self.thresholds, self.thresholds[1:])
        ):
            raise InvalidRequestError(
                f"policy thresholds must be four strictly descending values: {self.thresholds}"
            )


RELAXED_POLICY = VisibilityPolicy("relaxed", (0.10, -0.19, -0.36, -0.63), -1.0)
# Yallop (1997), NAO Technical Note 69, with the best time approximated by a
# fixed four degree sun depression.
YALLOP_1997_POLICY = VisibilityPolicy("yallop1997", (0.216, -0.014, -0.160, -0.232), -4.0)

POLICIES: Dict[str, VisibilityPolicy] = {
    RELAXED_POLICY.name: RELAXED_POLICY,
    YALLOP_1997_POLICY.name: YALLOP_1997_POLICY,
}


@dataclass(frozen=True)
class GridPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class VisibilityResult:
    """Crescent visibility at one grid point.

    ``observation_time`` is ``None`` exactly when the computation failed
    (no sunset/sunrise or an ephemeris error); all numeric fields are then 0.
    """

    lat: float
    lng: float
    category: VisibilityCategory
    arcv: float
    crescent_width: float
    q: float
    observation_time: Optional[datetime]
    moon_altitude: float
    moon_age: Optional[float]


@dataclass(frozen=True)
class VisibilityGrid:
    results: Tuple[VisibilityResult, ...]
    date: date
    new_moon_time: Optional[datetime]
    next_new_moon_time: Optional[datetime]
    resolution: float
    crescent: Crescent
    day_label: Optional[str] = None
    month_label: Optional[str] = None


def _axis(start: float, stop: float, step: float) -> List[float]:
    count = int(math.floor((stop - start) / step + 1e-9)) + 1
    return [start + index * step for index in range(count)]


def _check_resolution(resolution: float) -> float:
    try:
        value = float(resolution)
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError(f"resolution must be a number, got {resolution!r}") from exc
    if not math.isfinite(value) or value < MIN_RESOLUTION:
        raise InvalidRequestError(
            f"resolution must be at least {MIN_RESOLUTION} degrees, got {resolution!r}"
        )
    return value


def _check_crescent(crescent: Union[Crescent, str]) -> Crescent:
    try:
        return Crescent(crescent)
    except ValueError as exc:
        raise InvalidRequestError(f"Unsupported crescent direction: {crescent!r}") from exc


def grid_points(resolution: float = DEFAULT_RESOLUTION) -> List[GridPoint]:
    """Row-major sample points, latitude ascending then longitude ascending."""

    step = _check_resolution(resolution)
    longitudes = _axis(*LNG_RANGE, step)
    return [GridPoint(lat, lng) for lat in _axis(*LAT_RANGE, step) for lng in longitudes]


def crescent_width(elongation: float, moon_distance_au: float) -> float:
    """Crescent width in arc-minutes from elongation (deg) and geocentric distance (AU)."""

    semi_diameter = math.degrees(math.asin((MOON_RADIUS_KM / AU_KM) / moon_distance_au)) * 60.0
    return semi_diameter * (1.0 - math.cos(math.radians(elongation)))


def yallop_q(arcv: float, width: float) -> float:
    return (arcv - (11.8371 - 6.3226 * width + 0.7319 * width**2 - 0.1018 * width**3)) / 10.0


def classify_q(q: float, policy: VisibilityPolicy = RELAXED_POLICY) -> VisibilityCategory:
    a, b, c, d = policy.thresholds
    if q > a:
        return VisibilityCategory.A
    if q > b:
        return VisibilityCategory.B
    if q > c:
        return VisibilityCategory.C
    if q > d:
        return VisibilityCategory.D
    return VisibilityCategory.E


def _empty_result(lat: float, lng: float) -> VisibilityResult:
    return VisibilityResult(
        lat=lat,
        lng=lng,
        category=VisibilityCategory.E,
        arcv=0.0,
        crescent_width=0.0,
        q=0.0,
        observation_time=None,
        moon_altitude=0.0,
        moon_age=None,
    )


def _moon_age(
    crescent: Crescent, observation: datetime, reference: Optional[datetime]
) -> Optional[float]:
    if reference is None:
        return None
    if crescent is Crescent.waxing:
        delta = observation - reference
    else:
        delta = reference - observation
    return delta.total_seconds() / 3600.0


def _days(span: timedelta) -> float:
    return span.total_seconds() / 86400.0


def _observation_time(
    provider: EphemerisProvider,
    lat: float,
    lng: float,
    day: date,
    crescent: Crescent,
    policy: VisibilityPolicy,
) -> Optional[datetime]:
    """Instant the sun reaches the policy depression on the requested evening or morning."""

    # Whole-hour offset from longitude stands in for the local time zone.
    offset = timedelta(hours=round(lng / 15))
    midnight = datetime.combine(day, datetime.min.time(), tzinfo=UTC)
    if crescent is Crescent.waxing:
        sunset = provider.search_rise_set(
            Body.sun, lat, lng, Direction.setting, midnight + timedelta(hours=12) - offset, ANCHOR_SEARCH_DAYS
        )
        if sunset is None:
            return None
        observation = provider.search_altitude(
            Body.sun, lat, lng, Direction.setting, sunset, _days(TWILIGHT_WINDOW), policy.sun_altitude
        )
        if observation is None or not sunset <= observation <= sunset + TWILIGHT_WINDOW:
            return None
        return observation
    sunrise = provider.search_rise_set(
        Body.sun, lat, lng, Direction.rising, midnight - offset, ANCHOR_SEARCH_DAYS
    )
    if sunrise is None:
        return None
    observation = provider.search_altitude(
        Body.sun,
        lat,
        lng,
        Direction.rising,
        sunrise - TWILIGHT_WINDOW,
        _days(TWILIGHT_WINDOW),
        policy.sun_altitude,
    )
    if observation is None or not sunrise - TWILIGHT_WINDOW <= observation <= sunrise:
        return None
    return observation


def compute_point_visibility(
    provider: EphemerisProvider,
    lat: float,
    lng: float,
    day: date,
    crescent: Union[Crescent, str],
    new_moon_time: Optional[datetime] = None,
    next_new_moon_time: Optional[datetime] = None,
    policy: VisibilityPolicy = RELAXED_POLICY,
) -> VisibilityResult:
    """Classify crescent visibility for one observer on one evening or morning.

    Ephemeris failures never propagate: they degrade the point to an empty
    category E result.
    """

    crescent = _check_crescent(crescent)
    try:
        observation = _observation_time(provider, lat, lng, day, crescent, policy)
        if observation is None:
            return _empty_result(lat, lng)

        reference = new_moon_time if crescent is Crescent.waxing else next_new_moon_time
        moon_age = _moon_age(crescent, observation, reference)

        moon = provider.topocentric_position(Body.moon, observation, lat, lng)
        sun = provider.topocentric_position(Body.sun, observation, lat, lng)
        arcv = moon.altitude - sun.altitude
        if moon.altitude < 0:
            return VisibilityResult(
                lat=lat,
                lng=lng,
                category=VisibilityCategory.E,
                arcv=arcv,
                crescent_width=0.0,
                q=BELOW_HORIZON_Q,
                observation_time=observation,
                moon_altitude=moon.altitude,
                moon_age=moon_age,
            )

        elongation = provider.angular_separation(Body.moon, Body.sun, observation)
        distance = provider.illumination(Body.moon, observation).distance_au
        width = crescent_width(elongation, distance)
    except Exception as exc:
        LOGGER.debug(
            json.dumps({"event": "point_degraded", "lat": lat, "lng": lng, "error": str(exc)})
        )
        return _empty_result(lat, lng)

    q = yallop_q(arcv, width)
    return VisibilityResult(
        lat=lat,
        lng=lng,
        category=classify_q(q, policy),
        arcv=arcv,
        crescent_width=width,
        q=q,
        observation_time=observation,
        moon_altitude=moon.altitude,
        moon_age=moon_age,
    )


def _evaluate_row(
    provider: EphemerisProvider,
    row: Sequence[GridPoint],
    day: date,
    crescent: Crescent,
    new_moon_time: Optional[datetime],
    next_new_moon_time: Optional[datetime],
    policy: VisibilityPolicy,
) -> List[VisibilityResult]:
    return [
        compute_point_visibility(
            provider, point.lat, point.lng, day, crescent, new_moon_time, next_new_moon_time, policy
        )
        for point in row
    ]


def find_previous_new_moon(provider: EphemerisProvider, day: date) -> Optional[datetime]:
    """Most recent conjunction before the end of *day* (UTC), if any."""

    end_of_day = datetime.combine(day, datetime.min.time(), tzinfo=UTC) + timedelta(days=1)
    try:
        first = provider.search_lunar_phase(0.0, end_of_day - timedelta(days=45), 46)
        if first is None or first > end_of_day:
            return None
        second = provider.search_lunar_phase(0.0, first + timedelta(days=2), 30)
        if second is not None and second <= end_of_day:
            return second
        return first
    except Exception as exc:
        LOGGER.debug(json.dumps({"event": "new_moon_lookup_failed", "error": str(exc)}))
        return None


def find_next_new_moon(provider: EphemerisProvider, day: date) -> Optional[datetime]:
    start = datetime.combine(day, datetime.min.time(), tzinfo=UTC)
    try:
        return provider.search_lunar_phase(0.0, start, 35)
    except Exception as exc:
        LOGGER.debug(json.dumps({"event": "new_moon_lookup_failed", "error": str(exc)}))
        return None


def determine_crescent_type(provider: EphemerisProvider, instant: datetime) -> Crescent:
    """Waxing before full moon (phase below 180 degrees), waning after."""

    return Crescent.waxing if provider.moon_phase(instant) < 180.0 else Crescent.waning


def calculate_visibility_grid(
    provider: EphemerisProvider,
    day: date,
    crescent: Union[Crescent, str] = Crescent.waxing,
    resolution: float = DEFAULT_RESOLUTION,
    policy: VisibilityPolicy = RELAXED_POLICY,
    n_jobs: int = 1,
    backend: str = "loky",
) -> VisibilityGrid:
    """Classify every grid point for the evening (waxing) or morning (waning) of *day*.

    Parameters
    ----------
    provider:
        Ephemeris provider. With ``n_jobs > 1`` and a process backend it must
        be picklable.
    day:
        Civil date of the observation.
    crescent:
        :class:`Crescent` or its string value.
    resolution:
        Grid step in degrees.
    policy:
        Thresholds and sun depression to apply.
    n_jobs, backend:
        joblib parallelism for row evaluation; results keep scan order.

    Raises
    ------
    InvalidRequestError
        For a non-positive resolution or an unknown crescent direction.
    """

    crescent = _check_crescent(crescent)
    step = _check_resolution(resolution)
    if isinstance(day, datetime):
        day = day.date()
    if not isinstance(day, date):
        raise InvalidRequestError(f"day must be a date, got {type(day).__name__}")

    start_time = time.perf_counter()
    new_moon_time = find_previous_new_moon(provider, day)
    next_new_moon_time = find_next_new_moon(provider, day)

    longitudes = _axis(*LNG_RANGE, step)
    rows = [[GridPoint(lat, lng) for lng in longitudes] for lat in _axis(*LAT_RANGE, step)]
    args = (day, crescent, new_moon_time, next_new_moon_time, policy)
    if n_jobs == 1:
        row_results = [_evaluate_row(provider, row, *args) for row in rows]
    else:
        row_results = Parallel(n_jobs=n_jobs, backend=backend)(
            delayed(_evaluate_row)(provider, row, *args) for row in rows
        )
    results = tuple(result for row in row_results for result in row)

    LOGGER.info(
        json.dumps(
            {
                "event": "visibility_grid",
                "date": day.isoformat(),
                "crescent": crescent.value,
                "resolution": step,
                "policy": policy.name,
                "points": len(results),
                "failed": sum(1 for result in results if result.observation_time is None),
                "duration_ms": round((time.perf_counter() - start_time) * 1000.0, 3),
            }
        )
    )
    return VisibilityGrid(
        results=results,
        date=day,
        new_moon_time=new_moon_time,
        next_new_moon_time=next_new_moon_time,
        resolution=step,
        crescent=crescent,
    )


def local_category(grid: VisibilityGrid, lat: float, lng: float) -> VisibilityCategory:
    """Category of the grid point nearest to an observer (first wins on ties)."""

    if not grid.results:
        return VisibilityCategory.E
    nearest = min(grid.results, key=lambda result: abs(result.lat - lat) + abs(result.lng - lng))
    return nearest.category
