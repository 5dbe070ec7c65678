"""SPICE/ERFA implementation of the ephemeris provider."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

import erfa
import numpy as np
import spiceypy as spice

from .provider import Body, Direction, HorizontalPosition, Illumination

__all__ = [
    "EphemerisError",
    "SpiceEphemeris",
    "load_ephemeris",
    "loaded_files",
    "RISE_SET_ALTITUDES",
]

LOGGER = logging.getLogger(__name__)

# Geometric altitude of the body's centre when its upper limb touches the
# horizon under standard refraction (34') for a mean semi-diameter.
RISE_SET_ALTITUDES: Dict[Body, float] = {
    Body.sun: -0.833,
    Body.moon: -0.825,
}

SPICE_NAMES: Dict[Body, str] = {
    Body.sun: "SUN",
    Body.moon: "MOON",
}

AU_KM = 149_597_870.7
EARTH_EQUATORIAL_RADIUS_KM = 6378.137  # WGS84 equatorial radius in kilometers.
EARTH_FLATTENING = 1.0 / 298.257223563  # WGS84 flattening.

SEARCH_STEP = timedelta(minutes=10)
PHASE_SEARCH_STEP = timedelta(hours=6)

_LOADED_FILES: Optional[List[str]] = None
_LOAD_LOCK = Lock()


class EphemerisError(RuntimeError):
    """Raised when ephemeris loading or computation fails."""


@dataclass(frozen=True)
class _TimeScales:
    """Container for time-scale representations of a UTC instant."""

    utc: Tuple[float, float]
    ut1: Tuple[float, float]
    tt: Tuple[float, float]
    et: float


@dataclass(frozen=True)
class _Site:
    """Observer position and local horizon basis in ITRF."""

    vector: np.ndarray
    up: np.ndarray
    east: np.ndarray
    north: np.ndarray


def load_ephemeris(source: str) -> List[str]:
    """Load SPK kernels from *source* using :mod:`spiceypy`.

    Parameters
    ----------
    source:
        A ``.bsp`` file, or a directory containing one or more ``.bsp`` files.

    Returns
    -------
    list[str]
        Sorted list of loaded kernel file names.

    Raises
    ------
    EphemerisError
        If the path is missing or holds no ``.bsp`` files.
    """

    global _LOADED_FILES

    if _LOADED_FILES is not None:
        return _LOADED_FILES

    path = Path(source).expanduser()
    if path.is_file():
        bsp_files = [path] if path.suffix.lower() == ".bsp" else []
    elif path.is_dir():
        bsp_files = sorted(
            file for file in path.iterdir() if file.is_file() and file.suffix.lower() == ".bsp"
        )
    else:
        raise EphemerisError(f"Ephemeris path not found: {path}")
    if not bsp_files:
        raise EphemerisError(f"No .bsp ephemeris files found at: {path}")

    with _LOAD_LOCK:
        if _LOADED_FILES is not None:
            return _LOADED_FILES

        loaded: List[str] = []
        try:
            for bsp_file in bsp_files:
                spice.furnsh(str(bsp_file))
                loaded.append(bsp_file.name)
        except Exception as exc:  # pragma: no cover - defensive path.
            spice.kclear()
            raise EphemerisError(f"Failed to load ephemeris file '{bsp_file}': {exc}") from exc

        _LOADED_FILES = loaded
        LOGGER.info(json.dumps({"event": "ephemeris_loaded", "files": loaded}))
        return loaded


def loaded_files() -> List[str]:
    """Kernel files loaded in this process, empty when none are."""

    return list(_LOADED_FILES or [])


def _datetime_to_timescales(dt: datetime) -> _TimeScales:
    """Convert a timezone-aware UTC datetime into multiple time scales."""

    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware (UTC)")
    dt_utc = dt.astimezone(UTC)
    utc1, utc2 = erfa.dtf2d(
        "UTC",
        dt_utc.year,
        dt_utc.month,
        dt_utc.day,
        dt_utc.hour,
        dt_utc.minute,
        dt_utc.second + dt_utc.microsecond / 1_000_000,
    )
    tai1, tai2 = erfa.utctai(utc1, utc2)
    tt1, tt2 = erfa.taitt(tai1, tai2)
    ut11, ut12 = erfa.utcut1(utc1, utc2, 0.0)
    et = (tt1 - erfa.DJ00) * erfa.DAYSEC + tt2 * erfa.DAYSEC
    return _TimeScales(utc=(utc1, utc2), ut1=(ut11, ut12), tt=(tt1, tt2), et=et)


@lru_cache(maxsize=4096)
def _site(lat: float, lng: float) -> _Site:
    """Geocentric observer vector (km) and east/north/up unit vectors in ITRF."""

    lat_rad = math.radians(lat)
    lon_rad = math.radians(lng)
    vector = np.array(
        spice.georec(lon_rad, lat_rad, 0.0, EARTH_EQUATORIAL_RADIUS_KM, EARTH_FLATTENING),
        dtype=float,
    )
    sin_lat, cos_lat = math.sin(lat_rad), math.cos(lat_rad)
    sin_lon, cos_lon = math.sin(lon_rad), math.cos(lon_rad)
    up = np.array([cos_lat * cos_lon, cos_lat * sin_lon, sin_lat])
    east = np.array([-sin_lon, cos_lon, 0.0])
    north = np.array([-sin_lat * cos_lon, -sin_lat * sin_lon, cos_lat])
    return _Site(vector=vector, up=up, east=east, north=north)


def _refraction_degrees(altitude: float) -> float:
    """Saemundsson refraction for a true altitude at standard P/T, in degrees."""

    # Held constant below -1 degree so the correction never blows up.
    h = max(altitude, -1.0)
    return (1.02 / math.tan(math.radians(h + 10.3 / (h + 5.11)))) / 60.0


def _wrap180(angle: float) -> float:
    return (angle + 180.0) % 360.0 - 180.0


def _refine_crossing(
    func: Callable[[datetime], float],
    start_dt: datetime,
    end_dt: datetime,
    max_iterations: int = 40,
) -> datetime:
    """Refine the zero crossing of *func* between *start_dt* and *end_dt* via binary search."""

    low_dt, low_val = start_dt, func(start_dt)
    high_dt = end_dt
    if low_val == 0:
        return start_dt
    for _ in range(max_iterations):
        if (high_dt - low_dt) <= timedelta(seconds=1):
            break
        mid_dt = low_dt + (high_dt - low_dt) / 2
        mid_val = func(mid_dt)
        if mid_val == 0:
            return mid_dt
        if low_val * mid_val < 0:
            high_dt = mid_dt
        else:
            low_dt, low_val = mid_dt, mid_val
    return low_dt + (high_dt - low_dt) / 2


def _search_crossing(
    func: Callable[[datetime], float],
    direction: Direction,
    start: datetime,
    window_days: float,
    step: timedelta,
) -> Optional[datetime]:
    """Find the first crossing of *func* through zero in *direction*.

    The window is sampled at *step* and the first bracketing pair is refined.
    Returns ``None`` when no crossing in the requested direction occurs.
    """

    end = start + timedelta(days=window_days)
    prev_dt = start
    prev_val = func(prev_dt)
    while prev_dt < end:
        curr_dt = min(prev_dt + step, end)
        curr_val = func(curr_dt)
        if direction is Direction.rising and prev_val < 0 <= curr_val:
            return _refine_crossing(func, prev_dt, curr_dt)
        if direction is Direction.setting and prev_val >= 0 > curr_val:
            return _refine_crossing(func, prev_dt, curr_dt)
        prev_dt, prev_val = curr_dt, curr_val
    return None


class SpiceEphemeris:
    """Ephemeris provider backed by JPL DE kernels and ERFA Earth orientation.

    Instances only remember where their kernels live, so they can be shipped
    to worker processes which then load the kernels on first use.
    """

    def __init__(self, source: Optional[str] = None) -> None:
        self.source = source

    def _ensure_loaded(self) -> None:
        if _LOADED_FILES is not None:
            return
        if self.source is None:
            raise EphemerisError("Ephemeris kernels have not been loaded")
        load_ephemeris(self.source)

    def _geocentric_vector(self, body: Body, et: float, frame: str = "J2000") -> np.ndarray:
        """Apparent geocentric position of *body* in km."""

        vector, _ = spice.spkpos(SPICE_NAMES[Body(body)], et, frame, "LT+S", "EARTH")
        return np.array(vector, dtype=float)

    def _geometric_altitude_azimuth(
        self, body: Body, instant: datetime, lat: float, lng: float
    ) -> Tuple[float, float]:
        self._ensure_loaded()
        site = _site(lat, lng)
        times = _datetime_to_timescales(instant)
        rotation = np.array(erfa.c2t06a(*times.tt, *times.ut1, 0.0, 0.0), dtype=float)
        body_itrf = rotation @ self._geocentric_vector(body, times.et)
        topocentric = body_itrf - site.vector
        norm = np.linalg.norm(topocentric)
        if norm == 0:
            raise EphemerisError("Degenerate topocentric vector encountered")
        unit = topocentric / norm
        altitude = math.degrees(math.asin(float(np.clip(np.dot(unit, site.up), -1.0, 1.0))))
        azimuth = math.degrees(math.atan2(float(np.dot(unit, site.east)), float(np.dot(unit, site.north))))
        return altitude, azimuth % 360.0

    def topocentric_position(
        self, body: Body, instant: datetime, lat: float, lng: float
    ) -> HorizontalPosition:
        altitude, azimuth = self._geometric_altitude_azimuth(body, instant, lat, lng)
        return HorizontalPosition(altitude=altitude + _refraction_degrees(altitude), azimuth=azimuth)

    def search_altitude(
        self,
        body: Body,
        lat: float,
        lng: float,
        direction: Direction,
        start: datetime,
        window_days: float,
        altitude: float,
    ) -> Optional[datetime]:
        def offset(dt: datetime) -> float:
            return self._geometric_altitude_azimuth(body, dt, lat, lng)[0] - altitude

        return _search_crossing(offset, Direction(direction), start, window_days, SEARCH_STEP)

    def search_rise_set(
        self,
        body: Body,
        lat: float,
        lng: float,
        direction: Direction,
        start: datetime,
        window_days: float,
    ) -> Optional[datetime]:
        return self.search_altitude(
            body, lat, lng, direction, start, window_days, RISE_SET_ALTITUDES[Body(body)]
        )

    def moon_phase(self, instant: datetime) -> float:
        self._ensure_loaded()
        et = _datetime_to_timescales(instant).et
        moon = self._geocentric_vector(Body.moon, et, "ECLIPJ2000")
        sun = self._geocentric_vector(Body.sun, et, "ECLIPJ2000")
        longitude_moon = math.degrees(math.atan2(moon[1], moon[0]))
        longitude_sun = math.degrees(math.atan2(sun[1], sun[0]))
        return (longitude_moon - longitude_sun) % 360.0

    def search_lunar_phase(
        self, phase: float, start: datetime, window_days: float
    ) -> Optional[datetime]:
        # The phase only ever increases, so the target is met on an upward
        # crossing; the wrap at +/-180 is always a downward jump.
        def offset(dt: datetime) -> float:
            return _wrap180(self.moon_phase(dt) - phase)

        return _search_crossing(offset, Direction.rising, start, window_days, PHASE_SEARCH_STEP)

    def angular_separation(self, body_a: Body, body_b: Body, instant: datetime) -> float:
        self._ensure_loaded()
        et = _datetime_to_timescales(instant).et
        return math.degrees(
            spice.vsep(self._geocentric_vector(body_a, et), self._geocentric_vector(body_b, et))
        )

    def illumination(self, body: Body, instant: datetime) -> Illumination:
        self._ensure_loaded()
        et = _datetime_to_timescales(instant).et
        target = self._geocentric_vector(body, et)
        distance_au = float(np.linalg.norm(target)) / AU_KM
        if Body(body) is Body.sun:
            return Illumination(distance_au=distance_au, fraction=1.0)
        sun = self._geocentric_vector(Body.sun, et)
        phase_angle = spice.vsep(sun - target, -target)
        return Illumination(distance_au=distance_au, fraction=(1.0 + math.cos(phase_angle)) / 2.0)
