"""Ephemeris provider interface consumed by the visibility and month engines."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol


class Body(str, Enum):
    """Bodies the engines ask the ephemeris about."""

    sun = "sun"
    moon = "moon"


class Direction(str, Enum):
    """Direction of a horizon or altitude crossing."""

    rising = "rising"
    setting = "setting"


@dataclass(frozen=True)
class HorizontalPosition:
    """Topocentric horizontal coordinates in degrees."""

    altitude: float
    azimuth: float


@dataclass(frozen=True)
class Illumination:
    """Geocentric distance (AU) and illuminated fraction of a body."""

    distance_au: float
    fraction: float


class EphemerisProvider(Protocol):
    """Astronomical services the engines depend on.

    All instants are timezone-aware UTC datetimes. Every search is bounded by
    ``window_days`` and returns ``None`` when no event occurs in the window.
    """

    def topocentric_position(
        self, body: Body, instant: datetime, lat: float, lng: float
    ) -> HorizontalPosition:
        """Refraction-corrected altitude/azimuth of *body* for an observer."""

    def search_rise_set(
        self,
        body: Body,
        lat: float,
        lng: float,
        direction: Direction,
        start: datetime,
        window_days: float,
    ) -> Optional[datetime]:
        """First rise or set of the body's upper limb at or after *start*."""

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
        """First instant at or after *start* the body crosses *altitude*."""

    def search_lunar_phase(
        self, phase: float, start: datetime, window_days: float
    ) -> Optional[datetime]:
        """First instant at or after *start* the lunar phase equals *phase*."""

    def moon_phase(self, instant: datetime) -> float:
        """Moon-Sun ecliptic longitude difference in ``[0, 360)`` degrees."""

    def angular_separation(self, body_a: Body, body_b: Body, instant: datetime) -> float:
        """Geocentric angular separation between two bodies in degrees."""

    def illumination(self, body: Body, instant: datetime) -> Illumination:
        """Geocentric distance and illuminated fraction of *body*."""
