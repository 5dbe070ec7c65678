from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import erfa
import numpy as np
import pytest
import spiceypy as spice

import hilal.astro as astro
from hilal.provider import Body, Direction, HorizontalPosition, Illumination

AU_KM = 149597870.700
STEP_HOURS = 6
KERNEL_START = datetime(2024, 12, 1, tzinfo=UTC)
KERNEL_END = datetime(2026, 2, 1, tzinfo=UTC)

SYNODIC_MONTH = timedelta(days=29.530588853)
NEW_MOON_EPOCH = datetime(2000, 1, 6, 18, 14, tzinfo=UTC)

# Published conjunction instants for 2025 and the first of 2026 (UTC).
NEW_MOONS_2025 = [
    datetime(2025, 1, 29, 12, 36, tzinfo=UTC),
    datetime(2025, 2, 28, 0, 45, tzinfo=UTC),
    datetime(2025, 3, 29, 10, 58, tzinfo=UTC),
    datetime(2025, 4, 27, 19, 31, tzinfo=UTC),
    datetime(2025, 5, 27, 3, 2, tzinfo=UTC),
    datetime(2025, 6, 25, 10, 31, tzinfo=UTC),
    datetime(2025, 7, 24, 19, 11, tzinfo=UTC),
    datetime(2025, 8, 23, 6, 6, tzinfo=UTC),
    datetime(2025, 9, 21, 19, 54, tzinfo=UTC),
    datetime(2025, 10, 21, 12, 25, tzinfo=UTC),
    datetime(2025, 11, 20, 6, 47, tzinfo=UTC),
    datetime(2025, 12, 20, 1, 43, tzinfo=UTC),
    datetime(2026, 1, 18, 19, 52, tzinfo=UTC),
]


# ---------------------------------------------------------------------------
# Fake ephemeris for the calendar and visibility engines
# ---------------------------------------------------------------------------


class FakeEphemeris:
    """Deterministic stand-in for the ephemeris provider.

    Sunsets/sunrises fall six hours after the search start. The sun reaches
    any depression five minutes after sunset, or five minutes before the end
    of a rising search window, and the Moon's altitude falls off with
    latitude. Points poleward of ``polar_limit`` have no sunset; longitudes
    listed in ``failing_lngs`` raise from every position lookup.
    """

    def __init__(
        self,
        new_moons: Optional[Sequence[datetime]] = None,
        polar_limit: float = 60.0,
        failing_lngs: Iterable[float] = (),
        moon_altitude=None,
        elongation: float = 12.0,
        moon_distance_au: float = 0.00257,
    ) -> None:
        self.new_moons = list(new_moons) if new_moons is not None else None
        self.polar_limit = polar_limit
        self.failing_lngs = set(failing_lngs)
        self.moon_altitude = moon_altitude or (lambda lat, lng: 10.0 - abs(lat) / 5.0)
        self.elongation = elongation
        self.moon_distance_au = moon_distance_au
        self.phase_searches: List[datetime] = []

    def _new_moon_at_or_after(self, start: datetime) -> datetime:
        if self.new_moons is None:
            cycles = (start - NEW_MOON_EPOCH) / SYNODIC_MONTH
            index = int(np.ceil(cycles))
            return NEW_MOON_EPOCH + index * SYNODIC_MONTH
        for new_moon in self.new_moons:
            if new_moon >= start:
                return new_moon
        return datetime.max.replace(tzinfo=UTC)

    def search_lunar_phase(self, phase, start, window_days):
        self.phase_searches.append(start)
        found = self._new_moon_at_or_after(start)
        if found > start + timedelta(days=window_days):
            return None
        return found

    def moon_phase(self, instant):
        previous = self._new_moon_at_or_after(instant - SYNODIC_MONTH)
        if previous > instant:
            previous -= SYNODIC_MONTH
        return ((instant - previous) / SYNODIC_MONTH * 360.0) % 360.0

    def search_rise_set(self, body, lat, lng, direction, start, window_days):
        if abs(lat) > self.polar_limit:
            return None
        return start + timedelta(hours=6)

    def search_altitude(self, body, lat, lng, direction, start, window_days, altitude):
        if Direction(direction) is Direction.setting:
            return start + timedelta(minutes=5)
        return start + timedelta(days=window_days) - timedelta(minutes=5)

    def topocentric_position(self, body, instant, lat, lng):
        if lng in self.failing_lngs:
            raise RuntimeError(f"ephemeris failure at lng={lng}")
        if Body(body) is Body.sun:
            return HorizontalPosition(altitude=-1.0, azimuth=270.0)
        return HorizontalPosition(altitude=self.moon_altitude(lat, lng), azimuth=265.0)

    def angular_separation(self, body_a, body_b, instant):
        return self.elongation

    def illumination(self, body, instant):
        return Illumination(distance_au=self.moon_distance_au, fraction=0.02)


class FakeCalendar:
    """Locale calendar answering a fixed value and recording the dates asked."""

    def __init__(self, answer) -> None:
        self.answer = answer
        self.calls: List[date] = []

    def hijri_date(self, civil):
        self.calls.append(civil)
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer


@pytest.fixture
def fake_provider() -> FakeEphemeris:
    return FakeEphemeris(new_moons=NEW_MOONS_2025)


@pytest.fixture
def periodic_provider() -> FakeEphemeris:
    return FakeEphemeris()


# ---------------------------------------------------------------------------
# Synthetic SPK kernel built from ERFA
# ---------------------------------------------------------------------------


def _datetime_to_tt(dt: datetime) -> tuple[float, float]:
    utc1, utc2 = erfa.dtf2d(
        "UTC",
        dt.year,
        dt.month,
        dt.day,
        dt.hour,
        dt.minute,
        dt.second + dt.microsecond / 1_000_000,
    )
    tai1, tai2 = erfa.utctai(utc1, utc2)
    return erfa.taitt(tai1, tai2)


def _datetime_to_et(dt: datetime) -> float:
    tt1, tt2 = _datetime_to_tt(dt)
    return (tt1 - erfa.DJ00) * erfa.DAYSEC + tt2 * erfa.DAYSEC


def _to_km_state(pv) -> np.ndarray:
    pos_au = np.array(pv["p"], dtype=float)
    vel_au_day = np.array(pv["v"], dtype=float)
    return np.concatenate([pos_au * AU_KM, vel_au_day * (AU_KM / erfa.DAYSEC)])


def _states(dt: datetime) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Sun and Moon relative to Earth, Earth relative to the barycentre."""

    tt1, tt2 = _datetime_to_tt(dt)
    pvh, pvb = erfa.epv00(tt1, tt2)
    sun_state = -_to_km_state(pvh)
    earth_state = _to_km_state(pvb)
    moon_state = _to_km_state(erfa.moon98(tt1, tt2))
    return sun_state, earth_state, moon_state


def _generate_test_kernel(output: Path) -> None:
    if output.exists():
        return
    step = timedelta(hours=STEP_HOURS)
    sun_states: list[np.ndarray] = []
    earth_states: list[np.ndarray] = []
    moon_states: list[np.ndarray] = []
    ets: list[float] = []
    current = KERNEL_START
    while current <= KERNEL_END:
        sun_state, earth_state, moon_state = _states(current)
        sun_states.append(sun_state)
        earth_states.append(earth_state)
        moon_states.append(moon_state)
        ets.append(_datetime_to_et(current))
        current += step
    step_seconds = ets[1] - ets[0]
    segments = (
        (10, 399, "SUNTEST", sun_states),
        (399, 0, "EARTHTEST", earth_states),
        (301, 399, "MOONTEST", moon_states),
    )
    handle = spice.spkopn(str(output), "HILALTEST", 0)
    try:
        for body, center, segment_id, states in segments:
            spice.spkw08(
                handle,
                body,
                center,
                "J2000",
                ets[0],
                ets[-1],
                segment_id,
                7,
                len(ets),
                np.array(states, dtype=float),
                ets[0],
                step_seconds,
            )
    finally:
        spice.spkcls(handle)


@pytest.fixture(scope="session")
def kernel_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    directory = tmp_path_factory.mktemp("kernels")
    _generate_test_kernel(directory / "hilal_test.bsp")
    return directory


@pytest.fixture(scope="session")
def spice_provider(kernel_dir: Path) -> Iterable[astro.SpiceEphemeris]:
    spice.kclear()
    astro._LOADED_FILES = None  # type: ignore[attr-defined]
    astro.load_ephemeris(str(kernel_dir))
    yield astro.SpiceEphemeris(str(kernel_dir))
    spice.kclear()
    astro._LOADED_FILES = None  # type: ignore[attr-defined]
