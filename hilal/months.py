"""Islamic month sequence built from astronomical new moons."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import List, Optional, Sequence, Tuple, Union

from .errors import InvalidRequestError
from .hijri import (
    ENGLISH_GREGORIAN_MONTHS,
    ISLAMIC_MONTH_NAMES,
    UMM_AL_QURA,
    LocaleCalendar,
    resolve_hijri_date,
)
from .provider import EphemerisProvider
from .visibility import (
    DEFAULT_RESOLUTION,
    RELAXED_POLICY,
    Crescent,
    VisibilityGrid,
    VisibilityPolicy,
    calculate_visibility_grid,
)

__all__ = [
    "IslamicMonthEntry",
    "upcoming_islamic_months",
    "to_route_slug",
    "month_route",
    "find_month_by_route",
    "nearest_month",
    "nearest_month_route",
    "month_visibility_grids",
]

LOGGER = logging.getLogger(__name__)

LOOKBACK = timedelta(days=30)
NEW_MOON_SEARCH_DAYS = 35
CURSOR_ADVANCE = timedelta(days=2)
# Days after the conjunction day at which the first month is looked up, so
# the calendar has already entered the new month.
FIRST_LOOKUP_OFFSET = timedelta(days=5)
MID_MONTH_DAY = 15
MAP_DAY_LABELS = (
    "New Moon Day (Conjunction)",
    "+1 Day After New Moon",
    "+2 Days After New Moon",
)

_SLUG_SEPARATORS = re.compile(r"[' ]")
_REPEATED_HYPHENS = re.compile(r"--+")
_YEAR_PATTERN = re.compile(r"^\s*(\d+)\s*(ah)?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class IslamicMonthEntry:
    """One lunar month with the three civil dates worth mapping."""

    name: str
    year: int
    gregorian_label: str
    new_moon_time: datetime
    map_dates: Tuple[date, date, date]
    route_slug: str

    @property
    def month_index(self) -> int:
        return ISLAMIC_MONTH_NAMES.index(self.name)

    @property
    def route(self) -> str:
        return month_route(self)


def to_route_slug(name: str) -> str:
    """URL-safe slug for a month name, e.g. ``"Dhul Qi'dah"`` -> ``"Dhul-Qi-dah"``."""

    return _REPEATED_HYPHENS.sub("-", _SLUG_SEPARATORS.sub("-", name))


def month_route(entry: IslamicMonthEntry) -> str:
    return f"/{entry.year}AH/{entry.route_slug}"


def _next_month(index: int, year: int) -> Tuple[int, int]:
    index += 1
    if index >= len(ISLAMIC_MONTH_NAMES):
        return 0, year + 1
    return index, year


def upcoming_islamic_months(
    provider: EphemerisProvider,
    start: Union[date, datetime],
    count: int = 12,
    calendar: Optional[LocaleCalendar] = UMM_AL_QURA,
    tz: tzinfo = UTC,
) -> List[IslamicMonthEntry]:
    """Build *count* consecutive Islamic months beginning at or before *start*.

    Only the first conjunction is named through the calendar lookup; every
    later month advances the fixed twelve-month cycle by one, which keeps
    calendar boundary disagreements from duplicating or skipping months.
    The list is shorter than *count* if a new-moon search comes back empty.
    """

    if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
        raise InvalidRequestError(f"count must be a positive integer, got {count!r}")
    if isinstance(start, datetime):
        if start.tzinfo is None:
            raise InvalidRequestError("start datetime must be timezone-aware")
        cursor = start.astimezone(UTC)
    elif isinstance(start, date):
        cursor = datetime.combine(start, datetime.min.time(), tzinfo=UTC)
    else:
        raise InvalidRequestError(f"start must be a date, got {type(start).__name__}")
    cursor -= LOOKBACK
    search_from = cursor

    entries: List[IslamicMonthEntry] = []
    month_index: Optional[int] = None
    year = 0

    for _ in range(count):
        new_moon = provider.search_lunar_phase(0.0, cursor, NEW_MOON_SEARCH_DAYS)
        if new_moon is None:
            LOGGER.warning(
                json.dumps({"event": "new_moon_not_found", "cursor": cursor.isoformat()})
            )
            break

        local = new_moon.astimezone(tz)
        day0 = local.date()
        map_dates = (day0, day0 + timedelta(days=1), day0 + timedelta(days=2))

        if month_index is None:
            hijri = resolve_hijri_date(day0 + FIRST_LOOKUP_OFFSET, calendar)
            month_index = hijri.month_index
            year = hijri.year
            if hijri.day > MID_MONTH_DAY:
                month_index, year = _next_month(month_index, year)
        else:
            month_index, year = _next_month(month_index, year)

        name = ISLAMIC_MONTH_NAMES[month_index]
        entries.append(
            IslamicMonthEntry(
                name=name,
                year=year,
                gregorian_label=f"{ENGLISH_GREGORIAN_MONTHS[local.month - 1]} {local.year}",
                new_moon_time=new_moon,
                map_dates=map_dates,
                route_slug=to_route_slug(name),
            )
        )
        cursor = new_moon + CURSOR_ADVANCE

    LOGGER.info(
        json.dumps(
            {
                "event": "months_built",
                "search_from": search_from.isoformat(),
                "requested": count,
                "built": len(entries),
            }
        )
    )
    return entries


def find_month_by_route(
    year: Union[int, str], slug: str, months: Sequence[IslamicMonthEntry]
) -> Optional[IslamicMonthEntry]:
    """Entry matching a ``/{year}AH/{slug}`` route, or ``None``.

    *year* may be an int or a string such as ``"1447AH"``; the slug match
    ignores case.
    """

    if isinstance(year, int) and not isinstance(year, bool):
        wanted_year = year
    else:
        match = _YEAR_PATTERN.match(str(year))
        if match is None:
            raise InvalidRequestError(f"Malformed Hijri year in route: {year!r}")
        wanted_year = int(match.group(1))
    wanted_slug = slug.lower()
    for entry in months:
        if entry.year == wanted_year and entry.route_slug.lower() == wanted_slug:
            return entry
    return None


def nearest_month(
    months: Sequence[IslamicMonthEntry], now: Optional[datetime] = None
) -> IslamicMonthEntry:
    """Entry whose conjunction is closest to *now*; earlier entries win ties."""

    if not months:
        raise InvalidRequestError("months must not be empty")
    if now is None:
        now = datetime.now(UTC)
    elif now.tzinfo is None or now.utcoffset() is None:
        raise InvalidRequestError("now must be timezone-aware")
    best = months[0]
    best_distance = abs(best.new_moon_time - now)
    for entry in months[1:]:
        distance = abs(entry.new_moon_time - now)
        if distance < best_distance:
            best, best_distance = entry, distance
    return best


def nearest_month_route(
    months: Sequence[IslamicMonthEntry], now: Optional[datetime] = None
) -> str:
    return month_route(nearest_month(months, now))


def month_visibility_grids(
    provider: EphemerisProvider,
    entry: IslamicMonthEntry,
    resolution: float = DEFAULT_RESOLUTION,
    policy: VisibilityPolicy = RELAXED_POLICY,
    n_jobs: int = 1,
) -> List[VisibilityGrid]:
    """Evening (waxing) grids for the three map dates of *entry*, labelled for display."""

    month_label = f"{entry.name} {entry.year} AH"
    grids: List[VisibilityGrid] = []
    for day, day_label in zip(entry.map_dates, MAP_DAY_LABELS):
        grid = calculate_visibility_grid(
            provider, day, Crescent.waxing, resolution, policy=policy, n_jobs=n_jobs
        )
        grids.append(replace(grid, day_label=day_label, month_label=month_label))
    return grids
