"""Lunar crescent visibility and Islamic month engine."""

from .astro import EphemerisError, SpiceEphemeris, load_ephemeris
from .errors import InvalidRequestError
from .hijri import ISLAMIC_MONTH_NAMES, HijriDate, resolve_hijri_date, tabular_hijri_date
from .months import (
    IslamicMonthEntry,
    find_month_by_route,
    nearest_month_route,
    to_route_slug,
    upcoming_islamic_months,
)
from .visibility import (
    Crescent,
    VisibilityCategory,
    VisibilityGrid,
    VisibilityResult,
    calculate_visibility_grid,
)

__all__ = [
    "Crescent",
    "EphemerisError",
    "HijriDate",
    "ISLAMIC_MONTH_NAMES",
    "InvalidRequestError",
    "IslamicMonthEntry",
    "SpiceEphemeris",
    "VisibilityCategory",
    "VisibilityGrid",
    "VisibilityResult",
    "calculate_visibility_grid",
    "find_month_by_route",
    "load_ephemeris",
    "nearest_month_route",
    "resolve_hijri_date",
    "tabular_hijri_date",
    "to_route_slug",
    "upcoming_islamic_months",
]
