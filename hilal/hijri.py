"""Hijri date resolution: Umm al-Qura lookups with a tabular fallback."""

from __future__ import annotations

import json
import logging
import math
import re
import unicodedata
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Pattern, Protocol, Tuple

from hijridate import Gregorian

__all__ = [
    "ISLAMIC_MONTH_NAMES",
    "HijriDate",
    "LocaleCalendar",
    "UmmAlQuraCalendar",
    "UMM_AL_QURA",
    "normalize_month_name",
    "tabular_hijri_date",
    "resolve_hijri_date",
]

LOGGER = logging.getLogger(__name__)

ISLAMIC_MONTH_NAMES: Tuple[str, ...] = (
    "Muharram",
    "Safar",
    "Rabi' al-Awwal",
    "Rabi' al-Thani",
    "Jumada al-Ula",
    "Jumada al-Thani",
    "Rajab",
    "Sha'ban",
    "Ramadan",
    "Shawwal",
    "Dhul Qi'dah",
    "Dhul Hijjah",
)

ENGLISH_GREGORIAN_MONTHS: Tuple[str, ...] = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)
GREGORIAN_MONTH_NAMES = frozenset(name.lower() for name in ENGLISH_GREGORIAN_MONTHS)

# Order matters: the second-half Rabi'/Jumada rules must run before the
# generic ones because both months of each pair share a stem.
_MONTH_RULES: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"muharram"), "Muharram"),
    (re.compile(r"safar"), "Safar"),
    (re.compile(r"rabi.*(ii|2|thani|akhir)"), "Rabi' al-Thani"),
    (re.compile(r"rabi"), "Rabi' al-Awwal"),
    (re.compile(r"jumad.*(ii|2|thani|akhir)"), "Jumada al-Thani"),
    (re.compile(r"jumad"), "Jumada al-Ula"),
    (re.compile(r"rajab"), "Rajab"),
    (re.compile(r"shab|sha'b"), "Sha'ban"),
    (re.compile(r"ramad"), "Ramadan"),
    (re.compile(r"shaww"), "Shawwal"),
    (re.compile(r"dhu.*hijj"), "Dhul Hijjah"),
    (re.compile(r"dhu.*q"), "Dhul Qi'dah"),
]

_STRIPPED_MARKS = re.compile("[\u0300-\u036f\u02bb\u02bc\u2018\u2019]")


@dataclass(frozen=True)
class HijriDate:
    """A Hijri calendar date with a canonical month name."""

    month_name: str
    year: int
    day: int

    @property
    def month_index(self) -> int:
        return ISLAMIC_MONTH_NAMES.index(self.month_name)


class LocaleCalendar(Protocol):
    """A calendar service answering ``(month name, year, day)`` for a civil date."""

    def hijri_date(self, civil: date) -> Optional[Tuple[str, int, int]]:
        ...


class UmmAlQuraCalendar:
    """Umm al-Qura calendar lookups through :mod:`hijridate`."""

    language = "en"

    def hijri_date(self, civil: date) -> Optional[Tuple[str, int, int]]:
        hijri = Gregorian(civil.year, civil.month, civil.day).to_hijri()
        return hijri.month_name(self.language), hijri.year, hijri.day


UMM_AL_QURA = UmmAlQuraCalendar()


def _normalize_text(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return _STRIPPED_MARKS.sub("", decomposed).replace("-", " ").lower().strip()


def normalize_month_name(text: str) -> Optional[str]:
    """Map a calendar month label to one of :data:`ISLAMIC_MONTH_NAMES`.

    Returns ``None`` for empty input, Gregorian month names (a calendar
    service that silently fell back to Gregorian) and unrecognised labels.
    """

    normalized = _normalize_text(text or "")
    if not normalized or normalized in GREGORIAN_MONTH_NAMES:
        return None
    for pattern, name in _MONTH_RULES:
        if pattern.search(normalized):
            return name
    return None


def _julian_day(year: int, month: int, day: int) -> float:
    """Julian Day at 0h UT of a civil date (Meeus, Astronomical Algorithms ch. 7)."""

    gregorian = (year, month, day) >= (1582, 10, 15)
    # January and February count as months 13 and 14 of the previous year.
    if month <= 2:
        year -= 1
        month += 12
    correction = 0
    if gregorian:
        century = year // 100
        correction = 2 - century + century // 4
    return (
        math.floor(365.25 * (year + 4716))
        + math.floor(30.6001 * (month + 1))
        + day
        + correction
        - 1524.5
    )


def tabular_hijri_date(civil: date) -> HijriDate:
    """Tabular (Kuwaiti) Hijri date for a Gregorian civil date.

    Pure integer arithmetic on the Julian Day, accurate to about a day
    against the sighted calendar.
    """

    jd = _julian_day(civil.year, civil.month, civil.day)
    l = math.floor(jd - 1948439.5) + 10632
    n = (l - 1) // 10631
    l = l - 10631 * n + 354
    j = ((10985 - l) // 5316) * ((50 * l) // 17719) + (l // 5670) * ((43 * l) // 15238)
    l = l - ((30 - j) // 15) * ((17719 * j) // 50) - (j // 16) * ((15238 * j) // 43) + 29
    month = (24 * l) // 709
    day = l - (709 * month) // 24
    year = 30 * n + j - 30
    month_index = max(0, min(11, month - 1))
    return HijriDate(month_name=ISLAMIC_MONTH_NAMES[month_index], year=year, day=day)


def resolve_hijri_date(
    civil: date, calendar: Optional[LocaleCalendar] = UMM_AL_QURA
) -> HijriDate:
    """Best-effort Hijri date, preferring *calendar* and never raising."""

    if calendar is None:
        return tabular_hijri_date(civil)
    try:
        answer = calendar.hijri_date(civil)
    except Exception as exc:
        LOGGER.debug(
            json.dumps({"event": "hijri_fallback", "date": civil.isoformat(), "reason": str(exc)})
        )
        return tabular_hijri_date(civil)
    if answer is None:
        return tabular_hijri_date(civil)

    try:
        label, raw_year, raw_day = answer
        year, day = int(raw_year), int(raw_day)
    except (TypeError, ValueError):
        name = None
    else:
        name = normalize_month_name(str(label))
    if name is None or year <= 0 or not 1 <= day <= 30:
        LOGGER.debug(
            json.dumps(
                {"event": "hijri_fallback", "date": civil.isoformat(), "reason": f"unusable answer {answer!r}"}
            )
        )
        return tabular_hijri_date(civil)
    return HijriDate(month_name=name, year=year, day=day)
