"""Pin-type filter selection with a ceiling on simultaneously active types.

Every function here is pure: it takes a ``FilterSelection`` and returns a new
one alongside an optional error. Nothing raises; a refused change comes back
as the unchanged selection plus the error that explains it.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from .config import FILTER_CEILING
from .errors import ConsoleError, LimitExceeded, ValidationError
from .schemas import FACILITY_TYPES, HAZARD_TYPES, PinFilters

HAZARD = "hazard"
FACILITY = "facility"

HAZARD_KEYS = {
    "road_crash": HAZARD_TYPES[0].value,
    "fire": HAZARD_TYPES[1].value,
    "medical_emergency": HAZARD_TYPES[2].value,
    "flooding": HAZARD_TYPES[3].value,
    "volcanic_activity": HAZARD_TYPES[4].value,
    "landslide": HAZARD_TYPES[5].value,
    "earthquake": HAZARD_TYPES[6].value,
    "civil_disturbance": HAZARD_TYPES[7].value,
    "armed_conflict": HAZARD_TYPES[8].value,
    "infectious_disease": HAZARD_TYPES[9].value,
    # Legacy/unclassified hazards
    "others": "Others",
}

FACILITY_KEYS = {
    "evacuation_centers": FACILITY_TYPES[0].value,
    "health_facilities": FACILITY_TYPES[1].value,
    "police_stations": FACILITY_TYPES[2].value,
    "fire_stations": FACILITY_TYPES[3].value,
    "government_offices": FACILITY_TYPES[4].value,
}

GROUP_KEYS = {HAZARD: HAZARD_KEYS, FACILITY: FACILITY_KEYS}


def _other(group: str) -> str:
    return FACILITY if group == HAZARD else HAZARD


@dataclass(frozen=True)
class FilterSelection:
    hazard: dict[str, bool] = field(default_factory=lambda: dict.fromkeys(HAZARD_KEYS, False))
    facility: dict[str, bool] = field(default_factory=lambda: dict.fromkeys(FACILITY_KEYS, False))

    def group(self, name: str) -> dict[str, bool]:
        return self.hazard if name == HAZARD else self.facility

    def count(self, name: Optional[str] = None) -> int:
        if name is not None:
            return sum(1 for on in self.group(name).values() if on)
        return self.count(HAZARD) + self.count(FACILITY)

    def active_types(self) -> list[str]:
        types = [HAZARD_KEYS[k] for k, on in self.hazard.items() if on]
        types += [FACILITY_KEYS[k] for k, on in self.facility.items() if on]
        return types

    def with_group(self, name: str, values: dict[str, bool]) -> "FilterSelection":
        if name == HAZARD:
            return FilterSelection(hazard=dict(values), facility=dict(self.facility))
        return FilterSelection(hazard=dict(self.hazard), facility=dict(values))

    def as_dict(self) -> dict:
        return {HAZARD: dict(self.hazard), FACILITY: dict(self.facility), "active": self.count()}


def _unknown(group: str, key: Optional[str] = None) -> Optional[ConsoleError]:
    if group not in GROUP_KEYS:
        return ValidationError(f"Unknown filter group: {group}")
    if key is not None and key not in GROUP_KEYS[group]:
        return ValidationError(f"Unknown {group} filter: {key}")
    return None


def _limit_exceeded() -> LimitExceeded:
    return LimitExceeded(f"You can only select up to {FILTER_CEILING} pin types at a time")


def toggle(selection: FilterSelection, group: str, key: str) -> tuple[FilterSelection, Optional[ConsoleError]]:
    error = _unknown(group, key)
    if error is not None:
        return selection, error

    values = dict(selection.group(group))
    if values[key]:
        values[key] = False
        return selection.with_group(group, values), None

    if selection.count() >= FILTER_CEILING:
        return selection, _limit_exceeded()
    values[key] = True
    return selection.with_group(group, values), None


def select_all(selection: FilterSelection, group: str, checked: bool) -> tuple[FilterSelection, Optional[ConsoleError]]:
    error = _unknown(group)
    if error is not None:
        return selection, error

    keys = GROUP_KEYS[group]
    # All or nothing: never a partial selection
    if checked and len(keys) + selection.count(_other(group)) > FILTER_CEILING:
        return selection, _limit_exceeded()
    return selection.with_group(group, dict.fromkeys(keys, checked)), None


def build_filters(
    selection: FilterSelection,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search_query: Optional[str] = None,
) -> PinFilters:
    return PinFilters(
        types=selection.active_types(),
        date_from=date_from,
        date_to=date_to,
        search_query=(search_query or "").strip() or None,
    )


def quick_range(period: str, today: date, tz: tzinfo = timezone.utc) -> tuple[datetime, datetime]:
    if period == "week":
        # Weeks start on Sunday
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        end = start + timedelta(days=6)
    elif period == "month":
        start = today.replace(day=1)
        end = today.replace(day=calendar.monthrange(today.year, today.month)[1])
    elif period == "year":
        start = date(today.year, 1, 1)
        end = date(today.year, 12, 31)
    else:
        raise ValueError(f"Unknown period: {period}")
    return (
        datetime.combine(start, time.min, tzinfo=tz),
        datetime.combine(end, time.max, tzinfo=tz),
    )
