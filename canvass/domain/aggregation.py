"""
Derived views over buildings and apartments.

Floors are not stored: a building with ``floorsCount = n`` has floors
``1..n``. Apartments are grouped by floor, filtered by status and ordered by
label for display. Nothing here touches the store.
"""

import re
import unicodedata
from typing import Any, Dict, Iterable, List, Tuple

from canvass.data.models import STATUS_FILTER_ALL, Apartment, ApartmentStatus, Building

_DIGITS = re.compile(r"(\d+)")


def clamp_floors(value: Any) -> int:
    """Floors count as an integer of at least 1; non-numeric input gives 1."""
    if isinstance(value, bool):
        return 1
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 1
    return max(1, number)


def floors_for(floors_count: Any) -> List[int]:
    """Derived floor list ``[1..max(1, floors_count)]``."""
    return list(range(1, clamp_floors(floors_count) + 1))


def _fold(text: str) -> str:
    # Case- and accent-insensitive comparison text ("É" sorts with "e").
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def label_sort_key(label: str) -> Tuple[Tuple[int, Any], ...]:
    """
    Sort key comparing labels the way a numeric-aware locale collation does.

    Digit runs compare by value, so ``"2" < "10"``; other runs compare
    case- and accent-insensitively. Digit runs sort before letters.
    """
    parts = []
    for chunk in _DIGITS.split((label or "").strip()):
        if not chunk:
            continue
        if chunk.isdecimal():
            parts.append((0, int(chunk)))
        else:
            parts.append((1, _fold(chunk)))
    return tuple(parts)


def sort_by_label(apartments: Iterable[Apartment]) -> List[Apartment]:
    """Apartments ordered by label, ascending; equal labels keep their input order."""
    return sorted(apartments, key=lambda a: label_sort_key(a.label))


def matches_status(apartment: Apartment, status_filter: str) -> bool:
    if not status_filter or status_filter == STATUS_FILTER_ALL:
        return True
    return (apartment.status or ApartmentStatus.NONE.value) == status_filter


def apartments_on_floor(
    apartments: Iterable[Apartment],
    floor: int,
    status_filter: str = STATUS_FILTER_ALL
) -> List[Apartment]:
    """Apartments of one floor that match the status filter, sorted by label."""
    selected = [
        a for a in apartments
        if _same_floor(a.floor, floor) and matches_status(a, status_filter)
    ]
    return sort_by_label(selected)


def _same_floor(stored: Any, floor: int) -> bool:
    if stored == floor:
        return True
    try:
        return int(stored) == floor
    except (TypeError, ValueError):
        return False


def group_by_floor(
    building: Building,
    apartments: Iterable[Apartment],
    status_filter: str = STATUS_FILTER_ALL
) -> Dict[int, List[Apartment]]:
    """
    Ordered mapping of every derived floor to its filtered, sorted apartments.

    Apartments stored on a floor above the current floors count are not shown.
    """
    apartments = list(apartments)
    return {
        floor: apartments_on_floor(apartments, floor, status_filter)
        for floor in floors_for(building.floors_count)
    }
