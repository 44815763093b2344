"""
Daily visit export.

One CSV row per visit in the window, enriched with what the referenced
building and apartment look like at export time. A building or apartment
deleted since the visit leaves its columns empty; the row is still emitted.
"""

from dataclasses import astuple, dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from canvass.config.logging_config import get_logger
from canvass.data.base_store import BaseEntityStore
from canvass.data.models import Apartment, Building, Visit, format_timestamp
from canvass.data.paths import apartment_path, building_path
from canvass.domain.visits import VisitLedger
from canvass.utils.error_handling import ExportError, NotFoundError

logger = get_logger(__name__)

EXPORT_COLUMNS = (
    "timestamp",
    "building_id",
    "building_address",
    "apartment_id",
    "floor",
    "apartment_label",
    "status",
    "notes",
)

_NEEDS_QUOTING = (",", '"', "\n", "\r")


def csv_escape(value: Any) -> str:
    """
    Escape one CSV field.

    Interior quotes are doubled first; the field is then wrapped in quotes if
    it contains a comma, a quote or a line break.
    """
    if value is None:
        return ""
    text = str(value)
    escaped = text.replace('"', '""')
    if any(char in text for char in _NEEDS_QUOTING):
        return f'"{escaped}"'
    return escaped


@dataclass(frozen=True)
class ExportRow:
    """One exported visit, every field already a string."""

    timestamp: str = ""
    building_id: str = ""
    building_address: str = ""
    apartment_id: str = ""
    floor: str = ""
    apartment_label: str = ""
    status: str = ""
    notes: str = ""

    def values(self) -> Tuple[str, ...]:
        return astuple(self)


def render_csv(rows: Iterable[ExportRow]) -> str:
    """Header line plus one line per row, joined with ``\\n``."""
    lines = [",".join(EXPORT_COLUMNS)]
    for row in rows:
        lines.append(",".join(csv_escape(value) for value in row.values()))
    return "\n".join(lines)


def export_filename(day: date, prefix: str = "visits") -> str:
    return f"{prefix}_{day.isoformat()}.csv"


def write_export(path: Path, text: str) -> Path:
    """
    Write the rendered report, creating its directory if needed.

    Raises:
        ExportError: If the file cannot be written
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise ExportError(f"Cannot write export to {path}: {e}", path=path, cause=e) from e
    return path


class VisitExporter:
    """Builds the visit report by joining ledger rows with store lookups."""

    def __init__(self, store: BaseEntityStore, ledger: VisitLedger):
        self.store = store
        self.ledger = ledger

    async def build_rows(self, user_id: str, start: datetime, end: datetime) -> List[ExportRow]:
        """
        Rows for every visit of ``user_id`` in ``[start, end]``, oldest first.

        Each building and apartment is read at most once per export.
        """
        visits = await self.ledger.list_visits_in_window(user_id, start, end)
        buildings: Dict[str, Optional[Building]] = {}
        apartments: Dict[Tuple[str, str], Optional[Apartment]] = {}

        rows = []
        for visit in visits:
            building = await self._lookup_building(visit.building_id, buildings)
            apartment = await self._lookup_apartment(visit, apartments)
            rows.append(self._row(visit, building, apartment))

        logger.info(f"Built {len(rows)} export rows for {user_id}")
        return rows

    async def export(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        directory: Path,
        prefix: str = "visits"
    ) -> Path:
        """Write the report for the window to ``directory`` and return the file path."""
        rows = await self.build_rows(user_id, start, end)
        path = Path(directory) / export_filename(start.date(), prefix)
        write_export(path, render_csv(rows))
        logger.info(f"Exported {len(rows)} visits to {path}")
        return path

    async def _lookup_building(self, building_id: str, cache: Dict[str, Optional[Building]]) -> Optional[Building]:
        if not building_id:
            return None
        if building_id not in cache:
            try:
                snapshot = await self.store.get(building_path(building_id))
                cache[building_id] = Building.from_dict(snapshot.id, snapshot.data)
            except NotFoundError:
                logger.debug(f"Building {building_id} no longer exists")
                cache[building_id] = None
        return cache[building_id]

    async def _lookup_apartment(
        self,
        visit: Visit,
        cache: Dict[Tuple[str, str], Optional[Apartment]]
    ) -> Optional[Apartment]:
        if not visit.building_id or not visit.apartment_id:
            return None
        key = (visit.building_id, visit.apartment_id)
        if key not in cache:
            try:
                snapshot = await self.store.get(apartment_path(*key))
                cache[key] = Apartment.from_dict(snapshot.id, snapshot.data)
            except NotFoundError:
                logger.debug(f"Apartment {visit.apartment_id} no longer exists")
                cache[key] = None
        return cache[key]

    @staticmethod
    def _row(visit: Visit, building: Optional[Building], apartment: Optional[Apartment]) -> ExportRow:
        return ExportRow(
            timestamp=format_timestamp(visit.timestamp) or "",
            building_id=visit.building_id,
            building_address=building.address if building else "",
            apartment_id=visit.apartment_id,
            floor=str(apartment.floor) if apartment else "",
            apartment_label=apartment.label if apartment else "",
            status=apartment.status if apartment else "",
            notes=apartment.notes if apartment else "",
        )
