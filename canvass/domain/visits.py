"""
Visit ledger.

Every door knock is appended under ``users/{uid}/visits`` and never changed
afterwards. The ledger derives the current-day door count and the visit list
used by exports.
"""

from datetime import datetime, timezone, tzinfo
from typing import List, Optional, Tuple

from canvass.config.logging_config import get_logger
from canvass.data.base_store import BaseEntityStore, QuerySnapshot
from canvass.data.models import Visit, format_timestamp
from canvass.data.paths import apartment_path, visit_path, visits_path
from canvass.domain.live_view import LiveView

logger = get_logger(__name__)


def day_window(now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> Tuple[datetime, datetime]:
    """
    Bounds of the calendar day containing ``now`` in local time.

    Args:
        now: Reference moment (defaults to the current time). A naive value is
            taken as local time.
        tz: Time zone to use instead of the system's local zone

    Returns:
        Tuple[datetime, datetime]: ``00:00:00.000`` and ``23:59:59.999`` of that day
    """
    if now is None:
        now = datetime.now(timezone.utc)
    local = now.astimezone(tz)
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    end = local.replace(hour=23, minute=59, second=59, microsecond=999000)
    return start, end


def in_window(visit: Visit, start: datetime, end: datetime) -> bool:
    return visit.timestamp is not None and start <= visit.timestamp <= end


def _visits_from_snapshot(snapshot: QuerySnapshot) -> List[Visit]:
    return [Visit.from_dict(doc.id, doc.data) for doc in snapshot]


class VisitLedger:
    """Append-only per-user visit log."""

    def __init__(self, store: BaseEntityStore, atomic_mark_visited: bool = True):
        self.store = store
        self.atomic_mark_visited = atomic_mark_visited

    async def record_visit(
        self,
        user_id: str,
        building_id: str,
        apartment_id: str,
        timestamp: Optional[datetime] = None
    ) -> str:
        """
        Append one visit under ``user_id``. The apartment is not touched.

        Returns:
            str: The visit id
        """
        timestamp = timestamp or datetime.now(timezone.utc)
        visit_id = await self.store.create(visits_path(user_id), {
            "buildingId": building_id,
            "apartmentId": apartment_id,
            "timestamp": format_timestamp(timestamp),
        })
        logger.info(f"Recorded visit {visit_id} for {user_id} at {building_id}/{apartment_id}")
        return visit_id

    def watch_today_count(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        tz: Optional[tzinfo] = None
    ) -> LiveView[int]:
        """
        Number of the user's visits within today's local-time window.

        The window is fixed when the view is created: a view kept open past
        midnight keeps counting the previous day until it is recreated.
        """
        start, end = day_window(now, tz)
        logger.debug(f"Counting visits of {user_id} between {start.isoformat()} and {end.isoformat()}")

        def count(snapshot: QuerySnapshot) -> int:
            return sum(1 for visit in _visits_from_snapshot(snapshot) if in_window(visit, start, end))

        view = LiveView(f"door_count:{user_id}", count)
        view.attach(self.store.subscribe(visits_path(user_id), view.handle_snapshot))
        return view

    async def list_visits_in_window(self, user_id: str, start: datetime, end: datetime) -> List[Visit]:
        """One-shot read of the user's visits with ``start <= timestamp <= end``, oldest first."""
        snapshot = await self.store.list(visits_path(user_id))
        visits = [v for v in _visits_from_snapshot(snapshot) if in_window(v, start, end)]
        visits.sort(key=lambda v: v.timestamp)
        return visits

    async def mark_visited(
        self,
        building_id: str,
        apartment_id: str,
        user_id: Optional[str],
        timestamp: Optional[datetime] = None
    ) -> Optional[str]:
        """
        Set the apartment's last visit and append the matching ledger row.

        With ``atomic_mark_visited`` both writes go in one batch, so either
        both land or neither does. Otherwise they are two independent writes,
        apartment first: a failure of the second leaves the apartment showing
        a visit the ledger does not have.

        Without a user id only the apartment is updated.

        Returns:
            Optional[str]: The visit id, or None when no visit was appended
        """
        timestamp = timestamp or datetime.now(timezone.utc)
        stamp = format_timestamp(timestamp)
        apartment_fields = {"visitedAt": stamp, "visitedBy": user_id}

        if not user_id:
            logger.warning(f"No user id: apartment {apartment_id} marked visited without a ledger row")
            await self.store.update(apartment_path(building_id, apartment_id), apartment_fields)
            return None

        visit_fields = {
            "buildingId": building_id,
            "apartmentId": apartment_id,
            "timestamp": stamp,
        }

        if self.atomic_mark_visited:
            visit_id = self.store.new_id()
            batch = self.store.batch()
            batch.update(apartment_path(building_id, apartment_id), apartment_fields)
            batch.set(visit_path(user_id, visit_id), visit_fields)
            await self.store.commit(batch)
        else:
            await self.store.update(apartment_path(building_id, apartment_id), apartment_fields)
            visit_id = await self.store.create(visits_path(user_id), visit_fields)

        logger.info(f"{user_id} visited {building_id}/{apartment_id} at {stamp}")
        return visit_id
