"""
Building and apartment repository.

Typed CRUD and live subscriptions over the ``buildings`` collection and each
building's ``apartments`` subcollection.
"""

from typing import Any, Dict, List, Optional, Union

from canvass.config.logging_config import get_logger
from canvass.data.base_store import SERVER_TIMESTAMP, BaseEntityStore, DocumentSnapshot, QuerySnapshot
from canvass.data.models import Apartment, ApartmentStatus, Building
from canvass.data.paths import apartment_path, apartments_path, building_path, buildings_path
from canvass.domain.aggregation import clamp_floors
from canvass.domain.live_view import NOT_FOUND, LiveView
from canvass.utils.error_handling import ValidationRejected

logger = get_logger(__name__)


def _building_from_snapshot(snapshot: DocumentSnapshot) -> Union[Building, Any]:
    if not snapshot.exists:
        return NOT_FOUND
    return Building.from_dict(snapshot.id, snapshot.data)


def _buildings_from_snapshot(snapshot: QuerySnapshot) -> List[Building]:
    return [Building.from_dict(doc.id, doc.data) for doc in snapshot]


def _apartments_from_snapshot(snapshot: QuerySnapshot) -> List[Apartment]:
    return [Apartment.from_dict(doc.id, doc.data) for doc in snapshot]


class BuildingRepository:
    """
    Repository for buildings and their apartments.

    Writes propagate ``WriteFailedError`` to the caller and are never retried
    here. Live views reconnect through the store client.
    """

    def __init__(self, store: BaseEntityStore):
        self.store = store

    # ------------------------------------------------------------------
    # Live views
    # ------------------------------------------------------------------

    def watch_buildings(self) -> LiveView[List[Building]]:
        """All buildings, newest first."""
        view = LiveView("buildings", _buildings_from_snapshot)
        view.attach(self.store.subscribe(buildings_path(), view.handle_snapshot, order_by=("createdAt", "desc")))
        return view

    def watch_building(self, building_id: str) -> LiveView[Building]:
        """
        One building.

        The view holds ``LOADING`` until the first snapshot and ``NOT_FOUND``
        when no building has this id.
        """
        view = LiveView(f"building:{building_id}", _building_from_snapshot)
        view.attach(self.store.subscribe(building_path(building_id), view.handle_snapshot))
        return view

    def watch_apartments(self, building_id: str) -> LiveView[List[Apartment]]:
        """Apartments of a building, in no particular order."""
        view = LiveView(f"apartments:{building_id}", _apartments_from_snapshot)
        view.attach(self.store.subscribe(apartments_path(building_id), view.handle_snapshot))
        return view

    # ------------------------------------------------------------------
    # One-shot reads
    # ------------------------------------------------------------------

    async def list_buildings(self) -> List[Building]:
        snapshot = await self.store.list(buildings_path(), order_by=("createdAt", "desc"))
        return _buildings_from_snapshot(snapshot)

    async def load_building(self, building_id: str) -> Building:
        """
        Read one building.

        Raises:
            NotFoundError: If no building has this id
        """
        snapshot = await self.store.get(building_path(building_id))
        return Building.from_dict(snapshot.id, snapshot.data)

    async def list_apartments(self, building_id: str) -> List[Apartment]:
        return _apartments_from_snapshot(await self.store.list(apartments_path(building_id)))

    # ------------------------------------------------------------------
    # Buildings
    # ------------------------------------------------------------------

    async def create_building(
        self,
        address: str,
        floors_count: Any = 1,
        created_by: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None
    ) -> Optional[str]:
        """
        Register a building.

        Returns:
            Optional[str]: The new building id, or None when the address is blank
        """
        address = (address or "").strip()
        if not address:
            logger.debug("Ignoring building with an empty address")
            return None

        fields: Dict[str, Any] = {
            "address": address,
            "floorsCount": clamp_floors(floors_count),
            "createdBy": created_by,
            "createdAt": SERVER_TIMESTAMP,
        }
        if lat is not None and lng is not None:
            fields["lat"] = lat
            fields["lng"] = lng

        building_id = await self.store.create(buildings_path(), fields)
        logger.info(f"Created building {building_id} at {address!r}")
        return building_id

    async def update_building_fields(self, building_id: str, fields: Dict[str, Any]) -> None:
        """Patch a building. ``floorsCount`` is clamped to at least 1 before the write."""
        fields = dict(fields)
        if "floorsCount" in fields:
            fields["floorsCount"] = clamp_floors(fields["floorsCount"])
        await self.store.update(building_path(building_id), fields)

    async def update_address(
        self,
        building_id: str,
        address: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None
    ) -> None:
        """Change the address; coordinates are written only when both are known."""
        fields: Dict[str, Any] = {"address": address}
        if lat is not None and lng is not None:
            fields["lat"] = lat
            fields["lng"] = lng
        await self.update_building_fields(building_id, fields)

    async def update_floors(self, building_id: str, value: Any) -> int:
        """Set the floors count (clamped). Returns the value written."""
        floors_count = clamp_floors(value)
        await self.update_building_fields(building_id, {"floorsCount": floors_count})
        return floors_count

    # ------------------------------------------------------------------
    # Apartments
    # ------------------------------------------------------------------

    async def create_apartment(
        self,
        building_id: str,
        floor: int,
        label: str,
        building: Optional[Building] = None
    ) -> Optional[str]:
        """
        Add an apartment on a floor.

        A label that trims to nothing is ignored. When ``building`` is given
        the floor must lie within ``[1, floorsCount]``.

        Returns:
            Optional[str]: The new apartment id, or None when nothing was created
        """
        label = (label or "").strip()
        if not label:
            logger.debug(f"Ignoring apartment with an empty label in building {building_id}")
            return None

        if building is not None:
            try:
                self.validate_floor(building, floor)
            except ValidationRejected as e:
                logger.warning(str(e))
                return None

        apartment_id = await self.store.create(apartments_path(building_id), {
            "floor": floor,
            "label": label,
            "status": ApartmentStatus.NONE.value,
            "notes": "",
            "visitedAt": None,
            "visitedBy": None,
            "createdAt": SERVER_TIMESTAMP,
        })
        logger.info(f"Created apartment {label!r} on floor {floor} of building {building_id}")
        return apartment_id

    @staticmethod
    def validate_floor(building: Building, floor: Any) -> None:
        floors_count = clamp_floors(building.floors_count)
        if isinstance(floor, bool) or not isinstance(floor, int) or not 1 <= floor <= floors_count:
            raise ValidationRejected(
                f"Floor {floor!r} is outside 1..{floors_count} for building {building.id}"
            )

    async def update_apartment(self, building_id: str, apartment_id: str, fields: Dict[str, Any]) -> None:
        """Patch an apartment. Fields are written as given, unknown statuses included."""
        await self.store.update(apartment_path(building_id, apartment_id), dict(fields))

    async def delete_apartment(self, building_id: str, apartment_id: str) -> None:
        await self.store.delete(apartment_path(building_id, apartment_id))
        logger.info(f"Deleted apartment {apartment_id} of building {building_id}")
