"""
Session coordinator for the canvass sync core.

This module brings the repositories, the visit ledger, the edit buffer and
the exporter together behind the operations a presentation layer forwards:
signing in, selecting a building, editing apartments, marking visits and
exporting the day's report.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from canvass.config import Settings, settings as default_settings
from canvass.config.logging_config import get_logger
from canvass.data.base_store import BaseEntityStore
from canvass.data.models import STATUS_FILTER_ALL, Apartment, Building, Identity, UserProfile
from canvass.domain.aggregation import group_by_floor
from canvass.domain.buildings import BuildingRepository
from canvass.domain.edit_buffer import CommitStrategy, LocalEditBuffer
from canvass.domain.export import VisitExporter
from canvass.domain.live_view import LiveView
from canvass.domain.profiles import ProfileRepository
from canvass.domain.visits import VisitLedger, day_window
from canvass.events.event_interface import CountEvent, Event, EventType, event_bus
from canvass.services.geocoding_service import AddressLookup
from canvass.utils.error_handling import AppError, ExportError, WriteFailedError, safe_execute

logger = get_logger(__name__)


class CanvassSession:
    """
    One operator's session against the shared store.

    Live views are owned here and torn down when the selection or the
    identity changes. Failures never propagate out of the public operations:
    they are logged, published on the event bus and the operation returns a
    falsy result.
    """

    def __init__(self, store: BaseEntityStore, config: Optional[Settings] = None):
        """
        Initialize the session.

        Args:
            store: Entity store shared by every repository
            config: Settings (defaults to the global settings)
        """
        self.settings = config or default_settings
        self.store = store

        self.buildings = BuildingRepository(store)
        self.ledger = VisitLedger(store, atomic_mark_visited=self.settings.store.atomic_mark_visited)
        self.profiles = ProfileRepository(store, self.settings.default_display_name)
        self.exporter = VisitExporter(store, self.ledger)

        self.notes = LocalEditBuffer(
            self._commit_notes,
            strategy=CommitStrategy(self.settings.edit_buffer.strategy),
            delay=self.settings.edit_buffer.debounce_ms / 1000.0,
            name="notes"
        )

        self.identity: Optional[Identity] = None
        self.profile: Optional[UserProfile] = None
        self.selected_building_id: Optional[str] = None
        self.status_filter = STATUS_FILTER_ALL

        self.buildings_view: Optional[LiveView[List[Building]]] = None
        self.door_count_view: Optional[LiveView[int]] = None
        self.building_view: Optional[LiveView[Building]] = None
        self.apartments_view: Optional[LiveView[List[Apartment]]] = None

        logger.info("Session initialized")

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def uid(self) -> Optional[str]:
        return self.identity.uid if self.identity else None

    async def sign_in(self, identity: Identity) -> Optional[UserProfile]:
        """Start watching the buildings list and the door count for ``identity``."""
        if self.identity is not None:
            await self.sign_out()

        self.identity = identity
        self.buildings_view = self.buildings.watch_buildings()
        self._open_door_count()

        self.profile = await self._run("ensure_profile", self.profiles.ensure_profile, identity)
        event_bus.emit(Event(type=EventType.SIGNED_IN, data={"uid": identity.uid}))
        logger.info(f"Signed in as {identity.uid}")
        return self.profile

    async def sign_out(self) -> None:
        """Flush drafts and release every subscription."""
        await self.select_building(None)
        for view in (self.buildings_view, self.door_count_view):
            if view is not None:
                view.close()
        self.buildings_view = None
        self.door_count_view = None

        uid = self.uid
        self.identity = None
        self.profile = None
        if uid:
            event_bus.emit(Event(type=EventType.SIGNED_OUT, data={"uid": uid}))
            logger.info(f"Signed out {uid}")

    async def save_display_name(self, name: str) -> bool:
        if not self.uid:
            return False
        display_name = await self._run("save_display_name", self.profiles.save_display_name, self.uid, name)
        if display_name is None:
            return False
        if self.profile is not None:
            self.profile = UserProfile(
                uid=self.profile.uid,
                display_name=display_name,
                created_at=self.profile.created_at,
                updated_at=self.profile.updated_at
            )
        return True

    # ------------------------------------------------------------------
    # Door count
    # ------------------------------------------------------------------

    def _open_door_count(self, now: Optional[datetime] = None) -> None:
        if self.door_count_view is not None:
            self.door_count_view.close()
        self.door_count_view = None
        if not self.uid:
            return

        uid = self.uid
        view = self.ledger.watch_today_count(uid, now=now)
        view.on_change(lambda count: event_bus.emit(CountEvent(
            type=EventType.DOOR_COUNT_CHANGED,
            data={"uid": uid, "count": count},
            user_id=uid,
            count=count
        )))
        self.door_count_view = view

    def refresh_door_count(self, now: Optional[datetime] = None) -> None:
        """Recompute the day window (e.g. after midnight) and resubscribe."""
        self._open_door_count(now)

    @property
    def door_count(self) -> int:
        if self.door_count_view is None:
            return 0
        return self.door_count_view.get(0)

    # ------------------------------------------------------------------
    # Building selection
    # ------------------------------------------------------------------

    async def select_building(self, building_id: Optional[str]) -> None:
        """
        Switch the building shown in detail.

        Pending note drafts of the previous building are flushed (debounce
        mode) or dropped (explicit mode) and its subscriptions are cancelled
        before the new ones open.
        """
        if building_id == self.selected_building_id:
            return

        await self.notes.close()
        for view in (self.building_view, self.apartments_view):
            if view is not None:
                view.close()
        self.building_view = None
        self.apartments_view = None
        self.selected_building_id = building_id

        if building_id:
            self.building_view = self.buildings.watch_building(building_id)
            self.apartments_view = self.buildings.watch_apartments(building_id)
            self.apartments_view.on_change(self._on_apartments)

        event_bus.emit(Event(type=EventType.BUILDING_SELECTED, data={"building_id": building_id}))

    def _on_apartments(self, apartments: Any) -> None:
        if isinstance(apartments, list):
            self.notes.reconcile({a.id: a.notes for a in apartments})

    @property
    def building(self) -> Optional[Building]:
        return self.building_view.get() if self.building_view else None

    @property
    def apartments(self) -> List[Apartment]:
        return self.apartments_view.get([]) if self.apartments_view else []

    def floor_view(self, status_filter: Optional[str] = None) -> Dict[int, List[Apartment]]:
        """
        Apartments of the selected building grouped by derived floor.

        Notes show the local draft where one is pending.
        """
        building = self.building
        if building is None:
            return {}
        if status_filter is not None:
            self.status_filter = status_filter
        apartments = [
            a.with_notes(self.notes.value_for(a.id, a.notes)) if self.notes.is_dirty(a.id) else a
            for a in self.apartments
        ]
        return group_by_floor(building, apartments, self.status_filter)

    # ------------------------------------------------------------------
    # Buildings
    # ------------------------------------------------------------------

    async def add_building(
        self,
        address: str,
        floors_count: Any = None,
        lookup: Optional[AddressLookup] = None,
        select: bool = True
    ) -> Optional[str]:
        """Register a building (optionally with resolved coordinates) and select it."""
        if floors_count is None:
            floors_count = self.settings.default_floors_count
        lat = lng = None
        if lookup is not None:
            address, lat, lng = lookup.formatted_address, lookup.lat, lookup.lng

        building_id = await self._run(
            "create_building", self.buildings.create_building,
            address, floors_count, self.uid, lat, lng
        )
        if building_id and select:
            await self.select_building(building_id)
        return building_id

    async def update_address(
        self,
        address: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None
    ) -> bool:
        if not self.selected_building_id:
            return False
        return await self._run_ok(
            "update_address", self.buildings.update_address,
            self.selected_building_id, address, lat, lng
        )

    async def update_floors(self, value: Any) -> bool:
        if not self.selected_building_id:
            return False
        return await self._run_ok("update_floors", self.buildings.update_floors, self.selected_building_id, value)

    # ------------------------------------------------------------------
    # Apartments
    # ------------------------------------------------------------------

    async def add_apartment(self, floor: int, label: str) -> Optional[str]:
        if not self.selected_building_id:
            return None
        return await self._run(
            "create_apartment", self.buildings.create_apartment,
            self.selected_building_id, floor, label, self.building
        )

    async def set_status(self, apartment_id: str, status: str) -> bool:
        if not self.selected_building_id:
            return False
        return await self._run_ok(
            "update_apartment", self.buildings.update_apartment,
            self.selected_building_id, apartment_id, {"status": status}
        )

    def edit_notes(self, apartment_id: str, text: str) -> None:
        """Record a keystroke-level edit; persistence follows the buffer strategy."""
        remote = next((a.notes for a in self.apartments if a.id == apartment_id), None)
        self.notes.field(apartment_id, remote).edit(text)

    async def commit_notes(self, apartment_id: Optional[str] = None) -> bool:
        """Write one pending draft now, or all of them."""
        if apartment_id is None:
            written = await self._run("commit_notes", self.notes.commit_all)
            return bool(written)
        return bool(await self._run("commit_notes", self.notes.commit, apartment_id))

    async def _commit_notes(self, apartment_id: str, text: str) -> None:
        if not self.selected_building_id:
            raise WriteFailedError("No building selected", code="failed-precondition")
        await self.buildings.update_apartment(self.selected_building_id, apartment_id, {"notes": text})

    async def delete_apartment(self, apartment_id: str) -> bool:
        if not self.selected_building_id:
            return False
        self.notes.discard(apartment_id)
        return await self._run_ok(
            "delete_apartment", self.buildings.delete_apartment,
            self.selected_building_id, apartment_id
        )

    async def mark_visited(self, apartment_id: str, timestamp: Optional[datetime] = None) -> Optional[str]:
        """
        Record that the operator knocked on ``apartment_id`` now.

        Returns:
            Optional[str]: The visit id, or None when no visit row was written
        """
        if not self.selected_building_id:
            return None
        building_id = self.selected_building_id
        visit_id = await self._run(
            "mark_visited", self.ledger.mark_visited,
            building_id, apartment_id, self.uid, timestamp
        )
        if visit_id:
            event_bus.emit(Event(type=EventType.VISIT_RECORDED, data={
                "uid": self.uid,
                "building_id": building_id,
                "apartment_id": apartment_id,
                "visit_id": visit_id,
            }))
        return visit_id

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_today(self, directory: Optional[Path] = None, now: Optional[datetime] = None) -> Optional[Path]:
        """Write today's visits of the signed-in operator to a CSV file."""
        if not self.uid:
            logger.warning("Export requires a signed-in identity")
            return None

        directory = Path(directory) if directory else self.settings.export.directory
        start, end = day_window(now)
        path = await self._run("export", self._export, self.uid, start, end, directory)
        if path is not None:
            event_bus.emit(Event(type=EventType.EXPORT_COMPLETED, data={"uid": self.uid, "path": str(path)}))
        return path

    async def _export(self, uid: str, start: datetime, end: datetime, directory: Path) -> Path:
        try:
            self.settings.ensure_directory(directory)
        except OSError as e:
            raise ExportError(f"Cannot use export directory {directory}: {e}", path=directory, cause=e) from e
        return await self.exporter.export(uid, start, end, directory, self.settings.export.filename_prefix)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        await self.sign_out()
        logger.info("Session closed")

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _run(self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        return await safe_execute(func, *args, on_error=lambda error: self._notify_failure(operation, error))

    async def _run_ok(self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        async def call() -> bool:
            await func(*args)
            return True

        call.__name__ = operation
        return bool(await safe_execute(call, default=False, on_error=lambda error: self._notify_failure(operation, error)))

    def _notify_failure(self, operation: str, error: AppError) -> None:
        # Store writes already publish WRITE_FAILED themselves.
        if isinstance(error, WriteFailedError):
            return
        event_bus.emit(Event(type=EventType.ERROR, data={"operation": operation, **error.to_dict()}))
