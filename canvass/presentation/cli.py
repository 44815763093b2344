"""
Command-line interface for the canvass sync core.

This module exposes one-shot commands over a store server: listing
buildings, registering a building, showing a building's floors, marking a
door visited, reading the day's door count, exporting the day's visits and
resolving an address.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from canvass.application import CanvassSession
from canvass.config import settings
from canvass.config.logging_config import configure_logging, get_logger
from canvass.data.base_store import BaseEntityStore
from canvass.data.models import STATUS_FILTER_ALL, STATUS_LABELS, Apartment, ApartmentStatus, Building, Identity
from canvass.domain.aggregation import group_by_floor
from canvass.domain.visits import day_window
from canvass.events.event_interface import Event, EventType, event_bus
from canvass.services.geocoding_service import GeocodingService
from canvass.services.store_client import WebSocketStoreClient
from canvass.utils.error_handling import AppError

logger = get_logger(__name__)


class CliInterface:
    """
    Terminal output for the canvass commands.

    Store notifications (failed writes, interrupted subscriptions) are
    printed as they are published on the event bus.
    """

    def __init__(self, color_output: bool = True, stream=None):
        """
        Initialize the CLI interface.

        Args:
            color_output: Whether to use colored output
            stream: Where to print (defaults to stdout)
        """
        self.stream = stream or sys.stdout
        self.color_output = color_output and self._supports_color()

        if self.color_output:
            self.RESET = "\033[0m"
            self.BOLD = "\033[1m"
            self.RED = "\033[31m"
            self.GREEN = "\033[32m"
            self.YELLOW = "\033[33m"
            self.GRAY = "\033[90m"
        else:
            self.RESET = ""
            self.BOLD = ""
            self.RED = ""
            self.GREEN = ""
            self.YELLOW = ""
            self.GRAY = ""

        self._handlers = [
            (EventType.WRITE_FAILED, self._handle_write_failed),
            (EventType.SUBSCRIPTION_INTERRUPTED, self._handle_interrupted),
            (EventType.SUBSCRIPTION_RESTORED, self._handle_restored),
            (EventType.ERROR, self._handle_error),
        ]
        for event_type, handler in self._handlers:
            event_bus.on(event_type, handler)

    def close(self) -> None:
        for event_type, handler in self._handlers:
            event_bus.off(event_type, handler)

    def _supports_color(self) -> bool:
        isatty = getattr(self.stream, "isatty", None)
        return bool(isatty and isatty())

    def print(self, text: str = "") -> None:
        print(text, file=self.stream)

    def success(self, text: str) -> None:
        self.print(f"{self.GREEN}{text}{self.RESET}")

    def warning(self, text: str) -> None:
        self.print(f"{self.YELLOW}{text}{self.RESET}")

    def failure(self, text: str) -> None:
        self.print(f"{self.RED}{text}{self.RESET}")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _handle_write_failed(self, event: Event) -> None:
        self.failure(f"Write failed ({event.data.get('operation')}): {event.data.get('message', '')}")

    def _handle_interrupted(self, event: Event) -> None:
        self.warning("Connection to the store lost, retrying...")

    def _handle_restored(self, event: Event) -> None:
        self.success("Connection to the store restored")

    def _handle_error(self, event: Event) -> None:
        self.failure(f"Error: {event.data.get('message', 'unknown error')}")

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def show_buildings(self, buildings: List[Building]) -> None:
        if not buildings:
            self.print("No buildings yet.")
            return
        for building in buildings:
            self.print(
                f"{self.BOLD}{building.address}{self.RESET} "
                f"{self.GRAY}[{building.id}] {building.floors_count} floor(s){self.RESET}"
            )

    def show_floors(self, building: Building, apartments: List[Apartment], status_filter: str) -> None:
        self.print(f"{self.BOLD}{building.address}{self.RESET}")
        floors = group_by_floor(building, apartments, status_filter)
        for floor in sorted(floors, reverse=True):
            entries = floors[floor]
            labels = ", ".join(
                f"{a.label} ({STATUS_LABELS.get(a.status, a.status)})" for a in entries
            ) or "-"
            self.print(f"  Floor {floor}: {labels}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="canvass", description="Door-to-door canvassing tracker")
    parser.add_argument("--store-url", help="WebSocket URL of the store server")
    parser.add_argument("--uid", help="Identity to act as (visits, counts and exports are per user)")
    parser.add_argument("--name", help="Display name for a new profile")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Set logging level")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--version", action="version", version=f"{settings.app_name} {settings.app_version}")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("buildings", help="List buildings, newest first")

    add_building = commands.add_parser("add-building", help="Register a building")
    add_building.add_argument("address", help="Street address")
    add_building.add_argument("--floors", type=int, default=settings.default_floors_count,
                              help="Number of floors")
    add_building.add_argument("--geocode", action="store_true",
                              help="Resolve the address and store its coordinates")

    show = commands.add_parser("show", help="Show a building's apartments by floor")
    show.add_argument("building_id")
    show.add_argument("--status", default=STATUS_FILTER_ALL,
                      choices=[STATUS_FILTER_ALL] + [s.value for s in ApartmentStatus],
                      help="Only show apartments with this status")

    visit = commands.add_parser("visit", help="Mark an apartment visited now")
    visit.add_argument("building_id")
    visit.add_argument("apartment_id")

    commands.add_parser("count", help="Doors knocked today")

    export = commands.add_parser("export", help="Export today's visits to CSV")
    export.add_argument("--dir", type=Path, help="Output directory")

    geocode = commands.add_parser("geocode", help="Resolve an address")
    geocode.add_argument("address")

    return parser


def _create_store(args: argparse.Namespace) -> BaseEntityStore:
    config = settings.store
    if args.store_url:
        config = config.model_copy(update={"url": args.store_url})
    return WebSocketStoreClient(config)


async def _geocode(cli: CliInterface, address: str) -> int:
    async with GeocodingService(settings.geocoding) as service:
        lookup = await service.lookup(address)
    if lookup is None:
        cli.warning(f"No match for {address!r}")
        return 1
    cli.print(f"{lookup.formatted_address} ({lookup.lat:.6f}, {lookup.lng:.6f})")
    return 0


async def _dispatch(cli: CliInterface, session: CanvassSession, args: argparse.Namespace) -> int:
    command = args.command
    uid = session.uid

    if command == "buildings":
        cli.show_buildings(await session.buildings.list_buildings())
        return 0

    if command == "add-building":
        lookup = None
        if args.geocode:
            async with GeocodingService(settings.geocoding) as service:
                lookup = await service.lookup(args.address)
            if lookup is None:
                cli.warning("Address not resolved, keeping it as typed")
        building_id = await session.add_building(args.address, args.floors, lookup=lookup, select=False)
        if not building_id:
            cli.failure("Building not created")
            return 1
        cli.success(f"Created building {building_id}")
        return 0

    if command == "show":
        building = await session.buildings.load_building(args.building_id)
        apartments = await session.buildings.list_apartments(args.building_id)
        cli.show_floors(building, apartments, args.status)
        return 0

    if command in ("visit", "count", "export") and not uid:
        cli.failure(f"'{command}' needs --uid")
        return 2

    if command == "visit":
        await session.select_building(args.building_id)
        visit_id = await session.mark_visited(args.apartment_id)
        if not visit_id:
            cli.failure("Visit not recorded")
            return 1
        cli.success(f"Recorded visit {visit_id}")
        return 0

    if command == "count":
        start, end = day_window()
        visits = await session.ledger.list_visits_in_window(uid, start, end)
        cli.print(f"Doors knocked today: {len(visits)}")
        return 0

    if command == "export":
        path = await session.export_today(args.dir)
        if path is None:
            cli.failure("Export failed")
            return 1
        cli.success(f"Exported to {path}")
        return 0

    cli.failure(f"Unknown command: {command}")
    return 2


async def run_command(
    args: argparse.Namespace,
    store: Optional[BaseEntityStore] = None,
    cli: Optional[CliInterface] = None
) -> int:
    """
    Run one parsed command.

    Args:
        args: Parsed command-line arguments
        store: Store to use (defaults to a WebSocket client built from settings)
        cli: Output interface

    Returns:
        int: Process exit code
    """
    cli = cli or CliInterface(color_output=not args.no_color)
    try:
        if args.command == "geocode":
            return await _geocode(cli, args.address)

        store = store or _create_store(args)
        if not await store.connect():
            cli.failure("Could not connect to the store")
            return 1

        session = CanvassSession(store, settings)
        try:
            if args.uid:
                await session.sign_in(Identity(uid=args.uid, display_name=args.name))
            return await _dispatch(cli, session, args)
        except AppError as e:
            cli.failure(str(e))
            return 1
        finally:
            await session.close()
            await store.disconnect()
    finally:
        cli.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    logging_config = settings.logging
    if args.log_level:
        logging_config = logging_config.model_copy(update={"level": args.log_level})
    configure_logging(logging_config, settings.debug_mode)

    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
