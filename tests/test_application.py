# tests/test_application.py
import pytest

from canvass.application import CanvassSession
from canvass.config.settings import EditBufferSettings, ExportSettings, Settings
from canvass.data.models import Identity
from canvass.events.event_interface import EventType


@pytest.fixture
def session_settings(tmp_path):
    return Settings(
        edit_buffer=EditBufferSettings(strategy="explicit"),
        export=ExportSettings(directory=tmp_path / "exports"),
    )


@pytest.fixture
def session(store, session_settings):
    return CanvassSession(store, session_settings)


async def signed_in_with_building(session, store, floors=3):
    await session.sign_in(Identity(uid="u1", display_name="Camille"))
    building_id = await session.add_building("1 rue A", floors)
    await store.flush()
    return building_id


@pytest.mark.asyncio
async def test_sign_in_creates_profile_and_counts(store, session, events):
    profile = await session.sign_in(Identity(uid="u1", display_name="Camille"))
    await store.flush()

    assert profile.display_name == "Camille"
    assert store.raw("users/u1")["displayName"] == "Camille"
    assert session.door_count == 0
    assert session.buildings_view.value == []
    assert EventType.SIGNED_IN in [e.type for e in events]


@pytest.mark.asyncio
async def test_add_building_selects_it(store, session, events):
    building_id = await signed_in_with_building(session, store)

    assert session.selected_building_id == building_id
    assert session.building.address == "1 rue A"
    assert session.building.created_by == "u1"
    assert [b.id for b in session.buildings_view.value] == [building_id]
    assert EventType.BUILDING_SELECTED in [e.type for e in events]


@pytest.mark.asyncio
async def test_add_building_uses_default_floors(store, session, session_settings):
    await session.add_building("2 rue B")
    await store.flush()

    assert session.building.floors_count == session_settings.default_floors_count


@pytest.mark.asyncio
async def test_floor_view_groups_and_filters(store, session):
    await signed_in_with_building(session, store, floors=2)
    first = await session.add_apartment(1, "1B")
    second = await session.add_apartment(1, "1A")
    await session.add_apartment(2, "2A")
    await session.set_status(first, "absent")
    await store.flush()

    floors = session.floor_view()
    assert list(floors) == [1, 2]
    assert [a.id for a in floors[1]] == [second, first]

    absent = session.floor_view("absent")
    assert [a.id for a in absent[1]] == [first]
    assert absent[2] == []


@pytest.mark.asyncio
async def test_add_apartment_checks_floor(store, session):
    await signed_in_with_building(session, store, floors=2)

    assert await session.add_apartment(3, "3A") is None
    assert await session.add_apartment(1, "") is None


@pytest.mark.asyncio
async def test_add_apartment_writes_under_building(store, session):
    building_id = await signed_in_with_building(session, store)

    apartment_id = await session.add_apartment(1, "12A")

    assert apartment_id
    assert store.raw(f"buildings/{building_id}/apartments/{apartment_id}")["label"] == "12A"


@pytest.mark.asyncio
async def test_update_floors_hides_upper_apartments(store, session):
    await signed_in_with_building(session, store, floors=3)
    await session.add_apartment(3, "3A")

    assert await session.update_floors(0) is True
    await store.flush()

    assert session.building.floors_count == 1
    assert list(session.floor_view()) == [1]
    assert len(session.apartments) == 1


@pytest.mark.asyncio
async def test_switching_building_releases_subscriptions(store, session):
    first = await signed_in_with_building(session, store)
    baseline = store.subscription_count

    second = await session.add_building("2 rue B", 2)
    await store.flush()

    assert session.selected_building_id == second
    assert store.subscription_count == baseline
    assert session.building.address == "2 rue B"

    await session.select_building(None)
    assert store.subscription_count == baseline - 2
    assert session.building is None
    assert first != second


@pytest.mark.asyncio
async def test_notes_draft_shown_until_committed(store, session):
    building_id = await signed_in_with_building(session, store)
    apartment_id = await session.add_apartment(1, "1A")
    await store.flush()

    session.edit_notes(apartment_id, "rappeler jeudi")
    # Another operator writes the same field meanwhile
    await store.update(f"buildings/{building_id}/apartments/{apartment_id}", {"notes": "autre"})
    await store.flush()

    assert session.floor_view()[1][0].notes == "rappeler jeudi"

    assert await session.commit_notes(apartment_id) is True
    await store.flush()

    assert store.raw(f"buildings/{building_id}/apartments/{apartment_id}")["notes"] == "rappeler jeudi"
    assert session.floor_view()[1][0].notes == "rappeler jeudi"


@pytest.mark.asyncio
async def test_pending_notes_flushed_when_leaving_building(store, tmp_path):
    settings = Settings(
        edit_buffer=EditBufferSettings(strategy="debounce", debounce_ms=60000),
        export=ExportSettings(directory=tmp_path),
    )
    session = CanvassSession(store, settings)
    building_id = await signed_in_with_building(session, store)
    apartment_id = await session.add_apartment(1, "1A")
    await store.flush()

    session.edit_notes(apartment_id, "draft")
    await session.select_building(None)

    assert store.raw(f"buildings/{building_id}/apartments/{apartment_id}")["notes"] == "draft"


@pytest.mark.asyncio
async def test_failed_write_reported_once(store, session, events):
    await signed_in_with_building(session, store)
    apartment_id = await session.add_apartment(1, "1A")
    store.fail_next_write()

    assert await session.set_status(apartment_id, "conclu") is False

    types = [e.type for e in events]
    assert types.count(EventType.WRITE_FAILED) == 1
    assert EventType.ERROR not in types


@pytest.mark.asyncio
async def test_failed_notes_commit_keeps_draft(store, session):
    await signed_in_with_building(session, store)
    apartment_id = await session.add_apartment(1, "1A")
    await store.flush()

    session.edit_notes(apartment_id, "keep me")
    store.fail_next_write()

    assert await session.commit_notes(apartment_id) is False
    assert session.notes.is_dirty(apartment_id)


@pytest.mark.asyncio
async def test_mark_visited_updates_door_count(store, session, events):
    await signed_in_with_building(session, store)
    apartment_id = await session.add_apartment(1, "1A")
    await store.flush()

    visit_id = await session.mark_visited(apartment_id)
    await store.flush()

    assert visit_id is not None
    assert session.door_count == 1
    assert session.apartments[0].visited_by == "u1"
    counts = [e for e in events if e.type == EventType.DOOR_COUNT_CHANGED]
    assert counts[-1].count == 1
    assert EventType.VISIT_RECORDED in [e.type for e in events]


@pytest.mark.asyncio
async def test_mark_visited_missing_apartment(store, session, events):
    await signed_in_with_building(session, store)

    assert await session.mark_visited("gone") is None
    assert EventType.VISIT_RECORDED not in [e.type for e in events]


@pytest.mark.asyncio
async def test_mark_visited_without_identity(store, session):
    building_id = await session.add_building("1 rue A", 2)
    apartment_id = await session.add_apartment(1, "1A")

    assert await session.mark_visited(apartment_id) is None
    stored = store.raw(f"buildings/{building_id}/apartments/{apartment_id}")
    assert stored["visitedAt"] is not None
    assert stored["visitedBy"] is None


@pytest.mark.asyncio
async def test_delete_apartment_drops_draft(store, session):
    await signed_in_with_building(session, store)
    apartment_id = await session.add_apartment(1, "1A")
    await store.flush()
    session.edit_notes(apartment_id, "never mind")

    assert await session.delete_apartment(apartment_id) is True
    await store.flush()

    assert session.apartments == []
    assert session.notes.pending_keys == []


@pytest.mark.asyncio
async def test_delete_without_draft_tracks_nothing(store, session):
    await signed_in_with_building(session, store)
    apartment_id = await session.add_apartment(1, "1A")
    await store.flush()

    assert await session.delete_apartment(apartment_id) is True

    assert session.notes._fields == {}


@pytest.mark.asyncio
async def test_export_today(store, session, session_settings, events):
    await signed_in_with_building(session, store)
    apartment_id = await session.add_apartment(1, "1A")
    await session.mark_visited(apartment_id)

    path = await session.export_today()

    assert path.parent == session_settings.export.directory
    lines = path.read_text(encoding="utf-8").split("\n")
    assert len(lines) == 2
    assert ",1 rue A," in lines[1]
    assert EventType.EXPORT_COMPLETED in [e.type for e in events]


@pytest.mark.asyncio
async def test_export_failure_is_reported(store, session, events, tmp_path):
    await signed_in_with_building(session, store)
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")

    assert await session.export_today(blocker / "sub") is None

    errors = [e for e in events if e.type == EventType.ERROR]
    assert len(errors) == 1
    assert errors[0].data["operation"] == "export"
    assert errors[0].data["error_type"] == "ExportError"
    assert EventType.EXPORT_COMPLETED not in [e.type for e in events]


@pytest.mark.asyncio
async def test_export_requires_identity(session):
    assert await session.export_today() is None


@pytest.mark.asyncio
async def test_save_display_name(store, session):
    await session.sign_in(Identity(uid="u1"))

    assert await session.save_display_name("Sam") is True
    assert session.profile.display_name == "Sam"
    assert store.raw("users/u1")["displayName"] == "Sam"


@pytest.mark.asyncio
async def test_close_releases_everything(store, session, events):
    await signed_in_with_building(session, store)

    await session.close()

    assert store.subscription_count == 0
    assert session.identity is None
    assert EventType.SIGNED_OUT in [e.type for e in events]


@pytest.mark.asyncio
async def test_refresh_door_count_reopens_view(store, session):
    await session.sign_in(Identity(uid="u1"))
    old_view = session.door_count_view

    session.refresh_door_count()

    assert old_view.closed
    assert session.door_count_view is not old_view
