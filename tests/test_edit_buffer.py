# tests/test_edit_buffer.py
import asyncio
from unittest.mock import AsyncMock

import pytest

from canvass.domain.edit_buffer import CommitStrategy, DraftField, LocalEditBuffer
from canvass.events.event_interface import EventType
from canvass.utils.error_handling import WriteFailedError

DELAY = 0.01


async def quiet_period():
    await asyncio.sleep(DELAY * 5)
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_keystrokes_coalesce_into_one_write():
    commit = AsyncMock()
    field = DraftField(commit, CommitStrategy.DEBOUNCE, delay=DELAY, initial="")

    for text in ("h", "he", "hel", "hello"):
        field.edit(text)
    assert field.value == "hello"
    commit.assert_not_called()

    await quiet_period()

    commit.assert_awaited_once_with("hello")
    assert field.is_dirty is False
    assert field.value == "hello"


@pytest.mark.asyncio
async def test_draft_wins_over_remote_until_committed():
    commit = AsyncMock()
    field = DraftField(commit, CommitStrategy.EXPLICIT, initial="old")

    field.edit("mine")
    field.apply_remote("theirs")

    assert field.value == "mine"
    assert field.remote_value == "theirs"

    assert await field.commit() is True
    commit.assert_awaited_once_with("mine")
    assert field.value == "mine"

    field.apply_remote("newer")
    assert field.value == "newer"


@pytest.mark.asyncio
async def test_explicit_mode_waits_for_commit():
    commit = AsyncMock()
    field = DraftField(commit, CommitStrategy.EXPLICIT, delay=DELAY)

    field.edit("note")
    await quiet_period()

    commit.assert_not_called()
    assert field.is_dirty


@pytest.mark.asyncio
async def test_commit_without_draft_is_noop():
    commit = AsyncMock()
    field = DraftField(commit, CommitStrategy.EXPLICIT)

    assert await field.commit() is False
    commit.assert_not_called()


@pytest.mark.asyncio
async def test_failed_commit_keeps_draft():
    commit = AsyncMock(side_effect=WriteFailedError("denied", path="buildings/b1/apartments/a1"))
    field = DraftField(commit, CommitStrategy.EXPLICIT, initial="")

    field.edit("unsaved")
    with pytest.raises(WriteFailedError):
        await field.commit()

    assert field.is_dirty
    assert field.value == "unsaved"
    assert field.last_error is not None


@pytest.mark.asyncio
async def test_edit_during_commit_stays_pending():
    release = asyncio.Event()

    async def slow_commit(value):
        await release.wait()

    field = DraftField(slow_commit, CommitStrategy.EXPLICIT, initial="")
    field.edit("first")
    task = asyncio.ensure_future(field.commit())
    await asyncio.sleep(0)

    field.edit("second")
    release.set()
    await task

    assert field.is_dirty
    assert field.value == "second"
    assert field.remote_value == "first"


@pytest.mark.asyncio
async def test_commit_publishes_event(events):
    field = DraftField(AsyncMock(), CommitStrategy.EXPLICIT, name="notes:a1")
    field.edit("x")
    await field.commit()

    assert [e.type for e in events] == [EventType.DRAFT_COMMITTED]
    assert events[0].data == {"field": "notes:a1"}


@pytest.mark.asyncio
async def test_close_flushes_in_debounce_mode():
    commit = AsyncMock()
    field = DraftField(commit, CommitStrategy.DEBOUNCE, delay=10)

    field.edit("leaving")
    await field.close()

    commit.assert_awaited_once_with("leaving")
    assert field.is_dirty is False


@pytest.mark.asyncio
async def test_close_drops_draft_in_explicit_mode():
    commit = AsyncMock()
    field = DraftField(commit, CommitStrategy.EXPLICIT, initial="remote")

    field.edit("abandoned")
    await field.close()

    commit.assert_not_called()
    assert field.value == "remote"


@pytest.mark.asyncio
async def test_buffer_routes_commits_by_key():
    commit = AsyncMock()
    buffer = LocalEditBuffer(commit, CommitStrategy.EXPLICIT)

    buffer.field("a1", "").edit("one")
    buffer.edit("a2", "two")

    assert sorted(buffer.pending_keys) == ["a1", "a2"]
    assert await buffer.commit_all() == 2
    commit.assert_any_await("a1", "one")
    commit.assert_any_await("a2", "two")
    assert buffer.pending_keys == []


@pytest.mark.asyncio
async def test_buffer_reconcile_and_value_for():
    buffer = LocalEditBuffer(AsyncMock(), CommitStrategy.EXPLICIT)
    buffer.field("a1", "old").edit("draft")

    buffer.reconcile({"a1": "remote edit", "a2": "untracked"})

    assert buffer.value_for("a1", "remote edit") == "draft"
    assert buffer.value_for("a2", "untracked") == "untracked"
    assert buffer.field("a1").remote_value == "remote edit"


@pytest.mark.asyncio
async def test_buffer_close_flushes_and_forgets():
    commit = AsyncMock()
    buffer = LocalEditBuffer(commit, CommitStrategy.DEBOUNCE, delay=10)
    buffer.edit("a1", "pending")

    await buffer.close()

    commit.assert_awaited_once_with("a1", "pending")
    assert buffer.pending_keys == []
    assert buffer.is_dirty("a1") is False


@pytest.mark.asyncio
async def test_buffer_discard_forgets_only_known_drafts():
    commit = AsyncMock()
    buffer = LocalEditBuffer(commit, CommitStrategy.DEBOUNCE, delay=DELAY)
    buffer.edit("a1", "typed")

    buffer.discard("a1")
    buffer.discard("never-edited")
    await quiet_period()

    commit.assert_not_awaited()
    assert buffer._fields == {}
