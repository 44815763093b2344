"""
Local edit buffer for free-text fields.

Text typed character by character (apartment notes) is held as a local draft
instead of being written on every keystroke. A draft has two tiers:

- the **draft** value, local and not yet persisted;
- the **remote** value, last seen in a snapshot or last committed.

While a draft is pending it is what the field shows; remote snapshots update
the remote tier only. The draft is committed after a quiet period
(``DEBOUNCE``) or on request (``EXPLICIT``). There is no merge: the last
local edit overwrites concurrent remote edits when it is committed.
"""

from enum import Enum
from typing import Awaitable, Callable, Dict, Hashable, Optional

from canvass.config.logging_config import get_logger
from canvass.events.event_interface import Event, EventType, event_bus
from canvass.utils.async_helpers import Debouncer
from canvass.utils.error_handling import WriteFailedError

logger = get_logger(__name__)


class CommitStrategy(Enum):
    """When a draft is written to the store."""

    DEBOUNCE = "debounce"
    EXPLICIT = "explicit"


class DraftField:
    """Draft and remote value of one text field."""

    def __init__(
        self,
        commit_fn: Callable[[str], Awaitable[None]],
        strategy: CommitStrategy = CommitStrategy.DEBOUNCE,
        delay: float = 0.5,
        initial: Optional[str] = None,
        name: str = "draft"
    ):
        self.name = name
        self.strategy = strategy
        self._commit_fn = commit_fn
        self._remote = initial
        self._draft: Optional[str] = None
        self._dirty = False
        self._debouncer = Debouncer(self._commit_draft, delay) if strategy == CommitStrategy.DEBOUNCE else None
        self.last_error: Optional[WriteFailedError] = None

    @property
    def value(self) -> Optional[str]:
        return self._draft if self._dirty else self._remote

    @property
    def remote_value(self) -> Optional[str]:
        return self._remote

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def edit(self, value: str) -> None:
        """Replace the draft; in debounce mode the quiet period restarts."""
        self._draft = value
        self._dirty = True
        if self._debouncer is not None:
            self._debouncer.trigger()

    def apply_remote(self, value: Optional[str]) -> None:
        """Record a value pushed by the store. A pending draft keeps precedence."""
        if self._dirty and value != self._remote:
            logger.debug(f"{self.name}: remote change ignored while a draft is pending")
        self._remote = value

    async def commit(self) -> bool:
        """
        Write the draft now.

        Returns:
            bool: True if there was a draft and it was written

        Raises:
            WriteFailedError: If the write failed; the draft is kept
        """
        if self._debouncer is not None:
            self._debouncer.cancel()
        return await self._commit_draft()

    async def _commit_draft(self) -> bool:
        if not self._dirty:
            return False

        value = self._draft
        try:
            await self._commit_fn(value)
        except WriteFailedError as e:
            self.last_error = e
            logger.warning(f"{self.name}: draft kept after failed commit: {e}")
            raise

        self.last_error = None
        self._remote = value
        # Edits made while the write was in flight stay pending.
        if self._draft == value:
            self._draft = None
            self._dirty = False

        event_bus.emit(Event(type=EventType.DRAFT_COMMITTED, data={"field": self.name}))
        return True

    def discard(self) -> None:
        """Drop the draft and show the remote value again."""
        if self._debouncer is not None:
            self._debouncer.cancel()
        self._draft = None
        self._dirty = False

    async def close(self, flush: Optional[bool] = None) -> None:
        """
        Stop tracking the field (the operator navigated away).

        Args:
            flush: Commit a pending draft first. Defaults to True in debounce
                mode and False in explicit mode.
        """
        if flush is None:
            flush = self.strategy == CommitStrategy.DEBOUNCE
        if flush and self._dirty:
            try:
                await self.commit()
            except WriteFailedError as e:
                logger.warning(f"{self.name}: draft dropped on close: {e}")
        self.discard()


class LocalEditBuffer:
    """Draft fields keyed by entity id (one notes draft per apartment)."""

    def __init__(
        self,
        commit_fn: Callable[[Hashable, str], Awaitable[None]],
        strategy: CommitStrategy = CommitStrategy.DEBOUNCE,
        delay: float = 0.5,
        name: str = "drafts"
    ):
        self.name = name
        self.strategy = strategy
        self.delay = delay
        self._commit_fn = commit_fn
        self._fields: Dict[Hashable, DraftField] = {}

    def field(self, key: Hashable, remote_value: Optional[str] = None) -> DraftField:
        draft = self._fields.get(key)
        if draft is None:
            async def commit(value: str, key=key) -> None:
                await self._commit_fn(key, value)

            draft = DraftField(commit, self.strategy, self.delay, initial=remote_value, name=f"{self.name}:{key}")
            self._fields[key] = draft
        return draft

    def edit(self, key: Hashable, value: str) -> None:
        self.field(key).edit(value)

    def value_for(self, key: Hashable, remote_value: Optional[str]) -> Optional[str]:
        """What a field should display given the latest remote value."""
        draft = self._fields.get(key)
        if draft is not None and draft.is_dirty:
            return draft.value
        return remote_value

    def is_dirty(self, key: Hashable) -> bool:
        draft = self._fields.get(key)
        return draft is not None and draft.is_dirty

    def reconcile(self, remote_values: Dict[Hashable, Optional[str]]) -> None:
        """Feed the values of a new snapshot to the tracked fields."""
        for key, draft in self._fields.items():
            if key in remote_values:
                draft.apply_remote(remote_values[key])

    async def commit(self, key: Hashable) -> bool:
        draft = self._fields.get(key)
        if draft is None:
            return False
        return await draft.commit()

    def discard(self, key: Hashable) -> None:
        """Drop and stop tracking the draft for ``key``, if any."""
        draft = self._fields.pop(key, None)
        if draft is not None:
            draft.discard()

    async def commit_all(self) -> int:
        """Commit every pending draft. Returns how many were written."""
        written = 0
        for draft in list(self._fields.values()):
            if draft.is_dirty and await draft.commit():
                written += 1
        return written

    async def close(self) -> None:
        """Flush (debounce mode) or drop (explicit mode) every draft."""
        for draft in list(self._fields.values()):
            await draft.close()
        self._fields.clear()

    @property
    def pending_keys(self):
        return [key for key, draft in self._fields.items() if draft.is_dirty]
