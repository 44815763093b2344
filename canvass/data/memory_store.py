"""
In-memory entity store implementation for testing and local runs.
"""
import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from canvass.config.logging_config import get_logger
from canvass.data.base_store import (
    SERVER_TIMESTAMP,
    BaseEntityStore,
    DocumentSnapshot,
    OrderBy,
    QuerySnapshot,
    Snapshot,
    SnapshotCallback,
    Subscription,
    WriteBatch,
    WriteOperation,
    copy_snapshot,
    invoke_callback,
)
from canvass.data.paths import is_document_path, join_path, parent_collection
from canvass.events.event_interface import Event, EventType, event_bus
from canvass.utils.error_handling import NotFoundError, WriteFailedError

logger = get_logger(__name__)


class _Watch:
    def __init__(self, path: str, callback: SnapshotCallback, order_by: Optional[OrderBy]):
        self.path = path
        self.callback = callback
        self.order_by = order_by
        self.active = True


def sort_documents(docs: List[DocumentSnapshot], order_by: Optional[OrderBy]) -> List[DocumentSnapshot]:
    """Order documents by one field; documents missing the field come last."""
    if not order_by:
        return docs
    field_name, direction = order_by
    present = [d for d in docs if d.data.get(field_name) is not None]
    missing = [d for d in docs if d.data.get(field_name) is None]
    present.sort(key=lambda d: d.data[field_name], reverse=direction.lower() == "desc")
    return present + missing


class InMemoryEntityStore(BaseEntityStore):
    """In-memory document store.

    Documents live in a flat dict keyed by path. Snapshots are delivered with
    ``loop.call_soon``, never inside the write itself, so subscribers see the
    same asynchronous behaviour as with a remote store. ``flush`` waits for
    pending deliveries.
    """

    def __init__(self, connection_config: Optional[Dict[str, Any]] = None, clock: Optional[Callable[[], datetime]] = None):
        """Initialize the store with no documents.

        Args:
            connection_config: Not used for the in-memory store
            clock: Source of server timestamps
        """
        super().__init__(connection_config)
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._watches: List[_Watch] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._is_connected = False
        self._interrupted = False
        self._fail_writes: List[Tuple[Optional[str], Exception]] = []
        self.released_subscriptions = 0
        self.write_count = 0

    async def connect(self) -> bool:
        """Simulate connecting to a store.

        Returns:
            bool: Always returns True
        """
        self._is_connected = True
        logger.info("Connected to in-memory store")
        return True

    async def disconnect(self) -> None:
        """Simulate disconnecting; every subscription stops receiving snapshots."""
        for watch in self._watches:
            watch.active = False
        self._watches = []
        self._is_connected = False
        logger.info("Disconnected from in-memory store")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def subscribe(
        self,
        path: str,
        callback: SnapshotCallback,
        order_by: Optional[OrderBy] = None
    ) -> Subscription:
        watch = _Watch(path, callback, order_by)
        self._watches.append(watch)
        logger.debug(f"Subscribed to {path}")
        if not self._interrupted:
            self._schedule(watch, self._snapshot(path, order_by))

        def release() -> None:
            watch.active = False
            if watch in self._watches:
                self._watches.remove(watch)
            self.released_subscriptions += 1
            logger.debug(f"Unsubscribed from {path}")

        return Subscription(path, release)

    async def get(self, path: str) -> DocumentSnapshot:
        snapshot = self._document_snapshot(path)
        if not snapshot.exists:
            raise NotFoundError(path)
        return copy_snapshot(snapshot)

    async def list(self, collection_path: str, order_by: Optional[OrderBy] = None) -> QuerySnapshot:
        return copy_snapshot(self._query_snapshot(collection_path, order_by))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, collection_path: str, fields: Dict[str, Any]) -> str:
        document_id = self.new_id()
        path = join_path(collection_path, document_id)
        await self._apply([WriteOperation("set", path, dict(fields))], "create")
        return document_id

    async def set(self, path: str, fields: Dict[str, Any], merge: bool = False) -> None:
        await self._apply([WriteOperation("set", path, dict(fields), merge)], "set")

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        await self._apply([WriteOperation("update", path, dict(fields))], "update")

    async def delete(self, path: str) -> None:
        await self._apply([WriteOperation("delete", path)], "delete")

    async def commit(self, batch: WriteBatch) -> None:
        await self._apply(list(batch.operations), "commit")

    async def _apply(self, operations: List[WriteOperation], operation: str) -> None:
        # Yield once so the write completes asynchronously, like a network round trip.
        await asyncio.sleep(0)
        first_path = operations[0].path if operations else None
        try:
            self._check_injected_failure(operations)
            staged = dict(self._documents)
            for op in operations:
                self._stage(staged, op)
        except Exception as e:
            raise self.report_write_failure(e, operation, first_path) from e

        self._documents = staged
        self.write_count += 1
        self._notify({op.path for op in operations})

    def _stage(self, documents: Dict[str, Dict[str, Any]], op: WriteOperation) -> None:
        if not is_document_path(op.path):
            raise WriteFailedError(f"Not a document path: {op.path}", path=op.path, code="invalid-argument")

        if op.kind == "delete":
            documents.pop(op.path, None)
            return

        fields = self._resolve(op.fields)
        if op.kind == "update":
            if op.path not in documents:
                raise WriteFailedError(f"No document to update: {op.path}", path=op.path, code="not-found")
            documents[op.path] = {**documents[op.path], **fields}
        elif op.kind == "set":
            base = documents.get(op.path, {}) if op.merge else {}
            documents[op.path] = {**base, **fields}
        else:
            raise WriteFailedError(f"Unknown write kind: {op.kind}", path=op.path, code="invalid-argument")

    def _resolve(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        now = self._clock()
        return {
            key: (now if value is SERVER_TIMESTAMP else copy.deepcopy(value))
            for key, value in fields.items()
        }

    # ------------------------------------------------------------------
    # Snapshot delivery
    # ------------------------------------------------------------------

    def _document_snapshot(self, path: str) -> DocumentSnapshot:
        data = self._documents.get(path)
        if data is None:
            return DocumentSnapshot(path=path, exists=False)
        return DocumentSnapshot(path=path, exists=True, data=dict(data))

    def _query_snapshot(self, collection_path: str, order_by: Optional[OrderBy]) -> QuerySnapshot:
        docs = [
            DocumentSnapshot(path=path, exists=True, data=dict(data))
            for path, data in self._documents.items()
            if is_document_path(path) and parent_collection(path) == collection_path
        ]
        return QuerySnapshot(path=collection_path, docs=tuple(sort_documents(docs, order_by)))

    def _snapshot(self, path: str, order_by: Optional[OrderBy]) -> Snapshot:
        if is_document_path(path):
            return self._document_snapshot(path)
        return self._query_snapshot(path, order_by)

    def _affects(self, watch: _Watch, changed_paths: set) -> bool:
        if is_document_path(watch.path):
            return watch.path in changed_paths
        return any(parent_collection(path) == watch.path for path in changed_paths)

    def _notify(self, changed_paths: set) -> None:
        if self._interrupted:
            return
        for watch in list(self._watches):
            if self._affects(watch, changed_paths):
                self._schedule(watch, self._snapshot(watch.path, watch.order_by))

    def _schedule(self, watch: _Watch, snapshot: Snapshot) -> None:
        snapshot = copy_snapshot(snapshot)

        def deliver() -> None:
            if watch.active:
                invoke_callback(watch.callback, snapshot)

        asyncio.get_running_loop().call_soon(deliver)

    async def flush(self) -> None:
        """Wait until every scheduled snapshot has been delivered."""
        for _ in range(3):
            await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------

    def fail_next_write(self, error: Optional[Exception] = None, path: Optional[str] = None) -> None:
        """Make the next write (optionally only one touching ``path``) fail."""
        self._fail_writes.append((path, error or PermissionError("permission-denied")))

    def _check_injected_failure(self, operations: List[WriteOperation]) -> None:
        for index, (path, error) in enumerate(self._fail_writes):
            if path is None or any(op.path == path for op in operations):
                del self._fail_writes[index]
                raise error

    def interrupt(self) -> None:
        """Stop delivering snapshots, as if the transport dropped."""
        self._interrupted = True
        event_bus.emit(Event(type=EventType.SUBSCRIPTION_INTERRUPTED, data={"store": "memory"}))

    def restore(self) -> None:
        """Resume delivery, pushing a fresh full snapshot to every subscriber."""
        self._interrupted = False
        event_bus.emit(Event(type=EventType.SUBSCRIPTION_RESTORED, data={"store": "memory"}))
        for watch in list(self._watches):
            self._schedule(watch, self._snapshot(watch.path, watch.order_by))

    def raw(self, path: str) -> Optional[Dict[str, Any]]:
        """Stored fields of a document, for assertions."""
        data = self._documents.get(path)
        return copy.deepcopy(data) if data is not None else None

    @property
    def subscription_count(self) -> int:
        return len(self._watches)
