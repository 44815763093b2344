"""
Base entity store interface for document store operations.
"""
import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from canvass.config.logging_config import get_logger
from canvass.data.paths import document_id
from canvass.events.event_interface import EventType, WriteFailedEvent, event_bus
from canvass.utils.error_handling import WriteFailedError

logger = get_logger(__name__)


class _ServerTimestamp:
    """Placeholder replaced by the store's clock when the write is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __deepcopy__(self, memo):
        return self


SERVER_TIMESTAMP = _ServerTimestamp()

OrderBy = Tuple[str, str]


@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time copy of one document. ``data`` is empty when the document is absent."""

    path: str
    exists: bool
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return document_id(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass(frozen=True)
class QuerySnapshot:
    """Point-in-time copy of every document in a collection."""

    path: str
    docs: Tuple[DocumentSnapshot, ...] = ()

    def __iter__(self) -> Iterator[DocumentSnapshot]:
        return iter(self.docs)

    def __len__(self) -> int:
        return len(self.docs)


Snapshot = Union[DocumentSnapshot, QuerySnapshot]
SnapshotCallback = Callable[[Snapshot], Any]


def copy_snapshot(snapshot: Snapshot) -> Snapshot:
    """Give each subscriber its own copy of the snapshot data."""
    return copy.deepcopy(snapshot)


def invoke_callback(callback: SnapshotCallback, snapshot: Snapshot) -> None:
    """Call a subscriber; coroutine callbacks are scheduled on the running loop."""
    try:
        result = callback(snapshot)
        if asyncio.iscoroutine(result):
            asyncio.ensure_future(result)
    except Exception as e:
        logger.error(f"Error in snapshot callback for {snapshot.path}: {e}")


class Subscription:
    """Handle for a live subscription.

    ``cancel`` may be called any number of times; the registration is
    released exactly once.
    """

    def __init__(self, path: str, release: Callable[[], None]):
        self.path = path
        self._release = release
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._release()

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"<Subscription {self.path} {state}>"


@dataclass
class WriteOperation:
    """One write inside a batch."""

    kind: str  # 'set', 'update' or 'delete'
    path: str
    fields: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False


class WriteBatch:
    """Writes applied together by ``BaseEntityStore.commit`` or not at all."""

    def __init__(self):
        self.operations: List[WriteOperation] = []

    def set(self, path: str, fields: Dict[str, Any], merge: bool = False) -> 'WriteBatch':
        self.operations.append(WriteOperation("set", path, dict(fields), merge))
        return self

    def update(self, path: str, fields: Dict[str, Any]) -> 'WriteBatch':
        self.operations.append(WriteOperation("update", path, dict(fields)))
        return self

    def delete(self, path: str) -> 'WriteBatch':
        self.operations.append(WriteOperation("delete", path))
        return self

    def __len__(self) -> int:
        return len(self.operations)


class BaseEntityStore(ABC):
    """Base class for all entity store implementations.

    This abstract class defines the subscribe/read/write contract over a
    hierarchical document store. It is the only layer that performs network
    or storage I/O.

    Writes are coroutines. A failed write raises ``WriteFailedError`` when
    awaited and is also published on the event bus; nothing is raised before
    the coroutine runs.
    """

    def __init__(self, connection_config: Optional[Dict[str, Any]] = None):
        """Initialize the store with connection configuration.

        Args:
            connection_config: Store connection parameters
        """
        self.connection_config = connection_config or {}

    @abstractmethod
    async def connect(self) -> bool:
        """Establish connection to the store.

        Returns:
            bool: True if connection successful, False otherwise
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the store and release every subscription."""

    @abstractmethod
    def subscribe(
        self,
        path: str,
        callback: SnapshotCallback,
        order_by: Optional[OrderBy] = None
    ) -> Subscription:
        """Watch a document or collection.

        A full snapshot is delivered after registration and after every
        change. Document paths deliver ``DocumentSnapshot``, collection paths
        ``QuerySnapshot``.

        Args:
            path: Document or collection path
            callback: Called with each snapshot
            order_by: Optional ``(field, 'asc'|'desc')`` for collections

        Returns:
            Subscription: Handle used to stop watching
        """

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot:
        """Read one document.

        Raises:
            NotFoundError: If the document does not exist
        """

    @abstractmethod
    async def list(self, collection_path: str, order_by: Optional[OrderBy] = None) -> QuerySnapshot:
        """Read every document of a collection once."""

    @abstractmethod
    async def create(self, collection_path: str, fields: Dict[str, Any]) -> str:
        """Add a document with a generated id.

        Returns:
            str: The new document id
        """

    @abstractmethod
    async def set(self, path: str, fields: Dict[str, Any], merge: bool = False) -> None:
        """Write a document, replacing it unless ``merge`` is set."""

    @abstractmethod
    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        """Patch fields of an existing document."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a document. Deleting an absent document succeeds."""

    @abstractmethod
    async def commit(self, batch: WriteBatch) -> None:
        """Apply every write of a batch atomically."""

    def batch(self) -> WriteBatch:
        return WriteBatch()

    def new_id(self) -> str:
        """Generate a document id without a round trip."""
        return uuid.uuid4().hex[:20]

    def report_write_failure(
        self,
        error: Exception,
        operation: str,
        path: Optional[str] = None
    ) -> WriteFailedError:
        """Handle write errors in a consistent way.

        Args:
            error: The exception that occurred
            operation: Name of the store operation that failed
            path: Path the write targeted

        Returns:
            WriteFailedError: The error to raise to the caller
        """
        if isinstance(error, WriteFailedError):
            failure = error
        else:
            failure = WriteFailedError(
                f"{operation} failed on {path}: {error}",
                path=path,
                cause=error
            )

        error_info = {
            "store": self.__class__.__name__,
            "operation": operation,
            **failure.to_dict()
        }
        logger.error(f"Store write failed: {error_info}")
        event_bus.emit(WriteFailedEvent(
            type=EventType.WRITE_FAILED,
            data=error_info,
            operation=operation,
            path=path,
            error=failure.to_dict()
        ))
        return failure
