"""
Live views over store subscriptions.

A ``LiveView`` owns one or more subscriptions and holds the latest value
derived from the snapshots they deliver. Each snapshot replaces the value
wholesale. Until the first snapshot arrives the value is ``LOADING``; a
document watch whose document is absent yields ``NOT_FOUND``.
"""

from typing import Any, Callable, Generic, List, Optional, TypeVar, Union

from canvass.config.logging_config import get_logger
from canvass.data.base_store import Snapshot, Subscription

T = TypeVar("T")
logger = get_logger(__name__)


class _Marker:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name

    def __bool__(self) -> bool:
        return False


LOADING = _Marker("LOADING")
NOT_FOUND = _Marker("NOT_FOUND")

ChangeListener = Callable[[Any], None]


class LiveView(Generic[T]):
    """Latest value derived from a subscription, with change listeners."""

    def __init__(self, name: str, transform: Callable[[Snapshot], Union[T, _Marker]]):
        self.name = name
        self._transform = transform
        self._value: Union[T, _Marker] = LOADING
        self._listeners: List[ChangeListener] = []
        self._subscriptions: List[Subscription] = []
        self._closed = False
        self.snapshot_count = 0

    @property
    def value(self) -> Union[T, _Marker]:
        return self._value

    @property
    def is_loading(self) -> bool:
        return self._value is LOADING

    @property
    def is_missing(self) -> bool:
        return self._value is NOT_FOUND

    @property
    def is_ready(self) -> bool:
        return not isinstance(self._value, _Marker)

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, default: Optional[T] = None) -> Optional[T]:
        """The current value, or ``default`` while loading or missing."""
        return default if isinstance(self._value, _Marker) else self._value

    def attach(self, subscription: Subscription) -> None:
        if self._closed:
            subscription.cancel()
            return
        self._subscriptions.append(subscription)

    def on_change(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def handle_snapshot(self, snapshot: Snapshot) -> None:
        """Subscription callback: replace the value with one derived from ``snapshot``."""
        if self._closed:
            return
        self.snapshot_count += 1
        self.set_value(self._transform(snapshot))

    def set_value(self, value: Union[T, _Marker]) -> None:
        self._value = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.error(f"Error in {self.name} listener: {e}")

    def close(self) -> None:
        """Cancel the subscriptions. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
        self._listeners = []
        logger.debug(f"Closed live view {self.name}")

    def __repr__(self) -> str:
        return f"<LiveView {self.name} value={self._value!r}>"
