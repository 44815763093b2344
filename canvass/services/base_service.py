"""
Base class for the HTTP integrations of the sync core.

A service owns its client session, opens it lazily and closes it when the
caller is done (``async with`` or an explicit ``disconnect``). Failures are
turned into ``ServiceError`` and published on the event bus so a
presentation layer can show them; the calling operation then degrades
instead of failing.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from canvass.config.logging_config import get_logger
from canvass.events.event_interface import Event, EventType, event_bus
from canvass.utils.error_handling import ErrorSeverity, ServiceError

logger = get_logger(__name__)


class BaseService(ABC):
    """Base class for optional external services (address lookup)."""

    #: Name used in logs, health reports and error events
    service_name = "service"

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: Service settings as a plain dictionary

        Raises:
            ValueError: If the settings are unusable
        """
        self.config = config
        self._validate_config()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    @abstractmethod
    def _validate_config(self) -> None:
        """Raise ValueError when a required setting is missing."""

    @abstractmethod
    async def connect(self) -> bool:
        """Open the client session."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the client session if it is open."""

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Report whether the service is enabled and its session open."""

    def handle_error(
        self,
        error: Exception,
        operation: str,
        additional_info: Optional[Dict[str, Any]] = None,
        severity: ErrorSeverity = ErrorSeverity.WARNING
    ) -> ServiceError:
        """
        Log a failed call and publish it as an ``ERROR`` event.

        Args:
            error: The exception raised by the call
            operation: Name of the operation that failed
            additional_info: Context for the log entry (query, URL)
            severity: Severity recorded on the error

        Returns:
            ServiceError: The wrapped failure, for callers that re-raise
        """
        failure = ServiceError(
            f"{self.service_name} {operation} failed: {error}",
            service=self.service_name,
            operation=operation,
            severity=severity,
            cause=error,
            details=dict(additional_info or {})
        )

        logger.warning(f"Service error: {failure.to_dict()}")
        event_bus.emit(Event(
            type=EventType.ERROR,
            data={"operation": f"{self.service_name}.{operation}", **failure.to_dict()}
        ))
        return failure
