"""
Address lookup service.

Resolves free-text addresses into a formatted address with coordinates using
a Nominatim-compatible search endpoint. Lookups are optional: callers keep the
raw text when the service is disabled or finds nothing.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from canvass.config.logging_config import get_logger
from canvass.config.settings import GeocodingSettings
from canvass.services.base_service import BaseService

logger = get_logger(__name__)


@dataclass(frozen=True)
class AddressLookup:
    """A resolved address."""

    formatted_address: str
    lat: float
    lng: float


class GeocodingService(BaseService):
    """Service for resolving addresses over HTTP."""

    service_name = "geocoding"

    def __init__(self, config: Optional[GeocodingSettings] = None):
        """Initialize the geocoding service.

        Args:
            config: Geocoding settings (defaults to the global settings)
        """
        if config is None:
            from canvass.config import settings
            config = settings.geocoding
        self.settings = config
        super().__init__(config.model_dump())
        self._session: Optional[aiohttp.ClientSession] = None

    def _validate_config(self) -> None:
        """Validate the service configuration.

        Raises:
            ValueError: If the endpoint or user agent is missing
        """
        if not self.config.get("base_url"):
            raise ValueError("Geocoding base URL is required")
        if not self.config.get("user_agent"):
            raise ValueError("Geocoding user agent is required")

    async def connect(self) -> bool:
        """Open the HTTP session.

        Returns:
            bool: True once the session exists
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.settings.user_agent},
                timeout=aiohttp.ClientTimeout(total=self.settings.timeout)
            )
        return True

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def health_check(self) -> Dict[str, Any]:
        return {
            "service": self.service_name,
            "enabled": self.settings.enabled,
            "connected": self._session is not None and not self._session.closed,
        }

    async def lookup(self, text: str) -> Optional[AddressLookup]:
        """Resolve a free-text address.

        Args:
            text: Address typed by the operator

        Returns:
            Optional[AddressLookup]: The best match, or None when there is none
            or the lookup failed
        """
        query = (text or "").strip()
        if not query or not self.settings.enabled:
            return None

        await self.connect()
        params = {
            "q": query,
            "format": "json",
            "limit": "1",
            "addressdetails": "0",
        }
        if self.settings.country_codes:
            params["countrycodes"] = self.settings.country_codes

        try:
            async with self._session.get(self.settings.base_url, params=params) as response:
                response.raise_for_status()
                results = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.handle_error(e, "lookup", {"query": query})
            return None

        if not results:
            logger.info(f"No geocoding match for {query!r}")
            return None

        return self._parse_result(results[0])

    @staticmethod
    def _parse_result(result: Dict[str, Any]) -> Optional[AddressLookup]:
        try:
            return AddressLookup(
                formatted_address=result["display_name"],
                lat=float(result["lat"]),
                lng=float(result["lon"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Unexpected geocoding result: {result}")
            return None
