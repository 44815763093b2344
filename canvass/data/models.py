"""
Data models for persistence and business logic.

Stored field names are camelCase (the persisted layout shared with other
clients); attributes are snake_case.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ApartmentStatus(str, Enum):
    """Sales-outcome tags known to the core.

    Unknown values read from the store are kept verbatim on the Apartment.
    """

    NONE = "none"
    ABSENT = "absent"
    INTERESSE = "interesse"
    RAPPELER = "rappeler"
    CONCLU = "conclu"


STATUS_FILTER_ALL = "all"

STATUS_LABELS = {
    ApartmentStatus.NONE.value: "—",
    ApartmentStatus.ABSENT.value: "Absent",
    ApartmentStatus.INTERESSE.value: "Intéressé",
    ApartmentStatus.RAPPELER.value: "À rappeler",
    ApartmentStatus.CONCLU.value: "Conclu",
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read a stored timestamp (datetime, ISO string or epoch seconds) as an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as a UTC ISO-8601 string with milliseconds (``2024-05-01T08:30:00.000Z``)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Identity:
    """The signed-in identity supplied by the auth collaborator."""

    uid: str
    display_name: Optional[str] = None
    is_anonymous: bool = False


@dataclass(frozen=True)
class Building:
    """A physical structure being canvassed."""

    id: str
    address: str = ""
    floors_count: Any = 1
    lat: Optional[float] = None
    lng: Optional[float] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the model to its stored fields."""
        result = {
            "address": self.address,
            "floorsCount": self.floors_count,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
        }
        if self.lat is not None and self.lng is not None:
            result["lat"] = self.lat
            result["lng"] = self.lng
        return result

    @classmethod
    def from_dict(cls, id: str, data: Dict[str, Any]) -> 'Building':
        """Create a model from stored fields."""
        return cls(
            id=id,
            address=data.get("address") or "",
            floors_count=data.get("floorsCount", 1),
            lat=data.get("lat"),
            lng=data.get("lng"),
            created_by=data.get("createdBy"),
            created_at=parse_timestamp(data.get("createdAt")),
        )


@dataclass(frozen=True)
class Apartment:
    """A unit on one floor of a Building."""

    id: str
    floor: Any = 1
    label: str = ""
    status: str = ApartmentStatus.NONE.value
    notes: str = ""
    visited_at: Optional[datetime] = None
    visited_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the model to its stored fields."""
        return {
            "floor": self.floor,
            "label": self.label,
            "status": self.status,
            "notes": self.notes,
            "visitedAt": format_timestamp(self.visited_at),
            "visitedBy": self.visited_by,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, id: str, data: Dict[str, Any]) -> 'Apartment':
        """Create a model from stored fields."""
        return cls(
            id=id,
            floor=data.get("floor", 1),
            label=data.get("label") or "",
            status=data.get("status") or ApartmentStatus.NONE.value,
            notes=data.get("notes") or "",
            visited_at=parse_timestamp(data.get("visitedAt")),
            visited_by=data.get("visitedBy"),
            created_at=parse_timestamp(data.get("createdAt")),
        )

    def with_notes(self, notes: str) -> 'Apartment':
        return replace(self, notes=notes)


@dataclass(frozen=True)
class Visit:
    """Immutable record of one door-knock by one user."""

    id: str
    building_id: str
    apartment_id: str
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the model to its stored fields."""
        return {
            "buildingId": self.building_id,
            "apartmentId": self.apartment_id,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, id: str, data: Dict[str, Any]) -> 'Visit':
        """Create a model from stored fields."""
        return cls(
            id=id,
            building_id=data.get("buildingId") or "",
            apartment_id=data.get("apartmentId") or "",
            timestamp=parse_timestamp(data.get("timestamp")),
        )


@dataclass(frozen=True)
class UserProfile:
    """Profile document kept for each operator."""

    uid: str
    display_name: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the model to its stored fields."""
        result = {
            "displayName": self.display_name,
            "createdAt": self.created_at,
        }
        if self.updated_at is not None:
            result["updatedAt"] = self.updated_at
        return result

    @classmethod
    def from_dict(cls, uid: str, data: Dict[str, Any]) -> 'UserProfile':
        """Create a model from stored fields."""
        return cls(
            uid=uid,
            display_name=data.get("displayName") or "",
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )
