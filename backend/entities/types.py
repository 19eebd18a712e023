from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EntityKind(str, Enum):
    agency = "agency"
    property = "property"


@dataclass(frozen=True)
class PointEntity:
    """
    A housing authority or a property as displayed on the list and the map.

    Coordinates are optional: unlocated entities still show up in list views but
    never get a marker.
    """

    id: str
    kind: EntityKind
    name: str
    latitude: float | None = None
    longitude: float | None = None
    address: str | None = None
    city: str | None = None
    county: str | None = None
    state: str | None = None
    zip_code: str | None = None
    phone: str | None = None
    # Free-form display fields (program type, waitlist status, units, ...).
    props: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, EntityKind]:
        return (self.id, self.kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "city": self.city,
            "county": self.county,
            "state": self.state,
            "zipCode": self.zip_code,
            "phone": self.phone,
            "props": dict(self.props),
        }
