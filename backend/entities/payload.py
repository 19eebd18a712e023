from __future__ import annotations

import math
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from entities.types import EntityKind, PointEntity

_KIND_ALIASES: dict[str, EntityKind] = {
    "agency": EntityKind.agency,
    "agencies": EntityKind.agency,
    "pha": EntityKind.agency,
    "housing_authority": EntityKind.agency,
    "office": EntityKind.agency,
    "property": EntityKind.property,
    "properties": EntityKind.property,
}


class MalformedPayload(ValueError):
    """
    Raised when a data-service response cannot be turned into entities.
    """


def normalize_kind(raw: Any) -> EntityKind:
    if isinstance(raw, EntityKind):
        return raw
    key = str(raw or "").strip().lower()
    kind = _KIND_ALIASES.get(key)
    if kind is None:
        raise ValueError(f"Unknown entity kind: {raw!r}")
    return kind


class EntityPayload(BaseModel):
    """
    Wire shape of a single entity row.

    Rows come from a remote service that was fed by CSV imports, so strings like
    "nan" and coordinates stored under `geocoded_*` are tolerated.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    kind: EntityKind = EntityKind.agency
    name: str = ""
    latitude: float | None = None
    longitude: float | None = None
    geocoded_latitude: float | None = None
    geocoded_longitude: float | None = None
    address: str | None = None
    city: str | None = None
    county: str | None = None
    state: str | None = None
    zip_code: str | None = Field(
        default=None, validation_alias=AliasChoices("zip_code", "zipCode", "zip")
    )
    phone: str | None = None

    @field_validator("id", "zip_code", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if v is None:
            return None
        if isinstance(v, (int, float)):
            return str(int(v)) if float(v).is_integer() else str(v)
        return v

    @field_validator(
        "latitude", "longitude", "geocoded_latitude", "geocoded_longitude", mode="before"
    )
    @classmethod
    def _coordinate(cls, v: Any, info: ValidationInfo) -> float | None:
        # Unusable coordinates leave the row list-only instead of failing the page.
        if v is None or isinstance(v, bool):
            return None
        try:
            f = float(str(v).strip()) if isinstance(v, str) else float(v)
        except (TypeError, ValueError):
            return None
        limit = 90.0 if info.field_name.endswith("latitude") else 180.0
        if not math.isfinite(f) or abs(f) > limit:
            return None
        return f

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, v: Any) -> EntityKind:
        return normalize_kind(v)

    @field_validator("address", "city", "county", "state", "phone", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if v is None:
            return None
        s = str(v).strip()
        if not s or s.lower() in {"nan", "null", "none"}:
            return None
        # Imported addresses sometimes lead with a "nan," placeholder.
        if s.lower().startswith("nan,"):
            s = s[4:].strip()
        return s or None

    def to_entity(self) -> PointEntity:
        lat = self.latitude if self.latitude is not None else self.geocoded_latitude
        lng = self.longitude if self.longitude is not None else self.geocoded_longitude
        # Half a coordinate pair is as good as none.
        if lat is None or lng is None:
            lat, lng = None, None
        return PointEntity(
            id=self.id,
            kind=self.kind,
            name=self.name,
            latitude=lat,
            longitude=lng,
            address=self.address,
            city=self.city,
            county=self.county,
            state=self.state.upper() if self.state and len(self.state) == 2 else self.state,
            zip_code=self.zip_code,
            phone=self.phone,
            props=dict(self.model_extra or {}),
        )


def parse_entities(rows: Any) -> list[PointEntity]:
    if not isinstance(rows, list):
        raise MalformedPayload(f"Expected a list of entities, got {type(rows).__name__}")
    out: list[PointEntity] = []
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            raise MalformedPayload(f"Entity #{i} is not an object")
        try:
            out.append(EntityPayload.model_validate(row).to_entity())
        except ValidationError as e:
            raise MalformedPayload(f"Entity #{i} is invalid: {e.error_count()} error(s)") from e
    return out


def parse_entity_page(data: Any) -> tuple[list[PointEntity], int]:
    """
    Parse a `{data: [...], total: n}` envelope.
    """
    if not isinstance(data, dict):
        raise MalformedPayload("Response root must be an object")
    entities = parse_entities(data.get("data"))
    raw_total = data.get("total", len(entities))
    try:
        total = int(raw_total)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"Invalid total: {raw_total!r}") from e
    return entities, max(total, len(entities))
