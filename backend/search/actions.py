from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from entities.types import EntityKind, PointEntity
from locations.types import SearchLocation
from search.state import SearchError


@dataclass(frozen=True)
class SetLocation:
    location: SearchLocation | None
    radius_miles: float | None = None


@dataclass(frozen=True)
class SetRadius:
    radius_miles: float


@dataclass(frozen=True)
class SetResults:
    entities: tuple[PointEntity, ...]

    @classmethod
    def of(cls, entities: Iterable[PointEntity]) -> "SetResults":
        return cls(entities=tuple(entities))


@dataclass(frozen=True)
class SetError:
    error: SearchError


@dataclass(frozen=True)
class SetPage:
    page: int


@dataclass(frozen=True)
class ToggleLayer:
    kind: EntityKind
    visible: bool


@dataclass(frozen=True)
class SelectEntity:
    entity: PointEntity | None


@dataclass(frozen=True)
class Clear:
    pass


Action = Union[SetLocation, SetRadius, SetResults, SetError, SetPage, ToggleLayer, SelectEntity, Clear]
