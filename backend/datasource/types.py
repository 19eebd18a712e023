from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from entities.types import PointEntity
from geo.bounds import ViewportBounds
from locations.types import SearchLocation


class DataServiceErrorCode(str, Enum):
    network = "network"
    timeout = "timeout"
    validation = "validation"


class DataServiceError(Exception):
    """
    Failure reported by the remote data service (or the transport to it).
    """

    def __init__(self, code: DataServiceErrorCode, message: str, status_code: int | None = None) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(f"{code.value}: {message}")


@dataclass(frozen=True)
class EntityPage:
    """
    One page of entities near a location, plus the service-side total.
    """

    data: tuple[PointEntity, ...]
    total: int


class DataService(Protocol):
    """
    Remote source of agencies/properties.

    - InMemoryDataService: fixture entities sliced with an STRtree
    - HttpDataService: the hosted service over HTTP

    Must tolerate duplicate/overlapping calls and answer identical inputs
    identically.
    """

    name: str

    async def fetch_entities_near(
        self,
        location: SearchLocation,
        bounds: ViewportBounds,
        page: int,
        limit: int,
    ) -> EntityPage: ...
