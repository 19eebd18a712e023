"""HTTP client for the hosted entity service.

GET {base_url}/entities?lat=..&lng=..&north=..&south=..&east=..&west=..&page=..&limit=..
returns `{"data": [...], "total": n}`.
"""

from __future__ import annotations

import httpx
from loguru import logger

from datasource.types import DataServiceError, DataServiceErrorCode, EntityPage
from entities.payload import MalformedPayload, parse_entity_page
from geo.bounds import ViewportBounds
from locations.types import SearchLocation

DEFAULT_TIMEOUT = 15.0


class HttpDataService:
    """Remote data service over HTTP.

    Transport failures and 5xx map to `network`, timeouts to `timeout`, 4xx to
    `validation`. A body that is not a valid entity page raises `MalformedPayload`
    instead, so it is reported separately from a transport failure.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def fetch_entities_near(
        self,
        location: SearchLocation,
        bounds: ViewportBounds,
        page: int,
        limit: int,
    ) -> EntityPage:
        params: dict[str, str | int | float] = {
            "place": location.display_name,
            "kind": location.kind.value,
            "lat": location.latitude,
            "lng": location.longitude,
            **bounds.to_dict(),
            "page": int(page),
            "limit": int(limit),
        }
        if location.state_code:
            params["state"] = location.state_code
        headers = {"apikey": self._api_key} if self._api_key else {}

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.get("/entities", params=params, headers=headers)
                response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.warning(f"Data service timeout for {location.display_name}")
            raise DataServiceError(DataServiceErrorCode.timeout, "Request timed out") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"Data service HTTP error {status}")
            code = DataServiceErrorCode.validation if 400 <= status < 500 else DataServiceErrorCode.network
            raise DataServiceError(code, f"Service returned HTTP {status}", status_code=status) from e
        except httpx.TransportError as e:
            logger.warning(f"Data service connection error: {type(e).__name__}")
            raise DataServiceError(DataServiceErrorCode.network, "Connection to data service failed") from e
        except ValueError as e:
            raise MalformedPayload("Response body is not JSON") from e

        entities, total = parse_entity_page(data)
        return EntityPage(data=tuple(entities), total=total)
