from __future__ import annotations

import itertools
from typing import Any, Callable

from geo.bounds import ViewportBounds
from geo.view import fit_view

MapEventSink = Callable[[str, dict[str, Any]], None]


class StreamingMap:
    """
    Server-side `MapRenderer`: mirrors the marker set and turns every operation
    into an event for the browser map.

    The browser reports its viewport back through `set_viewport`.
    """

    def __init__(
        self,
        emit: MapEventSink | None = None,
        *,
        viewport: ViewportBounds | None = None,
        size: dict[str, int] | None = None,
    ) -> None:
        self._emit = emit or (lambda _type, _data: None)
        self._viewport = viewport
        self._size = size
        self._markers: dict[str, dict[str, Any]] = {}
        self._listeners: list[Callable[[ViewportBounds], None]] = []
        self._ids = itertools.count(1)

    @property
    def markers(self) -> dict[str, dict[str, Any]]:
        return dict(self._markers)

    def add_marker(self, lat: float, lng: float, meta: dict[str, Any]) -> str:
        handle = f"m{next(self._ids)}"
        marker = {"handle": handle, "lat": float(lat), "lng": float(lng), **meta}
        self._markers[handle] = marker
        self._emit("markers", {"op": "add", "marker": marker})
        return handle

    def remove_marker(self, handle: str) -> None:
        if self._markers.pop(handle, None) is not None:
            self._emit("markers", {"op": "remove", "handle": handle})

    def get_viewport_bounds(self) -> ViewportBounds | None:
        return self._viewport

    def on_viewport_change(
        self, callback: Callable[[ViewportBounds], None]
    ) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def fit_bounds(self, bounds: ViewportBounds) -> None:
        center, zoom = fit_view(bounds, viewport=self._size)
        # Until the browser reports back, assume it went where it was told.
        self._viewport = bounds.normalized()
        self._emit(
            "fitBounds",
            {"bounds": bounds.to_dict(), "center": center, "zoom": zoom},
        )

    def set_viewport(self, bounds: ViewportBounds, *, size: dict[str, int] | None = None) -> None:
        if size:
            self._size = size
        if self._viewport is not None and self._viewport.rounded_key() == bounds.rounded_key():
            return
        self._viewport = bounds.normalized()
        for listener in list(self._listeners):
            listener(self._viewport)
