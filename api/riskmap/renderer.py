"""Reconciles console state into map primitives on a ``MapSurface``.

Lifecycle: ``uninitialized -> initializing -> ready`` or ``error``. Each
reconciliation tears down every marker it owns and rebuilds from the current
inputs (pins, active types, preview marker, user and clicked location).
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from . import events as ev
from .config import (
    DEFAULT_CENTER,
    DEFAULT_ZOOM,
    GEOCODER_COUNTRY,
    GEOLOCATION_TIMEOUT_SECONDS,
    MAP_LOAD_TIMEOUT_SECONDS,
    MAP_STYLES,
    ROUTE_FIT_PADDING,
    SEARCH_BBOX,
    UNKNOWN_LOCATION,
)
from .errors import MapInitError
from .events import EventBus
from .geo import LatLng, is_valid_position, line_bounds
from .mapbox import GeocodeClient
from .schemas import FACILITY_TYPES, HAZARD_TYPES, PinRead, RouteResult, Suggestion
from .surface import MapSurface, MarkerSpec, PopupSpec

logger = logging.getLogger(__name__)

MARKER_ICONS = {
    "Road Crash": "🚗",
    "Fire": "🔥",
    "Medical Emergency": "🚑",
    "Flooding": "🌊",
    "Volcanic Activity": "🌋",
    "Landslide": "⛰️",
    "Earthquake": "⚠️",
    "Civil Disturbance": "👥",
    "Armed Conflict": "🛡️",
    "Infectious Disease": "🦠",
    "Evacuation Centers": "🏢",
    "Health Facilities": "🏥",
    "Police Stations": "🚔",
    "Fire Stations": "🚒",
    "Government Offices": "🏛️",
}

MARKER_COLORS = {
    "Road Crash": "#EF4444",
    "Fire": "#F97316",
    "Medical Emergency": "#EC4899",
    "Flooding": "#3B82F6",
    "Volcanic Activity": "#F59E0B",
    "Landslide": "#78350F",
    "Earthquake": "#DC2626",
    "Civil Disturbance": "#7C3AED",
    "Armed Conflict": "#991B1B",
    "Infectious Disease": "#059669",
    "Evacuation Centers": "#8B5CF6",
    "Health Facilities": "#10B981",
    "Police Stations": "#3B82F6",
    "Fire Stations": "#DC2626",
    "Government Offices": "#6366F1",
}

DEFAULT_ICON = "📍"
DEFAULT_COLOR = "#6B7280"
MARKER_SIZE = 32
PREVIEW_MARKER_SIZE = 40

ROUTE_ID = "route"
HEATMAP_SOURCE_ID = "heatmap"
HEATMAP_LAYER_ID = "heatmap-layer"
USER_LOCATION_ID = "user-location"
CLICKED_LOCATION_ID = "clicked-location"

CALCULATING = "Calculating..."
UNABLE_TO_CALCULATE = "Unable to calculate"


def legend() -> dict[str, list[dict[str, str]]]:
    def entries(types):
        return [
            {"type": t.value, "icon": MARKER_ICONS[t.value], "color": MARKER_COLORS[t.value]}
            for t in types
        ]

    return {"hazards": entries(HAZARD_TYPES), "facilities": entries(FACILITY_TYPES)}


class MapState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


@dataclass
class PreviewMarker:
    id: str
    type: str
    title: str
    lng: float
    lat: float
    location_name: Optional[str] = None
    report_id: Optional[str] = None


@dataclass
class ClickedLocation:
    lat: float
    lng: float
    address: str


SurfaceFactory = Callable[[dict[str, Any]], MapSurface]
Locate = Callable[[], Awaitable[Optional[LatLng]]]


class MapRenderer:
    def __init__(
        self,
        surface_factory: SurfaceFactory,
        geocoder: GeocodeClient,
        events: EventBus,
        *,
        center: tuple[float, float] = DEFAULT_CENTER,
        zoom: float = DEFAULT_ZOOM,
        style: str = "streets",
        show_geocoder: bool = False,
        show_directions: bool = True,
        load_timeout: float = MAP_LOAD_TIMEOUT_SECONDS,
    ):
        self._surface_factory = surface_factory
        self._geocoder = geocoder
        self._events = events
        self.center = center
        self.zoom = zoom
        self.style = style
        self.show_geocoder = show_geocoder
        self.show_directions = show_directions
        self.load_timeout = load_timeout

        self.state = MapState.UNINITIALIZED
        self.error: Optional[MapInitError] = None
        self.surface: Optional[MapSurface] = None

        self.pins: list[PinRead] = []
        self.active_types: set[str] = set()
        self.single_marker: Optional[PreviewMarker] = None
        self.user_location: Optional[LatLng] = None
        self.clicked_location: Optional[ClickedLocation] = None
        self.show_only_current_location = False
        self.heatmap_enabled = False
        self.heatmap_points: list[tuple[float, float]] = []
        self.route: Optional[RouteResult] = None

        # Owned per renderer, rebuilt on every reconciliation
        self.markers: dict[str, MarkerSpec] = {}
        self._marker_sources: dict[str, Any] = {}
        self.popup: Optional[PopupSpec] = None
        self._popup_seq = 0
        self._tasks: set[asyncio.Task] = set()
        self._loaded: Optional[asyncio.Future] = None

    # Lifecycle

    async def mount(self, locate: Optional[Locate] = None) -> None:
        await asyncio.gather(self._acquire_location(locate), self.initialize())

    async def _acquire_location(self, locate: Optional[Locate]) -> None:
        if locate is None:
            return
        try:
            location = await asyncio.wait_for(locate(), GEOLOCATION_TIMEOUT_SECONDS)
        except Exception as exc:
            # Travel time and "my location" just stay unavailable
            logger.warning("Error getting user location: %s", exc)
            return
        if location is not None:
            self.set_user_location(location)

    async def initialize(self) -> MapState:
        self._teardown_surface()
        self.state = MapState.INITIALIZING
        self.error = None
        loop = asyncio.get_running_loop()
        self._loaded = loop.create_future()

        try:
            surface = self._surface_factory(
                {"style": MAP_STYLES.get(self.style, self.style), "center": self.center, "zoom": self.zoom}
            )
            surface.add_control(
                "geolocate",
                {"enableHighAccuracy": True, "trackUserLocation": True, "showUserHeading": True},
            )
            surface.add_control("navigation", {})
            if self.show_geocoder:
                surface.add_control(
                    "geocoder",
                    {
                        "placeholder": "Search for a location, institution, or facility...",
                        "bbox": list(SEARCH_BBOX),
                        "proximity": list(DEFAULT_CENTER),
                        "countries": GEOCODER_COUNTRY,
                        "position": "top-left",
                    },
                )
            surface.on("load", self._on_load)
            surface.on("error", self._on_surface_error)
            surface.on("click", self._on_click)
            surface.on("marker_click", self._on_marker_click)
            self.surface = surface
            surface.open()
        except Exception as exc:
            logger.exception("Error initializing map")
            return await self._fail(MapInitError(f"Failed to initialize map: {exc}"))

        try:
            await asyncio.wait_for(asyncio.shield(self._loaded), self.load_timeout)
        except asyncio.TimeoutError:
            logger.error("Map load timeout")
            return await self._fail(MapInitError("Map failed to load within timeout"))
        except MapInitError as exc:
            return await self._fail(exc)

        self.state = MapState.READY
        logger.info("Map loaded successfully")
        self.surface.set_view(self.center, self.zoom)
        self.reconcile()
        self._apply_heatmap()
        if self.route is not None:
            self.display_route(self.route)
        await self._events.emit(ev.LOADED)
        return self.state

    async def retry(self) -> MapState:
        return await self.initialize()

    async def _fail(self, error: MapInitError) -> MapState:
        self.state = MapState.ERROR
        self.error = error
        self._teardown_surface()
        await self._events.emit(ev.MAP_ERROR, error)
        return self.state

    def _on_load(self) -> None:
        if self._loaded is not None and not self._loaded.done():
            self._loaded.set_result(True)

    def _on_surface_error(self, detail: Any = None) -> None:
        logger.error("Map error: %s", detail)
        if self._loaded is not None and not self._loaded.done():
            self._loaded.set_exception(MapInitError("Failed to load map"))

    def _teardown_surface(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self.surface is None:
            return
        self._clear_markers()
        for name in ("geocoder", "navigation", "geolocate"):
            self.surface.remove_control(name)
        self.surface.remove()
        self.surface = None

    def dispose(self) -> None:
        self._teardown_surface()
        self.state = MapState.UNINITIALIZED

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Inputs

    def set_pins(self, pins: Iterable[PinRead]) -> None:
        self.pins = list(pins)
        self.reconcile()

    def set_active_types(self, types: Iterable[str]) -> None:
        self.active_types = set(types)
        self.reconcile()

    def set_single_marker(self, marker: Optional[PreviewMarker], show_only_current_location: bool = False) -> None:
        self.single_marker = marker
        self.show_only_current_location = show_only_current_location
        self.reconcile()

    def set_user_location(self, location: Optional[LatLng]) -> None:
        self.user_location = location
        self.reconcile()

    def set_clicked_location(self, location: Optional[ClickedLocation]) -> None:
        self.clicked_location = location
        self.reconcile()

    def set_view(self, center: tuple[float, float], zoom: float) -> None:
        self.center = center
        self.zoom = zoom
        if self.state != MapState.READY or self.show_only_current_location:
            return
        self.surface.set_view(center, zoom)

    def set_style(self, style: str) -> None:
        if style not in MAP_STYLES:
            raise ValueError(f"Unknown map style: {style}")
        self.style = style
        if self.state == MapState.READY:
            self.surface.set_style(MAP_STYLES[style])

    def set_heatmap(self, enabled: bool, points: Optional[Iterable[tuple[float, float]]] = None) -> None:
        if points is not None:
            self.heatmap_points = list(points)
        self.heatmap_enabled = enabled
        self._apply_heatmap()

    # Markers

    def visible_pins(self) -> list[PinRead]:
        if not self.active_types:
            return list(self.pins)
        return [pin for pin in self.pins if pin.type in self.active_types]

    def _clear_markers(self) -> None:
        for marker_id in list(self.markers):
            self.surface.remove_marker(marker_id)
        self.markers.clear()
        self._marker_sources.clear()
        self.close_popup()

    def _add_marker(self, marker: MarkerSpec, source: Any = None) -> None:
        self.surface.add_marker(marker)
        self.markers[marker.id] = marker
        self._marker_sources[marker.id] = source

    def reconcile(self) -> None:
        if self.state != MapState.READY or self.surface is None:
            return
        self._clear_markers()

        if self.single_marker is not None:
            self._render_single_marker(self.single_marker)
            return

        for pin in self.visible_pins():
            if not is_valid_position(pin.latitude, pin.longitude):
                logger.warning("Skipping pin %s with invalid coordinates", pin.id)
                continue
            self._add_marker(
                MarkerSpec(
                    id=pin.id,
                    kind="pin",
                    lng=pin.longitude,
                    lat=pin.latitude,
                    icon=MARKER_ICONS.get(pin.type, DEFAULT_ICON),
                    color=MARKER_COLORS.get(pin.type, DEFAULT_COLOR),
                    size=MARKER_SIZE,
                    title=pin.title,
                ),
                pin,
            )

    def _render_single_marker(self, preview: PreviewMarker) -> None:
        if not is_valid_position(preview.lat, preview.lng):
            logger.error("Invalid marker coordinates for preview %s", preview.id)
            return
        self._add_marker(
            MarkerSpec(
                id=preview.id,
                kind="preview",
                lng=preview.lng,
                lat=preview.lat,
                icon=MARKER_ICONS.get(preview.type, DEFAULT_ICON),
                color=MARKER_COLORS.get(preview.type, DEFAULT_COLOR),
                size=PREVIEW_MARKER_SIZE,
                title=preview.title,
            ),
            preview,
        )

        if self.user_location is not None and not self.show_only_current_location:
            self._add_marker(
                MarkerSpec(
                    id=USER_LOCATION_ID,
                    kind="user-location",
                    lng=self.user_location.lng,
                    lat=self.user_location.lat,
                    icon="",
                    color="#2563EB",
                    size=16,
                    title="Your current location",
                )
            )

        clicked = self.clicked_location
        if clicked is None:
            return
        self._add_marker(
            MarkerSpec(
                id=CLICKED_LOCATION_ID,
                kind="clicked-location",
                lng=clicked.lng,
                lat=clicked.lat,
                icon="",
                color="#FF4F0B",
                size=16,
                title="Selected location",
            )
        )
        self._popup_seq += 1
        popup = PopupSpec(
            marker_id=CLICKED_LOCATION_ID,
            lng=clicked.lng,
            lat=clicked.lat,
            title="Selected location",
            location=clicked.address,
            coordinates=f"{clicked.lat:.6f}, {clicked.lng:.6f}",
            travel_time=CALCULATING if self.user_location is not None else None,
        )
        self.popup = popup
        self.surface.show_popup(popup)
        if self.user_location is not None:
            self._spawn(self._fill_travel_time(popup, self._popup_seq))

    async def _fill_travel_time(self, popup: PopupSpec, seq: int) -> None:
        route = await self._geocoder.compute_route(self.user_location, LatLng(popup.lat, popup.lng))
        if seq != self._popup_seq or self.surface is None:
            return
        if route is None:
            popup.travel_time = UNABLE_TO_CALCULATE
        else:
            popup.travel_time = f"{route.duration_label} ({route.distance_km} km)"
            popup.distance_km = route.distance_km
            self.display_route(route)
        self.surface.show_popup(popup)

    # Popups

    def close_popup(self) -> None:
        if self.popup is not None and self.surface is not None:
            self.surface.close_popup()
        self.popup = None

    async def open_popup(self, marker_id: str) -> Optional[PopupSpec]:
        """Build popup content lazily: place label and travel time are fetched on open."""
        if self.state != MapState.READY or marker_id not in self.markers:
            return None
        self._popup_seq += 1
        seq = self._popup_seq
        marker = self.markers[marker_id]
        source = self._marker_sources.get(marker_id)

        title = marker.title
        fallback = getattr(source, "location_name", None) or title
        popup = PopupSpec(
            marker_id=marker_id,
            lng=marker.lng,
            lat=marker.lat,
            title=title or fallback,
            location=fallback,
            coordinates=f"{marker.lat:.6f}, {marker.lng:.6f}",
        )
        if isinstance(source, PinRead):
            popup.actions = ["edit", "delete"]

        label = await self._geocoder.reverse_geocode(marker.lat, marker.lng)
        if label != UNKNOWN_LOCATION:
            popup.location = label

        route = None
        if self.show_directions and self.user_location is not None:
            route = await self._geocoder.compute_route(self.user_location, LatLng(marker.lat, marker.lng))
            if route is not None:
                popup.travel_time = route.duration_label
                popup.distance_km = route.distance_km

        # A newer popup or reconciliation happened while we were waiting
        if seq != self._popup_seq or self.surface is None or marker_id not in self.markers:
            return None
        if route is not None:
            self.display_route(route)
        if self.popup is not None:
            self.surface.close_popup()
        self.popup = popup
        self.surface.show_popup(popup)
        return popup

    def _on_marker_click(self, marker_id: str) -> None:
        self._spawn(self.open_popup(marker_id))

    async def request_edit(self, pin_id: str) -> None:
        pin = self._marker_sources.get(pin_id)
        if isinstance(pin, PinRead):
            await self._events.emit(ev.EDIT_PIN, pin)

    async def request_delete(self, pin_id: str) -> None:
        if isinstance(self._marker_sources.get(pin_id), PinRead):
            await self._events.emit(ev.DELETE_PIN, pin_id)

    # Route and heatmap layers

    def display_route(self, route: RouteResult) -> None:
        self.route = route
        if self.state != MapState.READY or self.surface is None:
            return
        if self.surface.has_source(ROUTE_ID):
            self.surface.remove_layer(ROUTE_ID)
            self.surface.remove_source(ROUTE_ID)
        self.surface.add_source(
            ROUTE_ID,
            {"type": "geojson", "data": {"type": "Feature", "properties": {}, "geometry": route.geometry}},
        )
        self.surface.add_layer(
            {
                "id": ROUTE_ID,
                "type": "line",
                "source": ROUTE_ID,
                "layout": {"line-join": "round", "line-cap": "round"},
                "paint": {"line-color": "#FF4F0B", "line-width": 4, "line-opacity": 0.8},
            }
        )
        self.surface.fit_bounds(line_bounds(route.geometry["coordinates"]), ROUTE_FIT_PADDING)

    async def show_route_to(self, lat: float, lng: float) -> Optional[RouteResult]:
        if self.user_location is None:
            return None
        route = await self._geocoder.compute_route(self.user_location, LatLng(lat, lng))
        if route is not None:
            self.display_route(route)
        return route

    def _apply_heatmap(self) -> None:
        if self.state != MapState.READY or self.surface is None:
            return
        if self.heatmap_enabled:
            if self.surface.has_source(HEATMAP_SOURCE_ID):
                return
            self.surface.add_source(
                HEATMAP_SOURCE_ID,
                {
                    "type": "geojson",
                    "data": {
                        "type": "FeatureCollection",
                        "features": [
                            {"type": "Feature", "properties": {}, "geometry": {"type": "Point", "coordinates": [lng, lat]}}
                            for lng, lat in self.heatmap_points
                        ],
                    },
                },
            )
            self.surface.add_layer(
                {
                    "id": HEATMAP_LAYER_ID,
                    "type": "heatmap",
                    "source": HEATMAP_SOURCE_ID,
                    "paint": {
                        "heatmap-weight": 1,
                        "heatmap-intensity": 1,
                        "heatmap-color": [
                            "interpolate", ["linear"], ["heatmap-density"],
                            0, "rgba(0, 0, 255, 0)",
                            0.2, "royalblue",
                            0.4, "cyan",
                            0.6, "lime",
                            0.8, "yellow",
                            1, "red",
                        ],
                        "heatmap-radius": 30,
                        "heatmap-opacity": 0.8,
                    },
                }
            )
        else:
            if self.surface.has_layer(HEATMAP_LAYER_ID):
                self.surface.remove_layer(HEATMAP_LAYER_ID)
            if self.surface.has_source(HEATMAP_SOURCE_ID):
                self.surface.remove_source(HEATMAP_SOURCE_ID)

    # Map interaction

    def _on_click(self, lng: float, lat: float) -> None:
        self._spawn(self.handle_click(lng, lat))

    async def handle_click(self, lng: float, lat: float) -> None:
        if self.state != MapState.READY:
            return
        if self.show_directions:
            self.surface.fly_to((lng, lat), 12)
            await self.show_route_to(lat, lng)
        await self._events.emit(ev.MAP_CLICK, lng, lat)

    async def handle_geocoder_result(self, suggestion: Suggestion) -> None:
        if self.state != MapState.READY:
            return
        self.surface.fly_to((suggestion.longitude, suggestion.latitude), 16)
        if self.show_directions:
            await self.show_route_to(suggestion.latitude, suggestion.longitude)
        await self._events.emit(ev.GEOCODER_RESULT, suggestion)

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "error": str(self.error) if self.error else None,
            "scene": self.surface.scene() if self.surface is not None and hasattr(self.surface, "scene") else None,
        }
