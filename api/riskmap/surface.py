import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional, Protocol

@dataclass
class MarkerSpec:
    id: str
    kind: str
    lng: float
    lat: float
    icon: str
    color: str
    size: int
    title: str = ""

@dataclass
class PopupSpec:
    marker_id: str
    lng: float
    lat: float
    title: str
    location: str
    coordinates: Optional[str] = None
    travel_time: Optional[str] = None
    distance_km: Optional[float] = None
    actions: list[str] = field(default_factory=list)

class MapSurface(Protocol):
    """Drawing primitives of the map provider."""

    def on(self, event: str, handler: Callable[..., Any]) -> None: ...

    def open(self) -> None: ...

    def remove(self) -> None: ...

    def add_control(self, name: str, options: dict[str, Any]) -> None: ...

    def remove_control(self, name: str) -> None: ...

    def add_marker(self, marker: MarkerSpec) -> None: ...

    def remove_marker(self, marker_id: str) -> None: ...

    def show_popup(self, popup: PopupSpec) -> None: ...

    def close_popup(self) -> None: ...

    def add_source(self, source_id: str, data: dict[str, Any]) -> None: ...

    def remove_source(self, source_id: str) -> None: ...

    def has_source(self, source_id: str) -> bool: ...

    def add_layer(self, layer: dict[str, Any]) -> None: ...

    def remove_layer(self, layer_id: str) -> None: ...

    def has_layer(self, layer_id: str) -> bool: ...

    def set_view(self, center: tuple[float, float], zoom: float) -> None: ...

    def fly_to(self, center: tuple[float, float], zoom: float) -> None: ...

    def fit_bounds(self, bounds, padding: int) -> None: ...

    def set_style(self, style: str) -> None: ...

class SceneSurface:
    """In-memory map surface serialised as a JSON scene for the browser client.

    ``auto_load`` fires the ``load`` event on the next loop iteration after
    ``open``; otherwise the client acknowledges it through ``mark_loaded``.
    """

    def __init__(self, style: str, center: tuple[float, float], zoom: float, auto_load: bool = True):
        self.style = style
        self.center = center
        self.zoom = zoom
        self.bounds = None
        self.padding = 0
        self.auto_load = auto_load
        self.loaded = False
        self.removed = False
        self.controls: dict[str, dict[str, Any]] = {}
        self.markers: dict[str, MarkerSpec] = {}
        self.popup: Optional[PopupSpec] = None
        self.sources: dict[str, dict[str, Any]] = {}
        self.layers: dict[str, dict[str, Any]] = {}
        self._handlers: dict[str, list[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        if self.removed:
            return
        for handler in list(self._handlers.get(event, [])):
            handler(*args)

    def open(self) -> None:
        if self.auto_load:
            asyncio.get_running_loop().call_soon(self.mark_loaded)

    def mark_loaded(self) -> None:
        if self.loaded or self.removed:
            return
        self.loaded = True
        self.emit("load")

    def remove(self) -> None:
        self.controls.clear()
        self.markers.clear()
        self.popup = None
        self.sources.clear()
        self.layers.clear()
        self._handlers.clear()
        self.removed = True

    def add_control(self, name: str, options: dict[str, Any]) -> None:
        self.controls[name] = options

    def remove_control(self, name: str) -> None:
        self.controls.pop(name, None)

    def add_marker(self, marker: MarkerSpec) -> None:
        self.markers[marker.id] = marker

    def remove_marker(self, marker_id: str) -> None:
        self.markers.pop(marker_id, None)

    def show_popup(self, popup: PopupSpec) -> None:
        self.popup = popup

    def close_popup(self) -> None:
        self.popup = None

    def add_source(self, source_id: str, data: dict[str, Any]) -> None:
        if source_id in self.sources:
            raise ValueError(f"Source {source_id!r} already exists")
        self.sources[source_id] = data

    def remove_source(self, source_id: str) -> None:
        if any(layer["source"] == source_id for layer in self.layers.values()):
            raise ValueError(f"Source {source_id!r} is still used by a layer")
        self.sources.pop(source_id, None)

    def has_source(self, source_id: str) -> bool:
        return source_id in self.sources

    def add_layer(self, layer: dict[str, Any]) -> None:
        if layer["source"] not in self.sources:
            raise ValueError(f"Layer {layer['id']!r} references a missing source")
        self.layers[layer["id"]] = layer

    def remove_layer(self, layer_id: str) -> None:
        self.layers.pop(layer_id, None)

    def has_layer(self, layer_id: str) -> bool:
        return layer_id in self.layers

    def set_view(self, center: tuple[float, float], zoom: float) -> None:
        self.center = center
        self.zoom = zoom
        self.bounds = None

    def fly_to(self, center: tuple[float, float], zoom: float) -> None:
        self.set_view(center, zoom)

    def fit_bounds(self, bounds, padding: int) -> None:
        self.bounds = bounds
        self.padding = padding

    def set_style(self, style: str) -> None:
        self.style = style

    def scene(self) -> dict[str, Any]:
        return {
            "style": self.style,
            "center": list(self.center),
            "zoom": self.zoom,
            "bounds": [list(corner) for corner in self.bounds] if self.bounds else None,
            "padding": self.padding,
            "loaded": self.loaded,
            "controls": dict(self.controls),
            "markers": [asdict(m) for m in self.markers.values()],
            "popup": asdict(self.popup) if self.popup else None,
            "sources": dict(self.sources),
            "layers": list(self.layers.values()),
        }
