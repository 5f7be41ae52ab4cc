"""One operator's live map view: filters, realtime pins, map and pin form."""

import logging
from datetime import date, datetime
from typing import Any, Callable, Optional

from . import events as ev
from .authoring import AuthoringMode, PinAuthoringController
from .config import MAP_STYLES
from .errors import ConsoleError, StoreError, ValidationError
from .events import EventBus
from .filters import FilterSelection, build_filters, quick_range, select_all, toggle
from .geo import LatLng, is_valid_position
from .mapbox import GeocodeClient, SuggestionSearch
from .pinStore import PinFeed, PinStore
from .renderer import Locate, MapRenderer, SurfaceFactory
from .schemas import Operator, PinRead, Suggestion
from .surface import SceneSurface

logger = logging.getLogger(__name__)


def scene_surface(options: dict[str, Any]) -> SceneSurface:
    return SceneSurface(options["style"], options["center"], options["zoom"])


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {value!r}") from exc


class ConsoleSession:
    def __init__(
        self,
        store: PinStore,
        geocoder: GeocodeClient,
        send: Callable[[dict[str, Any]], None],
        *,
        operator: Optional[Operator] = None,
        surface_factory: SurfaceFactory = scene_surface,
        show_geocoder: bool = True,
        today: Callable[[], date] = date.today,
    ):
        self._store = store
        self._send = send
        self._today = today
        self.events = EventBus()
        self.selection = FilterSelection()
        self.date_from: Optional[datetime] = None
        self.date_to: Optional[datetime] = None
        self.search_query: Optional[str] = None
        self.pins: list[PinRead] = []
        self.pending_delete: Optional[str] = None

        self.renderer = MapRenderer(surface_factory, geocoder, self.events, show_geocoder=show_geocoder)
        self.authoring = PinAuthoringController(store, geocoder, operator)
        self.feed = PinFeed(store, self._on_pins, self._on_store_error)
        self.search = SuggestionSearch(geocoder, self._on_suggestions)

        self.events.on(ev.MAP_CLICK, self._on_map_click)
        self.events.on(ev.EDIT_PIN, self._on_edit_pin)
        self.events.on(ev.DELETE_PIN, self._on_delete_pin)
        self.events.on(ev.MAP_ERROR, self._on_map_error)
        self.events.on(ev.GEOCODER_RESULT, self._on_geocoder_result)

        self._handlers = {
            "toggle_filter": self._toggle_filter,
            "select_all": self._select_all,
            "set_dates": self._set_dates,
            "quick_range": self._quick_range,
            "set_search": self._set_search,
            "search": self._search,
            "select_suggestion": self._select_suggestion,
            "map_click": self._map_click,
            "retry_map": self._retry_map,
            "open_popup": self._open_popup,
            "heatmap": self._heatmap,
            "style": self._style,
            "view": self._view,
            "location": self._location,
            "open_pin_form": self._open_pin_form,
            "update_form": self._update_form,
            "change_location": self._change_location,
            "save_pin": self._save_pin,
            "reset_form": self._reset_form,
            "close_pin_form": self._close_pin_form,
            "edit_pin": self._edit_pin,
            "delete_pin": self._delete_pin,
        }

    async def start(self, locate: Optional[Locate] = None) -> None:
        await self.renderer.mount(locate)
        self._refresh_feed()
        self._send_filters()
        self._send_scene()

    def close(self) -> None:
        self.feed.close()
        self.search.close()
        self.renderer.dispose()
        self.events.clear()

    async def handle(self, message: dict[str, Any]) -> None:
        action = message.get("action")
        handler = self._handlers.get(action)
        if handler is None:
            self.notify(ValidationError(f"Unknown action: {action}"))
            return
        try:
            await handler(message)
        except ConsoleError as exc:
            self.notify(exc)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Bad %s message: %s", action, exc)
            self.notify(ValidationError(f"Invalid {action} request"))

    def notify(self, error: ConsoleError, level: str = "error") -> None:
        self._send({"type": "notice", "level": level, "code": error.error_code, "message": str(error)})

    def _notify_info(self, message: str) -> None:
        self._send({"type": "notice", "level": "info", "code": "OK", "message": message})

    # Outbound

    def _send_scene(self) -> None:
        self._send({"type": "scene", **self.renderer.snapshot()})

    def _send_filters(self) -> None:
        self._send(
            {
                "type": "filters",
                "selection": self.selection.as_dict(),
                "date_from": self.date_from.isoformat() if self.date_from else None,
                "date_to": self.date_to.isoformat() if self.date_to else None,
                "search": self.search_query,
            }
        )

    def _send_authoring(self) -> None:
        self._send({"type": "authoring", **self.authoring.snapshot()})

    def _on_pins(self, pins: list[PinRead]) -> None:
        self.pins = pins
        self.renderer.set_pins(pins)
        self._send({"type": "pins", "pins": [p.model_dump(mode="json", by_alias=True) for p in pins]})
        self._send_scene()

    def _on_store_error(self, error: StoreError) -> None:
        self.notify(error)

    def _on_suggestions(self, suggestions: list[Suggestion], status: str) -> None:
        self._send(
            {"type": "suggestions", "status": status, "suggestions": [s.model_dump() for s in suggestions]}
        )

    # Filters

    def _refresh_feed(self) -> None:
        filters = build_filters(self.selection, self.date_from, self.date_to, self.search_query)
        self.renderer.set_active_types(filters.types)
        self.feed.set_filters(filters)

    def _apply_selection(self, selection: FilterSelection, error: Optional[ConsoleError]) -> None:
        if error is not None:
            self.notify(error, level="warning")
            return
        self.selection = selection
        self._refresh_feed()
        self._send_filters()

    async def _toggle_filter(self, message: dict) -> None:
        self._apply_selection(*toggle(self.selection, message["group"], message["key"]))

    async def _select_all(self, message: dict) -> None:
        self._apply_selection(*select_all(self.selection, message["group"], bool(message["checked"])))

    async def _set_dates(self, message: dict) -> None:
        self.date_from = _parse_datetime(message.get("from"))
        self.date_to = _parse_datetime(message.get("to"))
        self._refresh_feed()
        self._send_filters()

    async def _quick_range(self, message: dict) -> None:
        self.date_from, self.date_to = quick_range(message["period"], self._today())
        self._refresh_feed()
        self._send_filters()

    async def _set_search(self, message: dict) -> None:
        self.search_query = (message.get("query") or "").strip() or None
        self._refresh_feed()
        self._send_filters()

    # Geocoder

    async def _search(self, message: dict) -> None:
        self.search.update(message.get("query") or "")

    async def _select_suggestion(self, message: dict) -> None:
        suggestion = self.search.suggestions[int(message["index"])]
        self.search.update("")
        await self.renderer.handle_geocoder_result(suggestion)
        self._send_scene()

    async def _on_geocoder_result(self, suggestion: Suggestion) -> None:
        self._send({"type": "geocoder_result", **suggestion.model_dump()})

    # Map

    async def _map_click(self, message: dict) -> None:
        await self.renderer.handle_click(float(message["lng"]), float(message["lat"]))
        self._send_scene()

    async def _on_map_click(self, lng: float, lat: float) -> None:
        if self.authoring.is_open:
            await self.authoring.handle_map_click(lng, lat)
            self._sync_preview()
            self._send_authoring()
            return
        self._send({"type": "map_click", "lng": lng, "lat": lat})

    async def _on_map_error(self, error: ConsoleError) -> None:
        self.notify(error)
        self._send_scene()

    async def _retry_map(self, message: dict) -> None:
        await self.renderer.retry()
        self._send_scene()

    async def _open_popup(self, message: dict) -> None:
        await self.renderer.open_popup(message["marker_id"])
        self._send_scene()

    async def _heatmap(self, message: dict) -> None:
        enabled = bool(message["enabled"])
        points = None
        if enabled:
            # Built from every pin, not the filtered view
            points = [(p.longitude, p.latitude) for p in self._store.fetch()]
        self.renderer.set_heatmap(enabled, points)
        self._send_scene()

    async def _style(self, message: dict) -> None:
        name = message["name"]
        if name not in MAP_STYLES:
            raise ValidationError(f"Unknown map style: {name}")
        self.renderer.set_style(name)
        self._send_scene()

    async def _view(self, message: dict) -> None:
        lng, lat = (float(v) for v in message["center"])
        if not is_valid_position(lat, lng):
            raise ValidationError(f"Invalid map center: {lat}, {lng}")
        self.renderer.set_view((lng, lat), float(message.get("zoom", self.renderer.zoom)))
        self._send_scene()

    async def _location(self, message: dict) -> None:
        self.renderer.set_user_location(LatLng(float(message["lat"]), float(message["lng"])))
        self._send_scene()

    # Pin authoring

    def _sync_preview(self) -> None:
        self.renderer.set_single_marker(self.authoring.preview_marker())
        self._send_scene()

    async def _open_pin_form(self, message: dict) -> None:
        mode = AuthoringMode(message.get("mode", "create"))
        if mode == AuthoringMode.EDIT:
            pin = self._store.get(message["pin_id"])
            if pin is None:
                raise ValidationError(f"Pin {message['pin_id']} no longer exists")
            self.authoring.open(mode, pin)
        else:
            self.authoring.open(mode, message.get("prefill"))
        self._sync_preview()
        self._send_authoring()

    async def _update_form(self, message: dict) -> None:
        self.authoring.update_form(**message.get("fields", {}))
        self._sync_preview()
        self._send_authoring()

    async def _change_location(self, message: dict) -> None:
        self.authoring.change_location()
        self._send_authoring()

    async def _save_pin(self, message: dict) -> None:
        try:
            pin_id = self.authoring.save(message.get("form"))
        finally:
            self._send_authoring()
        self._sync_preview()
        self._notify_info(f"Pin {pin_id} saved")

    async def _reset_form(self, message: dict) -> None:
        self.authoring.reset()
        self._sync_preview()
        self._send_authoring()

    async def _close_pin_form(self, message: dict) -> None:
        self.authoring.close()
        self._sync_preview()
        self._send_authoring()

    async def _edit_pin(self, message: dict) -> None:
        await self.renderer.request_edit(message["id"])

    async def _on_edit_pin(self, pin: PinRead) -> None:
        self.authoring.open(AuthoringMode.EDIT, pin)
        self._sync_preview()
        self._send_authoring()

    async def _delete_pin(self, message: dict) -> None:
        pin_id = message["id"]
        if not message.get("confirmed"):
            await self.renderer.request_delete(pin_id)
            return
        if pin_id != self.pending_delete:
            raise ValidationError("Deletion was not requested for this pin")
        self.pending_delete = None
        self._store.delete(pin_id)
        self._notify_info(f"Pin {pin_id} deleted")

    async def _on_delete_pin(self, pin_id: str) -> None:
        # Deleting always goes through an explicit confirmation
        self.pending_delete = pin_id
        self._send({"type": "confirm_delete", "id": pin_id})
