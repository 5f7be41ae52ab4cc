import inspect
from collections import defaultdict
from typing import Any, Callable

LOADED = "loaded"
MAP_ERROR = "map_error"
MAP_CLICK = "map_click"
GEOCODER_RESULT = "geocoder_result"
EDIT_PIN = "edit_pin"
DELETE_PIN = "delete_pin"

class EventBus:
    """Named-event channel between the map, the authoring flow and the host view."""

    def __init__(self):
        self._handlers: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            result = handler(*args, **kwargs)
            if inspect.isawaitable(result):
                await result

    def clear(self) -> None:
        self._handlers.clear()
