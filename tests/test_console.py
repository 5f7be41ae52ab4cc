import asyncio
from datetime import date

from conftest import FakeGeocoder

from riskmap.console import ConsoleSession
from riskmap.geo import LatLng
from riskmap.renderer import MapState
from riskmap.schemas import Operator, Suggestion


def _seed(store, clock):
    fire = store.create(
        {"type": "Fire", "title": "Market fire", "latitude": 14.11, "longitude": 121.55, "locationName": "Lucban"}
    )
    clock.advance(minutes=1)
    flood = store.create(
        {"type": "Flooding", "title": "Flooded road", "latitude": 14.12, "longitude": 121.56, "locationName": "Ayuti"}
    )
    return fire, flood


class Console:
    def __init__(self, store, geocoder=None):
        self.messages = []
        self.store = store
        self.geocoder = geocoder or FakeGeocoder()
        self.session = None

    def last(self, kind):
        for message in reversed(self.messages):
            if message["type"] == kind:
                return message
        return None

    def run(self, *actions, locate=None):
        async def scenario():
            self.session = ConsoleSession(
                self.store,
                self.geocoder,
                self.messages.append,
                operator=Operator(id="op-1", name="Dispatcher"),
                today=lambda: date(2024, 3, 13),
            )
            await self.session.start(locate)
            for action in actions:
                await self.session.handle(action)
                for _ in range(3):
                    await asyncio.sleep(0)
            self.session.close()

        asyncio.run(scenario())
        return self


def test_start_sends_pins_filters_and_ready_scene(store, clock):
    _seed(store, clock)
    console = Console(store).run()

    pins = console.last("pins")["pins"]
    assert [p["title"] for p in pins] == ["Flooded road", "Market fire"]
    assert "locationName" in pins[0]
    assert console.last("filters")["selection"]["active"] == 0
    scene = console.last("scene")
    assert scene["state"] == MapState.READY.value
    assert len(scene["scene"]["markers"]) == 2


def test_close_releases_subscription(store):
    Console(store).run()
    assert store.live_subscriptions == 0


def test_toggle_filter_narrows_pins(store, clock):
    _seed(store, clock)
    console = Console(store).run({"action": "toggle_filter", "group": "hazard", "key": "flooding"})

    assert [p["type"] for p in console.last("pins")["pins"]] == ["Flooding"]
    assert console.last("filters")["selection"]["hazard"]["flooding"] is True


def test_filter_ceiling_is_reported_as_warning(store):
    keys = ["road_crash", "fire", "medical_emergency", "flooding", "volcanic_activity", "landslide"]
    actions = [{"action": "toggle_filter", "group": "hazard", "key": k} for k in keys]
    actions.append({"action": "select_all", "group": "facility", "checked": True})
    console = Console(store).run(*actions)

    notice = console.last("notice")
    assert notice["level"] == "warning"
    assert notice["code"] == "LIMIT_EXCEEDED"
    assert console.last("filters")["selection"]["active"] == 6


def test_unknown_action_and_bad_payload_are_notices(store):
    console = Console(store).run({"action": "launch"}, {"action": "toggle_filter", "group": "hazard"})
    notices = [m for m in console.messages if m["type"] == "notice"]
    assert [n["code"] for n in notices] == ["VALIDATION_ERROR", "VALIDATION_ERROR"]


def test_quick_range_and_search(store, clock):
    _seed(store, clock)
    console = Console(store).run(
        {"action": "quick_range", "period": "year"},
        {"action": "set_search", "query": "market"},
    )
    filters = console.last("filters")
    assert filters["date_from"].startswith("2024-01-01")
    assert filters["search"] == "market"
    assert [p["title"] for p in console.last("pins")["pins"]] == ["Market fire"]


def test_date_window_excludes_older_pins(store, clock):
    _seed(store, clock)
    console = Console(store).run({"action": "set_dates", "from": "2024-03-11T00:00:00+00:00", "to": None})
    assert console.last("pins")["pins"] == []
    assert console.last("filters")["date_to"] is None


def test_create_pin_through_map_click(store):
    console = Console(store).run(
        {"action": "open_pin_form", "mode": "create"},
        {"action": "map_click", "lng": 121.5556, "lat": 14.1139},
        {"action": "update_form", "fields": {"type": "Fire", "title": "Warehouse fire"}},
        {"action": "save_pin"},
    )

    pins = store.fetch()
    assert [p.title for p in pins] == ["Warehouse fire"]
    assert pins[0].location_name == "Lucban, Quezon, Philippines"
    assert pins[0].created_by == "op-1"
    assert console.last("authoring")["state"] == "idle"
    assert console.last("notice")["level"] == "info"


def test_invalid_save_keeps_form_open(store):
    console = Console(store).run(
        {"action": "open_pin_form", "mode": "create"},
        {"action": "update_form", "fields": {"type": "Fire", "title": "No location"}},
        {"action": "save_pin"},
    )
    assert store.fetch() == []
    assert console.last("authoring")["state"] == "awaiting_map_click"
    assert console.last("notice")["code"] == "VALIDATION_ERROR"


def test_map_click_without_form_is_forwarded(store):
    console = Console(store).run({"action": "map_click", "lng": 121.55, "lat": 14.11})
    assert console.last("map_click") == {"type": "map_click", "lng": 121.55, "lat": 14.11}


def test_delete_requires_confirmation(store, clock):
    fire, flood = _seed(store, clock)
    console = Console(store).run(
        {"action": "delete_pin", "id": fire, "confirmed": True},
        {"action": "delete_pin", "id": fire},
        {"action": "delete_pin", "id": fire, "confirmed": True},
    )

    assert console.last("confirm_delete") == {"type": "confirm_delete", "id": fire}
    assert [p.id for p in store.fetch()] == [flood]
    codes = [m["code"] for m in console.messages if m["type"] == "notice"]
    assert codes == ["VALIDATION_ERROR", "OK"]


def test_edit_pin_opens_form_in_edit_mode(store, clock):
    fire, _ = _seed(store, clock)
    console = Console(store).run(
        {"action": "edit_pin", "id": fire},
        {"action": "update_form", "fields": {"title": "Market fire under control"}},
        {"action": "save_pin"},
    )
    assert store.get(fire).title == "Market fire under control"
    edits = [m for m in console.messages if m["type"] == "authoring" and m["mode"] == "edit"]
    assert edits[0]["form"]["id"] == fire


def test_heatmap_uses_all_pins(store, clock):
    _seed(store, clock)
    console = Console(store).run(
        {"action": "toggle_filter", "group": "hazard", "key": "fire"},
        {"action": "heatmap", "enabled": True},
    )
    scene = console.last("scene")["scene"]
    assert len(scene["sources"]["heatmap"]["data"]["features"]) == 2
    assert len(scene["markers"]) == 1


def test_style_change_and_unknown_style(store):
    console = Console(store).run({"action": "style", "name": "satellite"}, {"action": "style", "name": "neon"})
    assert console.session.renderer.style == "satellite"
    assert console.last("notice")["code"] == "VALIDATION_ERROR"


def test_geolocation_is_used_for_routes(store):
    geocoder = FakeGeocoder()

    async def locate():
        return LatLng(14.10, 121.54)

    Console(store, geocoder).run({"action": "map_click", "lng": 121.55, "lat": 14.11}, locate=locate)
    assert geocoder.route_calls == [(LatLng(14.10, 121.54), LatLng(14.11, 121.55))]


def test_suggestion_selection_flies_to_result(store):
    geocoder = FakeGeocoder()
    geocoder.suggestions = [Suggestion(label="Lucena City", text="Lucena", longitude=121.61, latitude=13.93)]

    async def scenario(messages):
        session = ConsoleSession(store, geocoder, messages.append)
        session.search._delay = 0
        await session.start()
        await session.handle({"action": "search", "query": "Lucena"})
        await session.search.drain()
        await session.handle({"action": "select_suggestion", "index": 0})
        session.close()

    messages = []
    asyncio.run(scenario(messages))
    kinds = [m["type"] for m in messages]
    assert "suggestions" in kinds
    result = [m for m in messages if m["type"] == "geocoder_result"][0]
    assert result["label"] == "Lucena City"
    scene = [m for m in messages if m["type"] == "scene"][-1]["scene"]
    assert scene["center"] == [121.61, 13.93]
    assert scene["zoom"] == 16


def test_view_action_moves_map(store):
    console = Console(store).run(
        {"action": "view", "center": [121.61, 13.93], "zoom": 12},
        {"action": "view", "center": [121.61, 95.0]},
    )
    scene = console.last("scene")["scene"]
    assert scene["center"] == [121.61, 13.93]
    assert scene["zoom"] == 12
    assert console.last("notice")["code"] == "VALIDATION_ERROR"
