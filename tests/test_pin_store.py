from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from riskmap.config import UNKNOWN_LOCATION
from riskmap.errors import NotFoundError, PersistenceError, StoreError, ValidationError
from riskmap.pinStore import PERMISSION_DENIED, PinFeed, PinStore, _store_error
from riskmap.schemas import Operator, PinCategory, PinFilters


def _pin(**overrides):
    data = {
        "type": "Fire",
        "title": "Warehouse fire",
        "latitude": 14.1139,
        "longitude": 121.5556,
        "locationName": "Lucban, Quezon",
    }
    data.update(overrides)
    return data


class Recorder:
    def __init__(self):
        self.snapshots = []
        self.errors = []

    def on_data(self, pins):
        self.snapshots.append(pins)

    def on_error(self, error):
        self.errors.append(error)

    @property
    def last(self):
        return self.snapshots[-1]


def test_create_returns_id_and_stores_pin(store, clock):
    operator = Operator(id="op-7", name="Dispatcher Cruz")
    pin_id = store.create(_pin(reportId="R-100"), operator)

    pin = store.get(pin_id)
    assert pin.title == "Warehouse fire"
    assert pin.category == PinCategory.ACCIDENT
    assert pin.report_id == "R-100"
    assert pin.created_by == "op-7"
    assert pin.created_by_name == "Dispatcher Cruz"
    assert pin.created_at == clock.now
    assert pin.updated_at == clock.now


def test_create_defaults_operator_and_location(store):
    pin_id = store.create(_pin(type="Police Stations", locationName="  "))
    pin = store.get(pin_id)
    assert pin.location_name == UNKNOWN_LOCATION
    assert pin.category == PinCategory.FACILITY
    assert pin.created_by == "unknown"
    assert pin.created_by_name == "Unknown Admin"


@pytest.mark.parametrize(
    "overrides",
    [
        {"latitude": None},
        {"longitude": None},
        {"type": None},
        {"title": "   "},
        {"title": "x" * 61},
        {"type": "Tornado"},
        {"latitude": 91},
        {"longitude": -181},
    ],
)
def test_create_rejects_invalid_pins(store, overrides):
    with pytest.raises(ValidationError):
        store.create(_pin(**overrides))
    assert store.fetch() == []


def test_create_accepts_sixty_character_title(store):
    pin_id = store.create(_pin(title="x" * 60))
    assert len(store.get(pin_id).title) == 60


def test_update_is_partial_and_refreshes_timestamps(store, clock):
    pin_id = store.create(_pin())
    clock.advance(minutes=5)

    store.update(pin_id, {"title": "Warehouse fire contained"})

    pin = store.get(pin_id)
    assert pin.title == "Warehouse fire contained"
    assert pin.location_name == "Lucban, Quezon"
    assert pin.latitude == 14.1139
    assert pin.updated_at == clock.now
    assert pin.created_at < pin.updated_at


def test_update_recomputes_category_from_type(store):
    pin_id = store.create(_pin())
    store.update(pin_id, {"type": "Fire Stations"})
    assert store.get(pin_id).category == PinCategory.FACILITY


def test_update_cannot_clear_required_fields(store):
    pin_id = store.create(_pin())
    with pytest.raises(ValidationError):
        store.update(pin_id, {"latitude": None})
    with pytest.raises(ValidationError):
        store.update(pin_id, {"title": ""})
    assert store.get(pin_id).title == "Warehouse fire"


def test_update_and_delete_missing_pin(store):
    with pytest.raises(NotFoundError):
        store.update("missing", {"title": "Nothing"})
    with pytest.raises(NotFoundError):
        store.delete("missing")


def test_delete_removes_pin(store):
    pin_id = store.create(_pin())
    store.delete(pin_id)
    assert store.get(pin_id) is None


def test_subscribe_delivers_initial_and_mutation_snapshots(store):
    recorder = Recorder()
    unsubscribe = store.subscribe(PinFilters(), recorder.on_data)
    assert recorder.snapshots == [[]]

    first = store.create(_pin(title="First"))
    assert [p.id for p in recorder.last] == [first]

    store.update(first, {"title": "First updated"})
    assert recorder.last[0].title == "First updated"

    store.delete(first)
    assert recorder.last == []

    unsubscribe()
    store.create(_pin(title="After"))
    assert len(recorder.snapshots) == 4
    assert store.live_subscriptions == 0


def test_snapshots_are_newest_first(store, clock):
    older = store.create(_pin(title="Older"))
    clock.advance(hours=1)
    newer = store.create(_pin(title="Newer"))
    assert [p.id for p in store.fetch()] == [newer, older]


def test_type_filter_limits_snapshot(store):
    recorder = Recorder()
    store.create(_pin(type="Flooding", title="Flooded road"))
    store.create(_pin(type="Fire", title="House fire"))
    store.subscribe(PinFilters(types=["Flooding"]), recorder.on_data)
    assert [p.type for p in recorder.last] == ["Flooding"]


def test_category_and_report_filters(store):
    store.create(_pin(type="Health Facilities", title="Clinic"))
    store.create(_pin(title="Grass fire", reportId="R-9"))

    facilities = store.fetch(PinFilters(categories=[PinCategory.FACILITY]))
    assert [p.title for p in facilities] == ["Clinic"]
    accidents = store.fetch(PinFilters(categories=[PinCategory.ACCIDENT]))
    assert [p.title for p in accidents] == ["Grass fire"]
    assert [p.title for p in store.fetch(PinFilters(report_id="R-9"))] == ["Grass fire"]


def test_date_range_is_inclusive(store, clock):
    first = store.create(_pin(title="Morning"))
    start = clock.now
    clock.advance(hours=2)
    second = store.create(_pin(title="Midday"))
    end = clock.now
    clock.advance(hours=2)
    store.create(_pin(title="Afternoon"))

    pins = store.fetch(PinFilters(date_from=start, date_to=end))
    assert {p.id for p in pins} == {first, second}


def test_naive_date_bounds_are_treated_as_utc(store, clock):
    store.create(_pin())
    pins = store.fetch(PinFilters(date_from=datetime(2024, 3, 10, 0, 0), date_to=datetime(2024, 3, 10, 23, 59)))
    assert len(pins) == 1
    assert store.fetch(PinFilters(date_from=datetime(2024, 3, 11, tzinfo=timezone.utc))) == []


def test_search_matches_title_location_and_type(store):
    store.create(_pin(title="Overturned jeepney", type="Road Crash", locationName="Maharlika Highway"))
    store.create(_pin(title="Kitchen fire", locationName="Barangay Ayuti"))

    assert [p.title for p in store.fetch(PinFilters(search_query="JEEPNEY"))] == ["Overturned jeepney"]
    assert [p.title for p in store.fetch(PinFilters(search_query="ayuti"))] == ["Kitchen fire"]
    assert [p.title for p in store.fetch(PinFilters(search_query="road crash"))] == ["Overturned jeepney"]
    assert [p.title for p in store.fetch(PinFilters(search_query="highway jeepney"))] == ["Overturned jeepney"]
    assert store.fetch(PinFilters(search_query="landslide")) == []


def test_permission_denied_becomes_empty_snapshot(store, monkeypatch):
    recorder = Recorder()

    def denied(filters=None):
        raise StoreError(PERMISSION_DENIED, "Missing or insufficient permissions")

    monkeypatch.setattr(store, "fetch", denied)
    store.subscribe(PinFilters(report_id="R-1"), recorder.on_data, recorder.on_error)

    assert recorder.snapshots == [[]]
    assert recorder.errors == []


def test_other_store_errors_reach_error_callback(store, monkeypatch):
    recorder = Recorder()

    def unavailable(filters=None):
        raise StoreError("unavailable", "Pin store is unreachable")

    monkeypatch.setattr(store, "fetch", unavailable)
    store.subscribe(PinFilters(), recorder.on_data, recorder.on_error)

    assert recorder.snapshots == []
    assert [e.as_dict() for e in recorder.errors] == [
        {"code": "unavailable", "message": "Pin store is unreachable"}
    ]


def test_store_error_classification():
    class Orig(Exception):
        pgcode = "42501"

    denied = _store_error(OperationalError("SELECT", {}, Orig("denied")))
    assert denied.code == PERMISSION_DENIED
    down = _store_error(OperationalError("SELECT", {}, Exception("connection refused")))
    assert down.code == "unavailable"


def test_failed_commit_raises_persistence_error(session_factory):
    def broken_factory():
        session = session_factory()

        def commit():
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        session.commit = commit
        return session

    store = PinStore(broken_factory)
    with pytest.raises(PersistenceError):
        store.create(_pin())


def test_failing_subscriber_does_not_block_others(store):
    recorder = Recorder()

    def explode(pins):
        if pins:
            raise RuntimeError("view crashed")

    store.subscribe(PinFilters(), explode)
    store.subscribe(PinFilters(), recorder.on_data)
    store.create(_pin())
    assert len(recorder.last) == 1


def test_feed_keeps_single_live_subscription(store):
    recorder = Recorder()
    feed = PinFeed(store, recorder.on_data)
    filters = PinFilters(types=["Fire"])

    feed.set_filters(filters)
    feed.set_filters(filters)
    assert store.live_subscriptions == 1
    assert len(recorder.snapshots) == 1

    for types in (["Fire"], ["Flooding"], ["Fire", "Flooding"]):
        feed.set_filters(PinFilters(types=types))
        assert store.live_subscriptions == 1
    assert len(recorder.snapshots) == 4

    feed.close()
    assert store.live_subscriptions == 0
    assert not feed.live
