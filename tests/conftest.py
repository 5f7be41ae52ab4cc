import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from riskmap.config import UNKNOWN_LOCATION
from riskmap.db import Base
from riskmap.pinStore import PinStore
from riskmap.schemas import RouteResult


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGeocoder:
    def __init__(self, label: str = "Lucban, Quezon, Philippines", route: RouteResult = None):
        self.label = label
        self.route = route
        self.reverse_calls = []
        self.route_calls = []
        self.search_calls = []
        self.suggestions = []

    async def reverse_geocode(self, lat, lng):
        self.reverse_calls.append((lat, lng))
        return self.label

    async def compute_route(self, origin, destination):
        self.route_calls.append((origin, destination))
        return self.route

    async def search(self, query):
        suggestions, _ = await self.search_with_status(query)
        return suggestions

    async def search_with_status(self, query):
        self.search_calls.append(query)
        return list(self.suggestions), False


def make_route(coordinates=((121.55, 14.11), (121.56, 14.12)), minutes=25, km=7.4) -> RouteResult:
    return RouteResult(
        geometry={"type": "LineString", "coordinates": [list(c) for c in coordinates]},
        duration_label=f"{minutes}m",
        total_minutes=minutes,
        distance_km=km,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(session_factory, clock):
    return PinStore(session_factory, clock=clock)


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def unknown_geocoder():
    return FakeGeocoder(label=UNKNOWN_LOCATION)
