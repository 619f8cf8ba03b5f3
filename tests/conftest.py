from datetime import datetime, timedelta, timezone

import pytest

from delivery_dispatch.config import RoutingConfig, RoutingConfigProvider
from delivery_dispatch.engine import DispatchEngine
from delivery_dispatch.pricing import BandPricing
from delivery_dispatch.storage import InMemoryStorage

# Restaurant origin and a few points around it (Manaus).
ORIGIN = (-3.1120367, -60.0348224)


def offset_km(base, north_km=0.0, east_km=0.0):
    """Rough local offset; good enough at city scale near the equator."""
    return (base[0] + north_km / 111.0, base[1] + east_km / 111.0)


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 10, 19, 18, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, minutes=0.0, seconds=0.0):
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def routing():
    """No smart-batch hold by default; tests that need it opt in."""
    return RoutingConfig(
        min_batch=2,
        max_batch=5,
        max_wait_minutes=25,
        smart_batch_hold_minutes=None,
        origin_lat=ORIGIN[0],
        origin_lng=ORIGIN[1],
    )


@pytest.fixture()
def provider(routing):
    return RoutingConfigProvider(routing)


@pytest.fixture()
def storage():
    return InMemoryStorage()


@pytest.fixture()
def engine(provider, storage, clock):
    return DispatchEngine(config=provider, pricing=BandPricing(provider), storage=storage, clock=clock)


@pytest.fixture()
def place_order(engine):
    def _place(north_km=0.0, east_km=0.0, address="Rua A, 100"):
        lat, lng = offset_km(ORIGIN, north_km, east_km)
        return engine.create_order(address, lat, lng)

    return _place


@pytest.fixture()
def available_courier(engine):
    counter = {"n": 0}

    def _make(name=None):
        counter["n"] += 1
        c = engine.create_courier(name or f"Courier {counter['n']}", f"+55 92 9000-{counter['n']:04d}")
        return engine.set_courier_available(c.courier_id)

    return _make


@pytest.fixture()
def awaiting_route(engine, place_order):
    """Two nearby orders -> one AWAITING_COURIER route."""
    place_order(north_km=1.0)
    place_order(north_km=1.5)
    routes = engine.list_routes()
    assert len(routes) == 1
    return routes[0]
