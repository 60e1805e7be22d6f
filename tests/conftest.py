"""
Shared test fixtures.

Services run against the in-memory record store with a frozen clock, so
tests need no PostgreSQL or Redis.  Sample customer and drivers sit around
central Amman; the rider's pickup is ``PICKUP``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from ridedispatch.config import Settings
from ridedispatch.domain.entities import (
    Coordinates,
    Customer,
    Driver,
    Location,
    VehicleInfo,
)
from ridedispatch.domain.enums import DriverStatus
from ridedispatch.domain.matching import h3_cell
from ridedispatch.infrastructure.repositories import (
    CustomerRepository,
    DriverRepository,
)
from ridedispatch.infrastructure.store import InMemoryRecordStore
from ridedispatch.services.container import build_services
from ridedispatch.services.notifications import NotificationSender

PICKUP = Location("Rainbow Street", Coordinates(31.9454, 35.9284))
DESTINATION = Location("Abdali Boulevard", Coordinates(31.9539, 35.9106))

NEARBY_DRIVERS = [
    ("drv-1", "Ahmad Odeh", Coordinates(31.9460, 35.9290)),
    ("drv-2", "Sami Barakat", Coordinates(31.9500, 35.9300)),
    ("drv-3", "Khaled Yasin", Coordinates(31.9400, 35.9200)),
]


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSender(NotificationSender):
    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, user_id, user_type, kind, title, message, data=None):
        self.sent.append(
            {
                "user_id": user_id,
                "user_type": user_type,
                "kind": kind,
                "title": title,
                "message": message,
                "data": data or {},
            }
        )
        return None

    def kinds_for(self, user_id: str) -> list:
        return [n["kind"] for n in self.sent if n["user_id"] == user_id]


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FrozenClock:
    # Tuesday 10 March 2026, 09:00 UTC (11:00 in Amman)
    return FrozenClock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379/15",
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def services(store, settings, clock, sender):
    return build_services(store, settings, clock, sender)


@pytest.fixture
def make_driver(store, settings, clock):
    """Factory: persist a driver at *location* with *status*."""

    async def _make(driver_id, name, location, status=DriverStatus.ONLINE):
        driver = Driver(
            id=driver_id,
            name=name,
            phone="+96279000" + driver_id[-1],
            rating=4.8,
            vehicle=VehicleInfo("Toyota", "Corolla", 2021, "White", "10-" + driver_id),
            location=location,
            h3_cell=h3_cell(location, settings.h3_resolution) if location else None,
            created_at=clock(),
            updated_at=clock(),
        )
        driver.set_status(status)
        await DriverRepository(store).create(driver)
        return driver

    return _make


@pytest_asyncio.fixture
async def customer(store) -> Customer:
    c = Customer(id="cust-1", name="Lina Haddad", phone="+962790000001")
    await CustomerRepository(store).create(c)
    return c


@pytest_asyncio.fixture
async def drivers(make_driver) -> list[Driver]:
    return [
        await make_driver(driver_id, name, location)
        for driver_id, name, location in NEARBY_DRIVERS
    ]


@pytest_asyncio.fixture
async def ride_request(services, customer, drivers):
    """A pending standard request from PICKUP, offered to the nearby drivers."""
    request_id = await services.lifecycle.create_ride_request(
        customer.id, PICKUP, DESTINATION, "standard", "cash"
    )
    return await services.lifecycle.get_ride_request(request_id)


@pytest.fixture
def pickup() -> Location:
    return PICKUP


@pytest.fixture
def destination() -> Location:
    return DESTINATION
