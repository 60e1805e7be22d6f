"""Driver-side profile, availability and location operations."""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional

from ridedispatch.config import Settings
from ridedispatch.domain.clock import Clock, utc_now
from ridedispatch.domain.entities import (
    Coordinates,
    Driver,
    NearbyDriver,
    RideOffer,
    RideOrder,
    dump_dt,
)
from ridedispatch.domain.enums import DriverStatus
from ridedispatch.domain.exceptions import (
    DriverNotFound,
    InvalidTransition,
    RecordMissing,
)
from ridedispatch.domain.matching import cells_within, h3_cell, rank_by_distance
from ridedispatch.infrastructure.repositories import (
    DRIVERS,
    OFFERS,
    ORDERS,
    DriverRepository,
    OfferRepository,
    OrderRepository,
)
from ridedispatch.infrastructure.store import (
    CommitConflict,
    OrderBy,
    RecordStore,
    Subscription,
    map_snapshot,
    update_op,
)

logger = logging.getLogger(__name__)


class DriverService:
    def __init__(self, store: RecordStore, settings: Settings, clock: Clock = utc_now):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.drivers = DriverRepository(store)
        self.orders = OrderRepository(store)

    # ── Profile ───────────────────────────────────────────────────────

    async def upsert_driver_profile(self, driver: Driver) -> Driver:
        """Create *driver* with fresh-account defaults, or update its profile.

        Updates only touch profile fields; status, rating and ride count
        are owned by dispatch.
        """
        now = self.clock()
        existing = await self.drivers.get_by_id(driver.id)
        if existing is None:
            profile = Driver(
                id=driver.id,
                name=driver.name,
                phone=driver.phone,
                vehicle=driver.vehicle,
                location=driver.location,
                created_at=now,
                updated_at=now,
            )
            if profile.location is not None:
                profile.h3_cell = h3_cell(profile.location, self.settings.h3_resolution)
                profile.last_location_update = now
            await self.drivers.create(profile)
            logger.info("Created driver profile %s", driver.id)
            return profile

        await self.store.update(
            DRIVERS,
            driver.id,
            {
                "name": driver.name,
                "phone": driver.phone,
                "vehicle": driver.vehicle.to_record(),
                "updated_at": dump_dt(now),
            },
        )
        return await self.get_driver(driver.id)

    async def get_driver(self, driver_id: str) -> Driver:
        driver = await self.drivers.get_by_id(driver_id)
        if driver is None:
            raise DriverNotFound(f"Driver {driver_id} not found")
        return driver

    # ── Availability ──────────────────────────────────────────────────

    async def update_driver_status(self, driver_id: str, status: DriverStatus) -> Driver:
        driver = await self.get_driver(driver_id)
        status = DriverStatus(status)
        if status == driver.status:
            return driver

        active = await self.orders.active_for_driver(driver_id)
        if active is not None:
            raise InvalidTransition(
                f"Driver {driver_id} has an active ride {active.id} "
                f"and cannot go {status.value}"
            )

        previous = driver.status
        driver.set_status(status)
        driver.updated_at = self.clock()
        try:
            await self.store.atomic_batch(
                [
                    update_op(
                        DRIVERS,
                        driver_id,
                        {
                            "status": driver.status.value,
                            "is_online": driver.is_online,
                            "is_available": driver.is_available,
                            "updated_at": dump_dt(driver.updated_at),
                        },
                        expect={"status": previous.value},
                    )
                ]
            )
        except CommitConflict as exc:
            raise InvalidTransition(
                f"Driver {driver_id} changed status concurrently"
            ) from exc

        logger.info("Driver %s is now %s", driver_id, status.value)
        return driver

    async def update_driver_location(
        self,
        driver_id: str,
        coordinates: Coordinates,
        bearing: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> None:
        """Best-effort single-record write of the driver's position."""
        patch = {
            "location": coordinates.to_record(),
            "h3_cell": h3_cell(coordinates, self.settings.h3_resolution),
            "last_location_update": dump_dt(self.clock()),
        }
        if bearing is not None:
            patch["bearing"] = bearing
        if speed is not None:
            patch["speed"] = speed
        try:
            await self.store.update(DRIVERS, driver_id, patch)
        except RecordMissing as exc:
            raise DriverNotFound(f"Driver {driver_id} not found") from exc

    async def current_order_for_driver(self, driver_id: str) -> Optional[RideOrder]:
        return await self.orders.active_for_driver(driver_id)

    # ── Discovery ─────────────────────────────────────────────────────

    async def nearby_drivers(
        self, location: Coordinates, radius_km: Optional[float] = None
    ) -> list[NearbyDriver]:
        radius = radius_km if radius_km is not None else self.settings.nearby_radius_km
        cells = cells_within(location, radius, self.settings.h3_resolution)
        drivers = await self.drivers.get_available_in_cells(cells)
        return [
            NearbyDriver(
                id=driver.id,
                name=driver.name,
                location=driver.location,
                distance_km=round(d, 2),
                estimated_arrival_min=math.ceil(d * 2),
                rating=driver.rating,
                vehicle=driver.vehicle,
            )
            for driver, d in rank_by_distance(drivers, location, radius)
        ]

    # ── Subscriptions ─────────────────────────────────────────────────

    async def subscribe_driver_offers(
        self, driver_id: str, callback: Callable[[list[RideOffer]], object]
    ) -> Subscription:
        """Pending, unexpired offers for *driver_id*, newest first."""

        def to_offers(records):
            now = self.clock()
            offers = [RideOffer.from_record(r) for r in records]
            return [o for o in offers if not o.is_expired(now)]

        return await self.store.subscribe(
            OFFERS,
            OfferRepository.pending_for_driver(driver_id),
            map_snapshot(to_offers, callback),
            order=OrderBy("created_at", descending=True),
        )

    async def subscribe_driver_current_order(
        self, driver_id: str, callback: Callable[[Optional[RideOrder]], object]
    ) -> Subscription:
        def first_order(records):
            orders = self.orders.to_orders(records)
            return orders[0] if orders else None

        return await self.store.subscribe(
            ORDERS,
            OrderRepository.active_for("driver_id", driver_id),
            map_snapshot(first_order, callback),
            order=OrderBy("created_at", descending=True),
            limit=1,
        )
