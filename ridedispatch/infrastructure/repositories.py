"""
Repository Pattern -- keeps collection names and record <-> entity mapping
out of the engine.

Each repository wraps the shared ``RecordStore`` and exposes
domain-relevant queries only.  Writes that must be atomic across records
are built by the services as ``BatchOp`` lists; repositories own the
single-record reads.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from ridedispatch.domain.entities import (
    Customer,
    Driver,
    RideOffer,
    RideOrder,
    RideRequest,
)
from ridedispatch.domain.enums import (
    ACTIVE_RIDE_STATUSES,
    DriverStatus,
    OfferStatus,
    RideRequestStatus,
    RideStatus,
)

from .legacy import upgrade_legacy_order
from .store import Filter, OrderBy, Record, RecordStore, where

logger = logging.getLogger(__name__)

CUSTOMERS = "users"
DRIVERS = "drivers"
RIDE_REQUESTS = "ride_requests"
OFFERS = "driver_ride_requests"
ORDERS = "orders"
NOTIFICATIONS = "notifications"

ACTIVE_STATUS_VALUES = sorted(s.value for s in ACTIVE_RIDE_STATUSES)
FINISHED_STATUS_VALUES = [RideStatus.COMPLETED.value, RideStatus.CANCELLED.value]


class CustomerRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    async def get_by_id(self, customer_id: str) -> Optional[Customer]:
        record = await self.store.get(CUSTOMERS, customer_id)
        return Customer.from_record(record) if record else None

    async def create(self, customer: Customer) -> str:
        return await self.store.create(CUSTOMERS, customer.to_record(), customer.id)


class DriverRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    async def get_by_id(self, driver_id: str) -> Optional[Driver]:
        record = await self.store.get(DRIVERS, driver_id)
        return Driver.from_record(record) if record else None

    async def create(self, driver: Driver) -> str:
        return await self.store.create(DRIVERS, driver.to_record(), driver.id)

    async def get_available_in_cells(self, cells: Sequence[str]) -> list[Driver]:
        records = await self.store.query(
            DRIVERS,
            [
                where("status", "==", DriverStatus.ONLINE.value),
                where("is_available", "==", True),
                where("h3_cell", "in", cells),
            ],
        )
        return [Driver.from_record(r) for r in records]


class RideRequestRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    async def get_by_id(self, request_id: str) -> Optional[RideRequest]:
        record = await self.store.get(RIDE_REQUESTS, request_id)
        return RideRequest.from_record(record) if record else None

    async def create(self, request: RideRequest) -> str:
        return await self.store.create(RIDE_REQUESTS, request.to_record(), request.id)

    @staticmethod
    def for_customer(customer_id: str) -> list[Filter]:
        return [where("customer_id", "==", customer_id)]

    @staticmethod
    def pending_for_customer(customer_id: str) -> list[Filter]:
        return [
            where("customer_id", "==", customer_id),
            where("status", "==", RideRequestStatus.PENDING.value),
        ]


class OfferRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    async def get_by_id(self, offer_id: str) -> Optional[RideOffer]:
        record = await self.store.get(OFFERS, offer_id)
        return RideOffer.from_record(record) if record else None

    async def for_ride(self, ride_id: str) -> list[RideOffer]:
        records = await self.store.query(
            OFFERS, [where("ride_id", "==", ride_id)], order=OrderBy("created_at")
        )
        return [RideOffer.from_record(r) for r in records]

    async def pending_for_ride(self, ride_id: str) -> list[RideOffer]:
        records = await self.store.query(
            OFFERS,
            [
                where("ride_id", "==", ride_id),
                where("status", "==", OfferStatus.PENDING.value),
            ],
        )
        return [RideOffer.from_record(r) for r in records]

    @staticmethod
    def pending_for_driver(driver_id: str) -> list[Filter]:
        return [
            where("driver_id", "==", driver_id),
            where("status", "==", OfferStatus.PENDING.value),
        ]


class OrderRepository:
    def __init__(self, store: RecordStore):
        self.store = store

    @staticmethod
    def to_order(record: Record) -> Optional[RideOrder]:
        """Canonical entity for *record*, or None if it cannot be read."""
        try:
            return RideOrder.from_record(upgrade_legacy_order(record))
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.warning("Skipping unreadable order record %s", record.get("id"))
            return None

    def to_orders(self, records: list[Record]) -> list[RideOrder]:
        return [o for o in (self.to_order(r) for r in records) if o is not None]

    async def get_by_id(self, order_id: str) -> Optional[RideOrder]:
        record = await self.store.get(ORDERS, order_id)
        return self.to_order(record) if record else None

    @staticmethod
    def active_for(field_name: str, user_id: str) -> list[Filter]:
        return [
            where(field_name, "==", user_id),
            where("status", "in", ACTIVE_STATUS_VALUES),
        ]

    async def active_for_driver(self, driver_id: str) -> Optional[RideOrder]:
        records = await self.store.query(
            ORDERS, self.active_for("driver_id", driver_id), limit=1
        )
        orders = self.to_orders(records)
        return orders[0] if orders else None

    async def completed_for_driver(self, driver_id: str) -> list[RideOrder]:
        records = await self.store.query(
            ORDERS,
            [
                where("driver_id", "==", driver_id),
                where("status", "==", RideStatus.COMPLETED.value),
            ],
        )
        return self.to_orders(records)

    async def finished_for(self, field_name: str, user_id: str) -> list[RideOrder]:
        records = await self.store.query(
            ORDERS,
            [
                where(field_name, "==", user_id),
                where("status", "in", FINISHED_STATUS_VALUES),
            ],
        )
        return self.to_orders(records)
