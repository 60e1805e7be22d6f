"""
Ride Lifecycle Engine
=====================

Owns the two rider-visible state machines:

* **RideRequest** -- ``pending`` until a driver accepts, the rider
  cancels, every offered driver declines, or ``expires_at`` passes.
* **RideOrder**   -- created by the dispatch arbiter at acceptance, then
  driven forward by the bound driver one step at a time until
  ``completed`` or ``cancelled``.

Every mutation is one ``atomic_batch`` with a precondition on the status
it was validated against, so two clients racing on the same record cannot
both succeed.  Notifications go out after the commit and never undo it.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import timedelta
from typing import Callable, Optional

from ridedispatch.config import Settings
from ridedispatch.domain.clock import Clock, utc_now
from ridedispatch.domain.entities import (
    Coordinates,
    Location,
    RideEstimate,
    RideOrder,
    RideRequest,
    dump_dt,
)
from ridedispatch.domain.enums import (
    TERMINAL_RIDE_STATUSES,
    DriverStatus,
    OfferStatus,
    PaymentMethod,
    RideRequestStatus,
    RideStatus,
    ServiceType,
)
from ridedispatch.domain.exceptions import (
    CustomerNotFound,
    DriverMismatch,
    InvalidTransition,
    OrderNotFound,
    RequestNotFound,
    StoreError,
)
from ridedispatch.domain.matching import h3_cell
from ridedispatch.domain.pricing import PricingEngine
from ridedispatch.infrastructure.legacy import is_legacy
from ridedispatch.infrastructure.repositories import (
    DRIVERS,
    OFFERS,
    ORDERS,
    RIDE_REQUESTS,
    CustomerRepository,
    OrderRepository,
    RideRequestRepository,
)
from ridedispatch.infrastructure.store import (
    ArrayAppend,
    CommitConflict,
    Increment,
    OrderBy,
    Record,
    RecordStore,
    Subscription,
    map_snapshot,
    new_id,
    update_op,
)

from .arbitration import CANCEL_DECLINE_REASON, DispatchArbiter
from .drivers import DriverService
from .notifications import Notifier

logger = logging.getLogger(__name__)


class RideLifecycleEngine:
    def __init__(
        self,
        store: RecordStore,
        arbiter: DispatchArbiter,
        drivers: DriverService,
        notifier: Notifier,
        pricing: PricingEngine,
        settings: Settings,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.arbiter = arbiter
        self.drivers = drivers
        self.notifier = notifier
        self.pricing = pricing
        self.settings = settings
        self.clock = clock
        self.customers = CustomerRepository(store)
        self.requests = RideRequestRepository(store)
        self.orders = OrderRepository(store)

    # ── Ride requests ─────────────────────────────────────────────────

    async def create_ride_request(
        self,
        customer_id: str,
        pickup: Location,
        destination: Location,
        service_type: ServiceType,
        payment_method: PaymentMethod,
        notes: Optional[str] = None,
    ) -> str:
        """Price and persist a pending request, then fan it out to drivers.

        A fan-out failure is logged; the request stays pending and can
        still be cancelled or expire.
        """
        customer = await self.customers.get_by_id(customer_id)
        if customer is None:
            raise CustomerNotFound(f"Customer {customer_id} not found")

        service_type = ServiceType(service_type)
        now = self.clock()
        request = RideRequest(
            id=new_id(),
            customer_id=customer_id,
            pickup=pickup,
            destination=destination,
            service_type=service_type,
            payment_method=PaymentMethod(payment_method),
            pricing=self.pricing.quote(
                pickup.coordinates, destination.coordinates, service_type
            ),
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=self.settings.request_ttl_seconds),
            notes=notes,
        )
        await self.requests.create(request)
        logger.info(
            "Ride request %s created for customer %s (%s, %.2f %s)",
            request.id,
            customer_id,
            service_type.value,
            request.pricing.total,
            request.pricing.currency,
        )

        try:
            await self.arbiter.broadcast(request)
        except StoreError:
            logger.exception("Fan-out failed for ride request %s", request.id)
        return request.id

    async def get_ride_request(self, request_id: str) -> RideRequest:
        request = await self.requests.get_by_id(request_id)
        if request is None:
            raise RequestNotFound(f"Ride request {request_id} not found")
        if request.status == RideRequestStatus.PENDING and request.is_expired(self.clock()):
            request.status = RideRequestStatus.EXPIRED
        return request

    async def cancel_ride_request(
        self, request_id: str, reason: Optional[str] = None
    ) -> RideRequest:
        request = await self.requests.get_by_id(request_id)
        if request is None:
            raise RequestNotFound(f"Ride request {request_id} not found")
        now = self.clock()
        request.ensure_cancellable(now)

        pending = await self.arbiter.offers.pending_for_ride(request_id)
        stamp = dump_dt(now)
        ops = [
            update_op(
                RIDE_REQUESTS,
                request_id,
                {
                    "status": RideRequestStatus.CANCELLED.value,
                    "cancellation_reason": reason,
                    "updated_at": stamp,
                },
                expect={"status": RideRequestStatus.PENDING.value},
            )
        ]
        ops.extend(
            update_op(
                OFFERS,
                offer.id,
                {
                    "status": OfferStatus.DECLINED.value,
                    "responded_at": stamp,
                    "decline_reason": CANCEL_DECLINE_REASON,
                },
                only_if={"status": OfferStatus.PENDING.value},
            )
            for offer in pending
        )
        try:
            await self.store.atomic_batch(ops)
        except CommitConflict as exc:
            raise InvalidTransition(
                f"Ride request {request_id} is no longer pending"
            ) from exc

        request.status = RideRequestStatus.CANCELLED
        request.cancellation_reason = reason
        request.updated_at = now
        logger.info("Ride request %s cancelled", request_id)
        for offer in pending:
            await self.notifier.request_cancelled(offer.driver_id, request)
        return request

    # ── Orders ────────────────────────────────────────────────────────

    async def get_order(self, order_id: str) -> RideOrder:
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def update_ride_status(
        self,
        order_id: str,
        driver_id: str,
        new_status: RideStatus,
        location: Optional[Coordinates] = None,
        notes: Optional[str] = None,
    ) -> RideOrder:
        record, order = await self._load_order(order_id)
        if order.driver_id != driver_id:
            raise DriverMismatch(f"Order {order_id} is not assigned to driver {driver_id}")
        return await self._advance(record, order, RideStatus(new_status), location, notes)

    async def cancel_ride(
        self, order_id: str, actor_id: str, reason: Optional[str] = None
    ) -> RideOrder:
        """Cancel a live order on behalf of its customer or its driver."""
        record, order = await self._load_order(order_id)
        if actor_id not in (order.customer_id, order.driver_id):
            raise DriverMismatch(f"{actor_id} is not a party to order {order_id}")
        return await self._advance(record, order, RideStatus.CANCELLED, None, reason)

    async def _load_order(self, order_id: str) -> tuple[Record, RideOrder]:
        record = await self.store.get(ORDERS, order_id)
        order = self.orders.to_order(record) if record else None
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return record, order

    async def _advance(
        self,
        record: Record,
        order: RideOrder,
        new_status: RideStatus,
        location: Optional[Coordinates],
        notes: Optional[str],
    ) -> RideOrder:
        previous = record.get("status")
        event = order.transition_to(new_status, self.clock(), notes, location)
        stamp = dump_dt(event.timestamp)

        if is_legacy(record):
            # rewrite in canonical form; the timeline already holds the event
            order_patch = order.to_record()
        else:
            order_patch = {
                "status": new_status.value,
                "updated_at": stamp,
                "timeline": ArrayAppend(event.to_record()),
            }
            if new_status == RideStatus.COMPLETED:
                order_patch["completed_at"] = stamp
            elif new_status == RideStatus.CANCELLED:
                order_patch["cancelled_at"] = stamp
                order_patch["cancellation_reason"] = notes
        ops = [update_op(ORDERS, order.id, order_patch, expect={"status": previous})]

        driver_op = await self._driver_op(order, new_status, location, stamp)
        if driver_op is not None:
            ops.append(driver_op)

        try:
            await self.store.atomic_batch(ops)
        except CommitConflict as exc:
            raise InvalidTransition(
                f"Order {order.id} changed concurrently; retry from the current status"
            ) from exc

        logger.info("Order %s moved to %s", order.id, new_status.value)
        await self.notifier.status_changed(order, notes)
        return order

    async def _driver_op(self, order, new_status, location, stamp):
        if not order.driver_id:
            return None
        patch = {}
        if location is not None:
            patch["location"] = location.to_record()
            patch["h3_cell"] = h3_cell(location, self.settings.h3_resolution)
            patch["last_location_update"] = stamp
        if new_status in TERMINAL_RIDE_STATUSES:
            patch["status"] = DriverStatus.ONLINE.value
            patch["is_online"] = True
            patch["is_available"] = True
            patch["updated_at"] = stamp
        if new_status == RideStatus.COMPLETED:
            patch["total_rides"] = Increment(1)
        if not patch:
            return None
        if await self.store.get(DRIVERS, order.driver_id) is None:
            logger.warning(
                "Driver %s of order %s has no profile; skipping driver update",
                order.driver_id,
                order.id,
            )
            return None
        return update_op(DRIVERS, order.driver_id, patch)

    # ── Estimates ─────────────────────────────────────────────────────

    async def get_ride_estimates(
        self, pickup: Coordinates, destination: Coordinates
    ) -> list[RideEstimate]:
        nearby = await self.drivers.nearby_drivers(
            pickup, self.settings.candidate_radius_km
        )
        if nearby:
            eta = min(n.estimated_arrival_min for n in nearby)
        else:
            eta = self.settings.default_pickup_eta_min
        quotes = self.pricing.quote_all(pickup, destination)
        return [
            RideEstimate(
                service_type=tier,
                pricing=pricing,
                estimated_pickup_time_min=eta,
                available_drivers=len(nearby),
            )
            for tier, pricing in quotes.items()
        ]

    # ── Rider subscriptions ───────────────────────────────────────────

    def _read_request(self, record: Record) -> RideRequest:
        request = RideRequest.from_record(record)
        if request.status == RideRequestStatus.PENDING and request.is_expired(self.clock()):
            return dataclasses.replace(request, status=RideRequestStatus.EXPIRED)
        return request

    async def subscribe_customer_requests(
        self, customer_id: str, callback: Callable[[list[RideRequest]], object]
    ) -> Subscription:
        return await self.store.subscribe(
            RIDE_REQUESTS,
            RideRequestRepository.for_customer(customer_id),
            map_snapshot(lambda rs: [self._read_request(r) for r in rs], callback),
            order=OrderBy("created_at", descending=True),
        )

    async def subscribe_current_request(
        self, customer_id: str, callback: Callable[[Optional[RideRequest]], object]
    ) -> Subscription:
        """Newest still-open request of *customer_id*, or None."""

        def current(records):
            now = self.clock()
            for record in records:
                request = RideRequest.from_record(record)
                if not request.is_expired(now):
                    return request
            return None

        return await self.store.subscribe(
            RIDE_REQUESTS,
            RideRequestRepository.pending_for_customer(customer_id),
            map_snapshot(current, callback),
            order=OrderBy("created_at", descending=True),
        )

    async def subscribe_customer_current_order(
        self, customer_id: str, callback: Callable[[Optional[RideOrder]], object]
    ) -> Subscription:
        def first_order(records):
            orders = self.orders.to_orders(records)
            return orders[0] if orders else None

        return await self.store.subscribe(
            ORDERS,
            OrderRepository.active_for("customer_id", customer_id),
            map_snapshot(first_order, callback),
            order=OrderBy("created_at", descending=True),
            limit=1,
        )
