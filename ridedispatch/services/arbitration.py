"""
Dispatch Arbitration
====================

Fan-out
-------
A new ride request is offered to up to ``fanout_size`` nearby drivers at
once: one ``pending`` offer per driver, all created in one batch.

Acceptance
----------
Several drivers may tap "accept" for the same ride within one round trip.
The winner is decided by a single ``atomic_batch`` whose preconditions pin
everything the decision depends on:

* the accepted offer is still ``pending``,
* the ride request is still ``pending`` (not cancelled, not taken),
* the order keyed by the ride id does not exist yet,
* the driver is still ``online`` and available.

The same commit declines every sibling offer and marks the driver busy.
Exactly one batch per ride can satisfy these preconditions; every other
caller gets ``OfferAlreadyResolved`` and nothing of theirs is written.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Optional

from ridedispatch.config import Settings
from ridedispatch.domain.clock import Clock, utc_now
from ridedispatch.domain.distance import distance_km
from ridedispatch.domain.entities import (
    Coordinates,
    Driver,
    RideEvent,
    RideOffer,
    RideOrder,
    RideRequest,
    dump_dt,
)
from ridedispatch.domain.enums import (
    DriverStatus,
    OfferStatus,
    RideRequestStatus,
    RideStatus,
)
from ridedispatch.domain.exceptions import (
    DriverMismatch,
    DriverNotFound,
    InvalidTransition,
    OfferAlreadyResolved,
    OfferNotFound,
    RequestNotFound,
)
from ridedispatch.domain.matching import (
    CandidatePolicy,
    NearestAvailablePolicy,
    cells_within,
)
from ridedispatch.infrastructure.repositories import (
    DRIVERS,
    OFFERS,
    ORDERS,
    RIDE_REQUESTS,
    DriverRepository,
    OfferRepository,
    RideRequestRepository,
)
from ridedispatch.infrastructure.store import (
    CommitConflict,
    RecordStore,
    create_op,
    new_id,
    update_op,
)

from .notifications import Notifier

logger = logging.getLogger(__name__)

DEFAULT_ARRIVAL_MIN = 5
SIBLING_DECLINE_REASON = "ride_taken"
CANCEL_DECLINE_REASON = "ride_cancelled"


class DispatchArbiter:
    def __init__(
        self,
        store: RecordStore,
        notifier: Notifier,
        settings: Settings,
        clock: Clock = utc_now,
        policy: Optional[CandidatePolicy] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self.policy = policy or NearestAvailablePolicy(
            settings.candidate_radius_km, settings.fanout_size
        )
        self.requests = RideRequestRepository(store)
        self.offers = OfferRepository(store)
        self.drivers = DriverRepository(store)

    # ── Fan-out ───────────────────────────────────────────────────────

    async def find_candidates(self, pickup: Coordinates) -> list[Driver]:
        cells = cells_within(
            pickup, self.settings.candidate_radius_km, self.settings.h3_resolution
        )
        drivers = await self.drivers.get_available_in_cells(cells)
        return self.policy.select(drivers, pickup)

    async def broadcast(self, request: RideRequest) -> list[RideOffer]:
        """Create one pending offer per candidate driver, in one batch."""
        candidates = await self.find_candidates(request.pickup.coordinates)
        if not candidates:
            logger.info("No nearby drivers found for ride %s", request.id)
            return []

        now = self.clock()
        expires_at = min(
            now + timedelta(seconds=self.settings.offer_ttl_seconds), request.expires_at
        )
        offers = [
            RideOffer(
                id=new_id(),
                ride_id=request.id,
                driver_id=driver.id,
                customer_id=request.customer_id,
                pickup=request.pickup,
                destination=request.destination,
                service_type=request.service_type,
                pricing=request.pricing,
                estimated_distance=request.pricing.estimated_distance_km,
                estimated_duration=request.pricing.estimated_duration_min,
                created_at=now,
                expires_at=expires_at,
            )
            for driver in candidates
        ]
        ops = [create_op(OFFERS, offer.id, offer.to_record()) for offer in offers]
        ops.append(
            update_op(
                RIDE_REQUESTS,
                request.id,
                {"offer_count": len(offers), "updated_at": dump_dt(now)},
                expect={"status": RideRequestStatus.PENDING.value},
            )
        )
        try:
            await self.store.atomic_batch(ops)
        except CommitConflict:
            logger.info("Ride %s left pending before fan-out; no offers sent", request.id)
            return []

        logger.info("Ride %s offered to %d drivers", request.id, len(offers))
        for offer in offers:
            await self.notifier.ride_request(offer.driver_id, request)
        return offers

    # ── Driver responses ──────────────────────────────────────────────

    async def accept_offer(self, offer_id: str, driver_id: str) -> str:
        """Bind the ride to *driver_id*; returns the new order id."""
        offer = await self.offers.get_by_id(offer_id)
        if offer is None:
            raise OfferNotFound(f"Offer {offer_id} not found")
        if offer.driver_id != driver_id:
            raise DriverMismatch(f"Offer {offer_id} belongs to another driver")

        now = self.clock()
        if offer.status != OfferStatus.PENDING:
            raise OfferAlreadyResolved(f"Offer {offer_id} is already {offer.status.value}")
        if offer.is_expired(now):
            raise OfferAlreadyResolved(f"Offer {offer_id} has expired")

        request = await self.requests.get_by_id(offer.ride_id)
        if request is None:
            raise RequestNotFound(f"Ride request {offer.ride_id} not found")
        if not request.is_open(now):
            raise OfferAlreadyResolved(f"Ride {request.id} is no longer available")

        driver = await self.drivers.get_by_id(driver_id)
        if driver is None:
            raise DriverNotFound(f"Driver {driver_id} not found")
        if driver.status != DriverStatus.ONLINE or not driver.is_available:
            raise InvalidTransition(
                f"Driver {driver_id} is {driver.status.value} and cannot accept rides"
            )

        siblings = await self.offers.pending_for_ride(offer.ride_id)
        order = self._bind_order(request, driver, now)
        stamp = dump_dt(now)

        ops = [
            update_op(
                OFFERS,
                offer.id,
                {"status": OfferStatus.ACCEPTED.value, "responded_at": stamp},
                expect={"status": OfferStatus.PENDING.value},
            ),
            update_op(
                RIDE_REQUESTS,
                request.id,
                {
                    "status": RideRequestStatus.ACCEPTED.value,
                    "driver_id": driver.id,
                    "order_id": order.id,
                    "updated_at": stamp,
                },
                expect={"status": RideRequestStatus.PENDING.value},
            ),
            create_op(ORDERS, order.id, order.to_record()),
            update_op(
                DRIVERS,
                driver.id,
                {
                    "status": DriverStatus.BUSY.value,
                    "is_available": False,
                    "updated_at": stamp,
                },
                expect={"status": DriverStatus.ONLINE.value, "is_available": True},
            ),
        ]
        for sibling in siblings:
            if sibling.id == offer.id:
                continue
            ops.append(
                update_op(
                    OFFERS,
                    sibling.id,
                    {
                        "status": OfferStatus.DECLINED.value,
                        "responded_at": stamp,
                        "decline_reason": SIBLING_DECLINE_REASON,
                    },
                    only_if={"status": OfferStatus.PENDING.value},
                )
            )

        try:
            await self.store.atomic_batch(ops)
        except CommitConflict as exc:
            if exc.collection == DRIVERS:
                raise InvalidTransition(
                    f"Driver {driver_id} is no longer available"
                ) from exc
            logger.info("Driver %s lost the race for ride %s", driver_id, request.id)
            raise OfferAlreadyResolved(
                f"Ride {request.id} is no longer available"
            ) from exc

        logger.info("Ride %s assigned to driver %s", request.id, driver.id)
        await self.notifier.ride_accepted(order, self._arrival_minutes(driver, request))
        return order.id

    async def decline_offer(
        self,
        offer_id: str,
        reason: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> RideOffer:
        """Decline one offer.  Siblings are untouched.

        Declining an already-declined offer is a no-op; an accepted offer
        cannot be declined (the ride is bound).
        """
        offer = await self.offers.get_by_id(offer_id)
        if offer is None:
            raise OfferNotFound(f"Offer {offer_id} not found")
        if driver_id is not None and offer.driver_id != driver_id:
            raise DriverMismatch(f"Offer {offer_id} belongs to another driver")
        if offer.status == OfferStatus.DECLINED:
            return offer
        if offer.status == OfferStatus.ACCEPTED:
            raise InvalidTransition(f"Offer {offer_id} was already accepted")

        now = self.clock()
        try:
            await self.store.atomic_batch(
                [
                    update_op(
                        OFFERS,
                        offer.id,
                        {
                            "status": OfferStatus.DECLINED.value,
                            "responded_at": dump_dt(now),
                            "decline_reason": reason,
                        },
                        expect={"status": OfferStatus.PENDING.value},
                    )
                ]
            )
        except CommitConflict as exc:
            raise InvalidTransition(f"Offer {offer_id} was already accepted") from exc

        offer.status = OfferStatus.DECLINED
        offer.responded_at = now
        offer.decline_reason = reason
        logger.info("Driver %s declined offer %s", offer.driver_id, offer.id)
        await self._reject_if_exhausted(offer.ride_id)
        return offer

    async def _reject_if_exhausted(self, ride_id: str) -> None:
        """Mark the request rejected once every offer has been declined."""
        offers = await self.offers.for_ride(ride_id)
        if not offers or any(o.status != OfferStatus.DECLINED for o in offers):
            return
        request = await self.requests.get_by_id(ride_id)
        if request is None or request.status != RideRequestStatus.PENDING:
            return
        try:
            await self.store.atomic_batch(
                [
                    update_op(
                        RIDE_REQUESTS,
                        ride_id,
                        {
                            "status": RideRequestStatus.REJECTED.value,
                            "updated_at": dump_dt(self.clock()),
                        },
                        expect={"status": RideRequestStatus.PENDING.value},
                    )
                ]
            )
        except CommitConflict:
            return
        logger.info("Ride %s rejected by every offered driver", ride_id)
        await self.notifier.no_drivers(request)

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _bind_order(request: RideRequest, driver: Driver, now) -> RideOrder:
        return RideOrder(
            id=request.id,
            request_id=request.id,
            customer_id=request.customer_id,
            driver_id=driver.id,
            pickup=request.pickup,
            destination=request.destination,
            service_type=request.service_type,
            payment_method=request.payment_method,
            pricing=request.pricing,
            driver=driver.info(),
            status=RideStatus.ASSIGNED,
            timeline=[
                RideEvent(
                    status=RideStatus.ASSIGNED,
                    timestamp=now,
                    notes=f"Driver {driver.name} assigned",
                )
            ],
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _arrival_minutes(driver: Driver, request: RideRequest) -> int:
        if driver.location is None:
            return DEFAULT_ARRIVAL_MIN
        return max(1, math.ceil(distance_km(driver.location, request.pickup.coordinates) * 2))
