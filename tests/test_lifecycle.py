"""Ride request and order lifecycle through the service layer."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from ridedispatch.domain.entities import Coordinates, Location
from ridedispatch.domain.enums import (
    DriverStatus,
    NotificationType,
    OfferStatus,
    RideRequestStatus,
    RideStatus,
)
from ridedispatch.domain.exceptions import (
    CustomerNotFound,
    DriverMismatch,
    InvalidTransition,
    OfferAlreadyResolved,
    OfferNotFound,
    OrderNotFound,
    RequestNotFound,
    StoreError,
)
from ridedispatch.infrastructure.repositories import OFFERS, RIDE_REQUESTS
from ridedispatch.infrastructure.store import where
from ridedispatch.services.container import build_services
from ridedispatch.services.notifications import NotificationSender

FORWARD = [
    RideStatus.DRIVER_ARRIVING,
    RideStatus.DRIVER_ARRIVED,
    RideStatus.PICKED_UP,
    RideStatus.IN_PROGRESS,
    RideStatus.COMPLETED,
]


async def _offers_by_driver(services, ride_id):
    return {o.driver_id: o for o in await services.arbiter.offers.for_ride(ride_id)}


async def _accepted_order(services, ride_request, driver_id="drv-1"):
    offers = await _offers_by_driver(services, ride_request.id)
    order_id = await services.arbiter.accept_offer(offers[driver_id].id, driver_id)
    return await services.lifecycle.get_order(order_id)


class FailingSender(NotificationSender):
    async def send(self, *args, **kwargs):
        raise RuntimeError("push gateway down")


# ── Ride requests ─────────────────────────────────────────────────────


class TestCreateRideRequest:
    @pytest.mark.asyncio
    async def test_creates_priced_pending_request(self, ride_request, clock):
        assert ride_request.status == RideRequestStatus.PENDING
        assert 3.30 <= ride_request.pricing.total <= 3.40
        assert ride_request.pricing.currency == "JOD"
        assert (ride_request.expires_at - ride_request.created_at).total_seconds() == 600
        assert ride_request.created_at == clock()

    @pytest.mark.asyncio
    async def test_offers_every_nearby_driver(self, services, ride_request, sender):
        offers = await _offers_by_driver(services, ride_request.id)
        assert set(offers) == {"drv-1", "drv-2", "drv-3"}
        assert all(o.status == OfferStatus.PENDING for o in offers.values())
        assert all(o.pricing == ride_request.pricing for o in offers.values())
        assert ride_request.offer_count == 3
        for driver_id in offers:
            assert sender.kinds_for(driver_id) == [NotificationType.RIDE_REQUEST]

    @pytest.mark.asyncio
    async def test_offer_expires_before_request(self, services, ride_request, clock):
        offer = (await services.arbiter.offers.for_ride(ride_request.id))[0]
        assert (offer.expires_at - clock()).total_seconds() == 120
        assert offer.expires_at <= ride_request.expires_at

    @pytest.mark.asyncio
    async def test_unknown_customer(self, services, store, pickup, destination, drivers):
        with pytest.raises(CustomerNotFound):
            await services.lifecycle.create_ride_request(
                "ghost", pickup, destination, "standard", "cash"
            )
        assert await store.query(RIDE_REQUESTS) == []

    @pytest.mark.asyncio
    async def test_no_drivers_leaves_request_pending(
        self, services, store, customer, pickup, destination
    ):
        request_id = await services.lifecycle.create_ride_request(
            customer.id, pickup, destination, "economy", "card"
        )
        request = await services.lifecycle.get_ride_request(request_id)
        assert request.status == RideRequestStatus.PENDING
        assert await store.query(OFFERS) == []

    @pytest.mark.asyncio
    async def test_far_offline_and_busy_drivers_skipped(
        self, services, customer, pickup, destination, make_driver
    ):
        await make_driver("drv-far", "Far", Coordinates(32.1000, 36.1000))
        await make_driver("drv-off", "Off", Coordinates(31.9455, 35.9285), DriverStatus.OFFLINE)
        await make_driver("drv-busy", "Busy", Coordinates(31.9456, 35.9286), DriverStatus.BUSY)
        await make_driver("drv-ok", "Ok", Coordinates(31.9470, 35.9270))

        request_id = await services.lifecycle.create_ride_request(
            customer.id, pickup, destination, "standard", "cash"
        )
        offers = await _offers_by_driver(services, request_id)
        assert set(offers) == {"drv-ok"}

    @pytest.mark.asyncio
    async def test_fanout_capped(self, services, customer, pickup, destination, make_driver):
        for i in range(1, 8):
            location = Coordinates(pickup.coordinates.lat + 0.001 * i, pickup.coordinates.lng)
            await make_driver(f"drv-{i}", f"Driver {i}", location)

        request_id = await services.lifecycle.create_ride_request(
            customer.id, pickup, destination, "standard", "cash"
        )
        offers = await _offers_by_driver(services, request_id)
        assert set(offers) == {"drv-1", "drv-2", "drv-3", "drv-4", "drv-5"}

    @pytest.mark.asyncio
    async def test_fanout_failure_keeps_request(
        self, services, customer, pickup, destination, drivers
    ):
        services.lifecycle.arbiter.broadcast = AsyncMock(side_effect=StoreError("down"))
        request_id = await services.lifecycle.create_ride_request(
            customer.id, pickup, destination, "standard", "cash"
        )
        request = await services.lifecycle.get_ride_request(request_id)
        assert request.status == RideRequestStatus.PENDING


class TestGetRideRequest:
    @pytest.mark.asyncio
    async def test_reported_expired_after_ttl(self, services, store, ride_request, clock):
        clock.advance(minutes=11)
        request = await services.lifecycle.get_ride_request(ride_request.id)
        assert request.status == RideRequestStatus.EXPIRED
        # read-time only; the stored record is untouched
        record = await store.get(RIDE_REQUESTS, ride_request.id)
        assert record["status"] == "pending"

    @pytest.mark.asyncio
    async def test_missing(self, services):
        with pytest.raises(RequestNotFound):
            await services.lifecycle.get_ride_request("nope")


class TestCancelRideRequest:
    @pytest.mark.asyncio
    async def test_cancel_pending_declines_offers(self, services, ride_request, sender):
        cancelled = await services.lifecycle.cancel_ride_request(
            ride_request.id, "changed plans"
        )
        assert cancelled.status == RideRequestStatus.CANCELLED

        stored = await services.lifecycle.get_ride_request(ride_request.id)
        assert stored.status == RideRequestStatus.CANCELLED
        assert stored.cancellation_reason == "changed plans"

        offers = await _offers_by_driver(services, ride_request.id)
        assert all(o.status == OfferStatus.DECLINED for o in offers.values())
        assert all(o.decline_reason == "ride_cancelled" for o in offers.values())
        assert NotificationType.RIDE_CANCELLED in sender.kinds_for("drv-1")

    @pytest.mark.asyncio
    async def test_accept_after_cancel_fails(self, services, ride_request):
        offers = await _offers_by_driver(services, ride_request.id)
        await services.lifecycle.cancel_ride_request(ride_request.id)

        with pytest.raises(OfferAlreadyResolved):
            await services.arbiter.accept_offer(offers["drv-2"].id, "drv-2")
        driver = await services.drivers.get_driver("drv-2")
        assert driver.is_available

    @pytest.mark.asyncio
    async def test_cancel_after_accept_rejected(self, services, ride_request):
        order = await _accepted_order(services, ride_request)

        with pytest.raises(InvalidTransition):
            await services.lifecycle.cancel_ride_request(ride_request.id)

        unchanged = await services.lifecycle.get_order(order.id)
        assert unchanged.status == RideStatus.ASSIGNED
        assert unchanged.driver_id == "drv-1"

    @pytest.mark.asyncio
    async def test_cancel_expired_rejected(self, services, ride_request, clock):
        clock.advance(minutes=10)
        with pytest.raises(InvalidTransition):
            await services.lifecycle.cancel_ride_request(ride_request.id)

    @pytest.mark.asyncio
    async def test_cancel_twice_rejected(self, services, ride_request):
        await services.lifecycle.cancel_ride_request(ride_request.id)
        with pytest.raises(InvalidTransition):
            await services.lifecycle.cancel_ride_request(ride_request.id)


# ── Driver responses ──────────────────────────────────────────────────


class TestAcceptOffer:
    @pytest.mark.asyncio
    async def test_binds_order_to_driver(self, services, ride_request):
        order = await _accepted_order(services, ride_request, "drv-1")

        assert order.id == ride_request.id
        assert order.request_id == ride_request.id
        assert order.status == RideStatus.ASSIGNED
        assert order.driver_id == "drv-1"
        assert order.driver.name == "Ahmad Odeh"
        assert order.pricing == ride_request.pricing
        assert [e.status for e in order.timeline] == [RideStatus.ASSIGNED]
        assert order.timeline[0].notes == "Driver Ahmad Odeh assigned"

    @pytest.mark.asyncio
    async def test_request_accepted_and_siblings_declined(self, services, ride_request):
        await _accepted_order(services, ride_request, "drv-2")

        request = await services.lifecycle.get_ride_request(ride_request.id)
        assert request.status == RideRequestStatus.ACCEPTED
        assert request.driver_id == "drv-2"
        assert request.order_id == ride_request.id

        offers = await _offers_by_driver(services, ride_request.id)
        assert offers["drv-2"].status == OfferStatus.ACCEPTED
        for driver_id in ("drv-1", "drv-3"):
            assert offers[driver_id].status == OfferStatus.DECLINED
            assert offers[driver_id].decline_reason == "ride_taken"

    @pytest.mark.asyncio
    async def test_driver_becomes_busy(self, services, ride_request):
        await _accepted_order(services, ride_request, "drv-1")
        driver = await services.drivers.get_driver("drv-1")
        assert driver.status == DriverStatus.BUSY
        assert driver.is_available is False

    @pytest.mark.asyncio
    async def test_customer_told_arrival_time(self, services, ride_request, sender):
        await _accepted_order(services, ride_request, "drv-1")
        accepted = [n for n in sender.sent if n["kind"] == NotificationType.RIDE_ACCEPTED]
        assert len(accepted) == 1
        assert accepted[0]["user_id"] == "cust-1"
        assert accepted[0]["data"]["estimated_arrival"] == 1

    @pytest.mark.asyncio
    async def test_other_drivers_offer(self, services, ride_request):
        offers = await _offers_by_driver(services, ride_request.id)
        with pytest.raises(DriverMismatch):
            await services.arbiter.accept_offer(offers["drv-1"].id, "drv-2")

    @pytest.mark.asyncio
    async def test_unknown_offer(self, services):
        with pytest.raises(OfferNotFound):
            await services.arbiter.accept_offer("nope", "drv-1")

    @pytest.mark.asyncio
    async def test_expired_offer(self, services, ride_request, clock):
        offers = await _offers_by_driver(services, ride_request.id)
        clock.advance(minutes=3)
        with pytest.raises(OfferAlreadyResolved):
            await services.arbiter.accept_offer(offers["drv-1"].id, "drv-1")

    @pytest.mark.asyncio
    async def test_same_offer_twice(self, services, ride_request):
        offers = await _offers_by_driver(services, ride_request.id)
        await services.arbiter.accept_offer(offers["drv-1"].id, "drv-1")
        with pytest.raises(OfferAlreadyResolved):
            await services.arbiter.accept_offer(offers["drv-1"].id, "drv-1")

    @pytest.mark.asyncio
    async def test_offline_driver_cannot_accept(self, services, ride_request):
        offers = await _offers_by_driver(services, ride_request.id)
        await services.drivers.update_driver_status("drv-1", DriverStatus.OFFLINE)
        with pytest.raises(InvalidTransition):
            await services.arbiter.accept_offer(offers["drv-1"].id, "drv-1")
        request = await services.lifecycle.get_ride_request(ride_request.id)
        assert request.status == RideRequestStatus.PENDING


class TestDeclineOffer:
    @pytest.mark.asyncio
    async def test_decline_leaves_siblings(self, services, ride_request):
        offers = await _offers_by_driver(services, ride_request.id)
        declined = await services.arbiter.decline_offer(offers["drv-1"].id, "too far")
        assert declined.status == OfferStatus.DECLINED

        after = await _offers_by_driver(services, ride_request.id)
        assert after["drv-1"].decline_reason == "too far"
        assert after["drv-2"].status == OfferStatus.PENDING
        request = await services.lifecycle.get_ride_request(ride_request.id)
        assert request.status == RideRequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_all_declined_rejects_request(self, services, ride_request, sender):
        for offer in (await _offers_by_driver(services, ride_request.id)).values():
            await services.arbiter.decline_offer(offer.id)

        request = await services.lifecycle.get_ride_request(ride_request.id)
        assert request.status == RideRequestStatus.REJECTED
        titles = [n["title"] for n in sender.sent if n["user_id"] == "cust-1"]
        assert titles == ["No Drivers Available"]

    @pytest.mark.asyncio
    async def test_decline_twice_is_noop(self, services, ride_request):
        offers = await _offers_by_driver(services, ride_request.id)
        await services.arbiter.decline_offer(offers["drv-1"].id, "busy")
        again = await services.arbiter.decline_offer(offers["drv-1"].id, "other")
        assert again.decline_reason == "busy"

    @pytest.mark.asyncio
    async def test_cannot_decline_accepted(self, services, ride_request):
        offers = await _offers_by_driver(services, ride_request.id)
        await services.arbiter.accept_offer(offers["drv-1"].id, "drv-1")
        with pytest.raises(InvalidTransition):
            await services.arbiter.decline_offer(offers["drv-1"].id)

    @pytest.mark.asyncio
    async def test_wrong_driver(self, services, ride_request):
        offers = await _offers_by_driver(services, ride_request.id)
        with pytest.raises(DriverMismatch):
            await services.arbiter.decline_offer(offers["drv-1"].id, driver_id="drv-3")

    @pytest.mark.asyncio
    async def test_unknown_offer(self, services):
        with pytest.raises(OfferNotFound):
            await services.arbiter.decline_offer("nope")


# ── Orders ────────────────────────────────────────────────────────────


class TestUpdateRideStatus:
    @pytest.mark.asyncio
    async def test_full_ride_releases_driver(self, services, ride_request, clock):
        order = await _accepted_order(services, ride_request)
        for status in FORWARD:
            clock.advance(minutes=3)
            await services.lifecycle.update_ride_status(order.id, "drv-1", status)

        done = await services.lifecycle.get_order(order.id)
        assert done.status == RideStatus.COMPLETED
        assert done.completed_at == clock()
        assert [e.status for e in done.timeline] == [RideStatus.ASSIGNED] + FORWARD
        stamps = [e.timestamp for e in done.timeline]
        assert stamps == sorted(stamps)

        driver = await services.drivers.get_driver("drv-1")
        assert driver.status == DriverStatus.ONLINE
        assert driver.is_available is True
        assert driver.total_rides == 1

    @pytest.mark.asyncio
    async def test_status_notifications(self, services, ride_request, sender):
        order = await _accepted_order(services, ride_request)
        for status in FORWARD:
            await services.lifecycle.update_ride_status(order.id, "drv-1", status)

        assert sender.kinds_for("cust-1") == [
            NotificationType.RIDE_ACCEPTED,
            NotificationType.DRIVER_ARRIVING,
            NotificationType.DRIVER_ARRIVED,
            NotificationType.RIDE_STARTED,
            NotificationType.RIDE_STARTED,
            NotificationType.RIDE_COMPLETED,
        ]
        assert sender.kinds_for("drv-1")[-1] == NotificationType.RIDE_COMPLETED

    @pytest.mark.asyncio
    async def test_skipping_rejected(self, services, ride_request):
        order = await _accepted_order(services, ride_request)
        with pytest.raises(InvalidTransition):
            await services.lifecycle.update_ride_status(
                order.id, "drv-1", RideStatus.PICKED_UP
            )
        unchanged = await services.lifecycle.get_order(order.id)
        assert unchanged.status == RideStatus.ASSIGNED
        assert len(unchanged.timeline) == 1

    @pytest.mark.asyncio
    async def test_other_driver_rejected(self, services, ride_request):
        order = await _accepted_order(services, ride_request)
        with pytest.raises(DriverMismatch):
            await services.lifecycle.update_ride_status(
                order.id, "drv-2", RideStatus.DRIVER_ARRIVING
            )

    @pytest.mark.asyncio
    async def test_unknown_order(self, services):
        with pytest.raises(OrderNotFound):
            await services.lifecycle.update_ride_status(
                "nope", "drv-1", RideStatus.DRIVER_ARRIVING
            )

    @pytest.mark.asyncio
    async def test_location_moves_driver(self, services, ride_request):
        order = await _accepted_order(services, ride_request)
        here = Coordinates(31.9450, 35.9280)
        await services.lifecycle.update_ride_status(
            order.id, "drv-1", RideStatus.DRIVER_ARRIVING, location=here
        )
        driver = await services.drivers.get_driver("drv-1")
        assert driver.location == here
        assert driver.status == DriverStatus.BUSY

        updated = await services.lifecycle.get_order(order.id)
        assert updated.timeline[-1].location == here

    @pytest.mark.asyncio
    async def test_driver_cancel_releases_driver(self, services, ride_request, sender):
        order = await _accepted_order(services, ride_request)
        await services.lifecycle.update_ride_status(
            order.id, "drv-1", RideStatus.DRIVER_ARRIVING
        )
        await services.lifecycle.update_ride_status(
            order.id, "drv-1", RideStatus.CANCELLED, notes="flat tyre"
        )

        cancelled = await services.lifecycle.get_order(order.id)
        assert cancelled.status == RideStatus.CANCELLED
        assert cancelled.cancellation_reason == "flat tyre"
        driver = await services.drivers.get_driver("drv-1")
        assert driver.is_available is True
        assert driver.total_rides == 0
        assert sender.sent[-1]["message"] == "Your ride has been cancelled. Reason: flat tyre"


class TestCancelRide:
    @pytest.mark.asyncio
    async def test_customer_can_cancel(self, services, ride_request):
        order = await _accepted_order(services, ride_request)
        cancelled = await services.lifecycle.cancel_ride(order.id, "cust-1", "too slow")
        assert cancelled.status == RideStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        driver = await services.drivers.get_driver("drv-1")
        assert driver.is_available is True

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, services, ride_request):
        order = await _accepted_order(services, ride_request)
        with pytest.raises(DriverMismatch):
            await services.lifecycle.cancel_ride(order.id, "drv-3")

    @pytest.mark.asyncio
    async def test_finished_order_cannot_be_cancelled(self, services, ride_request):
        order = await _accepted_order(services, ride_request)
        for status in FORWARD:
            await services.lifecycle.update_ride_status(order.id, "drv-1", status)
        with pytest.raises(InvalidTransition):
            await services.lifecycle.cancel_ride(order.id, "cust-1")


class TestNotificationFailures:
    @pytest.mark.asyncio
    async def test_failing_sender_never_blocks(
        self, store, settings, clock, customer, drivers, pickup, destination
    ):
        services = build_services(store, settings, clock, FailingSender())
        request_id = await services.lifecycle.create_ride_request(
            customer.id, pickup, destination, "standard", "cash"
        )
        offers = await store.query(OFFERS, [where("ride_id", "==", request_id)])
        order_id = await services.arbiter.accept_offer(offers[0]["id"], offers[0]["driver_id"])
        order = await services.lifecycle.update_ride_status(
            order_id, offers[0]["driver_id"], RideStatus.DRIVER_ARRIVING
        )
        assert order.status == RideStatus.DRIVER_ARRIVING


# ── Estimates ─────────────────────────────────────────────────────────


class TestEstimates:
    @pytest.mark.asyncio
    async def test_one_estimate_per_tier(self, services, drivers, pickup, destination):
        estimates = await services.lifecycle.get_ride_estimates(
            pickup.coordinates, destination.coordinates
        )
        assert [e.service_type.value for e in estimates] == ["economy", "standard", "premium"]
        assert all(e.available_drivers == 3 for e in estimates)
        assert all(e.estimated_pickup_time_min == 1 for e in estimates)
        assert 3.30 <= estimates[1].pricing.total <= 3.40

    @pytest.mark.asyncio
    async def test_default_eta_without_drivers(self, services, pickup, destination):
        estimates = await services.lifecycle.get_ride_estimates(
            pickup.coordinates, destination.coordinates
        )
        assert all(e.available_drivers == 0 for e in estimates)
        assert all(e.estimated_pickup_time_min == 10 for e in estimates)


# ── Subscriptions ─────────────────────────────────────────────────────


class TestRiderSubscriptions:
    @pytest.mark.asyncio
    async def test_current_request_follows_cancel(self, services, ride_request):
        seen = []
        sub = await services.lifecycle.subscribe_current_request("cust-1", seen.append)
        assert seen[-1].id == ride_request.id

        await services.lifecycle.cancel_ride_request(ride_request.id)
        assert seen[-1] is None
        await sub.cancel()

    @pytest.mark.asyncio
    async def test_current_order_appears_on_accept(self, services, ride_request):
        seen = []
        sub = await services.lifecycle.subscribe_customer_current_order("cust-1", seen.append)
        assert seen == [None]

        order = await _accepted_order(services, ride_request)
        assert seen[-1].id == order.id
        assert seen[-1].status == RideStatus.ASSIGNED

        await services.lifecycle.update_ride_status(
            order.id, "drv-1", RideStatus.DRIVER_ARRIVING
        )
        assert seen[-1].status == RideStatus.DRIVER_ARRIVING
        await sub.cancel()

    @pytest.mark.asyncio
    async def test_request_list_newest_first(
        self, services, ride_request, customer, pickup, destination, clock
    ):
        seen = []
        sub = await services.lifecycle.subscribe_customer_requests("cust-1", seen.append)
        assert [r.id for r in seen[-1]] == [ride_request.id]

        clock.advance(minutes=1)
        second = await services.lifecycle.create_ride_request(
            customer.id,
            pickup,
            Location("Airport", Coordinates(31.7226, 35.9932)),
            "premium",
            "card",
        )
        assert [r.id for r in seen[-1]] == [second, ride_request.id]
        await sub.cancel()
