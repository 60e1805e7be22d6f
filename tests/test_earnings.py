"""Earnings windows and ride history projections."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from ridedispatch.domain.entities import Coordinates, Location, RideOrder
from ridedispatch.domain.enums import PaymentMethod, RideStatus, ServiceType
from ridedispatch.domain.exceptions import StoreError
from ridedispatch.domain.pricing import price_for
from ridedispatch.infrastructure.repositories import ORDERS
from ridedispatch.services.earnings import window_starts


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _finished_order(order_id, finished, total, status=RideStatus.COMPLETED,
                    driver_id="drv-1", customer_id="cust-1") -> RideOrder:
    here = Location("A", Coordinates(31.9454, 35.9284))
    pricing = price_for(0.0, ServiceType.STANDARD)
    order = RideOrder(
        id=order_id,
        request_id=order_id,
        customer_id=customer_id,
        driver_id=driver_id,
        pickup=here,
        destination=here,
        service_type=ServiceType.STANDARD,
        payment_method=PaymentMethod.CASH,
        pricing=replace(pricing, total=total),
        created_at=finished,
        updated_at=finished,
        status=status,
    )
    if status == RideStatus.COMPLETED:
        order.completed_at = finished
    else:
        order.cancelled_at = finished
    return order


@pytest.fixture
def orders():
    return [
        _finished_order("a", _utc(2026, 3, 10, 8, 0), 3.35),
        # 01:00 local on the 10th, still the 9th in UTC
        _finished_order("e", _utc(2026, 3, 9, 22, 0), 2.0),
        # 23:30 local on Monday the 9th
        _finished_order("b", _utc(2026, 3, 9, 20, 30), 5.0),
        # Saturday the 7th, before this week's Sunday
        _finished_order("c", _utc(2026, 3, 7, 12, 0), 10.0),
        _finished_order("d", _utc(2026, 2, 28, 12, 0), 7.0),
        _finished_order("x", _utc(2026, 3, 10, 7, 0), 4.0, status=RideStatus.CANCELLED),
        _finished_order("y", _utc(2026, 3, 10, 7, 30), 9.0, driver_id="drv-2"),
    ]


async def _store_orders(store, orders):
    for order in orders:
        await store.create(ORDERS, order.to_record(), order.id)


class TestWindows:
    def test_windows_start_at_local_midnights(self):
        day, week, month = window_starts(_utc(2026, 3, 10, 9, 0), "Asia/Amman")
        assert (day.day, day.hour) == (10, 0)
        assert week.weekday() == 6  # Sunday
        assert week.day == 8
        assert (month.day, month.hour) == (1, 0)

    def test_sunday_is_its_own_week_start(self):
        day, week, _ = window_starts(_utc(2026, 3, 8, 12, 0), "Asia/Amman")
        assert week == day


class TestEarnings:
    @pytest.mark.asyncio
    async def test_sums_per_window(self, services, store, orders, clock):
        await _store_orders(store, orders)
        earnings = await services.earnings.earnings_for("drv-1")
        assert earnings.today == 5.35
        assert earnings.week == 10.35
        assert earnings.month == 20.35

    @pytest.mark.asyncio
    async def test_rides_after_now_are_not_counted(self, services, store, orders):
        await _store_orders(store, orders)
        # Saturday the 7th; a, b and e finish later
        earnings = await services.earnings.earnings_for("drv-1", now=_utc(2026, 3, 7, 18, 0))
        assert earnings.today == 10.0
        assert earnings.week == 10.0
        assert earnings.month == 10.0

    @pytest.mark.asyncio
    async def test_ride_finishing_exactly_now_counts(self, services, store, orders):
        await _store_orders(store, orders)
        earnings = await services.earnings.earnings_for("drv-1", now=_utc(2026, 3, 10, 8, 0))
        assert earnings.today == 5.35

    @pytest.mark.asyncio
    async def test_no_rides_is_zero(self, services):
        earnings = await services.earnings.earnings_for("drv-9")
        assert (earnings.today, earnings.week, earnings.month) == (0.0, 0.0, 0.0)

    @pytest.mark.asyncio
    async def test_read_failure_yields_zeros(self, services):
        services.earnings.orders.completed_for_driver = AsyncMock(side_effect=StoreError("down"))
        earnings = await services.earnings.earnings_for("drv-1")
        assert earnings.month == 0.0


class TestHistory:
    @pytest.mark.asyncio
    async def test_driver_history_newest_first(self, services, store, orders):
        await _store_orders(store, orders)
        history = await services.earnings.history_for_driver("drv-1", limit=3)
        assert [o.id for o in history] == ["a", "x", "e"]

    @pytest.mark.asyncio
    async def test_customer_history_includes_every_driver(self, services, store, orders):
        await _store_orders(store, orders)
        history = await services.earnings.history_for_customer("cust-1")
        assert [o.id for o in history] == ["a", "y", "x", "e", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_live_orders_excluded(self, services, store, orders):
        live = _finished_order("live", _utc(2026, 3, 10, 8, 30), 3.0)
        live.status = RideStatus.IN_PROGRESS
        live.completed_at = None
        await _store_orders(store, orders + [live])
        history = await services.earnings.history_for_driver("drv-1")
        assert "live" not in [o.id for o in history]
