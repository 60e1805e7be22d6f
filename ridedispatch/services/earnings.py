"""
Earnings & History Aggregator
=============================

Read-only projections over ``orders``.  Nothing here writes.

Windows are computed in the configured local time zone:

* **today**  -- since local midnight
* **week**   -- since the most recent Sunday midnight
* **month**  -- since midnight on the 1st

Each window ends at ``now``; rides finished later are not counted.

A failing read yields zero earnings rather than an error so a driver's
dashboard still renders.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from ridedispatch.config import Settings
from ridedispatch.domain.clock import Clock, local_tz, utc_now
from ridedispatch.domain.entities import Earnings, RideOrder
from ridedispatch.domain.exceptions import StoreError
from ridedispatch.infrastructure.repositories import OrderRepository
from ridedispatch.infrastructure.store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


def window_starts(now: datetime, tz_name: str) -> tuple[datetime, datetime, datetime]:
    """(day, week, month) start instants for *now* in zone *tz_name*."""
    local = now.astimezone(local_tz(tz_name))
    day = local.replace(hour=0, minute=0, second=0, microsecond=0)
    week = day - timedelta(days=(local.weekday() + 1) % 7)  # Sunday-based
    month = day.replace(day=1)
    return day, week, month


class EarningsAggregator:
    def __init__(self, store: RecordStore, settings: Settings, clock: Clock = utc_now):
        self.settings = settings
        self.clock = clock
        self.orders = OrderRepository(store)

    async def earnings_for(
        self, driver_id: str, now: Optional[datetime] = None
    ) -> Earnings:
        now = now or self.clock()
        day, week, month = window_starts(now, self.settings.timezone)
        try:
            completed = await self.orders.completed_for_driver(driver_id)
        except StoreError:
            logger.exception("Could not load earnings for driver %s", driver_id)
            return Earnings()

        today = week_total = month_total = 0.0
        for order in completed:
            finished = order.completed_at
            if finished is None or finished > now:
                continue
            amount = order.pricing.total
            if finished >= day:
                today += amount
            if finished >= week:
                week_total += amount
            if finished >= month:
                month_total += amount
        return Earnings(
            today=round(today, 2), week=round(week_total, 2), month=round(month_total, 2)
        )

    async def history_for_driver(
        self, driver_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[RideOrder]:
        return self._newest_first(
            await self.orders.finished_for("driver_id", driver_id), limit
        )

    async def history_for_customer(
        self, customer_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[RideOrder]:
        return self._newest_first(
            await self.orders.finished_for("customer_id", customer_id), limit
        )

    @staticmethod
    def _newest_first(orders: list[RideOrder], limit: int) -> list[RideOrder]:
        orders.sort(key=lambda o: o.finished_at(), reverse=True)
        return orders[:limit]
