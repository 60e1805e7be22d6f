"""Explicit wiring of the engine's services around one record store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ridedispatch.config import Settings
from ridedispatch.domain.clock import Clock, utc_now
from ridedispatch.domain.matching import CandidatePolicy
from ridedispatch.domain.pricing import FareAdjustment, PricingEngine
from ridedispatch.infrastructure.store import RecordStore

from .arbitration import DispatchArbiter
from .drivers import DriverService
from .earnings import EarningsAggregator
from .lifecycle import RideLifecycleEngine
from .notifications import NotificationSender, Notifier, StoreNotificationSender


@dataclass
class Services:
    store: RecordStore
    settings: Settings
    inbox: StoreNotificationSender
    notifier: Notifier
    arbiter: DispatchArbiter
    drivers: DriverService
    lifecycle: RideLifecycleEngine
    earnings: EarningsAggregator


def build_services(
    store: RecordStore,
    settings: Settings,
    clock: Clock = utc_now,
    sender: Optional[NotificationSender] = None,
    policy: Optional[CandidatePolicy] = None,
    adjustment: Optional[FareAdjustment] = None,
) -> Services:
    """Construct every service around *store*.

    *sender* defaults to the store-backed inbox; tests pass a recording or
    failing sender instead.
    """
    inbox = StoreNotificationSender(store, clock)
    notifier = Notifier(sender or inbox, settings.currency)
    arbiter = DispatchArbiter(store, notifier, settings, clock, policy)
    drivers = DriverService(store, settings, clock)
    lifecycle = RideLifecycleEngine(
        store,
        arbiter,
        drivers,
        notifier,
        PricingEngine(settings.currency, adjustment),
        settings,
        clock,
    )
    return Services(
        store=store,
        settings=settings,
        inbox=inbox,
        notifier=notifier,
        arbiter=arbiter,
        drivers=drivers,
        lifecycle=lifecycle,
        earnings=EarningsAggregator(store, settings, clock),
    )
