"""
Fare Calculator  (Strategy Pattern)
===================================

Formula
-------
Total = Base_Fare + Distance x Rate_Per_KM + Time_Fare + Surcharge - Discount

* **Base_Fare / Rate_Per_KM** are fixed per service tier.
* **Time_Fare / Surcharge / Discount** come from a ``FareAdjustment``
  strategy.  The default ``NoAdjustment`` returns zeros; surge or promo
  pricing plugs in here without touching the tier table.
* Duration estimate: 2 minutes per km, rounded up.

The total is rounded to 2 decimal places.  A quote is computed once when
the ride is requested and copied verbatim into offers and the order.

Complexity: O(1) per price calculation.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import NamedTuple, Optional

from .distance import distance_km as _distance_km
from .entities import Coordinates, RidePricing
from .enums import ServiceType

# tier -> (base fare, price per km), in currency units
TIER_RATES: dict[ServiceType, tuple[float, float]] = {
    ServiceType.ECONOMY: (1.5, 0.5),
    ServiceType.STANDARD: (2.0, 0.7),
    ServiceType.PREMIUM: (3.0, 1.0),
}

MINUTES_PER_KM = 2


def estimated_duration_min(distance_km: float) -> int:
    return math.ceil(distance_km * MINUTES_PER_KM)


# ── Strategy hierarchy ────────────────────────────────────────────────


class Adjustments(NamedTuple):
    time_fare: float = 0.0
    surcharge: float = 0.0
    discount: float = 0.0


class FareAdjustment(ABC):
    @abstractmethod
    def adjust(
        self, distance_km: float, duration_min: int, service_type: ServiceType
    ) -> Adjustments: ...


class NoAdjustment(FareAdjustment):
    def adjust(
        self, distance_km: float, duration_min: int, service_type: ServiceType
    ) -> Adjustments:
        return Adjustments()


def price_for(
    distance_km: float,
    service_type: ServiceType,
    currency: str = "JOD",
    adjustment: Optional[FareAdjustment] = None,
) -> RidePricing:
    """Fare breakdown for a trip of *distance_km* in *service_type*."""
    service_type = ServiceType(service_type)
    base_fare, per_km = TIER_RATES[service_type]
    duration = estimated_duration_min(distance_km)
    extra = (adjustment or NoAdjustment()).adjust(distance_km, duration, service_type)

    distance_fare = distance_km * per_km
    total = (
        base_fare + distance_fare + extra.time_fare + extra.surcharge - extra.discount
    )
    return RidePricing(
        base_fare=base_fare,
        distance_fare=distance_fare,
        time_fare=extra.time_fare,
        surcharge=extra.surcharge,
        discount=extra.discount,
        total=round(total, 2),
        currency=currency,
        estimated_distance_km=distance_km,
        estimated_duration_min=duration,
    )


# ── Engine facade ─────────────────────────────────────────────────────


class PricingEngine:
    """High-level API used by the lifecycle engine."""

    def __init__(
        self, currency: str = "JOD", adjustment: Optional[FareAdjustment] = None
    ):
        self.currency = currency
        self.adjustment = adjustment or NoAdjustment()

    def price_for(self, distance_km: float, service_type: ServiceType) -> RidePricing:
        return price_for(distance_km, service_type, self.currency, self.adjustment)

    def quote(
        self, pickup: Coordinates, destination: Coordinates, service_type: ServiceType
    ) -> RidePricing:
        return self.price_for(_distance_km(pickup, destination), service_type)

    def quote_all(
        self, pickup: Coordinates, destination: Coordinates
    ) -> dict[ServiceType, RidePricing]:
        distance = _distance_km(pickup, destination)
        return {tier: self.price_for(distance, tier) for tier in ServiceType}
