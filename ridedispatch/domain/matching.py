"""
Candidate Driver Selection
==========================

1. **Spatial Binning**  -- drivers carry the H3 cell (resolution 7,
   ~5.16 km²) of their last reported location.  The pickup's cell is
   expanded into a k-ring disk large enough to cover the search radius,
   so the store only returns drivers from nearby cells.
2. **Exact Filter**     -- Haversine distance from each driver to the
   pickup must be within the radius.
3. **Ranking**          -- nearest first, capped at the fan-out size.

Complexity
----------
Let D = drivers returned for the disk.

* Disk expansion: O(k²) cells, k = ceil(radius / hex spacing) + 1
* Filter + sort:  O(D log D)

**Note:** Straight-line distance is a proxy for pickup ETA; a routing
engine would rank differently around rivers or highways.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Iterable

import h3

from .distance import distance_km
from .entities import Coordinates, Driver
from .enums import DriverStatus


def h3_cell(coords: Coordinates, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(coords.lat, coords.lng, resolution)


def ring_size_for(radius_km: float, resolution: int = 7) -> int:
    """Number of k-rings needed so the disk covers *radius_km*."""
    edge = h3.average_hexagon_edge_length(resolution, unit="km")
    spacing = math.sqrt(3) * edge  # centre-to-centre distance of neighbours
    return math.ceil(radius_km / spacing) + 1


def cells_within(center: Coordinates, radius_km: float, resolution: int = 7) -> list[str]:
    origin = h3_cell(center, resolution)
    return sorted(h3.grid_disk(origin, ring_size_for(radius_km, resolution)))


def is_dispatchable(driver: Driver) -> bool:
    return (
        driver.status == DriverStatus.ONLINE
        and driver.is_online
        and driver.is_available
        and driver.location is not None
    )


def rank_by_distance(
    drivers: Iterable[Driver], pickup: Coordinates, radius_km: float
) -> list[tuple[Driver, float]]:
    """Dispatchable drivers within *radius_km* of *pickup*, nearest first."""
    ranked = []
    for driver in drivers:
        if not is_dispatchable(driver):
            continue
        d = distance_km(pickup, driver.location)
        if d <= radius_km:
            ranked.append((driver, d))
    ranked.sort(key=lambda item: (item[1], item[0].id))
    return ranked


# ── Policy hierarchy ──────────────────────────────────────────────────


class CandidatePolicy(ABC):
    """Chooses which drivers receive an offer for a new ride request."""

    @abstractmethod
    def select(
        self, drivers: Iterable[Driver], pickup: Coordinates
    ) -> list[Driver]: ...


class NearestAvailablePolicy(CandidatePolicy):
    def __init__(self, radius_km: float = 10.0, limit: int = 5):
        self.radius_km = radius_km
        self.limit = limit

    def select(self, drivers: Iterable[Driver], pickup: Coordinates) -> list[Driver]:
        ranked = rank_by_distance(drivers, pickup, self.radius_km)
        return [driver for driver, _ in ranked[: self.limit]]
