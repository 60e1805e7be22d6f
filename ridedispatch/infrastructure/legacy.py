"""
Legacy order-document upgrade.

Orders written by the first-generation mobile clients used camelCase keys
and, for some writers, a nested layout::

    {"customer": {"id": ...}, "locations": {"pickup": {...}},
     "status": {"current": ..., "timeline": [...]},
     "service": {"type": ...}, "payment": {"method": ...},
     "metadata": {"createdAt": ..., "updatedAt": ..., "completedAt": ...}}

with coordinates as ``latitude/longitude``.  ``upgrade_legacy_order`` is the
only place these shapes are understood; it returns the canonical record
and leaves canonical records untouched.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from ridedispatch.domain.entities import dump_dt
from ridedispatch.domain.enums import RideStatus

_ORDER_STATUSES = {s.value for s in RideStatus}

_CAMEL_KEYS = {
    "customerId": "customer_id",
    "driverId": "driver_id",
    "requestId": "request_id",
    "serviceType": "service_type",
    "paymentMethod": "payment_method",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "completedAt": "completed_at",
    "cancelledAt": "cancelled_at",
    "cancellationReason": "cancellation_reason",
    "placeId": "place_id",
    "plateNumber": "plate_number",
    "baseFare": "base_fare",
    "distanceFare": "distance_fare",
    "timeFare": "time_fare",
    "estimatedDistance": "estimated_distance_km",
    "estimatedDuration": "estimated_duration_min",
}


def is_legacy(record: dict) -> bool:
    return "customer_id" not in record


def _timestamp(value: Any) -> Optional[str]:
    """Firestore exports timestamps as ISO strings, datetimes or
    ``{"seconds": ..., "nanoseconds": ...}`` maps."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return dump_dt(value)
    if isinstance(value, dict) and "seconds" in value:
        return dump_dt(datetime.fromtimestamp(value["seconds"], tz=timezone.utc))
    return None


def _coordinates(data: Optional[dict]) -> Optional[dict]:
    if not data:
        return None
    lat = data.get("lat", data.get("latitude"))
    lng = data.get("lng", data.get("longitude"))
    if lat is None or lng is None:
        return None
    return {"lat": float(lat), "lng": float(lng)}


def _location(data: Optional[dict]) -> Optional[dict]:
    if not data:
        return None
    return {
        "address": data.get("address", ""),
        "coordinates": _coordinates(data.get("coordinates")),
        "place_id": data.get("place_id", data.get("placeId")),
    }


def _rename(data: Optional[dict]) -> Optional[dict]:
    if data is None:
        return None
    return {_CAMEL_KEYS.get(k, k): v for k, v in data.items()}


def _event(data: dict) -> dict:
    return {
        "status": data["status"],
        "timestamp": _timestamp(data.get("timestamp")),
        "notes": data.get("notes"),
        "location": _coordinates(data.get("location")),
    }


def upgrade_legacy_order(record: dict) -> dict:
    if not is_legacy(record):
        return record

    data = _rename(record)
    locations = record.get("locations") or {}
    status = record.get("status")
    metadata = record.get("metadata") or {}

    if isinstance(status, dict):
        current_status = status.get("current")
        timeline = status.get("timeline") or record.get("timeline") or []
    else:
        current_status = status
        timeline = record.get("timeline") or []

    driver = _rename(record.get("driver"))
    if driver is not None:
        driver["vehicle"] = _rename(driver.get("vehicle"))
        driver["location"] = _coordinates(driver.get("location"))

    pricing = _rename(record.get("pricing")) or {}

    return {
        "id": record["id"],
        "request_id": data.get("request_id") or record["id"],
        "customer_id": (record.get("customer") or {}).get("id") or data.get("customer_id"),
        "driver_id": data.get("driver_id"),
        "pickup": _location(locations.get("pickup") or record.get("pickup")),
        "destination": _location(
            locations.get("destination") or record.get("destination")
        ),
        "service_type": (record.get("service") or {}).get("type")
        or data.get("service_type"),
        "payment_method": (record.get("payment") or {}).get("method")
        or data.get("payment_method"),
        "status": current_status,
        "pricing": pricing,
        "driver": driver,
        # "pending"/"searching" entries predate driver assignment
        "timeline": [_event(e) for e in timeline if e.get("status") in _ORDER_STATUSES],
        "notes": data.get("notes"),
        "created_at": _timestamp(metadata.get("createdAt") or data.get("created_at")),
        "updated_at": _timestamp(metadata.get("updatedAt") or data.get("updated_at")),
        "completed_at": _timestamp(
            metadata.get("completedAt") or data.get("completed_at")
        ),
        "cancelled_at": _timestamp(data.get("cancelled_at")),
        "cancellation_reason": data.get("cancellation_reason"),
    }
