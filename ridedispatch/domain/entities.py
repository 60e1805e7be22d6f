"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``RideOrder``: enforces the forward-only lifecycle
  (ASSIGNED -> DRIVER_ARRIVING -> DRIVER_ARRIVED -> PICKED_UP -> IN_PROGRESS
  -> COMPLETED, CANCELLED from any non-terminal state).
- ``RideRequest`` / ``RideOffer`` know when they are logically expired.
- Every entity maps to exactly one canonical store record via
  ``to_record`` / ``from_record``.  Datetimes are stored as ISO-8601 UTC
  strings so records are plain JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .enums import (
    ACTIVE_RIDE_STATUSES,
    RIDE_TRANSITIONS,
    DriverStatus,
    OfferStatus,
    PaymentMethod,
    RideRequestStatus,
    RideStatus,
    ServiceType,
)
from .exceptions import InvalidTransition


def dump_dt(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def load_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def to_record(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_record(cls, data: dict) -> Coordinates:
        return cls(lat=float(data["lat"]), lng=float(data["lng"]))


@dataclass(frozen=True)
class Location:
    address: str
    coordinates: Coordinates
    place_id: Optional[str] = None

    def to_record(self) -> dict:
        return {
            "address": self.address,
            "coordinates": self.coordinates.to_record(),
            "place_id": self.place_id,
        }

    @classmethod
    def from_record(cls, data: dict) -> Location:
        return cls(
            address=data.get("address", ""),
            coordinates=Coordinates.from_record(data["coordinates"]),
            place_id=data.get("place_id"),
        )


@dataclass(frozen=True)
class VehicleInfo:
    make: str = ""
    model: str = ""
    year: int = 0
    color: str = ""
    plate_number: str = ""

    def to_record(self) -> dict:
        return {
            "make": self.make,
            "model": self.model,
            "year": self.year,
            "color": self.color,
            "plate_number": self.plate_number,
        }

    @classmethod
    def from_record(cls, data: Optional[dict]) -> VehicleInfo:
        if not data:
            return cls()
        return cls(
            make=data.get("make", ""),
            model=data.get("model", ""),
            year=int(data.get("year") or 0),
            color=data.get("color", ""),
            plate_number=data.get("plate_number", ""),
        )


@dataclass(frozen=True)
class RidePricing:
    base_fare: float
    distance_fare: float
    time_fare: float
    surcharge: float
    discount: float
    total: float
    currency: str
    estimated_distance_km: float
    estimated_duration_min: int

    def to_record(self) -> dict:
        return {
            "base_fare": self.base_fare,
            "distance_fare": self.distance_fare,
            "time_fare": self.time_fare,
            "surcharge": self.surcharge,
            "discount": self.discount,
            "total": self.total,
            "currency": self.currency,
            "estimated_distance_km": self.estimated_distance_km,
            "estimated_duration_min": self.estimated_duration_min,
        }

    @classmethod
    def from_record(cls, data: dict) -> RidePricing:
        return cls(
            base_fare=float(data.get("base_fare", 0.0)),
            distance_fare=float(data.get("distance_fare", 0.0)),
            time_fare=float(data.get("time_fare", 0.0)),
            surcharge=float(data.get("surcharge", 0.0)),
            discount=float(data.get("discount", 0.0)),
            total=float(data.get("total", 0.0)),
            currency=data.get("currency", "JOD"),
            estimated_distance_km=float(data.get("estimated_distance_km", 0.0)),
            estimated_duration_min=int(data.get("estimated_duration_min", 0)),
        )


@dataclass(frozen=True)
class RideEvent:
    status: RideStatus
    timestamp: datetime
    notes: Optional[str] = None
    location: Optional[Coordinates] = None

    def to_record(self) -> dict:
        return {
            "status": self.status.value,
            "timestamp": dump_dt(self.timestamp),
            "notes": self.notes,
            "location": self.location.to_record() if self.location else None,
        }

    @classmethod
    def from_record(cls, data: dict) -> RideEvent:
        loc = data.get("location")
        return cls(
            status=RideStatus(data["status"]),
            timestamp=load_dt(data["timestamp"]),
            notes=data.get("notes"),
            location=Coordinates.from_record(loc) if loc else None,
        )


@dataclass(frozen=True)
class DriverInfo:
    """Public snapshot of a driver, copied into an order at acceptance."""

    id: str
    name: str
    phone: str
    rating: float
    vehicle: VehicleInfo
    location: Optional[Coordinates] = None

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "rating": self.rating,
            "vehicle": self.vehicle.to_record(),
            "location": self.location.to_record() if self.location else None,
        }

    @classmethod
    def from_record(cls, data: dict) -> DriverInfo:
        loc = data.get("location")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            phone=data.get("phone", ""),
            rating=float(data.get("rating", 5.0)),
            vehicle=VehicleInfo.from_record(data.get("vehicle")),
            location=Coordinates.from_record(loc) if loc else None,
        )


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Customer:
    id: str
    name: str = ""
    phone: Optional[str] = None

    def to_record(self) -> dict:
        return {"id": self.id, "name": self.name, "phone": self.phone}

    @classmethod
    def from_record(cls, data: dict) -> Customer:
        return cls(id=data["id"], name=data.get("name", ""), phone=data.get("phone"))


@dataclass
class Driver:
    id: str
    name: str = ""
    phone: str = ""
    rating: float = 5.0
    total_rides: int = 0
    vehicle: VehicleInfo = field(default_factory=VehicleInfo)
    location: Optional[Coordinates] = None
    status: DriverStatus = DriverStatus.OFFLINE
    is_online: bool = False
    is_available: bool = False
    h3_cell: Optional[str] = None
    last_location_update: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def set_status(self, status: DriverStatus) -> None:
        """Keep ``is_available`` / ``is_online`` in step with ``status``."""
        self.status = status
        self.is_online = status != DriverStatus.OFFLINE
        self.is_available = status == DriverStatus.ONLINE

    def info(self) -> DriverInfo:
        return DriverInfo(
            id=self.id,
            name=self.name,
            phone=self.phone,
            rating=self.rating,
            vehicle=self.vehicle,
            location=self.location,
        )

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "rating": self.rating,
            "total_rides": self.total_rides,
            "vehicle": self.vehicle.to_record(),
            "location": self.location.to_record() if self.location else None,
            "status": self.status.value,
            "is_online": self.is_online,
            "is_available": self.is_available,
            "h3_cell": self.h3_cell,
            "last_location_update": dump_dt(self.last_location_update),
            "created_at": dump_dt(self.created_at),
            "updated_at": dump_dt(self.updated_at),
        }

    @classmethod
    def from_record(cls, data: dict) -> Driver:
        loc = data.get("location")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            phone=data.get("phone", ""),
            rating=float(data.get("rating", 5.0)),
            total_rides=int(data.get("total_rides", 0)),
            vehicle=VehicleInfo.from_record(data.get("vehicle")),
            location=Coordinates.from_record(loc) if loc else None,
            status=DriverStatus(data.get("status", DriverStatus.OFFLINE.value)),
            is_online=bool(data.get("is_online", False)),
            is_available=bool(data.get("is_available", False)),
            h3_cell=data.get("h3_cell"),
            last_location_update=load_dt(data.get("last_location_update")),
            created_at=load_dt(data.get("created_at")),
            updated_at=load_dt(data.get("updated_at")),
        )


@dataclass
class RideRequest:
    id: Optional[str]
    customer_id: str
    pickup: Location
    destination: Location
    service_type: ServiceType
    payment_method: PaymentMethod
    pricing: RidePricing
    created_at: datetime
    expires_at: datetime
    status: RideRequestStatus = RideRequestStatus.PENDING
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None
    driver_id: Optional[str] = None
    order_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    offer_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_open(self, now: datetime) -> bool:
        """Pending and not yet past ``expires_at``."""
        return self.status == RideRequestStatus.PENDING and not self.is_expired(now)

    def ensure_cancellable(self, now: datetime) -> None:
        if self.status != RideRequestStatus.PENDING:
            raise InvalidTransition(
                f"Cannot cancel ride request in status {self.status.value}"
            )
        if self.is_expired(now):
            raise InvalidTransition("Cannot cancel an expired ride request")

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "pickup": self.pickup.to_record(),
            "destination": self.destination.to_record(),
            "service_type": self.service_type.value,
            "payment_method": self.payment_method.value,
            "notes": self.notes,
            "status": self.status.value,
            "pricing": self.pricing.to_record(),
            "created_at": dump_dt(self.created_at),
            "updated_at": dump_dt(self.updated_at),
            "expires_at": dump_dt(self.expires_at),
            "driver_id": self.driver_id,
            "order_id": self.order_id,
            "cancellation_reason": self.cancellation_reason,
            "offer_count": self.offer_count,
        }

    @classmethod
    def from_record(cls, data: dict) -> RideRequest:
        return cls(
            id=data.get("id"),
            customer_id=data["customer_id"],
            pickup=Location.from_record(data["pickup"]),
            destination=Location.from_record(data["destination"]),
            service_type=ServiceType(data["service_type"]),
            payment_method=PaymentMethod(data["payment_method"]),
            pricing=RidePricing.from_record(data["pricing"]),
            created_at=load_dt(data["created_at"]),
            expires_at=load_dt(data["expires_at"]),
            status=RideRequestStatus(data.get("status", "pending")),
            notes=data.get("notes"),
            updated_at=load_dt(data.get("updated_at")),
            driver_id=data.get("driver_id"),
            order_id=data.get("order_id"),
            cancellation_reason=data.get("cancellation_reason"),
            offer_count=int(data.get("offer_count", 0)),
        )


@dataclass
class RideOffer:
    """One driver's copy of a broadcast ride request."""

    id: Optional[str]
    ride_id: str
    driver_id: str
    customer_id: str
    pickup: Location
    destination: Location
    service_type: ServiceType
    pricing: RidePricing
    estimated_distance: float
    estimated_duration: int
    created_at: datetime
    expires_at: datetime
    status: OfferStatus = OfferStatus.PENDING
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "ride_id": self.ride_id,
            "driver_id": self.driver_id,
            "customer_id": self.customer_id,
            "pickup": self.pickup.to_record(),
            "destination": self.destination.to_record(),
            "service_type": self.service_type.value,
            "pricing": self.pricing.to_record(),
            "estimated_distance": self.estimated_distance,
            "estimated_duration": self.estimated_duration,
            "status": self.status.value,
            "created_at": dump_dt(self.created_at),
            "expires_at": dump_dt(self.expires_at),
            "responded_at": dump_dt(self.responded_at),
            "decline_reason": self.decline_reason,
        }

    @classmethod
    def from_record(cls, data: dict) -> RideOffer:
        return cls(
            id=data.get("id"),
            ride_id=data["ride_id"],
            driver_id=data["driver_id"],
            customer_id=data.get("customer_id", ""),
            pickup=Location.from_record(data["pickup"]),
            destination=Location.from_record(data["destination"]),
            service_type=ServiceType(data["service_type"]),
            pricing=RidePricing.from_record(data["pricing"]),
            estimated_distance=float(data.get("estimated_distance", 0.0)),
            estimated_duration=int(data.get("estimated_duration", 0)),
            created_at=load_dt(data["created_at"]),
            expires_at=load_dt(data["expires_at"]),
            status=OfferStatus(data.get("status", "pending")),
            responded_at=load_dt(data.get("responded_at")),
            decline_reason=data.get("decline_reason"),
        )


@dataclass
class RideOrder:
    id: str
    request_id: str
    customer_id: str
    pickup: Location
    destination: Location
    service_type: ServiceType
    payment_method: PaymentMethod
    pricing: RidePricing
    created_at: datetime
    updated_at: datetime
    status: RideStatus = RideStatus.ASSIGNED
    driver_id: Optional[str] = None
    driver: Optional[DriverInfo] = None
    timeline: list[RideEvent] = field(default_factory=list)
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RIDE_STATUSES

    def transition_to(
        self,
        new_status: RideStatus,
        at: datetime,
        notes: Optional[str] = None,
        location: Optional[Coordinates] = None,
    ) -> RideEvent:
        """Move to *new_status* if the transition is legal, else raise.

        Appends one event to the timeline and returns it.  The event
        timestamp never precedes the previous event's.
        """
        allowed = RIDE_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        if self.timeline and at < self.timeline[-1].timestamp:
            at = self.timeline[-1].timestamp

        event = RideEvent(status=new_status, timestamp=at, notes=notes, location=location)
        self.status = new_status
        self.timeline.append(event)
        self.updated_at = at
        if new_status == RideStatus.COMPLETED:
            self.completed_at = at
        elif new_status == RideStatus.CANCELLED:
            self.cancelled_at = at
            self.cancellation_reason = notes
        return event

    def finished_at(self) -> Optional[datetime]:
        return self.completed_at or self.cancelled_at or self.updated_at

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "customer_id": self.customer_id,
            "driver_id": self.driver_id,
            "pickup": self.pickup.to_record(),
            "destination": self.destination.to_record(),
            "service_type": self.service_type.value,
            "payment_method": self.payment_method.value,
            "status": self.status.value,
            "pricing": self.pricing.to_record(),
            "driver": self.driver.to_record() if self.driver else None,
            "timeline": [e.to_record() for e in self.timeline],
            "notes": self.notes,
            "created_at": dump_dt(self.created_at),
            "updated_at": dump_dt(self.updated_at),
            "completed_at": dump_dt(self.completed_at),
            "cancelled_at": dump_dt(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
        }

    @classmethod
    def from_record(cls, data: dict) -> RideOrder:
        driver = data.get("driver")
        return cls(
            id=data["id"],
            request_id=data.get("request_id") or data["id"],
            customer_id=data["customer_id"],
            driver_id=data.get("driver_id"),
            pickup=Location.from_record(data["pickup"]),
            destination=Location.from_record(data["destination"]),
            service_type=ServiceType(data["service_type"]),
            payment_method=PaymentMethod(data["payment_method"]),
            status=RideStatus(data["status"]),
            pricing=RidePricing.from_record(data.get("pricing") or {}),
            driver=DriverInfo.from_record(driver) if driver else None,
            timeline=[RideEvent.from_record(e) for e in data.get("timeline") or []],
            notes=data.get("notes"),
            created_at=load_dt(data["created_at"]),
            updated_at=load_dt(data.get("updated_at") or data["created_at"]),
            completed_at=load_dt(data.get("completed_at")),
            cancelled_at=load_dt(data.get("cancelled_at")),
            cancellation_reason=data.get("cancellation_reason"),
        )


# ── Read models ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class NearbyDriver:
    id: str
    name: str
    location: Coordinates
    distance_km: float
    estimated_arrival_min: int
    rating: float
    vehicle: VehicleInfo


@dataclass(frozen=True)
class RideEstimate:
    service_type: ServiceType
    pricing: RidePricing
    estimated_pickup_time_min: int
    available_drivers: int


@dataclass(frozen=True)
class Earnings:
    today: float = 0.0
    week: float = 0.0
    month: float = 0.0
