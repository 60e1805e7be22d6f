"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ridedispatch.domain.entities import Coordinates, Location, VehicleInfo
from ridedispatch.domain.enums import (
    DriverStatus,
    OfferStatus,
    PaymentMethod,
    RideRequestStatus,
    RideStatus,
    ServiceType,
)


# ── Shared value objects ──────────────────────────────────────────────


class CoordinatesSchema(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_domain(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)


class LocationSchema(BaseModel):
    address: str = ""
    coordinates: CoordinatesSchema
    place_id: Optional[str] = None

    def to_domain(self) -> Location:
        return Location(
            address=self.address,
            coordinates=self.coordinates.to_domain(),
            place_id=self.place_id,
        )


class VehicleSchema(BaseModel):
    make: str = ""
    model: str = ""
    year: int = 0
    color: str = ""
    plate_number: str = ""

    def to_domain(self) -> VehicleInfo:
        return VehicleInfo(**self.model_dump())


class PricingSchema(BaseModel):
    base_fare: float
    distance_fare: float
    time_fare: float
    surcharge: float
    discount: float
    total: float
    currency: str
    estimated_distance_km: float
    estimated_duration_min: int


# ── Requests ──────────────────────────────────────────────────────────


class RideCreateRequest(BaseModel):
    customer_id: str
    pickup: LocationSchema
    destination: LocationSchema
    service_type: ServiceType = ServiceType.STANDARD
    payment_method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = Field(None, max_length=500)


class EstimateRequest(BaseModel):
    pickup: CoordinatesSchema
    destination: CoordinatesSchema


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class OrderCancelRequest(BaseModel):
    actor_id: str
    reason: Optional[str] = Field(None, max_length=500)


class OfferAcceptRequest(BaseModel):
    driver_id: str


class OfferDeclineRequest(BaseModel):
    driver_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=200)


class StatusUpdateRequest(BaseModel):
    driver_id: str
    status: RideStatus
    location: Optional[CoordinatesSchema] = None
    notes: Optional[str] = Field(None, max_length=500)


class DriverProfileRequest(BaseModel):
    name: str
    phone: str = ""
    vehicle: VehicleSchema = Field(default_factory=VehicleSchema)
    location: Optional[CoordinatesSchema] = None


class DriverStatusRequest(BaseModel):
    status: DriverStatus


class DriverLocationRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    bearing: Optional[float] = Field(None, ge=0, lt=360)
    speed: Optional[float] = Field(None, ge=0)


# ── Responses ─────────────────────────────────────────────────────────


class RideCreatedResponse(BaseModel):
    id: str


class RideRequestResponse(BaseModel):
    id: str
    customer_id: str
    pickup: LocationSchema
    destination: LocationSchema
    service_type: ServiceType
    payment_method: PaymentMethod
    status: RideRequestStatus
    pricing: PricingSchema
    notes: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    driver_id: Optional[str] = None
    order_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    offer_count: int = 0


class OfferResponse(BaseModel):
    id: str
    ride_id: str
    driver_id: str
    status: OfferStatus
    pricing: PricingSchema
    estimated_distance: float
    estimated_duration: int
    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None


class DriverInfoSchema(BaseModel):
    id: str
    name: str
    phone: str
    rating: float
    vehicle: VehicleSchema
    location: Optional[CoordinatesSchema] = None


class RideEventSchema(BaseModel):
    status: RideStatus
    timestamp: datetime
    notes: Optional[str] = None
    location: Optional[CoordinatesSchema] = None


class OrderResponse(BaseModel):
    id: str
    request_id: str
    customer_id: str
    driver_id: Optional[str] = None
    pickup: LocationSchema
    destination: LocationSchema
    service_type: ServiceType
    payment_method: PaymentMethod
    status: RideStatus
    pricing: PricingSchema
    driver: Optional[DriverInfoSchema] = None
    timeline: list[RideEventSchema] = []
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class DriverResponse(BaseModel):
    id: str
    name: str
    phone: str
    rating: float
    total_rides: int
    vehicle: VehicleSchema
    location: Optional[CoordinatesSchema] = None
    status: DriverStatus
    is_online: bool
    is_available: bool
    last_location_update: Optional[datetime] = None


class NearbyDriverResponse(BaseModel):
    id: str
    name: str
    location: CoordinatesSchema
    distance_km: float
    estimated_arrival_min: int
    rating: float
    vehicle: VehicleSchema


class EstimateResponse(BaseModel):
    service_type: ServiceType
    pricing: PricingSchema
    estimated_pickup_time_min: int
    available_drivers: int


class EarningsResponse(BaseModel):
    today: float
    week: float
    month: float


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    user_type: str
    type: str
    title: str
    message: str
    data: dict[str, Any] = {}
    read: bool = False
    created_at: datetime


class CountResponse(BaseModel):
    count: int


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
