"""
Driver endpoints
================

GET   /api/v1/drivers/nearby                 -- available drivers near a point
PUT   /api/v1/drivers/{driver_id}            -- create or update a profile
GET   /api/v1/drivers/{driver_id}            -- profile and availability
PATCH /api/v1/drivers/{driver_id}/status     -- go online / offline
PUT   /api/v1/drivers/{driver_id}/location   -- report position
GET   /api/v1/drivers/{driver_id}/current-order
GET   /api/v1/drivers/{driver_id}/earnings
GET   /api/v1/drivers/{driver_id}/history
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from ridedispatch.api.dependencies import get_services
from ridedispatch.api.middleware import RATE_LIMIT, limiter
from ridedispatch.api.schemas import (
    DriverLocationRequest,
    DriverProfileRequest,
    DriverResponse,
    DriverStatusRequest,
    EarningsResponse,
    NearbyDriverResponse,
    OrderResponse,
)
from ridedispatch.domain.entities import Coordinates, Driver
from ridedispatch.services.container import Services

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get(
    "/nearby",
    response_model=list[NearbyDriverResponse],
    summary="Available drivers around a location, nearest first",
)
@limiter.limit(RATE_LIMIT)
async def nearby_drivers(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, le=50),
    services: Services = Depends(get_services),
):
    return await services.drivers.nearby_drivers(Coordinates(lat, lng), radius_km)


@router.put("/{driver_id}", response_model=DriverResponse, summary="Upsert a profile")
@limiter.limit(RATE_LIMIT)
async def upsert_driver(
    request: Request,
    driver_id: str,
    body: DriverProfileRequest,
    services: Services = Depends(get_services),
):
    driver = Driver(
        id=driver_id,
        name=body.name,
        phone=body.phone,
        vehicle=body.vehicle.to_domain(),
        location=body.location.to_domain() if body.location else None,
    )
    return await services.drivers.upsert_driver_profile(driver)


@router.get("/{driver_id}", response_model=DriverResponse, summary="Get a driver")
@limiter.limit(RATE_LIMIT)
async def get_driver(
    request: Request,
    driver_id: str,
    services: Services = Depends(get_services),
):
    return await services.drivers.get_driver(driver_id)


@router.patch(
    "/{driver_id}/status",
    response_model=DriverResponse,
    summary="Change availability",
    responses={409: {"description": "Driver has an active ride"}},
)
@limiter.limit(RATE_LIMIT)
async def update_status(
    request: Request,
    driver_id: str,
    body: DriverStatusRequest,
    services: Services = Depends(get_services),
):
    return await services.drivers.update_driver_status(driver_id, body.status)


@router.put("/{driver_id}/location", status_code=204, summary="Report position")
@limiter.limit(RATE_LIMIT)
async def update_location(
    request: Request,
    driver_id: str,
    body: DriverLocationRequest,
    services: Services = Depends(get_services),
):
    await services.drivers.update_driver_location(
        driver_id, Coordinates(body.lat, body.lng), body.bearing, body.speed
    )
    return Response(status_code=204)


@router.get(
    "/{driver_id}/current-order",
    response_model=Optional[OrderResponse],
    summary="The driver's non-terminal order, if any",
)
@limiter.limit(RATE_LIMIT)
async def current_order(
    request: Request,
    driver_id: str,
    services: Services = Depends(get_services),
):
    return await services.drivers.current_order_for_driver(driver_id)


@router.get("/{driver_id}/earnings", response_model=EarningsResponse)
@limiter.limit(RATE_LIMIT)
async def earnings(
    request: Request,
    driver_id: str,
    services: Services = Depends(get_services),
):
    return await services.earnings.earnings_for(driver_id)


@router.get("/{driver_id}/history", response_model=list[OrderResponse])
@limiter.limit(RATE_LIMIT)
async def history(
    request: Request,
    driver_id: str,
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
):
    return await services.earnings.history_for_driver(driver_id, limit)
