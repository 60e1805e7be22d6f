"""
Rider endpoints
===============

POST /api/v1/rides                          -- request a ride (fans out offers)
POST /api/v1/rides/estimates                -- price + pickup ETA per tier
GET  /api/v1/rides/{request_id}             -- request status and price
POST /api/v1/rides/{request_id}/cancel      -- cancel a pending request
GET  /api/v1/rides/customers/{id}/history   -- finished orders, newest first
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from ridedispatch.api.dependencies import get_services
from ridedispatch.api.middleware import RATE_LIMIT, limiter
from ridedispatch.api.schemas import (
    CancelRequest,
    EstimateRequest,
    EstimateResponse,
    OrderResponse,
    RideCreatedResponse,
    RideCreateRequest,
    RideRequestResponse,
)
from ridedispatch.services.container import Services

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "",
    status_code=201,
    response_model=RideCreatedResponse,
    summary="Request a ride",
    responses={404: {"description": "Customer not found"}},
)
@limiter.limit(RATE_LIMIT)
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    services: Services = Depends(get_services),
):
    request_id = await services.lifecycle.create_ride_request(
        customer_id=body.customer_id,
        pickup=body.pickup.to_domain(),
        destination=body.destination.to_domain(),
        service_type=body.service_type,
        payment_method=body.payment_method,
        notes=body.notes,
    )
    return RideCreatedResponse(id=request_id)


@router.post(
    "/estimates",
    response_model=list[EstimateResponse],
    summary="Fare and pickup estimates for every service tier",
)
@limiter.limit(RATE_LIMIT)
async def get_estimates(
    request: Request,
    body: EstimateRequest,
    services: Services = Depends(get_services),
):
    return await services.lifecycle.get_ride_estimates(
        body.pickup.to_domain(), body.destination.to_domain()
    )


@router.get(
    "/customers/{customer_id}/history",
    response_model=list[OrderResponse],
    summary="Completed and cancelled rides of a customer",
)
@limiter.limit(RATE_LIMIT)
async def get_customer_history(
    request: Request,
    customer_id: str,
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
):
    return await services.earnings.history_for_customer(customer_id, limit)


@router.get(
    "/{request_id}",
    response_model=RideRequestResponse,
    summary="Get ride request status and price",
)
@limiter.limit(RATE_LIMIT)
async def get_ride(
    request: Request,
    request_id: str,
    services: Services = Depends(get_services),
):
    return await services.lifecycle.get_ride_request(request_id)


@router.post(
    "/{request_id}/cancel",
    response_model=RideRequestResponse,
    summary="Cancel a pending ride request",
    description=(
        "Only a PENDING, unexpired request can be cancelled.  Outstanding "
        "driver offers are declined in the same commit."
    ),
)
@limiter.limit(RATE_LIMIT)
async def cancel_ride(
    request: Request,
    request_id: str,
    body: CancelRequest,
    services: Services = Depends(get_services),
):
    return await services.lifecycle.cancel_ride_request(request_id, body.reason)
