"""
Order endpoints
===============

GET  /api/v1/orders/{order_id}         -- order with driver and timeline
POST /api/v1/orders/{order_id}/status  -- driver advances the ride
POST /api/v1/orders/{order_id}/cancel  -- customer or driver cancels
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ridedispatch.api.dependencies import get_services
from ridedispatch.api.middleware import RATE_LIMIT, limiter
from ridedispatch.api.schemas import (
    OrderCancelRequest,
    OrderResponse,
    StatusUpdateRequest,
)
from ridedispatch.services.container import Services

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
@limiter.limit(RATE_LIMIT)
async def get_order(
    request: Request,
    order_id: str,
    services: Services = Depends(get_services),
):
    return await services.lifecycle.get_order(order_id)


@router.post(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Advance the ride to its next status",
    responses={
        403: {"description": "Order is bound to another driver"},
        409: {"description": "Transition not allowed from the current status"},
    },
)
@limiter.limit(RATE_LIMIT)
async def update_status(
    request: Request,
    order_id: str,
    body: StatusUpdateRequest,
    services: Services = Depends(get_services),
):
    return await services.lifecycle.update_ride_status(
        order_id,
        body.driver_id,
        body.status,
        location=body.location.to_domain() if body.location else None,
        notes=body.notes,
    )


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel a live order",
)
@limiter.limit(RATE_LIMIT)
async def cancel_order(
    request: Request,
    order_id: str,
    body: OrderCancelRequest,
    services: Services = Depends(get_services),
):
    return await services.lifecycle.cancel_ride(order_id, body.actor_id, body.reason)
