"""
Offer endpoints
===============

POST /api/v1/offers/{offer_id}/accept   -- first acceptance wins the ride
POST /api/v1/offers/{offer_id}/decline  -- decline this offer only
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ridedispatch.api.dependencies import get_services
from ridedispatch.api.middleware import RATE_LIMIT, limiter
from ridedispatch.api.schemas import (
    OfferAcceptRequest,
    OfferDeclineRequest,
    OfferResponse,
    OrderResponse,
)
from ridedispatch.services.container import Services

router = APIRouter(prefix="/offers", tags=["offers"])


@router.post(
    "/{offer_id}/accept",
    response_model=OrderResponse,
    summary="Accept a ride offer",
    responses={409: {"description": "Ride already taken, cancelled or expired"}},
)
@limiter.limit(RATE_LIMIT)
async def accept_offer(
    request: Request,
    offer_id: str,
    body: OfferAcceptRequest,
    services: Services = Depends(get_services),
):
    order_id = await services.arbiter.accept_offer(offer_id, body.driver_id)
    return await services.lifecycle.get_order(order_id)


@router.post(
    "/{offer_id}/decline",
    response_model=OfferResponse,
    summary="Decline a ride offer",
)
@limiter.limit(RATE_LIMIT)
async def decline_offer(
    request: Request,
    offer_id: str,
    body: OfferDeclineRequest,
    services: Services = Depends(get_services),
):
    return await services.arbiter.decline_offer(
        offer_id, reason=body.reason, driver_id=body.driver_id
    )
