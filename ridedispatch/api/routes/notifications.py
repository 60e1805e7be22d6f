"""
Notification inbox endpoints
============================

GET  /api/v1/notifications/{user_id}               -- newest first
GET  /api/v1/notifications/{user_id}/unread-count
POST /api/v1/notifications/{user_id}/read-all
POST /api/v1/notifications/{notification_id}/read
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from ridedispatch.api.dependencies import get_services
from ridedispatch.api.middleware import RATE_LIMIT, limiter
from ridedispatch.api.schemas import CountResponse, NotificationResponse
from ridedispatch.services.container import Services

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/{user_id}", response_model=list[NotificationResponse])
@limiter.limit(RATE_LIMIT)
async def list_notifications(
    request: Request,
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    services: Services = Depends(get_services),
):
    return await services.inbox.list_for_user(user_id, limit)


@router.get("/{user_id}/unread-count", response_model=CountResponse)
@limiter.limit(RATE_LIMIT)
async def unread_count(
    request: Request,
    user_id: str,
    services: Services = Depends(get_services),
):
    return CountResponse(count=await services.inbox.unread_count(user_id))


@router.post("/{user_id}/read-all", response_model=CountResponse)
@limiter.limit(RATE_LIMIT)
async def mark_all_read(
    request: Request,
    user_id: str,
    services: Services = Depends(get_services),
):
    return CountResponse(count=await services.inbox.mark_all_read(user_id))


@router.post("/{notification_id}/read", status_code=204)
@limiter.limit(RATE_LIMIT)
async def mark_read(
    request: Request,
    notification_id: str,
    services: Services = Depends(get_services),
):
    await services.inbox.mark_read(notification_id)
    return Response(status_code=204)
