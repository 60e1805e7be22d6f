"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- checks the record store is reachable
"""

from fastapi import APIRouter, Depends

from ridedispatch.api.dependencies import get_services
from ridedispatch.api.schemas import HealthResponse
from ridedispatch.infrastructure.repositories import DRIVERS
from ridedispatch.services.container import Services

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(services: Services = Depends(get_services)):
    await services.store.query(DRIVERS, limit=1)
    return HealthResponse()
