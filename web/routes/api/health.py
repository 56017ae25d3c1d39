"""Health check endpoint."""
import time

from fastapi import APIRouter, Depends, Request

from relay.config import VERSION
from relay.observability import get_correlation_id
from relay.services import RelayServices
from ._deps import limiter, get_services, START_TIME

router = APIRouter()


@router.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request, services: RelayServices = Depends(get_services)):
    """Health check endpoint for Docker/load balancer monitoring."""
    return {
        "status": "ok",
        "version": VERSION,
        "uptime_seconds": int(time.time() - START_TIME),
        "correlation_id": get_correlation_id(),
        **services.health(),
    }
