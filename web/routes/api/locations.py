"""Courier positions from external producers and the courier directory."""
from fastapi import APIRouter, Depends, Request

from relay.services import RelayServices
from web.schemas import LocationReport, MessageResponse
from ._deps import get_services

router = APIRouter()


@router.post("/location", response_model=MessageResponse)
async def report_location(
    request: Request,
    body: LocationReport,
    services: RelayServices = Depends(get_services),
):
    """
    Live location update for a courier.

    Send ``{"login", "lat", "lng"}`` for each point and
    ``{"login", "live": false}`` when the live session ends.
    """
    result = await services.dispatcher.ingest_location(body.login, body.lat, body.lng, live=body.live)
    return MessageResponse(message=result)


@router.get("/couriers")
async def list_couriers(request: Request, services: RelayServices = Depends(get_services)):
    return services.roster.public_list()
