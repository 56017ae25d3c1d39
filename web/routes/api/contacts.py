"""Contact lookup kept for older courier clients that resolve phones themselves."""
from fastapi import APIRouter, Depends, Request

from relay.services import RelayServices
from web.schemas import ContactResponse
from ._deps import get_services

router = APIRouter()


@router.get("/contacts/{contact_id}", response_model=ContactResponse)
async def get_contact(
    request: Request,
    contact_id: int,
    services: RelayServices = Depends(get_services),
):
    summary = await services.client.contact_summary(contact_id)
    return ContactResponse(**summary.to_dict())
