"""Order list, delivery, deletion and manual sort endpoints."""
from fastapi import APIRouter, Depends, Query, Request

from relay.exceptions import ValidationError
from relay.services import RelayServices
from web.schemas import (
    DeliverResponse,
    LeadsResponse,
    MessageResponse,
    SortRequest,
    SortResponse,
    StatusPatch,
)
from ._deps import get_services, get_logger, split_tags

router = APIRouter()
logger = get_logger(__name__)


@router.get("/leads", response_model=LeadsResponse)
async def get_leads(
    request: Request,
    tag: str = Query(..., description="Comma-separated courier tags"),
    services: RelayServices = Depends(get_services),
):
    """Cached orders for the given tags, deduplicated by id."""
    tags = split_tags(tag)
    if not tags:
        raise ValidationError("tag", "at least one tag is required")
    return {"_embedded": {"leads": services.dispatcher.leads_for(tags)}}


@router.patch("/leads/{lead_id}", response_model=DeliverResponse)
async def update_lead(
    request: Request,
    lead_id: int,
    body: StatusPatch,
    services: RelayServices = Depends(get_services),
):
    """Change the lead status in amoCRM (delivered by default) and drop it locally."""
    lead = await services.dispatcher.deliver(lead_id, body.status_id)
    return DeliverResponse(message=f"Lead {lead_id} updated", lead=lead)


@router.delete("/leads/{lead_id}", response_model=MessageResponse)
async def delete_lead(
    request: Request,
    lead_id: int,
    services: RelayServices = Depends(get_services),
):
    """Remove an order from the local cache only."""
    tags = await services.dispatcher.delete(lead_id)
    logger.info(f"Lead {lead_id} deleted", extra={"tags": tags})
    return MessageResponse(message=f"Lead {lead_id} deleted")


@router.post("/leads/sort", response_model=SortResponse)
async def sort_leads(
    request: Request,
    body: SortRequest,
    services: RelayServices = Depends(get_services),
):
    tags = [t.strip() for t in body.tags if t.strip()]
    if not tags:
        raise ValidationError("tags", "at least one tag is required")
    orders = await services.dispatcher.reorder(tags, body.orderedIds, keep_omitted=body.keepOmitted)
    return SortResponse(message="Order updated", orders=orders)
