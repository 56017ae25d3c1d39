"""
amoCRM webhook receiver.

amoCRM calls one URL per courier when a lead of theirs changes. The
request body is ignored; the courier's first page of leads is fetched
instead. A GET on the same URL is accepted so the hook can be verified
from a browser.
"""
from fastapi import APIRouter, Depends, Request

from relay.services import RelayServices
from web.schemas import MessageResponse, WebhookResponse
from ._deps import get_services, get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("/webhook/{courier}", response_model=MessageResponse)
async def webhook_probe(
    request: Request,
    courier: str,
    services: RelayServices = Depends(get_services),
):
    services.roster.require(courier)
    return MessageResponse(message=f"Webhook for {courier} is active")


@router.post("/webhook/{courier}", response_model=WebhookResponse)
async def webhook(
    request: Request,
    courier: str,
    services: RelayServices = Depends(get_services),
):
    outcome = await services.engine.on_webhook(courier)
    if not outcome.ok:
        logger.warning(f"Webhook for {courier} did not refresh orders: {outcome.error}")
    return WebhookResponse(
        message=outcome.message,
        fetched=outcome.fetched,
        full_sync_scheduled=outcome.full_sync_scheduled,
    )
