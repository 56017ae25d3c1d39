"""
Pydantic request and response models for the HTTP API.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# REQUESTS
# ═══════════════════════════════════════════════════════════════════════════════

class LoginRequest(BaseModel):
    login: str
    password: str


class StatusPatch(BaseModel):
    """Status change for one lead; defaults to the configured delivered status."""
    status_id: Optional[int] = None


class SortRequest(BaseModel):
    """Manual sort of a courier's orders."""
    tags: List[str] = Field(min_length=1)
    orderedIds: List[int] = Field(description="Complete new order of the tags' order ids")
    keepOmitted: bool = Field(
        False, description="Keep orders missing from orderedIds at the end instead of dropping them"
    )


class LocationReport(BaseModel):
    """Position from an external producer (e.g. the Telegram bridge)."""
    login: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    live: bool = True


# ═══════════════════════════════════════════════════════════════════════════════
# RESPONSES
# ═══════════════════════════════════════════════════════════════════════════════

class MessageResponse(BaseModel):
    message: str


class LoginResponse(BaseModel):
    success: bool
    login: str
    tags: List[str]
    color: Optional[str] = None


class LeadsResponse(BaseModel):
    """Same envelope amoCRM uses for lead lists."""
    embedded: Dict[str, List[Dict[str, Any]]] = Field(alias="_embedded")

    model_config = {"populate_by_name": True}


class DeliverResponse(BaseModel):
    message: str
    lead: Dict[str, Any]


class SortResponse(BaseModel):
    message: str
    orders: List[Dict[str, Any]]


class ContactResponse(BaseModel):
    id: Optional[int] = None
    name: str
    phone: str


class WebhookResponse(BaseModel):
    message: str
    fetched: int = 0
    full_sync_scheduled: bool = False


class ErrorResponse(BaseModel):
    error: str
