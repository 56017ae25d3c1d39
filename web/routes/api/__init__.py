"""
API routes split by domain.

Each sub-module defines its own APIRouter which is composed
into the top-level router exposed by this package.
"""
from fastapi import APIRouter

from .health import router as health_router
from .auth import router as auth_router
from .leads import router as leads_router
from .webhook import router as webhook_router
from .locations import router as locations_router
from .contacts import router as contacts_router

router = APIRouter(tags=["api"])

router.include_router(health_router)
router.include_router(auth_router)
router.include_router(leads_router)
router.include_router(webhook_router)
router.include_router(locations_router)
router.include_router(contacts_router)
