"""Courier login against the roster."""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from relay.config import config
from relay.services import RelayServices
from web.schemas import LoginRequest, LoginResponse
from ._deps import limiter, get_services, get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post("/login", response_model=LoginResponse)
@limiter.limit(config.web.login_rate_limit)
async def login(
    request: Request,
    body: LoginRequest,
    services: RelayServices = Depends(get_services),
):
    """Check credentials and return the courier's tag set."""
    courier = services.roster.authenticate(body.login, body.password)
    if courier is None:
        logger.warning(f"Failed login attempt for {body.login!r}")
        return JSONResponse(status_code=401, content={"error": "Invalid login or password"})

    logger.info(f"Courier {courier.login} logged in")
    return LoginResponse(success=True, login=courier.login, tags=list(courier.tags), color=courier.color)
