"""
FastAPI web application for the courier relay.

Run with:
    uvicorn web.main:app --host 0.0.0.0 --port 3001
"""
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, ORJSONResponse

from slowapi.errors import RateLimitExceeded as RequestRateLimitExceeded
from slowapi.util import get_remote_address

from relay.config import VERSION, ConfigurationError, validate_config
from relay.exceptions import RateLimitExceeded, RelayError
from relay.observability import get_logger, setup_logging
from relay.services import RelayServices, build_services
from web.middleware import RequestLoggingMiddleware
from web.routes import api, websocket
from web.routes.api._deps import limiter

# Configure structured logging
# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
log_format = os.getenv("LOG_FORMAT", "text")
log_level = os.getenv("LOG_LEVEL", "INFO")
setup_logging(level=log_level, json_format=(log_format == "json"))
logger = get_logger(__name__)


def create_app(services: Optional[RelayServices] = None) -> FastAPI:
    """
    Build the application.

    When ``services`` is given they are used as-is: configuration is not
    validated, the order file is not loaded and no scheduler is started.
    """
    app = FastAPI(
        title="Courier Relay",
        description="amoCRM delivery orders pushed to couriers over WebSocket",
        version=VERSION,
        default_response_class=ORJSONResponse,
    )

    app.state.limiter = limiter
    app.state.services = services

    @app.exception_handler(RequestRateLimitExceeded)
    async def request_rate_limit_handler(request: Request, exc: RequestRateLimitExceeded):
        logger.warning(f"Rate limit exceeded for {get_remote_address(request)}")
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests. Please try again later.", "retry_after": exc.detail},
        )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        content = {"error": exc.message}
        headers = None
        if isinstance(exc, RateLimitExceeded) and exc.retry_after is not None:
            headers = {"Retry-After": str(int(exc.retry_after) + 1)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    # Add request logging middleware (adds correlation IDs and timing)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(api.router, prefix="/api")
    app.include_router(websocket.router)  # WebSocket routes (no /api prefix)

    @app.on_event("startup")
    async def startup_event():
        logger.info("Courier relay starting...")

        if app.state.services is not None:
            await app.state.services.start(with_scheduler=False)
            return

        # Validate configuration early - fail fast with clear errors
        try:
            validate_config()
            logger.info("Configuration validated")
        except ConfigurationError as e:
            logger.critical(f"Configuration error: {e}")
            raise SystemExit(1)

        relay = build_services()
        relay.store.load()
        await relay.start()
        app.state.services = relay

        logger.info(
            f"Courier relay ready: {len(relay.roster)} couriers, "
            f"{relay.store.stats()['orders']} cached orders"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.services is not None:
            try:
                await app.state.services.stop()
            except Exception as e:
                logger.warning(f"Error during shutdown: {e}")
        logger.info("Courier relay stopped")

    return app


app = create_app()
