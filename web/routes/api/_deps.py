"""Shared dependencies for API route modules."""
import time

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from relay.observability import get_logger
from relay.services import RelayServices

# Shared limiter instance
limiter = Limiter(key_func=get_remote_address)

# Track startup time for uptime calculation
START_TIME = time.time()


def get_services(request: Request) -> RelayServices:
    """Relay components attached to the running app."""
    return request.app.state.services


def split_tags(raw: str) -> list:
    return [t.strip() for t in (raw or "").split(",") if t.strip()]


__all__ = ["limiter", "START_TIME", "get_services", "get_logger", "split_tags"]
