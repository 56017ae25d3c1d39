"""
Courier relay core.

Keeps a local cache of amoCRM delivery orders per courier tag and pushes
consistent snapshots to couriers and the map dashboard:
- amocrm: CRM gateway (cache, request budget, contacts)
- order_store / location_store: shared state
- subscriptions: live WebSocket channels
- sync_engine / dispatch: orchestration
"""

from relay.exceptions import (
    RelayError,
    UpstreamError,
    RateLimitExceeded,
    OrderNotFound,
    CourierNotFound,
    PersistenceError,
    MalformedSubscription,
    ValidationError,
)

from relay.config import config

__all__ = [
    # Exceptions
    "RelayError",
    "UpstreamError",
    "RateLimitExceeded",
    "OrderNotFound",
    "CourierNotFound",
    "PersistenceError",
    "MalformedSubscription",
    "ValidationError",
    # Config
    "config",
]
