"""
Exception hierarchy for the courier relay.

Exception Hierarchy:
    RelayError (base)
    ├── UpstreamError           - amoCRM call failed (network or non-2xx)
    │   └── RateLimitExceeded   - local request budget spent, nothing cached
    ├── OrderNotFound           - id absent from every tag
    ├── CourierNotFound         - unknown courier login
    ├── PersistenceError        - durable mirror write/read failed
    ├── MalformedSubscription   - channel opened without tags, login or map type
    └── ValidationError         - request payload failed validation
"""
from typing import Optional


class RelayError(Exception):
    """Base exception for all relay errors.

    ``status_code`` is the HTTP status a request handler should answer with.
    """

    status_code: int = 500

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class UpstreamError(RelayError):
    """
    amoCRM call failed.

    ``upstream_status`` is the HTTP status amoCRM answered with, or None
    for transport failures (timeout, connection refused).
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.upstream_status = upstream_status
        if upstream_status is not None and upstream_status >= 400:
            self.status_code = upstream_status


class RateLimitExceeded(UpstreamError):
    """Request budget exhausted and no cached response to fall back on."""

    status_code = 503

    def __init__(self, message: str = "amoCRM request budget exhausted", retry_after: float = None):
        super().__init__(message)
        self.retry_after = retry_after


class OrderNotFound(RelayError):
    """A mutation referenced an order id that no tag holds."""

    status_code = 404

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class CourierNotFound(RelayError):
    """Webhook or location report named a login missing from the roster."""

    status_code = 400

    def __init__(self, login: str):
        super().__init__(f"Courier {login!r} not found")
        self.login = login


class PersistenceError(RelayError):
    """Durable order mirror could not be read or written."""


class MalformedSubscription(RelayError):
    """Channel connected with neither tags, nor login, nor map type."""

    status_code = 400


class ValidationError(RelayError):
    """Request payload failed validation."""

    status_code = 422

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
