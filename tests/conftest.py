"""
Pytest configuration and shared fixtures.
"""
import pytest
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from relay.couriers import CourierRoster
from relay.location_store import LocationStore
from relay.order_store import OrderStore
from relay.persistence import MemoryMirror
from relay.subscriptions import SubscriptionRegistry


def make_lead(lead_id: int, tags: List[str] = None, contact_id: int = None, **extra) -> Dict[str, Any]:
    """Lead shaped like an amoCRM v4 ``/leads?with=contacts`` item."""
    embedded: Dict[str, Any] = {"tags": [{"id": i + 1, "name": t} for i, t in enumerate(tags or [])]}
    if contact_id is not None:
        embedded["contacts"] = [{"id": contact_id, "is_main": True}]
    lead = {
        "id": lead_id,
        "name": f"Order #{lead_id}",
        "price": 1500,
        "status_id": 54415026,
        "pipeline_id": 4963870,
        "_embedded": embedded,
    }
    lead.update(extra)
    return lead


def leads_response(leads: List[Dict[str, Any]], total: int = None) -> Dict[str, Any]:
    return {"_total": len(leads) if total is None else total, "_embedded": {"leads": leads}}


def mock_response(status_code: int = 200, payload: Any = None, text: str = "") -> MagicMock:
    """httpx-like response as returned by a mocked ``AsyncClient.request``."""
    response = MagicMock()
    response.status_code = status_code
    response.content = b"" if payload is None else b"{...}"
    response.json.return_value = payload
    response.text = text
    return response


class FakeClock:
    """Manually advanced clock for cache, budget and location tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def roster() -> CourierRoster:
    return CourierRoster.from_dict({
        "sasha": {"password": "s3cret", "tags": ["sasha"], "color": "#e53935"},
        "night": {"password": "moon", "tags": ["night", "sasha"], "color": "#1e88e5"},
        "dima": {"password": "pw", "tag": "dima"},
    })


@pytest.fixture
def mirror() -> MemoryMirror:
    return MemoryMirror()


@pytest.fixture
def store(mirror) -> OrderStore:
    return OrderStore(mirror)


@pytest.fixture
def locations(clock) -> LocationStore:
    return LocationStore(clock=clock)


@pytest.fixture
def registry(store, locations, roster) -> SubscriptionRegistry:
    return SubscriptionRegistry(store, locations, roster, location_max_age=720)


def make_websocket() -> AsyncMock:
    """Mock WebSocket that looks connected on both sides."""
    ws = AsyncMock(spec=WebSocket)
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    ws.client_state = WebSocketState.CONNECTED
    ws.application_state = WebSocketState.CONNECTED
    return ws


@pytest.fixture
def mock_websocket() -> AsyncMock:
    return make_websocket()
