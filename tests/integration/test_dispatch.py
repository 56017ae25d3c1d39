"""
Integration tests for courier actions: deliver, delete, sort and locations.
"""
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import make_lead, make_websocket
from relay.config import AmoCRMConfig, LocationConfig
from relay.dispatch import Dispatcher
from relay.exceptions import CourierNotFound, OrderNotFound, UpstreamError, ValidationError
from relay.models import SubscriptionKey


def ids(orders):
    return [o["id"] for o in orders]


def last_message(ws):
    return json.loads(ws.send_text.call_args.args[0])


@pytest.fixture
def client():
    client = MagicMock()
    client.patch_lead = AsyncMock(side_effect=lambda lead_id, fields: {"id": lead_id, **fields})
    return client


@pytest.fixture
def dispatcher(client, store, registry, locations, roster):
    dispatcher = Dispatcher(
        client, store, registry, locations, roster,
        amocrm_settings=AmoCRMConfig(domain="example.amocrm.ru", token="t"),
        location_settings=LocationConfig(live_update_interval=120, map_display_extension=600),
    )
    registry.location_handler = dispatcher.handle_channel_location
    return dispatcher


class TestDeliver:

    @pytest.mark.asyncio
    async def test_patches_removes_and_publishes(self, dispatcher, client, store, registry, mock_websocket):
        store.merge("sasha", [make_lead(1), make_lead(2)])
        await registry.subscribe(mock_websocket, SubscriptionKey.for_tags(["sasha"]))

        lead = await dispatcher.deliver(1)

        client.patch_lead.assert_awaited_once_with(1, {"status_id": 142})
        assert lead == {"id": 1, "status_id": 142}
        assert ids(store.get("sasha")) == [2]
        assert ids(last_message(mock_websocket)["data"]) == [2]

    @pytest.mark.asyncio
    async def test_custom_status(self, dispatcher, client, store):
        store.merge("sasha", [make_lead(1)])
        await dispatcher.deliver(1, status_id=143)
        client.patch_lead.assert_awaited_once_with(1, {"status_id": 143})

    @pytest.mark.asyncio
    async def test_upstream_rejection_keeps_order(self, dispatcher, client, store):
        store.merge("sasha", [make_lead(1)])
        client.patch_lead.side_effect = UpstreamError("amoCRM returned 400", upstream_status=400)

        with pytest.raises(UpstreamError) as exc_info:
            await dispatcher.deliver(1)

        assert exc_info.value.status_code == 400
        assert ids(store.get("sasha")) == [1]

    @pytest.mark.asyncio
    async def test_uncached_order_still_patched(self, dispatcher, client):
        lead = await dispatcher.deliver(77)
        assert lead["id"] == 77

    @pytest.mark.asyncio
    async def test_last_order_clears_location(self, dispatcher, store, locations, registry):
        ws_map = make_websocket()
        await registry.subscribe(ws_map, SubscriptionKey.map_observer())
        store.merge("dima", [make_lead(1)])
        locations.update("dima", 1.0, 1.0)

        await dispatcher.deliver(1)

        assert locations.get("dima") is None
        assert last_message(ws_map) == {"type": "locations", "data": {}}


class TestDeleteAndSort:

    @pytest.mark.asyncio
    async def test_delete(self, dispatcher, store):
        store.merge("sasha", [make_lead(1), make_lead(2)])
        store.merge("night", [make_lead(1)])

        tags = await dispatcher.delete(1)

        assert sorted(tags) == ["night", "sasha"]
        assert not store.contains(1)

    @pytest.mark.asyncio
    async def test_delete_unknown(self, dispatcher):
        with pytest.raises(OrderNotFound):
            await dispatcher.delete(404)

    @pytest.mark.asyncio
    async def test_reorder_returns_view_and_publishes(self, dispatcher, store, registry, mock_websocket):
        store.merge("sasha", [make_lead(1), make_lead(2), make_lead(3)])
        await registry.subscribe(mock_websocket, SubscriptionKey.for_tags(["sasha"]))

        orders = await dispatcher.reorder(["sasha"], [3, 1, 2])

        assert ids(orders) == [3, 1, 2]
        assert ids(last_message(mock_websocket)["data"]) == [3, 1, 2]


class TestLocations:

    @pytest.mark.asyncio
    async def test_courier_with_orders_is_shown(self, dispatcher, store, locations):
        store.merge("sasha", [make_lead(1)])
        assert await dispatcher.report_location(["sasha"], "55.7", 37.6) is True
        assert locations.get("sasha").lat == 55.7

    @pytest.mark.asyncio
    async def test_courier_without_orders_is_cleared(self, dispatcher, locations):
        locations.update("sasha", 1.0, 1.0)
        assert await dispatcher.report_location(["sasha"], 55.7, 37.6) is False
        assert locations.get("sasha") is None

    @pytest.mark.asyncio
    async def test_keyed_by_login_of_tag_set(self, dispatcher, store, locations):
        store.merge("night", [make_lead(1)])
        await dispatcher.report_location(["night", "sasha"], 1, 2)
        assert locations.get("night") is not None
        assert locations.get("sasha") is None

    @pytest.mark.asyncio
    async def test_bad_coordinates_not_stored(self, dispatcher, store, locations):
        store.merge("sasha", [make_lead(1)])
        assert await dispatcher.report_location(["sasha"], "north", None) is False
        assert locations.get("sasha") is None

    @pytest.mark.asyncio
    async def test_channel_location_message(self, dispatcher, store, registry, locations):
        store.merge("sasha", [make_lead(1)])
        ws_map, ws_courier = make_websocket(), make_websocket()
        await registry.subscribe(ws_map, SubscriptionKey.map_observer())
        channel = await registry.subscribe(ws_courier, registry.resolve_key(login="sasha"))

        await registry.handle_message(channel, json.dumps({"type": "location", "data": {"lat": 5, "lng": 6}}))

        assert locations.get("sasha").lng == 6.0
        assert last_message(ws_map)["data"]["sasha"]["lat"] == 5.0

    @pytest.mark.asyncio
    async def test_ingest_live_point(self, dispatcher, locations):
        message = await dispatcher.ingest_location("dima", 10, 20)
        assert "dima" in message
        assert locations.get("dima").live is True

    @pytest.mark.asyncio
    async def test_ingest_end_of_live_session(self, dispatcher, locations):
        await dispatcher.ingest_location("dima", 10, 20)
        await dispatcher.ingest_location("dima", live=False)
        assert locations.get("dima").live is False

    @pytest.mark.asyncio
    async def test_ingest_unknown_login(self, dispatcher):
        with pytest.raises(CourierNotFound):
            await dispatcher.ingest_location("ghost", 1, 2)

    @pytest.mark.asyncio
    async def test_ingest_without_coordinates(self, dispatcher):
        with pytest.raises(ValidationError):
            await dispatcher.ingest_location("dima")

    @pytest.mark.asyncio
    async def test_expire_locations(self, dispatcher, locations, clock, registry):
        ws_map = make_websocket()
        await registry.subscribe(ws_map, SubscriptionKey.map_observer())
        locations.update("dima", 1, 1)
        clock.advance(721)

        assert await dispatcher.expire_locations() == ["dima"]
        assert last_message(ws_map) == {"type": "locations", "data": {}}

    @pytest.mark.asyncio
    async def test_expire_nothing_sends_nothing(self, dispatcher, registry, mock_websocket):
        await registry.subscribe(mock_websocket, SubscriptionKey.map_observer())
        assert await dispatcher.expire_locations() == []
        assert mock_websocket.send_text.call_count == 2
