"""
Integration tests for the webhook, full sync and reconciliation paths.
"""
import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import leads_response, make_lead, make_websocket, mock_response
from relay.amocrm import AmoCRMClient
from relay.cache import ResponseCache
from relay.config import AmoCRMConfig, CacheConfig, SyncConfig
from relay.exceptions import CourierNotFound, RateLimitExceeded, UpstreamError
from relay.models import LeadPage, LeadSweep, SubscriptionKey
from relay.resilience import RequestBudget
from relay.sync_engine import SyncEngine, SyncState


def ids(orders):
    return [o["id"] for o in orders]


@pytest.fixture
def client():
    client = MagicMock()
    client.fetch_page = AsyncMock(return_value=LeadPage())
    client.fetch_all_pages = AsyncMock(return_value=LeadSweep())
    client.enrich_leads = AsyncMock(side_effect=lambda leads: list(leads))
    return client


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def engine(client, store, registry, locations, roster, sleep):
    return SyncEngine(
        client, store, registry, locations, roster,
        settings=SyncConfig(burst_threshold=2, full_sync_delay_seconds=5, courier_delay_seconds=1),
        amocrm_settings=AmoCRMConfig(domain="example.amocrm.ru", token="t"),
        sleep=sleep,
    )


class TestWebhook:

    @pytest.mark.asyncio
    async def test_merges_and_publishes(self, engine, client, store, registry, mock_websocket):
        await registry.subscribe(mock_websocket, SubscriptionKey.for_tags(["sasha"]))
        client.fetch_page.return_value = LeadPage(leads=[make_lead(1, ["sasha"])], raw_count=1)

        outcome = await engine.on_webhook("sasha")

        assert outcome.ok
        assert outcome.fetched == 1
        assert outcome.merged_tags == ["sasha"]
        assert ids(store.get("sasha")) == [1]
        last = json.loads(mock_websocket.send_text.call_args.args[0])
        assert last["type"] == "orders"
        assert ids(last["data"]) == [1]
        assert engine.state("sasha") == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_fetches_one_bounded_page(self, engine, client):
        await engine.on_webhook("night")

        args, kwargs = client.fetch_page.call_args
        assert args[0].tags == ("night", "sasha")
        assert kwargs["page"] == 1
        assert kwargs["page_size"] == 10

    @pytest.mark.asyncio
    async def test_leads_go_only_under_tags_they_carry(self, engine, client, store):
        client.fetch_page.return_value = LeadPage(leads=[
            make_lead(1, ["night"]),
            make_lead(2, ["sasha"]),
            make_lead(3, ["night", "sasha"]),
        ])

        outcome = await engine.on_webhook("night")

        assert ids(store.get("night")) == [1, 3]
        assert ids(store.get("sasha")) == [2, 3]
        assert outcome.merged_tags == ["night", "sasha"]

    @pytest.mark.asyncio
    async def test_upstream_failure_reported_not_raised(self, engine, client, store):
        store.merge("sasha", [make_lead(9, ["sasha"])])
        client.fetch_page.side_effect = UpstreamError("amoCRM returned 500", upstream_status=500)

        outcome = await engine.on_webhook("sasha")

        assert outcome.ok is False
        assert "500" in outcome.message
        assert ids(store.get("sasha")) == [9]

    @pytest.mark.asyncio
    async def test_rate_limited_reported_not_raised(self, engine, client):
        client.fetch_page.side_effect = RateLimitExceeded(retry_after=10)
        outcome = await engine.on_webhook("sasha")
        assert outcome.ok is False

    @pytest.mark.asyncio
    async def test_unknown_courier_raises(self, engine):
        with pytest.raises(CourierNotFound):
            await engine.on_webhook("ghost")

    @pytest.mark.asyncio
    async def test_empty_page_publishes_nothing(self, engine, registry, mock_websocket):
        await registry.subscribe(mock_websocket, SubscriptionKey.for_tags(["sasha"]))
        await engine.on_webhook("sasha")
        assert mock_websocket.send_text.call_count == 1


class TestBurst:

    @pytest.mark.asyncio
    async def test_burst_schedules_single_full_sync(self, engine, client):
        gate = asyncio.Event()

        async def held_sleep(_):
            await gate.wait()

        engine._sleep = held_sleep

        outcomes = [await engine.on_webhook("sasha") for _ in range(5)]

        assert [o.full_sync_scheduled for o in outcomes] == [False, False, True, False, False]
        assert engine.has_pending_full_sync("sasha")
        assert engine.state("sasha") == SyncState.QUEUED_FOR_FULL_SYNC

        gate.set()
        for _ in range(5):
            await asyncio.sleep(0)

        client.fetch_all_pages.assert_awaited_once()
        assert engine.arrivals("sasha") == 0
        assert not engine.has_pending_full_sync("sasha")

    @pytest.mark.asyncio
    async def test_deferred_full_sync_waits_configured_delay(self, engine, sleep):
        engine.schedule_full_sync("sasha")
        await asyncio.sleep(0)
        sleep.assert_awaited_with(5)
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_failed_full_sync_does_not_propagate(self, engine, client):
        client.fetch_all_pages.side_effect = CourierNotFound("sasha")
        assert engine.schedule_full_sync("sasha")
        for _ in range(5):
            await asyncio.sleep(0)
        assert not engine.has_pending_full_sync("sasha")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending(self, engine):
        gate = asyncio.Event()

        async def held_sleep(_):
            await gate.wait()

        engine._sleep = held_sleep
        engine.schedule_full_sync("sasha")
        await asyncio.sleep(0)

        await engine.shutdown()

        assert not engine.has_pending_full_sync("sasha")


class TestFullSync:

    @pytest.mark.asyncio
    async def test_merges_every_page_without_pruning(self, engine, client, store):
        store.merge("sasha", [make_lead(99, ["sasha"])])
        client.fetch_all_pages.return_value = LeadSweep(
            leads=[make_lead(1, ["sasha"]), make_lead(2, ["sasha"])], complete=True, pages=2
        )

        merged = await engine.full_sync("sasha")

        assert merged == 2
        assert ids(store.get("sasha")) == [99, 1, 2]
        assert client.fetch_all_pages.call_args.kwargs["page_size"] == 50

    @pytest.mark.asyncio
    async def test_bypasses_fresh_cache(self, engine, client):
        await engine.full_sync("sasha")
        assert client.fetch_all_pages.call_args.kwargs["use_cache"] is False

    @pytest.mark.asyncio
    async def test_resets_arrivals(self, engine, client):
        await engine.on_webhook("sasha")
        assert engine.arrivals("sasha") == 1
        await engine.full_sync("sasha")
        assert engine.arrivals("sasha") == 0


class TestReconcile:

    @pytest.mark.asyncio
    async def test_prunes_missing_orders(self, engine, client, store, registry):
        ws = make_websocket()
        await registry.subscribe(ws, SubscriptionKey.for_tags(["sasha"]))
        store.merge("sasha", [make_lead(1, ["sasha"]), make_lead(2, ["sasha"])])
        client.fetch_all_pages.return_value = LeadSweep(leads=[make_lead(2, ["sasha"])], complete=True)

        result = await engine.reconcile_courier("sasha")

        assert result.complete
        assert result.pruned_tags == ["sasha"]
        assert ids(store.get("sasha")) == [2]
        assert ids(json.loads(ws.send_text.call_args.args[0])["data"]) == [2]

    @pytest.mark.asyncio
    async def test_partial_sweep_never_prunes(self, engine, client, store):
        store.merge("sasha", [make_lead(1, ["sasha"]), make_lead(2, ["sasha"])])
        client.fetch_all_pages.return_value = LeadSweep(leads=[make_lead(2, ["sasha"])], complete=False)

        result = await engine.reconcile_courier("sasha")

        assert result.complete is False
        assert result.pruned_tags == []
        assert ids(store.get("sasha")) == [1, 2]

    @pytest.mark.asyncio
    async def test_sweep_with_cached_pages_never_prunes(self, engine, client, store):
        store.merge("sasha", [make_lead(1, ["sasha"]), make_lead(2, ["sasha"])])
        client.fetch_all_pages.return_value = LeadSweep(
            leads=[make_lead(2, ["sasha"])], complete=True, pages=1, cached_pages=1
        )

        result = await engine.reconcile_courier("sasha")

        assert result.complete is False
        assert ids(store.get("sasha")) == [1, 2]

    @pytest.mark.asyncio
    async def test_reconcile_bypasses_fresh_cache(self, engine, client):
        client.fetch_all_pages.return_value = LeadSweep(complete=True)
        await engine.reconcile_courier("sasha")
        assert client.fetch_all_pages.call_args.kwargs["use_cache"] is False

    @pytest.mark.asyncio
    async def test_prune_clears_location(self, engine, client, store, locations):
        store.merge("sasha", [make_lead(1, ["sasha"])])
        locations.update("sasha", 1.0, 1.0)
        client.fetch_all_pages.return_value = LeadSweep(leads=[], complete=True)

        await engine.reconcile_courier("sasha")

        assert locations.get("sasha") is None

    @pytest.mark.asyncio
    async def test_prune_clears_every_idle_owner_of_shared_tag(self, engine, client, store, locations):
        store.merge("sasha", [make_lead(1, ["sasha"])])
        locations.update("sasha", 1.0, 1.0)
        locations.update("night", 2.0, 2.0)
        client.fetch_all_pages.return_value = LeadSweep(leads=[], complete=True)

        await engine.reconcile_courier("sasha")

        assert locations.get("sasha") is None
        assert locations.get("night") is None

    @pytest.mark.asyncio
    async def test_prune_keeps_owner_with_other_orders(self, engine, client, store, locations):
        store.merge("sasha", [make_lead(1, ["sasha"])])
        store.merge("night", [make_lead(4, ["night"])])
        locations.update("night", 2.0, 2.0)
        client.fetch_all_pages.return_value = LeadSweep(leads=[], complete=True)

        await engine.reconcile_courier("sasha")

        assert locations.get("night") is not None

    @pytest.mark.asyncio
    async def test_nothing_pruned_keeps_location(self, engine, client, store, locations):
        store.merge("sasha", [make_lead(1, ["sasha"])])
        locations.update("sasha", 1.0, 1.0)
        client.fetch_all_pages.return_value = LeadSweep(leads=[make_lead(1, ["sasha"])], complete=True)

        await engine.reconcile_courier("sasha")

        assert locations.get("sasha") is not None

    @pytest.mark.asyncio
    async def test_reconcile_all_is_sequential_and_spaced(self, engine, client, sleep):
        client.fetch_all_pages.return_value = LeadSweep(complete=True)

        results = await engine.reconcile_all()

        assert [r.courier for r in results] == ["sasha", "night", "dima"]
        assert client.fetch_all_pages.await_count == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1)

    @pytest.mark.asyncio
    async def test_one_courier_failing_does_not_stop_others(self, engine, client, store):
        store.merge("dima", [make_lead(5, ["dima"])])
        client.fetch_all_pages.side_effect = [
            UpstreamError("boom"),
            LeadSweep(complete=True),
            LeadSweep(complete=True),
        ]

        results = await engine.reconcile_all()

        assert results[0].complete is False
        assert results[0].error == "boom"
        assert results[2].pruned_tags == ["dima"]
        assert engine.get_stats()["last_reconcile"][0]["complete"] is False


class TestAgainstGateway:
    """Engine wired to a real AmoCRMClient whose HTTP transport is mocked."""

    @pytest.fixture
    def gateway(self, clock):
        gateway = AmoCRMClient(
            settings=AmoCRMConfig(domain="example.amocrm.ru", token="t"),
            cache_settings=CacheConfig(),
            cache=ResponseCache(ttl=300, max_stale_age=3600, clock=clock),
            budget=RequestBudget(limit=3, window=60, clock=clock),
            page_delay=0,
            sleep=AsyncMock(),
        )
        gateway._client = MagicMock()
        gateway._client.request = AsyncMock()
        return gateway

    @pytest.fixture
    def live_engine(self, gateway, store, registry, locations, roster, sleep):
        return SyncEngine(
            gateway, store, registry, locations, roster,
            settings=SyncConfig(burst_threshold=5),
            amocrm_settings=gateway.settings,
            sleep=sleep,
        )

    @staticmethod
    def exhaust(budget):
        while budget.try_acquire():
            pass

    @pytest.mark.asyncio
    async def test_second_webhook_within_ttl_sees_new_lead(self, live_engine, gateway, store, clock):
        gateway._client.request.side_effect = [
            mock_response(payload=leads_response([make_lead(1, ["dima"])])),
            mock_response(payload=leads_response([make_lead(1, ["dima"]), make_lead(2, ["dima"])])),
        ]

        await live_engine.on_webhook("dima")
        clock.advance(30)
        outcome = await live_engine.on_webhook("dima")

        assert outcome.ok
        assert gateway._client.request.await_count == 2
        assert ids(store.get("dima")) == [1, 2]

    @pytest.mark.asyncio
    async def test_day_old_sweep_never_prunes_live_orders(self, live_engine, gateway, store, clock):
        gateway._client.request.side_effect = [
            mock_response(payload=leads_response([make_lead(1, ["dima"])])),
            mock_response(payload=leads_response([make_lead(1, ["dima"]), make_lead(2, ["dima"])])),
        ]
        await live_engine.reconcile_courier("dima")

        clock.advance(86400)
        await live_engine.on_webhook("dima")
        self.exhaust(gateway.budget)

        result = await live_engine.reconcile_courier("dima")

        assert result.complete is False
        assert result.pruned_tags == []
        assert ids(store.get("dima")) == [1, 2]

    @pytest.mark.asyncio
    async def test_recent_cached_sweep_never_prunes(self, live_engine, gateway, store, clock):
        gateway._client.request.side_effect = [
            mock_response(payload=leads_response([make_lead(1, ["dima"])])),
            mock_response(payload=leads_response([make_lead(1, ["dima"]), make_lead(2, ["dima"])])),
        ]
        await live_engine.reconcile_courier("dima")

        clock.advance(120)
        await live_engine.on_webhook("dima")
        self.exhaust(gateway.budget)

        result = await live_engine.reconcile_courier("dima")

        assert result.complete is False
        assert ids(store.get("dima")) == [1, 2]
