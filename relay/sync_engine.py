"""
Keeps the order store in step with amoCRM.

Three paths feed it:
- Webhook: one bounded page for the courier's tags, merged and pushed
  right away. Bursts of more than ``burst_threshold`` webhooks schedule
  one deferred full paginated sync per courier.
- Deferred full sync: every page for the courier's tags, merged.
- Daily reconciliation: every courier in sequence, full sweep, orders
  missing upstream are pruned.

Per webhook the steps run in order:
    IDLE -> FETCHING -> MERGING -> BROADCASTING -> (QUEUED_FOR_FULL_SYNC) -> IDLE
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from relay.amocrm import AmoCRMClient, LeadFilter, lead_tag_names
from relay.config import AmoCRMConfig, SyncConfig, config
from relay.couriers import CourierRoster
from relay.exceptions import RelayError, UpstreamError
from relay.location_store import LocationStore
from relay.models import Courier, Order
from relay.observability import Timer, correlation_context, get_logger
from relay.order_store import OrderStore
from relay.subscriptions import SubscriptionRegistry

logger = get_logger(__name__)


class SyncState(Enum):
    """Where a courier's webhook processing currently is."""
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    BROADCASTING = "broadcasting"
    QUEUED_FOR_FULL_SYNC = "queued_for_full_sync"


@dataclass
class WebhookOutcome:
    """What one webhook arrival did."""
    courier: str
    ok: bool
    fetched: int = 0
    merged_tags: List[str] = field(default_factory=list)
    full_sync_scheduled: bool = False
    error: Optional[str] = None

    @property
    def message(self) -> str:
        if self.ok:
            return f"Webhook processed: {self.fetched} orders for {self.courier}"
        return f"Webhook for {self.courier} not processed: {self.error}"


@dataclass
class ReconcileResult:
    """What one courier's reconciliation did."""
    courier: str
    complete: bool
    upstream_orders: int = 0
    pruned_tags: List[str] = field(default_factory=list)
    error: Optional[str] = None


class SyncEngine:
    """
    Orchestrates CRM fetches, store merges and subscriber pushes.

    Usage:
        engine = SyncEngine(client, store, registry, locations, roster)
        outcome = await engine.on_webhook("sasha")
        results = await engine.reconcile_all()
    """

    def __init__(
        self,
        client: AmoCRMClient,
        store: OrderStore,
        registry: SubscriptionRegistry,
        locations: LocationStore,
        roster: CourierRoster,
        settings: SyncConfig = None,
        amocrm_settings: AmoCRMConfig = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.store = store
        self.registry = registry
        self.locations = locations
        self.roster = roster
        self.settings = settings or config.sync
        self.amocrm_settings = amocrm_settings or config.amocrm
        self._sleep = sleep

        self._arrivals: Dict[str, int] = {}
        self._states: Dict[str, SyncState] = {}
        self._pending_full_sync: Dict[str, asyncio.Task] = {}
        self._last_reconcile: List[ReconcileResult] = []

    def _filter(self, courier: Courier) -> LeadFilter:
        return LeadFilter.for_tags(courier.tags, self.amocrm_settings)

    def _merge_leads(self, tags: Sequence[str], leads: Sequence[Order]) -> List[str]:
        """Merge each lead under every one of ``tags`` it carries."""
        merged = []
        for tag in tags:
            matching = [lead for lead in leads if tag in lead_tag_names(lead)]
            if matching:
                self.store.merge(tag, matching)
                merged.append(tag)
        return merged

    async def _clear_idle_locations(self, tags: Sequence[str]) -> None:
        """Drop positions of couriers owning ``tags`` who have no order left."""
        cleared = False
        for tag in tags:
            for owner in self.roster.owners_of(tag):
                if not self.store.has_orders(owner.tags) and self.locations.clear(owner.login):
                    cleared = True
        if cleared:
            await self.registry.publish_locations()

    # ═══════════════════════════════════════════════════════════════════════════
    # WEBHOOK PATH
    # ═══════════════════════════════════════════════════════════════════════════

    async def on_webhook(self, login: str) -> WebhookOutcome:
        """
        Handle one webhook arrival for a courier.

        A fetch failure is logged and reported in the outcome; it never
        raises, so the caller can still acknowledge the webhook.

        Raises:
            CourierNotFound: login not in the roster
        """
        courier = self.roster.require(login)
        arrivals = self._arrivals.get(login, 0) + 1
        self._arrivals[login] = arrivals

        logger.info(
            f"Webhook for {login}",
            extra={"tags": list(courier.tags), "arrivals": arrivals},
        )

        self._states[login] = SyncState.FETCHING
        try:
            page = await self.client.fetch_page(
                self._filter(courier),
                page=1,
                page_size=self.amocrm_settings.webhook_page_size,
                use_cache=False,
            )
            leads = await self.client.enrich_leads(page.leads)
        except UpstreamError as e:
            logger.error(f"Webhook fetch for {login} failed: {e}")
            self._states[login] = SyncState.IDLE
            return WebhookOutcome(courier=login, ok=False, error=e.message)

        self._states[login] = SyncState.MERGING
        merged = self._merge_leads(courier.tags, leads)

        self._states[login] = SyncState.BROADCASTING
        if merged:
            await self.registry.publish_orders(merged)

        outcome = WebhookOutcome(courier=login, ok=True, fetched=len(leads), merged_tags=merged)

        if arrivals > self.settings.burst_threshold:
            outcome.full_sync_scheduled = self.schedule_full_sync(login)

        self._states[login] = (
            SyncState.QUEUED_FOR_FULL_SYNC if self.has_pending_full_sync(login) else SyncState.IDLE
        )
        return outcome

    def has_pending_full_sync(self, login: str) -> bool:
        task = self._pending_full_sync.get(login)
        return task is not None and not task.done()

    def schedule_full_sync(self, login: str) -> bool:
        """
        Queue one deferred full sync for a courier.

        Returns False when one is already pending; the pending run covers
        the arrivals that came in since it was queued.
        """
        if self.has_pending_full_sync(login):
            return False

        task = asyncio.create_task(self._deferred_full_sync(login))
        self._pending_full_sync[login] = task
        task.add_done_callback(lambda t, key=login: self._forget_full_sync(key, t))
        logger.info(
            f"Full sync for {login} queued in {self.settings.full_sync_delay_seconds}s",
            extra={"arrivals": self._arrivals.get(login, 0)},
        )
        return True

    def _forget_full_sync(self, login: str, task: asyncio.Task) -> None:
        if self._pending_full_sync.get(login) is task:
            del self._pending_full_sync[login]

    async def _deferred_full_sync(self, login: str) -> None:
        await self._sleep(self.settings.full_sync_delay_seconds)
        with correlation_context():
            try:
                await self.full_sync(login)
            except RelayError as e:
                logger.error(f"Deferred full sync for {login} failed: {e}")
            except Exception:
                logger.exception(f"Deferred full sync for {login} crashed")
            finally:
                if self._states.get(login) == SyncState.QUEUED_FOR_FULL_SYNC:
                    self._states[login] = SyncState.IDLE

    async def full_sync(self, login: str) -> int:
        """
        Fetch every page for a courier's tags and merge it. Never prunes.

        Returns:
            Number of leads merged
        """
        courier = self.roster.require(login)
        try:
            with Timer(f"full sync {login}", logger):
                sweep = await self.client.fetch_all_pages(
                    self._filter(courier),
                    page_size=self.amocrm_settings.sweep_page_size,
                    use_cache=False,
                )
                leads = await self.client.enrich_leads(sweep.leads)
                merged = self._merge_leads(courier.tags, leads)
                if merged:
                    await self.registry.publish_orders(merged)
        finally:
            self._arrivals[login] = 0

        logger.info(
            f"Full sync for {login}: {len(leads)} leads over {sweep.pages} pages",
            extra={"complete": sweep.complete, "tags": merged},
        )
        return len(leads)

    # ═══════════════════════════════════════════════════════════════════════════
    # RECONCILIATION
    # ═══════════════════════════════════════════════════════════════════════════

    async def reconcile_courier(self, login: str) -> ReconcileResult:
        """
        Prune a courier's tags down to what amoCRM still lists.

        A sweep that is incomplete or was partly answered from the cache
        prunes nothing. Couriers left without orders by a prune lose their
        location.
        """
        courier = self.roster.require(login)
        sweep = await self.client.fetch_all_pages(
            self._filter(courier),
            page_size=self.amocrm_settings.sweep_page_size,
            use_cache=False,
        )
        result = ReconcileResult(
            courier=login, complete=sweep.authoritative, upstream_orders=len(sweep.leads)
        )

        if not sweep.authoritative:
            logger.warning(
                f"Sweep for {login} not authoritative, skipping prune",
                extra={
                    "collected": len(sweep.leads),
                    "complete": sweep.complete,
                    "cached_pages": sweep.cached_pages,
                },
            )
            return result

        valid_ids = sweep.ids
        for tag in courier.tags:
            if self.store.prune_stale(tag, valid_ids):
                result.pruned_tags.append(tag)

        if result.pruned_tags:
            await self.registry.publish_orders(result.pruned_tags)
            await self._clear_idle_locations(result.pruned_tags)

        return result

    async def reconcile_all(self) -> List[ReconcileResult]:
        """Reconcile every courier one after another, spaced by a fixed delay."""
        couriers = list(self.roster)
        results = []

        logger.info(f"Reconciliation started for {len(couriers)} couriers")
        for i, courier in enumerate(couriers):
            try:
                results.append(await self.reconcile_courier(courier.login))
            except RelayError as e:
                logger.error(f"Reconciliation for {courier.login} failed: {e}")
                results.append(ReconcileResult(courier=courier.login, complete=False, error=str(e)))

            if i < len(couriers) - 1:
                await self._sleep(self.settings.courier_delay_seconds)

        pruned = sum(len(r.pruned_tags) for r in results)
        logger.info(f"Reconciliation finished, {pruned} tags pruned")
        self._last_reconcile = results
        return results

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    async def shutdown(self) -> None:
        """Cancel deferred full syncs that have not run yet."""
        tasks = [t for t in self._pending_full_sync.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending_full_sync.clear()

    def state(self, login: str) -> SyncState:
        return self._states.get(login, SyncState.IDLE)

    def arrivals(self, login: str) -> int:
        return self._arrivals.get(login, 0)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "arrivals": dict(self._arrivals),
            "pending_full_syncs": sorted(
                login for login in self._pending_full_sync if self.has_pending_full_sync(login)
            ),
            "states": {login: state.value for login, state in self._states.items()},
            "last_reconcile": [
                {"courier": r.courier, "complete": r.complete, "pruned_tags": r.pruned_tags}
                for r in self._last_reconcile
            ],
        }
