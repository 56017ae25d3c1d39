"""
Courier-facing actions: deliver, delete, manual sort and location reports.

Each action mutates the order or location store through its own
operations and then pushes the result to subscribers.
"""
from typing import Any, Dict, Iterable, List, Optional, Sequence

from relay.amocrm import AmoCRMClient
from relay.config import AmoCRMConfig, LocationConfig, config
from relay.couriers import CourierRoster
from relay.exceptions import OrderNotFound, ValidationError
from relay.location_store import LocationStore
from relay.models import Order
from relay.observability import get_logger
from relay.order_store import OrderStore
from relay.subscriptions import Channel, SubscriptionRegistry

logger = get_logger(__name__)


def _coordinate(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class Dispatcher:
    """Client actions against the shared stores."""

    def __init__(
        self,
        client: AmoCRMClient,
        store: OrderStore,
        registry: SubscriptionRegistry,
        locations: LocationStore,
        roster: CourierRoster,
        amocrm_settings: AmoCRMConfig = None,
        location_settings: LocationConfig = None,
    ):
        self.client = client
        self.store = store
        self.registry = registry
        self.locations = locations
        self.roster = roster
        self.amocrm_settings = amocrm_settings or config.amocrm
        self.location_settings = location_settings or config.locations

    async def _clear_idle_locations(self, tags: Iterable[str]) -> None:
        """Drop positions of couriers left without any order."""
        cleared = False
        for tag in tags:
            if self.store.get(tag):
                continue
            for courier in self.roster.owners_of(tag):
                if not self.store.has_orders(courier.tags) and self.locations.clear(courier.login):
                    cleared = True
        if cleared:
            await self.registry.publish_locations()

    # ═══════════════════════════════════════════════════════════════════════════
    # ORDERS
    # ═══════════════════════════════════════════════════════════════════════════

    def leads_for(self, tags: Sequence[str]) -> List[Order]:
        return self.store.snapshot_for_tags(tags)

    async def deliver(self, order_id: int, status_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Move a lead to a new status in amoCRM and drop it locally.

        Raises:
            UpstreamError: amoCRM rejected the PATCH (status passed through)
        """
        status_id = status_id or self.amocrm_settings.delivered_status_id
        updated = await self.client.patch_lead(order_id, {"status_id": status_id})

        try:
            tags = self.store.remove_by_id(order_id)
        except OrderNotFound:
            logger.info(f"Order {order_id} patched but was not cached locally")
            return updated

        await self.registry.publish_orders(tags)
        await self._clear_idle_locations(tags)
        return updated

    async def delete(self, order_id: int) -> List[str]:
        """
        Remove an order from every tag without touching amoCRM.

        Raises:
            OrderNotFound: no tag held the order
        """
        tags = self.store.remove_by_id(order_id)
        await self.registry.publish_orders(tags)
        await self._clear_idle_locations(tags)
        return tags

    async def reorder(
        self,
        tags: Sequence[str],
        ordered_ids: Sequence[int],
        keep_omitted: bool = False,
    ) -> List[Order]:
        """Apply a manual sort and return the courier's new deduplicated view."""
        changed = self.store.reorder(tags, ordered_ids, keep_omitted=keep_omitted)
        if changed:
            await self.registry.publish_orders(list(changed))
            await self._clear_idle_locations(changed)
        return self.store.snapshot_for_tags(tags)

    # ═══════════════════════════════════════════════════════════════════════════
    # LOCATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def report_location(
        self,
        tags: Sequence[str],
        lat: Any,
        lng: Any,
        login: Optional[str] = None,
    ) -> bool:
        """
        Record a position sent over a courier channel.

        Only couriers that currently hold an order are put on the map; a
        report from anyone else clears their entry instead.
        """
        key = login or self.roster.login_for_tags(tags) or (tags[0] if tags else None)
        if key is None:
            return False

        lat, lng = _coordinate(lat), _coordinate(lng)
        if self.store.has_orders(tags) and lat is not None and lng is not None:
            self.locations.update(key, lat, lng)
            accepted = True
        else:
            accepted = False
            if not self.locations.clear(key):
                return False

        await self.registry.publish_locations()
        return accepted

    async def handle_channel_location(self, channel: Channel, data: Dict[str, Any]) -> None:
        """Location hook for the subscription registry."""
        tags = [t for t in data.get("tags") or [] if t in channel.key.tags] or list(channel.key.tags)
        await self.report_location(tags, data.get("lat"), data.get("lng"), login=channel.key.login)

    async def ingest_location(
        self,
        login: str,
        lat: Any = None,
        lng: Any = None,
        live: bool = True,
    ) -> str:
        """
        Accept a position from an external producer such as the Telegram bridge.

        ``live=False`` ends the live session; the last point stays visible
        until it expires.

        Raises:
            CourierNotFound: login not in the roster
            ValidationError: live report without usable coordinates
        """
        self.roster.require(login)

        if not live:
            self.locations.mark_inactive(login)
            await self.registry.publish_locations()
            return f"Live session for {login} ended"

        lat, lng = _coordinate(lat), _coordinate(lng)
        if lat is None or lng is None:
            raise ValidationError("lat/lng", "required for a live location")

        self.locations.update(login, lat, lng)
        await self.registry.publish_locations()
        return f"Location for {login} updated"

    async def expire_locations(self) -> List[str]:
        """Drop positions older than the staleness window."""
        expired = self.locations.expire_older_than(self.location_settings.staleness_window)
        if expired:
            await self.registry.publish_locations()
        return expired
