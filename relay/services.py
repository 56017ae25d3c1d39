"""
Wiring of the relay components.

Usage:
    services = build_services()         # from the global config
    services.store.load()
    await services.start()
    ...
    await services.stop()
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from relay.amocrm import AmoCRMClient
from relay.config import AppConfig, config
from relay.couriers import CourierRoster
from relay.dispatch import Dispatcher
from relay.location_store import LocationStore
from relay.order_store import OrderStore
from relay.persistence import JsonFileMirror, OrderMirror
from relay.scheduler import RelayScheduler
from relay.subscriptions import SubscriptionRegistry
from relay.sync_engine import SyncEngine


@dataclass
class RelayServices:
    """Every long-lived component of one relay process."""
    settings: AppConfig
    client: AmoCRMClient
    store: OrderStore
    locations: LocationStore
    roster: CourierRoster
    registry: SubscriptionRegistry
    engine: SyncEngine
    dispatcher: Dispatcher
    scheduler: Optional[RelayScheduler] = None

    async def start(self, with_scheduler: bool = True) -> None:
        await self.client.connect()
        if with_scheduler:
            self.scheduler = RelayScheduler(self.engine, self.dispatcher, self.settings)
            self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
            self.scheduler = None
        await self.engine.shutdown()
        await self.client.close()

    def health(self) -> Dict[str, Any]:
        return {
            "orders": self.store.stats(),
            "locations": len(self.locations),
            "couriers": len(self.roster),
            "channels": self.registry.get_stats(),
            "sync": self.engine.get_stats(),
            "amocrm": self.client.stats(),
            "jobs": self.scheduler.get_jobs() if self.scheduler else {},
        }


def build_services(
    settings: AppConfig = None,
    roster: CourierRoster = None,
    mirror: OrderMirror = None,
    client: AmoCRMClient = None,
) -> RelayServices:
    """Assemble the components; collaborators can be swapped for tests."""
    settings = settings or config
    roster = roster if roster is not None else CourierRoster.from_file(settings.storage.couriers_path)
    client = client or AmoCRMClient(settings.amocrm, settings.cache)
    store = OrderStore(mirror or JsonFileMirror(settings.storage.orders_path))
    locations = LocationStore()
    registry = SubscriptionRegistry(
        store, locations, roster, location_max_age=settings.locations.staleness_window
    )
    engine = SyncEngine(client, store, registry, locations, roster, settings.sync, settings.amocrm)
    dispatcher = Dispatcher(
        client, store, registry, locations, roster, settings.amocrm, settings.locations
    )
    registry.location_handler = dispatcher.handle_channel_location

    return RelayServices(
        settings=settings,
        client=client,
        store=store,
        locations=locations,
        roster=roster,
        registry=registry,
        engine=engine,
        dispatcher=dispatcher,
    )


_services: Optional[RelayServices] = None


def get_services() -> RelayServices:
    """Get the process-wide services, building them on first use."""
    global _services
    if _services is None:
        _services = build_services()
        _services.store.load()
    return _services


def set_services(services: Optional[RelayServices]) -> None:
    global _services
    _services = services
