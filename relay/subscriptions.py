"""
Live WebSocket subscriptions for couriers and the map dashboard.

A channel subscribes with a normalized SubscriptionKey: a tag set (a login
is resolved to its courier's tags first) or the "map" observer class.
Tag channels receive ``orders`` pushes; map channels receive ``locations``
and ``couriers`` pushes and never order data.

Usage:
    from relay.services import get_services

    registry = get_services().registry
    key = registry.resolve_key(tags="sasha,night")
    channel = await registry.subscribe(websocket, key)   # initial snapshot sent here

    await registry.publish_orders(["sasha"])             # after a store mutation
    await registry.unsubscribe(channel)
"""
import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from relay.couriers import CourierRoster
from relay.exceptions import MalformedSubscription
from relay.location_store import LocationStore
from relay.models import MAP_CLASS, SubscriptionKey
from relay.observability import get_logger
from relay.order_store import OrderStore

logger = get_logger(__name__)


class MessageType(Enum):
    """Message types exchanged over the channel."""

    ORDERS = "orders"
    LOCATIONS = "locations"
    COURIERS = "couriers"
    LOCATION = "location"  # client -> server
    PING = "ping"          # client -> server
    PONG = "pong"


def message(kind: MessageType, data: Any = None) -> Dict[str, Any]:
    payload = {"type": kind.value}
    if data is not None:
        payload["data"] = data
    return payload


LocationHandler = Callable[["Channel", Dict[str, Any]], Awaitable[None]]


@dataclass(eq=False)
class Channel:
    """One live WebSocket connection and its subscription."""

    id: int
    websocket: WebSocket
    key: SubscriptionKey
    connected_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    message_count: int = 0
    closed: bool = False

    def __post_init__(self):
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return (
            not self.closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: Dict[str, Any]) -> bool:
        """
        Send one JSON message. Sends on a channel are serialized, so messages
        arrive in the order their payloads were materialized.
        """
        if not self.is_open:
            return False
        text = json.dumps(payload, ensure_ascii=False, default=str)
        async with self._send_lock:
            try:
                await self.websocket.send_text(text)
            except Exception as e:
                logger.debug(f"Send to channel {self.id} failed: {e}")
                self.closed = True
                return False
        self.last_activity = datetime.now()
        self.message_count += 1
        return True


class SubscriptionRegistry:
    """
    Channels grouped by tag, plus the map-observer class.

    The registry only references channels; it never reopens one. Closed
    channels are skipped at send time and pruned on the spot. All index
    mutations happen without awaiting, so a broadcast never sees a
    half-registered channel.
    """

    def __init__(
        self,
        order_store: OrderStore,
        location_store: LocationStore,
        roster: CourierRoster,
        location_max_age: Optional[float] = None,
    ):
        self._orders = order_store
        self._locations = location_store
        self._roster = roster
        self._location_max_age = location_max_age
        self._by_tag: Dict[str, Dict[int, Channel]] = {}
        self._classes: Dict[str, Dict[int, Channel]] = {}
        self._next_channel_id = 1
        self._total_channels = 0
        self._total_messages_sent = 0
        self.location_handler: Optional[LocationHandler] = None

    # ═══════════════════════════════════════════════════════════════════════════
    # KEYS
    # ═══════════════════════════════════════════════════════════════════════════

    def resolve_key(
        self,
        tags: Optional[str] = None,
        login: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> SubscriptionKey:
        """
        Normalize connection parameters into a SubscriptionKey.

        Raises:
            MalformedSubscription: no usable tags, login or map type
        """
        if kind == MAP_CLASS:
            return SubscriptionKey.map_observer()

        if tags:
            key = SubscriptionKey.for_tags(tags.split(","))
            if key.tags:
                return SubscriptionKey.for_tags(key.tags, login=self._roster.login_for_tags(key.tags))

        if login:
            courier = self._roster.get(login)
            if courier is not None:
                return SubscriptionKey.for_tags(courier.tags, login=courier.login)
            raise MalformedSubscription(f"Unknown login {login!r}")

        raise MalformedSubscription("Subscription needs tags, login or type=map")

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    def _initial_messages(self, key: SubscriptionKey) -> List[Dict[str, Any]]:
        if key.is_map:
            return [
                message(MessageType.LOCATIONS, self.location_snapshot()),
                message(MessageType.COURIERS, self._roster.public_list()),
            ]
        return [message(MessageType.ORDERS, self._orders.snapshot_for_tags(key.tags))]

    async def subscribe(self, websocket: WebSocket, key: SubscriptionKey) -> Channel:
        """
        Accept the socket, register it under every tag of ``key`` (or the map
        class) and send the current state right away.
        """
        await websocket.accept()

        channel = Channel(id=self._next_channel_id, websocket=websocket, key=key)
        self._next_channel_id += 1
        self._total_channels += 1

        if key.is_map:
            self._classes.setdefault(MAP_CLASS, {})[channel.id] = channel
        else:
            for tag in key.tags:
                self._by_tag.setdefault(tag, {})[channel.id] = channel

        # Materialized before any await so no mutation can slip in between
        initial = self._initial_messages(key)

        logger.info(
            f"Channel {channel.id} subscribed",
            extra={"tags": list(key.tags), "login": key.login, "map": key.is_map},
        )

        for payload in initial:
            if await channel.send(payload):
                self._total_messages_sent += 1
            else:
                await self.unsubscribe(channel)
                break

        return channel

    async def unsubscribe(self, channel: Channel) -> None:
        """Remove the channel from every list it joined. Safe to call repeatedly."""
        channel.closed = True
        removed = False

        for index in (self._by_tag, self._classes):
            for name in list(index):
                members = index[name]
                if members.pop(channel.id, None) is not None:
                    removed = True
                if not members:
                    del index[name]

        if removed:
            logger.info(
                f"Channel {channel.id} unsubscribed",
                extra={"remaining": self.connection_count()},
            )

    # ═══════════════════════════════════════════════════════════════════════════
    # BROADCAST
    # ═══════════════════════════════════════════════════════════════════════════

    async def _deliver(self, targets: List[tuple]) -> int:
        """Send (channel, payload) pairs concurrently and prune dead channels."""
        if not targets:
            return 0

        results = await asyncio.gather(
            *(channel.send(payload) for channel, payload in targets),
            return_exceptions=True,
        )

        sent = 0
        for (channel, _), result in zip(targets, results):
            if result is True:
                sent += 1
            else:
                if isinstance(result, Exception):
                    logger.warning(f"Failed to send to channel {channel.id}: {result}")
                await self.unsubscribe(channel)

        self._total_messages_sent += sent
        return sent

    def _open_members(self, members: Iterable[Channel]) -> List[Channel]:
        live = []
        for channel in members:
            if channel.is_open:
                live.append(channel)
            else:
                channel.closed = True
        return live

    async def _prune_closed(self) -> None:
        for index in (self._by_tag, self._classes):
            for members in list(index.values()):
                for channel in list(members.values()):
                    if channel.closed:
                        await self.unsubscribe(channel)

    async def broadcast(self, tag: str, payload: Dict[str, Any]) -> int:
        """Send ``payload`` to every open channel registered under ``tag``."""
        channels = self._open_members(list(self._by_tag.get(tag, {}).values()))
        await self._prune_closed()
        return await self._deliver([(c, payload) for c in channels])

    async def broadcast_to_class(self, class_key: str, payload: Dict[str, Any]) -> int:
        """Send ``payload`` to every open channel of an observer class."""
        channels = self._open_members(list(self._classes.get(class_key, {}).values()))
        await self._prune_closed()
        return await self._deliver([(c, payload) for c in channels])

    async def publish_orders(self, tags: Iterable[str]) -> int:
        """
        Push fresh order snapshots after a mutation touching ``tags``.

        Each affected channel gets one message with the deduplicated orders
        of its own tag set, even when it is registered under several of them.
        """
        affected: Dict[int, Channel] = {}
        for tag in tags:
            for channel in self._by_tag.get(tag, {}).values():
                affected[channel.id] = channel

        channels = self._open_members(affected.values())
        targets = [
            (c, message(MessageType.ORDERS, self._orders.snapshot_for_tags(c.key.tags)))
            for c in channels
        ]
        await self._prune_closed()

        sent = await self._deliver(targets)
        logger.debug(f"Published orders for {list(tags)} to {sent} channels")
        return sent

    def location_snapshot(self) -> Dict[str, dict]:
        return self._locations.snapshot(max_age=self._location_max_age)

    async def publish_locations(self) -> int:
        """Push the visible location map to map observers."""
        return await self.broadcast_to_class(
            MAP_CLASS, message(MessageType.LOCATIONS, self.location_snapshot())
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # INCOMING
    # ═══════════════════════════════════════════════════════════════════════════

    async def handle_message(self, channel: Channel, raw: str) -> None:
        """Answer keep-alives and route location reports."""
        channel.last_activity = datetime.now()

        if raw == "ping":
            await channel.send(message(MessageType.PONG))
            return

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"Received non-JSON message: {raw[:100]}")
            return
        if not isinstance(data, dict):
            return

        kind = data.get("type")
        if kind == MessageType.PING.value:
            await channel.send(message(MessageType.PONG))
        elif kind == MessageType.LOCATION.value:
            if channel.key.is_map:
                logger.debug(f"Ignoring location report from map channel {channel.id}")
            elif self.location_handler is not None:
                await self.location_handler(channel, data.get("data") or {})

    # ═══════════════════════════════════════════════════════════════════════════
    # STATS
    # ═══════════════════════════════════════════════════════════════════════════

    def subscribers(self, tag: str) -> List[Channel]:
        return list(self._by_tag.get(tag, {}).values())

    def connection_count(self) -> int:
        ids = set()
        for index in (self._by_tag, self._classes):
            for members in index.values():
                ids.update(members)
        return len(ids)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_channels": self.connection_count(),
            "total_channels_ever": self._total_channels,
            "total_messages_sent": self._total_messages_sent,
            "tags": {tag: len(members) for tag, members in self._by_tag.items()},
            "map_observers": len(self._classes.get(MAP_CLASS, {})),
        }
