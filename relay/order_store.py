"""
Authoritative tag -> ordered order list mapping.

Every mutation is a single pass with no await inside it, so on the event
loop each operation is atomic with respect to every other. Each mutation
ends by rewriting the durable mirror; a failed write is logged and the
in-memory state stays authoritative (no rollback).

Invariant: no tag's list holds the same order id twice.
"""
from typing import Dict, Iterable, List, Optional, Sequence

from relay.exceptions import OrderNotFound, PersistenceError
from relay.models import Order
from relay.observability import get_logger
from relay.persistence import OrderMirror

logger = get_logger(__name__)


class OrderStore:
    """
    Orders grouped by courier tag.

    Usage:
        store = OrderStore(JsonFileMirror(path))
        store.load()
        store.merge("sasha", leads)
        orders = store.snapshot_for_tags(["sasha", "night"])
    """

    def __init__(self, mirror: OrderMirror):
        self._mirror = mirror
        self._orders: Dict[str, List[Order]] = {}
        self.persist_failures = 0

    def load(self) -> None:
        """Read the durable mirror; an unreadable mirror starts an empty store."""
        try:
            data = self._mirror.load()
        except PersistenceError as e:
            logger.error(f"Order mirror unreadable, starting empty: {e}")
            data = {}

        self._orders = {}
        for tag, orders in data.items():
            # Collapse duplicates a hand-edited mirror might carry
            self._orders[tag] = []
            self._merge_into(tag, orders or [])

        logger.info(
            f"Loaded {sum(len(v) for v in self._orders.values())} orders "
            f"across {len(self._orders)} tags"
        )

    def _persist(self) -> None:
        try:
            self._mirror.save(self._orders)
        except PersistenceError as e:
            self.persist_failures += 1
            logger.error(f"Order mirror write failed, keeping in-memory state: {e}")

    def _merge_into(self, tag: str, incoming: Iterable[Order]) -> None:
        current = self._orders.setdefault(tag, [])
        index = {order["id"]: pos for pos, order in enumerate(current)}
        for order in incoming:
            pos = index.get(order["id"])
            if pos is None:
                index[order["id"]] = len(current)
                current.append(order)
            else:
                current[pos] = order

    # ═══════════════════════════════════════════════════════════════════════════
    # MUTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    def merge(self, tag: str, incoming: Sequence[Order]) -> List[Order]:
        """
        Replace orders with a known id in place, append the rest.

        Other tags are untouched. Returns a copy of the tag's new list.
        """
        self._merge_into(tag, incoming)
        self._persist()
        logger.debug(f"Merged {len(incoming)} orders into tag {tag!r}")
        return list(self._orders[tag])

    def remove_by_id(self, order_id: int) -> List[str]:
        """
        Remove an order from every tag holding it.

        Returns:
            Tags whose lists changed (never empty)

        Raises:
            OrderNotFound: no tag held the id
        """
        affected = []
        for tag, orders in self._orders.items():
            kept = [order for order in orders if order["id"] != order_id]
            if len(kept) != len(orders):
                self._orders[tag] = kept
                affected.append(tag)

        if not affected:
            raise OrderNotFound(order_id)

        self._persist()
        logger.info(f"Order {order_id} removed from tags {affected}")
        return affected

    def reorder(
        self,
        tags: Iterable[str],
        ordered_ids: Sequence[int],
        keep_omitted: bool = False,
    ) -> Dict[str, List[Order]]:
        """
        Re-sequence each tag's list to follow ``ordered_ids``.

        Ids not held by a tag are ignored. By default the new list is exactly
        the projection of ``ordered_ids`` onto the tag, so members missing
        from ``ordered_ids`` are dropped; callers must send the complete
        order. With ``keep_omitted=True`` those members are kept after the
        ordered ones, in their previous relative order.

        Returns:
            New list per tag that exists in the store
        """
        result = {}
        for tag in tags:
            current = self._orders.get(tag)
            if current is None:
                continue
            by_id = {order["id"]: order for order in current}

            seen = set()
            reordered = []
            for order_id in ordered_ids:
                if order_id in by_id and order_id not in seen:
                    seen.add(order_id)
                    reordered.append(by_id[order_id])

            if keep_omitted:
                reordered.extend(o for o in current if o["id"] not in seen)
            elif len(reordered) < len(current):
                dropped = [o["id"] for o in current if o["id"] not in seen]
                logger.warning(f"Reorder of tag {tag!r} dropped omitted orders {dropped}")

            self._orders[tag] = reordered
            result[tag] = list(reordered)

        self._persist()
        return result

    def prune_stale(self, tag: str, still_valid_ids: Iterable[int]) -> bool:
        """Drop orders whose id is not in ``still_valid_ids``; True if any were dropped."""
        current = self._orders.get(tag)
        if not current:
            return False

        valid = set(still_valid_ids)
        kept = [order for order in current if order["id"] in valid]
        if len(kept) == len(current):
            return False

        self._orders[tag] = kept
        self._persist()
        logger.info(f"Pruned {len(current) - len(kept)} stale orders from tag {tag!r}")
        return True

    # ═══════════════════════════════════════════════════════════════════════════
    # READS
    # ═══════════════════════════════════════════════════════════════════════════

    def snapshot_for_tags(self, tags: Iterable[str]) -> List[Order]:
        """Union of the tags' lists, deduplicated by id, first occurrence wins."""
        seen = set()
        snapshot = []
        for tag in tags:
            for order in self._orders.get(tag, ()):
                if order["id"] not in seen:
                    seen.add(order["id"])
                    snapshot.append(order)
        return snapshot

    def get(self, tag: str) -> List[Order]:
        return list(self._orders.get(tag, ()))

    def find(self, order_id: int) -> Optional[Order]:
        for orders in self._orders.values():
            for order in orders:
                if order["id"] == order_id:
                    return order
        return None

    def contains(self, order_id: int) -> bool:
        return self.find(order_id) is not None

    def has_orders(self, tags: Iterable[str]) -> bool:
        return any(self._orders.get(tag) for tag in tags)

    def tags(self) -> List[str]:
        return list(self._orders)

    def stats(self) -> Dict[str, int]:
        return {
            "tags": len(self._orders),
            "orders": len({o["id"] for orders in self._orders.values() for o in orders}),
            "persist_failures": self.persist_failures,
        }
