#!/usr/bin/env python3
"""
Run order reconciliation once, outside the daily schedule.

Pulls every page of each courier's leads from amoCRM and drops cached
orders amoCRM no longer lists. Couriers whose sweep fails part-way are
left untouched.

Usage:
    python scripts/reconcile_orders.py
    python scripts/reconcile_orders.py --courier sasha
    python scripts/reconcile_orders.py --full-sync sasha   # merge only, no pruning
"""
import asyncio
import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from relay.config import ConfigurationError, validate_config
from relay.exceptions import RelayError
from relay.services import build_services

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(courier: str = None, full_sync: bool = False) -> int:
    """Reconcile one courier or the whole roster."""
    try:
        validate_config()
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    services = build_services()
    services.store.load()
    stats_before = services.store.stats()
    logger.info(f"Before: {stats_before['orders']} orders in {stats_before['tags']} tags")

    await services.start(with_scheduler=False)
    try:
        if full_sync:
            merged = await services.engine.full_sync(courier)
            logger.info(f"Full sync for {courier}: {merged} leads merged")
            return 0

        if courier:
            results = [await services.engine.reconcile_courier(courier)]
        else:
            results = await services.engine.reconcile_all()

        failed = 0
        for result in results:
            if result.complete:
                logger.info(
                    f"{result.courier}: {result.upstream_orders} upstream orders, "
                    f"pruned tags {result.pruned_tags or 'none'}"
                )
            else:
                failed += 1
                logger.warning(f"{result.courier}: sweep incomplete, nothing pruned ({result.error or 'partial sweep'})")

        stats_after = services.store.stats()
        diff = stats_before['orders'] - stats_after['orders']
        logger.info(f"After: {stats_after['orders']} orders ({diff} removed)")
        return 1 if failed else 0

    except RelayError as e:
        logger.error(f"Reconciliation failed: {e}")
        return 1
    finally:
        await services.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile cached orders with amoCRM")
    parser.add_argument("--courier", help="Only this courier login (default: every courier)")
    parser.add_argument(
        "--full-sync",
        metavar="LOGIN",
        help="Merge every page for LOGIN without pruning",
    )
    args = parser.parse_args()

    if args.full_sync:
        exit_code = asyncio.run(main(courier=args.full_sync, full_sync=True))
    else:
        exit_code = asyncio.run(main(courier=args.courier))
    sys.exit(exit_code)
