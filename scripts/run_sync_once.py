"""
One-shot sync of a single product to every active store.
Usage: python -m scripts.run_sync_once <product_id> [--force]

Exits non-zero when any store failed, so it can run from a scheduled job.
"""

import asyncio
import sys

import structlog

from app.dependencies import get_orchestrator, get_supabase_service
from app.errors import SyncError
from app.models.sync import SyncTarget
from app.utils.logger import configure_logging

configure_logging()
logger = structlog.get_logger()


async def main(product_id: str, force_sync: bool = False) -> int:
    supabase_service = get_supabase_service()
    orchestrator = get_orchestrator()

    try:
        product = supabase_service.require_product(product_id)
        stores = {s.id: s for s in supabase_service.list_stores(active_only=True)}
        if not stores:
            logger.warning("No active stores to sync to", product_id=product_id)
            return 0

        logger.info("One-shot sync: starting", product_id=product_id, stores=len(stores))
        report = await orchestrator.sync_product(
            product,
            [SyncTarget(store_id=store_id) for store_id in stores],
            stores,
            force_sync=force_sync,
        )
    except SyncError as e:
        logger.error("One-shot sync aborted", product_id=product_id, error=str(e))
        return 2

    for result in report.results:
        logger.info(
            "Store result",
            store_id=result.store_id,
            status=result.status.value,
            shopify_product_id=result.shopify_product_id,
            error=result.error,
        )
    logger.info(
        "One-shot sync: done",
        product_id=product_id,
        summary=report.summary(),
        skipped=len(report.skipped_store_ids),
    )
    return 1 if report.failed else 0


if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    if len(args) != 1:
        print("usage: python -m scripts.run_sync_once <product_id> [--force]", file=sys.stderr)
        sys.exit(64)
    sys.exit(asyncio.run(main(args[0], force_sync="--force" in sys.argv[1:])))
