"""
Durable record of the latest sync result per (product, store).
Rejects out-of-order writes and supports polling until every result is terminal.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Protocol

import structlog

from app.config import settings
from app.errors import StaleWriteError
from app.models.database import SyncResult, SyncStatus, utcnow

logger = structlog.get_logger()

CANCELLED_REASON = "cancelled"


class SyncResultBackend(Protocol):
    """Upsert-by-key storage for sync results."""

    def fetch_sync_result(self, product_id: str, store_id: str) -> SyncResult | None: ...

    def upsert_sync_result(self, result: SyncResult) -> SyncResult: ...

    def list_sync_results(self, product_id: str) -> list[SyncResult]: ...


def check_write(existing: SyncResult | None, incoming: SyncResult) -> None:
    """
    Raise StaleWriteError when incoming must not replace existing.

    Older timestamps never replace newer ones. An in-flight status never
    replaces a terminal one with the same or a newer timestamp. Within one
    batch the status only moves forward and a terminal status is final.
    """
    if existing is None:
        return
    if incoming.updated_at < existing.updated_at:
        raise StaleWriteError(
            f"Update for {incoming.product_id}/{incoming.store_id} is older than the stored result"
        )
    if (
        existing.status.is_terminal
        and not incoming.status.is_terminal
        and incoming.updated_at <= existing.updated_at
    ):
        raise StaleWriteError(
            f"In-flight update for {incoming.product_id}/{incoming.store_id} would overwrite a terminal result"
        )
    if existing.batch_id is not None and existing.batch_id == incoming.batch_id:
        if existing.status.is_terminal:
            raise StaleWriteError(
                f"Batch {incoming.batch_id} already finished for store {incoming.store_id}"
            )
        if incoming.status.rank < existing.status.rank:
            raise StaleWriteError(
                f"Status cannot move from {existing.status.value} back to {incoming.status.value}"
            )


class SyncStatusTracker:
    """Latest SyncResult per (product_id, store_id), backed by an upsert store."""

    def __init__(self, backend: SyncResultBackend):
        self.backend = backend
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, product_id: str, store_id: str) -> asyncio.Lock:
        key = (product_id, store_id)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def record(self, result: SyncResult) -> SyncResult:
        """
        Upsert a result by (product_id, store_id).

        Raises:
            StaleWriteError: The stored record is newer or already final
        """
        async with self._lock_for(result.product_id, result.store_id):
            # the backend client is synchronous, keep it off the event loop
            existing = await asyncio.to_thread(
                self.backend.fetch_sync_result, result.product_id, result.store_id
            )
            check_write(existing, result)
            stored = await asyncio.to_thread(self.backend.upsert_sync_result, result)
            logger.debug(
                "Recorded sync result",
                product_id=result.product_id,
                store_id=result.store_id,
                status=result.status.value,
                batch_id=result.batch_id,
            )
            return stored

    async def get(self, product_id: str) -> list[SyncResult]:
        return await asyncio.to_thread(self.backend.list_sync_results, product_id)

    async def get_one(self, product_id: str, store_id: str) -> SyncResult | None:
        return await asyncio.to_thread(self.backend.fetch_sync_result, product_id, store_id)

    async def is_settled(self, product_id: str) -> bool:
        return all(r.status.is_terminal for r in await self.get(product_id))

    async def poll(
        self,
        product_id: str,
        interval: float | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[list[SyncResult]]:
        """
        Yield the product's results at a fixed interval while any is
        pending or syncing. The last yielded snapshot is all-terminal,
        unless the timeout expires first.
        """
        interval = interval if interval is not None else settings.sync_status_poll_interval_seconds
        timeout = timeout if timeout is not None else settings.sync_status_poll_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            results = await self.get(product_id)
            yield results
            if all(r.status.is_terminal for r in results):
                return
            if loop.time() >= deadline:
                logger.warning("Stopped polling unsettled sync results", product_id=product_id)
                return
            await asyncio.sleep(interval)

    async def wait_until_settled(
        self,
        product_id: str,
        interval: float | None = None,
        timeout: float | None = None,
    ) -> list[SyncResult]:
        results: list[SyncResult] = []
        async for results in self.poll(product_id, interval=interval, timeout=timeout):
            pass
        return results

    async def cancel_pending(
        self, product_id: str, batch_id: str | None = None, reason: str = CANCELLED_REASON
    ) -> list[SyncResult]:
        """
        Mark every pending/syncing result of a product (optionally of one
        batch) as failed with the given reason.
        """
        cancelled = []
        for result in await self.get(product_id):
            if result.status.is_terminal:
                continue
            if batch_id is not None and result.batch_id != batch_id:
                continue
            failed = result.model_copy(
                update={"status": SyncStatus.FAILED, "error": reason, "updated_at": utcnow()}
            )
            try:
                cancelled.append(await self.record(failed))
            except StaleWriteError as e:
                # finished between the read and the write
                logger.info("Result settled before cancellation", store_id=result.store_id, error=str(e))
        return cancelled
