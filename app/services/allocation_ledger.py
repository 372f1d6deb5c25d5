"""
Allocation ledger: committed quantity per (product, variant) across stores.
The only mutable state shared by concurrent store pushes for one product.
"""

import asyncio
from collections.abc import Callable, Iterable

import structlog

from app.models.database import SyncResult

logger = structlog.get_logger()

LedgerKey = tuple[str, str]


class Holding:
    """
    What one store holds of one variant.

    ``confirmed`` is the quantity the store received in its last successful
    push (None if it never received any). ``pending`` maps each in-flight
    batch to the quantity it is trying to push. Until a batch settles the
    store may end up with either amount, so the larger one counts.
    """

    __slots__ = ("confirmed", "pending")

    def __init__(self, confirmed: int | None = None):
        self.confirmed = confirmed
        self.pending: dict[str | None, int] = {}

    @property
    def quantity(self) -> int:
        return max([self.confirmed or 0, *self.pending.values()])

    def is_empty(self) -> bool:
        return self.confirmed is None and not self.pending


class AllocationLedger:
    """
    Tracks how much of each variant's master quantity is committed to each
    store. Reads and writes for one (product_id, variant_id) key run under
    that key's lock, so two concurrent allocations cannot over-commit.

    Every commitment is tagged with the batch that made it. Settling a batch
    (confirm or rollback) only touches that batch's own commitment, so a
    failing batch never erases a newer concurrent batch's reservation.
    """

    def __init__(self):
        self._commitments: dict[LedgerKey, dict[str, Holding]] = {}
        self._locks: dict[LedgerKey, asyncio.Lock] = {}
        self._hydrated: set[str] = set()

    def _lock_for(self, key: LedgerKey) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _prune(self, key: LedgerKey, store_id: str) -> None:
        per_store = self._commitments.get(key, {})
        holding = per_store.get(store_id)
        if holding is not None and holding.is_empty():
            del per_store[store_id]

    def committed(self, product_id: str, variant_id: str, exclude_store_id: str | None = None) -> int:
        """Total committed quantity, optionally ignoring one store's own commitment."""
        per_store = self._commitments.get((product_id, variant_id), {})
        return sum(
            holding.quantity for store_id, holding in per_store.items() if store_id != exclude_store_id
        )

    def snapshot(self, product_id: str) -> dict[str, dict[str, int]]:
        """variant_id -> store_id -> committed quantity for one product."""
        return {
            variant_id: {store_id: holding.quantity for store_id, holding in per_store.items()}
            for (pid, variant_id), per_store in self._commitments.items()
            if pid == product_id and per_store
        }

    async def commit(
        self,
        product_id: str,
        variant_id: str,
        store_id: str,
        allocate: Callable[[int], dict[str, int]],
        batch_id: str | None = None,
    ) -> dict[str, int]:
        """
        Atomically compute and record a store's allocation for one variant.

        The callback receives the quantity committed to other stores and
        returns a location -> quantity mapping; whatever it raises leaves the
        ledger untouched. A store's previous commitment for the same batch is
        replaced, not added to.
        """
        key = (product_id, variant_id)
        async with self._lock_for(key):
            elsewhere = self.committed(product_id, variant_id, exclude_store_id=store_id)
            allocation = allocate(elsewhere)
            holding = self._commitments.setdefault(key, {}).setdefault(store_id, Holding())
            holding.pending[batch_id] = sum(allocation.values())
            return allocation

    async def confirm(
        self, product_id: str, variant_id: str, store_id: str, quantity: int, batch_id: str | None = None
    ) -> None:
        """The store now holds ``quantity``; the batch's reservation becomes its confirmed amount."""
        key = (product_id, variant_id)
        async with self._lock_for(key):
            holding = self._commitments.setdefault(key, {}).setdefault(store_id, Holding())
            holding.pending.pop(batch_id, None)
            holding.confirmed = quantity

    async def rollback(
        self, product_id: str, variant_id: str, store_id: str, batch_id: str | None = None
    ) -> bool:
        """
        Withdraw one batch's reservation; the store keeps its confirmed amount
        and any other batch's reservation. Returns False if the batch held none.
        """
        key = (product_id, variant_id)
        async with self._lock_for(key):
            holding = self._commitments.get(key, {}).get(store_id)
            if holding is None or batch_id not in holding.pending:
                return False
            del holding.pending[batch_id]
            self._prune(key, store_id)
            return True

    async def release(self, product_id: str, variant_id: str, store_id: str) -> int:
        """Drop everything a store holds for one variant. Returns the released quantity."""
        key = (product_id, variant_id)
        async with self._lock_for(key):
            holding = self._commitments.get(key, {}).pop(store_id, None)
            released = holding.quantity if holding is not None else 0
            if released:
                logger.info(
                    "Released inventory commitment",
                    product_id=product_id,
                    variant_id=variant_id,
                    store_id=store_id,
                    quantity=released,
                )
            return released

    async def release_store(self, product_id: str, store_id: str) -> None:
        for (pid, variant_id) in list(self._commitments):
            if pid == product_id:
                await self.release(product_id, variant_id, store_id)

    def forget_variant(self, product_id: str, variant_id: str) -> None:
        key = (product_id, variant_id)
        self._commitments.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def is_hydrated(self, product_id: str) -> bool:
        return product_id in self._hydrated

    def hydrate(self, product_id: str, results: Iterable[SyncResult]) -> None:
        """
        Rebuild confirmed commitments for a product from persisted results.
        Used after a restart, before the first allocation for that product.
        Batches that were in flight when the process stopped left nothing
        behind, so only each store's last confirmed allocation counts.
        """
        for result in results:
            for variant_id, per_location in result.committed_allocations.items():
                key = (product_id, variant_id)
                holding = self._commitments.setdefault(key, {}).setdefault(result.store_id, Holding())
                if holding.confirmed is None:
                    holding.confirmed = sum(per_location.values())
        self._hydrated.add(product_id)
        logger.debug("Hydrated allocation ledger", product_id=product_id)
