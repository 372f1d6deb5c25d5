import asyncio

import pytest

from app.errors import InsufficientInventoryError
from app.models.database import Location, SyncResult, SyncStatus
from app.services.allocation_engine import AllocationEngine
from app.services.allocation_ledger import AllocationLedger


def allocator(master, requested=None):
    engine = AllocationEngine()

    def allocate(committed_elsewhere):
        return engine.allocate(master, [Location(id="L1")], committed_elsewhere, requested=requested)

    return allocate


async def test_concurrent_commits_never_over_commit():
    ledger = AllocationLedger()

    async def commit(store_id):
        # yield first so all commits contend for the lock
        await asyncio.sleep(0)
        try:
            return await ledger.commit("p", "v", store_id, allocator(10, requested=3))
        except InsufficientInventoryError:
            return None

    results = await asyncio.gather(*(commit(f"s{i}") for i in range(6)))

    granted = [r for r in results if r is not None]
    assert len(granted) == 3
    assert ledger.committed("p", "v") == 9


async def test_recommit_replaces_own_commitment():
    ledger = AllocationLedger()
    await ledger.commit("p", "v", "s1", allocator(10, requested=4))
    await ledger.commit("p", "v", "s1", allocator(10, requested=6))

    assert ledger.committed("p", "v") == 6
    assert ledger.committed("p", "v", exclude_store_id="s1") == 0


async def test_failed_allocation_leaves_ledger_untouched():
    ledger = AllocationLedger()
    await ledger.commit("p", "v", "s1", allocator(10, requested=8))

    with pytest.raises(InsufficientInventoryError):
        await ledger.commit("p", "v", "s2", allocator(10, requested=5))

    assert ledger.snapshot("p") == {"v": {"s1": 8}}


async def test_release_drops_confirmed_and_pending():
    ledger = AllocationLedger()
    await ledger.commit("p", "v", "s1", allocator(10, requested=4), batch_id="b1")
    await ledger.confirm("p", "v", "s1", 4, batch_id="b1")
    await ledger.commit("p", "v", "s1", allocator(10, requested=6), batch_id="b2")

    assert await ledger.release("p", "v", "s1") == 6
    assert ledger.committed("p", "v") == 0
    assert ledger.snapshot("p") == {}


async def test_rollback_falls_back_to_confirmed_quantity():
    ledger = AllocationLedger()
    await ledger.commit("p", "v", "s1", allocator(10, requested=7), batch_id="b1")
    await ledger.confirm("p", "v", "s1", 7, batch_id="b1")

    await ledger.commit("p", "v", "s1", allocator(10, requested=2), batch_id="b2")
    # until b2 settles the store may still hold the 7 it already has
    assert ledger.committed("p", "v") == 7

    assert await ledger.rollback("p", "v", "s1", batch_id="b2") is True
    assert ledger.snapshot("p") == {"v": {"s1": 7}}


async def test_rollback_of_unconfirmed_store_removes_it():
    ledger = AllocationLedger()
    await ledger.commit("p", "v", "s1", allocator(10, requested=4), batch_id="b1")

    assert await ledger.rollback("p", "v", "s1", batch_id="b1") is True
    assert ledger.snapshot("p") == {}
    assert await ledger.rollback("p", "v", "s1", batch_id="b1") is False


async def test_rollback_keeps_a_concurrent_batch_reservation():
    ledger = AllocationLedger()
    await ledger.commit("p", "v", "s1", allocator(10, requested=3), batch_id="older")
    await ledger.commit("p", "v", "s1", allocator(10, requested=9), batch_id="newer")

    await ledger.rollback("p", "v", "s1", batch_id="older")

    assert ledger.committed("p", "v") == 9
    with pytest.raises(InsufficientInventoryError):
        await ledger.commit("p", "v", "s2", allocator(10, requested=2), batch_id="other")


async def test_confirm_keeps_newer_pending_batch():
    ledger = AllocationLedger()
    await ledger.commit("p", "v", "s1", allocator(10, requested=3), batch_id="older")
    await ledger.commit("p", "v", "s1", allocator(10, requested=5), batch_id="newer")

    await ledger.confirm("p", "v", "s1", 3, batch_id="older")
    assert ledger.committed("p", "v") == 5

    await ledger.rollback("p", "v", "s1", batch_id="newer")
    assert ledger.committed("p", "v") == 3


async def test_release_store_and_forget_variant():
    ledger = AllocationLedger()
    await ledger.commit("p", "v1", "s1", allocator(10, requested=1))
    await ledger.commit("p", "v2", "s1", allocator(10, requested=2))
    await ledger.commit("p", "v2", "s2", allocator(10, requested=3))

    await ledger.release_store("p", "s1")
    assert ledger.snapshot("p") == {"v2": {"s2": 3}}

    ledger.forget_variant("p", "v2")
    assert ledger.snapshot("p") == {}


async def test_forget_variant_drops_its_lock():
    ledger = AllocationLedger()
    for i in range(5):
        await ledger.commit("p", f"v{i}", "s1", allocator(10, requested=1))
        ledger.forget_variant("p", f"v{i}")

    assert ledger._locks == {}


def test_hydrate_uses_committed_allocations():
    ledger = AllocationLedger()
    ledger.hydrate(
        "p",
        [
            SyncResult(
                product_id="p",
                store_id="s1",
                status=SyncStatus.COMPLETED,
                allocations={"v": {"L1": 3, "L2": 2}},
                committed_allocations={"v": {"L1": 3, "L2": 2}},
            ),
            # a failed re-sync still holds what the store confirmed earlier
            SyncResult(
                product_id="p",
                store_id="s2",
                status=SyncStatus.FAILED,
                allocations={"v": {"L1": 1}},
                committed_allocations={"v": {"L1": 4}},
            ),
            # never confirmed anything
            SyncResult(
                product_id="p",
                store_id="s3",
                status=SyncStatus.PENDING,
                allocations={"v": {"L1": 6}},
            ),
        ],
    )

    assert ledger.is_hydrated("p")
    assert ledger.snapshot("p") == {"v": {"s1": 5, "s2": 4}}
