import asyncio

import pytest
from conftest import make_product

from app.errors import InsufficientInventoryError, StoreAdapterError, ValidationError
from app.models.database import SyncStatus, VariantOverride
from app.models.sync import AllocationPlan, AllocationStrategy, SyncTarget
from app.services.sync_orchestrator import SyncOrchestrator, build_store_payload


def targets(*store_ids, **kwargs):
    return [SyncTarget(store_id=sid, **kwargs) for sid in store_ids]


def assign(product, quantity):
    return {v.id: quantity for v in product.variants}


async def settled(tracker, product_id, store_id):
    while True:
        result = await tracker.get_one(product_id, store_id)
        if result is not None and result.status.is_terminal:
            return result
        await asyncio.sleep(0.005)


async def test_partial_failure_is_contained(orchestrator, adapter, product, stores):
    adapter.failures["s2"] = StoreAdapterError("Variant SKU rejected", store_id="s2")

    report = await orchestrator.sync_product(
        product, targets("s1", "s2", "s3", assigned_inventory=assign(product, 3)), stores
    )

    assert [r.store_id for r in report.results] == ["s1", "s2", "s3"]
    assert [r.status for r in report.results] == [
        SyncStatus.COMPLETED,
        SyncStatus.FAILED,
        SyncStatus.COMPLETED,
    ]
    assert "Variant SKU rejected" in report.results[1].error
    assert report.results[0].shopify_product_id == "gid-s1"
    assert report.summary() == "2 succeeded, 1 failed"

    # the failed store's commitment is released
    variant_id = product.variants[0].id
    assert orchestrator.ledger.committed(product.id, variant_id) == 6
    assert orchestrator.ledger.snapshot(product.id)[variant_id] == {"s1": 3, "s3": 3}


async def test_unexpected_adapter_error_is_contained(orchestrator, adapter, product, stores):
    adapter.failures["s1"] = RuntimeError("socket closed")

    report = await orchestrator.sync_product(product, targets("s1", "s2"), stores)

    assert report.results[0].status == SyncStatus.FAILED
    assert "socket closed" in report.results[0].error
    assert report.results[1].status == SyncStatus.COMPLETED


async def test_second_sync_without_changes_is_a_no_op(orchestrator, adapter, tracker, product, stores):
    first = await orchestrator.sync_product(product, targets("s1"), stores)
    stored = await tracker.get_one(product.id, "s1")

    second = await orchestrator.sync_product(product, targets("s1"), stores)

    assert adapter.pushed_to() == ["s1"]
    assert second.skipped_store_ids == ["s1"]
    assert second.results == first.results
    assert await tracker.get_one(product.id, "s1") == stored


async def test_force_sync_pushes_again_as_update(orchestrator, adapter, product, stores):
    await orchestrator.sync_product(product, targets("s1"), stores)
    report = await orchestrator.sync_product(product, targets("s1"), stores, force_sync=True)

    assert adapter.pushed_to() == ["s1", "s1"]
    assert adapter.calls[1][1].shopify_product_id == "gid-s1"
    assert report.results[0].status == SyncStatus.COMPLETED
    assert report.skipped_store_ids == []


async def test_changed_payload_is_pushed(orchestrator, adapter, product, stores):
    await orchestrator.sync_product(product, targets("s1"), stores)
    overrides = {product.variants[0].id: VariantOverride(price=25.0)}

    await orchestrator.sync_product(product, targets("s1", variant_overrides=overrides), stores)

    assert adapter.pushed_to() == ["s1", "s1"]


async def test_timeout_fails_only_slow_store(tracker, registry, adapter, product, stores):
    orchestrator = SyncOrchestrator(tracker=tracker, registry=registry, push_timeout=0.05)
    adapter.delays["s1"] = 5

    report = await orchestrator.sync_product(product, targets("s1", "s2"), stores)

    assert report.results[0].status == SyncStatus.FAILED
    assert "Timed out" in report.results[0].error
    assert report.results[1].status == SyncStatus.COMPLETED


async def test_cancel_marks_in_flight_failed_and_drops_late_result(
    orchestrator, adapter, tracker, product, stores
):
    adapter.gates["s1"] = asyncio.Event()
    batch = await orchestrator.prepare(product, targets("s1", "s2"), stores)
    task = asyncio.create_task(orchestrator.execute(batch))

    await asyncio.wait_for(adapter.started.setdefault("s1", asyncio.Event()).wait(), 1)
    await asyncio.wait_for(settled(tracker, product.id, "s2"), 1)
    cancelled = await orchestrator.cancel(product.id, batch.batch_id)
    adapter.gates["s1"].set()
    report = await task

    assert [r.store_id for r in cancelled] == ["s1"]
    by_store = {r.store_id: r for r in report.results}
    assert by_store["s1"].status == SyncStatus.FAILED
    assert by_store["s1"].error == "cancelled"
    assert by_store["s2"].status == SyncStatus.COMPLETED

    stored = await tracker.get_one(product.id, "s1")
    assert stored.status == SyncStatus.FAILED
    assert orchestrator.ledger.snapshot(product.id)[product.variants[0].id] == {"s2": 0}


async def test_canonical_product_is_not_mutated(orchestrator, product, stores):
    before = product.model_dump()
    overrides = {v.id: VariantOverride(price=99.0, sku="OVR") for v in product.variants}

    await orchestrator.sync_product(
        product,
        targets("s1", "s2", variant_overrides=overrides, collections_to_join=["100"]),
        stores,
    )

    assert product.model_dump() == before


async def test_unknown_store_aborts_before_any_push(orchestrator, adapter, backend, product, stores):
    with pytest.raises(ValidationError):
        await orchestrator.sync_product(product, targets("s1", "nope"), stores)

    assert adapter.calls == []
    assert backend.writes == []
    assert orchestrator.ledger.snapshot(product.id) == {}


async def test_inactive_store_rejected(orchestrator, product, stores):
    stores["s2"] = stores["s2"].model_copy(update={"is_active": False})
    with pytest.raises(ValidationError):
        await orchestrator.sync_product(product, targets("s2"), stores)


async def test_duplicate_targets_rejected(orchestrator, product, stores):
    with pytest.raises(ValidationError):
        await orchestrator.sync_product(product, targets("s1", "s1"), stores)


async def test_insufficient_inventory_rolls_back_earlier_targets(
    orchestrator, adapter, backend, product, stores
):
    batch_targets = [
        SyncTarget(store_id="s1", assigned_inventory=assign(product, 6)),
        SyncTarget(store_id="s2", assigned_inventory=assign(product, 6)),
    ]

    with pytest.raises(InsufficientInventoryError) as excinfo:
        await orchestrator.sync_product(product, batch_targets, stores)

    assert excinfo.value.variant_id == product.variants[0].id
    assert excinfo.value.available == 4
    assert adapter.calls == []
    assert backend.writes == []
    assert orchestrator.ledger.snapshot(product.id) == {}


async def test_override_breaking_compare_at_price_aborts(orchestrator, adapter, stores):
    product = make_product(price=20.0)
    variant = product.variants[0].model_copy(update={"compare_at_price": 25.0})
    product = product.model_copy(update={"variants": [variant, *product.variants[1:]]})

    with pytest.raises(ValidationError, match="compare at price"):
        await orchestrator.sync_product(
            product,
            targets("s1", variant_overrides={variant.id: VariantOverride(price=30.0)}),
            stores,
        )
    assert adapter.calls == []


async def test_target_overrides_win_over_saved_ones(orchestrator, adapter, stores):
    base = make_product()
    first = base.variants[0].id
    product = base.model_copy(
        update={"store_overrides": {"s1": {first: VariantOverride(price=25.0, sku="SAVED")}}}
    )

    await orchestrator.sync_product(
        product,
        targets("s1", variant_overrides={first: VariantOverride(price=30.0)}),
        stores,
    )

    payload = adapter.calls[0][1]
    assert payload.variants[0].price == 30.0
    assert payload.variants[0].sku == "SAVED"
    assert payload.variants[1].price == 20.0


async def test_unassigned_variants_get_no_inventory(orchestrator, adapter, product, stores):
    first = product.variants[0].id
    await orchestrator.sync_product(
        product, targets("s1", assigned_inventory={first: 4}), stores
    )

    payload = adapter.calls[0][1]
    assert sum(payload.variants[0].inventory.values()) == 4
    assert sum(payload.variants[1].inventory.values()) == 0


async def test_target_location_restricts_allocation(orchestrator, adapter, product, stores):
    await orchestrator.sync_product(product, targets("s1", location_id="s1-b"), stores)

    payload = adapter.calls[0][1]
    assert payload.location_id == "s1-b"
    assert payload.variants[0].inventory == {"s1-b": 10}


async def test_ledger_hydrates_from_persisted_results(tracker, registry, adapter, product, stores):
    first = SyncOrchestrator(tracker=tracker, registry=registry)
    await first.sync_product(product, targets("s1", assigned_inventory=assign(product, 7)), stores)

    # a fresh process only knows what the tracker persisted
    restarted = SyncOrchestrator(tracker=tracker, registry=registry)
    with pytest.raises(InsufficientInventoryError):
        await restarted.sync_product(
            product, targets("s2", assigned_inventory=assign(product, 4)), stores
        )


async def test_delete_from_store_releases_commitment(orchestrator, adapter, product, stores):
    await orchestrator.sync_product(product, targets("s1"), stores)

    result = await orchestrator.delete_from_store(product, stores["s1"])

    assert adapter.deleted == [("s1", "gid-s1")]
    assert result.status == SyncStatus.COMPLETED
    assert result.shopify_product_id is None
    assert orchestrator.ledger.snapshot(product.id) == {}


async def test_delete_failure_is_recorded_and_raised(orchestrator, adapter, tracker, product, stores):
    await orchestrator.sync_product(product, targets("s1"), stores)
    adapter.failures["s1"] = StoreAdapterError("Not allowed", store_id="s1")

    with pytest.raises(StoreAdapterError):
        await orchestrator.delete_from_store(product, stores["s1"])

    stored = await tracker.get_one(product.id, "s1")
    assert stored.status == SyncStatus.FAILED
    assert stored.shopify_product_id == "gid-s1"


async def test_preview_does_not_commit(orchestrator, product, stores):
    plan = await orchestrator.preview_allocation(
        product, SyncTarget(store_id="s1", strategy=AllocationStrategy.PRIORITY), stores["s1"]
    )

    assert plan.variants[0].locations == {"s1-a": 10, "s1-b": 0}
    assert plan.variants[0].allocated == 10
    assert orchestrator.ledger.snapshot(product.id) == {}


def test_build_store_payload_dedupes_collections(product):
    product = product.model_copy(update={"collections_to_join": ["1", "2"]})
    target = SyncTarget(store_id="s1", collections_to_join=["2", "3"])
    plan = AllocationPlan(store_id="s1", strategy=AllocationStrategy.BALANCED)

    payload = build_store_payload(product, target, plan)

    assert payload.collections_to_join == ["1", "2", "3"]
    assert [v.title for v in payload.variants] == ["Red / S", "Red / M", "Blue / S", "Blue / M"]
    assert payload.content_hash() == build_store_payload(product, target, plan, "999").content_hash()


async def test_failed_resync_keeps_confirmed_inventory_after_restart(
    tracker, registry, adapter, product, stores
):
    first = SyncOrchestrator(tracker=tracker, registry=registry)
    await first.sync_product(product, targets("s1", assigned_inventory=assign(product, 7)), stores)
    adapter.failures["s1"] = StoreAdapterError("Throttled", store_id="s1")

    report = await first.sync_product(
        product, targets("s1", assigned_inventory=assign(product, 2)), stores, force_sync=True
    )

    assert report.results[0].status == SyncStatus.FAILED
    variant_id = product.variants[0].id
    assert first.ledger.snapshot(product.id)[variant_id] == {"s1": 7}
    stored = await tracker.get_one(product.id, "s1")
    assert sum(stored.committed_allocations[variant_id].values()) == 7

    restarted = SyncOrchestrator(tracker=tracker, registry=registry)
    with pytest.raises(InsufficientInventoryError) as excinfo:
        await restarted.sync_product(
            product, targets("s2", assigned_inventory=assign(product, 4)), stores
        )
    assert excinfo.value.available == 3


async def test_resync_with_less_inventory_frees_the_difference(orchestrator, product, stores):
    await orchestrator.sync_product(product, targets("s1", assigned_inventory=assign(product, 7)), stores)
    await orchestrator.sync_product(product, targets("s1", assigned_inventory=assign(product, 2)), stores)

    report = await orchestrator.sync_product(
        product, targets("s2", assigned_inventory=assign(product, 8)), stores
    )

    assert report.results[0].status == SyncStatus.COMPLETED
    assert orchestrator.ledger.snapshot(product.id)[product.variants[0].id] == {"s1": 2, "s2": 8}


async def test_failing_batch_keeps_newer_batch_commitment(orchestrator, adapter, product, stores):
    adapter.gates["s1"] = asyncio.Event()
    older = await orchestrator.prepare(
        product, targets("s1", assigned_inventory=assign(product, 3)), stores
    )
    task = asyncio.create_task(orchestrator.execute(older))
    await asyncio.wait_for(adapter.started.setdefault("s1", asyncio.Event()).wait(), 1)

    newer = await orchestrator.prepare(
        product, targets("s1", assigned_inventory=assign(product, 9)), stores, force_sync=True
    )
    adapter.failures["s1"] = StoreAdapterError("Throttled", store_id="s1")
    adapter.gates["s1"].set()
    report = await task

    assert report.results[0].status == SyncStatus.FAILED
    variant_id = product.variants[0].id
    assert orchestrator.ledger.snapshot(product.id)[variant_id] == {"s1": 9}
    with pytest.raises(InsufficientInventoryError):
        await orchestrator.prepare(
            product, targets("s2", assigned_inventory=assign(product, 2)), stores
        )

    del adapter.failures["s1"]
    report = await orchestrator.execute(newer)

    assert report.results[0].status == SyncStatus.COMPLETED
    assert orchestrator.ledger.snapshot(product.id)[variant_id] == {"s1": 9}


async def test_committed_inventory_hydrates_first(tracker, registry, product, stores):
    first = SyncOrchestrator(tracker=tracker, registry=registry)
    await first.sync_product(product, targets("s1", assigned_inventory=assign(product, 4)), stores)

    restarted = SyncOrchestrator(tracker=tracker, registry=registry)
    committed = await restarted.committed_inventory(product.id)

    assert committed == {v.id: {"s1": 4} for v in product.variants}
