"""
Multi-store sync orchestration.
Fans one canonical product out to several stores concurrently, applying
per-store overrides and inventory allocations, and records an independent
outcome per store. One store's failure never blocks or alters another's.
"""

import asyncio
from collections.abc import Mapping

import structlog

from app.config import settings
from app.errors import (
    InsufficientInventoryError,
    StaleWriteError,
    StoreAdapterError,
    SyncTimeoutError,
    ValidationError,
)
from app.integrations.base import (
    BaseStoreAdapter,
    StoreProductPayload,
    StoreVariantPayload,
)
from app.integrations.registry import IntegrationRegistry, integration_registry
from app.models.database import (
    Location,
    Product,
    Store,
    SyncResult,
    SyncStatus,
    VariantOverride,
    new_id,
    utcnow,
)
from app.models.sync import AllocationPlan, SyncReport, SyncTarget, VariantAllocation
from app.services.allocation_engine import AllocationEngine
from app.services.allocation_ledger import AllocationLedger
from app.services.sync_status_tracker import SyncStatusTracker

logger = structlog.get_logger()


def merge_overrides(*overrides: VariantOverride | None) -> VariantOverride:
    """Combine overrides left to right; later non-empty fields win."""
    merged: dict = {}
    for override in overrides:
        if override is None:
            continue
        merged.update(override.model_dump(exclude_none=True))
    return VariantOverride(**merged)


def build_store_payload(
    product: Product,
    target: SyncTarget,
    plan: AllocationPlan,
    shopify_product_id: str | None = None,
) -> StoreProductPayload:
    """
    Build the payload for one store from the canonical product.
    Saved per-store overrides apply first, then the target's own overrides.
    The product itself is never modified.
    """
    saved = product.store_overrides.get(target.store_id, {})
    allocations = plan.as_mapping()

    variants = []
    for variant in product.variants:
        override = merge_overrides(saved.get(variant.id), target.variant_overrides.get(variant.id))
        variants.append(
            StoreVariantPayload(
                variant_id=variant.id,
                position=variant.position,
                title=variant.title(),
                price=override.price if override.price is not None else variant.price,
                compare_at_price=(
                    override.compare_at_price
                    if override.compare_at_price is not None
                    else variant.compare_at_price
                ),
                sku=override.sku if override.sku is not None else variant.sku,
                barcode=variant.barcode,
                weight=variant.weight,
                weight_unit=variant.weight_unit,
                inventory_policy=variant.inventory_policy,
                taxable=variant.taxable,
                requires_shipping=variant.requires_shipping,
                option_values=[ov.name for ov in variant.option_values],
                inventory=allocations.get(variant.id, {}),
            )
        )

    collections = list(dict.fromkeys([*product.collections_to_join, *target.collections_to_join]))
    return StoreProductPayload(
        product_id=product.id,
        shopify_product_id=shopify_product_id,
        title=product.title,
        status=product.status.value,
        handle=product.handle,
        description_html=product.description_html,
        vendor=product.vendor,
        product_type=product.product_type,
        tags=list(product.tags),
        options=[{"name": o.name, "values": o.value_names()} for o in product.options],
        variants=variants,
        media=[m.model_dump(exclude_none=True) for m in product.media],
        collections_to_join=collections,
        location_id=target.location_id,
    )


class SyncJob:
    """One store's share of a batch, ready to be pushed."""

    def __init__(
        self,
        target: SyncTarget,
        store: Store,
        adapter: BaseStoreAdapter,
        payload: StoreProductPayload,
        plan: AllocationPlan,
        committed_allocations: dict[str, dict[str, int]] | None = None,
    ):
        self.target = target
        self.store = store
        self.adapter = adapter
        self.payload = payload
        self.plan = plan
        # what the store confirmed before this batch; carried on every non-completed result
        self.committed_allocations = committed_allocations or {}


class SyncBatch:
    """A prepared batch: allocations committed, pending results recorded."""

    def __init__(self, batch_id: str, product: Product):
        self.batch_id = batch_id
        self.product = product
        self.jobs: list[SyncJob] = []
        # store_id -> result, in target order
        self.results: dict[str, SyncResult | None] = {}
        self.skipped_store_ids: list[str] = []


class SyncOrchestrator:
    """Pushes a product to many stores and tracks each outcome independently."""

    def __init__(
        self,
        tracker: SyncStatusTracker,
        ledger: AllocationLedger | None = None,
        engine: AllocationEngine | None = None,
        registry: IntegrationRegistry | None = None,
        push_timeout: float | None = None,
    ):
        self.tracker = tracker
        self.ledger = ledger or AllocationLedger()
        self.engine = engine or AllocationEngine()
        self.registry = registry or integration_registry
        self.push_timeout = (
            push_timeout if push_timeout is not None else settings.store_push_timeout_seconds
        )
        self._cancelled: set[str] = set()
        # batch_id -> product_id for batches still being pushed
        self._active: dict[str, str] = {}

    async def sync_product(
        self,
        product: Product,
        targets: list[SyncTarget],
        stores: Mapping[str, Store],
        force_sync: bool = False,
    ) -> SyncReport:
        """
        Push a product to every target store and wait for all of them.

        Raises:
            ValidationError: Bad targets or overrides; nothing was sent
            InsufficientInventoryError: Allocation impossible; nothing was sent
        """
        batch = await self.prepare(product, targets, stores, force_sync=force_sync)
        return await self.execute(batch)

    async def prepare(
        self,
        product: Product,
        targets: list[SyncTarget],
        stores: Mapping[str, Store],
        force_sync: bool = False,
    ) -> SyncBatch:
        """
        Validate targets, commit allocations and record pending results.
        Any error raised here happens before a store is contacted, and leaves
        the allocation ledger as it was.
        """
        batch = SyncBatch(new_id(), product)
        log = logger.bind(product_id=product.id, batch_id=batch.batch_id)

        resolved = self._resolve_targets(product, targets, stores)

        await self._hydrate(product.id)

        planned: list[str] = []
        plans: dict[str, AllocationPlan] = {}
        try:
            for target, store, adapter in resolved:
                planned.append(store.id)
                plans[store.id] = await self._plan(product, target, store, batch_id=batch.batch_id)
        except Exception:
            await self._withdraw(product, planned, batch.batch_id)
            log.warning("Sync aborted during allocation", stores=planned)
            raise

        prior = {r.store_id: r for r in await self.tracker.get(product.id)}
        try:
            payloads = {}
            for target, store, adapter in resolved:
                previous = prior.get(store.id)
                payload = build_store_payload(
                    product,
                    target,
                    plans[store.id],
                    shopify_product_id=previous.shopify_product_id if previous else None,
                )
                is_valid, errors = adapter.validate_payload(payload)
                if not is_valid:
                    raise ValidationError(f"Store {store.id}: " + "; ".join(errors))
                payloads[store.id] = payload
        except ValidationError:
            await self._withdraw(product, planned, batch.batch_id)
            raise

        for target, store, adapter in resolved:
            payload = payloads[store.id]
            payload_hash = payload.content_hash()
            previous = prior.get(store.id)

            if (
                not force_sync
                and previous is not None
                and previous.status == SyncStatus.COMPLETED
                and previous.payload_hash == payload_hash
            ):
                log.info("Store already up to date, skipping", store_id=store.id)
                # the plan matches what the store already holds
                await self._withdraw(product, [store.id], batch.batch_id)
                batch.results[store.id] = previous
                batch.skipped_store_ids.append(store.id)
                continue

            committed_allocations = previous.committed_allocations if previous else {}
            pending = SyncResult(
                product_id=product.id,
                store_id=store.id,
                status=SyncStatus.PENDING,
                shopify_product_id=previous.shopify_product_id if previous else None,
                batch_id=batch.batch_id,
                payload_hash=payload_hash,
                allocations=plans[store.id].as_mapping(),
                committed_allocations=committed_allocations,
            )
            try:
                await self.tracker.record(pending)
            except StaleWriteError as e:
                log.warning("Could not record pending result", store_id=store.id, error=str(e))

            batch.results[store.id] = None
            batch.jobs.append(
                SyncJob(
                    target=target,
                    store=store,
                    adapter=adapter,
                    payload=payload,
                    plan=plans[store.id],
                    committed_allocations=committed_allocations,
                )
            )

        log.info(
            "Prepared sync batch",
            stores=len(resolved),
            to_push=len(batch.jobs),
            skipped=len(batch.skipped_store_ids),
        )
        return batch

    async def execute(self, batch: SyncBatch) -> SyncReport:
        """
        Dispatch every job concurrently and wait until all have settled.
        Never raises for store-local failures.
        """
        product_id = batch.product.id
        self._active[batch.batch_id] = product_id
        with structlog.contextvars.bound_contextvars(batch_id=batch.batch_id, product_id=product_id):
            try:
                outcomes = await asyncio.gather(
                    *(self._push(batch, job) for job in batch.jobs),
                    return_exceptions=True,
                )
            finally:
                self._active.pop(batch.batch_id, None)
                self._cancelled.discard(batch.batch_id)

            for job, outcome in zip(batch.jobs, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "Push task crashed", store_id=job.store.id, error=str(outcome)
                    )
                    await self._rollback(product_id, batch.batch_id, job)
                    outcome = SyncResult(
                        product_id=product_id,
                        store_id=job.store.id,
                        status=SyncStatus.FAILED,
                        error=f"Unexpected error: {outcome}",
                        batch_id=batch.batch_id,
                        committed_allocations=job.committed_allocations,
                    )
                batch.results[job.store.id] = outcome

            report = SyncReport(
                product_id=product_id,
                batch_id=batch.batch_id,
                results=[r for r in batch.results.values() if r is not None],
                skipped_store_ids=batch.skipped_store_ids,
            )
            logger.info(
                "Sync batch settled",
                succeeded=report.succeeded,
                failed=report.failed,
                skipped=len(report.skipped_store_ids),
            )
            return report

    async def cancel(self, product_id: str, batch_id: str | None = None) -> list[SyncResult]:
        """
        Cancel in-flight work for a product. Non-terminal results are marked
        failed; store calls already in flight are left to finish and their
        late results are dropped.
        """
        for active_batch, active_product in list(self._active.items()):
            if active_product == product_id and (batch_id is None or active_batch == batch_id):
                self._cancelled.add(active_batch)
        cancelled = await self.tracker.cancel_pending(product_id, batch_id=batch_id)
        logger.info(
            "Cancelled sync",
            product_id=product_id,
            batch_id=batch_id,
            cancelled=len(cancelled),
        )
        return cancelled

    async def delete_from_store(self, product: Product, store: Store) -> SyncResult:
        """
        Remove a product from one store and free its inventory commitment.

        Raises:
            ValidationError: No adapter for the store's platform
            StoreAdapterError: The store refused the deletion or timed out
        """
        adapter = self._adapter_for(store)
        previous = await self.tracker.get_one(product.id, store.id)
        if previous is not None and not previous.status.is_terminal:
            raise ValidationError(f"A sync to store {store.id} is still in progress")
        batch_id = new_id()

        if previous and previous.shopify_product_id:
            await self.tracker.record(
                previous.model_copy(
                    update={"status": SyncStatus.PENDING, "batch_id": batch_id, "updated_at": utcnow()}
                )
            )
            try:
                try:
                    await asyncio.wait_for(
                        adapter.delete_product(store, previous.shopify_product_id),
                        timeout=self.push_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise SyncTimeoutError(
                        f"Timed out after {self.push_timeout}s", store_id=store.id
                    ) from e
            except StoreAdapterError as e:
                await self.tracker.record(
                    previous.model_copy(
                        update={
                            "status": SyncStatus.FAILED,
                            "error": str(e),
                            "batch_id": batch_id,
                            "updated_at": utcnow(),
                        }
                    )
                )
                raise

        await self.ledger.release_store(product.id, store.id)
        result = SyncResult(
            product_id=product.id,
            store_id=store.id,
            status=SyncStatus.COMPLETED,
            batch_id=batch_id,
        )
        logger.info("Removed product from store", product_id=product.id, store_id=store.id)
        return await self.tracker.record(result)

    async def preview_allocation(
        self, product: Product, target: SyncTarget, store: Store
    ) -> AllocationPlan:
        """Compute what a sync would allocate to one store without committing it."""
        self._resolve_targets(product, [target], {store.id: store})
        await self._hydrate(product.id)

        return await self._plan(product, target, store, commit=False)

    async def committed_inventory(self, product_id: str) -> dict[str, dict[str, int]]:
        """variant_id -> store_id -> quantity currently committed to that store."""
        await self._hydrate(product_id)
        return self.ledger.snapshot(product_id)

    async def _hydrate(self, product_id: str):
        if not self.ledger.is_hydrated(product_id):
            self.ledger.hydrate(product_id, await self.tracker.get(product_id))

    def _adapter_for(self, store: Store) -> BaseStoreAdapter:
        adapter = self.registry.get_adapter(store.platform)
        if adapter is None:
            raise ValidationError(f"No integration available for platform {store.platform!r}")
        return adapter

    def _resolve_targets(
        self,
        product: Product,
        targets: list[SyncTarget],
        stores: Mapping[str, Store],
    ) -> list[tuple[SyncTarget, Store, BaseStoreAdapter]]:
        if not targets:
            raise ValidationError("At least one store must be selected")
        store_ids = [t.store_id for t in targets]
        if len(set(store_ids)) != len(store_ids):
            raise ValidationError("Each store may only be targeted once per sync")

        variant_ids = {v.id for v in product.variants}
        resolved = []
        for target in targets:
            store = stores.get(target.store_id)
            if store is None:
                raise ValidationError(f"Unknown store: {target.store_id}")
            if not store.is_active:
                raise ValidationError(f"Store {store.domain} is not active")

            unknown = set(target.variant_overrides) - variant_ids
            if target.assigned_inventory:
                unknown |= set(target.assigned_inventory) - variant_ids
                if any(qty < 0 for qty in target.assigned_inventory.values()):
                    raise ValidationError("Assigned inventory must not be negative")
            if unknown:
                raise ValidationError(
                    f"Store {target.store_id} references unknown variants: {sorted(unknown)}"
                )

            if target.location_id is not None:
                location = store.get_location(target.location_id)
                if location is None or not location.is_active or not location.ships_inventory:
                    raise ValidationError(
                        f"Location {target.location_id} cannot receive inventory for store {store.id}"
                    )

            resolved.append((target, store, self._adapter_for(store)))
        return resolved

    async def _plan(
        self,
        product: Product,
        target: SyncTarget,
        store: Store,
        commit: bool = True,
        batch_id: str | None = None,
    ) -> AllocationPlan:
        locations: list[Location] = store.locations
        if target.location_id is not None:
            locations = [store.get_location(target.location_id)]

        plan = AllocationPlan(store_id=store.id, strategy=target.strategy)
        for variant in product.variants:
            requested = None
            if target.assigned_inventory is not None:
                requested = target.assigned_inventory.get(variant.id, 0)

            def allocate(committed_elsewhere: int, variant=variant, requested=requested) -> dict[str, int]:
                return self.engine.allocate(
                    master_quantity=variant.inventory_quantity,
                    locations=locations,
                    committed_elsewhere=committed_elsewhere,
                    strategy=target.strategy,
                    requested=requested,
                    weights=target.location_weights,
                )

            try:
                if commit:
                    allocation = await self.ledger.commit(
                        product.id, variant.id, store.id, allocate, batch_id=batch_id
                    )
                else:
                    allocation = allocate(
                        self.ledger.committed(product.id, variant.id, exclude_store_id=store.id)
                    )
            except InsufficientInventoryError as e:
                e.variant_id = variant.id
                raise
            plan.variants.append(
                VariantAllocation(
                    variant_id=variant.id,
                    requested=requested if requested is not None else sum(allocation.values()),
                    locations=allocation,
                )
            )
        return plan

    async def _withdraw(self, product: Product, store_ids: list[str], batch_id: str):
        for store_id in store_ids:
            for variant in product.variants:
                await self.ledger.rollback(product.id, variant.id, store_id, batch_id=batch_id)

    async def _push(self, batch: SyncBatch, job: SyncJob) -> SyncResult:
        store = job.store
        product_id = batch.product.id
        base = SyncResult(
            product_id=product_id,
            store_id=store.id,
            status=SyncStatus.SYNCING,
            shopify_product_id=job.payload.shopify_product_id,
            batch_id=batch.batch_id,
            payload_hash=job.payload.content_hash(),
            allocations=job.plan.as_mapping(),
            committed_allocations=job.committed_allocations,
        )

        if batch.batch_id in self._cancelled:
            return await self._settle_late(base, job)

        try:
            await self.tracker.record(base.model_copy(update={"updated_at": utcnow()}))
        except StaleWriteError:
            return await self._settle_late(base, job)

        try:
            pushed = await asyncio.wait_for(
                job.adapter.create_or_update_product(store, job.payload),
                timeout=self.push_timeout,
            )
            outcome = base.model_copy(
                update={
                    "status": SyncStatus.COMPLETED,
                    "shopify_product_id": pushed.shopify_product_id,
                    "committed_allocations": job.plan.as_mapping(),
                    "error": None,
                    "updated_at": utcnow(),
                }
            )
            logger.info(
                "Pushed product to store",
                store_id=store.id,
                shopify_product_id=pushed.shopify_product_id,
                created=pushed.created,
            )
        except asyncio.TimeoutError:
            outcome = base.model_copy(
                update={
                    "status": SyncStatus.FAILED,
                    "error": f"Timed out after {self.push_timeout}s",
                    "updated_at": utcnow(),
                }
            )
            logger.warning("Store push timed out", store_id=store.id, timeout=self.push_timeout)
        except StoreAdapterError as e:
            outcome = base.model_copy(
                update={"status": SyncStatus.FAILED, "error": str(e), "updated_at": utcnow()}
            )
            logger.warning("Store rejected push", store_id=store.id, error=str(e))
        except Exception as e:
            outcome = base.model_copy(
                update={
                    "status": SyncStatus.FAILED,
                    "error": f"Unexpected error: {e}",
                    "updated_at": utcnow(),
                }
            )
            logger.exception("Unexpected error pushing to store", store_id=store.id)

        if batch.batch_id in self._cancelled:
            logger.info(
                "Ignoring late result for cancelled batch",
                store_id=store.id,
                status=outcome.status.value,
            )
            return await self._settle_late(base, job)

        if outcome.status == SyncStatus.FAILED:
            await self._rollback(product_id, batch.batch_id, job)

        try:
            stored = await self.tracker.record(outcome)
        except StaleWriteError as e:
            logger.info("Dropped stale sync result", store_id=store.id, error=str(e))
            return await self._settle_late(base, job)

        if stored.status == SyncStatus.COMPLETED:
            await self._confirm(product_id, batch.batch_id, job)
        return stored

    async def _settle_late(self, base: SyncResult, job: SyncJob) -> SyncResult:
        """The batch was cancelled: undo the allocation and report what the tracker holds."""
        await self._rollback(base.product_id, base.batch_id, job)
        current = await self.tracker.get_one(base.product_id, base.store_id)
        if current is not None and current.batch_id == base.batch_id:
            return current
        return base.model_copy(
            update={"status": SyncStatus.FAILED, "error": "cancelled", "updated_at": utcnow()}
        )

    async def _rollback(self, product_id: str, batch_id: str, job: SyncJob):
        # only this batch's reservation goes; the store keeps what it confirmed earlier
        for variant in job.plan.variants:
            await self.ledger.rollback(product_id, variant.variant_id, job.store.id, batch_id=batch_id)

    async def _confirm(self, product_id: str, batch_id: str, job: SyncJob):
        for variant in job.plan.variants:
            await self.ledger.confirm(
                product_id, variant.variant_id, job.store.id, variant.allocated, batch_id=batch_id
            )
