"""
Pydantic models for sync requests, allocation plans and batch reports.
"""
from enum import Enum

from pydantic import BaseModel, Field, computed_field

from app.models.database import SyncResult, SyncStatus, VariantOverride


class AllocationStrategy(str, Enum):
    BALANCED = "balanced"
    PRIORITY = "priority"
    DEMAND_BASED = "demand-based"
    GEOGRAPHIC = "geographic"

    @property
    def is_weighted(self) -> bool:
        return self in (AllocationStrategy.DEMAND_BASED, AllocationStrategy.GEOGRAPHIC)


class SyncTarget(BaseModel):
    """One (product, store) push request."""

    store_id: str
    # variant_id -> override; takes precedence over overrides saved on the product
    variant_overrides: dict[str, VariantOverride] = Field(default_factory=dict)
    # variant_id -> quantity to send to this store. When None every variant
    # gets all of its remaining stock; when set, omitted variants get none.
    assigned_inventory: dict[str, int] | None = None
    collections_to_join: list[str] = Field(default_factory=list)
    location_id: str | None = None
    strategy: AllocationStrategy = AllocationStrategy.BALANCED
    # location_id -> weight, required for demand-based and geographic
    location_weights: dict[str, float] | None = None


class VariantAllocation(BaseModel):
    variant_id: str
    requested: int
    locations: dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def allocated(self) -> int:
        return sum(self.locations.values())


class AllocationPlan(BaseModel):
    """Per-variant location quantities computed for one store."""

    store_id: str
    strategy: AllocationStrategy
    variants: list[VariantAllocation] = Field(default_factory=list)

    def as_mapping(self) -> dict[str, dict[str, int]]:
        return {va.variant_id: dict(va.locations) for va in self.variants}


class SyncReport(BaseModel):
    """Settle report for one batch: every target's result, never a single boolean."""

    product_id: str
    batch_id: str
    results: list[SyncResult] = Field(default_factory=list)
    skipped_store_ids: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == SyncStatus.COMPLETED)

    @computed_field
    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == SyncStatus.FAILED)

    def summary(self) -> str:
        return f"{self.succeeded} succeeded, {self.failed} failed"


class VariantInventory(BaseModel):
    """Master quantity of one variant against what the stores hold."""

    variant_id: str
    title: str
    sku: str | None = None
    inventory_quantity: int
    # store_id -> committed quantity
    stores: dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def committed(self) -> int:
        return sum(self.stores.values())

    @computed_field
    @property
    def available(self) -> int:
        return max(self.inventory_quantity - self.committed, 0)


class InventorySummary(BaseModel):
    product_id: str
    variants: list[VariantInventory] = Field(default_factory=list)
