"""
Pydantic models for Supabase database tables.
These models represent the structure of data stored in Supabase:
canonical products (with options, variants and media), connected stores
with their locations, and the latest sync result per (product, store).
"""
from datetime import datetime, timezone
from enum import Enum
from itertools import product as cartesian
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from app.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class ProductStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)

    @property
    def rank(self) -> int:
        # pending -> syncing -> {completed | failed}
        return {"pending": 0, "syncing": 1, "completed": 2, "failed": 2}[self.value]


class OptionValue(BaseModel):
    name: str
    position: Optional[int] = None


class ProductOption(BaseModel):
    """A named axis of variation (e.g. Color) with ordered values."""
    name: str = Field(min_length=1)
    position: Optional[int] = None
    option_values: List[OptionValue] = Field(default_factory=list)

    def value_names(self) -> List[str]:
        """Non-empty value names in declared order."""
        return [v.name for v in self.option_values if v.name and v.name.strip()]


class VariantOptionValue(BaseModel):
    option_name: str
    name: str


class Variant(BaseModel):
    """A sellable configuration of a product."""
    id: str = Field(default_factory=new_id)
    position: Optional[int] = None
    price: float = Field(default=0.0, ge=0)
    compare_at_price: Optional[float] = Field(default=None, ge=0)
    sku: Optional[str] = None
    barcode: Optional[str] = None
    inventory_quantity: int = Field(default=0, ge=0)
    inventory_policy: str = "deny"
    taxable: bool = True
    requires_shipping: bool = True
    weight: float = Field(default=0.0, ge=0)
    weight_unit: str = Field(default="g", pattern="^(kg|g|lb|oz)$")
    option_values: List[VariantOptionValue] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_compare_at_price(self):
        if self.compare_at_price is not None and self.compare_at_price <= self.price:
            raise ValueError("Compare at price must be greater than price")
        return self

    def option_key(self) -> tuple:
        return tuple((ov.option_name, ov.name) for ov in self.option_values)

    def title(self) -> str:
        if not self.option_values:
            return "Default Title"
        return " / ".join(ov.name for ov in self.option_values)


class Media(BaseModel):
    src: str
    alt: Optional[str] = Field(default=None, max_length=255)
    position: Optional[int] = None
    media_content_type: str = "IMAGE"


class VariantOverride(BaseModel):
    """Per-store replacement of selected variant fields."""
    price: Optional[float] = Field(default=None, ge=0)
    compare_at_price: Optional[float] = Field(default=None, ge=0)
    sku: Optional[str] = None

    def is_empty(self) -> bool:
        return self.price is None and self.compare_at_price is None and self.sku is None


class Product(BaseModel):
    """Model for products table. The canonical record pushed to stores."""
    id: str = Field(default_factory=new_id)
    title: str = Field(min_length=1, max_length=255)
    status: ProductStatus = ProductStatus.DRAFT
    handle: Optional[str] = Field(default=None, pattern="^[a-z0-9-]+$")
    description_html: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    options: List[ProductOption] = Field(default_factory=list)
    variants: List[Variant] = Field(default_factory=list)
    media: List[Media] = Field(default_factory=list)
    # store_id -> variant_id -> override
    store_overrides: Dict[str, Dict[str, VariantOverride]] = Field(default_factory=dict)
    collections_to_join: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_variants_match_options(self):
        if len(self.options) > settings.max_product_options:
            raise ValueError(f"A product supports at most {settings.max_product_options} options")

        names = [o.name for o in self.options]
        if len(set(names)) != len(names):
            raise ValueError("Option names must be unique")

        declared = {o.name: set(o.value_names()) for o in self.options}
        seen = set()
        for variant in self.variants:
            if len(variant.option_values) != len(self.options):
                raise ValueError(
                    f"Variant {variant.id} must have exactly {len(self.options)} option values"
                )
            for ov, option_name in zip(variant.option_values, names):
                if ov.option_name != option_name:
                    raise ValueError(f"Variant {variant.id} references undeclared option {ov.option_name!r}")
                if ov.name not in declared[option_name]:
                    raise ValueError(
                        f"Variant {variant.id} references undeclared value {ov.name!r} for {option_name!r}"
                    )
            key = variant.option_key()
            if key in seen:
                raise ValueError(f"Duplicate variant combination: {variant.title()}")
            seen.add(key)

        variant_ids = {v.id for v in self.variants}
        if len(variant_ids) != len(self.variants):
            raise ValueError("Variant ids must be unique")
        for store_id, overrides in self.store_overrides.items():
            unknown = set(overrides) - variant_ids
            if unknown:
                raise ValueError(f"Overrides for store {store_id} reference unknown variants: {sorted(unknown)}")
        return self

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def is_full_combination(self) -> bool:
        """True when variants cover the whole cartesian product of option values."""
        if not self.options:
            return len(self.variants) <= 1
        expected = {
            tuple(zip([o.name for o in self.options], combo))
            for combo in cartesian(*[o.value_names() for o in self.options])
        }
        return expected == {v.option_key() for v in self.variants}

    def without_variant(self, variant_id: str) -> "Product":
        """
        Return a copy with one variant removed, positions renumbered and
        every per-store override keyed by that variant pruned.
        """
        remaining = [v for v in self.variants if v.id != variant_id]
        if len(remaining) == len(self.variants):
            raise KeyError(variant_id)
        variants = [v.model_copy(update={"position": i}) for i, v in enumerate(remaining, start=1)]
        overrides = {
            store_id: {vid: ov for vid, ov in per_variant.items() if vid != variant_id}
            for store_id, per_variant in self.store_overrides.items()
        }
        return self.model_copy(
            update={
                "variants": variants,
                "store_overrides": {k: v for k, v in overrides.items() if v},
                "updated_at": utcnow(),
            }
        )


class Location(BaseModel):
    """Fulfillment/inventory location belonging to a store."""
    id: str
    name: str = ""
    is_active: bool = True
    fulfills_online_orders: bool = False
    ships_inventory: bool = True
    # None means unbounded
    capacity: Optional[int] = Field(default=None, ge=0)


class Store(BaseModel):
    """Model for stores table: a connected Shopify shop."""
    id: str = Field(default_factory=new_id)
    name: str = ""
    domain: str
    platform: str = "shopify"
    is_active: bool = True
    access_token: str = Field(default="", repr=False)
    locations: List[Location] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def active_locations(self) -> List[Location]:
        return [loc for loc in self.locations if loc.is_active]

    def primary_location(self) -> Optional[Location]:
        return find_primary_location(self.locations)

    def get_location(self, location_id: str) -> Optional[Location]:
        for loc in self.locations:
            if loc.id == location_id:
                return loc
        return None


def find_primary_location(locations: List[Location]) -> Optional[Location]:
    """The active location that fulfills online orders, else the first active one."""
    active = [loc for loc in locations if loc.is_active]
    for loc in active:
        if loc.fulfills_online_orders:
            return loc
    return active[0] if active else None


class SyncResult(BaseModel):
    """Model for sync_results table, keyed by (product_id, store_id)."""
    product_id: str
    store_id: str
    status: SyncStatus = SyncStatus.PENDING
    shopify_product_id: Optional[str] = None
    error: Optional[str] = None
    batch_id: Optional[str] = None
    payload_hash: Optional[str] = None
    # variant_id -> location_id -> quantity, as sent by this batch
    allocations: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    # what the store last confirmed receiving; survives failed and cancelled batches
    committed_allocations: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)
