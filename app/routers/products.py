"""
API router for canonical products.
Create products once, generate their variants and manage per-store overrides.
"""

from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from app.dependencies import get_orchestrator, get_supabase_service
from app.errors import InsufficientInventoryError
from app.models.database import (
    Media,
    Product,
    ProductOption,
    ProductStatus,
    Variant,
    VariantOverride,
)
from app.models.sync import InventorySummary, VariantInventory
from app.services.supabase_service import SupabaseService
from app.services.sync_orchestrator import SyncOrchestrator
from app.services.variant_generator import generate_variants

logger = structlog.get_logger()

router = APIRouter(prefix="/api/products", tags=["products"])


class GenerateVariantsRequest(BaseModel):
    options: List[ProductOption]


class GenerateVariantsResponse(BaseModel):
    variants: List[Variant]


class CreateProductRequest(BaseModel):
    """Request model for creating a product."""

    title: str
    status: ProductStatus = ProductStatus.DRAFT
    handle: Optional[str] = None
    description_html: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    options: List[ProductOption] = Field(default_factory=list)
    # when empty and options are given, every combination is generated
    variants: List[Variant] = Field(default_factory=list)
    media: List[Media] = Field(default_factory=list)
    collections_to_join: List[str] = Field(default_factory=list)
    default_price: float = Field(default=0.0, ge=0)
    default_inventory_quantity: int = Field(default=0, ge=0)


class UpdateProductRequest(BaseModel):
    """Product fields that can change after creation. Options and variants have their own routes."""

    title: Optional[str] = None
    status: Optional[ProductStatus] = None
    handle: Optional[str] = None
    description_html: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    tags: Optional[List[str]] = None
    media: Optional[List[Media]] = None
    collections_to_join: Optional[List[str]] = None


class UpdateVariantRequest(BaseModel):
    price: Optional[float] = Field(default=None, ge=0)
    compare_at_price: Optional[float] = Field(default=None, ge=0)
    sku: Optional[str] = None
    barcode: Optional[str] = None
    inventory_quantity: Optional[int] = Field(default=None, ge=0)
    inventory_policy: Optional[str] = None
    weight: Optional[float] = Field(default=None, ge=0)
    weight_unit: Optional[str] = None


@router.post("/variants/generate", response_model=GenerateVariantsResponse)
async def generate_product_variants(request: GenerateVariantsRequest):
    """Preview the variants a set of options would produce."""
    return GenerateVariantsResponse(variants=generate_variants(request.options))


@router.post("", response_model=Product, status_code=status.HTTP_201_CREATED)
async def create_product(
    request: CreateProductRequest,
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """Create a canonical product in the local database."""
    variants = request.variants
    if not variants:
        variants = [
            v.model_copy(
                update={
                    "price": request.default_price,
                    "inventory_quantity": request.default_inventory_quantity,
                }
            )
            for v in generate_variants(request.options)
        ]
    if not variants:
        variants = [
            Variant(
                position=1,
                price=request.default_price,
                inventory_quantity=request.default_inventory_quantity,
            )
        ]

    product = Product(
        **request.model_dump(
            exclude={"variants", "default_price", "default_inventory_quantity"}
        ),
        variants=variants,
    )
    created = supabase_service.create_product(product)
    logger.info(
        "Product created",
        product_id=created.id,
        variants=len(created.variants),
        full_combination=created.is_full_combination(),
    )
    return created


@router.get("", response_model=List[Product])
async def list_products(
    limit: int = Query(50, ge=1, le=250),
    offset: int = Query(0, ge=0),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    return supabase_service.list_products(limit=limit, offset=offset)


@router.get("/{product_id}", response_model=Product)
async def get_product(
    product_id: str,
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    return supabase_service.require_product(product_id)


@router.patch("/{product_id}", response_model=Product)
async def update_product(
    product_id: str,
    request: UpdateProductRequest,
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """Change product-level fields. Only the fields present in the body are touched."""
    product = supabase_service.require_product(product_id)
    changes = request.model_dump(exclude_unset=True)
    updated = Product(**{**product.model_dump(), **changes})
    logger.info("Product updated", product_id=product_id, fields=sorted(changes))
    return supabase_service.update_product(updated)


@router.post("/{product_id}/variants", response_model=Product, status_code=status.HTTP_201_CREATED)
async def add_variant(
    product_id: str,
    variant: Variant,
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """
    Add one variant to an existing product.
    Its option values must be declared by the product and must not repeat
    another variant's combination.
    """
    product = supabase_service.require_product(product_id)
    if variant.position is None:
        variant = variant.model_copy(update={"position": len(product.variants) + 1})

    updated = Product(**{**product.model_dump(), "variants": [*product.variants, variant]})
    logger.info("Variant added", product_id=product_id, variant_id=variant.id)
    return supabase_service.update_product(updated)


@router.patch("/{product_id}/variants/{variant_id}", response_model=Product)
async def update_variant(
    product_id: str,
    variant_id: str,
    request: UpdateVariantRequest,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Edit one variant's price, SKU or master inventory.

    Inventory cannot drop below what is already committed to stores; sync a
    smaller assignment (or remove the product from a store) first.
    """
    product = supabase_service.require_product(product_id)
    variant = product.get_variant(variant_id)
    if variant is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Variant not found: {variant_id}",
        )

    changes = request.model_dump(exclude_unset=True)
    new_quantity = changes.get("inventory_quantity")
    if new_quantity is not None and new_quantity < variant.inventory_quantity:
        per_store = (await orchestrator.committed_inventory(product_id)).get(variant_id, {})
        committed = sum(per_store.values())
        if new_quantity < committed:
            raise InsufficientInventoryError(
                f"Cannot lower inventory to {new_quantity}: {committed} units are committed to stores",
                available=new_quantity,
                requested=committed,
                variant_id=variant_id,
            )

    variants = [
        {**v.model_dump(), **changes} if v.id == variant_id else v.model_dump()
        for v in product.variants
    ]
    updated = Product(**{**product.model_dump(), "variants": variants})
    logger.info("Variant updated", product_id=product_id, variant_id=variant_id, fields=sorted(changes))
    return supabase_service.update_product(updated)


@router.get("/{product_id}/inventory", response_model=InventorySummary)
async def get_inventory_summary(
    product_id: str,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Master quantity, committed quantity per store and what is left, per variant."""
    product = supabase_service.require_product(product_id)
    committed = await orchestrator.committed_inventory(product_id)
    return InventorySummary(
        product_id=product.id,
        variants=[
            VariantInventory(
                variant_id=v.id,
                title=v.title(),
                sku=v.sku,
                inventory_quantity=v.inventory_quantity,
                stores=committed.get(v.id, {}),
            )
            for v in product.variants
        ],
    )


@router.delete("/{product_id}/variants/{variant_id}", response_model=Product)
async def delete_variant(
    product_id: str,
    variant_id: str,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Delete one variant and every per-store override keyed by it."""
    product = supabase_service.require_product(product_id)
    try:
        pruned = product.without_variant(variant_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Variant not found: {variant_id}",
        )
    updated = supabase_service.update_product(pruned)
    orchestrator.ledger.forget_variant(product_id, variant_id)
    logger.info("Variant deleted", product_id=product_id, variant_id=variant_id)
    return updated


@router.put("/{product_id}/stores/{store_id}/overrides", response_model=Product)
async def save_store_overrides(
    product_id: str,
    store_id: str,
    overrides: dict[str, VariantOverride],
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """
    Save per-variant overrides for one store.
    Replaces the store's previous overrides; empty overrides are dropped.
    """
    product = supabase_service.require_product(product_id)
    supabase_service.require_store(store_id)

    store_overrides = dict(product.store_overrides)
    kept = {vid: ov for vid, ov in overrides.items() if not ov.is_empty()}
    if kept:
        store_overrides[store_id] = kept
    else:
        store_overrides.pop(store_id, None)

    # re-validate so unknown variant ids are rejected
    updated = Product(**{**product.model_dump(), "store_overrides": store_overrides})
    return supabase_service.update_product(updated)
