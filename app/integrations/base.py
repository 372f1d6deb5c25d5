"""
Base store adapter interface.
All sales-channel integrations must implement this interface to receive
product pushes from the sync orchestrator.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from app.models.database import Location, Store


class StoreVariantPayload(BaseModel):
    """A canonical variant with per-store overrides and allocation applied."""

    variant_id: str
    position: int | None = None
    title: str = ""
    price: float = 0.0
    compare_at_price: float | None = None
    sku: str | None = None
    barcode: str | None = None
    weight: float = 0.0
    weight_unit: str = "g"
    inventory_policy: str = "deny"
    taxable: bool = True
    requires_shipping: bool = True
    option_values: list[str] = Field(default_factory=list)
    # location_id -> quantity
    inventory: dict[str, int] = Field(default_factory=dict)


class StoreProductPayload(BaseModel):
    """Merged product sent to one store. Built from a copy of the canonical product."""

    product_id: str
    shopify_product_id: str | None = None
    title: str
    status: str
    handle: str | None = None
    description_html: str | None = None
    vendor: str | None = None
    product_type: str | None = None
    tags: list[str] = Field(default_factory=list)
    options: list[dict[str, Any]] = Field(default_factory=list)
    variants: list[StoreVariantPayload] = Field(default_factory=list)
    media: list[dict[str, Any]] = Field(default_factory=list)
    collections_to_join: list[str] = Field(default_factory=list)
    location_id: str | None = None

    def content_hash(self) -> str:
        """Fingerprint of everything a store would receive, excluding its own product id."""
        body = self.model_dump(mode="json", exclude={"shopify_product_id"})
        return hashlib.sha256(json.dumps(body, sort_keys=True).encode()).hexdigest()


class StorePushResult:
    """Outcome of a successful create-or-update on a store."""

    def __init__(
        self,
        shopify_product_id: str,
        created: bool = False,
        variant_ids: dict[str, str] | None = None,
        **kwargs,
    ):
        self.shopify_product_id = shopify_product_id
        self.created = created
        self.variant_ids = variant_ids or {}
        self.extra_data = kwargs

    def to_dict(self) -> dict[str, Any]:
        data = {
            "shopify_product_id": self.shopify_product_id,
            "created": self.created,
            "variant_ids": self.variant_ids,
        }
        data.update(self.extra_data)
        return data


class BaseStoreAdapter(ABC):
    """Base class that all store integrations must implement."""

    @abstractmethod
    def get_name(self) -> str:
        """
        Return integration name.

        Returns:
            Integration name (e.g., 'shopify')
        """
        pass

    @abstractmethod
    async def create_or_update_product(
        self, store: Store, payload: StoreProductPayload
    ) -> StorePushResult:
        """
        Create the product on the store, or update it when the payload
        carries a known store-side product id.

        Args:
            store: Target store including its access credential
            payload: Merged product payload

        Returns:
            Push result with the store-side product id

        Raises:
            StoreAdapterError: The store rejected or failed to process the push
        """
        pass

    @abstractmethod
    async def delete_product(self, store: Store, shopify_product_id: str) -> bool:
        """
        Delete a product from the store.

        Returns:
            True if deleted, False if it was already gone
        """
        pass

    @abstractmethod
    async def get_locations(self, store: Store) -> list[Location]:
        """Fetch the store's current inventory locations."""
        pass

    def validate_payload(self, payload: StoreProductPayload) -> tuple[bool, list[str]]:
        """
        Validate a payload before it is sent.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = []

        if not payload.title:
            errors.append("Title is required")

        for variant in payload.variants:
            if variant.price < 0:
                errors.append(f"Variant {variant.variant_id}: price must be non-negative")
            if variant.compare_at_price is not None and variant.compare_at_price <= variant.price:
                errors.append(
                    f"Variant {variant.variant_id}: compare at price must be greater than price"
                )
            if any(qty < 0 for qty in variant.inventory.values()):
                errors.append(f"Variant {variant.variant_id}: inventory must be non-negative")

        return len(errors) == 0, errors
