"""
Pydantic models for Shopify Admin REST API responses.
Only the fields the store adapter reads are declared; the rest are ignored.
"""

from pydantic import BaseModel, Field


class ShopifyVariant(BaseModel):
    """Shopify product variant model."""

    id: int
    product_id: int | None = None
    title: str = ""
    price: str = "0.00"
    sku: str | None = None
    position: int | None = None
    compare_at_price: str | None = None
    barcode: str | None = None
    inventory_item_id: int | None = None
    option1: str | None = None
    option2: str | None = None
    option3: str | None = None

    def option_values(self) -> list[str]:
        return [v for v in (self.option1, self.option2, self.option3) if v is not None]


class ShopifyProduct(BaseModel):
    """Shopify product model."""

    id: int
    title: str = ""
    handle: str | None = None
    status: str | None = None
    variants: list[ShopifyVariant] = Field(default_factory=list)


class ShopifyLocation(BaseModel):
    """Shopify location model."""

    id: int
    name: str = ""
    active: bool = True
    legacy: bool = False
    fulfills_online_orders: bool | None = None
    ships_inventory: bool | None = None
