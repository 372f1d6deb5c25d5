"""
Shopify data transformation service.
Transforms merged store payloads into Shopify Admin REST product bodies and
Shopify responses back into domain models.
"""

from typing import Any

import structlog

from app.integrations.base import StoreProductPayload, StoreVariantPayload
from app.integrations.shopify.models import ShopifyLocation, ShopifyProduct
from app.models.database import Location

logger = structlog.get_logger()


class ShopifyTransformError(Exception):
    """Raised when Shopify data transformation fails."""

    pass


def _money(value: float | None) -> str | None:
    if value is None:
        return None
    return f"{value:.2f}"


class ShopifyTransformer:
    """Service for converting between store payloads and Shopify REST shapes."""

    @staticmethod
    def to_product_body(
        payload: StoreProductPayload, existing: ShopifyProduct | None = None
    ) -> dict[str, Any]:
        """
        Build the body for POST /products.json or PUT /products/{id}.json.

        When updating, variants that already exist on Shopify keep their ids
        so Shopify updates them in place instead of recreating them.

        Args:
            payload: Merged product payload
            existing: Current Shopify product when updating

        Returns:
            Request body dictionary
        """
        if len(payload.options) > 3:
            raise ShopifyTransformError("Shopify supports at most 3 options")

        existing_ids = ShopifyTransformer.match_variants(payload, existing) if existing else {}

        product: dict[str, Any] = {
            "title": payload.title,
            "body_html": payload.description_html or "",
            "vendor": payload.vendor,
            "product_type": payload.product_type,
            "tags": ", ".join(payload.tags),
            "status": payload.status.lower(),
            "options": [
                {"name": option["name"], "values": option.get("values", [])}
                for option in payload.options
            ]
            or None,
            "variants": [
                ShopifyTransformer._variant_body(variant, existing_ids.get(variant.variant_id))
                for variant in payload.variants
            ],
            "images": [
                {"src": media["src"], "alt": media.get("alt"), "position": media.get("position")}
                for media in payload.media
            ],
        }
        if payload.handle:
            product["handle"] = payload.handle
        if existing is not None:
            product["id"] = existing.id

        return {"product": {k: v for k, v in product.items() if v is not None}}

    @staticmethod
    def _variant_body(variant: StoreVariantPayload, shopify_variant_id: int | None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "price": _money(variant.price),
            "compare_at_price": _money(variant.compare_at_price),
            "sku": variant.sku or "",
            "barcode": variant.barcode or "",
            "weight": variant.weight,
            "weight_unit": variant.weight_unit,
            "inventory_management": "shopify",
            "inventory_policy": variant.inventory_policy,
            "taxable": variant.taxable,
            "requires_shipping": variant.requires_shipping,
        }
        for index, value in enumerate(variant.option_values[:3], start=1):
            body[f"option{index}"] = value
        if shopify_variant_id is not None:
            body["id"] = shopify_variant_id
        return body

    @staticmethod
    def match_variants(
        payload: StoreProductPayload, shopify_product: ShopifyProduct
    ) -> dict[str, int]:
        """
        Map payload variant ids to Shopify variant ids.
        Variants are matched on option values, then on SKU.
        """
        by_options = {tuple(v.option_values()): v.id for v in shopify_product.variants}
        by_sku = {v.sku: v.id for v in shopify_product.variants if v.sku}

        matched = {}
        for variant in payload.variants:
            key = tuple(variant.option_values)
            if not key:
                # single default variant
                if len(shopify_product.variants) == 1:
                    matched[variant.variant_id] = shopify_product.variants[0].id
                continue
            if key in by_options:
                matched[variant.variant_id] = by_options[key]
            elif variant.sku and variant.sku in by_sku:
                matched[variant.variant_id] = by_sku[variant.sku]
        return matched

    @staticmethod
    def inventory_item_ids(
        payload: StoreProductPayload, shopify_product: ShopifyProduct
    ) -> dict[str, str]:
        """Map payload variant ids to Shopify inventory item ids."""
        variant_ids = ShopifyTransformer.match_variants(payload, shopify_product)
        items = {v.id: v.inventory_item_id for v in shopify_product.variants}
        result = {}
        for variant_id, shopify_variant_id in variant_ids.items():
            item_id = items.get(shopify_variant_id)
            if item_id is None:
                logger.warning(
                    "Shopify variant has no inventory item",
                    variant_id=variant_id,
                    shopify_variant_id=shopify_variant_id,
                )
                continue
            result[variant_id] = str(item_id)
        return result

    @staticmethod
    def to_location(raw: dict[str, Any]) -> Location:
        location = ShopifyLocation(**raw)
        return Location(
            id=str(location.id),
            name=location.name,
            is_active=location.active,
            fulfills_online_orders=(
                location.fulfills_online_orders
                if location.fulfills_online_orders is not None
                else not location.legacy
            ),
            ships_inventory=location.ships_inventory if location.ships_inventory is not None else True,
        )
