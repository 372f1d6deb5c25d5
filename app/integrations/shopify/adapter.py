"""
Shopify store adapter.
Implements BaseStoreAdapter on top of the Shopify Admin REST API.
"""

from collections.abc import Callable

import httpx
import structlog

from app.errors import StoreAdapterError
from app.integrations.base import BaseStoreAdapter, StoreProductPayload, StorePushResult
from app.integrations.shopify.models import ShopifyProduct
from app.integrations.shopify.transformer import ShopifyTransformer, ShopifyTransformError
from app.models.database import Location, Store
from app.services.shopify_api_client import ShopifyAPIClient
from app.utils.retry import PermanentError, TransientError

logger = structlog.get_logger()


def _status_code(error: Exception) -> int | None:
    cause = error.__cause__
    if isinstance(cause, httpx.HTTPStatusError):
        return cause.response.status_code
    return None


class ShopifyStoreAdapter(BaseStoreAdapter):
    """Shopify adapter implementing BaseStoreAdapter."""

    def __init__(self, client_factory: Callable[[str, str], ShopifyAPIClient] | None = None):
        """
        Initialize Shopify adapter.

        Args:
            client_factory: Builds an API client from (shop_domain, access_token)
        """
        self.transformer = ShopifyTransformer()
        self.client_factory = client_factory or ShopifyAPIClient

    def get_name(self) -> str:
        """Return integration name."""
        return "shopify"

    def _client(self, store: Store) -> ShopifyAPIClient:
        if not store.access_token:
            raise StoreAdapterError(f"Store {store.domain} has no access token", store_id=store.id)
        return self.client_factory(store.domain, store.access_token)

    async def create_or_update_product(
        self, store: Store, payload: StoreProductPayload
    ) -> StorePushResult:
        """
        Push a product to Shopify, then set inventory levels and join collections.

        Args:
            store: Target store
            payload: Merged product payload

        Returns:
            Push result with the Shopify product id

        Raises:
            StoreAdapterError: Validation, transformation or API failure
        """
        is_valid, errors = self.validate_payload(payload)
        if not is_valid:
            raise StoreAdapterError("; ".join(errors), store_id=store.id)

        try:
            async with self._client(store) as client:
                existing = None
                if payload.shopify_product_id:
                    raw = await client.get_product(payload.shopify_product_id)
                    if raw is None:
                        logger.warning(
                            "Shopify product missing, recreating",
                            store_id=store.id,
                            shopify_product_id=payload.shopify_product_id,
                        )
                    else:
                        existing = ShopifyProduct(**raw)

                body = self.transformer.to_product_body(payload, existing)
                if existing is not None:
                    raw = await client.update_product(str(existing.id), body)
                else:
                    raw = await client.create_product(body)
                shopify_product = ShopifyProduct(**raw)

                await self._set_inventory(client, store, payload, shopify_product)
                await self._join_collections(client, store, payload, shopify_product)

                variant_ids = self.transformer.match_variants(payload, shopify_product)
                return StorePushResult(
                    shopify_product_id=str(shopify_product.id),
                    created=existing is None,
                    variant_ids={k: str(v) for k, v in variant_ids.items()},
                )

        except ShopifyTransformError as e:
            raise StoreAdapterError(str(e), store_id=store.id) from e
        except (TransientError, PermanentError) as e:
            logger.error(
                "Shopify push failed",
                store_id=store.id,
                shop=store.domain,
                error=str(e),
            )
            raise StoreAdapterError(
                f"Shopify API error: {e}", store_id=store.id, status_code=_status_code(e)
            ) from e

    async def _set_inventory(
        self,
        client: ShopifyAPIClient,
        store: Store,
        payload: StoreProductPayload,
        shopify_product: ShopifyProduct,
    ):
        item_ids = self.transformer.inventory_item_ids(payload, shopify_product)
        for variant in payload.variants:
            item_id = item_ids.get(variant.variant_id)
            if item_id is None:
                continue
            for location_id, quantity in variant.inventory.items():
                await client.set_inventory_level(item_id, location_id, quantity)
        logger.debug("Set inventory levels", store_id=store.id, variants=len(item_ids))

    async def _join_collections(
        self,
        client: ShopifyAPIClient,
        store: Store,
        payload: StoreProductPayload,
        shopify_product: ShopifyProduct,
    ):
        for collection_id in payload.collections_to_join:
            await client.add_to_collection(str(shopify_product.id), collection_id)
        if payload.collections_to_join:
            logger.info(
                "Joined collections",
                store_id=store.id,
                collections=payload.collections_to_join,
            )

    async def delete_product(self, store: Store, shopify_product_id: str) -> bool:
        try:
            async with self._client(store) as client:
                return await client.delete_product(shopify_product_id)
        except (TransientError, PermanentError) as e:
            raise StoreAdapterError(
                f"Shopify API error: {e}", store_id=store.id, status_code=_status_code(e)
            ) from e

    async def get_locations(self, store: Store) -> list[Location]:
        try:
            async with self._client(store) as client:
                raw_locations = await client.get_locations()
        except (TransientError, PermanentError) as e:
            raise StoreAdapterError(
                f"Shopify API error: {e}", store_id=store.id, status_code=_status_code(e)
            ) from e
        return [self.transformer.to_location(raw) for raw in raw_locations]
